"""Health check and metrics endpoints."""

from datetime import datetime
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from approval_workflow.api.v1.dependencies import get_session
from approval_workflow.config.settings import settings
from approval_workflow.models import NotificationLog, NotificationQueueItem
from approval_workflow.models.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", timestamp=datetime.now().timestamp())


@router.get("/metrics")
async def metrics(
    request: Request,
    db_session: AsyncSession = Depends(get_session),
):
    """
    System metrics endpoint for observability.
    Returns notification delivery counts, queue depth, and event bus metrics.
    """
    log_counts = await db_session.execute(
        select(NotificationLog.status, func.count(NotificationLog.id)).group_by(NotificationLog.status)
    )
    logs_by_status = {status: count for status, count in log_counts.fetchall()}

    queue_counts = await db_session.execute(
        select(NotificationQueueItem.status, func.count(NotificationQueueItem.id))
        .group_by(NotificationQueueItem.status)
    )
    queue_by_status = {status: count for status, count in queue_counts.fetchall()}

    state = request.app.state
    event_bus = getattr(state, "event_bus", None)
    orchestrator = getattr(state, "orchestrator", None)
    queue_sweeper = getattr(state, "queue_sweeper", None)

    return {
        "timestamp": datetime.now().timestamp(),
        "notifications": {
            "total": sum(logs_by_status.values()),
            "by_status": logs_by_status,
            "events_processed": orchestrator.processed if orchestrator else 0,
            "enabled": settings.enable_email_notifications,
            "demo_mode": settings.notifications_demo_mode,
        },
        "queue": {
            "total": sum(queue_by_status.values()),
            "by_status": queue_by_status,
        },
        "event_bus": event_bus.get_stats() if event_bus else None,
        "queue_sweeper": {
            "check_interval_seconds": queue_sweeper.check_interval if queue_sweeper else None,
            "running": queue_sweeper._running if queue_sweeper else False,
        },
    }
