"""Event handlers for workflow lifecycle events."""

from typing import Optional
import structlog

from approval_workflow.core.event_bus import EventBus, WILDCARD
from approval_workflow.models import Database
from approval_workflow.models.schemas import WorkflowEventPayload
from approval_workflow.notifications import CompanyConfigCache, NotificationOrchestrator
from approval_workflow.notifications.dispatcher import EmailSender

logger = structlog.get_logger()


def register_event_handlers(
    event_bus: EventBus,
    db: Database,
    email_sender: EmailSender,
    config_cache: Optional[CompanyConfigCache] = None,
) -> NotificationOrchestrator:
    """
    Register handlers for workflow events.

    Args:
        event_bus: The event bus instance
        db: Database instance for per-event session management
        email_sender: Outbound e-mail collaborator
        config_cache: Company notification config cache shared with the admin API

    Returns:
        The subscribed notification orchestrator
    """

    async def handle_workflow_event(event: WorkflowEventPayload):
        """Trace every transition, independent of notification mappings"""
        logger.info(
            "workflow_event_received",
            event_id=event.event_id,
            event_type=event.event_type.value,
            entity_type=event.entity_type.value,
            entity_id=event.entity_id,
            current_stage=event.current_stage,
            current_status=event.current_status,
            triggered_by=event.triggered_by.user_id,
        )

    event_bus.subscribe(WILDCARD, handle_workflow_event)

    orchestrator = NotificationOrchestrator(db, email_sender, config_cache=config_cache)
    orchestrator.register(event_bus)

    logger.info("event_handlers_registered", handlers=["workflow_event_trace", "notification_orchestrator"])
    return orchestrator
