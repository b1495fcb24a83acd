"""Notification log and company notification settings endpoints."""

from typing import Optional
import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from approval_workflow.api.v1.dependencies import (
    get_config_cache,
    get_email_sender,
    get_session,
    get_user_context,
)
from approval_workflow.api.v1.errors import error_response
from approval_workflow.models import NotificationLog
from approval_workflow.models.notification_schemas import (
    CompanyNotificationSettingsUpdate,
    DirectNotificationRequest,
    NotificationLogStatus,
)
from approval_workflow.models.schemas import ApiResponse, UserContext
from approval_workflow.notifications import (
    CompanyConfigCache,
    CompanyNotificationConfigService,
    NotificationDispatcher,
)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])
logger = structlog.get_logger()

ADMIN_ROLES = ["COMPANY_ADMIN", "SUPER_ADMIN", "ADMIN"]


def _is_admin(user: UserContext) -> bool:
    return user.user_role.upper() in ADMIN_ROLES


def _forbidden(message: str):
    return error_response(403, "FORBIDDEN", message)


@router.get("/logs", response_model=ApiResponse)
async def list_logs(
    limit: int = Query(default=50, ge=1, le=500),
    status: Optional[NotificationLogStatus] = Query(default=None),
    recipient: Optional[str] = Query(default=None),
    event_code: Optional[str] = Query(default=None),
    user: UserContext = Depends(get_user_context),
    db_session: AsyncSession = Depends(get_session),
):
    """Most recent delivery log rows for the caller's company"""
    if not _is_admin(user):
        return _forbidden("Only administrators can view notification logs")

    query = select(NotificationLog).where(NotificationLog.company_id == user.company_id)
    if status:
        query = query.where(NotificationLog.status == status.value)
    if recipient:
        query = query.where(NotificationLog.recipient_email == recipient.strip().lower())
    if event_code:
        query = query.where(NotificationLog.event_code == event_code.upper())

    result = await db_session.execute(
        query.order_by(NotificationLog.created_at.desc()).limit(limit)
    )
    logs = [log.to_dict() for log in result.scalars().all()]
    return ApiResponse(success=True, data={"logs": logs, "count": len(logs)})


@router.get("/company-config/{company_id}", response_model=ApiResponse)
async def get_company_config(
    company_id: str,
    user: UserContext = Depends(get_user_context),
    db_session: AsyncSession = Depends(get_session),
    cache: CompanyConfigCache = Depends(get_config_cache),
):
    if not _can_manage(user, company_id):
        return _forbidden("Not allowed to view notification settings for this company")

    config = await CompanyNotificationConfigService(db_session, cache).get(company_id)
    return ApiResponse(success=True, data=config.model_dump(mode="json") if config else None)


@router.put("/company-config/{company_id}", response_model=ApiResponse)
async def update_company_config(
    company_id: str,
    body: CompanyNotificationSettingsUpdate,
    user: UserContext = Depends(get_user_context),
    db_session: AsyncSession = Depends(get_session),
    cache: CompanyConfigCache = Depends(get_config_cache),
):
    """
    Create or partially update a company's notification settings.

    SUPER_ADMIN may edit any company; COMPANY_ADMIN only their own.
    The shared cache entry is invalidated so the next event sees the change.
    """
    if not _can_manage(user, company_id):
        return _forbidden("Not allowed to change notification settings for this company")

    service = CompanyNotificationConfigService(db_session, cache)
    saved = await service.upsert(company_id, body, updated_by=user.user_id)
    return ApiResponse(success=True, data=saved.model_dump(mode="json"))


@router.post("/send", response_model=ApiResponse)
async def send_direct(
    body: DirectNotificationRequest,
    user: UserContext = Depends(get_user_context),
    db_session: AsyncSession = Depends(get_session),
    cache: CompanyConfigCache = Depends(get_config_cache),
    email_sender = Depends(get_email_sender),
):
    """Send a stored event template to one address, through the same gates as event sends"""
    if not _is_admin(user):
        return _forbidden("Only administrators can send notifications directly")

    company_id = body.company_id or user.company_id
    if company_id != user.company_id and user.user_role.upper() != "SUPER_ADMIN":
        return _forbidden("Not allowed to send notifications for this company")

    dispatcher = NotificationDispatcher(
        db_session,
        email_sender,
        company_configs=CompanyNotificationConfigService(db_session, cache),
    )
    result = await dispatcher.send_notification(
        body.event_code,
        body.recipient_email,
        body.context,
        recipient_name=body.recipient_name,
        company_id=company_id,
        business_key=body.business_key,
    )

    logger.info(
        "direct_notification_requested",
        event_code=body.event_code,
        company_id=company_id,
        outcome=result.outcome.value,
        success=result.success,
    )

    if not result.success:
        return error_response(422, "NOTIFICATION_FAILED", result.error or "Notification failed")
    return ApiResponse(success=True, data=result.model_dump(mode="json"))


def _can_manage(user: UserContext, company_id: str) -> bool:
    role = user.user_role.upper()
    if role == "SUPER_ADMIN":
        return True
    return role == "COMPANY_ADMIN" and user.company_id == company_id
