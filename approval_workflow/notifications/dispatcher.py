"""
Per-recipient notification dispatch.

Every send, whether triggered by a workflow event or called directly,
passes the same gate:

1. Non-e-mail channels are logged as not implemented.
2. A SENT log for the same (event code, recipient, business key) inside
   the dedupe window turns the send into a logged duplicate skip.
3. During the company's quiet hours the message is queued for the end of
   the window instead of being sent.
4. Demo mode logs the message without delivering it.

Duplicate skips and quiet-hours deferrals are successful outcomes.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol
import json
import structlog

from approval_workflow.config.settings import settings
from approval_workflow.models.orm import NotificationLog, NotificationQueueItem
from approval_workflow.models.notification_schemas import (
    DispatchOutcome,
    DispatchResult,
    EmailResult,
    NotificationChannel,
    NotificationLogStatus,
    QueueStatus,
    RenderedMessage,
    ResolvedRecipient,
    RecipientResolverType,
)
from approval_workflow.notifications.company_config import CompanyNotificationConfigService
from approval_workflow.notifications.recipient_resolver import is_valid_email
from approval_workflow.notifications.templates import (
    TemplateStore,
    find_missing_placeholders,
    render_message,
)

logger = structlog.get_logger()


class EmailSender(Protocol):
    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        from_name: Optional[str] = None,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
    ) -> EmailResult:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    def __init__(
        self,
        db: AsyncSession,
        email_sender: EmailSender,
        company_configs: Optional[CompanyNotificationConfigService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.email_sender = email_sender
        self.company_configs = company_configs or CompanyNotificationConfigService(db)
        self.templates = TemplateStore(db)
        self._clock = clock

    async def dispatch(
        self,
        *,
        recipient: ResolvedRecipient,
        message: RenderedMessage,
        event_code: str,
        company_id: Optional[str],
        channel: NotificationChannel = NotificationChannel.EMAIL,
        business_key: Optional[str] = None,
        event_id: Optional[str] = None,
        from_name: Optional[str] = None,
        demo_mode: Optional[bool] = None,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        email = recipient.email.lower()
        channel = NotificationChannel(channel)
        demo_mode = settings.notifications_demo_mode if demo_mode is None else demo_mode
        diagnostics = dict(diagnostics or {}, channel=channel.value, resolved_by=recipient.resolved_by.value)
        base = dict(
            event_code=event_code,
            event_id=event_id,
            business_key=business_key,
            company_id=company_id,
            channel=channel,
            recipient_email=email,
            recipient_role=recipient.role,
            subject=message.subject,
        )

        if channel != NotificationChannel.EMAIL:
            logger.info("notification_channel_not_implemented", channel=channel.value, recipient=email)
            log = await self.write_log(
                **base,
                status=NotificationLogStatus.FAILED,
                error_message=f"Channel {channel.value} not implemented",
                diagnostics=dict(diagnostics, reason=DispatchOutcome.NOT_IMPLEMENTED.value),
            )
            return DispatchResult(
                success=False,
                outcome=DispatchOutcome.NOT_IMPLEMENTED,
                recipient=email,
                channel=channel,
                log_id=log.id,
                error=f"Channel {channel.value} not implemented",
            )

        previous = await self.find_recent_sent(event_code, email, business_key)
        if previous is not None:
            log = await self.log_duplicate(base, diagnostics, previous_log_id=previous.id)
            return DispatchResult(
                success=True,
                outcome=DispatchOutcome.DUPLICATE_SKIPPED,
                recipient=email,
                channel=channel,
                log_id=log.id,
            )

        now = self._clock()
        if company_id and await self.company_configs.is_in_quiet_hours(company_id, now):
            scheduled_for = await self.company_configs.get_quiet_hours_end(company_id, now)
            if scheduled_for is not None:
                pending = await self.find_pending_queued(event_code, email, business_key)
                if pending is not None:
                    log = await self.log_duplicate(base, diagnostics, previous_queue_id=pending.id)
                    return DispatchResult(
                        success=True,
                        outcome=DispatchOutcome.DUPLICATE_SKIPPED,
                        recipient=email,
                        channel=channel,
                        log_id=log.id,
                        queue_id=pending.id,
                    )

                item = await self.enqueue(
                    recipient=recipient,
                    message=message,
                    event_code=event_code,
                    event_id=event_id,
                    business_key=business_key,
                    company_id=company_id,
                    channel=channel,
                    from_name=from_name,
                    scheduled_for=scheduled_for.timestamp(),
                )
                return DispatchResult(
                    success=True,
                    outcome=DispatchOutcome.QUEUED,
                    recipient=email,
                    channel=channel,
                    queue_id=item.id,
                )

        if demo_mode:
            log = await self.write_log(
                **base,
                status=NotificationLogStatus.REJECTED,
                error_message="Demo mode: delivery suppressed",
                diagnostics=dict(diagnostics, reason=DispatchOutcome.DEMO.value, demo_mode=True),
            )
            logger.info("notification_demo_mode", recipient=email, subject=message.subject)
            return DispatchResult(
                success=True,
                outcome=DispatchOutcome.DEMO,
                recipient=email,
                channel=channel,
                log_id=log.id,
            )

        return await self.deliver(
            recipient=recipient,
            message=message,
            event_code=event_code,
            event_id=event_id,
            business_key=business_key,
            company_id=company_id,
            from_name=from_name,
            diagnostics=diagnostics,
        )

    async def deliver(
        self,
        *,
        recipient: ResolvedRecipient,
        message: RenderedMessage,
        event_code: str,
        company_id: Optional[str],
        event_id: Optional[str] = None,
        business_key: Optional[str] = None,
        from_name: Optional[str] = None,
        queue_id: Optional[str] = None,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Send through the e-mail collaborator and log the outcome, no gating"""
        email = recipient.email.lower()
        cc, bcc = [], []
        if company_id:
            branding = await self.company_configs.get_branding(company_id)
            cc, bcc = branding.cc_emails, branding.bcc_emails

        try:
            result = await self.email_sender.send_email(
                to=email,
                subject=message.subject,
                body=message.body,
                from_name=from_name,
                cc=cc or None,
                bcc=bcc or None,
            )
        except Exception as e:
            # Senders are expected to return failures, not raise them
            logger.error("notification_sender_raised", recipient=email, error=str(e), exc_info=True)
            result = EmailResult(success=False, error=str(e), error_code="SENDER_EXCEPTION")

        log = await self.write_log(
            event_code=event_code,
            event_id=event_id,
            business_key=business_key,
            company_id=company_id,
            channel=NotificationChannel.EMAIL,
            recipient_email=email,
            recipient_role=recipient.role,
            subject=message.subject,
            status=NotificationLogStatus.SENT if result.success else NotificationLogStatus.FAILED,
            provider_message_id=result.message_id,
            error_message=result.error,
            queue_id=queue_id,
            diagnostics=dict(diagnostics or {}, error_code=result.error_code),
        )

        if result.success:
            logger.info(
                "notification_sent",
                event_code=event_code,
                recipient=email,
                message_id=result.message_id,
                log_id=log.id,
            )
        else:
            logger.error(
                "notification_failed",
                event_code=event_code,
                recipient=email,
                error=result.error,
                log_id=log.id,
            )

        return DispatchResult(
            success=result.success,
            outcome=DispatchOutcome.SENT if result.success else DispatchOutcome.FAILED,
            recipient=email,
            channel=NotificationChannel.EMAIL,
            log_id=log.id,
            queue_id=queue_id,
            message_id=result.message_id,
            error=result.error,
        )

    async def send_notification(
        self,
        event_code: str,
        recipient_email: str,
        context: Dict[str, Any],
        *,
        recipient_name: Optional[str] = None,
        company_id: Optional[str] = None,
        business_key: Optional[str] = None,
    ) -> DispatchResult:
        """
        Send a stored event template to one address outside of any workflow event.

        Shares the dedupe and quiet-hours gate with event-triggered sends.
        """
        event_code = event_code.upper()
        email = (recipient_email or "").strip().lower()

        if not is_valid_email(email):
            return DispatchResult(
                success=False,
                outcome=DispatchOutcome.FAILED,
                recipient=email,
                error=f"Invalid email format: {recipient_email}",
            )

        if company_id and not await self.company_configs.is_event_enabled(company_id, event_code):
            logger.info("notification_event_disabled", company_id=company_id, event_code=event_code)
            return DispatchResult(
                success=True,
                outcome=DispatchOutcome.DISABLED,
                recipient=email,
            )

        template = await self.templates.find(event_code=event_code)
        if template is None:
            logger.warning("notification_template_missing", event_code=event_code)
            return DispatchResult(
                success=False,
                outcome=DispatchOutcome.FAILED,
                recipient=email,
                error=f"Notification template not found for event: {event_code}",
            )

        branding = None
        if company_id:
            template = await self.company_configs.apply_template_override(
                company_id, event_code, template
            )
            branding = await self.company_configs.get_branding(company_id)

        values = dict(context)
        if branding is not None:
            values.setdefault("brand_name", branding.brand_name)
            values.setdefault("brand_color", branding.brand_color)
        values.setdefault("recipient_name", recipient_name or "")

        missing = find_missing_placeholders(f"{template.subject} {template.body}", values)
        if missing:
            logger.warning(
                "notification_placeholders_missing",
                event_code=event_code,
                missing=missing,
                recipient=email,
            )

        return await self.dispatch(
            recipient=ResolvedRecipient(
                email=email,
                name=recipient_name or email,
                role="RECIPIENT",
                resolved_by=RecipientResolverType.CUSTOM,
            ),
            message=render_message(template, values),
            event_code=event_code,
            company_id=company_id,
            business_key=business_key,
            from_name=f"{branding.brand_name} Notifications" if branding else settings.email_from_name,
            diagnostics={"direct": True},
        )

    # ========================================================================
    # Persistence
    # ========================================================================

    async def find_recent_sent(
        self, event_code: str, recipient_email: str, business_key: Optional[str]
    ) -> Optional[NotificationLog]:
        # Without a business key there is nothing to tell repeats from new messages
        if not business_key:
            return None

        since = self._clock().timestamp() - settings.notification_dedupe_window_seconds
        result = await self.db.execute(
            select(NotificationLog)
            .where(
                NotificationLog.event_code == event_code,
                NotificationLog.recipient_email == recipient_email.lower(),
                NotificationLog.business_key == business_key,
                NotificationLog.status == NotificationLogStatus.SENT.value,
                NotificationLog.sent_at >= since,
            )
            .order_by(NotificationLog.sent_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_pending_queued(
        self,
        event_code: str,
        recipient_email: str,
        business_key: Optional[str],
        exclude_id: Optional[str] = None,
    ) -> Optional[NotificationQueueItem]:
        """A queued copy of the same message that has not been delivered yet"""
        if not business_key:
            return None

        query = select(NotificationQueueItem).where(
            NotificationQueueItem.event_code == event_code,
            NotificationQueueItem.recipient_email == recipient_email.lower(),
            NotificationQueueItem.business_key == business_key,
            NotificationQueueItem.status.in_(
                [QueueStatus.PENDING.value, QueueStatus.PROCESSING.value]
            ),
        )
        if exclude_id:
            query = query.where(NotificationQueueItem.id != exclude_id)
        result = await self.db.execute(
            query.order_by(NotificationQueueItem.created_at).limit(1)
        )
        return result.scalar_one_or_none()

    async def log_duplicate(
        self,
        base: Dict[str, Any],
        diagnostics: Dict[str, Any],
        previous_log_id: Optional[str] = None,
        previous_queue_id: Optional[str] = None,
        queue_id: Optional[str] = None,
    ) -> NotificationLog:
        previous = previous_log_id or previous_queue_id
        log = await self.write_log(
            **base,
            status=NotificationLogStatus.REJECTED,
            error_message=f"Duplicate notification skipped (previous: {previous})",
            queue_id=queue_id,
            diagnostics=dict(
                diagnostics,
                reason=DispatchOutcome.DUPLICATE_SKIPPED.value,
                previous_log_id=previous_log_id,
                previous_queue_id=previous_queue_id,
            ),
        )
        logger.info(
            "notification_duplicate_skipped",
            event_code=base["event_code"],
            recipient=base["recipient_email"],
            business_key=base["business_key"],
            previous=previous,
        )
        return log

    async def write_log(
        self,
        *,
        event_code: str,
        recipient_email: str,
        status: NotificationLogStatus,
        event_id: Optional[str] = None,
        business_key: Optional[str] = None,
        company_id: Optional[str] = None,
        channel: NotificationChannel = NotificationChannel.EMAIL,
        recipient_role: Optional[str] = None,
        subject: Optional[str] = None,
        provider_message_id: Optional[str] = None,
        error_message: Optional[str] = None,
        queue_id: Optional[str] = None,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> NotificationLog:
        now = self._clock().timestamp()
        log = NotificationLog(
            event_id=event_id,
            event_code=event_code,
            business_key=business_key,
            queue_id=queue_id,
            company_id=company_id,
            channel=NotificationChannel(channel).value,
            recipient_email=recipient_email.lower(),
            recipient_role=recipient_role,
            subject=subject,
            status=NotificationLogStatus(status).value,
            provider_message_id=provider_message_id,
            error_message=error_message,
            sent_at=now if status == NotificationLogStatus.SENT else None,
            diagnostics=json.dumps(diagnostics or {}, default=str),
            created_at=now,
        )
        self.db.add(log)
        await self.db.commit()
        return log

    async def enqueue(
        self,
        *,
        recipient: ResolvedRecipient,
        message: RenderedMessage,
        event_code: str,
        company_id: Optional[str],
        scheduled_for: float,
        channel: NotificationChannel = NotificationChannel.EMAIL,
        event_id: Optional[str] = None,
        business_key: Optional[str] = None,
        from_name: Optional[str] = None,
    ) -> NotificationQueueItem:
        now = self._clock().timestamp()
        item = NotificationQueueItem(
            company_id=company_id,
            event_id=event_id,
            event_code=event_code,
            business_key=business_key,
            channel=NotificationChannel(channel).value,
            recipient_email=recipient.email.lower(),
            recipient_name=recipient.name,
            recipient_role=recipient.role,
            subject=message.subject,
            body=message.body,
            from_name=from_name,
            status=QueueStatus.PENDING.value,
            attempts=0,
            max_attempts=settings.notification_queue_max_attempts,
            scheduled_for=scheduled_for,
            created_at=now,
            updated_at=now,
        )
        self.db.add(item)
        await self.db.commit()

        logger.info(
            "notification_queued_for_quiet_hours",
            queue_id=item.id,
            company_id=company_id,
            recipient=item.recipient_email,
            scheduled_for=datetime.fromtimestamp(scheduled_for, timezone.utc).isoformat(),
        )
        return item
