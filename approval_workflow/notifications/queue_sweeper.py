"""
Quiet-hours queue sweeper.
Runs as a background task delivering queued notifications once they are due.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from datetime import datetime
from typing import Callable, Optional
import asyncio
import structlog

from approval_workflow.config.settings import settings
from approval_workflow.models.database import Database
from approval_workflow.models.orm import NotificationQueueItem
from approval_workflow.models.notification_schemas import (
    NotificationLogStatus,
    QueueStatus,
    RecipientResolverType,
    RenderedMessage,
    ResolvedRecipient,
)
from approval_workflow.notifications.company_config import (
    CompanyConfigCache,
    CompanyNotificationConfigService,
)
from approval_workflow.notifications.dispatcher import EmailSender, NotificationDispatcher, utc_now

logger = structlog.get_logger()


class NotificationQueueSweeper:
    """
    Background service that claims due queue items and sends them.

    Items are claimed one at a time with a conditional PENDING -> PROCESSING
    update, so several sweepers can share one queue. Items left in
    PROCESSING by a crashed sweeper return to PENDING after the stale
    claim threshold.
    """

    def __init__(
        self,
        db: Database,
        email_sender: EmailSender,
        config_cache: Optional[CompanyConfigCache] = None,
        check_interval: int = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.email_sender = email_sender
        self.config_cache = config_cache or CompanyConfigCache()
        self.check_interval = check_interval or settings.notification_queue_check_interval_seconds
        self._clock = clock
        self._running = False
        self._task: asyncio.Task = None

    async def start(self):
        """Start the sweep loop"""
        if self._running:
            logger.warning("queue_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("queue_sweeper_started", check_interval=self.check_interval)

    async def stop(self):
        """Stop the sweep loop"""
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("queue_sweeper_stopped")

    async def _sweep_loop(self):
        while self._running:
            try:
                # Sweep immediately on first iteration, then sleep
                async with self.db.session() as session:
                    await self.sweep(session)
                await asyncio.sleep(self.check_interval)

            except asyncio.CancelledError:
                logger.info("queue_sweeper_cancelled")
                break
            except Exception as e:
                logger.error("queue_sweeper_error", error=str(e), exc_info=True)
                await asyncio.sleep(self.check_interval)

    async def sweep(self, session: AsyncSession) -> dict:
        """One pass over the queue. Returns counts per outcome."""
        stats = {
            "reclaimed": 0, "claimed": 0, "sent": 0, "skipped": 0,
            "failed": 0, "retrying": 0, "requeued": 0,
        }

        stats["reclaimed"] = await self.reclaim_stale(session)

        now = self._clock().timestamp()
        result = await session.execute(
            select(NotificationQueueItem.id)
            .where(
                NotificationQueueItem.status == QueueStatus.PENDING.value,
                NotificationQueueItem.scheduled_for <= now,
            )
            .order_by(NotificationQueueItem.scheduled_for)
            .limit(settings.notification_queue_batch_size)
        )
        due_ids = list(result.scalars().all())
        if not due_ids:
            return stats

        company_configs = CompanyNotificationConfigService(session, self.config_cache)
        dispatcher = NotificationDispatcher(session, self.email_sender, company_configs, clock=self._clock)

        for item_id in due_ids:
            try:
                item = await self.claim(session, item_id)
                if item is None:
                    continue
                stats["claimed"] += 1
                outcome = await self._process(session, item, company_configs, dispatcher)
                stats[outcome] += 1
            except Exception as e:
                await session.rollback()
                logger.error("queue_item_processing_error", queue_id=item_id, error=str(e), exc_info=True)

        logger.info("queue_sweep_complete", **stats)
        return stats

    async def claim(self, session: AsyncSession, item_id: str) -> Optional[NotificationQueueItem]:
        """PENDING -> PROCESSING, or None if another worker got there first"""
        now = self._clock().timestamp()
        result = await session.execute(
            update(NotificationQueueItem)
            .where(
                NotificationQueueItem.id == item_id,
                NotificationQueueItem.status == QueueStatus.PENDING.value,
            )
            .values(status=QueueStatus.PROCESSING.value, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount == 0:
            logger.debug("queue_item_already_claimed", queue_id=item_id)
            return None

        row = await session.execute(
            select(NotificationQueueItem).where(NotificationQueueItem.id == item_id)
        )
        item = row.scalar_one()
        await session.refresh(item)
        return item

    async def reclaim_stale(self, session: AsyncSession) -> int:
        cutoff = self._clock().timestamp() - settings.notification_queue_stale_claim_seconds
        result = await session.execute(
            update(NotificationQueueItem)
            .where(
                NotificationQueueItem.status == QueueStatus.PROCESSING.value,
                NotificationQueueItem.claimed_at < cutoff,
            )
            .values(status=QueueStatus.PENDING.value, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount:
            logger.warning("queue_stale_claims_reclaimed", count=result.rowcount)
        return result.rowcount or 0

    async def _process(
        self,
        session: AsyncSession,
        item: NotificationQueueItem,
        company_configs: CompanyNotificationConfigService,
        dispatcher: NotificationDispatcher,
    ) -> str:
        now = self._clock()

        if item.company_id and await company_configs.is_in_quiet_hours(item.company_id, now):
            scheduled_for = await company_configs.get_quiet_hours_end(item.company_id, now)
            if scheduled_for is not None:
                item.status = QueueStatus.PENDING.value
                item.scheduled_for = scheduled_for.timestamp()
                item.claimed_at = None
                item.updated_at = now.timestamp()
                await session.commit()
                logger.info("queue_item_requeued_quiet_hours", queue_id=item.id)
                return "requeued"

        recipient = ResolvedRecipient(
            email=item.recipient_email,
            name=item.recipient_name or item.recipient_email,
            role=item.recipient_role or "RECIPIENT",
            resolved_by=RecipientResolverType.CUSTOM,
        )
        message = RenderedMessage(subject=item.subject, body=item.body)

        previous = await dispatcher.find_recent_sent(
            item.event_code, item.recipient_email, item.business_key
        )
        if previous is not None:
            await dispatcher.log_duplicate(
                dict(
                    event_code=item.event_code,
                    event_id=item.event_id,
                    business_key=item.business_key,
                    company_id=item.company_id,
                    channel=item.channel,
                    recipient_email=item.recipient_email,
                    recipient_role=item.recipient_role,
                    subject=item.subject,
                ),
                {"queued": True},
                previous_log_id=previous.id,
                queue_id=item.id,
            )
            self._finish(item, QueueStatus.SKIPPED, now.timestamp())
            await session.commit()
            return "skipped"

        if settings.notifications_demo_mode:
            await dispatcher.write_log(
                event_code=item.event_code,
                event_id=item.event_id,
                business_key=item.business_key,
                company_id=item.company_id,
                recipient_email=item.recipient_email,
                recipient_role=item.recipient_role,
                subject=item.subject,
                status=NotificationLogStatus.REJECTED,
                error_message="Demo mode: delivery suppressed",
                queue_id=item.id,
                diagnostics={"demo_mode": True, "queued": True},
            )
            self._finish(item, QueueStatus.SENT, now.timestamp())
            await session.commit()
            return "sent"

        result = await dispatcher.deliver(
            recipient=recipient,
            message=message,
            event_code=item.event_code,
            event_id=item.event_id,
            business_key=item.business_key,
            company_id=item.company_id,
            from_name=item.from_name,
            queue_id=item.id,
            diagnostics={"queued": True, "attempt": item.attempts + 1},
        )

        item.attempts = (item.attempts or 0) + 1
        if result.success:
            self._finish(item, QueueStatus.SENT, now.timestamp())
            await session.commit()
            return "sent"

        item.last_error = result.error
        if item.attempts >= item.max_attempts:
            self._finish(item, QueueStatus.FAILED, now.timestamp())
            await session.commit()
            logger.error(
                "queue_item_failed_permanently",
                queue_id=item.id,
                attempts=item.attempts,
                error=result.error,
            )
            return "failed"

        item.status = QueueStatus.PENDING.value
        item.scheduled_for = now.timestamp() + settings.notification_queue_retry_delay_seconds
        item.claimed_at = None
        item.updated_at = now.timestamp()
        await session.commit()
        logger.warning(
            "queue_item_retry_scheduled",
            queue_id=item.id,
            attempts=item.attempts,
            max_attempts=item.max_attempts,
            error=result.error,
        )
        return "retrying"

    @staticmethod
    def _finish(item: NotificationQueueItem, status: QueueStatus, at: float):
        item.status = status.value
        item.processed_at = at
        item.claimed_at = None
        item.updated_at = at
