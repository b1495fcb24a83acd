#!/usr/bin/env python3
"""
Test: Queue Sweeper
Purpose: Verify deferred notifications are claimed, delivered, retried and recovered
"""

import asyncio
import sys
from datetime import datetime, timezone

from sqlalchemy import select

from fixtures import (
    TestContext, COMPANY_ID,
    set_company_config, override_settings, MockEmailSender, FixedClock,
    assert_equal, assert_true, assert_is_none, run_tests,
)

from approval_workflow.models.orm import NotificationLog, NotificationQueueItem
from approval_workflow.models.notification_schemas import (
    DispatchOutcome,
    RecipientResolverType,
    RenderedMessage,
    ResolvedRecipient,
)
from approval_workflow.notifications.company_config import CompanyConfigCache, CompanyNotificationConfigService
from approval_workflow.notifications.dispatcher import NotificationDispatcher
from approval_workflow.notifications.queue_sweeper import NotificationQueueSweeper


async def queue_item(session, item_id, scheduled_for, status="PENDING", claimed_at=None, **fields):
    values = dict(
        id=item_id,
        company_id=COMPANY_ID,
        event_id="WFE-1",
        event_code="ENTITY_SUBMITTED",
        business_key=f"ORDER:{item_id}:LOCATION_APPROVAL:PENDING_LOCATION_APPROVAL",
        channel="EMAIL",
        recipient_email="loc.admin@example.com",
        recipient_name="Priya Shah",
        recipient_role="LOCATION_ADMIN",
        subject="Order PR-1 submitted for approval",
        body="<p>Please review</p>",
        from_name="UDS Notifications",
        status=status,
        attempts=0,
        max_attempts=3,
        scheduled_for=scheduled_for,
        claimed_at=claimed_at,
    )
    values.update(fields)
    item = NotificationQueueItem(**values)
    session.add(item)
    await session.commit()
    return item


async def logs_for(session, queue_id):
    result = await session.execute(select(NotificationLog).where(NotificationLog.queue_id == queue_id))
    return list(result.scalars().all())


async def test_due_items_are_sent():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            clock = FixedClock()
            now = clock().timestamp()
            await queue_item(session, "Q-DUE", now - 60)
            await queue_item(session, "Q-LATER", now + 3600)

            sender = MockEmailSender()
            sweeper = NotificationQueueSweeper(ctx.db, sender, clock=clock)
            stats = await sweeper.sweep(session)

            assert_equal(stats["claimed"], 1)
            assert_equal(stats["sent"], 1)
            assert_equal(sender.recipients(), ["loc.admin@example.com"])
            assert_equal(sender.sent[0]["from_name"], "UDS Notifications")

            due = await session.get(NotificationQueueItem, "Q-DUE")
            assert_equal(due.status, "SENT")
            assert_equal(due.attempts, 1)
            assert_equal(due.processed_at, now)
            assert_is_none(due.claimed_at)

            later = await session.get(NotificationQueueItem, "Q-LATER")
            assert_equal(later.status, "PENDING", "Items not yet due are left alone")

            rows = await logs_for(session, "Q-DUE")
            assert_equal([row.status for row in rows], ["SENT"])
            assert_true(rows[0].to_dict()["diagnostics"]["queued"])


async def test_claim_is_exclusive():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            clock = FixedClock()
            await queue_item(session, "Q-1", clock().timestamp())
            sweeper = NotificationQueueSweeper(ctx.db, MockEmailSender(), clock=clock)

            first = await sweeper.claim(session, "Q-1")
            assert_equal(first.status, "PROCESSING")
            assert_equal(first.claimed_at, clock().timestamp())

            second = await sweeper.claim(session, "Q-1")
            assert_is_none(second, "Second claim must lose")


async def test_failed_sends_retry_then_fail():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            clock = FixedClock()
            await queue_item(session, "Q-1", clock().timestamp())
            sweeper = NotificationQueueSweeper(ctx.db, MockEmailSender(fail=True), clock=clock)

            first = await sweeper.sweep(session)
            assert_equal(first["retrying"], 1)
            item = await session.get(NotificationQueueItem, "Q-1")
            assert_equal(item.status, "PENDING")
            assert_equal(item.attempts, 1)
            assert_equal(item.last_error, "Mail API returned 503")
            assert_equal(item.scheduled_for, clock().timestamp() + 300)

            # Not due again until the retry delay has passed
            early = await sweeper.sweep(session)
            assert_equal(early["claimed"], 0)

            clock.advance(seconds=300)
            second = await sweeper.sweep(session)
            assert_equal(second["retrying"], 1)

            clock.advance(seconds=300)
            third = await sweeper.sweep(session)
            assert_equal(third["failed"], 1)

            item = await session.get(NotificationQueueItem, "Q-1")
            assert_equal(item.status, "FAILED")
            assert_equal(item.attempts, 3)
            assert_equal(item.processed_at, clock().timestamp())

            rows = await logs_for(session, "Q-1")
            assert_equal([row.status for row in rows], ["FAILED", "FAILED", "FAILED"])


async def test_stale_claims_are_reclaimed():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            clock = FixedClock()
            now = clock().timestamp()
            await queue_item(session, "Q-STALE", now - 2000, status="PROCESSING", claimed_at=now - 1000)
            await queue_item(session, "Q-BUSY", now - 2000, status="PROCESSING", claimed_at=now - 10)

            sender = MockEmailSender()
            sweeper = NotificationQueueSweeper(ctx.db, sender, clock=clock)
            stats = await sweeper.sweep(session)

            assert_equal(stats["reclaimed"], 1)
            assert_equal(stats["sent"], 1, "Reclaimed item is delivered in the same pass")
            assert_equal(sender.count(), 1)

            busy = await session.get(NotificationQueueItem, "Q-BUSY")
            await session.refresh(busy)
            assert_equal(busy.status, "PROCESSING", "Recent claims belong to a live worker")


async def test_still_quiet_is_requeued():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await set_company_config(
                session,
                quiet_hours_enabled=True,
                quiet_hours_start="22:00",
                quiet_hours_end="08:00",
                quiet_hours_timezone="Asia/Kolkata",
            )
            # 23:00 Asia/Kolkata
            clock = FixedClock(datetime(2024, 6, 3, 17, 30, tzinfo=timezone.utc))
            await queue_item(session, "Q-1", clock().timestamp() - 60)

            sender = MockEmailSender()
            sweeper = NotificationQueueSweeper(ctx.db, sender, clock=clock)
            stats = await sweeper.sweep(session)

            assert_equal(stats["requeued"], 1)
            assert_equal(sender.count(), 0)
            item = await session.get(NotificationQueueItem, "Q-1")
            assert_equal(item.status, "PENDING")
            assert_equal(item.attempts, 0, "Requeueing does not consume an attempt")
            assert_equal(item.scheduled_for, datetime(2024, 6, 4, 2, 31, tzinfo=timezone.utc).timestamp())


async def test_repeat_sends_in_quiet_hours_deliver_once():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await set_company_config(
                session,
                quiet_hours_enabled=True,
                quiet_hours_start="22:00",
                quiet_hours_end="08:00",
                quiet_hours_timezone="Asia/Kolkata",
            )
            # 23:00 Asia/Kolkata
            clock = FixedClock(datetime(2024, 6, 3, 17, 30, tzinfo=timezone.utc))
            sender = MockEmailSender()
            cache = CompanyConfigCache()
            dispatcher = NotificationDispatcher(
                session, sender, CompanyNotificationConfigService(session, cache), clock=clock
            )
            recipient = ResolvedRecipient(
                email="loc.admin@example.com", name="Priya Shah", role="LOCATION_ADMIN",
                resolved_by=RecipientResolverType.CURRENT_STAGE_ROLE,
            )
            message = RenderedMessage(subject="Order PR-1 submitted for approval", body="<p>Please review</p>")

            outcomes = []
            for _ in range(2):
                result = await dispatcher.dispatch(
                    recipient=recipient,
                    message=message,
                    event_code="ENTITY_SUBMITTED",
                    company_id=COMPANY_ID,
                    business_key="ORDER:ORD-1:LOCATION_APPROVAL:PENDING_LOCATION_APPROVAL",
                )
                outcomes.append(result.outcome)
            assert_equal(outcomes, [DispatchOutcome.QUEUED, DispatchOutcome.DUPLICATE_SKIPPED])

            queued = await session.execute(select(NotificationQueueItem))
            assert_equal(len(queued.scalars().all()), 1, "Only one copy waits for the window to end")

            # 09:00 Asia/Kolkata
            clock.now = datetime(2024, 6, 4, 3, 30, tzinfo=timezone.utc)
            sweeper = NotificationQueueSweeper(ctx.db, sender, config_cache=cache, clock=clock)
            stats = await sweeper.sweep(session)

            assert_equal(stats["sent"], 1)
            assert_equal(sender.count(), 1)
            sent_logs = await session.execute(
                select(NotificationLog).where(NotificationLog.status == "SENT")
            )
            assert_equal(len(sent_logs.scalars().all()), 1)


async def test_queued_copy_of_sent_message_is_skipped():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            clock = FixedClock()
            now = clock().timestamp()
            key = "ORDER:ORD-1:LOCATION_APPROVAL:PENDING_LOCATION_APPROVAL"
            await queue_item(session, "Q-FIRST", now - 120, business_key=key, created_at=now - 120)
            await queue_item(session, "Q-SECOND", now - 60, business_key=key, created_at=now - 60)

            sender = MockEmailSender()
            sweeper = NotificationQueueSweeper(ctx.db, sender, clock=clock)
            stats = await sweeper.sweep(session)

            assert_equal(stats["sent"], 1)
            assert_equal(stats["skipped"], 1)
            assert_equal(sender.count(), 1)

            second = await session.get(NotificationQueueItem, "Q-SECOND")
            assert_equal(second.status, "SKIPPED")
            assert_equal(second.attempts, 0)

            rows = await logs_for(session, "Q-SECOND")
            assert_equal([row.status for row in rows], ["REJECTED"])
            assert_equal(rows[0].to_dict()["diagnostics"]["reason"], "DUPLICATE_SKIPPED")


async def test_demo_mode_suppresses_queued_send():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            clock = FixedClock()
            await queue_item(session, "Q-1", clock().timestamp())

            sender = MockEmailSender()
            sweeper = NotificationQueueSweeper(ctx.db, sender, clock=clock)
            with override_settings(notifications_demo_mode=True):
                stats = await sweeper.sweep(session)

            assert_equal(stats["sent"], 1)
            assert_equal(sender.count(), 0)
            item = await session.get(NotificationQueueItem, "Q-1")
            assert_equal(item.status, "SENT")

            rows = await logs_for(session, "Q-1")
            assert_equal([row.status for row in rows], ["REJECTED"])


async def test_background_loop():
    async with TestContext() as ctx:
        clock = FixedClock()
        async with ctx.get_session() as session:
            await queue_item(session, "Q-1", clock().timestamp())

        sender = MockEmailSender()
        sweeper = NotificationQueueSweeper(ctx.db, sender, check_interval=3600, clock=clock)
        await sweeper.start()
        await sweeper.start()  # second start is ignored

        try:
            for _ in range(50):
                if sender.count():
                    break
                await asyncio.sleep(0.05)
        finally:
            await sweeper.stop()

        assert_equal(sender.count(), 1, "First sweep runs immediately on start")
        await sweeper.stop()


async def main():
    return await run_tests("Queue Sweeper Tests", [
        ("Due items are sent", test_due_items_are_sent),
        ("Claim is exclusive", test_claim_is_exclusive),
        ("Failed sends retry then fail", test_failed_sends_retry_then_fail),
        ("Stale claims are reclaimed", test_stale_claims_are_reclaimed),
        ("Still quiet is requeued", test_still_quiet_is_requeued),
        ("Repeat sends in quiet hours deliver once", test_repeat_sends_in_quiet_hours_deliver_once),
        ("Queued copy of sent message is skipped", test_queued_copy_of_sent_message_is_skipped),
        ("Demo mode suppresses queued send", test_demo_mode_suppresses_queued_send),
        ("Background loop", test_background_loop),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
