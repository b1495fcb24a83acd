#!/usr/bin/env python3
"""
Test: Dispatch Gate and Quiet Hours
Purpose: Verify dedupe, quiet-hours deferral, demo mode and direct sends
"""

import asyncio
import sys
from datetime import datetime, timezone

from sqlalchemy import select

from fixtures import (
    TestContext, COMPANY_ID,
    set_company_config, MockEmailSender, FixedClock,
    assert_equal, assert_true, assert_false, assert_in, assert_is_none, run_tests,
)

from approval_workflow.models.orm import NotificationLog, NotificationQueueItem, NotificationTemplate
from approval_workflow.models.notification_schemas import (
    CompanyNotificationSettings,
    DispatchOutcome,
    EventConfigOverride,
    NotificationChannel,
    RecipientResolverType,
    RenderedMessage,
    ResolvedRecipient,
)
from approval_workflow.notifications.company_config import (
    CompanyConfigCache,
    CompanyNotificationConfigService,
    is_within_quiet_hours,
    quiet_hours_end,
)
from approval_workflow.notifications.dispatcher import NotificationDispatcher

# 23:00 in Asia/Kolkata
LATE_EVENING = datetime(2024, 6, 3, 17, 30, tzinfo=timezone.utc)
# 09:00 in Asia/Kolkata the next morning
NEXT_MORNING = datetime(2024, 6, 4, 3, 30, tzinfo=timezone.utc)

RECIPIENT = ResolvedRecipient(
    email="Asha.Rao@example.com", name="Asha Rao", role="REQUESTOR",
    resolved_by=RecipientResolverType.REQUESTOR,
)
MESSAGE = RenderedMessage(subject="Order PR-1 submitted", body="<p>Please review</p>")


def make_dispatcher(session, sender, clock, cache=None):
    configs = CompanyNotificationConfigService(session, cache or CompanyConfigCache())
    return NotificationDispatcher(session, sender, configs, clock=clock)


async def dispatch(dispatcher, business_key="ORDER:ORD-1:LOCATION_APPROVAL:PENDING", **kwargs):
    kwargs.setdefault("company_id", COMPANY_ID)
    return await dispatcher.dispatch(
        recipient=RECIPIENT,
        message=MESSAGE,
        event_code="ENTITY_SUBMITTED",
        business_key=business_key,
        **kwargs,
    )


async def all_logs(session):
    result = await session.execute(select(NotificationLog))
    return list(result.scalars().all())


def quiet_config(**fields):
    values = dict(
        company_id=COMPANY_ID,
        quiet_hours_enabled=True,
        quiet_hours_start="22:00",
        quiet_hours_end="08:00",
        quiet_hours_timezone="Asia/Kolkata",
    )
    values.update(fields)
    return CompanyNotificationSettings(**values)


async def test_quiet_hours_window():
    overnight = quiet_config()
    assert_true(is_within_quiet_hours(overnight, LATE_EVENING))
    assert_true(is_within_quiet_hours(overnight, datetime(2024, 6, 4, 1, 30, tzinfo=timezone.utc)))
    assert_false(is_within_quiet_hours(overnight, NEXT_MORNING))
    assert_false(
        is_within_quiet_hours(overnight, datetime(2024, 6, 4, 2, 30, tzinfo=timezone.utc)),
        "08:00 local is already outside the window",
    )

    daytime = quiet_config(quiet_hours_start="12:00", quiet_hours_end="14:00", quiet_hours_timezone="UTC")
    assert_true(is_within_quiet_hours(daytime, datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)))
    assert_false(is_within_quiet_hours(daytime, datetime(2024, 6, 3, 14, 0, tzinfo=timezone.utc)))

    assert_false(is_within_quiet_hours(None, LATE_EVENING))
    assert_false(is_within_quiet_hours(quiet_config(quiet_hours_enabled=False), LATE_EVENING))
    assert_false(is_within_quiet_hours(quiet_config(quiet_hours_end=None), LATE_EVENING))

    # Unknown zones fall back to the default zone instead of failing
    assert_true(is_within_quiet_hours(quiet_config(quiet_hours_timezone="Mars/Olympus"), LATE_EVENING))


async def test_quiet_hours_end():
    overnight = quiet_config()

    end = quiet_hours_end(overnight, LATE_EVENING)
    assert_equal(end.astimezone(timezone.utc), datetime(2024, 6, 4, 2, 31, tzinfo=timezone.utc),
                 "08:00 IST next day plus a one minute buffer")

    after_midnight = quiet_hours_end(overnight, datetime(2024, 6, 4, 1, 30, tzinfo=timezone.utc))
    assert_equal(after_midnight.astimezone(timezone.utc), datetime(2024, 6, 4, 2, 31, tzinfo=timezone.utc))

    no_buffer = quiet_hours_end(overnight, LATE_EVENING, buffer_minutes=0)
    assert_equal(no_buffer.astimezone(timezone.utc), datetime(2024, 6, 4, 2, 30, tzinfo=timezone.utc))

    assert_is_none(quiet_hours_end(None, LATE_EVENING))


async def test_company_config_cache():
    now = [1000.0]
    cache = CompanyConfigCache(ttl_seconds=300, clock=lambda: now[0])

    assert_equal(cache.get(COMPANY_ID), (False, None))
    cache.set(COMPANY_ID, None)
    assert_equal(cache.get(COMPANY_ID), (True, None), "Misses are cached too")

    now[0] += 299
    assert_true(cache.get(COMPANY_ID)[0])
    now[0] += 1
    assert_false(cache.get(COMPANY_ID)[0], "Entry expires at the TTL")

    cache.set(COMPANY_ID, quiet_config())
    cache.invalidate(COMPANY_ID)
    assert_false(cache.get(COMPANY_ID)[0])


async def test_duplicate_within_window_is_skipped():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            clock = FixedClock()
            sender = MockEmailSender()
            dispatcher = make_dispatcher(session, sender, clock)

            first = await dispatch(dispatcher)
            assert_equal(first.outcome, DispatchOutcome.SENT)
            assert_equal(first.recipient, "asha.rao@example.com")

            clock.advance(seconds=120)
            second = await dispatch(dispatcher)
            assert_true(second.success)
            assert_equal(second.outcome, DispatchOutcome.DUPLICATE_SKIPPED)
            assert_equal(sender.count(), 1)

            other_key = await dispatch(dispatcher, business_key="ORDER:ORD-1:COMPANY_APPROVAL:PENDING")
            assert_equal(other_key.outcome, DispatchOutcome.SENT, "A new state change is not a duplicate")

            clock.advance(seconds=300)
            later = await dispatch(dispatcher)
            assert_equal(later.outcome, DispatchOutcome.SENT, "Window has passed")

            no_key = [await dispatch(dispatcher, business_key=None) for _ in range(2)]
            assert_equal([r.outcome for r in no_key], [DispatchOutcome.SENT, DispatchOutcome.SENT])

            rows = await all_logs(session)
            skipped = [row for row in rows if row.status == "REJECTED"]
            assert_equal(len(skipped), 1)
            assert_in(first.log_id, skipped[0].error_message)
            assert_equal(skipped[0].to_dict()["diagnostics"]["reason"], "DUPLICATE_SKIPPED")


async def test_quiet_hours_defers_to_queue():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await set_company_config(
                session,
                quiet_hours_enabled=True,
                quiet_hours_start="22:00",
                quiet_hours_end="08:00",
                quiet_hours_timezone="Asia/Kolkata",
            )
            clock = FixedClock(LATE_EVENING)
            sender = MockEmailSender()
            dispatcher = make_dispatcher(session, sender, clock)

            queued = await dispatch(dispatcher, event_id="WFE-1", from_name="UDS Notifications")
            assert_true(queued.success)
            assert_equal(queued.outcome, DispatchOutcome.QUEUED)
            assert_equal(sender.count(), 0)
            assert_equal(await all_logs(session), [], "Deferred sends are not logged yet")

            item = await session.get(NotificationQueueItem, queued.queue_id)
            assert_equal(item.status, "PENDING")
            assert_equal(item.recipient_email, "asha.rao@example.com")
            assert_equal(item.subject, MESSAGE.subject)
            assert_equal(item.from_name, "UDS Notifications")
            assert_equal(item.max_attempts, 3)
            assert_equal(item.scheduled_for, datetime(2024, 6, 4, 2, 31, tzinfo=timezone.utc).timestamp())

            clock.now = NEXT_MORNING
            sent = await dispatch(dispatcher, business_key="ORDER:ORD-1:COMPANY_APPROVAL:PENDING")
            assert_equal(sent.outcome, DispatchOutcome.SENT)
            assert_equal(sender.count(), 1)


async def test_demo_mode_logs_without_sending():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            sender = MockEmailSender()
            dispatcher = make_dispatcher(session, sender, FixedClock())

            result = await dispatch(dispatcher, demo_mode=True)
            assert_true(result.success)
            assert_equal(result.outcome, DispatchOutcome.DEMO)
            assert_equal(sender.count(), 0)

            rows = await all_logs(session)
            assert_equal(len(rows), 1)
            assert_equal(rows[0].status, "REJECTED")
            assert_true(rows[0].to_dict()["diagnostics"]["demo_mode"])

            # Demo logs are not SENT, so they never suppress a real send later
            real = await dispatch(dispatcher, demo_mode=False)
            assert_equal(real.outcome, DispatchOutcome.SENT)


async def test_unsupported_channel():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            sender = MockEmailSender()
            dispatcher = make_dispatcher(session, sender, FixedClock())

            result = await dispatch(dispatcher, channel=NotificationChannel.WHATSAPP)
            assert_false(result.success)
            assert_equal(result.outcome, DispatchOutcome.NOT_IMPLEMENTED)
            assert_equal(result.error, "Channel WHATSAPP not implemented")
            assert_equal(sender.count(), 0)

            rows = await all_logs(session)
            assert_equal([(row.status, row.channel) for row in rows], [("FAILED", "WHATSAPP")])


async def test_cc_and_bcc_from_branding():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await set_company_config(session, cc_emails=["ops@example.com"], bcc_emails=["archive@example.com"])
            sender = MockEmailSender()
            dispatcher = make_dispatcher(session, sender, FixedClock())

            await dispatch(dispatcher)
            assert_equal(sender.sent[0]["cc"], ["ops@example.com"])
            assert_equal(sender.sent[0]["bcc"], ["archive@example.com"])


async def test_send_notification_direct():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            sender = MockEmailSender()
            dispatcher = make_dispatcher(session, sender, FixedClock())

            invalid = await dispatcher.send_notification("PASSWORD_RESET", "not-an-email", {})
            assert_false(invalid.success)
            assert_equal(invalid.error, "Invalid email format: not-an-email")

            missing = await dispatcher.send_notification("password_reset", "user@example.com", {})
            assert_false(missing.success)
            assert_equal(missing.error, "Notification template not found for event: PASSWORD_RESET")

            session.add(NotificationTemplate(
                template_key="password_reset",
                channel="EMAIL",
                event_type="PASSWORD_RESET",
                subject_template="{{brand_name}}: reset for {{recipient_name}}",
                body_template="<p>Code {{code}}</p>",
            ))
            await session.commit()

            sent = await dispatcher.send_notification(
                "PASSWORD_RESET", " User@Example.com ", {"code": "4711"},
                recipient_name="Asha", company_id=COMPANY_ID,
            )
            assert_true(sent.success, sent.error)
            assert_equal(sender.sent[0]["to"], "user@example.com")
            assert_equal(sender.sent[0]["subject"], "UDS: reset for Asha")
            assert_equal(sender.sent[0]["body"], "<p>Code 4711</p>")
            assert_equal(sender.sent[0]["from_name"], "UDS Notifications")

            await set_company_config(
                session, event_configs=[EventConfigOverride(event_code="PASSWORD_RESET", is_enabled=False)],
            )
            disabled = await make_dispatcher(session, sender, FixedClock()).send_notification(
                "PASSWORD_RESET", "user@example.com", {"code": "1"}, company_id=COMPANY_ID,
            )
            assert_true(disabled.success)
            assert_equal(disabled.outcome, DispatchOutcome.DISABLED)
            assert_equal(sender.count(), 1)


async def main():
    return await run_tests("Dispatch Gate and Quiet Hours Tests", [
        ("Quiet hours window", test_quiet_hours_window),
        ("Quiet hours end", test_quiet_hours_end),
        ("Company config cache", test_company_config_cache),
        ("Duplicate within window is skipped", test_duplicate_within_window_is_skipped),
        ("Quiet hours defers to queue", test_quiet_hours_defers_to_queue),
        ("Demo mode logs without sending", test_demo_mode_logs_without_sending),
        ("Unsupported channel", test_unsupported_channel),
        ("CC and BCC from branding", test_cc_and_bcc_from_branding),
        ("Direct send", test_send_notification_direct),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
