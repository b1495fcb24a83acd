#!/usr/bin/env python3
"""
Test: Notification Orchestrator
Purpose: Verify that workflow events become rendered, logged e-mails

Tests:
- Global and per-company switches
- Mapping selection, ordering and conditions
- Template rendering with stored templates and company overrides
- Action performer exclusion
- Sender failures are counted, never raised
- Engine -> event bus -> orchestrator end to end
"""

import asyncio
import sys

from sqlalchemy import select

from fixtures import (
    TestContext, COMPANY_ID, OTHER_COMPANY_ID,
    order_workflow_config, seed_config, create_test_order, create_test_user,
    create_test_mapping, set_company_config, make_event, override_settings,
    MockEmailSender, FixedClock,
    assert_equal, assert_true, assert_false, assert_in, assert_not_in, run_tests,
)

from approval_workflow.core.event_bus import EventBus
from approval_workflow.core.events import register_event_handlers
from approval_workflow.core.workflow_engine import WorkflowEngine
from approval_workflow.models.orm import NotificationLog, NotificationTemplate
from approval_workflow.models.notification_schemas import (
    EventConfigOverride,
    MappingConditions,
    NotificationMappingData,
    ChannelConfig,
    NotificationChannel,
    RecipientResolverType as R,
)
from approval_workflow.models.schemas import (
    ApproveInput,
    EntityType,
    RejectionDetail,
    TriggeredBy,
    WorkflowEventType,
)
from approval_workflow.notifications.orchestrator import (
    NotificationOrchestrator,
    business_key_for,
    load_notification_mappings,
    mapping_conditions_met,
)


def rejected_event(**kwargs):
    return make_event(
        event_type=WorkflowEventType.ENTITY_REJECTED,
        current_status="REJECTED",
        triggered_by=TriggeredBy(
            user_id="USR-LOC", user_name="Priya Shah", user_role="LOCATION_ADMIN",
            user_email="loc.admin@example.com",
        ),
        rejection=RejectionDetail(
            reason_code="BUDGET_EXCEEDED", reason_label="Budget Exceeded", remarks="Over limit",
        ),
        **kwargs,
    )


async def logs(session):
    result = await session.execute(select(NotificationLog).order_by(NotificationLog.created_at))
    return list(result.scalars().all())


async def test_disabled_globally():
    """With the master switch off nothing is looked up or sent"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_mapping(session, "MAP-1", WorkflowEventType.ENTITY_REJECTED, [R.REQUESTOR])

        sender = MockEmailSender()
        orchestrator = NotificationOrchestrator(ctx.db, sender, clock=FixedClock())

        with override_settings(enable_email_notifications=False):
            result = await orchestrator.process_event(rejected_event())

        assert_equal(result.mappings_found, 0)
        assert_equal(sender.count(), 0)


async def test_mapping_selection_and_order():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            event_type = WorkflowEventType.ENTITY_SUBMITTED
            await create_test_mapping(session, "MAP-GLOBAL-HI", event_type, [R.REQUESTOR], priority=90)
            await create_test_mapping(session, "MAP-COMPANY-LO", event_type, [R.REQUESTOR],
                                      company_id=COMPANY_ID, priority=10)
            await create_test_mapping(session, "MAP-COMPANY-HI", event_type, [R.REQUESTOR],
                                      company_id=COMPANY_ID, entity_type="ORDER", priority=50)
            await create_test_mapping(session, "MAP-OTHER", event_type, [R.REQUESTOR],
                                      company_id=OTHER_COMPANY_ID)
            await create_test_mapping(session, "MAP-INVOICE", event_type, [R.REQUESTOR],
                                      entity_type="INVOICE")
            await create_test_mapping(session, "MAP-STAGE", event_type, [R.REQUESTOR],
                                      stage_key="COMPANY_APPROVAL")
            await create_test_mapping(session, "MAP-OFF", event_type, [R.REQUESTOR], is_active=False)
            await create_test_mapping(session, "MAP-APPROVED", WorkflowEventType.ENTITY_APPROVED,
                                      [R.REQUESTOR])

            mappings = await load_notification_mappings(session, make_event())
            assert_equal(
                [m.id for m in mappings],
                ["MAP-COMPANY-HI", "MAP-COMPANY-LO", "MAP-GLOBAL-HI"],
                "Company rows first, then priority; stage-bound rows need a matching stage",
            )

            at_company_stage = await load_notification_mappings(
                session, make_event(current_stage="COMPANY_APPROVAL")
            )
            assert_in("MAP-STAGE", [m.id for m in at_company_stage])


async def test_mapping_conditions():
    def mapping(**conditions):
        return NotificationMappingData(
            id="MAP-C",
            event_type=WorkflowEventType.ENTITY_SUBMITTED,
            recipient_resolvers=[R.REQUESTOR],
            channels=[ChannelConfig(channel=NotificationChannel.EMAIL, template_key="default")],
            conditions=MappingConditions(**conditions) if conditions else None,
        )

    event = make_event()
    assert_true(mapping_conditions_met(mapping(), event))
    assert_true(mapping_conditions_met(mapping(min_amount=12500), event))
    assert_false(mapping_conditions_met(mapping(min_amount=50000), event))
    assert_true(mapping_conditions_met(mapping(entity_statuses=["PENDING_LOCATION_APPROVAL"]), event))
    assert_false(mapping_conditions_met(mapping(entity_statuses=["APPROVED"]), event))
    assert_true(mapping_conditions_met(mapping(roles=["REQUESTOR"]), event))
    assert_false(mapping_conditions_met(mapping(roles=["COMPANY_ADMIN"]), event))

    assert_equal(business_key_for(event), "ORDER:ORD-100001:LOCATION_APPROVAL:PENDING_LOCATION_APPROVAL")
    assert_equal(
        business_key_for(make_event(current_stage=None, current_status="APPROVED")),
        "ORDER:ORD-100001:-:APPROVED",
    )


async def test_rejection_email_rendered_and_logged():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_mapping(session, "MAP-REJ", WorkflowEventType.ENTITY_REJECTED, [R.REQUESTOR])

        sender = MockEmailSender()
        orchestrator = NotificationOrchestrator(ctx.db, sender, clock=FixedClock())

        with override_settings(enable_email_notifications=True):
            result = await orchestrator.process_event(rejected_event())

        assert_equal(result.mappings_found, 1)
        assert_equal(result.recipients_resolved, 1)
        assert_equal(result.notifications_sent, 1)
        assert_equal(result.errors, [])

        message = sender.sent[0]
        assert_equal(message["to"], "asha.rao@example.com")
        assert_equal(message["subject"], "Order PR-ORD-100001 has been rejected")
        assert_equal(message["from_name"], "UDS Notifications")
        assert_in("Priya Shah", message["body"])
        assert_in("Budget Exceeded", message["body"])
        assert_in("Over limit", message["body"])

        async with ctx.get_session() as session:
            rows = await logs(session)
            assert_equal(len(rows), 1)
            log = rows[0].to_dict()
            assert_equal(log["status"], "SENT")
            assert_equal(log["event_code"], "ENTITY_REJECTED")
            assert_equal(log["event_id"], "WFE-TEST-1")
            assert_equal(log["provider_message_id"], "msg-1")
            assert_equal(log["business_key"], "ORDER:ORD-100001:LOCATION_APPROVAL:REJECTED")
            assert_equal(log["diagnostics"]["mapping_id"], "MAP-REJ")


async def test_stored_template_and_company_override():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            session.add(NotificationTemplate(
                template_key="order_rejected",
                channel="EMAIL",
                event_type="ENTITY_REJECTED",
                subject_template="Rejected: {{entity_display_id}} for {{recipient_name}}",
                body_template="<p>{{rejection_reason}} ({{unknown_field}})</p>",
            ))
            await session.commit()
            await create_test_mapping(session, "MAP-REJ", WorkflowEventType.ENTITY_REJECTED,
                                      [R.REQUESTOR], template_key="order_rejected")

        sender = MockEmailSender()
        orchestrator = NotificationOrchestrator(ctx.db, sender, clock=FixedClock())

        with override_settings(enable_email_notifications=True):
            await orchestrator.process_event(rejected_event())
            stored = sender.sent[0]
            assert_equal(stored["subject"], "Rejected: PR-ORD-100001 for Asha Rao")
            assert_equal(stored["body"], "<p>Budget Exceeded ({{unknown_field}})</p>",
                         "Unknown placeholders stay verbatim")

            async with ctx.get_session() as session:
                await set_company_config(
                    session,
                    cache=orchestrator.config_cache,
                    brand_name="Acme Corp",
                    cc_emails=["audit@acme.example.com"],
                    event_configs=[EventConfigOverride(
                        event_code="entity_rejected",
                        custom_subject="[{{brand_name}}] Rejected: {{entity_display_id}}",
                    )],
                )

            await orchestrator.process_event(rejected_event(event_id="WFE-TEST-2", current_stage=None))

        overridden = sender.sent[1]
        assert_equal(overridden["subject"], "[Acme Corp] Rejected: PR-ORD-100001")
        assert_equal(overridden["body"], "<p>Budget Exceeded ({{unknown_field}})</p>",
                     "Body without override keeps the stored template")
        assert_equal(overridden["from_name"], "Acme Corp Notifications")
        assert_equal(overridden["cc"], ["audit@acme.example.com"])


async def test_company_switches():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_mapping(session, "MAP-REJ", WorkflowEventType.ENTITY_REJECTED, [R.REQUESTOR])
            await create_test_mapping(session, "MAP-SUB", WorkflowEventType.ENTITY_SUBMITTED, [R.REQUESTOR])
            await set_company_config(
                session,
                event_configs=[EventConfigOverride(event_code="ENTITY_REJECTED", is_enabled=False)],
            )

        sender = MockEmailSender()
        orchestrator = NotificationOrchestrator(ctx.db, sender, clock=FixedClock())

        with override_settings(enable_email_notifications=True):
            disabled_event = await orchestrator.process_event(rejected_event())
            assert_equal(disabled_event.mappings_found, 0)
            assert_equal(sender.count(), 0, "Disabled event type sends nothing")

            enabled_event = await orchestrator.process_event(make_event())
            assert_equal(enabled_event.notifications_sent, 1, "Other event types still go out")

            async with ctx.get_session() as session:
                await set_company_config(session, notifications_enabled=False)

            orchestrator.config_cache.clear()
            muted = await orchestrator.process_event(make_event(event_id="WFE-TEST-3", current_stage=None))
            assert_equal(muted.mappings_found, 0)
            assert_equal(sender.count(), 1, "Company master switch mutes everything")


async def test_exclude_action_performer():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_user(session, "USR-CA", "COMPANY_ADMIN", "company.admin@example.com")
            await create_test_mapping(
                session, "MAP-APPROVED", WorkflowEventType.ENTITY_APPROVED,
                [R.REQUESTOR, R.COMPANY_ADMIN], exclude_action_performer=True,
            )

        sender = MockEmailSender()
        orchestrator = NotificationOrchestrator(ctx.db, sender, clock=FixedClock())
        event = make_event(
            event_type=WorkflowEventType.ENTITY_APPROVED,
            current_stage=None,
            current_status="APPROVED",
            previous_stage="COMPANY_APPROVAL",
            triggered_by=TriggeredBy(
                user_id="USR-CA", user_name="Company Admin", user_role="COMPANY_ADMIN",
                user_email="Company.Admin@example.com",
            ),
        )

        with override_settings(enable_email_notifications=True):
            result = await orchestrator.process_event(event)

        assert_equal(sender.recipients(), ["asha.rao@example.com"])
        assert_not_in("company.admin@example.com", sender.recipients())
        assert_equal(result.notifications_sent, 1)
        assert_equal(sender.sent[0]["subject"], "Order PR-ORD-100001 has been approved")


async def test_sender_failures_are_counted():
    """A failing or raising sender is logged as FAILED and never propagates"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_mapping(session, "MAP-REJ", WorkflowEventType.ENTITY_REJECTED, [R.REQUESTOR])

        with override_settings(enable_email_notifications=True):
            failing = NotificationOrchestrator(ctx.db, MockEmailSender(fail=True), clock=FixedClock())
            failed = await failing.process_event(rejected_event())
            assert_equal(failed.notifications_failed, 1)
            assert_in("Mail API returned 503", failed.errors)

            raising = NotificationOrchestrator(ctx.db, MockEmailSender(raise_error=True), clock=FixedClock())
            raised = await raising.process_event(rejected_event(event_id="WFE-TEST-2"))
            assert_equal(raised.notifications_failed, 1)
            assert_in("mail transport exploded", raised.errors)

        async with ctx.get_session() as session:
            statuses = [row.status for row in await logs(session)]
            assert_equal(statuses, ["FAILED", "FAILED"])


async def test_engine_to_orchestrator_end_to_end():
    """An approval committed by the engine reaches the requestor's inbox"""
    async with TestContext() as ctx:
        sender = MockEmailSender()
        orchestrator = NotificationOrchestrator(ctx.db, sender, clock=FixedClock())
        orchestrator.register(ctx.event_bus)

        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)
            await create_test_mapping(
                session, "MAP-STAGE-APPROVED", WorkflowEventType.ENTITY_APPROVED_AT_STAGE, [R.REQUESTOR],
            )

        with override_settings(enable_email_notifications=True):
            async with ctx.get_session() as session:
                result = await WorkflowEngine(session, ctx.event_bus).approve_entity(ApproveInput(
                    company_id=COMPANY_ID, entity_type=EntityType.ORDER, entity_id="ORD-100001",
                    user_id="USR-LOC", user_role="LOCATION_ADMIN", user_name="Priya Shah",
                ))
                assert_true(result.success, result.error_message)

            await ctx.drain_events()

        assert_equal(orchestrator.processed, 1)
        assert_equal(sender.recipients(), ["asha.rao@example.com"])
        assert_equal(sender.sent[0]["subject"], "Order PR-ORD-100001 approved at Location Approval")

        orchestrator.unregister()
        assert_equal(ctx.event_bus.get_stats()["total_handlers"], 1, "Only the test collector remains")


async def test_register_event_handlers():
    """Startup wiring subscribes a trace handler and the orchestrator to every event"""
    bus = EventBus()
    orchestrator = register_event_handlers(bus, db=None, email_sender=MockEmailSender())

    stats = bus.get_stats()
    assert_equal(stats["event_types"], ["*"])
    assert_equal(stats["total_handlers"], 2)
    assert_true(isinstance(orchestrator, NotificationOrchestrator))

    orchestrator.unregister()
    assert_equal(bus.get_stats()["total_handlers"], 1)


async def main():
    return await run_tests("Notification Orchestrator Tests", [
        ("Disabled globally", test_disabled_globally),
        ("Mapping selection and order", test_mapping_selection_and_order),
        ("Mapping conditions", test_mapping_conditions),
        ("Rejection email rendered and logged", test_rejection_email_rendered_and_logged),
        ("Stored template and company override", test_stored_template_and_company_override),
        ("Company switches", test_company_switches),
        ("Exclude action performer", test_exclude_action_performer),
        ("Sender failures are counted", test_sender_failures_are_counted),
        ("Engine to orchestrator end to end", test_engine_to_orchestrator_end_to_end),
        ("Register event handlers", test_register_event_handlers),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
