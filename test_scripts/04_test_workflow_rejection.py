#!/usr/bin/env python3
"""
Test: Workflow Rejection
Purpose: Test rejection validation, terminal vs. non-terminal rejection,
rejection records and the no-configuration fallback
"""

import asyncio
import sys

from fixtures import (
    TestContext, COMPANY_ID,
    order_workflow_config, seed_config, create_test_order, override_settings,
    assert_equal, assert_true, assert_false, assert_in, assert_is_none, run_tests,
)

from approval_workflow.core.audit_recorder import (
    AuditRecorder,
    RejectionAlreadyResolvedError,
)
from approval_workflow.core.workflow_engine import WorkflowEngine
from approval_workflow.models.orm import Order
from approval_workflow.models.schemas import (
    EntityType,
    RejectInput,
    RejectionAction,
    ResolutionAction,
    StageRejectionConfig,
    WorkflowErrorCode,
    WorkflowEventType,
)


def reject_input(role="LOCATION_ADMIN", reason_code="BUDGET_EXCEEDED", **kwargs):
    return RejectInput(
        company_id=kwargs.pop("company_id", COMPANY_ID),
        entity_type=EntityType.ORDER,
        entity_id=kwargs.pop("entity_id", "ORD-100001"),
        user_id=kwargs.pop("user_id", f"USR-{role}"),
        user_role=role,
        user_name="Priya Shah",
        reason_code=reason_code,
        **kwargs,
    )


async def test_terminal_rejection():
    """Default policy ends the workflow and records the rejection"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

            engine = WorkflowEngine(session, ctx.event_bus)
            result = await engine.reject_entity(
                reject_input(reason_label="Budget Exceeded", remarks="Over quarterly limit")
            )

            assert_true(result.success, result.error_message)
            outcome = result.data
            assert_equal(outcome.new_status, "REJECTED")
            assert_is_none(outcome.new_stage)
            assert_true(outcome.is_terminal)
            assert_equal(outcome.notify_roles, ["REQUESTOR"])
            assert_equal(outcome.visible_to_roles, ["REQUESTOR", "COMPANY_ADMIN"])
            assert_true(outcome.rejection_id.startswith("REJ"))

            # Rejected entities refuse further approvals and rejections
            again = await engine.reject_entity(reject_input())
            assert_equal(again.error_code, WorkflowErrorCode.ALREADY_REJECTED)

        async with ctx.get_session() as session:
            row = await session.get(Order, "ORD-100001")
            assert_equal(row.workflow_status, "REJECTED")
            assert_is_none(row.current_stage)

            history = await AuditRecorder(session).get_rejection_history(
                COMPANY_ID, EntityType.ORDER, "ORD-100001"
            )
            assert_equal(len(history), 1)
            record = history[0]
            assert_equal(record.workflow_stage, "LOCATION_APPROVAL")
            assert_equal(record.reason_code, "BUDGET_EXCEEDED")
            assert_equal(record.previous_status, "PENDING_LOCATION_APPROVAL")
            assert_false(record.is_resolved)
            assert_true(record.to_dict()["policy_flags"]["is_terminal_on_reject"])

        await ctx.drain_events()
        event = ctx.collector.find_event(event_type=WorkflowEventType.ENTITY_REJECTED)
        assert_true(event is not None, "ENTITY_REJECTED should be emitted")
        assert_equal(event.current_stage, "LOCATION_APPROVAL", "Event names the rejected stage")
        assert_equal(event.rejection.reason_code, "BUDGET_EXCEEDED")
        assert_equal(event.rejection.remarks, "Over quarterly limit")


async def test_missing_reason_code():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

            engine = WorkflowEngine(session)
            for code in (None, "", "   "):
                result = await engine.reject_entity(reject_input(reason_code=code))
                assert_equal(result.error_code, WorkflowErrorCode.VALIDATION_ERROR, f"code={code!r}")


async def test_policy_validation():
    """Mandatory remarks, remark length and allowed codes come from the stage policy"""
    config = order_workflow_config(
        location_rejection=StageRejectionConfig(
            is_remarks_mandatory=True,
            max_remarks_length=20,
            allowed_reason_codes=["BUDGET_EXCEEDED", "INVALID_QUANTITY"],
        ),
    )
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, config)
            await create_test_order(session)
            engine = WorkflowEngine(session)

            no_remarks = await engine.reject_entity(reject_input(remarks="  "))
            assert_equal(no_remarks.error_code, WorkflowErrorCode.VALIDATION_ERROR)
            assert_in("Location Approval", no_remarks.error_message)

            too_long = await engine.reject_entity(reject_input(remarks="x" * 21))
            assert_equal(too_long.error_code, WorkflowErrorCode.VALIDATION_ERROR)
            assert_in("20", too_long.error_message)

            bad_code = await engine.reject_entity(
                reject_input(reason_code="SIZE_MISMATCH", remarks="wrong size")
            )
            assert_equal(bad_code.error_code, WorkflowErrorCode.VALIDATION_ERROR)
            assert_in("SIZE_MISMATCH", bad_code.error_message)

            ok = await engine.reject_entity(reject_input(remarks="Too many units"))
            assert_true(ok.success, ok.error_message)


async def test_non_terminal_rejection_keeps_stage():
    config = order_workflow_config(
        company_rejection=StageRejectionConfig(
            is_terminal_on_reject=False,
            rejected_status="RETURNED_TO_LOCATION",
        ),
    )
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, config)
            await create_test_order(
                session, workflow_status="PENDING_COMPANY_APPROVAL", current_stage="COMPANY_APPROVAL",
            )

            engine = WorkflowEngine(session, ctx.event_bus)
            result = await engine.reject_entity(reject_input(role="COMPANY_ADMIN"))

            assert_true(result.success, result.error_message)
            assert_false(result.data.is_terminal)
            assert_equal(result.data.new_stage, "COMPANY_APPROVAL")
            assert_equal(result.data.new_status, "RETURNED_TO_LOCATION")

        await ctx.drain_events()
        assert_equal(ctx.collector.event_types(), [WorkflowEventType.ENTITY_REJECTED_AT_STAGE])


async def test_send_back_event():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

            engine = WorkflowEngine(session, ctx.event_bus)
            result = await engine.reject_entity(reject_input(action=RejectionAction.SEND_BACK))
            assert_true(result.success, result.error_message)
            assert_equal(result.data.action, RejectionAction.SEND_BACK)

        await ctx.drain_events()
        assert_equal(ctx.collector.event_types(), [WorkflowEventType.ENTITY_SENT_BACK])


async def test_reject_role_not_allowed():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

            engine = WorkflowEngine(session)
            result = await engine.reject_entity(reject_input(role="EMPLOYEE"))
            assert_equal(result.error_code, WorkflowErrorCode.ROLE_NOT_ALLOWED)


async def test_rejection_without_configuration():
    """Admin roles may reject entities that have no workflow at all"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_order(session)
            engine = WorkflowEngine(session)

            result = await engine.reject_entity(reject_input(role="COMPANY_ADMIN"))
            assert_true(result.success, result.error_message)
            assert_true(result.data.is_terminal, "System default policy ends the workflow")
            assert_equal(result.data.previous_stage, "DIRECT_REJECTION")
            assert_is_none(result.data.new_stage)
            assert_equal(result.data.new_status, "REJECTED")
            assert_is_none(result.data.workflow_config_id)

            history = await AuditRecorder(session).get_rejection_history(
                COMPANY_ID, EntityType.ORDER, "ORD-100001"
            )
            assert_equal(history[0].workflow_config_id, "NO_WORKFLOW")
            assert_equal(history[0].workflow_version, 0)

        async with ctx.get_session() as session:
            await create_test_order(session, order_id="ORD-100002")
            engine = WorkflowEngine(session)

            refused = await engine.reject_entity(reject_input(role="EMPLOYEE", entity_id="ORD-100002"))
            assert_equal(refused.error_code, WorkflowErrorCode.WORKFLOW_NOT_FOUND)

            with override_settings(no_config_rejection_roles=[]):
                disabled = await engine.reject_entity(
                    reject_input(role="COMPANY_ADMIN", entity_id="ORD-100002")
                )
            assert_equal(disabled.error_code, WorkflowErrorCode.WORKFLOW_NOT_FOUND)


async def test_resolve_rejection_only_once():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)
            result = await WorkflowEngine(session).reject_entity(reject_input())

            audit = AuditRecorder(session)
            record = await audit.resolve_rejection(
                result.data.rejection_id, resolved_by="USR-CA",
                action=ResolutionAction.OVERRIDDEN, remarks="Budget approved separately",
            )
            await session.commit()
            assert_true(record.is_resolved)
            assert_equal(record.resolution_action, "OVERRIDDEN")

            raised = False
            try:
                await audit.resolve_rejection(
                    result.data.rejection_id, resolved_by="USR-CA", action=ResolutionAction.CANCELLED
                )
            except RejectionAlreadyResolvedError:
                raised = True
            assert_true(raised, "A resolved rejection cannot be resolved again")


async def main():
    return await run_tests("Workflow Rejection Tests", [
        ("Terminal rejection", test_terminal_rejection),
        ("Missing reason code", test_missing_reason_code),
        ("Policy validation", test_policy_validation),
        ("Non-terminal rejection keeps stage", test_non_terminal_rejection_keeps_stage),
        ("Send back event", test_send_back_event),
        ("Reject role not allowed", test_reject_role_not_allowed),
        ("Rejection without configuration", test_rejection_without_configuration),
        ("Resolve rejection only once", test_resolve_rejection_only_once),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
