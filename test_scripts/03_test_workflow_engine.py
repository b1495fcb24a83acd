#!/usr/bin/env python3
"""
Test: Workflow Engine
Purpose: Test configuration-driven stage progression

Tests:
- Two-stage approval reaches APPROVED and clears the stage
- Role checks, tenant isolation and missing configuration
- Status derivation without explicit mappings
- Stale writes are refused, through the engine as well
- Permission queries and workflow state view
- Initialization and resubmission
"""

import asyncio
import sys

from fixtures import (
    TestContext, COMPANY_ID, OTHER_COMPANY_ID,
    order_workflow_config, invoice_workflow_config, seed_config, seed_raw_config,
    create_test_order, create_test_invoice,
    assert_equal, assert_true, assert_false, assert_in, assert_is_none, run_tests,
)

from approval_workflow.core.audit_recorder import AuditRecorder
from approval_workflow.core.entity_repository import ConcurrentModificationError
from approval_workflow.core.workflow_engine import WorkflowEngine
from approval_workflow.models.orm import Order
from approval_workflow.models.schemas import (
    ApproveInput,
    EntityType,
    RejectInput,
    TriggeredBy,
    WorkflowErrorCode,
    WorkflowEventType,
    WorkflowStateUpdate,
)


def approve_input(role, entity_id="ORD-100001", user_id=None, **kwargs):
    return ApproveInput(
        company_id=kwargs.pop("company_id", COMPANY_ID),
        entity_type=kwargs.pop("entity_type", EntityType.ORDER),
        entity_id=entity_id,
        user_id=user_id or f"USR-{role}",
        user_role=role,
        user_name=role.title(),
        **kwargs,
    )


async def test_two_stage_approval_flow():
    """Location approval moves on, company approval completes"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

            engine = WorkflowEngine(session, ctx.event_bus)

            first = await engine.approve_entity(approve_input("LOCATION_ADMIN"))
            assert_true(first.success, f"First approval failed: {first.error_message}")
            assert_equal(first.data.previous_stage, "LOCATION_APPROVAL")
            assert_equal(first.data.new_stage, "COMPANY_APPROVAL")
            assert_equal(first.data.new_status, "PENDING_COMPANY_APPROVAL")
            assert_false(first.data.is_terminal)
            assert_true(first.data.audit_id.startswith("APR"), "Audit entry should be recorded")

            second = await engine.approve_entity(approve_input("COMPANY_ADMIN"))
            assert_true(second.success, f"Final approval failed: {second.error_message}")
            assert_equal(second.data.new_status, "APPROVED")
            assert_is_none(second.data.new_stage, "Terminal approval clears the stage")
            assert_true(second.data.is_terminal)

            await ctx.drain_events()

            # Already approved
            third = await engine.approve_entity(approve_input("COMPANY_ADMIN"))
            assert_false(third.success)
            assert_equal(third.error_code, WorkflowErrorCode.ALREADY_APPROVED)

        async with ctx.get_session() as session:
            row = await session.get(Order, "ORD-100001")
            assert_equal(row.workflow_status, "APPROVED")
            assert_is_none(row.current_stage)
            assert_equal(row.site_admin_approved_by, "USR-LOCATION_ADMIN")
            assert_equal(row.company_admin_approved_by, "USR-COMPANY_ADMIN")

            history = await AuditRecorder(session).get_approval_history(
                COMPANY_ID, EntityType.ORDER, "ORD-100001"
            )
            assert_equal(len(history), 2, "One audit row per approval")

        assert_equal(
            ctx.collector.event_types(),
            [WorkflowEventType.ENTITY_APPROVED_AT_STAGE, WorkflowEventType.ENTITY_APPROVED],
        )
        at_stage = ctx.collector.events[0]
        assert_equal(at_stage.next_stage_info.stage_key, "COMPANY_APPROVAL")
        assert_equal(at_stage.entity_snapshot.display_id, "PR-ORD-100001")
        final = ctx.collector.events[1]
        assert_is_none(final.current_stage)
        assert_equal(final.previous_stage, "COMPANY_APPROVAL")
        assert_true(final.event_id.startswith("WFE"))


async def test_role_not_allowed():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

            engine = WorkflowEngine(session, ctx.event_bus)
            result = await engine.approve_entity(approve_input("COMPANY_ADMIN"))

            assert_false(result.success)
            assert_equal(result.error_code, WorkflowErrorCode.ROLE_NOT_ALLOWED)
            assert_in("LOCATION_ADMIN", result.error_message)

        async with ctx.get_session() as session:
            row = await session.get(Order, "ORD-100001")
            assert_equal(row.workflow_status, "PENDING_LOCATION_APPROVAL", "Refusal leaves entity untouched")

        await ctx.drain_events()
        assert_equal(ctx.collector.count(), 0, "Refusals emit no events")


async def test_other_company_entity_is_not_found():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config(company_id=OTHER_COMPANY_ID))
            await create_test_order(session, company_id=OTHER_COMPANY_ID)

            engine = WorkflowEngine(session)
            result = await engine.approve_entity(approve_input("LOCATION_ADMIN"))
            assert_equal(result.error_code, WorkflowErrorCode.ENTITY_NOT_FOUND)

            missing = await engine.approve_entity(approve_input("LOCATION_ADMIN", entity_id="ORD-404404"))
            assert_equal(missing.error_code, WorkflowErrorCode.ENTITY_NOT_FOUND)
            assert_equal(result.error_message.split(" with ")[0], missing.error_message.split(" with ")[0])


async def test_missing_and_inactive_configuration():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_order(session)
            engine = WorkflowEngine(session)

            missing = await engine.approve_entity(approve_input("LOCATION_ADMIN"))
            assert_equal(missing.error_code, WorkflowErrorCode.WORKFLOW_NOT_FOUND)

            await seed_config(session, order_workflow_config(is_active=False))
            inactive = await engine.approve_entity(approve_input("LOCATION_ADMIN"))
            assert_equal(inactive.error_code, WorkflowErrorCode.WORKFLOW_INACTIVE)


async def test_status_derived_without_mappings():
    """Single-stage invoice workflow falls back to APPROVED and the entry stage"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, invoice_workflow_config())
            # No explicit stage: the pending status places it at the entry stage
            await create_test_invoice(session, workflow_status="PENDING_APPROVAL", current_stage=None)

            engine = WorkflowEngine(session, ctx.event_bus)
            result = await engine.approve_entity(approve_input(
                "FINANCE_ADMIN", entity_id="INV-200001", entity_type=EntityType.INVOICE,
            ))
            assert_true(result.success, result.error_message)
            assert_equal(result.data.previous_stage, "INVOICE_FINANCE_APPROVAL")
            assert_equal(result.data.new_status, "APPROVED")
            assert_true(result.data.is_terminal, "Last stage is terminal even without the flag")


async def test_expected_stage_mismatch():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

            engine = WorkflowEngine(session)
            result = await engine.approve_entity(
                approve_input("LOCATION_ADMIN", expected_stage="COMPANY_APPROVAL")
            )
            assert_equal(result.error_code, WorkflowErrorCode.STAGE_MISMATCH)


async def test_stale_write_is_refused():
    """An engine holding a stale view cannot overwrite a transition made meanwhile"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

        async with ctx.get_session() as slow_session:
            slow_engine = WorkflowEngine(slow_session)
            repository, stale = await slow_engine.load_entity(COMPANY_ID, EntityType.ORDER, "ORD-100001")
            assert_equal(stale.current_stage, "LOCATION_APPROVAL")

            # Another approver advances the order first
            async with ctx.get_session() as fast_session:
                winner = await WorkflowEngine(fast_session).approve_entity(
                    approve_input("LOCATION_ADMIN", user_id="USR-A")
                )
                assert_true(winner.success, winner.error_message)

            raised = False
            try:
                await slow_engine._write_state(
                    repository,
                    stale,
                    WorkflowStateUpdate(
                        status="PENDING_COMPANY_APPROVAL", current_stage="COMPANY_APPROVAL"
                    ),
                )
            except ConcurrentModificationError:
                raised = True
            assert_true(raised, "Write based on a stale stage must be refused")

        async with ctx.get_session() as session:
            history = await AuditRecorder(session).get_approval_history(
                COMPANY_ID, EntityType.ORDER, "ORD-100001"
            )
            assert_equal(len(history), 1, "Only the winner is audited")


class InterleavedEngine(WorkflowEngine):
    """Runs another approver's action between reading the entity and writing it"""

    def __init__(self, db, interleave):
        super().__init__(db)
        self.interleave = interleave

    async def load_entity(self, company_id, entity_type, entity_id):
        loaded = await super().load_entity(company_id, entity_type, entity_id)
        await self.interleave()
        return loaded


async def test_concurrent_approval_reports_conflict():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

        async def rival_approves():
            async with ctx.get_session() as rival_session:
                rival = await WorkflowEngine(rival_session).approve_entity(
                    approve_input("SITE_ADMIN", user_id="USR-A")
                )
                assert_true(rival.success, rival.error_message)

        async with ctx.get_session() as session:
            engine = InterleavedEngine(session, rival_approves)
            loser = await engine.approve_entity(approve_input("LOCATION_ADMIN", user_id="USR-B"))
            assert_false(loser.success)
            assert_equal(loser.error_code, WorkflowErrorCode.CONCURRENT_MODIFICATION)

        async with ctx.get_session() as session:
            order = await session.get(Order, "ORD-100001")
            assert_equal(order.current_stage, "COMPANY_APPROVAL")
            history = await AuditRecorder(session).get_approval_history(
                COMPANY_ID, EntityType.ORDER, "ORD-100001"
            )
            assert_equal([h.approved_by for h in history], ["USR-A"])


async def test_unreadable_configuration_is_invalid():
    """Stored stages that fail field validation are reported as an invalid workflow"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_raw_config(session, [
                {"stage_key": "LOCATION_APPROVAL", "stage_name": "Location Approval",
                 "order": 0, "allowed_roles": ["LOCATION_ADMIN"]},
                {"stage_key": "COMPANY_APPROVAL", "stage_name": "Company Approval",
                 "order": 2, "allowed_roles": []},
            ])
            await create_test_order(session)
            engine = WorkflowEngine(session)

            approved = await engine.approve_entity(approve_input("LOCATION_ADMIN"))
            assert_false(approved.success)
            assert_equal(approved.error_code, WorkflowErrorCode.WORKFLOW_INVALID)
            assert_in("order", approved.error_message)

            rejected = await engine.reject_entity(RejectInput(
                company_id=COMPANY_ID, entity_type=EntityType.ORDER, entity_id="ORD-100001",
                user_id="USR-LOC", user_role="LOCATION_ADMIN", reason_code="OTHER",
            ))
            assert_equal(rejected.error_code, WorkflowErrorCode.WORKFLOW_INVALID)

            order = await session.get(Order, "ORD-100001")
            assert_equal(order.current_stage, "LOCATION_APPROVAL", "Nothing was written")


async def test_permission_queries_and_state_view():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)
            engine = WorkflowEngine(session)

            allowed = await engine.can_user_approve(COMPANY_ID, EntityType.ORDER, "ORD-100001", "SITE_ADMIN")
            assert_true(allowed.allowed)
            denied = await engine.can_user_approve(COMPANY_ID, EntityType.ORDER, "ORD-100001", "EMPLOYEE")
            assert_false(denied.allowed)
            assert_in("EMPLOYEE", denied.reason)

            can_reject = await engine.can_user_reject(COMPANY_ID, EntityType.ORDER, "ORD-100001", "LOCATION_ADMIN")
            assert_true(can_reject.allowed)

            state = await engine.get_workflow_state(COMPANY_ID, EntityType.ORDER, "ORD-100001")
            assert_true(state.success)
            assert_equal(state.data.current_stage.stage_key, "LOCATION_APPROVAL")
            assert_equal(state.data.next_stage.stage_key, "COMPANY_APPROVAL")
            assert_false(state.data.is_terminal)
            assert_equal(state.data.workflow_name, "Order Approval")


async def test_initialize_and_resubmit():
    """Initialization places the entity at entry; after rejection it counts as resubmission"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session, workflow_status=None, current_stage=None, status="Draft")

            engine = WorkflowEngine(session, ctx.event_bus)
            requestor = TriggeredBy(user_id="EMP-1", user_name="Asha Rao", user_role="REQUESTOR")

            init = await engine.initialize_workflow(COMPANY_ID, EntityType.ORDER, "ORD-100001", requestor)
            assert_true(init.success, init.error_message)
            assert_equal(init.data.current_stage, "LOCATION_APPROVAL")
            assert_equal(init.data.status, "PENDING_LOCATION_APPROVAL")
            assert_equal(init.data.previous_status, "Draft")

            rejected = await engine.reject_entity(RejectInput(
                company_id=COMPANY_ID, entity_type=EntityType.ORDER, entity_id="ORD-100001",
                user_id="USR-LOC", user_role="LOCATION_ADMIN", reason_code="BUDGET_EXCEEDED",
            ))
            assert_true(rejected.success, rejected.error_message)

            again = await engine.initialize_workflow(COMPANY_ID, EntityType.ORDER, "ORD-100001", requestor)
            assert_true(again.success, again.error_message)
            assert_equal(again.data.previous_status, "REJECTED")

            latest = await AuditRecorder(session).get_latest_rejection(
                COMPANY_ID, EntityType.ORDER, "ORD-100001"
            )
            assert_true(latest.is_resolved, "Resubmission resolves the open rejection")
            assert_equal(latest.resolution_action, "RESUBMITTED")
            assert_equal(latest.resolved_by, "EMP-1")

        await ctx.drain_events()
        assert_equal(
            ctx.collector.event_types(),
            [
                WorkflowEventType.ENTITY_SUBMITTED,
                WorkflowEventType.ENTITY_REJECTED,
                WorkflowEventType.ENTITY_RESUBMITTED,
            ],
        )


async def main():
    return await run_tests("Workflow Engine Tests", [
        ("Two-stage approval flow", test_two_stage_approval_flow),
        ("Role not allowed", test_role_not_allowed),
        ("Other company's entity is not found", test_other_company_entity_is_not_found),
        ("Missing and inactive configuration", test_missing_and_inactive_configuration),
        ("Status derived without mappings", test_status_derived_without_mappings),
        ("Expected stage mismatch", test_expected_stage_mismatch),
        ("Stale write is refused", test_stale_write_is_refused),
        ("Concurrent approval reports conflict", test_concurrent_approval_reports_conflict),
        ("Unreadable configuration is invalid", test_unreadable_configuration_is_invalid),
        ("Permission queries and state view", test_permission_queries_and_state_view),
        ("Initialize and resubmit", test_initialize_and_resubmit),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
