#!/usr/bin/env python3
"""
Test: UI Rules
Purpose: Verify the action projection clients use to render workflow controls
"""

import asyncio
import sys

from fixtures import (
    TestContext, COMPANY_ID,
    order_workflow_config, seed_config, seed_raw_config, create_test_order, user_context, override_settings,
    assert_equal, assert_true, assert_false, assert_in, assert_is_none, run_tests,
)

from approval_workflow.core.ui_rules import UIRulesService, classify_workflow_state
from approval_workflow.core.workflow_engine import WorkflowEngine
from approval_workflow.models.schemas import (
    ApproveInput,
    EntityType,
    RejectInput,
    RejectionAction,
    ResubmissionStrategy,
    StageRejectionConfig,
    WorkflowEntity,
    WorkflowErrorCode,
    WorkflowState,
)


async def test_classify_workflow_state():
    def entity(status, stage=None):
        return WorkflowEntity(
            id="X", company_id=COMPANY_ID, entity_type=EntityType.ORDER,
            status=status, current_stage=stage,
        )

    assert_equal(classify_workflow_state(entity("REJECTED")), WorkflowState.REJECTED)
    assert_equal(classify_workflow_state(entity("REJECTED_BY_COMPANY")), WorkflowState.REJECTED)
    assert_equal(classify_workflow_state(entity("CANCELLED")), WorkflowState.REJECTED)
    assert_equal(classify_workflow_state(entity("APPROVED")), WorkflowState.COMPLETED)
    assert_equal(classify_workflow_state(entity("PENDING_COMPANY_APPROVAL")), WorkflowState.IN_WORKFLOW)
    assert_equal(classify_workflow_state(entity("Awaiting approval")), WorkflowState.IN_WORKFLOW)
    assert_equal(classify_workflow_state(entity("DRAFT")), WorkflowState.NOT_IN_WORKFLOW)
    assert_equal(classify_workflow_state(entity("ON_HOLD", "LOCATION_APPROVAL")), WorkflowState.IN_WORKFLOW)


async def test_pending_entity_for_stage_approver():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session)

            rules = await UIRulesService(session).evaluate(
                EntityType.ORDER, "ORD-100001", user_context("LOCATION_ADMIN")
            )

            assert_equal(rules.workflow_state, WorkflowState.IN_WORKFLOW)
            assert_equal(rules.current_stage, "LOCATION_APPROVAL")
            assert_equal(rules.current_stage_name, "Location Approval")

            actions = rules.allowed_actions
            assert_true(actions.can_approve.allowed)
            assert_false(actions.can_approve.requires_confirmation, "Intermediate approval needs no confirmation")
            assert_true(actions.can_reject.allowed)
            assert_true(actions.can_reject.requires_confirmation)
            assert_false(actions.can_resubmit.allowed)
            assert_equal(actions.can_resubmit.reason, "Entity is pending approval")
            assert_true(actions.can_view.allowed)

            assert_true(rules.rejection_config.is_allowed)
            assert_true(rules.rejection_config.is_reason_mandatory)
            codes = [option.code for option in rules.rejection_config.allowed_reason_codes]
            assert_in("BUDGET_EXCEEDED", codes)
            assert_in("OTHER", codes)

            progress = rules.workflow_progress
            assert_equal(progress.total_stages, 2)
            assert_equal(progress.current_stage_order, 1)
            assert_equal(progress.completed_stages, 0)
            assert_equal(progress.percent_complete, 0)
            assert_equal([s.status for s in progress.stages], ["CURRENT", "PENDING"])

            assert_true(rules.user_role_info.is_allowed_at_current_stage)
            assert_equal(rules.next_action_hint, "Approve to move to Company Approval, or reject with a reason")


async def test_final_stage_requires_confirmation():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(
                session, workflow_status="PENDING_COMPANY_APPROVAL", current_stage="COMPANY_APPROVAL",
            )

            service = UIRulesService(session)
            admin = await service.evaluate(EntityType.ORDER, "ORD-100001", user_context("COMPANY_ADMIN"))
            assert_true(admin.allowed_actions.can_approve.allowed)
            assert_true(admin.allowed_actions.can_approve.requires_confirmation)
            assert_equal(admin.workflow_progress.percent_complete, 50)

            other = await service.evaluate(EntityType.ORDER, "ORD-100001", user_context("LOCATION_ADMIN"))
            assert_false(other.allowed_actions.can_approve.allowed)
            assert_in("LOCATION_ADMIN", other.allowed_actions.can_approve.reason)
            assert_equal(other.informational_message, "Waiting for COMPANY_ADMIN to take action")


async def test_completed_entity():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, order_workflow_config())
            await create_test_order(session, workflow_status="APPROVED", current_stage=None)

            rules = await UIRulesService(session).evaluate(
                EntityType.ORDER, "ORD-100001", user_context("COMPANY_ADMIN")
            )
            assert_equal(rules.workflow_state, WorkflowState.COMPLETED)
            assert_equal(rules.allowed_actions.can_approve.reason, "Entity is already fully approved")
            assert_equal(rules.workflow_progress.percent_complete, 100)
            assert_true(all(s.status == "COMPLETED" for s in rules.workflow_progress.stages))


async def test_rejected_entity_resubmission():
    """Owner may resubmit; strategy decides whether editing is possible"""
    config = order_workflow_config(
        location_rejection=StageRejectionConfig(resubmission_strategy=ResubmissionStrategy.SAME_ENTITY),
    )
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, config)
            await create_test_order(session)
            rejected = await WorkflowEngine(session).reject_entity(RejectInput(
                company_id=COMPANY_ID, entity_type=EntityType.ORDER, entity_id="ORD-100001",
                user_id="USR-LOC", user_role="LOCATION_ADMIN", reason_code="INVALID_QUANTITY",
            ))
            assert_true(rejected.success, rejected.error_message)

            service = UIRulesService(session)
            owner = await service.evaluate(
                EntityType.ORDER, "ORD-100001", user_context("EMPLOYEE", user_id="EMP-1")
            )
            assert_equal(owner.workflow_state, WorkflowState.REJECTED)
            assert_equal(owner.allowed_actions.can_approve.reason, "Entity has been rejected")
            assert_true(owner.allowed_actions.can_resubmit.allowed)
            assert_true(owner.allowed_actions.can_edit.allowed, "SAME_ENTITY allows editing")
            assert_true(owner.user_role_info.is_owner)

            stranger = await service.evaluate(
                EntityType.ORDER, "ORD-100001", user_context("EMPLOYEE", user_id="EMP-99")
            )
            assert_false(stranger.allowed_actions.can_resubmit.allowed)
            assert_false(stranger.allowed_actions.can_edit.allowed)


async def test_not_found_and_no_config():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            service = UIRulesService(session)

            missing = await service.evaluate(EntityType.ORDER, "ORD-404404", user_context("COMPANY_ADMIN"))
            assert_equal(missing.entity_status, "NOT_FOUND")
            assert_false(missing.allowed_actions.can_view.allowed)
            assert_is_none(missing.workflow_config_id)

            await create_test_order(session)
            unconfigured = await service.evaluate(EntityType.ORDER, "ORD-100001", user_context("COMPANY_ADMIN"))
            assert_equal(unconfigured.workflow_state, WorkflowState.NO_WORKFLOW_CONFIG)
            assert_false(unconfigured.allowed_actions.can_approve.allowed)
            assert_true(unconfigured.allowed_actions.can_view.allowed)
            assert_equal(unconfigured.next_action_hint, "Contact administrator to configure workflow")


def action(cls, role, user_id=None, **kwargs):
    return cls(
        company_id=COMPANY_ID, entity_type=EntityType.ORDER, entity_id="ORD-100001",
        user_id=user_id or f"USR-{role}", user_role=role, **kwargs,
    )


async def test_configured_approved_status_is_completed():
    config = order_workflow_config()
    config.status_on_approval["COMPANY_APPROVAL"] = "READY_FOR_FULFILMENT"
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, config)
            await create_test_order(session)

            engine = WorkflowEngine(session)
            for role in ("LOCATION_ADMIN", "COMPANY_ADMIN"):
                step = await engine.approve_entity(action(ApproveInput, role))
                assert_true(step.success, step.error_message)
            again = await engine.approve_entity(action(ApproveInput, "COMPANY_ADMIN"))
            assert_equal(again.error_code, WorkflowErrorCode.ALREADY_APPROVED)

            rules = await UIRulesService(session).evaluate(
                EntityType.ORDER, "ORD-100001", user_context("COMPANY_ADMIN")
            )
            assert_equal(rules.entity_status, "READY_FOR_FULFILMENT")
            assert_equal(rules.workflow_state, WorkflowState.COMPLETED)
            assert_equal(rules.workflow_progress.percent_complete, 100)
            assert_false(rules.allowed_actions.can_approve.allowed)


async def test_sent_back_entity_stays_actionable():
    """A non-terminal rejection keeps the stage; approvers and the owner both see it"""
    config = order_workflow_config(
        location_rejection=StageRejectionConfig(
            is_terminal_on_reject=False,
            resubmission_strategy=ResubmissionStrategy.SAME_ENTITY,
        ),
    )
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_config(session, config)
            await create_test_order(session)

            engine = WorkflowEngine(session)
            sent_back = await engine.reject_entity(action(
                RejectInput, "LOCATION_ADMIN", reason_code="INVALID_QUANTITY",
                action=RejectionAction.SEND_BACK,
            ))
            assert_true(sent_back.success, sent_back.error_message)
            assert_equal(sent_back.data.new_stage, "LOCATION_APPROVAL")

            service = UIRulesService(session)
            approver = await service.evaluate(EntityType.ORDER, "ORD-100001", user_context("LOCATION_ADMIN"))
            assert_equal(approver.entity_status, "REJECTED")
            assert_equal(approver.workflow_state, WorkflowState.IN_WORKFLOW)
            assert_equal(approver.current_stage, "LOCATION_APPROVAL")
            assert_equal(approver.status_message, "Returned at Location Approval")

            engine_view = await engine.can_user_approve(COMPANY_ID, EntityType.ORDER, "ORD-100001", "LOCATION_ADMIN")
            assert_equal(approver.allowed_actions.can_approve.allowed, engine_view.allowed)
            assert_true(approver.allowed_actions.can_approve.allowed)

            owner = await service.evaluate(
                EntityType.ORDER, "ORD-100001", user_context("EMPLOYEE", user_id="EMP-1")
            )
            assert_false(owner.allowed_actions.can_approve.allowed)
            assert_true(owner.allowed_actions.can_resubmit.allowed)
            assert_true(owner.allowed_actions.can_edit.allowed)

            approved = await engine.approve_entity(action(ApproveInput, "LOCATION_ADMIN"))
            assert_true(approved.success, approved.error_message)


async def test_no_config_rejection_matches_engine():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await create_test_order(session)
            service = UIRulesService(session)
            engine = WorkflowEngine(session)

            for role in ("COMPANY_ADMIN", "EMPLOYEE"):
                rules = await service.evaluate(EntityType.ORDER, "ORD-100001", user_context(role))
                check = await engine.can_user_reject(COMPANY_ID, EntityType.ORDER, "ORD-100001", role)
                assert_equal(rules.workflow_state, WorkflowState.NO_WORKFLOW_CONFIG)
                assert_equal(rules.allowed_actions.can_reject.allowed, check.allowed, role)
                assert_equal(rules.rejection_config.is_allowed, check.allowed, role)

            admin = await service.evaluate(EntityType.ORDER, "ORD-100001", user_context("COMPANY_ADMIN"))
            assert_true(admin.allowed_actions.can_reject.allowed)
            assert_true(admin.rejection_config.allowed_reason_codes, "Admins get the default reason codes")
            assert_false(admin.allowed_actions.can_approve.allowed)

            with override_settings(no_config_rejection_roles=[]):
                disabled = await service.evaluate(EntityType.ORDER, "ORD-100001", user_context("COMPANY_ADMIN"))
            assert_false(disabled.allowed_actions.can_reject.allowed)


async def test_invalid_configuration_blocks_actions():
    stage = {"stage_name": "Approval", "allowed_roles": ["LOCATION_ADMIN"]}
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            await seed_raw_config(session, [
                dict(stage, stage_key="LOCATION_APPROVAL", order=1),
                dict(stage, stage_key="SECOND_LOOK", order=1),
            ])
            await create_test_order(session)

            refused = await WorkflowEngine(session).approve_entity(action(ApproveInput, "LOCATION_ADMIN"))
            assert_equal(refused.error_code, WorkflowErrorCode.WORKFLOW_INVALID)

            rules = await UIRulesService(session).evaluate(
                EntityType.ORDER, "ORD-100001", user_context("LOCATION_ADMIN")
            )
            assert_equal(rules.workflow_state, WorkflowState.NO_WORKFLOW_CONFIG)
            assert_equal(rules.status_message, "Workflow configuration is invalid")
            assert_false(rules.allowed_actions.can_approve.allowed)
            assert_false(rules.allowed_actions.can_reject.allowed)
            assert_false(rules.rejection_config.is_allowed)
            assert_true(rules.allowed_actions.can_view.allowed)


async def main():
    return await run_tests("UI Rules Tests", [
        ("Classify workflow state", test_classify_workflow_state),
        ("Pending entity for stage approver", test_pending_entity_for_stage_approver),
        ("Final stage requires confirmation", test_final_stage_requires_confirmation),
        ("Completed entity", test_completed_entity),
        ("Rejected entity resubmission", test_rejected_entity_resubmission),
        ("Not found and no config", test_not_found_and_no_config),
        ("Configured approved status is completed", test_configured_approved_status_is_completed),
        ("Sent back entity stays actionable", test_sent_back_entity_stays_actionable),
        ("No config rejection matches engine", test_no_config_rejection_matches_engine),
        ("Invalid configuration blocks actions", test_invalid_configuration_blocks_actions),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
