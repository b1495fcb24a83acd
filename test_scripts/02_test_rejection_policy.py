#!/usr/bin/env python3
"""
Test: Rejection Policy Resolution
Purpose: Verify stage -> workflow -> system precedence, field by field
"""

import asyncio
import sys

from fixtures import (
    order_workflow_config,
    assert_equal, assert_true, assert_false, run_tests,
)

from approval_workflow.core.rejection_policy import (
    SYSTEM_DEFAULT_REJECTION_POLICY,
    resolve_rejected_status,
    resolve_rejection_policy,
)
from approval_workflow.models.schemas import ResubmissionStrategy, StageRejectionConfig


async def test_system_defaults_without_config():
    policy = resolve_rejection_policy(None, None)

    assert_true(policy.is_terminal_on_reject)
    assert_true(policy.is_reason_code_mandatory)
    assert_false(policy.is_remarks_mandatory)
    assert_equal(policy.max_remarks_length, 2000)
    assert_equal(policy.allowed_reason_codes, [])
    assert_equal(policy.notify_roles_on_reject, ["REQUESTOR"])
    assert_equal(policy.visible_to_roles_after_reject, ["REQUESTOR", "COMPANY_ADMIN"])
    assert_equal(policy.resubmission_strategy, ResubmissionStrategy.NEW_ENTITY)
    assert_equal(policy, SYSTEM_DEFAULT_REJECTION_POLICY)


async def test_resolved_policy_is_a_private_copy():
    policy = resolve_rejection_policy(None, None)
    assert_true(policy is not SYSTEM_DEFAULT_REJECTION_POLICY)

    policy.notify_roles_on_reject.append("FINANCE_ADMIN")
    policy.max_remarks_length = 10

    assert_equal(SYSTEM_DEFAULT_REJECTION_POLICY.notify_roles_on_reject, ["REQUESTOR"])
    fresh = resolve_rejection_policy(order_workflow_config(), "LOCATION_APPROVAL")
    assert_equal(fresh.notify_roles_on_reject, ["REQUESTOR"])
    assert_equal(resolve_rejection_policy(None, None).max_remarks_length, 2000)


async def test_stage_overrides_only_its_own_fields():
    """A stage setting one field keeps the workflow's other fields"""
    config = order_workflow_config(
        workflow_rejection=StageRejectionConfig(
            is_remarks_mandatory=True,
            max_remarks_length=500,
            notify_roles_on_reject=["REQUESTOR", "LOCATION_ADMIN"],
        ),
        location_rejection=StageRejectionConfig(
            is_terminal_on_reject=False,
            max_remarks_length=120,
        ),
    )

    policy = resolve_rejection_policy(config, "LOCATION_APPROVAL")
    assert_false(policy.is_terminal_on_reject, "Stage override wins")
    assert_equal(policy.max_remarks_length, 120, "Stage override wins")
    assert_true(policy.is_remarks_mandatory, "Workflow default kept")
    assert_equal(policy.notify_roles_on_reject, ["REQUESTOR", "LOCATION_ADMIN"])
    assert_equal(policy.visible_to_roles_after_reject, ["REQUESTOR", "COMPANY_ADMIN"], "System default kept")

    # The other stage only sees the workflow level
    company = resolve_rejection_policy(config, "COMPANY_APPROVAL")
    assert_true(company.is_terminal_on_reject)
    assert_equal(company.max_remarks_length, 500)


async def test_reason_code_always_mandatory():
    config = order_workflow_config(
        workflow_rejection=StageRejectionConfig(is_reason_code_mandatory=False),
    )
    policy = resolve_rejection_policy(config, "LOCATION_APPROVAL")
    assert_true(policy.is_reason_code_mandatory, "Configuration cannot relax reason codes")


async def test_unknown_stage_uses_workflow_level():
    config = order_workflow_config(
        workflow_rejection=StageRejectionConfig(allowed_reason_codes=["BUDGET_EXCEEDED"]),
    )
    policy = resolve_rejection_policy(config, "NO_SUCH_STAGE")
    assert_equal(policy.allowed_reason_codes, ["BUDGET_EXCEEDED"])


async def test_rejected_status_precedence():
    config = order_workflow_config()
    config.status_on_rejection = {"COMPANY_APPROVAL": "REJECTED_BY_COMPANY"}

    plain = resolve_rejection_policy(config, "LOCATION_APPROVAL")
    assert_equal(resolve_rejected_status(plain, config, "LOCATION_APPROVAL"), "REJECTED")
    assert_equal(resolve_rejected_status(plain, config, "COMPANY_APPROVAL"), "REJECTED_BY_COMPANY")

    config.stages[1].rejection_config = StageRejectionConfig(rejected_status="RETURNED")
    overridden = resolve_rejection_policy(config, "COMPANY_APPROVAL")
    assert_equal(resolve_rejected_status(overridden, config, "COMPANY_APPROVAL"), "RETURNED")


async def main():
    return await run_tests("Rejection Policy Tests", [
        ("System defaults without config", test_system_defaults_without_config),
        ("Resolved policy is a private copy", test_resolved_policy_is_a_private_copy),
        ("Stage overrides only its own fields", test_stage_overrides_only_its_own_fields),
        ("Reason code always mandatory", test_reason_code_always_mandatory),
        ("Unknown stage uses workflow level", test_unknown_stage_uses_workflow_level),
        ("Rejected status precedence", test_rejected_status_precedence),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
