"""
Rejection policy resolution.

Effective policy = stage override -> workflow default -> system default,
merged field by field: the first level that sets a field wins for that
field only.
"""

from typing import Optional

from approval_workflow.models.schemas import (
    StageRejectionConfig,
    ResolvedRejectionPolicy,
    ResubmissionStrategy,
    WorkflowConfigurationData,
)


SYSTEM_DEFAULT_REJECTION_POLICY = ResolvedRejectionPolicy(
    is_terminal_on_reject=True,
    stop_further_stages_on_reject=True,
    is_reason_code_mandatory=True,
    is_remarks_mandatory=False,
    max_remarks_length=2000,
    allowed_reason_codes=[],  # empty = unrestricted
    rejected_status=None,  # falls through to statusOnRejection, then "REJECTED"
    notify_roles_on_reject=["REQUESTOR"],
    notify_requestor=True,
    exclude_from_notification=[],
    visible_to_roles_after_reject=["REQUESTOR", "COMPANY_ADMIN"],
    resubmission_strategy=ResubmissionStrategy.NEW_ENTITY,
    allow_resubmission=True,
    resubmission_allowed_roles=["REQUESTOR"],
)


def merge_rejection_config(
    base: ResolvedRejectionPolicy, override: Optional[StageRejectionConfig]
) -> ResolvedRejectionPolicy:
    if override is None:
        return base
    # exclude_none keeps sibling fields from the lower level
    changes = override.model_dump(exclude_none=True)
    return base.model_copy(update=changes)


def resolve_rejection_policy(
    config: Optional[WorkflowConfigurationData], stage_key: Optional[str]
) -> ResolvedRejectionPolicy:
    # Never hand out the module default itself
    policy = SYSTEM_DEFAULT_REJECTION_POLICY.model_copy(deep=True)
    if config is None:
        return policy

    policy = merge_rejection_config(policy, config.rejection_config)

    stage = config.get_stage(stage_key)
    if stage is not None:
        policy = merge_rejection_config(policy, stage.rejection_config)

    # Reason codes are mandatory regardless of configuration
    if not policy.is_reason_code_mandatory:
        policy = policy.model_copy(update={"is_reason_code_mandatory": True})

    return policy


def resolve_rejected_status(
    policy: ResolvedRejectionPolicy,
    config: Optional[WorkflowConfigurationData],
    stage_key: Optional[str],
) -> str:
    """rejectedStatus override -> statusOnRejection[stage] -> REJECTED"""
    if policy.rejected_status:
        return policy.rejected_status
    if config is not None and stage_key and config.status_on_rejection.get(stage_key):
        return config.status_on_rejection[stage_key]
    return "REJECTED"
