"""
UI rules projection.

Read-only snapshot of what the acting user may do with an entity. Stage
and permission facts come from the workflow engine's own resolution
helpers so the buttons a client shows match what the engine will accept.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import Optional
import structlog

from approval_workflow.core.workflow_engine import (
    WorkflowEngine,
    WorkflowFailure,
    APPROVE_STAGE_MARKERS,
    REJECT_STAGE_MARKERS,
    approved_statuses,
    rejected_statuses,
)
from approval_workflow.core.rejection_policy import resolve_rejection_policy
from approval_workflow.core.reason_codes import get_default_reason_codes, UI_REJECTION_ACTIONS
from approval_workflow.models.schemas import (
    EntityType,
    ResolvedRejectionPolicy,
    ResubmissionStrategy,
    UserContext,
    WorkflowConfigurationData,
    WorkflowEntity,
    WorkflowErrorCode,
    WorkflowStage,
    WorkflowState,
)
from approval_workflow.models.ui_rules_schemas import (
    ActionPermission,
    AllowedActions,
    RejectionUIConfig,
    StageProgress,
    UIRulesResponse,
    UserRoleInfo,
    WorkflowProgress,
)

logger = structlog.get_logger()

CANCEL_ADMIN_ROLES = ("COMPANY_ADMIN", "SUPER_ADMIN")
COMPLETED_STATUSES = ("APPROVED", "COMPLETED", "CLOSED", "DELIVERED")


def resolve_action_stage(
    config: WorkflowConfigurationData, entity: WorkflowEntity
) -> Optional[WorkflowStage]:
    """The stage the engine would act on for approve, else for reject"""
    return (
        WorkflowEngine.resolve_current_stage(config, entity, APPROVE_STAGE_MARKERS)
        or WorkflowEngine.resolve_current_stage(config, entity, REJECT_STAGE_MARKERS)
    )


def is_rejected_status(status: Optional[str], config: Optional[WorkflowConfigurationData] = None) -> bool:
    status = (status or "").upper()
    if "REJECTED" in status or status == "CANCELLED":
        return True
    return config is not None and status in rejected_statuses(config)


def classify_workflow_state(
    entity: WorkflowEntity, config: Optional[WorkflowConfigurationData] = None
) -> WorkflowState:
    """
    Follows the engine: an entity with a resolvable stage is in the
    workflow, even after a send back or hold. Otherwise the configured
    approved and rejected statuses decide, checked in the engine's order.
    """
    status = (entity.status or "").upper()

    if config is not None and resolve_action_stage(config, entity) is not None:
        return WorkflowState.IN_WORKFLOW

    completed = set(COMPLETED_STATUSES)
    if config is not None:
        completed.update(approved_statuses(config))
    if status in completed:
        return WorkflowState.COMPLETED
    if is_rejected_status(status, config):
        return WorkflowState.REJECTED
    if "PENDING" in status or "AWAITING" in status:
        return WorkflowState.IN_WORKFLOW
    if not entity.current_stage:
        return WorkflowState.NOT_IN_WORKFLOW
    return WorkflowState.IN_WORKFLOW


def _deny(reason: str) -> ActionPermission:
    return ActionPermission(allowed=False, reason=reason)


class UIRulesService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.engine = WorkflowEngine(db)

    async def evaluate(
        self, entity_type: EntityType, entity_id: str, user: UserContext
    ) -> UIRulesResponse:
        entity_type = EntityType(entity_type)
        evaluated_at = datetime.now().timestamp()

        try:
            _, entity = await self.engine.load_entity(user.company_id, entity_type, entity_id)
        except WorkflowFailure:
            return self._not_found_response(entity_type, entity_id, user, evaluated_at)

        try:
            config = await self.engine.load_config(user.company_id, entity_type)
        except WorkflowFailure as failure:
            if failure.error_code == WorkflowErrorCode.WORKFLOW_INVALID:
                return self._invalid_config_response(entity, user, evaluated_at, failure.message)
            # Administrative roles may still reject without a workflow
            can_reject = await self.engine.can_user_reject(
                user.company_id, entity_type, entity.id, user.user_role
            )
            return self._no_config_response(entity, user, evaluated_at, can_reject.allowed)

        state = classify_workflow_state(entity, config)
        stage = resolve_action_stage(config, entity)
        returned = stage is not None and is_rejected_status(entity.status, config)

        policy = await self._effective_policy(config, entity, stage, state)
        actions = self._evaluate_actions(entity, config, stage, state, user, policy, returned)

        response = UIRulesResponse(
            entity_id=entity.id,
            entity_type=entity_type,
            entity_status=entity.status,
            workflow_state=state,
            current_stage=stage.stage_key if stage else None,
            current_stage_name=stage.stage_name if stage else None,
            allowed_actions=actions,
            rejection_config=self._rejection_ui_config(
                entity_type, actions.can_reject.allowed, stage, policy
            ),
            workflow_progress=self._progress(config, stage, state),
            informational_message=self._informational(stage, state, user),
            status_message=self._status_message(stage, state, returned),
            next_action_hint=self._hint(config, stage, state, user),
            user_role_info=UserRoleInfo(
                user_id=user.user_id,
                user_role=user.user_role,
                is_allowed_at_current_stage=bool(stage and user.user_role in stage.allowed_roles),
                is_owner=self._is_owner(entity, user),
                allowed_roles_at_current_stage=list(stage.allowed_roles) if stage else [],
            ),
            evaluated_at=evaluated_at,
            workflow_config_id=config.id,
            workflow_version=config.version,
        )

        logger.debug(
            "ui_rules_evaluated",
            entity_type=entity_type.value,
            entity_id=entity.id,
            workflow_state=state.value,
            can_approve=actions.can_approve.allowed,
            can_reject=actions.can_reject.allowed,
        )
        return response

    async def _effective_policy(
        self,
        config: WorkflowConfigurationData,
        entity: WorkflowEntity,
        stage: Optional[WorkflowStage],
        state: WorkflowState,
    ) -> ResolvedRejectionPolicy:
        if stage is not None:
            return resolve_rejection_policy(config, stage.stage_key)
        if state == WorkflowState.REJECTED:
            # A terminal rejection clears the stage; the rejection record remembers it
            latest = await self.engine.audit.get_latest_rejection(
                entity.company_id, entity.entity_type, entity.id
            )
            if latest is not None:
                return resolve_rejection_policy(config, latest.workflow_stage)
        return resolve_rejection_policy(config, None)

    # ========================================================================
    # Actions
    # ========================================================================

    def _evaluate_actions(
        self,
        entity: WorkflowEntity,
        config: WorkflowConfigurationData,
        stage: Optional[WorkflowStage],
        state: WorkflowState,
        user: UserContext,
        policy: ResolvedRejectionPolicy,
        returned: bool = False,
    ) -> AllowedActions:
        can_view = ActionPermission(allowed=True, reason="User can view this entity")

        if state == WorkflowState.COMPLETED:
            done = "Entity is already fully approved"
            return AllowedActions(
                can_approve=_deny(done),
                can_reject=_deny(done),
                can_resubmit=_deny(done),
                can_cancel=_deny(done),
                can_view=can_view,
                can_edit=_deny(done),
            )

        if state == WorkflowState.REJECTED:
            rejected = "Entity has been rejected"
            return AllowedActions(
                can_approve=_deny(rejected),
                can_reject=_deny(rejected),
                can_resubmit=self._resubmit_permission(entity, user, policy),
                can_cancel=_deny(rejected),
                can_view=can_view,
                can_edit=self._edit_permission(entity, user, policy, rejected=True),
            )

        if stage is None:
            outside = "Entity is not in an approval workflow"
            return AllowedActions(
                can_approve=_deny(outside),
                can_reject=_deny(outside),
                can_resubmit=_deny(outside),
                can_cancel=self._cancel_permission(entity, user),
                can_view=can_view,
                can_edit=self._edit_permission(entity, user, policy, rejected=False),
            )

        role_allowed = user.user_role in stage.allowed_roles
        pending = "Entity is pending approval"

        # A RAISED entity without a stage can be rejected but not yet approved
        if WorkflowEngine.resolve_current_stage(config, entity, APPROVE_STAGE_MARKERS) is None:
            can_approve = _deny("Entity has not been submitted for approval")
        else:
            can_approve = self._approve_permission(config, stage, user, role_allowed)

        # Sent back or on hold: still actionable at its stage, and open to correction
        if returned:
            can_resubmit = self._resubmit_permission(entity, user, policy)
            can_edit = self._edit_permission(entity, user, policy, rejected=True)
        else:
            can_resubmit = _deny(pending)
            can_edit = _deny(pending)

        return AllowedActions(
            can_approve=can_approve,
            can_reject=self._reject_permission(stage, user, role_allowed),
            can_resubmit=can_resubmit,
            can_cancel=self._cancel_permission(entity, user),
            can_view=can_view,
            can_edit=can_edit,
        )

    def _approve_permission(self, config, stage, user, role_allowed) -> ActionPermission:
        if not stage.can_approve:
            return _deny(f'Stage "{stage.stage_name}" does not allow approval')
        if not role_allowed:
            return _deny(
                f"Your role ({user.user_role}) is not authorized to approve at this stage. "
                f"Allowed roles: {', '.join(stage.allowed_roles)}"
            )

        is_last = stage.is_terminal or config.next_stage(stage.stage_key) is None
        if is_last:
            return ActionPermission(
                allowed=True,
                reason="You can give final approval for this entity",
                requires_confirmation=True,
                confirmation_message=(
                    "This is the final approval. The entity will be marked as approved. Continue?"
                ),
            )
        return ActionPermission(allowed=True, reason="You can approve and move to next stage")

    def _reject_permission(self, stage, user, role_allowed) -> ActionPermission:
        if not stage.can_reject:
            return _deny(f'Stage "{stage.stage_name}" does not allow rejection')
        if not role_allowed:
            return _deny(
                f"Your role ({user.user_role}) is not authorized to reject at this stage. "
                f"Allowed roles: {', '.join(stage.allowed_roles)}"
            )
        return ActionPermission(
            allowed=True,
            reason="You can reject this entity with a reason",
            requires_confirmation=True,
            confirmation_message=(
                "Are you sure you want to reject this entity? This action will notify the submitter."
            ),
        )

    def _may_resubmit(self, entity, user, policy: ResolvedRejectionPolicy) -> bool:
        roles = policy.resubmission_allowed_roles
        if user.user_role in roles:
            return True
        if "REQUESTOR" in roles and self._is_owner(entity, user):
            return True
        return user.user_role == "COMPANY_ADMIN"

    def _resubmit_permission(self, entity, user, policy: ResolvedRejectionPolicy) -> ActionPermission:
        if not policy.allow_resubmission:
            return _deny("Resubmission is not allowed for this rejection")

        if not self._may_resubmit(entity, user, policy):
            return _deny(
                f"Only {' or '.join(policy.resubmission_allowed_roles)} can resubmit rejected entities"
            )

        if policy.resubmission_strategy == ResubmissionStrategy.SAME_ENTITY:
            return ActionPermission(allowed=True, reason="You can resubmit this entity for approval")
        return ActionPermission(
            allowed=True,
            reason="You must create a new request to resubmit",
            requires_confirmation=True,
            confirmation_message=(
                "This will create a new request. The rejected request will remain in history. Continue?"
            ),
        )

    def _edit_permission(self, entity, user, policy, rejected: bool) -> ActionPermission:
        if not rejected:
            return _deny("Entity cannot be edited in current state")

        if policy.resubmission_strategy == ResubmissionStrategy.NEW_ENTITY:
            return _deny(
                "This rejection requires creating a new request. The original cannot be edited."
            )
        if self._may_resubmit(entity, user, policy):
            return ActionPermission(
                allowed=True, reason="You can edit this rejected entity before resubmitting"
            )
        return _deny(
            f"Only {' or '.join(policy.resubmission_allowed_roles)} can edit rejected entities"
        )

    def _cancel_permission(self, entity, user) -> ActionPermission:
        if self._is_owner(entity, user) or user.user_role in CANCEL_ADMIN_ROLES:
            return ActionPermission(
                allowed=True,
                reason="You can cancel this entity",
                requires_confirmation=True,
                confirmation_message="Are you sure you want to cancel? This action cannot be undone.",
            )
        return _deny("Only the owner or admin can cancel")

    @staticmethod
    def _is_owner(entity: WorkflowEntity, user: UserContext) -> bool:
        return bool(entity.created_by) and entity.created_by == user.user_id

    # ========================================================================
    # Rejection config, progress and messages
    # ========================================================================

    def _rejection_ui_config(
        self,
        entity_type: EntityType,
        is_allowed: bool,
        stage: Optional[WorkflowStage],
        policy: ResolvedRejectionPolicy,
    ) -> RejectionUIConfig:
        codes = get_default_reason_codes(entity_type)
        if stage is not None and policy.allowed_reason_codes:
            allowed = set(policy.allowed_reason_codes)
            codes = [c for c in codes if c.code in allowed]

        return RejectionUIConfig(
            is_allowed=is_allowed,
            is_reason_mandatory=True,
            is_remarks_mandatory=policy.is_remarks_mandatory if stage else False,
            max_remarks_length=policy.max_remarks_length if stage else 2000,
            allowed_reason_codes=codes,
            allowed_actions=list(UI_REJECTION_ACTIONS),
        )

    def _progress(
        self,
        config: WorkflowConfigurationData,
        stage: Optional[WorkflowStage],
        state: WorkflowState,
    ) -> WorkflowProgress:
        ordered = config.sorted_stages()
        total = len(ordered)
        current_order = 0
        if stage is not None:
            keys = [s.stage_key for s in ordered]
            current_order = keys.index(stage.stage_key) + 1
        completed = current_order - 1 if current_order > 0 else 0

        stages = []
        for index, item in enumerate(ordered):
            if state == WorkflowState.COMPLETED:
                status = "COMPLETED"
            elif index < current_order - 1:
                status = "COMPLETED"
            elif index == current_order - 1:
                status = "CURRENT"
            else:
                status = "PENDING"
            stages.append(
                StageProgress(
                    stage_key=item.stage_key,
                    stage_name=item.stage_name,
                    order=item.order,
                    status=status,
                    allowed_roles=list(item.allowed_roles),
                    is_terminal=item.is_terminal,
                )
            )

        if state == WorkflowState.COMPLETED:
            percent = 100
        elif total > 0:
            percent = round(completed / total * 100)
        else:
            percent = 0

        return WorkflowProgress(
            total_stages=total,
            current_stage_order=current_order,
            completed_stages=completed,
            percent_complete=percent,
            stages=stages,
        )

    def _status_message(self, stage, state, returned=False) -> Optional[str]:
        if state == WorkflowState.COMPLETED:
            return "This entity has been fully approved"
        if state == WorkflowState.REJECTED:
            return "This entity has been rejected"
        if state == WorkflowState.IN_WORKFLOW and returned:
            return f"Returned at {stage.stage_name}"
        if state == WorkflowState.IN_WORKFLOW:
            return f"Pending {stage.stage_name}" if stage else "In approval workflow"
        if state == WorkflowState.NOT_IN_WORKFLOW:
            return "Not yet submitted for approval"
        return None

    def _informational(self, stage, state, user) -> Optional[str]:
        if state != WorkflowState.IN_WORKFLOW or stage is None:
            return None
        if user.user_role in stage.allowed_roles:
            return f"You can approve or reject this entity as {user.user_role}"
        return f"Waiting for {' or '.join(stage.allowed_roles)} to take action"

    def _hint(self, config, stage, state, user) -> Optional[str]:
        if state == WorkflowState.REJECTED:
            return "Edit the entity and resubmit for approval"
        if state == WorkflowState.IN_WORKFLOW and stage and user.user_role in stage.allowed_roles:
            next_stage = config.next_stage(stage.stage_key)
            if next_stage is not None:
                return f"Approve to move to {next_stage.stage_name}, or reject with a reason"
            return "Approve to complete the workflow, or reject with a reason"
        return None

    # ========================================================================
    # Dedicated responses
    # ========================================================================

    def _not_found_response(
        self, entity_type: EntityType, entity_id: str, user: UserContext, evaluated_at: float
    ) -> UIRulesResponse:
        missing = _deny("Entity not found")
        return UIRulesResponse(
            entity_id=entity_id,
            entity_type=entity_type,
            entity_status="NOT_FOUND",
            workflow_state=WorkflowState.NOT_IN_WORKFLOW,
            current_stage=None,
            current_stage_name=None,
            allowed_actions=AllowedActions(
                can_approve=missing,
                can_reject=missing,
                can_resubmit=missing,
                can_cancel=missing,
                can_view=missing,
                can_edit=missing,
            ),
            rejection_config=RejectionUIConfig(is_allowed=False),
            workflow_progress=WorkflowProgress(),
            informational_message="Entity not found",
            status_message="Entity not found or access denied",
            next_action_hint=None,
            user_role_info=UserRoleInfo(user_id=user.user_id, user_role=user.user_role),
            evaluated_at=evaluated_at,
            workflow_config_id=None,
            workflow_version=None,
        )

    def _no_config_response(
        self, entity: WorkflowEntity, user: UserContext, evaluated_at: float, can_reject: bool = False
    ) -> UIRulesResponse:
        unconfigured = _deny("No workflow configured for this entity type")
        if can_reject:
            reject = ActionPermission(
                allowed=True,
                reason="You can reject this entity directly; no workflow is configured",
                requires_confirmation=True,
                confirmation_message=(
                    "Are you sure you want to reject this entity? This action will notify the submitter."
                ),
            )
            rejection_config = RejectionUIConfig(
                is_allowed=True,
                is_reason_mandatory=True,
                allowed_reason_codes=get_default_reason_codes(entity.entity_type),
                allowed_actions=list(UI_REJECTION_ACTIONS),
            )
        else:
            reject = unconfigured
            rejection_config = RejectionUIConfig(is_allowed=False)

        return UIRulesResponse(
            entity_id=entity.id,
            entity_type=entity.entity_type,
            entity_status=entity.status,
            workflow_state=WorkflowState.NO_WORKFLOW_CONFIG,
            current_stage=None,
            current_stage_name=None,
            allowed_actions=AllowedActions(
                can_approve=unconfigured,
                can_reject=reject,
                can_resubmit=unconfigured,
                can_cancel=ActionPermission(allowed=True, reason="You can cancel this entity"),
                can_view=ActionPermission(allowed=True, reason="You can view this entity"),
                can_edit=ActionPermission(allowed=True, reason="You can edit this entity"),
            ),
            rejection_config=rejection_config,
            workflow_progress=WorkflowProgress(),
            informational_message="No approval workflow is configured for this entity type",
            status_message="No workflow configured",
            next_action_hint="Contact administrator to configure workflow",
            user_role_info=UserRoleInfo(
                user_id=user.user_id,
                user_role=user.user_role,
                is_owner=self._is_owner(entity, user),
            ),
            evaluated_at=evaluated_at,
            workflow_config_id=None,
            workflow_version=None,
        )

    def _invalid_config_response(
        self, entity: WorkflowEntity, user: UserContext, evaluated_at: float, detail: str
    ) -> UIRulesResponse:
        # The engine refuses every transition until the configuration is fixed
        broken = _deny("Workflow configuration is invalid")
        return UIRulesResponse(
            entity_id=entity.id,
            entity_type=entity.entity_type,
            entity_status=entity.status,
            workflow_state=WorkflowState.NO_WORKFLOW_CONFIG,
            current_stage=None,
            current_stage_name=None,
            allowed_actions=AllowedActions(
                can_approve=broken,
                can_reject=broken,
                can_resubmit=broken,
                can_cancel=broken,
                can_view=ActionPermission(allowed=True, reason="You can view this entity"),
                can_edit=broken,
            ),
            rejection_config=RejectionUIConfig(is_allowed=False),
            workflow_progress=WorkflowProgress(),
            informational_message=detail,
            status_message="Workflow configuration is invalid",
            next_action_hint="Contact administrator to fix the workflow configuration",
            user_role_info=UserRoleInfo(
                user_id=user.user_id,
                user_role=user.user_role,
                is_owner=self._is_owner(entity, user),
            ),
            evaluated_at=evaluated_at,
            workflow_config_id=None,
            workflow_version=None,
        )
