"""
Workflow engine with configuration-driven stage management.
Advances entities through approval stages and records every decision.

All public operations return a WorkflowResult; nothing raises across
this boundary. Order of effects for a transition:
entity update (committed) -> audit append -> event emission.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import Optional, List, Tuple, Dict, Any
import structlog

from approval_workflow.core.entity_repository import (
    EntityRepository,
    ConcurrentModificationError,
    UnsupportedEntityTypeError,
    get_entity_repository,
)
from approval_workflow.core.workflow_config import (
    InvalidWorkflowConfigurationError,
    WorkflowConfigService,
    validate_configuration,
)
from approval_workflow.core.rejection_policy import resolve_rejection_policy, resolve_rejected_status
from approval_workflow.core.audit_recorder import AuditRecorder
from approval_workflow.core.workflow_events import (
    build_approval_event,
    build_rejection_event,
    build_submission_event,
)
from approval_workflow.models.schemas import (
    ApproveInput,
    RejectInput,
    ApprovalOutcome,
    RejectionOutcome,
    InitializationOutcome,
    PermissionCheck,
    WorkflowStateView,
    WorkflowResult,
    WorkflowErrorCode,
    WorkflowEntity,
    WorkflowStage,
    WorkflowStateUpdate,
    WorkflowConfigurationData,
    EntityType,
    TriggeredBy,
    RejectionDetail,
    ResolutionAction,
)
from approval_workflow.config.settings import settings

logger = structlog.get_logger()


# Status fragments that let an entity without an explicit stage be placed at the entry stage
APPROVE_STAGE_MARKERS = ("PENDING", "AWAITING")
REJECT_STAGE_MARKERS = ("PENDING", "AWAITING", "RAISED")

NO_WORKFLOW_CONFIG_ID = "NO_WORKFLOW"
DIRECT_REJECTION_STAGE = "DIRECT_REJECTION"


class WorkflowFailure(Exception):
    """Typed failure raised inside the engine and converted to a WorkflowResult"""

    def __init__(self, error_code: WorkflowErrorCode, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(message)

    def to_result(self) -> WorkflowResult:
        return WorkflowResult.fail(self.error_code, self.message)


def stage_side_fields(stage_key: str, user_id: str, now: float) -> Dict[str, Any]:
    """
    Approver columns written alongside the status for stages that
    pre-date the generic engine. Repositories drop columns they don't own.
    """
    fields: Dict[str, Any] = {}

    if stage_key in ("LOCATION_APPROVAL", "SITE_ADMIN_APPROVAL"):
        fields["site_admin_approved_by"] = user_id
        fields["site_admin_approved_at"] = now

    if stage_key == "COMPANY_APPROVAL":
        fields["company_admin_approved_by"] = user_id
        fields["company_admin_approved_at"] = now

    if stage_key == "GRN_COMPANY_APPROVAL":
        fields["approved_by"] = user_id
        fields["approved_at"] = now
        fields["grn_acknowledged_by_company"] = True
        fields["grn_acknowledged_by"] = user_id
        fields["grn_acknowledged_date"] = now

    if stage_key in ("INVOICE_COMPANY_APPROVAL", "INVOICE_FINANCE_APPROVAL"):
        fields["approved_by"] = user_id
        fields["approved_at"] = now

    return fields


class WorkflowEngine:
    """
    Stage state machine for any registered entity kind.
    Stages are ordered by their integer order; at most one is current.
    """

    def __init__(self, db: AsyncSession, event_bus=None):
        self.db = db
        self.event_bus = event_bus
        self.configs = WorkflowConfigService(db)
        self.audit = AuditRecorder(db)

    # ========================================================================
    # Approve
    # ========================================================================

    async def approve_entity(self, request: ApproveInput) -> WorkflowResult:
        try:
            return WorkflowResult.ok(await self._approve(request))
        except WorkflowFailure as failure:
            await self.db.rollback()
            logger.info(
                "approval_refused",
                entity_type=request.entity_type.value,
                entity_id=request.entity_id,
                user_role=request.user_role,
                error_code=failure.error_code.value,
                reason=failure.message,
            )
            return failure.to_result()
        except ConcurrentModificationError as e:
            await self.db.rollback()
            return WorkflowResult.fail(WorkflowErrorCode.CONCURRENT_MODIFICATION, str(e))
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "approval_failed",
                entity_type=request.entity_type.value,
                entity_id=request.entity_id,
                error=str(e),
                exc_info=True,
            )
            return WorkflowResult.fail(
                WorkflowErrorCode.UNKNOWN_ERROR, str(e) or "Unknown error during approval"
            )

    async def _approve(self, request: ApproveInput) -> ApprovalOutcome:
        repository, entity = await self.load_entity(
            request.company_id, request.entity_type, request.entity_id
        )
        config = await self.load_config(request.company_id, request.entity_type)
        stage = self.require_stage(config, entity, APPROVE_STAGE_MARKERS)
        self._check_expected_stage(request.expected_stage, stage)

        if not stage.can_approve:
            raise WorkflowFailure(
                WorkflowErrorCode.APPROVE_NOT_ALLOWED,
                f"Stage {stage.stage_key} does not allow approval action",
            )
        if request.user_role not in stage.allowed_roles:
            raise WorkflowFailure(
                WorkflowErrorCode.ROLE_NOT_ALLOWED,
                f"Role {request.user_role} is not allowed to approve at stage {stage.stage_key}. "
                f"Allowed roles: {', '.join(stage.allowed_roles)}",
            )

        next_stage = config.next_stage(stage.stage_key)
        is_terminal = stage.is_terminal or next_stage is None

        configured = config.status_on_approval.get(stage.stage_key)
        if configured:
            new_status = configured
        elif is_terminal:
            new_status = "APPROVED"
        else:
            new_status = f"PENDING_{next_stage.stage_key}"

        new_stage = None if is_terminal else next_stage.stage_key
        now = datetime.now().timestamp()

        await self._write_state(
            repository,
            entity,
            WorkflowStateUpdate(
                status=new_status,
                current_stage=new_stage,
                workflow_config_id=config.id,
                workflow_version=config.version,
                side_fields=stage_side_fields(stage.stage_key, request.user_id, now),
            ),
        )

        logger.info(
            "entity_approved",
            entity_type=request.entity_type.value,
            entity_id=entity.id,
            from_stage=stage.stage_key,
            to_stage=new_stage,
            new_status=new_status,
            is_terminal=is_terminal,
            approved_by=request.user_id,
        )

        snapshot = repository.get_entity_snapshot(entity)
        audit_id = None
        try:
            audit_id = await self.audit.record_approval(
                request,
                entity_id=entity.id,
                from_stage=stage.stage_key,
                to_stage=new_stage,
                is_terminal=is_terminal,
                previous_status=entity.status,
                new_status=new_status,
                snapshot=snapshot,
                workflow_config_id=config.id,
                workflow_version=config.version,
            )
            await self.db.commit()
        except Exception as e:
            # The entity has already advanced; the missing audit is reported, not undone
            await self.db.rollback()
            logger.error(
                "approval_audit_failed",
                entity_type=request.entity_type.value,
                entity_id=entity.id,
                error=str(e),
                exc_info=True,
            )

        self._emit(
            build_approval_event(
                company_id=request.company_id,
                entity_type=request.entity_type,
                entity_id=entity.id,
                approved_stage=stage.info(),
                next_stage=next_stage.info() if next_stage else None,
                current_status=new_status,
                previous_status=entity.status,
                is_terminal=is_terminal,
                triggered_by=_triggered_by(request),
                entity_snapshot=snapshot,
                metadata={"audit_id": audit_id, "remarks": request.remarks},
            )
        )

        return ApprovalOutcome(
            entity_id=entity.id,
            entity_type=request.entity_type,
            previous_stage=stage.stage_key,
            previous_status=entity.status,
            new_stage=new_stage,
            new_status=new_status,
            is_terminal=is_terminal,
            audit_id=audit_id,
            workflow_config_id=config.id,
            workflow_version=config.version,
        )

    # ========================================================================
    # Reject
    # ========================================================================

    async def reject_entity(self, request: RejectInput) -> WorkflowResult:
        try:
            return WorkflowResult.ok(await self._reject(request))
        except WorkflowFailure as failure:
            await self.db.rollback()
            logger.info(
                "rejection_refused",
                entity_type=request.entity_type.value,
                entity_id=request.entity_id,
                user_role=request.user_role,
                error_code=failure.error_code.value,
                reason=failure.message,
            )
            return failure.to_result()
        except ConcurrentModificationError as e:
            await self.db.rollback()
            return WorkflowResult.fail(WorkflowErrorCode.CONCURRENT_MODIFICATION, str(e))
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "rejection_failed",
                entity_type=request.entity_type.value,
                entity_id=request.entity_id,
                error=str(e),
                exc_info=True,
            )
            return WorkflowResult.fail(
                WorkflowErrorCode.UNKNOWN_ERROR, str(e) or "Unknown error during rejection"
            )

    async def _reject(self, request: RejectInput) -> RejectionOutcome:
        # Reason code is mandatory at every stage, for every role
        if not request.reason_code or not request.reason_code.strip():
            raise WorkflowFailure(
                WorkflowErrorCode.VALIDATION_ERROR, "Rejection reason code is required"
            )

        repository, entity = await self.load_entity(
            request.company_id, request.entity_type, request.entity_id
        )
        config, stage = await self._resolve_rejection_context(request, entity)
        self._check_expected_stage(request.expected_stage, stage)

        policy = resolve_rejection_policy(config, stage.stage_key)

        remarks = (request.remarks or "").strip()
        if policy.is_remarks_mandatory and not remarks:
            raise WorkflowFailure(
                WorkflowErrorCode.VALIDATION_ERROR,
                f'Rejection remarks are required at stage "{stage.stage_name}"',
            )
        if request.remarks and len(request.remarks) > policy.max_remarks_length:
            raise WorkflowFailure(
                WorkflowErrorCode.VALIDATION_ERROR,
                f"Rejection remarks exceed maximum length of {policy.max_remarks_length} characters",
            )
        if policy.allowed_reason_codes and request.reason_code not in policy.allowed_reason_codes:
            raise WorkflowFailure(
                WorkflowErrorCode.VALIDATION_ERROR,
                f'Reason code "{request.reason_code}" is not allowed at this stage. '
                f"Allowed: {', '.join(policy.allowed_reason_codes)}",
            )

        new_status = resolve_rejected_status(policy, config, stage.stage_key)
        is_terminal = policy.is_terminal_on_reject
        # A non-terminal rejection (send back, hold) keeps the entity at its stage
        if is_terminal:
            new_stage = None
        else:
            new_stage = stage.stage_key if config else entity.current_stage

        await self._write_state(
            repository,
            entity,
            WorkflowStateUpdate(
                status=new_status,
                current_stage=new_stage,
                workflow_config_id=config.id if config else None,
                workflow_version=config.version if config else None,
            ),
        )

        logger.info(
            "entity_rejected",
            entity_type=request.entity_type.value,
            entity_id=entity.id,
            stage=stage.stage_key,
            new_status=new_status,
            is_terminal=is_terminal,
            action=request.action.value,
            reason_code=request.reason_code,
            rejected_by=request.user_id,
        )

        snapshot = repository.get_entity_snapshot(entity)
        rejection_id = None
        try:
            rejection_id = await self.audit.record_rejection(
                request,
                entity_id=entity.id,
                stage_key=stage.stage_key,
                previous_stage=stage.stage_key,
                previous_status=entity.status,
                new_status=new_status,
                snapshot=snapshot,
                policy=policy,
                workflow_config_id=config.id if config else NO_WORKFLOW_CONFIG_ID,
                workflow_version=config.version if config else 0,
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "rejection_record_failed",
                entity_type=request.entity_type.value,
                entity_id=entity.id,
                error=str(e),
                exc_info=True,
            )

        self._emit(
            build_rejection_event(
                company_id=request.company_id,
                entity_type=request.entity_type,
                entity_id=entity.id,
                rejected_stage=stage.info(),
                current_status=new_status,
                previous_status=entity.status,
                is_terminal=is_terminal,
                rejection=RejectionDetail(
                    reason_code=request.reason_code,
                    reason_label=request.reason_label,
                    remarks=request.remarks,
                    action=request.action,
                ),
                triggered_by=_triggered_by(request),
                entity_snapshot=snapshot,
                metadata={"rejection_id": rejection_id},
            )
        )

        return RejectionOutcome(
            entity_id=entity.id,
            entity_type=request.entity_type,
            previous_stage=stage.stage_key,
            previous_status=entity.status,
            new_stage=new_stage,
            new_status=new_status,
            rejection_id=rejection_id,
            is_terminal=is_terminal,
            action=request.action,
            rejection_policy=policy,
            notify_roles=list(policy.notify_roles_on_reject),
            visible_to_roles=list(policy.visible_to_roles_after_reject),
            resubmission_strategy=policy.resubmission_strategy,
            allow_resubmission=policy.allow_resubmission,
            workflow_config_id=config.id if config else None,
            workflow_version=config.version if config else None,
        )

    async def _resolve_rejection_context(
        self, request: RejectInput, entity: WorkflowEntity
    ) -> Tuple[Optional[WorkflowConfigurationData], WorkflowStage]:
        """
        Config and stage for a rejection. Without any configuration for the
        entity type, the configured administrative roles may still reject
        through a synthetic single-stage context.
        """
        config = await self._fetch_config(request.company_id, request.entity_type)

        if config is None:
            fallback_roles = list(settings.no_config_rejection_roles)
            if fallback_roles and request.user_role in fallback_roles:
                logger.info(
                    "direct_rejection_without_workflow",
                    entity_type=request.entity_type.value,
                    entity_id=entity.id,
                    user_role=request.user_role,
                )
                return None, WorkflowStage(
                    stage_key=DIRECT_REJECTION_STAGE,
                    stage_name="Direct Rejection (No Workflow)",
                    order=1,
                    allowed_roles=fallback_roles,
                    is_terminal=False,
                )
            raise WorkflowFailure(
                WorkflowErrorCode.WORKFLOW_NOT_FOUND,
                f"No active workflow found for {request.entity_type.value} in company {request.company_id}",
            )

        config = self._check_config(config, request.entity_type)
        stage = self.require_stage(config, entity, REJECT_STAGE_MARKERS)

        if not stage.can_reject:
            raise WorkflowFailure(
                WorkflowErrorCode.REJECT_NOT_ALLOWED,
                f"Stage {stage.stage_key} does not allow rejection action",
            )
        if request.user_role not in stage.allowed_roles:
            raise WorkflowFailure(
                WorkflowErrorCode.ROLE_NOT_ALLOWED,
                f"Role {request.user_role} is not allowed to reject at stage {stage.stage_key}. "
                f"Allowed roles: {', '.join(stage.allowed_roles)}",
            )
        return config, stage

    # ========================================================================
    # Read-only queries
    # ========================================================================

    async def can_user_approve(
        self, company_id: str, entity_type: EntityType, entity_id: str, user_role: str
    ) -> PermissionCheck:
        try:
            _, entity = await self.load_entity(company_id, entity_type, entity_id)
            config = await self.load_config(company_id, entity_type)
            stage = self.require_stage(config, entity, APPROVE_STAGE_MARKERS)
        except WorkflowFailure as failure:
            return PermissionCheck(allowed=False, reason=failure.message)

        if not stage.can_approve:
            return PermissionCheck(
                allowed=False, reason=f"Stage {stage.stage_key} does not allow approval action"
            )
        if user_role not in stage.allowed_roles:
            return PermissionCheck(
                allowed=False,
                reason=f"Role {user_role} is not allowed to approve at stage {stage.stage_key}. "
                f"Allowed roles: {', '.join(stage.allowed_roles)}",
            )
        return PermissionCheck(allowed=True)

    async def can_user_reject(
        self, company_id: str, entity_type: EntityType, entity_id: str, user_role: str
    ) -> PermissionCheck:
        candidate = RejectInput(
            company_id=company_id,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id="",
            user_role=user_role,
        )
        try:
            _, entity = await self.load_entity(company_id, entity_type, entity_id)
            await self._resolve_rejection_context(candidate, entity)
        except WorkflowFailure as failure:
            return PermissionCheck(allowed=False, reason=failure.message)
        return PermissionCheck(allowed=True)

    async def get_workflow_state(
        self, company_id: str, entity_type: EntityType, entity_id: str
    ) -> WorkflowResult:
        try:
            repository, entity = await self.load_entity(company_id, entity_type, entity_id)
            config = await self.load_config(company_id, entity_type)
        except WorkflowFailure as failure:
            return failure.to_result()

        stage = self.resolve_current_stage(config, entity, APPROVE_STAGE_MARKERS)
        next_stage = config.next_stage(stage.stage_key) if stage else None

        return WorkflowResult.ok(
            WorkflowStateView(
                entity_id=entity.id,
                entity_type=entity.entity_type,
                status=entity.status,
                entity_snapshot=repository.get_entity_snapshot(entity),
                workflow_config_id=config.id,
                workflow_version=config.version,
                workflow_name=config.name,
                current_stage=stage.info() if stage else None,
                next_stage=next_stage.info() if next_stage else None,
                is_terminal=bool(stage and (stage.is_terminal or next_stage is None)),
            )
        )

    # ========================================================================
    # Initialize
    # ========================================================================

    async def initialize_workflow(
        self,
        company_id: str,
        entity_type: EntityType,
        entity_id: str,
        triggered_by: Optional[TriggeredBy] = None,
    ) -> WorkflowResult:
        """
        Place an entity at the entry stage with the submission status.

        Re-initialising a rejected entity counts as a resubmission: its open
        rejection is resolved and ENTITY_RESUBMITTED is emitted.
        """
        entity_type = EntityType(entity_type)
        try:
            repository, entity = await self.load_entity(company_id, entity_type, entity_id)
            config = await self.load_config(company_id, entity_type)
            initial = config.initial_stage()
            status = config.status_on_submission or f"PENDING_{initial.stage_key}"

            await self._write_state(
                repository,
                entity,
                WorkflowStateUpdate(
                    status=status,
                    current_stage=initial.stage_key,
                    workflow_config_id=config.id,
                    workflow_version=config.version,
                ),
            )

            open_rejection = None
            latest = await self.audit.get_latest_rejection(company_id, entity_type, entity.id)
            if latest is not None and not latest.is_resolved:
                open_rejection = latest
                await self.audit.resolve_rejection(
                    latest.id,
                    resolved_by=triggered_by.user_id if triggered_by else "SYSTEM",
                    action=ResolutionAction.RESUBMITTED,
                )
            await self.db.commit()
        except WorkflowFailure as failure:
            await self.db.rollback()
            return failure.to_result()
        except ConcurrentModificationError as e:
            await self.db.rollback()
            return WorkflowResult.fail(WorkflowErrorCode.CONCURRENT_MODIFICATION, str(e))
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "workflow_initialization_failed",
                entity_type=entity_type.value,
                entity_id=entity_id,
                error=str(e),
                exc_info=True,
            )
            return WorkflowResult.fail(WorkflowErrorCode.UNKNOWN_ERROR, str(e))

        logger.info(
            "workflow_initialized",
            entity_type=entity_type.value,
            entity_id=entity.id,
            stage=initial.stage_key,
            status=status,
            resubmission=open_rejection is not None,
        )

        self._emit(
            build_submission_event(
                company_id=company_id,
                entity_type=entity_type,
                entity_id=entity.id,
                current_stage=initial.stage_key,
                current_status=status,
                previous_status=entity.status,
                triggered_by=triggered_by or TriggeredBy(
                    user_id="SYSTEM", user_name="System", user_role="SYSTEM"
                ),
                entity_snapshot=repository.get_entity_snapshot(entity),
                stage_info=initial.info(),
                is_resubmission=open_rejection is not None,
            )
        )

        return WorkflowResult.ok(
            InitializationOutcome(
                entity_id=entity.id,
                entity_type=entity_type,
                current_stage=initial.stage_key,
                status=status,
                previous_status=entity.status,
                workflow_config_id=config.id,
                workflow_version=config.version,
            )
        )

    # ========================================================================
    # Shared resolution helpers (also used by the UI rules projector)
    # ========================================================================

    async def load_entity(
        self, company_id: str, entity_type: EntityType, entity_id: str
    ) -> Tuple[EntityRepository, WorkflowEntity]:
        entity_type = EntityType(entity_type)
        try:
            repository = get_entity_repository(entity_type, self.db)
        except UnsupportedEntityTypeError as e:
            raise WorkflowFailure(WorkflowErrorCode.ENTITY_NOT_FOUND, str(e))

        entity = await repository.find_by_id(entity_id)
        # Another company's entity is reported exactly like a missing one
        if entity is None or entity.company_id != company_id:
            raise WorkflowFailure(
                WorkflowErrorCode.ENTITY_NOT_FOUND,
                f"{entity_type.value} with ID {entity_id} not found",
            )
        return repository, entity

    async def load_config(
        self, company_id: str, entity_type: EntityType
    ) -> WorkflowConfigurationData:
        config = await self._fetch_config(company_id, entity_type)
        if config is None:
            raise WorkflowFailure(
                WorkflowErrorCode.WORKFLOW_NOT_FOUND,
                f"No active workflow found for {EntityType(entity_type).value} in company {company_id}",
            )
        return self._check_config(config, entity_type)

    async def _fetch_config(
        self, company_id: str, entity_type: EntityType
    ) -> Optional[WorkflowConfigurationData]:
        try:
            return await self.configs.get_config(company_id, entity_type)
        except InvalidWorkflowConfigurationError as e:
            raise WorkflowFailure(
                WorkflowErrorCode.WORKFLOW_INVALID,
                f"Workflow configuration for {EntityType(entity_type).value} is invalid: "
                + "; ".join(e.errors),
            )

    def _check_config(
        self, config: WorkflowConfigurationData, entity_type: EntityType
    ) -> WorkflowConfigurationData:
        if not config.is_active:
            raise WorkflowFailure(
                WorkflowErrorCode.WORKFLOW_INACTIVE,
                f"Workflow for {EntityType(entity_type).value} is currently inactive",
            )
        errors = validate_configuration(config)
        if errors:
            logger.error("workflow_configuration_invalid", config_id=config.id, errors=errors)
            raise WorkflowFailure(
                WorkflowErrorCode.WORKFLOW_INVALID,
                f"Workflow configuration {config.id} is invalid",
            )
        return config

    @staticmethod
    def resolve_current_stage(
        config: WorkflowConfigurationData,
        entity: WorkflowEntity,
        markers: Tuple[str, ...] = APPROVE_STAGE_MARKERS,
    ) -> Optional[WorkflowStage]:
        """
        The entity's explicit stage wins. Without one, the entry stage is
        assumed only while the status still reads as pending.
        Returns None if the stage cannot be resolved or no longer exists.
        """
        if entity.current_stage:
            return config.get_stage(entity.current_stage)
        status = (entity.status or "").upper()
        if any(marker in status for marker in markers):
            return config.initial_stage()
        return None

    def require_stage(
        self,
        config: WorkflowConfigurationData,
        entity: WorkflowEntity,
        markers: Tuple[str, ...],
    ) -> WorkflowStage:
        stage = self.resolve_current_stage(config, entity, markers)
        if stage is not None:
            return stage

        if entity.current_stage:
            raise WorkflowFailure(
                WorkflowErrorCode.STAGE_NOT_FOUND,
                f"Stage {entity.current_stage} not found in workflow configuration",
            )

        status = (entity.status or "").upper()
        if status in approved_statuses(config):
            raise WorkflowFailure(
                WorkflowErrorCode.ALREADY_APPROVED,
                f"{entity.entity_type.value} {entity.id} is already approved",
            )
        if "REJECTED" in status or status in rejected_statuses(config):
            raise WorkflowFailure(
                WorkflowErrorCode.ALREADY_REJECTED,
                f"{entity.entity_type.value} {entity.id} has already been rejected",
            )
        raise WorkflowFailure(
            WorkflowErrorCode.NO_CURRENT_STAGE,
            f"Entity has no current workflow stage. Status: {entity.status}",
        )

    # ========================================================================
    # Internals
    # ========================================================================

    async def _write_state(
        self, repository: EntityRepository, entity: WorkflowEntity, state: WorkflowStateUpdate
    ) -> WorkflowEntity:
        if settings.enforce_stage_precondition:
            state.check_preconditions = True
            state.expected_stage = entity.raw.get("current_stage")
            state.expected_status = entity.raw.get("workflow_status")

        updated = await repository.update_workflow_state(entity.id, state)
        if updated is None:
            raise WorkflowFailure(
                WorkflowErrorCode.ENTITY_UPDATE_FAILED,
                f"Failed to update {entity.entity_type.value} {entity.id}",
            )
        await self.db.commit()
        return updated

    def _check_expected_stage(self, expected: Optional[str], stage: WorkflowStage):
        if expected and expected != stage.stage_key:
            raise WorkflowFailure(
                WorkflowErrorCode.STAGE_MISMATCH,
                f"Entity is at stage {stage.stage_key}, not {expected}",
            )

    def _emit(self, event):
        if not self.event_bus:
            return
        try:
            self.event_bus.emit(event)
        except Exception as e:
            logger.error(
                "workflow_event_emit_failed",
                event_type=event.event_type.value,
                entity_id=event.entity_id,
                error=str(e),
                exc_info=True,
            )


def _triggered_by(request) -> TriggeredBy:
    return TriggeredBy(
        user_id=request.user_id,
        user_name=request.user_name or "",
        user_role=request.user_role,
        user_email=request.user_email,
    )


def approved_statuses(config: WorkflowConfigurationData) -> List[str]:
    statuses = {"APPROVED"}
    ordered = config.sorted_stages()
    for stage in ordered:
        if stage.is_terminal or stage is ordered[-1]:
            configured = config.status_on_approval.get(stage.stage_key)
            if configured:
                statuses.add(configured.upper())
    return list(statuses)


def rejected_statuses(config: WorkflowConfigurationData) -> List[str]:
    return [s.upper() for s in config.status_on_rejection.values() if s]
