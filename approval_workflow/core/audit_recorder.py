"""
Audit recorder.
Appends approval audits and rejection records; only the rejection
resolution sub-record is ever updated afterwards.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from datetime import datetime
from typing import Optional, List
import json
import structlog

from approval_workflow.core.identifiers import generate_id
from approval_workflow.models.orm import ApprovalAudit, RejectionRecord
from approval_workflow.models.schemas import (
    ApproveInput,
    RejectInput,
    EntitySnapshot,
    EntityType,
    ResolvedRejectionPolicy,
    ResolutionAction,
)

logger = structlog.get_logger()


class RejectionNotFoundError(Exception):
    pass


class RejectionAlreadyResolvedError(Exception):
    pass


class AuditRecorder:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_approval(
        self,
        request: ApproveInput,
        *,
        entity_id: str,
        from_stage: Optional[str],
        to_stage: Optional[str],
        is_terminal: bool,
        previous_status: str,
        new_status: str,
        snapshot: EntitySnapshot,
        workflow_config_id: Optional[str],
        workflow_version: Optional[int],
    ) -> str:
        audit = ApprovalAudit(
            id=generate_id("APR"),
            company_id=request.company_id,
            entity_type=request.entity_type.value,
            entity_id=entity_id,
            workflow_config_id=workflow_config_id,
            workflow_version=workflow_version,
            from_stage=from_stage,
            to_stage=to_stage,
            is_terminal=is_terminal,
            approved_by=request.user_id,
            approved_by_role=request.user_role,
            approved_by_name=request.user_name,
            previous_status=previous_status,
            new_status=new_status,
            remarks=request.remarks,
            entity_snapshot=snapshot.model_dump_json(),
            action_metadata=request.metadata.model_dump_json(),
            approved_at=datetime.now().timestamp(),
        )
        self.db.add(audit)
        await self.db.flush()

        logger.info(
            "approval_audit_recorded",
            audit_id=audit.id,
            entity_type=audit.entity_type,
            entity_id=audit.entity_id,
            from_stage=from_stage,
            to_stage=to_stage,
        )
        return audit.id

    async def record_rejection(
        self,
        request: RejectInput,
        *,
        entity_id: str,
        stage_key: str,
        previous_stage: Optional[str],
        previous_status: str,
        new_status: str,
        snapshot: EntitySnapshot,
        policy: ResolvedRejectionPolicy,
        workflow_config_id: Optional[str],
        workflow_version: Optional[int],
    ) -> str:
        record = RejectionRecord(
            id=generate_id("REJ"),
            company_id=request.company_id,
            entity_type=request.entity_type.value,
            entity_id=entity_id,
            workflow_config_id=workflow_config_id,
            workflow_stage=stage_key,
            workflow_version=workflow_version,
            action=request.action.value,
            reason_code=request.reason_code,
            reason_label=request.reason_label,
            remarks=request.remarks,
            rejected_by=request.user_id,
            rejected_by_role=request.user_role,
            rejected_by_name=request.user_name,
            previous_status=previous_status,
            previous_stage=previous_stage,
            new_status=new_status,
            entity_snapshot=snapshot.model_dump_json(),
            policy_flags=json.dumps({
                "is_terminal_on_reject": policy.is_terminal_on_reject,
                "resubmission_strategy": policy.resubmission_strategy.value,
                "allow_resubmission": policy.allow_resubmission,
                "resubmission_allowed_roles": policy.resubmission_allowed_roles,
                "notify_roles_on_reject": policy.notify_roles_on_reject,
                "visible_to_roles_after_reject": policy.visible_to_roles_after_reject,
            }),
            action_metadata=request.metadata.model_dump_json(),
            rejected_at=datetime.now().timestamp(),
            is_resolved=False,
        )
        self.db.add(record)
        await self.db.flush()

        logger.info(
            "rejection_recorded",
            rejection_id=record.id,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            stage=stage_key,
            reason_code=record.reason_code,
            action=record.action,
        )
        return record.id

    async def resolve_rejection(
        self,
        rejection_id: str,
        resolved_by: str,
        action: ResolutionAction,
        remarks: Optional[str] = None,
    ) -> RejectionRecord:
        """Fill in the resolution sub-record of an open rejection"""
        result = await self.db.execute(
            select(RejectionRecord).where(RejectionRecord.id == rejection_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise RejectionNotFoundError(f"Rejection {rejection_id} not found")
        if record.is_resolved:
            raise RejectionAlreadyResolvedError(
                f"Rejection {rejection_id} was already resolved as {record.resolution_action}"
            )

        # Guarded so two resolvers cannot both win
        update_result = await self.db.execute(
            update(RejectionRecord)
            .where(RejectionRecord.id == rejection_id, RejectionRecord.is_resolved.is_(False))
            .values(
                is_resolved=True,
                resolved_at=datetime.now().timestamp(),
                resolved_by=resolved_by,
                resolution_action=ResolutionAction(action).value,
                resolution_remarks=remarks,
            )
            .execution_options(synchronize_session=False)
        )
        if update_result.rowcount == 0:
            raise RejectionAlreadyResolvedError(f"Rejection {rejection_id} was already resolved")

        await self.db.refresh(record)
        logger.info(
            "rejection_resolved",
            rejection_id=rejection_id,
            resolved_by=resolved_by,
            resolution_action=record.resolution_action,
        )
        return record

    async def get_rejection_history(
        self, company_id: str, entity_type: EntityType, entity_id: str
    ) -> List[RejectionRecord]:
        result = await self.db.execute(
            select(RejectionRecord)
            .where(
                RejectionRecord.company_id == company_id,
                RejectionRecord.entity_type == EntityType(entity_type).value,
                RejectionRecord.entity_id == entity_id,
            )
            .order_by(RejectionRecord.rejected_at.desc())
        )
        return list(result.scalars().all())

    async def get_latest_rejection(
        self, company_id: str, entity_type: EntityType, entity_id: str
    ) -> Optional[RejectionRecord]:
        history = await self.get_rejection_history(company_id, entity_type, entity_id)
        return history[0] if history else None

    async def get_approval_history(
        self, company_id: str, entity_type: EntityType, entity_id: str
    ) -> List[ApprovalAudit]:
        result = await self.db.execute(
            select(ApprovalAudit)
            .where(
                ApprovalAudit.company_id == company_id,
                ApprovalAudit.entity_type == EntityType(entity_type).value,
                ApprovalAudit.entity_id == entity_id,
            )
            .order_by(ApprovalAudit.approved_at)
        )
        return list(result.scalars().all())
