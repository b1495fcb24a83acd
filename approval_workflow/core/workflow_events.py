"""
Builders for workflow lifecycle events.
Each transition produces exactly one immutable payload with a fresh event id.
"""

from typing import Optional, Dict, Any

from approval_workflow.core.identifiers import generate_id
from approval_workflow.models.schemas import (
    EntityType,
    EntitySnapshot,
    RejectionAction,
    RejectionDetail,
    StageInfo,
    TriggeredBy,
    WorkflowEventPayload,
    WorkflowEventType,
)


def generate_event_id() -> str:
    return generate_id("WFE")


def build_submission_event(
    *,
    company_id: str,
    entity_type: EntityType,
    entity_id: str,
    current_stage: str,
    current_status: str,
    previous_status: Optional[str],
    triggered_by: TriggeredBy,
    entity_snapshot: EntitySnapshot,
    stage_info: Optional[StageInfo] = None,
    is_resubmission: bool = False,
    metadata: Optional[Dict[str, Any]] = None,
) -> WorkflowEventPayload:
    return WorkflowEventPayload(
        event_id=generate_event_id(),
        event_type=(
            WorkflowEventType.ENTITY_RESUBMITTED
            if is_resubmission
            else WorkflowEventType.ENTITY_SUBMITTED
        ),
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        current_stage=current_stage,
        current_status=current_status,
        previous_status=previous_status,
        triggered_by=triggered_by,
        entity_snapshot=entity_snapshot,
        stage_info=stage_info,
        metadata=metadata or {},
    )


def build_approval_event(
    *,
    company_id: str,
    entity_type: EntityType,
    entity_id: str,
    approved_stage: StageInfo,
    next_stage: Optional[StageInfo],
    current_status: str,
    previous_status: str,
    is_terminal: bool,
    triggered_by: TriggeredBy,
    entity_snapshot: EntitySnapshot,
    metadata: Optional[Dict[str, Any]] = None,
) -> WorkflowEventPayload:
    """ENTITY_APPROVED when the workflow completed, ENTITY_APPROVED_AT_STAGE otherwise"""
    return WorkflowEventPayload(
        event_id=generate_event_id(),
        event_type=(
            WorkflowEventType.ENTITY_APPROVED
            if is_terminal
            else WorkflowEventType.ENTITY_APPROVED_AT_STAGE
        ),
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        current_stage=None if is_terminal else (next_stage.stage_key if next_stage else None),
        previous_stage=approved_stage.stage_key,
        current_status=current_status,
        previous_status=previous_status,
        triggered_by=triggered_by,
        entity_snapshot=entity_snapshot,
        stage_info=approved_stage,
        next_stage_info=None if is_terminal else next_stage,
        metadata=metadata or {},
    )


def build_rejection_event(
    *,
    company_id: str,
    entity_type: EntityType,
    entity_id: str,
    rejected_stage: StageInfo,
    current_status: str,
    previous_status: str,
    is_terminal: bool,
    rejection: RejectionDetail,
    triggered_by: TriggeredBy,
    entity_snapshot: EntitySnapshot,
    metadata: Optional[Dict[str, Any]] = None,
) -> WorkflowEventPayload:
    if rejection.action == RejectionAction.SEND_BACK:
        event_type = WorkflowEventType.ENTITY_SENT_BACK
    elif is_terminal:
        event_type = WorkflowEventType.ENTITY_REJECTED
    else:
        event_type = WorkflowEventType.ENTITY_REJECTED_AT_STAGE

    return WorkflowEventPayload(
        event_id=generate_event_id(),
        event_type=event_type,
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        # The event names the stage where rejection happened even if the entity left it
        current_stage=rejected_stage.stage_key,
        previous_stage=rejected_stage.stage_key,
        current_status=current_status,
        previous_status=previous_status,
        triggered_by=triggered_by,
        rejection=rejection,
        entity_snapshot=entity_snapshot,
        stage_info=rejected_stage,
        metadata=metadata or {},
    )


def build_stage_transition_event(
    *,
    company_id: str,
    entity_type: EntityType,
    entity_id: str,
    previous_stage: str,
    stage_info: StageInfo,
    next_stage_info: Optional[StageInfo],
    current_status: str,
    triggered_by: TriggeredBy,
    entity_snapshot: EntitySnapshot,
    metadata: Optional[Dict[str, Any]] = None,
) -> WorkflowEventPayload:
    return WorkflowEventPayload(
        event_id=generate_event_id(),
        event_type=WorkflowEventType.ENTITY_MOVED_TO_STAGE,
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        current_stage=stage_info.stage_key,
        previous_stage=previous_stage,
        current_status=current_status,
        triggered_by=triggered_by,
        entity_snapshot=entity_snapshot,
        stage_info=stage_info,
        next_stage_info=next_stage_info,
        metadata=metadata or {},
    )
