"""Workflow action API endpoints."""

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from approval_workflow.api.v1.dependencies import (
    get_action_metadata,
    get_event_bus,
    get_session,
    get_user_context,
)
from approval_workflow.api.v1.errors import error_response, failure_response
from approval_workflow.core import AuditRecorder, UIRulesService, WorkflowEngine
from approval_workflow.models.schemas import (
    ActionMetadata,
    ApiResponse,
    ApproveInput,
    ApproveRequest,
    EntityType,
    InitializeRequest,
    RejectInput,
    RejectRequest,
    TriggeredBy,
    UserContext,
    WorkflowErrorCode,
)
from approval_workflow.models.ui_rules_schemas import UIRulesResponse

router = APIRouter(prefix="/api/workflow", tags=["workflow"])
logger = structlog.get_logger()

ENTITY_ID_PATTERN = r"^[A-Za-z0-9_-]{1,50}$"


@router.post("/approve", response_model=ApiResponse)
async def approve(
    body: ApproveRequest,
    user: UserContext = Depends(get_user_context),
    metadata: ActionMetadata = Depends(get_action_metadata),
    db_session: AsyncSession = Depends(get_session),
    event_bus = Depends(get_event_bus),
):
    """Approve an entity at its current stage"""
    engine = WorkflowEngine(db_session, event_bus)
    result = await engine.approve_entity(
        ApproveInput(
            company_id=user.company_id,
            entity_type=body.entity_type,
            entity_id=body.entity_id,
            user_id=user.user_id,
            user_role=user.user_role,
            user_name=user.user_name,
            user_email=user.user_email,
            remarks=body.remarks,
            expected_stage=body.expected_stage,
            metadata=metadata,
        )
    )

    logger.info(
        "workflow_api_approve",
        entity_type=body.entity_type.value,
        entity_id=body.entity_id,
        user_id=user.user_id,
        success=result.success,
        error_code=result.error_code.value if result.error_code else None,
    )

    if not result.success:
        return failure_response(result)
    return ApiResponse(success=True, data=result.data)


@router.post("/reject", response_model=ApiResponse)
async def reject(
    body: RejectRequest,
    user: UserContext = Depends(get_user_context),
    metadata: ActionMetadata = Depends(get_action_metadata),
    db_session: AsyncSession = Depends(get_session),
    event_bus = Depends(get_event_bus),
):
    """Reject an entity at its current stage with a mandatory reason code"""
    engine = WorkflowEngine(db_session, event_bus)
    result = await engine.reject_entity(
        RejectInput(
            company_id=user.company_id,
            entity_type=body.entity_type,
            entity_id=body.entity_id,
            user_id=user.user_id,
            user_role=user.user_role,
            user_name=user.user_name,
            user_email=user.user_email,
            reason_code=body.reason_code,
            reason_label=body.reason_label,
            remarks=body.remarks,
            action=body.action,
            expected_stage=body.expected_stage,
            metadata=metadata,
        )
    )

    logger.info(
        "workflow_api_reject",
        entity_type=body.entity_type.value,
        entity_id=body.entity_id,
        user_id=user.user_id,
        reason_code=body.reason_code,
        success=result.success,
        error_code=result.error_code.value if result.error_code else None,
    )

    if not result.success:
        return failure_response(result)

    # The resolved policy is internal configuration
    data = result.data.model_dump(mode="json", exclude={"rejection_policy"})
    return ApiResponse(success=True, data=data)


@router.post("/initialize", response_model=ApiResponse)
async def initialize(
    body: InitializeRequest,
    user: UserContext = Depends(get_user_context),
    db_session: AsyncSession = Depends(get_session),
    event_bus = Depends(get_event_bus),
):
    """Put a newly submitted (or resubmitted) entity at the entry stage"""
    engine = WorkflowEngine(db_session, event_bus)
    result = await engine.initialize_workflow(
        user.company_id,
        body.entity_type,
        body.entity_id,
        triggered_by=TriggeredBy(
            user_id=user.user_id,
            user_name=user.user_name or "",
            user_role=user.user_role,
            user_email=user.user_email,
        ),
    )
    if not result.success:
        return failure_response(result)
    return ApiResponse(success=True, data=result.data)


@router.get("/actions", response_model=ApiResponse)
async def get_actions(
    entity_type: EntityType = Query(...),
    entity_id: str = Query(..., pattern=ENTITY_ID_PATTERN),
    user: UserContext = Depends(get_user_context),
    db_session: AsyncSession = Depends(get_session),
):
    """Approve/reject availability for the calling user plus workflow context"""
    engine = WorkflowEngine(db_session)

    state = await engine.get_workflow_state(user.company_id, entity_type, entity_id)
    if not state.success:
        return failure_response(state)

    can_approve = await engine.can_user_approve(
        user.company_id, entity_type, entity_id, user.user_role
    )
    can_reject = await engine.can_user_reject(
        user.company_id, entity_type, entity_id, user.user_role
    )

    view = state.data
    return ApiResponse(
        success=True,
        data={
            "entity_id": view.entity_id,
            "entity_type": view.entity_type.value,
            "status": view.status,
            "can_approve": can_approve.model_dump(),
            "can_reject": can_reject.model_dump(),
            "current_stage": view.current_stage.model_dump() if view.current_stage else None,
            "next_stage": view.next_stage.model_dump() if view.next_stage else None,
            "is_terminal": view.is_terminal,
            "workflow_name": view.workflow_name,
            "workflow_version": view.workflow_version,
        },
    )


@router.get("/ui-rules", response_model=UIRulesResponse)
async def get_ui_rules(
    entity_type: EntityType = Query(...),
    entity_id: str = Query(..., pattern=ENTITY_ID_PATTERN),
    user: UserContext = Depends(get_user_context),
    db_session: AsyncSession = Depends(get_session),
):
    """Everything a client needs to decide which workflow controls to show"""
    service = UIRulesService(db_session)
    try:
        return await service.evaluate(entity_type, entity_id, user)
    except Exception as e:
        logger.error("ui_rules_failed", entity_id=entity_id, error=str(e), exc_info=True)
        return error_response(500, WorkflowErrorCode.UNKNOWN_ERROR.value, "Failed to evaluate UI rules")


@router.get("/rejections/{entity_type}/{entity_id}", response_model=ApiResponse)
async def get_rejection_history(
    entity_type: EntityType,
    entity_id: str,
    user: UserContext = Depends(get_user_context),
    db_session: AsyncSession = Depends(get_session),
):
    """Rejection records for an entity of the caller's company, newest first"""
    audit = AuditRecorder(db_session)
    records = await audit.get_rejection_history(user.company_id, entity_type, entity_id)
    return ApiResponse(success=True, data=[record.to_dict() for record in records])
