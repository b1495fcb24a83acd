"""
Response schemas for the UI rules projection.
Every response is fully populated so clients never branch on missing fields.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal

from approval_workflow.models.schemas import EntityType, WorkflowState, RejectionAction


class ActionPermission(BaseModel):
    allowed: bool
    reason: str
    requires_confirmation: bool = False
    confirmation_message: Optional[str] = None


class AllowedActions(BaseModel):
    can_approve: ActionPermission
    can_reject: ActionPermission
    can_resubmit: ActionPermission
    can_cancel: ActionPermission
    can_view: ActionPermission
    can_edit: ActionPermission


class ReasonCodeOption(BaseModel):
    code: str
    label: str
    description: Optional[str] = None
    requires_remarks: bool = False


class RejectionUIConfig(BaseModel):
    is_allowed: bool
    is_reason_mandatory: bool = True
    is_remarks_mandatory: bool = False
    max_remarks_length: int = 2000
    allowed_reason_codes: List[ReasonCodeOption] = Field(default_factory=list)
    allowed_actions: List[RejectionAction] = Field(default_factory=list)


class StageProgress(BaseModel):
    stage_key: str
    stage_name: str
    order: int
    status: Literal["COMPLETED", "CURRENT", "PENDING"]
    allowed_roles: List[str] = Field(default_factory=list)
    is_terminal: bool = False


class WorkflowProgress(BaseModel):
    total_stages: int = 0
    current_stage_order: int = 0
    completed_stages: int = 0
    percent_complete: int = 0
    stages: List[StageProgress] = Field(default_factory=list)


class UserRoleInfo(BaseModel):
    user_id: str
    user_role: str
    is_allowed_at_current_stage: bool = False
    is_owner: bool = False
    allowed_roles_at_current_stage: List[str] = Field(default_factory=list)


class UIRulesResponse(BaseModel):
    entity_id: str
    entity_type: EntityType
    entity_status: Optional[str]
    workflow_state: WorkflowState
    current_stage: Optional[str]
    current_stage_name: Optional[str]
    allowed_actions: AllowedActions
    rejection_config: RejectionUIConfig
    workflow_progress: WorkflowProgress
    informational_message: Optional[str]
    status_message: Optional[str]
    next_action_hint: Optional[str]
    user_role_info: UserRoleInfo
    evaluated_at: float
    workflow_config_id: Optional[str]
    workflow_version: Optional[int]
