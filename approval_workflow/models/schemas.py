"""
Pydantic schemas for workflow configuration, engine inputs/results,
workflow events and API requests/responses.
"""

from pydantic import BaseModel, Field
from typing import Optional, Any, List, Dict
from enum import Enum
from datetime import datetime


# ============================================================================
# Enums
# ============================================================================


class EntityType(str, Enum):
    """Business entity kinds that can move through a workflow"""

    ORDER = "ORDER"
    GRN = "GRN"
    INVOICE = "INVOICE"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    RETURN_REQUEST = "RETURN_REQUEST"


class WorkflowRole(str, Enum):
    """Well-known actor roles. Stage role lists are plain strings."""

    LOCATION_ADMIN = "LOCATION_ADMIN"
    SITE_ADMIN = "SITE_ADMIN"
    COMPANY_ADMIN = "COMPANY_ADMIN"
    FINANCE_ADMIN = "FINANCE_ADMIN"
    VENDOR = "VENDOR"
    SUPER_ADMIN = "SUPER_ADMIN"
    EMPLOYEE = "EMPLOYEE"
    ADMIN = "ADMIN"
    REQUESTOR = "REQUESTOR"


class RejectionAction(str, Enum):
    """What kind of rejection is being recorded"""

    REJECT = "REJECT"
    SEND_BACK = "SEND_BACK"
    HOLD = "HOLD"
    CANCEL = "CANCEL"


class ResubmissionStrategy(str, Enum):
    """Edit the rejected entity in place, or require a new one"""

    SAME_ENTITY = "SAME_ENTITY"
    NEW_ENTITY = "NEW_ENTITY"


class ResolutionAction(str, Enum):
    """How an open rejection was later resolved"""

    RESUBMITTED = "RESUBMITTED"
    CORRECTED = "CORRECTED"
    CANCELLED = "CANCELLED"
    OVERRIDDEN = "OVERRIDDEN"


class ActionSource(str, Enum):
    WEB = "WEB"
    API = "API"
    MOBILE = "MOBILE"
    SYSTEM = "SYSTEM"


class WorkflowState(str, Enum):
    """Client-facing classification of where an entity is in its workflow"""

    IN_WORKFLOW = "IN_WORKFLOW"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    NOT_IN_WORKFLOW = "NOT_IN_WORKFLOW"
    NO_WORKFLOW_CONFIG = "NO_WORKFLOW_CONFIG"


class WorkflowEventType(str, Enum):
    """Lifecycle events published on the workflow event bus"""

    ENTITY_SUBMITTED = "ENTITY_SUBMITTED"
    ENTITY_RESUBMITTED = "ENTITY_RESUBMITTED"
    ENTITY_APPROVED = "ENTITY_APPROVED"
    ENTITY_APPROVED_AT_STAGE = "ENTITY_APPROVED_AT_STAGE"
    ENTITY_REJECTED = "ENTITY_REJECTED"
    ENTITY_REJECTED_AT_STAGE = "ENTITY_REJECTED_AT_STAGE"
    ENTITY_CANCELLED = "ENTITY_CANCELLED"
    ENTITY_MOVED_TO_STAGE = "ENTITY_MOVED_TO_STAGE"
    APPROVAL_REMINDER = "APPROVAL_REMINDER"
    APPROVAL_ESCALATION = "APPROVAL_ESCALATION"
    ENTITY_SENT_BACK = "ENTITY_SENT_BACK"


class WorkflowErrorCode(str, Enum):
    """Machine-readable failure codes returned by the workflow engine"""

    ENTITY_NOT_FOUND = "WF_E001"
    ENTITY_UPDATE_FAILED = "WF_E002"
    CONCURRENT_MODIFICATION = "WF_E003"
    WORKFLOW_NOT_FOUND = "WF_E010"
    WORKFLOW_INACTIVE = "WF_E011"
    WORKFLOW_INVALID = "WF_E012"
    STAGE_NOT_FOUND = "WF_E020"
    STAGE_MISMATCH = "WF_E021"
    NO_CURRENT_STAGE = "WF_E022"
    ROLE_NOT_ALLOWED = "WF_E030"
    APPROVE_NOT_ALLOWED = "WF_E031"
    REJECT_NOT_ALLOWED = "WF_E032"
    ALREADY_APPROVED = "WF_E040"
    ALREADY_REJECTED = "WF_E041"
    INVALID_STATE = "WF_E042"
    VALIDATION_ERROR = "WF_E043"
    AUDIT_FAILED = "WF_E050"
    UNKNOWN_ERROR = "WF_E999"


# ============================================================================
# Workflow Configuration
# ============================================================================


class StageRejectionConfig(BaseModel):
    """
    Rejection rules at one level (system, workflow or stage).
    A field left as None is absent and inherits from the level below.
    """

    is_terminal_on_reject: Optional[bool] = None
    stop_further_stages_on_reject: Optional[bool] = None
    is_reason_code_mandatory: Optional[bool] = None
    is_remarks_mandatory: Optional[bool] = None
    max_remarks_length: Optional[int] = Field(default=None, ge=1)
    allowed_reason_codes: Optional[List[str]] = None
    rejected_status: Optional[str] = None
    notify_roles_on_reject: Optional[List[str]] = None
    notify_requestor: Optional[bool] = None
    exclude_from_notification: Optional[List[str]] = None
    visible_to_roles_after_reject: Optional[List[str]] = None
    resubmission_strategy: Optional[ResubmissionStrategy] = None
    allow_resubmission: Optional[bool] = None
    resubmission_allowed_roles: Optional[List[str]] = None


class ResolvedRejectionPolicy(BaseModel):
    """Effective rejection rules after merging every level. No field is absent."""

    is_terminal_on_reject: bool
    stop_further_stages_on_reject: bool
    is_reason_code_mandatory: bool
    is_remarks_mandatory: bool
    max_remarks_length: int
    allowed_reason_codes: List[str]
    rejected_status: Optional[str]
    notify_roles_on_reject: List[str]
    notify_requestor: bool
    exclude_from_notification: List[str]
    visible_to_roles_after_reject: List[str]
    resubmission_strategy: ResubmissionStrategy
    allow_resubmission: bool
    resubmission_allowed_roles: List[str]


class WorkflowStage(BaseModel):
    """One ordered step in a workflow"""

    stage_key: str = Field(..., min_length=1, max_length=50)
    stage_name: str
    stage_description: Optional[str] = None
    order: int = Field(..., ge=1)
    allowed_roles: List[str] = Field(..., min_length=1)
    can_approve: bool = True
    can_reject: bool = True
    is_terminal: bool = False
    is_optional: bool = False
    rejection_config: Optional[StageRejectionConfig] = None

    def info(self) -> "StageInfo":
        return StageInfo(
            stage_key=self.stage_key,
            stage_name=self.stage_name,
            order=self.order,
            allowed_roles=list(self.allowed_roles),
            is_terminal=self.is_terminal,
        )


class WorkflowConfigurationData(BaseModel):
    """
    Read-only view of a stored workflow configuration.
    Stage lookups always go through the order-sorted stage list.
    """

    id: str
    company_id: str
    entity_type: EntityType
    name: str = ""
    version: int = 1
    is_active: bool = True
    stages: List[WorkflowStage] = Field(default_factory=list)
    status_on_submission: Optional[str] = None
    status_on_approval: Dict[str, str] = Field(default_factory=dict)
    status_on_rejection: Dict[str, str] = Field(default_factory=dict)
    rejection_config: Optional[StageRejectionConfig] = None

    def sorted_stages(self) -> List[WorkflowStage]:
        return sorted(self.stages, key=lambda s: s.order)

    def get_stage(self, stage_key: Optional[str]) -> Optional[WorkflowStage]:
        if not stage_key:
            return None
        for stage in self.stages:
            if stage.stage_key == stage_key:
                return stage
        return None

    def initial_stage(self) -> Optional[WorkflowStage]:
        ordered = self.sorted_stages()
        return ordered[0] if ordered else None

    def next_stage(self, stage_key: str) -> Optional[WorkflowStage]:
        """Lowest-order stage with an order greater than the given stage, or None"""
        current = self.get_stage(stage_key)
        if current is None:
            return None
        later = [s for s in self.stages if s.order > current.order]
        return min(later, key=lambda s: s.order) if later else None

    def previous_stage(self, stage_key: str) -> Optional[WorkflowStage]:
        current = self.get_stage(stage_key)
        if current is None:
            return None
        earlier = [s for s in self.stages if s.order < current.order]
        return max(earlier, key=lambda s: s.order) if earlier else None


# ============================================================================
# Entities
# ============================================================================


class WorkflowEntity(BaseModel):
    """
    Uniform view of any entity kind, produced by its repository.
    `raw` carries the stored row for kind-specific consumers.
    """

    id: str
    company_id: str
    entity_type: EntityType
    current_stage: Optional[str] = None
    status: str = ""
    legacy_status: Optional[str] = None
    workflow_config_id: Optional[str] = None
    workflow_version: Optional[int] = None
    created_by: Optional[str] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class WorkflowStateUpdate(BaseModel):
    """Changes the engine writes through a repository"""

    status: str
    current_stage: Optional[str] = None
    workflow_config_id: Optional[str] = None
    workflow_version: Optional[int] = None
    side_fields: Dict[str, Any] = Field(default_factory=dict)
    # Precondition: only write if the row still holds these values
    expected_stage: Optional[str] = None
    expected_status: Optional[str] = None
    check_preconditions: bool = False


class EntitySnapshot(BaseModel):
    """Bounded display fields captured for audit records and templates"""

    display_id: Optional[str] = None
    created_by: Optional[str] = None
    created_by_name: Optional[str] = None
    created_by_email: Optional[str] = None
    total_amount: Optional[float] = None
    item_count: Optional[int] = None
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    company_name: Optional[str] = None
    created_at: Optional[float] = None
    # Kind-specific display fields (grn_number, invoice_number, ...)
    extra: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Engine Inputs and Results
# ============================================================================


class ActionMetadata(BaseModel):
    source: ActionSource = ActionSource.API
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: Optional[str] = None


class ApproveInput(BaseModel):
    company_id: str
    entity_type: EntityType
    entity_id: str
    user_id: str
    user_role: str
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    remarks: Optional[str] = None
    expected_stage: Optional[str] = None
    metadata: ActionMetadata = Field(default_factory=ActionMetadata)


class RejectInput(BaseModel):
    company_id: str
    entity_type: EntityType
    entity_id: str
    user_id: str
    user_role: str
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    reason_code: Optional[str] = None
    reason_label: Optional[str] = None
    remarks: Optional[str] = None
    action: RejectionAction = RejectionAction.REJECT
    expected_stage: Optional[str] = None
    metadata: ActionMetadata = Field(default_factory=ActionMetadata)


class WorkflowResult(BaseModel):
    """Every engine operation returns one of these instead of raising"""

    success: bool
    error_code: Optional[WorkflowErrorCode] = None
    error_message: Optional[str] = None
    data: Optional[Any] = None

    @classmethod
    def ok(cls, data: Any = None) -> "WorkflowResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error_code: WorkflowErrorCode, error_message: str) -> "WorkflowResult":
        return cls(success=False, error_code=error_code, error_message=error_message)


class ApprovalOutcome(BaseModel):
    entity_id: str
    entity_type: EntityType
    previous_stage: Optional[str]
    previous_status: str
    new_stage: Optional[str]
    new_status: str
    is_terminal: bool
    audit_id: Optional[str] = None
    workflow_config_id: Optional[str] = None
    workflow_version: Optional[int] = None


class RejectionOutcome(BaseModel):
    entity_id: str
    entity_type: EntityType
    previous_stage: Optional[str]
    previous_status: str
    new_stage: Optional[str]
    new_status: str
    rejection_id: Optional[str] = None
    is_terminal: bool
    action: RejectionAction
    rejection_policy: ResolvedRejectionPolicy
    notify_roles: List[str]
    visible_to_roles: List[str]
    resubmission_strategy: ResubmissionStrategy
    allow_resubmission: bool
    workflow_config_id: Optional[str] = None
    workflow_version: Optional[int] = None


class InitializationOutcome(BaseModel):
    entity_id: str
    entity_type: EntityType
    current_stage: str
    status: str
    previous_status: str
    workflow_config_id: str
    workflow_version: int


class PermissionCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class WorkflowStateView(BaseModel):
    entity_id: str
    entity_type: EntityType
    status: str
    entity_snapshot: EntitySnapshot
    workflow_config_id: str
    workflow_version: int
    workflow_name: str
    current_stage: Optional["StageInfo"] = None
    next_stage: Optional["StageInfo"] = None
    is_terminal: bool


# ============================================================================
# Workflow Events
# ============================================================================


class TriggeredBy(BaseModel):
    user_id: str
    user_name: str = ""
    user_role: str
    user_email: Optional[str] = None


class RejectionDetail(BaseModel):
    reason_code: str
    reason_label: Optional[str] = None
    remarks: Optional[str] = None
    action: RejectionAction = RejectionAction.REJECT


class StageInfo(BaseModel):
    stage_key: str
    stage_name: str
    order: int
    allowed_roles: List[str] = Field(default_factory=list)
    is_terminal: bool = False


class WorkflowEventPayload(BaseModel):
    """Immutable description of one workflow transition"""

    event_id: str
    event_type: WorkflowEventType
    event_timestamp: float = Field(default_factory=lambda: datetime.now().timestamp())
    company_id: str
    entity_type: EntityType
    entity_id: str
    current_stage: Optional[str] = None
    previous_stage: Optional[str] = None
    current_status: str
    previous_status: Optional[str] = None
    triggered_by: TriggeredBy
    rejection: Optional[RejectionDetail] = None
    entity_snapshot: EntitySnapshot = Field(default_factory=EntitySnapshot)
    stage_info: Optional[StageInfo] = None
    next_stage_info: Optional[StageInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


WorkflowStateView.model_rebuild()


# ============================================================================
# API Requests / Responses
# ============================================================================


class UserContext(BaseModel):
    """Actor identity supplied by upstream middleware"""

    company_id: str
    user_id: str
    user_role: str
    user_name: Optional[str] = None
    user_email: Optional[str] = None


class ApproveRequest(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(..., pattern=r"^[A-Za-z0-9_-]{1,50}$")
    remarks: Optional[str] = None
    expected_stage: Optional[str] = None


class RejectRequest(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(..., pattern=r"^[A-Za-z0-9_-]{1,50}$")
    reason_code: str = Field(..., min_length=1)
    reason_label: Optional[str] = None
    remarks: Optional[str] = None
    action: RejectionAction = RejectionAction.REJECT
    expected_stage: Optional[str] = None


class InitializeRequest(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(..., pattern=r"^[A-Za-z0-9_-]{1,50}$")


class ApiResponse(BaseModel):
    """Envelope for workflow API responses"""

    success: bool
    data: Optional[Any] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response"""

    status: str
    timestamp: float = Field(default_factory=lambda: datetime.now().timestamp())
