"""
Pydantic schemas for notification mappings, recipients, dispatch results
and company notification settings.
"""

from pydantic import BaseModel, Field
from typing import Optional, Any, List, Dict, Literal
from enum import Enum
from datetime import datetime

from approval_workflow.models.schemas import WorkflowEventType


# ============================================================================
# Enums
# ============================================================================


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    IN_APP = "IN_APP"
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"
    PUSH = "PUSH"


class RecipientResolverType(str, Enum):
    """Named strategies for discovering who gets notified"""

    REQUESTOR = "REQUESTOR"
    ENTITY_OWNER = "ENTITY_OWNER"
    CURRENT_STAGE_ROLE = "CURRENT_STAGE_ROLE"
    PREVIOUS_STAGE_ROLE = "PREVIOUS_STAGE_ROLE"
    NEXT_STAGE_ROLE = "NEXT_STAGE_ROLE"
    ACTION_PERFORMER = "ACTION_PERFORMER"
    COMPANY_ADMIN = "COMPANY_ADMIN"
    LOCATION_ADMIN = "LOCATION_ADMIN"
    FINANCE_ADMIN = "FINANCE_ADMIN"
    VENDOR = "VENDOR"
    CUSTOM = "CUSTOM"


class NotificationLogStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    REJECTED = "REJECTED"  # skipped: duplicate or demo mode


class QueueStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"  # duplicate of a message already sent


class DispatchOutcome(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    DUPLICATE_SKIPPED = "DUPLICATE_SKIPPED"
    QUEUED = "QUEUED"
    DEMO = "DEMO"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    DISABLED = "DISABLED"


# ============================================================================
# Mappings
# ============================================================================


class CustomRecipient(BaseModel):
    email: str
    name: Optional[str] = None
    role: Optional[str] = None


class ChannelConfig(BaseModel):
    channel: NotificationChannel
    template_key: str = Field(..., max_length=100)
    priority: Literal["HIGH", "NORMAL", "LOW"] = "NORMAL"
    delay_minutes: Optional[int] = Field(default=None, ge=0, le=1440)


class MappingConditions(BaseModel):
    min_amount: Optional[float] = Field(default=None, ge=0)
    entity_statuses: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)


class NotificationMappingData(BaseModel):
    """Maps one workflow event to recipients, channels and conditions"""

    id: str
    company_id: str = "*"
    entity_type: str = "*"
    event_type: WorkflowEventType
    stage_key: Optional[str] = None
    recipient_resolvers: List[RecipientResolverType] = Field(..., min_length=1)
    custom_recipients: List[CustomRecipient] = Field(default_factory=list)
    exclude_action_performer: bool = False
    channels: List[ChannelConfig] = Field(..., min_length=1)
    conditions: Optional[MappingConditions] = None
    is_active: bool = True
    priority: int = Field(default=0, ge=0, le=100)
    description: Optional[str] = None


# ============================================================================
# Recipients and Dispatch
# ============================================================================


class ResolvedRecipient(BaseModel):
    email: str
    name: str
    role: str
    user_id: Optional[str] = None
    resolved_by: RecipientResolverType


class ResolutionResult(BaseModel):
    recipients: List[ResolvedRecipient] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)


class RenderedMessage(BaseModel):
    subject: str
    body: str


class DispatchResult(BaseModel):
    """Outcome of sending (or deliberately not sending) to one recipient"""

    success: bool
    outcome: DispatchOutcome
    recipient: str
    channel: NotificationChannel = NotificationChannel.EMAIL
    log_id: Optional[str] = None
    queue_id: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None


class OrchestrationResult(BaseModel):
    event_id: str
    event_type: WorkflowEventType
    entity_type: str
    entity_id: str
    mappings_found: int = 0
    recipients_resolved: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    notifications_skipped: int = 0
    notifications_queued: int = 0
    results: List[DispatchResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    demo_mode: bool = False
    timestamp: float = Field(default_factory=lambda: datetime.now().timestamp())


class EmailResult(BaseModel):
    """Result of the outbound send collaborator"""

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


# ============================================================================
# Company Notification Settings
# ============================================================================


class EventConfigOverride(BaseModel):
    event_code: str
    is_enabled: bool = True
    custom_subject: Optional[str] = None
    custom_body: Optional[str] = None


class CompanyBranding(BaseModel):
    brand_name: str
    brand_color: str
    logo_url: Optional[str] = None
    cc_emails: List[str] = Field(default_factory=list)
    bcc_emails: List[str] = Field(default_factory=list)


class CompanyNotificationSettings(BaseModel):
    company_id: str
    notifications_enabled: bool = True
    event_configs: List[EventConfigOverride] = Field(default_factory=list)
    brand_name: Optional[str] = None
    brand_color: Optional[str] = None
    logo_url: Optional[str] = None
    cc_emails: List[str] = Field(default_factory=list)
    bcc_emails: List[str] = Field(default_factory=list)
    quiet_hours_enabled: bool = False
    quiet_hours_start: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    quiet_hours_end: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    quiet_hours_timezone: Optional[str] = None

    def event_config(self, event_code: str) -> Optional[EventConfigOverride]:
        for config in self.event_configs:
            if config.event_code.upper() == event_code.upper():
                return config
        return None


class CompanyNotificationSettingsUpdate(BaseModel):
    """Partial update; only provided fields are written"""

    notifications_enabled: Optional[bool] = None
    event_configs: Optional[List[EventConfigOverride]] = None
    brand_name: Optional[str] = None
    brand_color: Optional[str] = None
    logo_url: Optional[str] = None
    cc_emails: Optional[List[str]] = None
    bcc_emails: Optional[List[str]] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    quiet_hours_end: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    quiet_hours_timezone: Optional[str] = None


class DirectNotificationRequest(BaseModel):
    event_code: str
    recipient_email: str
    recipient_name: Optional[str] = None
    company_id: Optional[str] = None
    business_key: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
