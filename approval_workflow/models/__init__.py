"""Data models and schemas."""

from approval_workflow.models.database import Base, Database
from approval_workflow.models.orm import (
    WorkflowConfiguration,
    Order,
    GoodsReceipt,
    Invoice,
    ApprovalAudit,
    RejectionRecord,
    User,
    Employee,
    Vendor,
    NotificationMapping,
    NotificationTemplate,
    NotificationLog,
    NotificationQueueItem,
    CompanyNotificationConfig,
)
from approval_workflow.models.schemas import (
    EntityType,
    WorkflowRole,
    RejectionAction,
    ResubmissionStrategy,
    ResolutionAction,
    WorkflowState,
    WorkflowEventType,
    WorkflowErrorCode,
    StageRejectionConfig,
    ResolvedRejectionPolicy,
    WorkflowStage,
    WorkflowConfigurationData,
    WorkflowEntity,
    EntitySnapshot,
    ApproveInput,
    RejectInput,
    WorkflowResult,
    WorkflowEventPayload,
    UserContext,
    HealthResponse,
)

__all__ = [
    # Database
    'Base',
    'Database',
    # ORM Models
    'WorkflowConfiguration',
    'Order',
    'GoodsReceipt',
    'Invoice',
    'ApprovalAudit',
    'RejectionRecord',
    'User',
    'Employee',
    'Vendor',
    'NotificationMapping',
    'NotificationTemplate',
    'NotificationLog',
    'NotificationQueueItem',
    'CompanyNotificationConfig',
    # Schemas
    'EntityType',
    'WorkflowRole',
    'RejectionAction',
    'ResubmissionStrategy',
    'ResolutionAction',
    'WorkflowState',
    'WorkflowEventType',
    'WorkflowErrorCode',
    'StageRejectionConfig',
    'ResolvedRejectionPolicy',
    'WorkflowStage',
    'WorkflowConfigurationData',
    'WorkflowEntity',
    'EntitySnapshot',
    'ApproveInput',
    'RejectInput',
    'WorkflowResult',
    'WorkflowEventPayload',
    'UserContext',
    'HealthResponse',
]
