"""Configuration-driven approval workflows with event-driven notifications."""

# Core components
from approval_workflow.core import (
    WorkflowEngine,
    UIRulesService,
    AuditRecorder,
    WorkflowConfigService,
    EventBus,
)

# Notifications
from approval_workflow.notifications import (
    NotificationOrchestrator,
    NotificationDispatcher,
    NotificationQueueSweeper,
    RecipientResolver,
    CompanyNotificationConfigService,
)

# Models and schemas
from approval_workflow.models import (
    Database,
    WorkflowConfiguration,
    ApproveInput,
    RejectInput,
    WorkflowResult,
    WorkflowEventPayload,
)

# Adapters
from approval_workflow.adapters import (
    EmailAdapter,
)

# Configuration
from approval_workflow.config import settings

__version__ = "1.0.0"

__all__ = [
    # Core
    'WorkflowEngine',
    'UIRulesService',
    'AuditRecorder',
    'WorkflowConfigService',
    'EventBus',
    # Notifications
    'NotificationOrchestrator',
    'NotificationDispatcher',
    'NotificationQueueSweeper',
    'RecipientResolver',
    'CompanyNotificationConfigService',
    # Models
    'Database',
    'WorkflowConfiguration',
    'ApproveInput',
    'RejectInput',
    'WorkflowResult',
    'WorkflowEventPayload',
    # Adapters
    'EmailAdapter',
    # Config
    'settings',
]
