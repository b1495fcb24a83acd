"""Core business logic components."""

from approval_workflow.core.workflow_engine import WorkflowEngine, WorkflowFailure
from approval_workflow.core.entity_repository import (
    EntityRepository,
    ConcurrentModificationError,
    UnsupportedEntityTypeError,
    get_entity_repository,
    register_entity_repository,
)
from approval_workflow.core.workflow_config import (
    WorkflowConfigService,
    InvalidWorkflowConfigurationError,
    validate_configuration,
)
from approval_workflow.core.rejection_policy import resolve_rejection_policy
from approval_workflow.core.audit_recorder import AuditRecorder
from approval_workflow.core.ui_rules import UIRulesService
from approval_workflow.core.event_bus import EventBus

__all__ = [
    'WorkflowEngine',
    'WorkflowFailure',
    'EntityRepository',
    'ConcurrentModificationError',
    'UnsupportedEntityTypeError',
    'get_entity_repository',
    'register_entity_repository',
    'WorkflowConfigService',
    'InvalidWorkflowConfigurationError',
    'validate_configuration',
    'resolve_rejection_policy',
    'AuditRecorder',
    'UIRulesService',
    'EventBus',
]
