"""Event-driven workflow notifications."""

from approval_workflow.notifications.company_config import (
    CompanyConfigCache,
    CompanyNotificationConfigService,
    is_within_quiet_hours,
    quiet_hours_end,
)
from approval_workflow.notifications.dispatcher import NotificationDispatcher, EmailSender
from approval_workflow.notifications.orchestrator import (
    NotificationOrchestrator,
    business_key_for,
    load_notification_mappings,
    mapping_conditions_met,
)
from approval_workflow.notifications.queue_sweeper import NotificationQueueSweeper
from approval_workflow.notifications.recipient_resolver import RecipientResolver
from approval_workflow.notifications.templates import (
    TemplateStore,
    build_template_context,
    get_default_template,
    render_template,
)

__all__ = [
    'CompanyConfigCache',
    'CompanyNotificationConfigService',
    'is_within_quiet_hours',
    'quiet_hours_end',
    'NotificationDispatcher',
    'EmailSender',
    'NotificationOrchestrator',
    'business_key_for',
    'load_notification_mappings',
    'mapping_conditions_met',
    'NotificationQueueSweeper',
    'RecipientResolver',
    'TemplateStore',
    'build_template_context',
    'get_default_template',
    'render_template',
]
