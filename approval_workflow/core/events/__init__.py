"""Event handling system for workflow notifications."""

from approval_workflow.core.events.handlers import register_event_handlers

__all__ = ['register_event_handlers']
