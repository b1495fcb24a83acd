"""External service adapters."""

from approval_workflow.adapters.email import EmailAdapter, email_breaker

__all__ = ['EmailAdapter', 'email_breaker']
