"""Configuration."""

from approval_workflow.config.settings import Settings, settings

__all__ = [
    'Settings',
    'settings',
]
