"""API v1 route modules."""

from approval_workflow.api.v1.routes.workflow import router as workflow_router
from approval_workflow.api.v1.routes.notifications import router as notifications_router
from approval_workflow.api.v1.routes.health import router as health_router

__all__ = [
    'workflow_router',
    'notifications_router',
    'health_router',
]
