"""API v1 module - consolidated router for all endpoints."""

from fastapi import APIRouter
from approval_workflow.api.v1.routes import (
    workflow_router,
    notifications_router,
    health_router,
)

# Create main v1 router
router = APIRouter()

# Include all route modules
router.include_router(health_router)
router.include_router(workflow_router)
router.include_router(notifications_router)

__all__ = ['router']
