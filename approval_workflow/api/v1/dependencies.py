"""Shared dependencies for API routes."""

from typing import Optional
from fastapi import Header, HTTPException, Request, status

from approval_workflow.models import Database
from approval_workflow.models.schemas import ActionMetadata, ActionSource, UserContext
from approval_workflow.core import EventBus
from approval_workflow.notifications import CompanyConfigCache


def get_database(request: Request) -> Database:
    """Get database instance from app state."""
    return request.app.state.db


async def get_session(request: Request):
    """Session bound to the application's database, committed on success"""
    async with get_database(request).session() as session:
        yield session


def get_event_bus(request: Request) -> EventBus:
    """Get event bus from app state."""
    return request.app.state.event_bus


def get_config_cache(request: Request) -> CompanyConfigCache:
    """Company notification config cache shared with the orchestrator."""
    cache = getattr(request.app.state, "config_cache", None)
    if cache is None:
        cache = CompanyConfigCache()
        request.app.state.config_cache = cache
    return cache


def get_user_context(
    x_company_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> UserContext:
    """Actor identity set by the upstream authentication middleware"""
    if not x_company_id or not x_user_id or not x_user_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Please log in.",
        )
    return UserContext(
        company_id=x_company_id,
        user_id=x_user_id,
        user_role=x_user_role,
        user_name=x_user_name,
        user_email=x_user_email,
    )


def get_action_metadata(request: Request) -> ActionMetadata:
    forwarded = request.headers.get("x-forwarded-for")
    client_ip = forwarded.split(",")[0].strip() if forwarded else None
    if not client_ip:
        client_ip = request.headers.get("x-real-ip") or (request.client.host if request.client else None)
    return ActionMetadata(
        source=ActionSource.API,
        client_ip=client_ip,
        user_agent=request.headers.get("user-agent"),
        correlation_id=request.headers.get("x-correlation-id"),
    )


def get_email_sender(request: Request):
    """Outbound mail adapter created at startup."""
    return request.app.state.email_adapter
