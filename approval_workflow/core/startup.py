"""Application startup and shutdown lifecycle management."""

from contextlib import asynccontextmanager
import structlog
from fastapi import FastAPI

from approval_workflow.config.settings import settings
from approval_workflow.models import Database
from approval_workflow.core import EventBus
from approval_workflow.core.events import register_event_handlers
from approval_workflow.adapters import EmailAdapter
from approval_workflow.notifications import CompanyConfigCache, NotificationQueueSweeper

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan management for startup/shutdown.
    Manages the event bus processor and the notification queue sweeper.
    """
    logger.info("application_starting", environment=settings.environment)
    settings.validate_critical_config()

    # Initialize database
    db = Database()
    await db.init()

    event_bus = EventBus(max_queue_size=settings.event_bus_max_queue_size)
    await event_bus.start()

    email_adapter = EmailAdapter()
    config_cache = CompanyConfigCache()

    # Register event handlers with all dependencies
    orchestrator = register_event_handlers(event_bus, db, email_adapter, config_cache)

    queue_sweeper = NotificationQueueSweeper(db, email_adapter, config_cache=config_cache)
    await queue_sweeper.start()

    # Store in app state for access in routes
    app.state.db = db
    app.state.event_bus = event_bus
    app.state.email_adapter = email_adapter
    app.state.config_cache = config_cache
    app.state.orchestrator = orchestrator
    app.state.queue_sweeper = queue_sweeper

    logger.info(
        "application_ready",
        notifications_enabled=settings.enable_email_notifications,
        demo_mode=settings.notifications_demo_mode,
    )

    yield

    # Shutdown in reverse order
    logger.info("application_shutting_down")

    await queue_sweeper.stop()
    orchestrator.unregister()
    await event_bus.stop()
    await db.close()

    logger.info("application_stopped")
