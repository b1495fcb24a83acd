"""
Database configuration and session management.
Currently uses SQLite for demo and local development.

SQLite Configuration:
- WAL (Write-Ahead Logging) mode for better concurrency
- Foreign key constraints enforcement
- A fresh engine per Database instance when an explicit URL is given
  (used by the test scripts to isolate each run)
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy import event, text
from contextlib import asynccontextmanager
from typing import Optional
import structlog

from approval_workflow.config.settings import settings

logger = structlog.get_logger()


def _create_engine(url: str, echo: bool = False):
    """Create an async SQLite engine with per-connection pragmas."""
    new_engine = create_async_engine(
        url,
        echo=echo,
        future=True,
        connect_args=settings.get_connection_args(),
    )

    # Foreign keys must be enabled per connection, it is not persistent
    @event.listens_for(new_engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return new_engine


def _create_session_factory(bound_engine):
    return async_sessionmaker(
        bound_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = _create_engine(settings.database_url, echo=settings.database_echo)
logger.info(
    "database_engine_created",
    type="sqlite",
    url=settings.database_url,
    echo_sql=settings.database_echo
)

# Session factory
AsyncSessionLocal = _create_session_factory(engine)

# Base class for models
Base = declarative_base()


async def init_db(target_engine=None):
    """
    Initialize SQLite database - create all tables and configure pragmas.
    """
    target_engine = target_engine or engine

    # Register all mapped classes on Base.metadata before create_all
    import approval_workflow.models.orm  # noqa: F401

    async with target_engine.begin() as conn:
        await conn.execute(text("PRAGMA journal_mode=WAL"))
        await conn.execute(text("PRAGMA foreign_keys=ON"))
        await conn.execute(text("PRAGMA synchronous=NORMAL"))

        await conn.run_sync(Base.metadata.create_all)

    logger.info("database_initialized", type="sqlite", journal_mode="WAL")


class Database:
    """Database helper class for managing connections"""

    def __init__(self, url: Optional[str] = None):
        if url:
            self.engine = _create_engine(url)
            self.session_factory = _create_session_factory(self.engine)
        else:
            self.engine = engine
            self.session_factory = AsyncSessionLocal

    async def init(self):
        """Initialize database schema"""
        await init_db(self.engine)

    async def close(self):
        """Close all connections"""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get a database session bound to this instance's engine"""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()
