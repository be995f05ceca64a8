"""Database engine lifecycle and declarative base.

The engine and session factory are created by `init_database()` from the
application lifespan and disposed by `close_database()`. Services never reach
for module state directly: the entry point builds a store handle from
`get_session_factory()` and injects it.

Key exports:
- Base                 — declarative base for all ORM models
- TimestampMixin       — created_at / updated_at columns
- init_database(...)   — create the async engine and session factory
- close_database()     — dispose the engine
- get_session_factory() — the initialized async_sessionmaker
"""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from nexus_compliance_engine.observability import get_logger

logger = get_logger(__name__)

# Module-level engine and session factory: initialized by init_database()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


class Base(DeclarativeBase):
    """Declarative base for compliance engine ORM models."""


class TimestampMixin:
    """Adds created_at and updated_at columns maintained by the database."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Row creation timestamp (UTC)",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last modification timestamp (UTC)",
    )


def init_database(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_timeout: int = 30,
) -> async_sessionmaker[AsyncSession]:
    """Initialize the primary database engine and session factory.

    Must be called once at application startup before any store
    transaction is opened.

    Args:
        database_url: SQLAlchemy async connection URL.
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        pool_timeout: Seconds to wait for a connection before raising.

    Returns:
        The session factory bound to the new engine.
    """
    global _engine, _session_factory  # noqa: PLW0603

    logger.info("Initializing database engine", pool_size=pool_size, max_overflow=max_overflow)

    _engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        echo=False,
        pool_pre_ping=True,
    )
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _session_factory


async def close_database() -> None:
    """Dispose the database engine. Safe to call when not initialized."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing database engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the initialized session factory.

    Returns:
        The async session factory.

    Raises:
        RuntimeError: If init_database() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database has not been initialized. Call init_database() in the application lifespan handler."
        )
    return _session_factory
