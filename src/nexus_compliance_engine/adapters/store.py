"""Unit-of-work store over the compliance database.

`SqlAlchemyComplianceStore.transaction()` opens one AsyncSession, begins a
transaction, and yields the repositories bound to it. The transaction commits
when the block exits normally and rolls back when it raises; row locks taken
with SELECT ... FOR UPDATE are held until then.

Driver and SQL failures surface as StorageError; typed engine errors raised
inside the block propagate unchanged after the rollback.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexus_compliance_engine.adapters.repositories import (
    AISystemRepository,
    AssessmentRepository,
    ComplianceConfigRepository,
    ConfigAuditRepository,
    ControlCatalogRepository,
    FindingRepository,
)
from nexus_compliance_engine.errors import StorageError
from nexus_compliance_engine.observability import get_logger

logger = get_logger(__name__)


@dataclass
class SqlAlchemyTransaction:
    """Repositories sharing one open session."""

    session: AsyncSession
    configs: ComplianceConfigRepository
    config_audits: ConfigAuditRepository
    catalog: ControlCatalogRepository
    assessments: AssessmentRepository
    findings: FindingRepository
    ai_systems: AISystemRepository

    @classmethod
    def for_session(cls, session: AsyncSession) -> "SqlAlchemyTransaction":
        return cls(
            session=session,
            configs=ComplianceConfigRepository(session),
            config_audits=ConfigAuditRepository(session),
            catalog=ControlCatalogRepository(session),
            assessments=AssessmentRepository(session),
            findings=FindingRepository(session),
            ai_systems=AISystemRepository(session),
        )

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        """Run a block inside SAVEPOINT; roll back to it if the block raises.

        Raises:
            StorageError: If the database rejects a statement inside the block.
        """
        try:
            async with self.session.begin_nested():
                yield
        except SQLAlchemyError as exc:
            logger.error("Savepoint rolled back", error_type=type(exc).__name__, error=str(exc)[:500])
            raise StorageError(f"Database operation failed: {type(exc).__name__}") from exc


class SqlAlchemyComplianceStore:
    """Store handle backed by an async_sessionmaker.

    Args:
        session_factory: Factory created by database.init_database().
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlAlchemyTransaction]:
        """Open a session and transaction; commit on success, roll back on error.

        Yields:
            The repositories bound to the open transaction.

        Raises:
            StorageError: If the database rejects a statement or the commit.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield SqlAlchemyTransaction.for_session(session)
        except SQLAlchemyError as exc:
            logger.error("Store transaction failed", error_type=type(exc).__name__, error=str(exc)[:500])
            raise StorageError(f"Database operation failed: {type(exc).__name__}") from exc
