"""SQLAlchemy repositories for the compliance engine database.

Each repository implements the corresponding protocol from core/interfaces.py
and works on the AsyncSession of the transaction that created it. Tenant
isolation is enforced by passing tenant_id explicitly into every query.

Repositories:
- ComplianceConfigRepository  — per-tenant config row, race-safe creation, row lock
- ConfigAuditRepository       — APPEND-ONLY config audit trail
- ControlCatalogRepository    — frameworks and controls (read-only)
- AssessmentRepository        — ComplianceAssessment CRUD with row lock
- FindingRepository           — ControlFinding bulk insert, ordered listing, overrides
- AISystemRepository          — AI system registry
"""

import dataclasses
import uuid
from typing import Any

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nexus_compliance_engine.core.interfaces import ConfigAuditDraft, ControlDefinition, FindingDraft
from nexus_compliance_engine.core.models import (
    ASSESSMENT_PENDING,
    AISystem,
    ComplianceAssessment,
    ComplianceConfig,
    ComplianceConfigAudit,
    ComplianceControl,
    ComplianceFramework,
    ControlFinding,
)
from nexus_compliance_engine.errors import ConflictError, NotFoundError
from nexus_compliance_engine.observability import get_logger

logger = get_logger(__name__)

# Whitelisted assessment sort columns
_ASSESSMENT_SORT_COLUMNS = {
    "created_at": ComplianceAssessment.created_at,
    "updated_at": ComplianceAssessment.updated_at,
    "overall_score": ComplianceAssessment.overall_score,
    "status": ComplianceAssessment.status,
}

# critical first, findings without a severity last
_SEVERITY_RANK = case(
    {"critical": 1, "major": 2, "minor": 3, "observation": 4},
    value=ControlFinding.severity,
    else_=5,
)


class ComplianceConfigRepository:
    """Repository for the per-tenant ComplianceConfig row.

    Args:
        session: The transaction's async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str, for_update: bool = False) -> ComplianceConfig | None:
        """Return the tenant's config, optionally taking a row lock.

        Args:
            tenant_id: Owning tenant.
            for_update: Issue SELECT ... FOR UPDATE.

        Returns:
            The ComplianceConfig or None.
        """
        stmt = select(ComplianceConfig).where(ComplianceConfig.tenant_id == tenant_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        tenant_id: str,
        default_module_config: dict[str, Any],
        for_update: bool = False,
    ) -> tuple[ComplianceConfig, bool]:
        """Return the tenant's config, inserting the default row when absent.

        The insert uses ON CONFLICT (tenant_id) DO NOTHING, so concurrent first
        reads converge on one row and only the winning insert reports created.

        Args:
            tenant_id: Owning tenant.
            default_module_config: camelCase module map for a new row.
            for_update: Lock the row for the rest of the transaction.

        Returns:
            Tuple of (config, created).
        """
        config = await self.get(tenant_id, for_update=for_update)
        if config is not None:
            return config, False

        stmt = (
            pg_insert(ComplianceConfig)
            .values(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                master_enabled=True,
                module_config=default_module_config,
            )
            .on_conflict_do_nothing(index_elements=["tenant_id"])
            .returning(ComplianceConfig.id)
        )
        result = await self._session.execute(stmt)
        created = result.scalar_one_or_none() is not None

        config = await self.get(tenant_id, for_update=for_update)
        if config is None:
            raise NotFoundError(resource="ComplianceConfig", resource_id=tenant_id)
        if created:
            logger.info("Compliance config row inserted", tenant_id=tenant_id, config_id=str(config.id))
        return config, created

    async def update(self, config_id: uuid.UUID, tenant_id: str, values: dict[str, Any]) -> ComplianceConfig:
        """Apply column updates to the tenant's config.

        Raises:
            NotFoundError: If the row does not exist for this tenant.
        """
        stmt = (
            update(ComplianceConfig)
            .where(
                ComplianceConfig.id == config_id,
                ComplianceConfig.tenant_id == tenant_id,
            )
            .values(**values)
            .returning(ComplianceConfig)
        )
        result = await self._session.execute(stmt)
        config = result.scalar_one_or_none()
        if config is None:
            raise NotFoundError(resource="ComplianceConfig", resource_id=str(config_id))
        return config


class ConfigAuditRepository:
    """Append-only repository for configuration audit rows.

    Exposes append() and query() only. There is no update or delete path.

    Args:
        session: The transaction's async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, draft: ConfigAuditDraft) -> ComplianceConfigAudit:
        """Insert one audit row.

        Args:
            draft: The audit entry to persist.

        Returns:
            The persisted ComplianceConfigAudit with its insert timestamp.
        """
        entry = ComplianceConfigAudit(id=uuid.uuid4(), **dataclasses.asdict(draft))
        self._session.add(entry)
        await self._session.flush()
        await self._session.refresh(entry)
        logger.debug(
            "Config audit appended",
            tenant_id=draft.tenant_id,
            action=draft.action,
            module_affected=draft.module_affected,
        )
        return entry

    async def query(
        self,
        tenant_id: str,
        action: str | None = None,
        module: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ComplianceConfigAudit], int]:
        """Return a page of audit rows, newest first, with the unpaged total.

        Args:
            tenant_id: Owning tenant.
            action: Optional action filter.
            module: Optional module_affected filter.
            limit: Page size.
            offset: Rows to skip.

        Returns:
            Tuple of (entries, total).
        """
        conditions = [ComplianceConfigAudit.tenant_id == tenant_id]
        if action:
            conditions.append(ComplianceConfigAudit.action == action)
        if module:
            conditions.append(ComplianceConfigAudit.module_affected == module)

        count_stmt = select(func.count()).select_from(ComplianceConfigAudit).where(*conditions)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(ComplianceConfigAudit)
            .where(*conditions)
            .order_by(ComplianceConfigAudit.created_at.desc(), ComplianceConfigAudit.sequence.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total


class ControlCatalogRepository:
    """Read-only repository over compliance_frameworks and compliance_controls.

    Args:
        session: The transaction's async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_framework(self, framework_id: str) -> ComplianceFramework:
        """Return one framework.

        Raises:
            NotFoundError: If the framework does not exist.
        """
        stmt = select(ComplianceFramework).where(ComplianceFramework.id == framework_id)
        result = await self._session.execute(stmt)
        framework = result.scalar_one_or_none()
        if framework is None:
            raise NotFoundError(resource="ComplianceFramework", resource_id=framework_id)
        return framework

    async def list_frameworks(
        self,
        category: str | None = None,
        jurisdiction: str | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ComplianceFramework], int]:
        conditions = []
        if category:
            conditions.append(ComplianceFramework.category == category)
        if jurisdiction:
            conditions.append(ComplianceFramework.jurisdiction == jurisdiction)
        if is_active is not None:
            conditions.append(ComplianceFramework.is_active == is_active)

        count_stmt = select(func.count()).select_from(ComplianceFramework).where(*conditions)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = select(ComplianceFramework).where(*conditions).order_by(ComplianceFramework.name)
        stmt = stmt.offset(offset).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def list_controls(
        self,
        framework_id: str,
        domains: list[str] | None = None,
        exclude_ids: list[str] | None = None,
    ) -> list[ControlDefinition]:
        """Return the controls an assessment run evaluates, highest priority first.

        Args:
            framework_id: Framework whose controls to load.
            domains: Restrict to these domains; empty or None means all.
            exclude_ids: Control IDs to leave out.

        Returns:
            List of ControlDefinition.
        """
        stmt = select(ComplianceControl).where(ComplianceControl.framework_id == framework_id)
        if domains:
            stmt = stmt.where(ComplianceControl.domain.in_(domains))
        if exclude_ids:
            stmt = stmt.where(ComplianceControl.id.not_in(exclude_ids))
        stmt = stmt.order_by(
            ComplianceControl.implementation_priority.desc(),
            ComplianceControl.control_number.asc(),
        )
        result = await self._session.execute(stmt)
        return [_control_definition(row) for row in result.scalars().all()]

    async def search_controls(
        self,
        framework_id: str,
        domain: str | None = None,
        risk_category: str | None = None,
        automated_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[ComplianceControl], int]:
        conditions = [ComplianceControl.framework_id == framework_id]
        if domain:
            conditions.append(ComplianceControl.domain == domain)
        if risk_category:
            conditions.append(ComplianceControl.risk_category == risk_category)
        if automated_only:
            conditions.append(ComplianceControl.automated_test_available.is_(True))

        count_stmt = select(func.count()).select_from(ComplianceControl).where(*conditions)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(ComplianceControl)
            .where(*conditions)
            .order_by(ComplianceControl.implementation_priority.desc(), ComplianceControl.control_number.asc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total


def _control_definition(control: ComplianceControl) -> ControlDefinition:
    return ControlDefinition(
        id=control.id,
        framework_id=control.framework_id,
        control_number=control.control_number,
        title=control.title,
        description=control.description,
        domain=control.domain,
        implementation_priority=control.implementation_priority,
        risk_category=control.risk_category,
        evidence_requirements=tuple(str(item) for item in control.evidence_requirements or []),
        ai_assessment_prompt=control.ai_assessment_prompt,
    )


class AssessmentRepository:
    """Repository for ComplianceAssessment persistence.

    Args:
        session: The transaction's async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        tenant_id: str,
        framework_id: str,
        target_system_id: str,
        target_system_name: str,
        target_system_description: str | None,
        scope: list[str],
        excluded_controls: list[str],
    ) -> ComplianceAssessment:
        """Insert a new assessment in pending status.

        Returns:
            The persisted ComplianceAssessment.
        """
        assessment = ComplianceAssessment(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            framework_id=framework_id,
            target_system_id=target_system_id,
            target_system_name=target_system_name,
            target_system_description=target_system_description,
            scope=scope,
            excluded_controls=excluded_controls,
            status=ASSESSMENT_PENDING,
        )
        self._session.add(assessment)
        await self._session.flush()
        await self._session.refresh(assessment)
        return assessment

    async def get_by_id(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        for_update: bool = False,
    ) -> ComplianceAssessment:
        """Retrieve an assessment, scoped to the tenant.

        Args:
            assessment_id: The assessment UUID.
            tenant_id: Owning tenant.
            for_update: Issue SELECT ... FOR UPDATE.

        Returns:
            The ComplianceAssessment.

        Raises:
            NotFoundError: If not found.
        """
        stmt = select(ComplianceAssessment).where(
            ComplianceAssessment.id == assessment_id,
            ComplianceAssessment.tenant_id == tenant_id,
        )
        if for_update:
            # Refresh any stale identity-map copy with the locked row
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        assessment = result.scalar_one_or_none()
        if assessment is None:
            raise NotFoundError(resource="ComplianceAssessment", resource_id=str(assessment_id))
        return assessment

    async def list_all(
        self,
        tenant_id: str,
        framework_id: str | None = None,
        target_system_id: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[ComplianceAssessment], int]:
        """List a tenant's assessments with filters, sorting and pagination.

        Returns:
            Tuple of (assessments, total).
        """
        conditions = [ComplianceAssessment.tenant_id == tenant_id]
        if framework_id:
            conditions.append(ComplianceAssessment.framework_id == framework_id)
        if target_system_id:
            conditions.append(ComplianceAssessment.target_system_id == target_system_id)
        if status:
            conditions.append(ComplianceAssessment.status == status)

        count_stmt = select(func.count()).select_from(ComplianceAssessment).where(*conditions)
        total = (await self._session.execute(count_stmt)).scalar_one()

        column = _ASSESSMENT_SORT_COLUMNS.get(sort_by, ComplianceAssessment.created_at)
        order = column.asc() if sort_order == "asc" else column.desc()
        stmt = select(ComplianceAssessment).where(*conditions).order_by(order)
        stmt = stmt.offset((page - 1) * page_size).limit(page_size)
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def update(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        values: dict[str, Any],
    ) -> ComplianceAssessment:
        """Apply column updates to an assessment.

        Raises:
            NotFoundError: If the row does not exist for this tenant.
        """
        stmt = (
            update(ComplianceAssessment)
            .where(
                ComplianceAssessment.id == assessment_id,
                ComplianceAssessment.tenant_id == tenant_id,
            )
            .values(**values)
            .returning(ComplianceAssessment)
        )
        result = await self._session.execute(stmt)
        assessment = result.scalar_one_or_none()
        if assessment is None:
            raise NotFoundError(resource="ComplianceAssessment", resource_id=str(assessment_id))
        return assessment


class FindingRepository:
    """Repository for ControlFinding persistence.

    Args:
        session: The transaction's async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_many(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        drafts: list[FindingDraft],
    ) -> list[ControlFinding]:
        """Insert one finding per draft in a single flush.

        Returns:
            The persisted ControlFinding rows in draft order.
        """
        findings = [
            ControlFinding(
                id=uuid.uuid4(),
                assessment_id=assessment_id,
                tenant_id=tenant_id,
                control_id=draft.control_id,
                status=draft.status,
                severity=draft.severity,
                finding_title=draft.finding_title,
                finding_description=draft.finding_description,
                evidence=draft.evidence,
                evidence_urls=[],
                ai_assessment=draft.ai_assessment,
                ai_confidence=draft.ai_confidence,
                ai_reasoning=draft.ai_reasoning,
                remediation_required=draft.remediation_required,
                remediation_status=draft.remediation_status,
                remediation_plan=draft.remediation_plan,
                human_verified=False,
            )
            for draft in drafts
        ]
        self._session.add_all(findings)
        await self._session.flush()
        logger.debug("Findings inserted", assessment_id=str(assessment_id), count=len(findings))
        return findings

    async def list_by_assessment(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        status: str | None = None,
        severity: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[ControlFinding], int]:
        """Return a page of findings, most severe first, then by control priority.

        Returns:
            Tuple of (findings, total).
        """
        conditions = [
            ControlFinding.assessment_id == assessment_id,
            ControlFinding.tenant_id == tenant_id,
        ]
        if status:
            conditions.append(ControlFinding.status == status)
        if severity:
            conditions.append(ControlFinding.severity == severity)

        count_stmt = select(func.count()).select_from(ControlFinding).where(*conditions)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(ControlFinding)
            .join(ComplianceControl, ComplianceControl.id == ControlFinding.control_id)
            .where(*conditions)
            .order_by(_SEVERITY_RANK, ComplianceControl.implementation_priority.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def all_for_assessment(self, assessment_id: uuid.UUID, tenant_id: str) -> list[ControlFinding]:
        stmt = select(ControlFinding).where(
            ControlFinding.assessment_id == assessment_id,
            ControlFinding.tenant_id == tenant_id,
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_id(
        self,
        finding_id: uuid.UUID,
        tenant_id: str,
        for_update: bool = False,
    ) -> ControlFinding:
        """Retrieve a finding, scoped to the tenant.

        Raises:
            NotFoundError: If not found.
        """
        stmt = select(ControlFinding).where(
            ControlFinding.id == finding_id,
            ControlFinding.tenant_id == tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        finding = result.scalar_one_or_none()
        if finding is None:
            raise NotFoundError(resource="ControlFinding", resource_id=str(finding_id))
        return finding

    async def update(self, finding_id: uuid.UUID, tenant_id: str, values: dict[str, Any]) -> ControlFinding:
        stmt = (
            update(ControlFinding)
            .where(
                ControlFinding.id == finding_id,
                ControlFinding.tenant_id == tenant_id,
            )
            .values(**values)
            .returning(ControlFinding)
        )
        result = await self._session.execute(stmt)
        finding = result.scalar_one_or_none()
        if finding is None:
            raise NotFoundError(resource="ControlFinding", resource_id=str(finding_id))
        return finding


class AISystemRepository:
    """Repository for the AI system registry.

    Args:
        session: The transaction's async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, tenant_id: str, values: dict[str, Any]) -> AISystem:
        """Register an AI system.

        Raises:
            ConflictError: If the tenant already registered the same system_id.
        """
        existing = await self._session.execute(
            select(AISystem.id).where(
                AISystem.tenant_id == tenant_id,
                AISystem.system_id == values["system_id"],
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"AI system with ID {values['system_id']} already exists")

        system = AISystem(id=uuid.uuid4(), tenant_id=tenant_id, **values)
        self._session.add(system)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"AI system with ID {values['system_id']} already exists") from exc
        await self._session.refresh(system)
        return system

    async def get(self, tenant_id: str, identifier: str) -> AISystem:
        """Return a system by row UUID or by its tenant-scoped system_id.

        Raises:
            NotFoundError: If nothing matches.
        """
        match = AISystem.system_id == identifier
        try:
            match = or_(AISystem.id == uuid.UUID(identifier), match)
        except ValueError:
            pass
        stmt = select(AISystem).where(AISystem.tenant_id == tenant_id, match)
        result = await self._session.execute(stmt)
        system = result.scalars().first()
        if system is None:
            raise NotFoundError(resource="AISystem", resource_id=identifier)
        return system

    async def list_all(
        self,
        tenant_id: str,
        risk_classification: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AISystem], int]:
        conditions = [AISystem.tenant_id == tenant_id]
        if risk_classification:
            conditions.append(AISystem.risk_classification == risk_classification)
        if status:
            conditions.append(AISystem.status == status)

        count_stmt = select(func.count()).select_from(AISystem).where(*conditions)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = select(AISystem).where(*conditions).order_by(AISystem.created_at.desc())
        stmt = stmt.offset(offset).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total
