"""In-memory store and evaluator fakes for service tests.

InMemoryComplianceStore implements IComplianceStore over plain dicts of
transient ORM instances:
- writes are applied immediately and recorded in an undo log; a transaction
  that exits with an exception replays the log backwards (rollback)
- `for_update=True` reads take a per-row asyncio.Lock held until the
  transaction exits, so concurrent operations on one row serialize
- `db.fail_on` names repository operations that raise StorageError, to
  exercise rollback paths
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Any

from nexus_compliance_engine.core.interfaces import (
    ConfigAuditDraft,
    ControlDefinition,
    EvaluationOutcome,
    FindingDraft,
    TargetSystemContext,
)
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
from nexus_compliance_engine.errors import ConflictError, NotFoundError, StorageError

_SEVERITY_RANK = {"critical": 1, "major": 2, "minor": 3, "observation": 4}


def _now() -> datetime:
    return datetime.now(UTC)


class InMemoryDatabase:
    """Shared state behind every in-memory transaction."""

    def __init__(self) -> None:
        self.configs: dict[str, ComplianceConfig] = {}
        self.audits: list[ComplianceConfigAudit] = []
        self.frameworks: dict[str, ComplianceFramework] = {}
        self.controls: list[ComplianceControl] = []
        self.assessments: dict[uuid.UUID, ComplianceAssessment] = {}
        self.findings: dict[uuid.UUID, ControlFinding] = {}
        self.ai_systems: dict[uuid.UUID, AISystem] = {}
        self.locks: dict[tuple[str, str], asyncio.Lock] = {}
        self.fail_on: set[str] = set()
        self.transactions_opened = 0
        self.rollbacks = 0
        self.savepoint_rollbacks = 0
        self.audit_sequence = 0

    def add_framework(self, framework_id: str, name: str | None = None, is_active: bool = True) -> ComplianceFramework:
        framework = ComplianceFramework(
            id=framework_id,
            name=name or framework_id.upper(),
            full_name=name or framework_id.upper(),
            version="2022",
            effective_date=date(2022, 10, 25),
            description=f"{framework_id} framework",
            category="security",
            jurisdiction="global",
            authority=None,
            official_url=None,
            documentation_url=None,
            total_controls=0,
            critical_controls=0,
            is_active=is_active,
            last_updated=None,
            created_at=_now(),
            updated_at=_now(),
        )
        self.frameworks[framework_id] = framework
        return framework

    def add_control(
        self,
        framework_id: str,
        control_id: str,
        priority: int = 50,
        domain: str | None = None,
        title: str | None = None,
        risk_category: str = "medium",
        automated: bool = False,
    ) -> ComplianceControl:
        control = ComplianceControl(
            id=control_id,
            framework_id=framework_id,
            control_number=control_id.split("-", 1)[-1],
            domain=domain,
            subdomain=None,
            title=title or f"Control {control_id}",
            description=f"Requirement {control_id}",
            objective=None,
            implementation_guidance=None,
            evidence_requirements=["policy document"],
            testing_procedures=[],
            risk_category=risk_category,
            implementation_priority=priority,
            automated_test_available=automated,
            automated_test_id=None,
            ai_assessment_prompt=None,
            created_at=_now(),
            updated_at=_now(),
        )
        self.controls.append(control)
        self.frameworks[framework_id].total_controls += 1
        return control


class _Repository:
    def __init__(self, db: InMemoryDatabase, tx: "InMemoryTransaction") -> None:
        self._db = db
        self._tx = tx

    def _check(self, operation: str) -> None:
        if operation in self._db.fail_on:
            raise StorageError(f"Injected storage failure in {operation}")

    def _set(self, row: Any, values: dict[str, Any]) -> None:
        previous = {key: getattr(row, key) for key in values}
        for key, value in values.items():
            setattr(row, key, value)
        if hasattr(row, "updated_at"):
            previous.setdefault("updated_at", row.updated_at)
            row.updated_at = _now()

        def undo() -> None:
            for key, value in previous.items():
                setattr(row, key, value)

        self._tx.on_rollback(undo)


class FakeConfigRepository(_Repository):
    async def get(self, tenant_id: str, for_update: bool = False) -> ComplianceConfig | None:
        self._check("configs.get")
        if for_update:
            await self._tx.lock("config", tenant_id)
        return self._db.configs.get(tenant_id)

    async def get_or_create(
        self,
        tenant_id: str,
        default_module_config: dict[str, Any],
        for_update: bool = False,
    ) -> tuple[ComplianceConfig, bool]:
        self._check("configs.get_or_create")
        if for_update:
            await self._tx.lock("config", tenant_id)
        existing = self._db.configs.get(tenant_id)
        if existing is not None:
            return existing, False

        config = ComplianceConfig(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            master_enabled=True,
            module_config=default_module_config,
            created_at=_now(),
            updated_at=_now(),
        )
        self._db.configs[tenant_id] = config
        self._tx.on_rollback(lambda: self._db.configs.pop(tenant_id, None))
        return config, True

    async def update(self, config_id: uuid.UUID, tenant_id: str, values: dict[str, Any]) -> ComplianceConfig:
        self._check("configs.update")
        config = self._db.configs.get(tenant_id)
        if config is None or config.id != config_id:
            raise NotFoundError(resource="ComplianceConfig", resource_id=str(config_id))
        self._set(config, values)
        return config


class FakeConfigAuditRepository(_Repository):
    async def append(self, draft: ConfigAuditDraft) -> ComplianceConfigAudit:
        self._check("config_audits.append")
        self._db.audit_sequence += 1
        entry = ComplianceConfigAudit(
            id=uuid.uuid4(), sequence=self._db.audit_sequence, created_at=_now(), **vars(draft)
        )
        self._db.audits.append(entry)
        self._tx.on_rollback(lambda: self._db.audits.remove(entry))
        return entry

    async def query(
        self,
        tenant_id: str,
        action: str | None = None,
        module: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ComplianceConfigAudit], int]:
        rows = sorted(
            (
                entry
                for entry in self._db.audits
                if entry.tenant_id == tenant_id
                and (action is None or entry.action == action)
                and (module is None or entry.module_affected == module)
            ),
            key=lambda entry: (entry.created_at, entry.sequence),
            reverse=True,
        )
        return rows[offset : offset + limit], len(rows)


class FakeCatalog(_Repository):
    async def get_framework(self, framework_id: str) -> ComplianceFramework:
        self._check("catalog.get_framework")
        framework = self._db.frameworks.get(framework_id)
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
        rows = sorted(
            (
                f
                for f in self._db.frameworks.values()
                if (category is None or f.category == category)
                and (jurisdiction is None or f.jurisdiction == jurisdiction)
                and (is_active is None or f.is_active == is_active)
            ),
            key=lambda f: f.name,
        )
        return rows[offset : offset + limit], len(rows)

    def _ordered(self, rows: list[ComplianceControl]) -> list[ComplianceControl]:
        return sorted(rows, key=lambda c: (-c.implementation_priority, c.control_number))

    async def list_controls(
        self,
        framework_id: str,
        domains: list[str] | None = None,
        exclude_ids: list[str] | None = None,
    ) -> list[ControlDefinition]:
        self._check("catalog.list_controls")
        rows = [
            c
            for c in self._db.controls
            if c.framework_id == framework_id
            and (not domains or c.domain in domains)
            and (not exclude_ids or c.id not in exclude_ids)
        ]
        return [
            ControlDefinition(
                id=c.id,
                framework_id=c.framework_id,
                control_number=c.control_number,
                title=c.title,
                description=c.description,
                domain=c.domain,
                implementation_priority=c.implementation_priority,
                risk_category=c.risk_category,
                evidence_requirements=tuple(c.evidence_requirements),
                ai_assessment_prompt=c.ai_assessment_prompt,
            )
            for c in self._ordered(rows)
        ]

    async def search_controls(
        self,
        framework_id: str,
        domain: str | None = None,
        risk_category: str | None = None,
        automated_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[ComplianceControl], int]:
        rows = self._ordered(
            [
                c
                for c in self._db.controls
                if c.framework_id == framework_id
                and (domain is None or c.domain == domain)
                and (risk_category is None or c.risk_category == risk_category)
                and (not automated_only or c.automated_test_available)
            ]
        )
        return rows[offset : offset + limit], len(rows)


class FakeAssessmentRepository(_Repository):
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
        self._check("assessments.create")
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
            overall_score=None,
            risk_level=None,
            total_controls_assessed=0,
            compliant_controls=0,
            non_compliant_controls=0,
            partial_controls=0,
            not_applicable_controls=0,
            not_assessed_controls=0,
            critical_findings=0,
            major_findings=0,
            minor_findings=0,
            observations=0,
            ai_model_used=None,
            ai_confidence=None,
            human_reviewed=False,
            reviewer_id=None,
            review_notes=None,
            reviewed_at=None,
            failure_reason=None,
            started_at=None,
            completed_at=None,
            created_at=_now(),
            updated_at=_now(),
        )
        self._db.assessments[assessment.id] = assessment
        self._tx.on_rollback(lambda: self._db.assessments.pop(assessment.id, None))
        return assessment

    async def get_by_id(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        for_update: bool = False,
    ) -> ComplianceAssessment:
        self._check("assessments.get_by_id")
        if for_update:
            await self._tx.lock("assessment", str(assessment_id))
        assessment = self._db.assessments.get(assessment_id)
        if assessment is None or assessment.tenant_id != tenant_id:
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
        rows = [
            a
            for a in self._db.assessments.values()
            if a.tenant_id == tenant_id
            and (framework_id is None or a.framework_id == framework_id)
            and (target_system_id is None or a.target_system_id == target_system_id)
            and (status is None or a.status == status)
        ]
        rows.sort(key=lambda a: (getattr(a, sort_by) is None, getattr(a, sort_by)), reverse=sort_order == "desc")
        start = (page - 1) * page_size
        return rows[start : start + page_size], len(rows)

    async def update(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        values: dict[str, Any],
    ) -> ComplianceAssessment:
        self._check("assessments.update")
        if values.get("status") == "completed":
            self._check("assessments.complete")
        assessment = self._db.assessments.get(assessment_id)
        if assessment is None or assessment.tenant_id != tenant_id:
            raise NotFoundError(resource="ComplianceAssessment", resource_id=str(assessment_id))
        self._set(assessment, values)
        return assessment


class FakeFindingRepository(_Repository):
    async def create_many(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        drafts: list[FindingDraft],
    ) -> list[ControlFinding]:
        self._check("findings.create_many")
        created = []
        for draft in drafts:
            finding = ControlFinding(
                id=uuid.uuid4(),
                assessment_id=assessment_id,
                tenant_id=tenant_id,
                control_id=draft.control_id,
                status=draft.status,
                severity=draft.severity,
                finding_title=draft.finding_title,
                finding_description=draft.finding_description,
                evidence=list(draft.evidence),
                evidence_urls=[],
                ai_assessment=draft.ai_assessment,
                ai_confidence=draft.ai_confidence,
                ai_reasoning=draft.ai_reasoning,
                remediation_required=draft.remediation_required,
                remediation_status=draft.remediation_status,
                remediation_plan=draft.remediation_plan,
                remediation_owner=None,
                remediation_due_date=None,
                remediation_completed_date=None,
                remediation_notes=None,
                human_verified=False,
                verified_by=None,
                verified_at=None,
                verification_notes=None,
                created_at=_now(),
                updated_at=_now(),
            )
            self._db.findings[finding.id] = finding
            created.append(finding)

        def undo() -> None:
            for finding in created:
                self._db.findings.pop(finding.id, None)

        self._tx.on_rollback(undo)
        return created

    def _priority(self, control_id: str) -> int:
        for control in self._db.controls:
            if control.id == control_id:
                return control.implementation_priority
        return 0

    async def list_by_assessment(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        status: str | None = None,
        severity: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[ControlFinding], int]:
        rows = [
            f
            for f in self._db.findings.values()
            if f.assessment_id == assessment_id
            and f.tenant_id == tenant_id
            and (status is None or f.status == status)
            and (severity is None or f.severity == severity)
        ]
        rows.sort(key=lambda f: (_SEVERITY_RANK.get(f.severity or "", 5), -self._priority(f.control_id)))
        start = (page - 1) * page_size
        return rows[start : start + page_size], len(rows)

    async def all_for_assessment(self, assessment_id: uuid.UUID, tenant_id: str) -> list[ControlFinding]:
        return [
            f for f in self._db.findings.values() if f.assessment_id == assessment_id and f.tenant_id == tenant_id
        ]

    async def get_by_id(
        self,
        finding_id: uuid.UUID,
        tenant_id: str,
        for_update: bool = False,
    ) -> ControlFinding:
        if for_update:
            await self._tx.lock("finding", str(finding_id))
        finding = self._db.findings.get(finding_id)
        if finding is None or finding.tenant_id != tenant_id:
            raise NotFoundError(resource="ControlFinding", resource_id=str(finding_id))
        return finding

    async def update(self, finding_id: uuid.UUID, tenant_id: str, values: dict[str, Any]) -> ControlFinding:
        self._check("findings.update")
        finding = await self.get_by_id(finding_id, tenant_id)
        self._set(finding, values)
        return finding


class FakeAISystemRepository(_Repository):
    async def create(self, tenant_id: str, values: dict[str, Any]) -> AISystem:
        for system in self._db.ai_systems.values():
            if system.tenant_id == tenant_id and system.system_id == values["system_id"]:
                raise ConflictError(f"AI system with ID {values['system_id']} already exists")
        system = AISystem(id=uuid.uuid4(), tenant_id=tenant_id, created_at=_now(), updated_at=_now(), **values)
        self._db.ai_systems[system.id] = system
        self._tx.on_rollback(lambda: self._db.ai_systems.pop(system.id, None))
        return system

    async def get(self, tenant_id: str, identifier: str) -> AISystem:
        for system in self._db.ai_systems.values():
            if system.tenant_id == tenant_id and identifier in (str(system.id), system.system_id):
                return system
        raise NotFoundError(resource="AISystem", resource_id=identifier)

    async def list_all(
        self,
        tenant_id: str,
        risk_classification: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AISystem], int]:
        rows = [
            s
            for s in reversed(list(self._db.ai_systems.values()))
            if s.tenant_id == tenant_id
            and (risk_classification is None or s.risk_classification == risk_classification)
            and (status is None or s.status == status)
        ]
        return rows[offset : offset + limit], len(rows)


class InMemoryTransaction:
    """Repositories over the in-memory database sharing one undo log."""

    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db
        self._undo: list[Callable[[], None]] = []
        self._held: dict[tuple[str, str], asyncio.Lock] = {}
        self.configs = FakeConfigRepository(db, self)
        self.config_audits = FakeConfigAuditRepository(db, self)
        self.catalog = FakeCatalog(db, self)
        self.assessments = FakeAssessmentRepository(db, self)
        self.findings = FakeFindingRepository(db, self)
        self.ai_systems = FakeAISystemRepository(db, self)

    def on_rollback(self, undo: Callable[[], None]) -> None:
        self._undo.append(undo)

    async def lock(self, kind: str, key: str) -> None:
        """Take a row lock held until the transaction ends (re-entrant per transaction)."""
        lock_key = (kind, key)
        if lock_key in self._held:
            return
        lock = self._db.locks.setdefault(lock_key, asyncio.Lock())
        await lock.acquire()
        self._held[lock_key] = lock

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        """Undo only the writes made inside the block when it raises."""
        mark = len(self._undo)
        try:
            yield
        except BaseException:
            self._rollback_to(mark)
            self._db.savepoint_rollbacks += 1
            raise

    def _rollback_to(self, mark: int) -> None:
        for undo in reversed(self._undo[mark:]):
            undo()
        del self._undo[mark:]

    def rollback(self) -> None:
        self._rollback_to(0)

    def release(self) -> None:
        for lock in self._held.values():
            lock.release()
        self._held.clear()


class InMemoryComplianceStore:
    """IComplianceStore over an InMemoryDatabase."""

    def __init__(self, db: InMemoryDatabase | None = None) -> None:
        self.db = db or InMemoryDatabase()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransaction]:
        tx = InMemoryTransaction(self.db)
        self.db.transactions_opened += 1
        try:
            yield tx
        except BaseException:
            tx.rollback()
            self.db.rollbacks += 1
            raise
        finally:
            tx.release()


class ScriptedEvaluator:
    """Deterministic IControlEvaluator returning a scripted outcome per control.

    Args:
        outcomes: control_id -> outcome, or an exception instance to raise.
        default: Outcome for controls without a script entry.
        delay: Seconds to sleep before answering (yields to other tasks).
        fail_first: Exception raised by the first call only.
    """

    def __init__(
        self,
        outcomes: dict[str, EvaluationOutcome | Exception] | None = None,
        default: EvaluationOutcome | None = None,
        delay: float = 0.0,
        fail_first: Exception | None = None,
    ) -> None:
        self.outcomes = outcomes or {}
        self.default = default or EvaluationOutcome(status="compliant", narrative="Implemented", confidence=0.9)
        self.delay = delay
        self.fail_first = fail_first
        self.calls: list[tuple[str, str, bool, str | None]] = []

    async def evaluate(
        self,
        control: ControlDefinition,
        target: TargetSystemContext,
        use_ai: bool,
        model: str | None = None,
    ) -> EvaluationOutcome:
        self.calls.append((control.id, target.system_id, use_ai, model))
        await asyncio.sleep(self.delay)
        if self.fail_first is not None:
            error, self.fail_first = self.fail_first, None
            raise error
        outcome = self.outcomes.get(control.id, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
