"""Abstract interfaces (Protocol classes) for the compliance engine.

Defines the contracts between the service layer and the adapter layer using
typing.Protocol. Services depend on these protocols, never on concrete
adapters, so tests can substitute in-memory fakes.

Value types crossing the boundary:
- ControlDefinition    — catalog view of one control, as consumed by the engine
- TargetSystemContext  — identity of the system being assessed
- EvaluationOutcome    — evaluator verdict for one control
- FindingDraft         — a finding ready to be inserted
- ConfigAuditDraft     — an audit row ready to be appended

Protocols defined:
- IComplianceConfigRepository
- IConfigAuditRepository
- IControlCatalog
- IAssessmentRepository
- IFindingRepository
- IAISystemRepository
- IStoreTransaction / IComplianceStore — unit of work over one session
- IControlEvaluator
"""

import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol

from nexus_compliance_engine.core.models import (
    AISystem,
    ComplianceAssessment,
    ComplianceConfig,
    ComplianceConfigAudit,
    ComplianceControl,
    ComplianceFramework,
    ControlFinding,
)

# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ControlDefinition:
    """Read-only view of one catalog control used during an assessment run."""

    id: str
    framework_id: str
    control_number: str
    title: str
    description: str
    domain: str | None = None
    implementation_priority: int = 50
    risk_category: str = "medium"
    evidence_requirements: tuple[str, ...] = ()
    ai_assessment_prompt: str | None = None


@dataclass(frozen=True)
class TargetSystemContext:
    """The system under assessment, as handed to the evaluator."""

    system_id: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class EvaluationOutcome:
    """Evaluator verdict for a single control.

    Attributes:
        status: One of the five finding statuses.
        narrative: Free-text assessment produced by the evaluator.
        confidence: Confidence in [0, 1].
        severity: Optional finding severity.
        reasoning: Optional explanation of the verdict.
        evidence: Evidence items the evaluator relied on.
    """

    status: str
    narrative: str
    confidence: float
    severity: str | None = None
    reasoning: str | None = None
    evidence: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class FindingDraft:
    """A control finding computed by a run, not yet persisted."""

    control_id: str
    status: str
    severity: str | None
    finding_title: str | None
    finding_description: str | None
    ai_assessment: str | None
    ai_confidence: float
    ai_reasoning: str | None
    remediation_required: bool
    remediation_status: str
    remediation_plan: str | None = None
    evidence: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ConfigAuditDraft:
    """One configuration change ready to be appended to the audit trail."""

    config_id: uuid.UUID
    tenant_id: str
    action: str
    changed_by: str
    change_reason: str
    previous_state: dict[str, Any] | None
    new_state: dict[str, Any]
    module_affected: str | None = None
    feature_affected: str | None = None
    previous_value: bool | None = None
    new_value: bool | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    request_id: str | None = None


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class IComplianceConfigRepository(Protocol):
    """Repository contract for the per-tenant ComplianceConfig row."""

    async def get(self, tenant_id: str, for_update: bool = False) -> ComplianceConfig | None:
        """Return the tenant's config row, optionally locking it.

        Args:
            tenant_id: Owning tenant.
            for_update: Take a row lock held until the transaction ends.

        Returns:
            The ComplianceConfig, or None if the tenant has none yet.
        """
        ...

    async def get_or_create(
        self,
        tenant_id: str,
        default_module_config: dict[str, Any],
        for_update: bool = False,
    ) -> tuple[ComplianceConfig, bool]:
        """Return the tenant's config row, inserting the default when absent.

        The insert must be race-safe: two concurrent callers end up with the
        same single row.

        Args:
            tenant_id: Owning tenant.
            default_module_config: camelCase module map used for a new row.
            for_update: Lock the row for the rest of the transaction.

        Returns:
            Tuple of (config, created) where created is True only for the caller whose insert won.
        """
        ...

    async def update(self, config_id: uuid.UUID, tenant_id: str, values: dict[str, Any]) -> ComplianceConfig:
        """Apply column updates to a config row.

        Raises:
            NotFoundError: If the row does not exist for this tenant.
        """
        ...


class IConfigAuditRepository(Protocol):
    """Append-only repository contract for configuration audit rows.

    There are deliberately no update or delete operations.
    """

    async def append(self, draft: ConfigAuditDraft) -> ComplianceConfigAudit:
        """Insert one audit row.

        Args:
            draft: The audit entry to persist.

        Returns:
            The persisted ComplianceConfigAudit.
        """
        ...

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
        ...


class IControlCatalog(Protocol):
    """Read-only access to frameworks and their controls."""

    async def get_framework(self, framework_id: str) -> ComplianceFramework:
        """Return one framework.

        Raises:
            NotFoundError: If the framework does not exist.
        """
        ...

    async def list_frameworks(
        self,
        category: str | None = None,
        jurisdiction: str | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ComplianceFramework], int]:
        """Return a page of frameworks with the unpaged total."""
        ...

    async def list_controls(
        self,
        framework_id: str,
        domains: list[str] | None = None,
        exclude_ids: list[str] | None = None,
    ) -> list[ControlDefinition]:
        """Return the controls an assessment run must evaluate.

        Args:
            framework_id: Framework whose controls to load.
            domains: Restrict to these domains; empty or None means all.
            exclude_ids: Control IDs to leave out.

        Returns:
            Controls in catalog order (highest priority first).
        """
        ...

    async def search_controls(
        self,
        framework_id: str,
        domain: str | None = None,
        risk_category: str | None = None,
        automated_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[ComplianceControl], int]:
        """Return a page of full control rows for browsing, with the unpaged total."""
        ...


class IAssessmentRepository(Protocol):
    """Repository contract for ComplianceAssessment persistence."""

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
        """Insert a new assessment in `pending` status."""
        ...

    async def get_by_id(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        for_update: bool = False,
    ) -> ComplianceAssessment:
        """Return one assessment, optionally locking its row.

        Raises:
            NotFoundError: If no assessment exists with this ID for the tenant.
        """
        ...

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
        """Return a page of the tenant's assessments with the unpaged total."""
        ...

    async def update(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        values: dict[str, Any],
    ) -> ComplianceAssessment:
        """Apply column updates to an assessment row.

        Raises:
            NotFoundError: If the row does not exist for this tenant.
        """
        ...


class IFindingRepository(Protocol):
    """Repository contract for ControlFinding persistence."""

    async def create_many(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        drafts: list[FindingDraft],
    ) -> list[ControlFinding]:
        """Insert one finding per draft for an assessment."""
        ...

    async def list_by_assessment(
        self,
        assessment_id: uuid.UUID,
        tenant_id: str,
        status: str | None = None,
        severity: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[ControlFinding], int]:
        """Return a page of findings ordered by severity rank then control priority."""
        ...

    async def all_for_assessment(self, assessment_id: uuid.UUID, tenant_id: str) -> list[ControlFinding]:
        """Return every finding of an assessment, unpaged."""
        ...

    async def get_by_id(
        self,
        finding_id: uuid.UUID,
        tenant_id: str,
        for_update: bool = False,
    ) -> ControlFinding:
        """Return one finding.

        Raises:
            NotFoundError: If no finding exists with this ID for the tenant.
        """
        ...

    async def update(self, finding_id: uuid.UUID, tenant_id: str, values: dict[str, Any]) -> ControlFinding:
        """Apply column updates to a finding row."""
        ...


class IAISystemRepository(Protocol):
    """Repository contract for the AI system registry."""

    async def create(self, tenant_id: str, values: dict[str, Any]) -> AISystem:
        """Register an AI system.

        Raises:
            ConflictError: If the tenant already registered the same system_id.
        """
        ...

    async def get(self, tenant_id: str, identifier: str) -> AISystem:
        """Return a system by row UUID or by its system_id.

        Raises:
            NotFoundError: If nothing matches for this tenant.
        """
        ...

    async def list_all(
        self,
        tenant_id: str,
        risk_classification: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AISystem], int]:
        """Return a page of registered systems with the unpaged total."""
        ...


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class IStoreTransaction(Protocol):
    """Repositories bound to one open transaction.

    Everything written through these repositories commits or rolls back
    together when the enclosing `IComplianceStore.transaction()` exits.
    """

    configs: IComplianceConfigRepository
    config_audits: IConfigAuditRepository
    catalog: IControlCatalog
    assessments: IAssessmentRepository
    findings: IFindingRepository
    ai_systems: IAISystemRepository

    def savepoint(self) -> AbstractAsyncContextManager[None]:
        """Open a savepoint inside the transaction.

        Writes made inside the block are undone if it raises; the enclosing
        transaction, and any row locks it holds, stay open.
        """
        ...


class IComplianceStore(Protocol):
    """Store handle injected into every service."""

    def transaction(self) -> AbstractAsyncContextManager[IStoreTransaction]:
        """Open a transaction.

        Commits when the block exits normally, rolls back when it raises.
        Row locks taken inside the block are held until it exits.
        """
        ...


# ---------------------------------------------------------------------------
# Control evaluator
# ---------------------------------------------------------------------------


class IControlEvaluator(Protocol):
    """Pluggable per-control evaluator."""

    async def evaluate(
        self,
        control: ControlDefinition,
        target: TargetSystemContext,
        use_ai: bool,
        model: str | None = None,
    ) -> EvaluationOutcome:
        """Classify one control for a target system.

        Args:
            control: The control to evaluate.
            target: The system under assessment.
            use_ai: Whether AI assistance was requested for the run.
            model: Model identifier to request, or None for the evaluator default.

        Returns:
            The evaluator's verdict.

        Raises:
            EvaluatorError: Evaluation of this control failed.
            EvaluatorUnavailableError: The evaluator cannot serve any control.
        """
        ...
