"""SQLAlchemy ORM models for the compliance engine.

Column shapes match the existing compliance schema field-for-field so that
reporting and audit tooling reading the tables directly keeps working.

Models:
- ComplianceConfig       — one per tenant: master switch + module configuration
- ComplianceConfigAudit  — APPEND-ONLY audit of every configuration change
- ComplianceFramework    — regulatory framework catalog entry (read-only)
- ComplianceControl      — individual framework control (read-only)
- ComplianceAssessment   — one assessment run of a target system against a framework
- ControlFinding         — per-control result of an assessment run
- AISystem               — EU AI Act system registry entry

IMPORTANT: ComplianceConfigAudit rows are never updated or deleted. The
repository for it exposes append() and read operations only.
"""

import uuid
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Identity,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import INET, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from nexus_compliance_engine.database import Base, TimestampMixin

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

ASSESSMENT_PENDING = "pending"
ASSESSMENT_IN_PROGRESS = "in_progress"
ASSESSMENT_COMPLETED = "completed"
ASSESSMENT_FAILED = "failed"
ASSESSMENT_CANCELLED = "cancelled"

ASSESSMENT_STATUSES = (
    ASSESSMENT_PENDING,
    ASSESSMENT_IN_PROGRESS,
    ASSESSMENT_COMPLETED,
    ASSESSMENT_FAILED,
    ASSESSMENT_CANCELLED,
)

FINDING_COMPLIANT = "compliant"
FINDING_NON_COMPLIANT = "non_compliant"
FINDING_PARTIAL = "partial"
FINDING_NOT_APPLICABLE = "not_applicable"
FINDING_NOT_ASSESSED = "not_assessed"

FINDING_STATUSES = (
    FINDING_COMPLIANT,
    FINDING_NON_COMPLIANT,
    FINDING_PARTIAL,
    FINDING_NOT_APPLICABLE,
    FINDING_NOT_ASSESSED,
)

FINDING_SEVERITIES = ("critical", "major", "minor", "observation")

REMEDIATION_STATUSES = ("not_required", "pending", "in_progress", "completed", "accepted_risk", "deferred")

RISK_LEVELS = ("low", "medium", "high", "critical")

AUDIT_ACTIONS = ("CREATE", "UPDATE", "TOGGLE_MASTER", "TOGGLE_MODULE", "TOGGLE_FEATURE")


class ComplianceConfig(TimestampMixin, Base):
    """Per-tenant compliance configuration: master switch and module switches.

    Exactly one row per tenant. Created implicitly on first read with the
    default module configuration and mutated only by the toggle operations,
    each of which writes a ComplianceConfigAudit row in the same transaction.

    Attributes:
        tenant_id: Owning tenant identifier (unique).
        master_enabled: Tenant-wide kill switch. When false every gate is closed.
        module_config: camelCase JSON form of core.modules.ModuleConfigMap.
    """

    __tablename__ = "compliance_config"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Owning tenant identifier — exactly one configuration per tenant",
    )
    master_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Master switch — disables ALL compliance features when false",
    )
    module_config: Mapped[dict] = mapped_column(  # type: ignore[type-arg]
        JSONB,
        nullable=False,
        comment="Module-level configuration: {gdpr: {enabled, dataExport, ...}, aiAct: {...}, ...}",
    )


class ComplianceConfigAudit(Base):
    """Immutable audit row for one configuration change.

    Captures full before/after snapshots for forensic replay plus the
    specific module/feature delta for fast queries.

    Attributes:
        config_id: FK to the ComplianceConfig that changed.
        tenant_id: Owning tenant identifier.
        action: CREATE | UPDATE | TOGGLE_MASTER | TOGGLE_MODULE | TOGGLE_FEATURE.
        changed_by: Acting user identifier.
        change_reason: Mandatory free-text justification.
        previous_state: Snapshot before the change (null for CREATE).
        new_state: Snapshot after the change.
        module_affected: Module key, or `master` for master toggles.
        feature_affected: Feature key, or `enabled` for module/master switches.
        previous_value: Flag value before the change.
        new_value: Flag value after the change.
        ip_address: Client IP (request provenance).
        user_agent: Client user agent (request provenance).
        session_id: Client session (request provenance).
        request_id: Request correlation ID.
        sequence: Monotonic insert order, tie-breaker for created_at.
    """

    __tablename__ = "compliance_config_audit"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("compliance_config.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="CREATE | UPDATE | TOGGLE_MASTER | TOGGLE_MODULE | TOGGLE_FEATURE",
    )
    changed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    change_reason: Mapped[str] = mapped_column(Text, nullable=False)
    previous_state: Mapped[dict | None] = mapped_column(JSONB, nullable=True)  # type: ignore[type-arg]
    new_state: Mapped[dict] = mapped_column(JSONB, nullable=False)  # type: ignore[type-arg]
    module_affected: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    feature_affected: Mapped[str | None] = mapped_column(String(100), nullable=True)
    previous_value: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    new_value: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True,
        comment="Immutable insert timestamp (UTC)",
    )
    sequence: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        nullable=False,
        unique=True,
        comment="Insert order; breaks ties between rows sharing a transaction timestamp",
    )


class ComplianceFramework(TimestampMixin, Base):
    """Regulatory framework catalog entry (e.g. iso27001, gdpr, eu_ai_act)."""

    __tablename__ = "compliance_frameworks"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(500), nullable=False)
    version: Mapped[str] = mapped_column(String(50), nullable=False)
    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="security | privacy | ai_governance | cybersecurity | healthcare | financial",
    )
    jurisdiction: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="eu | us | uk | global | apac | latam",
    )
    authority: Mapped[str | None] = mapped_column(String(255), nullable=True)
    official_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    documentation_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_controls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    critical_controls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    last_updated: Mapped[date | None] = mapped_column(Date, nullable=True)


class ComplianceControl(TimestampMixin, Base):
    """Individual requirement of a framework — the unit of evaluation."""

    __tablename__ = "compliance_controls"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    framework_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("compliance_frameworks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    control_number: Mapped[str] = mapped_column(String(50), nullable=False)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    subdomain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    objective: Mapped[str | None] = mapped_column(Text, nullable=True)
    implementation_guidance: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence_requirements: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    testing_procedures: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    risk_category: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="medium",
        comment="critical | high | medium | low",
    )
    implementation_priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=50,
        comment="1-100; higher is evaluated first",
    )
    automated_test_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    automated_test_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ai_assessment_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)


class ComplianceAssessment(TimestampMixin, Base):
    """One assessment of a target system against a framework.

    Lifecycle: pending -> in_progress -> completed | failed; cancelled is an
    operator abort. Immutable once completed or failed except for the
    human-review fields and an explicit score recalculation.

    Attributes:
        tenant_id: Owning tenant identifier.
        framework_id: Framework assessed against.
        target_system_id: Identifier of the assessed system.
        target_system_name: Display name of the assessed system.
        target_system_description: Optional free text.
        scope: Domain filters; empty means all domains.
        excluded_controls: Control IDs excluded from the run.
        status: Lifecycle state.
        overall_score: 0-100 score computed at completion.
        risk_level: low | medium | high | critical.
        total_controls_assessed: Number of controls evaluated in the run.
        not_assessed_controls: Controls recorded as not_assessed.
        ai_model_used: Evaluator model identifier (AI runs only).
        ai_confidence: Mean evaluator confidence (AI runs only).
        failure_reason: Why the last run failed.
    """

    __tablename__ = "compliance_assessments"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    framework_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("compliance_frameworks.id"),
        nullable=False,
        index=True,
    )
    target_system_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    target_system_name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_system_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    excluded_controls: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=ASSESSMENT_PENDING,
        index=True,
        comment="pending | in_progress | completed | failed | cancelled",
    )
    overall_score: Mapped[float | None] = mapped_column(Numeric(5, 2, asdecimal=False), nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(20), nullable=True)

    total_controls_assessed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    compliant_controls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    non_compliant_controls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    partial_controls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    not_applicable_controls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    not_assessed_controls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    critical_findings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    major_findings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minor_findings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    observations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    ai_model_used: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ai_confidence: Mapped[float | None] = mapped_column(Numeric(3, 2, asdecimal=False), nullable=True)

    human_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reviewer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ControlFinding(TimestampMixin, Base):
    """Result of evaluating one control within one assessment run.

    Created exactly once per control per run; afterwards changed only by an
    explicit human override, which marks the finding as human-verified.
    """

    __tablename__ = "control_findings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("compliance_assessments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    control_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("compliance_controls.id"),
        nullable=False,
        index=True,
    )
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=FINDING_NOT_ASSESSED,
        index=True,
        comment="compliant | non_compliant | partial | not_applicable | not_assessed",
    )
    severity: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        index=True,
        comment="critical | major | minor | observation",
    )
    finding_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    finding_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    evidence: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    evidence_urls: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]

    ai_assessment: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_confidence: Mapped[float | None] = mapped_column(Numeric(5, 4, asdecimal=False), nullable=True)
    ai_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)

    remediation_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    remediation_status: Mapped[str] = mapped_column(String(30), nullable=False, default="not_required")
    remediation_plan: Mapped[str | None] = mapped_column(Text, nullable=True)
    remediation_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    remediation_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    remediation_completed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    remediation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    human_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class AISystem(TimestampMixin, Base):
    """AI system registered for EU AI Act obligations tracking."""

    __tablename__ = "ai_system_registry"
    __table_args__ = (UniqueConstraint("tenant_id", "system_id", name="uq_ai_system_tenant_system_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    system_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    risk_classification: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default="unclassified",
        comment="prohibited | high_risk | limited_risk | minimal_risk | gpai | gpai_systemic | unclassified",
    )
    provider: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_contact: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_third_party: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default="development",
        comment="development | testing | production | deprecated | retired",
    )
    environments: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    data_categories: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    purpose_of_processing: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    data_sources: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    human_oversight_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    human_oversight_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    human_oversight_contact: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tags: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    system_metadata: Mapped[dict] = mapped_column(  # type: ignore[type-arg]
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        comment="Free-form metadata (column name 'metadata'; attribute renamed to avoid the declarative reserved name)",
    )
