"""Pydantic request and response schemas for the compliance engine API.

All API inputs and outputs use Pydantic models, never raw dicts.
Schemas are grouped by resource type.

Resources:
- ComplianceConfig — tenant configuration, toggles and the audit log
- Framework / Control — read-only catalog
- ComplianceAssessment — assessment lifecycle
- ControlFinding — per-control findings and human overrides
- AISystem — EU AI Act system registry
"""

import uuid
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from nexus_compliance_engine.core.modules import ComplianceModule

AssessmentStatus = Literal["pending", "in_progress", "completed", "failed", "cancelled"]
FindingStatus = Literal["compliant", "non_compliant", "partial", "not_applicable", "not_assessed"]
FindingSeverity = Literal["critical", "major", "minor", "observation"]
RemediationStatus = Literal["not_required", "pending", "in_progress", "completed", "accepted_risk", "deferred"]
RiskClassification = Literal[
    "prohibited", "high_risk", "limited_risk", "minimal_risk", "gpai", "gpai_systemic", "unclassified"
]
AISystemStatus = Literal["development", "testing", "production", "deprecated", "retired"]


# ---------------------------------------------------------------------------
# ComplianceConfig schemas
# ---------------------------------------------------------------------------


class ComplianceConfigResponse(BaseModel):
    """Response schema for a tenant's compliance configuration."""

    id: uuid.UUID = Field(description="Config row UUID")
    tenant_id: str = Field(description="Owning tenant identifier")
    master_enabled: bool = Field(description="Master switch; false disables every module")
    modules: dict[str, Any] = Field(
        description="Per-module configuration keyed by module: {gdpr: {enabled, dataExport, ...}, ...}",
    )
    created_at: datetime | None = Field(default=None, description="Creation timestamp (UTC)")
    updated_at: datetime | None = Field(default=None, description="Last update timestamp (UTC)")


class ToggleMasterRequest(BaseModel):
    """Request body for flipping the tenant master switch."""

    enabled: bool = Field(description="New value of the master switch")
    reason: str = Field(description="Justification recorded on the audit trail (min 10 characters)")


class ToggleModuleRequest(BaseModel):
    """Request body for toggling a module, or one feature of a module."""

    module: ComplianceModule = Field(description="Module key: gdpr | aiAct | nis2 | iso27001 | soc2 | hipaa")
    enabled: bool = Field(description="New flag value")
    reason: str = Field(description="Justification recorded on the audit trail (min 10 characters)")
    feature: str | None = Field(
        default=None,
        description="camelCase feature key; omit to toggle the module switch itself",
    )


class FeatureStatusResponse(BaseModel):
    """Whether a module (or module feature) is active for a tenant."""

    module: str = Field(description="Module key")
    feature: str | None = Field(default=None, description="Feature key, if one was queried")
    enabled: bool = Field(description="master AND module AND feature")


class ConfigAuditEntryResponse(BaseModel):
    """One immutable configuration audit row."""

    id: uuid.UUID
    config_id: uuid.UUID
    tenant_id: str
    action: str = Field(description="CREATE | UPDATE | TOGGLE_MASTER | TOGGLE_MODULE | TOGGLE_FEATURE")
    changed_by: str
    change_reason: str
    previous_state: dict[str, Any] | None
    new_state: dict[str, Any]
    module_affected: str | None
    feature_affected: str | None
    previous_value: bool | None
    new_value: bool | None
    ip_address: str | None
    user_agent: str | None
    session_id: str | None
    request_id: str | None
    created_at: datetime | None


class ConfigAuditLogResponse(BaseModel):
    """A page of configuration audit rows, newest first."""

    entries: list[ConfigAuditEntryResponse]
    total: int = Field(description="Total rows matching the filters, ignoring pagination")
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Catalog schemas
# ---------------------------------------------------------------------------


class FrameworkResponse(BaseModel):
    """Response schema for a regulatory framework."""

    id: str = Field(description="Framework key, e.g. iso27001")
    name: str
    full_name: str
    version: str
    effective_date: date | None
    description: str
    category: str
    jurisdiction: str
    authority: str | None
    official_url: str | None
    documentation_url: str | None
    total_controls: int
    critical_controls: int
    is_active: bool
    last_updated: date | None


class FrameworkListResponse(BaseModel):
    items: list[FrameworkResponse]
    total: int


class ControlResponse(BaseModel):
    """Response schema for one framework control."""

    id: str
    framework_id: str
    control_number: str
    domain: str | None
    subdomain: str | None
    title: str
    description: str
    objective: str | None
    implementation_guidance: str | None
    evidence_requirements: list[Any]
    testing_procedures: list[Any]
    risk_category: str
    implementation_priority: int
    automated_test_available: bool


class ControlListResponse(BaseModel):
    items: list[ControlResponse]
    total: int


# ---------------------------------------------------------------------------
# ComplianceAssessment schemas
# ---------------------------------------------------------------------------


class CreateAssessmentRequest(BaseModel):
    """Request body for creating a pending assessment."""

    framework_id: str = Field(min_length=1, description="Framework to assess against")
    target_system_id: str = Field(min_length=1, description="Identifier of the assessed system")
    target_system_name: str = Field(min_length=1, max_length=255, description="Display name of the system")
    target_system_description: str | None = Field(default=None)
    scope: list[str] = Field(
        default_factory=list,
        description="Control domains to include; empty means every domain",
    )
    excluded_controls: list[str] = Field(default_factory=list, description="Control IDs to skip")


class RunAssessmentRequest(BaseModel):
    """Options for executing an assessment run."""

    use_ai: bool = Field(default=True, description="Request AI-assisted evaluation")
    ai_model: str | None = Field(default=None, description="Override the configured evaluator model")
    include_recommendations: bool = Field(
        default=True,
        description="Copy evaluator reasoning into the remediation plan of findings that need remediation",
    )


class AssessmentReviewRequest(BaseModel):
    """Human review annotation for a completed assessment."""

    review_notes: str = Field(min_length=1, description="Reviewer notes")


class AssessmentResponse(BaseModel):
    """Response schema for a compliance assessment."""

    id: uuid.UUID
    tenant_id: str
    framework_id: str
    target_system_id: str
    target_system_name: str
    target_system_description: str | None
    scope: list[str]
    excluded_controls: list[str]
    status: AssessmentStatus
    overall_score: float | None
    risk_level: str | None
    total_controls_assessed: int
    compliant_controls: int
    non_compliant_controls: int
    partial_controls: int
    not_applicable_controls: int
    not_assessed_controls: int
    critical_findings: int
    major_findings: int
    minor_findings: int
    observations: int
    ai_model_used: str | None
    ai_confidence: float | None
    human_reviewed: bool
    reviewer_id: str | None
    review_notes: str | None
    reviewed_at: datetime | None
    failure_reason: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class AssessmentListResponse(BaseModel):
    items: list[AssessmentResponse]
    total: int
    page: int
    page_size: int


# ---------------------------------------------------------------------------
# ControlFinding schemas
# ---------------------------------------------------------------------------


class FindingResponse(BaseModel):
    """Response schema for one control finding."""

    id: uuid.UUID
    assessment_id: uuid.UUID
    control_id: str
    tenant_id: str
    status: FindingStatus
    severity: FindingSeverity | None
    finding_title: str | None
    finding_description: str | None
    evidence: list[Any]
    evidence_urls: list[str]
    ai_assessment: str | None
    ai_confidence: float | None
    ai_reasoning: str | None
    remediation_required: bool
    remediation_status: RemediationStatus
    remediation_plan: str | None
    remediation_owner: str | None
    remediation_due_date: date | None
    remediation_completed_date: date | None
    remediation_notes: str | None
    human_verified: bool
    verified_by: str | None
    verified_at: datetime | None
    verification_notes: str | None


class FindingListResponse(BaseModel):
    items: list[FindingResponse]
    total: int
    page: int
    page_size: int


class FindingUpdateRequest(BaseModel):
    """Human override of a finding. Only the fields that are set are written."""

    status: FindingStatus | None = None
    severity: FindingSeverity | None = None
    finding_title: str | None = Field(default=None, max_length=500)
    finding_description: str | None = None
    remediation_status: RemediationStatus | None = None
    remediation_plan: str | None = None
    remediation_owner: str | None = Field(default=None, max_length=255)
    remediation_due_date: date | None = None
    remediation_completed_date: date | None = None
    remediation_notes: str | None = None
    evidence_urls: list[str] | None = None
    verification_notes: str | None = None


# ---------------------------------------------------------------------------
# AISystem schemas
# ---------------------------------------------------------------------------


class RegisterAISystemRequest(BaseModel):
    """Request body for registering an AI system."""

    system_id: str = Field(min_length=1, max_length=255, description="Tenant-unique system identifier")
    name: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    version: str | None = None
    risk_classification: RiskClassification = "unclassified"
    provider: str = Field(min_length=1, max_length=255)
    provider_contact: str | None = None
    is_third_party: bool = False
    status: AISystemStatus = "development"
    environments: list[str] = Field(default_factory=list)
    data_categories: list[str] = Field(default_factory=list)
    purpose_of_processing: list[str] = Field(default_factory=list)
    data_sources: list[str] = Field(default_factory=list)
    human_oversight_enabled: bool = False
    human_oversight_description: str | None = None
    human_oversight_contact: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AISystemResponse(BaseModel):
    """Response schema for a registered AI system."""

    id: uuid.UUID
    tenant_id: str
    system_id: str
    name: str
    description: str
    version: str | None
    risk_classification: str
    provider: str
    provider_contact: str | None
    is_third_party: bool
    status: str
    environments: list[str]
    data_categories: list[str]
    purpose_of_processing: list[str]
    data_sources: list[str]
    human_oversight_enabled: bool
    human_oversight_description: str | None
    human_oversight_contact: str | None
    tags: list[str]
    metadata: dict[str, Any]
    created_at: datetime | None
    updated_at: datetime | None


class AISystemListResponse(BaseModel):
    items: list[AISystemResponse]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
