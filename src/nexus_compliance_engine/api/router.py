"""API router for nexus-compliance-engine.

All compliance endpoints are registered here and included in main.py under
the /api/v1/compliance prefix. Routes are thin: all business logic lives in
the service layer. Authentication happens upstream; the caller's tenant and
user arrive as X-Tenant-ID / X-User-ID headers.

Endpoints:
- GET         /config                             — Tenant configuration (auto-created)
- PUT         /config/master                      — Toggle master switch
- PUT         /config                             — Toggle a module or feature
- GET         /config/enabled/{module}            — Gate check (optional ?feature=)
- GET         /config/audit                       — Configuration audit log
- GET         /frameworks                         — List frameworks
- GET         /frameworks/{id}                    — Get framework
- GET         /frameworks/{id}/controls           — List framework controls
- POST/GET    /assessments                        — Create / list assessments
- GET         /assessments/{id}                   — Get assessment
- POST        /assessments/{id}/run               — Execute assessment
- POST        /assessments/{id}/cancel            — Cancel pending/failed assessment
- POST        /assessments/{id}/review            — Human review of completed assessment
- POST        /assessments/{id}/recalculate       — Rescore from current findings
- GET         /assessments/{id}/findings          — List findings
- PATCH       /findings/{id}                      — Human override of a finding
- POST/GET    /ai-systems                         — Register / list AI systems
- GET         /ai-systems/{system_id}             — Get AI system
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request, status

from nexus_compliance_engine.api.schemas import (
    AISystemListResponse,
    AISystemResponse,
    AssessmentListResponse,
    AssessmentResponse,
    AssessmentReviewRequest,
    AssessmentStatus,
    ComplianceConfigResponse,
    ConfigAuditLogResponse,
    ControlListResponse,
    CreateAssessmentRequest,
    FeatureStatusResponse,
    FindingListResponse,
    FindingResponse,
    FindingSeverity,
    FindingStatus,
    FindingUpdateRequest,
    FrameworkListResponse,
    FrameworkResponse,
    RegisterAISystemRequest,
    RunAssessmentRequest,
    ToggleMasterRequest,
    ToggleModuleRequest,
)
from nexus_compliance_engine.core.context import ServiceContext
from nexus_compliance_engine.core.interfaces import IComplianceStore, IControlEvaluator
from nexus_compliance_engine.core.modules import ComplianceModule
from nexus_compliance_engine.core.scoring import RiskThresholds
from nexus_compliance_engine.core.services import (
    AISystemRegistryService,
    AssessmentService,
    ComplianceConfigService,
    FrameworkCatalogService,
    GateEvaluator,
)
from nexus_compliance_engine.observability import get_logger
from nexus_compliance_engine.settings import Settings

logger = get_logger(__name__)

router = APIRouter(tags=["compliance"])


# ---------------------------------------------------------------------------
# Dependency factories: wire the store, evaluator, and services together
# ---------------------------------------------------------------------------


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> IComplianceStore:
    return request.app.state.store


def get_evaluator(request: Request) -> IControlEvaluator:
    return request.app.state.evaluator


def get_context(
    request: Request,
    x_tenant_id: Annotated[str, Header(min_length=1, description="Tenant identifier set by the gateway")],
    x_user_id: Annotated[str, Header(description="Acting user identifier")] = "system",
    x_request_id: Annotated[str | None, Header()] = None,
    x_session_id: Annotated[str | None, Header()] = None,
    user_agent: Annotated[str | None, Header()] = None,
) -> ServiceContext:
    """Build the ServiceContext from gateway headers and the client connection.

    Args:
        request: The incoming request.
        x_tenant_id: Tenant identifier.
        x_user_id: Acting user identifier.
        x_request_id: Optional correlation ID; generated when absent.
        x_session_id: Optional user session ID.
        user_agent: Client user agent.

    Returns:
        ServiceContext for the core services.
    """
    return ServiceContext(
        tenant_id=x_tenant_id,
        user_id=x_user_id or "system",
        request_id=x_request_id or str(uuid.uuid4()),
        session_id=x_session_id,
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )


def get_config_service(
    store: Annotated[IComplianceStore, Depends(get_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ComplianceConfigService:
    return ComplianceConfigService(store=store, min_reason_length=settings.min_reason_length)


def get_gate_evaluator(
    config_service: Annotated[ComplianceConfigService, Depends(get_config_service)],
) -> GateEvaluator:
    return GateEvaluator(config_service)


def get_catalog_service(store: Annotated[IComplianceStore, Depends(get_store)]) -> FrameworkCatalogService:
    return FrameworkCatalogService(store)


def get_assessment_service(
    store: Annotated[IComplianceStore, Depends(get_store)],
    evaluator: Annotated[IControlEvaluator, Depends(get_evaluator)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AssessmentService:
    """Construct AssessmentService with the run policy from settings.

    Args:
        store: Store handle from app state.
        evaluator: Control evaluator from app state.
        settings: Service settings.

    Returns:
        Fully wired AssessmentService instance.
    """
    return AssessmentService(
        store=store,
        evaluator=evaluator,
        ai_enabled=settings.ai_enabled,
        default_model=settings.ai_model,
        control_timeout_seconds=settings.control_eval_timeout_seconds,
        run_timeout_seconds=settings.run_timeout_seconds,
        risk_thresholds=RiskThresholds(
            low=settings.risk_threshold_low,
            medium=settings.risk_threshold_medium,
            high=settings.risk_threshold_high,
        ),
    )


def get_ai_system_service(
    store: Annotated[IComplianceStore, Depends(get_store)],
    gate: Annotated[GateEvaluator, Depends(get_gate_evaluator)],
) -> AISystemRegistryService:
    return AISystemRegistryService(store=store, gate=gate)


# ---------------------------------------------------------------------------
# Configuration endpoints
# ---------------------------------------------------------------------------


@router.get("/config", response_model=ComplianceConfigResponse)
async def get_config(
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[ComplianceConfigService, Depends(get_config_service)],
) -> ComplianceConfigResponse:
    """Get the tenant's compliance configuration, creating the default on first access."""
    return await service.get_config(context.tenant_id)


@router.put("/config/master", response_model=ComplianceConfigResponse)
async def toggle_master(
    request: ToggleMasterRequest,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[ComplianceConfigService, Depends(get_config_service)],
) -> ComplianceConfigResponse:
    """Toggle the master compliance switch.

    Args:
        request: New master value and audit reason.
        context: Caller context from headers.
        service: Injected ComplianceConfigService.

    Returns:
        The updated configuration.
    """
    logger.info("PUT /config/master", tenant_id=context.tenant_id, enabled=request.enabled)
    return await service.toggle_master(context, request)


@router.put("/config", response_model=ComplianceConfigResponse)
async def toggle_module(
    request: ToggleModuleRequest,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[ComplianceConfigService, Depends(get_config_service)],
) -> ComplianceConfigResponse:
    """Toggle a compliance module, or one of its features.

    Args:
        request: Module, optional feature, new value and audit reason.
        context: Caller context from headers.
        service: Injected ComplianceConfigService.

    Returns:
        The updated configuration.
    """
    logger.info(
        "PUT /config",
        tenant_id=context.tenant_id,
        module=request.module.value,
        feature=request.feature,
        enabled=request.enabled,
    )
    return await service.toggle_module(context, request)


@router.get("/config/enabled/{module}", response_model=FeatureStatusResponse)
async def check_enabled(
    module: ComplianceModule,
    context: Annotated[ServiceContext, Depends(get_context)],
    gate: Annotated[GateEvaluator, Depends(get_gate_evaluator)],
    feature: str | None = Query(default=None, description="camelCase feature key"),
) -> FeatureStatusResponse:
    """Report whether a module, or one of its features, is active for the tenant."""
    return await gate.feature_status(context.tenant_id, module, feature)


@router.get("/config/audit", response_model=ConfigAuditLogResponse)
async def get_audit_log(
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[ComplianceConfigService, Depends(get_config_service)],
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    action: str | None = Query(default=None, description="CREATE|UPDATE|TOGGLE_MASTER|TOGGLE_MODULE|TOGGLE_FEATURE"),
    module: str | None = Query(default=None, description="Module key, or 'master'"),
) -> ConfigAuditLogResponse:
    """Query the tenant's configuration audit trail, newest first."""
    return await service.get_audit_log(context.tenant_id, limit=limit, offset=offset, action=action, module=module)


# ---------------------------------------------------------------------------
# Catalog endpoints
# ---------------------------------------------------------------------------


@router.get("/frameworks", response_model=FrameworkListResponse)
async def list_frameworks(
    service: Annotated[FrameworkCatalogService, Depends(get_catalog_service)],
    category: str | None = Query(default=None),
    jurisdiction: str | None = Query(default=None),
    active: bool | None = Query(default=True, description="Filter on is_active; omit the filter with null"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> FrameworkListResponse:
    """List regulatory frameworks."""
    return await service.list_frameworks(
        category=category,
        jurisdiction=jurisdiction,
        is_active=active,
        limit=limit,
        offset=offset,
    )


@router.get("/frameworks/{framework_id}", response_model=FrameworkResponse)
async def get_framework(
    framework_id: str,
    service: Annotated[FrameworkCatalogService, Depends(get_catalog_service)],
) -> FrameworkResponse:
    return await service.get_framework(framework_id)


@router.get("/frameworks/{framework_id}/controls", response_model=ControlListResponse)
async def list_framework_controls(
    framework_id: str,
    service: Annotated[FrameworkCatalogService, Depends(get_catalog_service)],
    domain: str | None = Query(default=None),
    risk_category: str | None = Query(default=None, description="critical|high|medium|low"),
    automated_only: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> ControlListResponse:
    """List a framework's controls, highest priority first."""
    return await service.list_controls(
        framework_id,
        domain=domain,
        risk_category=risk_category,
        automated_only=automated_only,
        limit=limit,
        offset=offset,
    )


# ---------------------------------------------------------------------------
# Assessment endpoints
# ---------------------------------------------------------------------------


@router.post("/assessments", response_model=AssessmentResponse, status_code=status.HTTP_201_CREATED)
async def create_assessment(
    request: CreateAssessmentRequest,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AssessmentService, Depends(get_assessment_service)],
) -> AssessmentResponse:
    """Create a pending assessment of a target system against a framework.

    Args:
        request: Framework, target system, scope and exclusions.
        context: Caller context from headers.
        service: Injected AssessmentService.

    Returns:
        The created assessment in pending status.
    """
    logger.info("POST /assessments", tenant_id=context.tenant_id, framework_id=request.framework_id)
    return await service.create_assessment(context, request)


@router.get("/assessments", response_model=AssessmentListResponse)
async def list_assessments(
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AssessmentService, Depends(get_assessment_service)],
    framework_id: str | None = Query(default=None),
    target_system_id: str | None = Query(default=None),
    assessment_status: AssessmentStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    sort_by: str = Query(default="created_at", description="created_at|updated_at|overall_score|status"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
) -> AssessmentListResponse:
    """List the tenant's assessments."""
    return await service.list_assessments(
        context.tenant_id,
        framework_id=framework_id,
        target_system_id=target_system_id,
        status=assessment_status,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/assessments/{assessment_id}", response_model=AssessmentResponse)
async def get_assessment(
    assessment_id: uuid.UUID,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AssessmentService, Depends(get_assessment_service)],
) -> AssessmentResponse:
    return await service.get_assessment(context.tenant_id, assessment_id)


@router.post("/assessments/{assessment_id}/run", response_model=AssessmentResponse)
async def run_assessment(
    assessment_id: uuid.UUID,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AssessmentService, Depends(get_assessment_service)],
    request: RunAssessmentRequest | None = None,
) -> AssessmentResponse:
    """Execute an assessment and return it in its terminal state.

    Args:
        assessment_id: The assessment UUID.
        context: Caller context from headers.
        service: Injected AssessmentService.
        request: Optional run options; defaults apply when omitted.

    Returns:
        The completed assessment.
    """
    options = request or RunAssessmentRequest()
    logger.info(
        "POST /assessments/{id}/run",
        tenant_id=context.tenant_id,
        assessment_id=str(assessment_id),
        use_ai=options.use_ai,
    )
    return await service.run_assessment(context, assessment_id, options)


@router.post("/assessments/{assessment_id}/cancel", response_model=AssessmentResponse)
async def cancel_assessment(
    assessment_id: uuid.UUID,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AssessmentService, Depends(get_assessment_service)],
) -> AssessmentResponse:
    return await service.cancel_assessment(context, assessment_id)


@router.post("/assessments/{assessment_id}/review", response_model=AssessmentResponse)
async def review_assessment(
    assessment_id: uuid.UUID,
    request: AssessmentReviewRequest,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AssessmentService, Depends(get_assessment_service)],
) -> AssessmentResponse:
    return await service.review_assessment(context, assessment_id, request.review_notes)


@router.post("/assessments/{assessment_id}/recalculate", response_model=AssessmentResponse)
async def recalculate_assessment_score(
    assessment_id: uuid.UUID,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AssessmentService, Depends(get_assessment_service)],
) -> AssessmentResponse:
    """Recompute a completed assessment's counters, score and risk from its findings."""
    return await service.recalculate_score(context, assessment_id)


@router.get("/assessments/{assessment_id}/findings", response_model=FindingListResponse)
async def get_findings(
    assessment_id: uuid.UUID,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AssessmentService, Depends(get_assessment_service)],
    finding_status: FindingStatus | None = Query(default=None, alias="status"),
    severity: FindingSeverity | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=100),
) -> FindingListResponse:
    """List an assessment's findings, most severe first."""
    return await service.get_findings(
        context.tenant_id,
        assessment_id,
        status=finding_status,
        severity=severity,
        page=page,
        page_size=page_size,
    )


@router.patch("/findings/{finding_id}", response_model=FindingResponse)
async def update_finding(
    finding_id: uuid.UUID,
    request: FindingUpdateRequest,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AssessmentService, Depends(get_assessment_service)],
) -> FindingResponse:
    """Apply a human override to a finding; marks it human-verified."""
    return await service.update_finding(context, finding_id, request)


# ---------------------------------------------------------------------------
# AI system registry endpoints
# ---------------------------------------------------------------------------


@router.post("/ai-systems", response_model=AISystemResponse, status_code=status.HTTP_201_CREATED)
async def register_ai_system(
    request: RegisterAISystemRequest,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AISystemRegistryService, Depends(get_ai_system_service)],
) -> AISystemResponse:
    """Register an AI system. Requires the aiAct module to be active."""
    logger.info("POST /ai-systems", tenant_id=context.tenant_id, system_id=request.system_id)
    return await service.register_system(context, request)


@router.get("/ai-systems", response_model=AISystemListResponse)
async def list_ai_systems(
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AISystemRegistryService, Depends(get_ai_system_service)],
    risk_classification: str | None = Query(default=None),
    system_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> AISystemListResponse:
    return await service.list_systems(
        context.tenant_id,
        risk_classification=risk_classification,
        status=system_status,
        limit=limit,
        offset=offset,
    )


@router.get("/ai-systems/{system_id}", response_model=AISystemResponse)
async def get_ai_system(
    system_id: str,
    context: Annotated[ServiceContext, Depends(get_context)],
    service: Annotated[AISystemRegistryService, Depends(get_ai_system_service)],
) -> AISystemResponse:
    """Get an AI system by row UUID or by its system_id."""
    return await service.get_system(context.tenant_id, system_id)
