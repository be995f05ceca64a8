"""Core business logic services for the compliance engine.

Service classes:
- ComplianceConfigService: per-tenant configuration, toggles, audit trail
- GateEvaluator: read-only "is this capability active" checks and guards
- FrameworkCatalogService: read-only framework and control browsing
- AssessmentService: assessment lifecycle and run orchestration
- AISystemRegistryService: EU AI Act system registry

All services are async-first. They receive the store handle (and, for the
assessment engine, the control evaluator) through their constructors, contain
no framework code, and open exactly one store transaction per state-changing
operation. Errors propagate to the caller as ComplianceEngineError subclasses.
"""

import asyncio
import time
import uuid
from datetime import UTC, datetime
from typing import Any

from nexus_compliance_engine.api.schemas import (
    AISystemListResponse,
    AISystemResponse,
    AssessmentListResponse,
    AssessmentResponse,
    ComplianceConfigResponse,
    ConfigAuditEntryResponse,
    ConfigAuditLogResponse,
    ControlListResponse,
    ControlResponse,
    CreateAssessmentRequest,
    FeatureStatusResponse,
    FindingListResponse,
    FindingResponse,
    FindingUpdateRequest,
    FrameworkListResponse,
    FrameworkResponse,
    RegisterAISystemRequest,
    RunAssessmentRequest,
    ToggleMasterRequest,
    ToggleModuleRequest,
)
from nexus_compliance_engine.core.context import ServiceContext
from nexus_compliance_engine.core.interfaces import (
    ConfigAuditDraft,
    ControlDefinition,
    EvaluationOutcome,
    FindingDraft,
    IComplianceStore,
    IControlEvaluator,
    IStoreTransaction,
    TargetSystemContext,
)
from nexus_compliance_engine.core.models import (
    ASSESSMENT_CANCELLED,
    ASSESSMENT_COMPLETED,
    ASSESSMENT_FAILED,
    ASSESSMENT_IN_PROGRESS,
    ASSESSMENT_PENDING,
    FINDING_COMPLIANT,
    FINDING_NON_COMPLIANT,
    FINDING_NOT_ASSESSED,
    FINDING_PARTIAL,
    FINDING_SEVERITIES,
    FINDING_STATUSES,
    AISystem,
    ComplianceAssessment,
    ComplianceConfig,
    ComplianceConfigAudit,
    ComplianceControl,
    ComplianceFramework,
    ControlFinding,
)
from nexus_compliance_engine.core.modules import DEFAULT_MODULE_CONFIG, ComplianceModule, ModuleConfigMap
from nexus_compliance_engine.core.scoring import DEFAULT_RISK_THRESHOLDS, RiskThresholds, summarize
from nexus_compliance_engine.errors import (
    AssessmentTimeoutError,
    ComplianceEngineError,
    EvaluatorError,
    EvaluatorUnavailableError,
    InvalidStateError,
    ModuleDisabledError,
    NotFoundError,
    ValidationError,
)
from nexus_compliance_engine.observability import get_logger

logger = get_logger(__name__)

# Statuses from which an assessment may be (re)run or cancelled
_RUNNABLE_STATUSES = (ASSESSMENT_PENDING, ASSESSMENT_FAILED)

# Finding columns a human override may not set to null
_REQUIRED_FINDING_FIELDS = ("status", "remediation_status", "evidence_urls")

ASSESSMENT_SORT_FIELDS = ("created_at", "updated_at", "overall_score", "status")

# Reasons recorded on findings the evaluator never judged
_AI_DISABLED_REASONING = "AI-assisted evaluation disabled for this run; manual assessment required"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Configuration store
# ---------------------------------------------------------------------------


class ComplianceConfigService:
    """Per-tenant compliance configuration with an append-only audit trail.

    Every toggle runs read-modify-write-audit under a row lock on the tenant's
    config row, inside one transaction, so concurrent toggles never lose an
    update and each committed toggle has exactly one audit row.

    Args:
        store: Store handle.
        min_reason_length: Minimum length of a toggle justification (after stripping).
    """

    def __init__(self, store: IComplianceStore, min_reason_length: int = 10) -> None:
        """Initialize ComplianceConfigService.

        Args:
            store: Store handle used to open transactions.
            min_reason_length: Minimum accepted change reason length.
        """
        self._store = store
        self._min_reason_length = min_reason_length

    async def get_config(self, tenant_id: str) -> ComplianceConfigResponse:
        """Return the tenant's configuration, creating the default on first read.

        Implicit creation writes no audit row.

        Args:
            tenant_id: Owning tenant.

        Returns:
            The ComplianceConfigResponse.

        Raises:
            StorageError: If the store fails.
        """
        config = await self._load(tenant_id)
        return _config_to_response(config)

    async def toggle_master(self, context: ServiceContext, request: ToggleMasterRequest) -> ComplianceConfigResponse:
        """Flip the tenant master switch.

        When the tenant has no config yet the row is created with the requested
        master value and the audit action is CREATE.

        Args:
            context: Caller identity and provenance.
            request: New master value and justification.

        Returns:
            The updated ComplianceConfigResponse.

        Raises:
            ValidationError: If the reason is too short.
            StorageError: If the store fails; nothing is persisted.
        """
        self._validate_reason(request.reason)

        async with self._store.transaction() as tx:
            config, created = await tx.configs.get_or_create(
                context.tenant_id,
                DEFAULT_MODULE_CONFIG.to_json(),
                for_update=True,
            )
            previous_master = config.master_enabled
            config = await tx.configs.update(config.id, context.tenant_id, {"master_enabled": request.enabled})

            if created:
                draft = self._audit_draft(
                    context,
                    config,
                    action="CREATE",
                    reason=request.reason,
                    previous_state=None,
                    new_state={"masterEnabled": request.enabled, "moduleConfig": config.module_config},
                    module_affected="master",
                    feature_affected="enabled",
                    previous_value=None,
                    new_value=request.enabled,
                )
            else:
                draft = self._audit_draft(
                    context,
                    config,
                    action="TOGGLE_MASTER",
                    reason=request.reason,
                    previous_state={"masterEnabled": previous_master},
                    new_state={"masterEnabled": request.enabled},
                    module_affected="master",
                    feature_affected="enabled",
                    previous_value=previous_master,
                    new_value=request.enabled,
                )
            await tx.config_audits.append(draft)

        logger.info(
            "Master compliance toggle changed",
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            enabled=request.enabled,
            created=created,
            request_id=context.request_id,
        )
        return _config_to_response(config)

    async def toggle_module(self, context: ServiceContext, request: ToggleModuleRequest) -> ComplianceConfigResponse:
        """Toggle a module switch, or one feature flag of a module.

        A tenant without a config row gets the default one created under the
        same lock before the toggle is applied.

        Args:
            context: Caller identity and provenance.
            request: Module, optional feature, new value and justification.

        Returns:
            The updated ComplianceConfigResponse.

        Raises:
            ValidationError: If the reason is too short.
            InvalidFeatureError: If the feature is not part of the module; nothing is persisted.
            StorageError: If the store fails; nothing is persisted.
        """
        self._validate_reason(request.reason)
        module = _resolve_module(request.module)

        async with self._store.transaction() as tx:
            config, created = await tx.configs.get_or_create(
                context.tenant_id,
                DEFAULT_MODULE_CONFIG.to_json(),
                for_update=True,
            )
            previous_map = ModuleConfigMap.from_json(config.module_config)
            previous_value = previous_map.flag_value(module, request.feature)

            if request.feature is not None:
                new_map = previous_map.with_feature_enabled(module, request.feature, request.enabled)
            else:
                new_map = previous_map.with_module_enabled(module, request.enabled)

            config = await tx.configs.update(config.id, context.tenant_id, {"module_config": new_map.to_json()})
            await tx.config_audits.append(
                self._audit_draft(
                    context,
                    config,
                    action="TOGGLE_FEATURE" if request.feature is not None else "TOGGLE_MODULE",
                    reason=request.reason,
                    previous_state=previous_map.to_json(),
                    new_state=new_map.to_json(),
                    module_affected=module.value,
                    feature_affected=request.feature or "enabled",
                    previous_value=previous_value,
                    new_value=request.enabled,
                )
            )

        if created:
            logger.info("Default compliance config created by module toggle", tenant_id=context.tenant_id)
        logger.info(
            "Compliance module toggle changed",
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            module=module.value,
            feature=request.feature,
            enabled=request.enabled,
            request_id=context.request_id,
        )
        return _config_to_response(config)

    async def is_enabled(self, tenant_id: str, module: ComplianceModule, feature: str | None = None) -> bool:
        """Whether a module (and optionally one of its features) is active.

        Active means master AND module AND feature. Unknown features are
        reported as inactive rather than raising.

        Raises:
            ValidationError: If the module is not a known compliance module.
        """
        module = _resolve_module(module)
        config = await self._load(tenant_id)
        if not config.master_enabled:
            return False

        settings = ModuleConfigMap.from_json(config.module_config).get(module)
        if not settings.enabled:
            return False
        if feature is None:
            return True
        return settings.feature_enabled(feature)

    async def get_audit_log(
        self,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
        action: str | None = None,
        module: str | None = None,
    ) -> ConfigAuditLogResponse:
        """Return a page of the tenant's configuration audit trail, newest first.

        Args:
            tenant_id: Owning tenant.
            limit: Page size.
            offset: Rows to skip.
            action: Optional action filter.
            module: Optional module_affected filter.

        Returns:
            ConfigAuditLogResponse with the page and the unpaged total.
        """
        async with self._store.transaction() as tx:
            entries, total = await tx.config_audits.query(
                tenant_id,
                action=action,
                module=module,
                limit=limit,
                offset=offset,
            )
        return ConfigAuditLogResponse(
            entries=[_audit_to_response(entry) for entry in entries],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def _load(self, tenant_id: str) -> ComplianceConfig:
        async with self._store.transaction() as tx:
            config, created = await tx.configs.get_or_create(tenant_id, DEFAULT_MODULE_CONFIG.to_json())
        if created:
            logger.info("Created default compliance config", tenant_id=tenant_id, config_id=str(config.id))
        return config

    def _validate_reason(self, reason: str) -> None:
        if len(reason.strip()) < self._min_reason_length:
            raise ValidationError(
                message=f"Change reason must be at least {self._min_reason_length} characters",
                field="reason",
            )

    @staticmethod
    def _audit_draft(
        context: ServiceContext,
        config: ComplianceConfig,
        action: str,
        reason: str,
        previous_state: dict[str, Any] | None,
        new_state: dict[str, Any],
        module_affected: str,
        feature_affected: str,
        previous_value: bool | None,
        new_value: bool,
    ) -> ConfigAuditDraft:
        return ConfigAuditDraft(
            config_id=config.id,
            tenant_id=context.tenant_id,
            action=action,
            changed_by=context.user_id,
            change_reason=reason,
            previous_state=previous_state,
            new_state=new_state,
            module_affected=module_affected,
            feature_affected=feature_affected,
            previous_value=previous_value,
            new_value=new_value,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            session_id=context.session_id,
            request_id=context.request_id,
        )


class GateEvaluator:
    """Answers whether a compliance capability is active for a tenant.

    Read-only; delegates to the configuration store. Repeated calls without an
    intervening toggle return the same answer.
    """

    def __init__(self, config_service: ComplianceConfigService) -> None:
        self._config_service = config_service

    async def is_enabled(self, tenant_id: str, module: ComplianceModule, feature: str | None = None) -> bool:
        return await self._config_service.is_enabled(tenant_id, module, feature)

    async def feature_status(
        self,
        tenant_id: str,
        module: ComplianceModule,
        feature: str | None = None,
    ) -> FeatureStatusResponse:
        module = _resolve_module(module)
        enabled = await self.is_enabled(tenant_id, module, feature)
        return FeatureStatusResponse(module=module.value, feature=feature, enabled=enabled)

    async def require_enabled(self, tenant_id: str, module: ComplianceModule, feature: str | None = None) -> None:
        """Guard a gated operation.

        Raises:
            ModuleDisabledError: If the module or feature is not active for the tenant.
            ValidationError: If the module is not a known compliance module.
        """
        module = _resolve_module(module)
        if not await self.is_enabled(tenant_id, module, feature):
            logger.info("Gated capability rejected", tenant_id=tenant_id, module=module.value, feature=feature)
            raise ModuleDisabledError(module=module.value, feature=feature)


# ---------------------------------------------------------------------------
# Control catalog
# ---------------------------------------------------------------------------


class FrameworkCatalogService:
    """Read-only browsing of regulatory frameworks and their controls."""

    def __init__(self, store: IComplianceStore) -> None:
        self._store = store

    async def list_frameworks(
        self,
        category: str | None = None,
        jurisdiction: str | None = None,
        is_active: bool | None = True,
        limit: int = 50,
        offset: int = 0,
    ) -> FrameworkListResponse:
        async with self._store.transaction() as tx:
            frameworks, total = await tx.catalog.list_frameworks(
                category=category,
                jurisdiction=jurisdiction,
                is_active=is_active,
                limit=limit,
                offset=offset,
            )
        return FrameworkListResponse(items=[_framework_to_response(f) for f in frameworks], total=total)

    async def get_framework(self, framework_id: str) -> FrameworkResponse:
        """Return one framework.

        Raises:
            NotFoundError: If the framework does not exist.
        """
        async with self._store.transaction() as tx:
            framework = await tx.catalog.get_framework(framework_id)
        return _framework_to_response(framework)

    async def list_controls(
        self,
        framework_id: str,
        domain: str | None = None,
        risk_category: str | None = None,
        automated_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> ControlListResponse:
        """List a framework's controls, highest priority first.

        Raises:
            NotFoundError: If the framework does not exist.
        """
        async with self._store.transaction() as tx:
            await tx.catalog.get_framework(framework_id)
            controls, total = await tx.catalog.search_controls(
                framework_id,
                domain=domain,
                risk_category=risk_category,
                automated_only=automated_only,
                limit=limit,
                offset=offset,
            )
        return ControlListResponse(items=[_control_to_response(c) for c in controls], total=total)


# ---------------------------------------------------------------------------
# Assessment engine
# ---------------------------------------------------------------------------


class AssessmentService:
    """Assessment lifecycle: create, run, review, cancel, and finding overrides.

    State machine: pending -> in_progress -> completed | failed, with cancelled
    reachable from pending or failed. A run executes inside one transaction
    that holds the assessment's row lock, so findings and the terminal state
    commit together or not at all.

    Args:
        store: Store handle.
        evaluator: Per-control evaluator.
        ai_enabled: Service-wide AI switch; when off every control is not_assessed.
        default_model: Model recorded when a run requests none.
        control_timeout_seconds: Timeout for a single evaluator call.
        run_timeout_seconds: Global deadline for one run.
        risk_thresholds: Score-to-risk policy.
    """

    def __init__(
        self,
        store: IComplianceStore,
        evaluator: IControlEvaluator,
        ai_enabled: bool = True,
        default_model: str | None = None,
        control_timeout_seconds: float = 30.0,
        run_timeout_seconds: float = 600.0,
        risk_thresholds: RiskThresholds = DEFAULT_RISK_THRESHOLDS,
    ) -> None:
        """Initialize AssessmentService with its collaborators and run policy."""
        self._store = store
        self._evaluator = evaluator
        self._ai_enabled = ai_enabled
        self._default_model = default_model
        self._control_timeout = control_timeout_seconds
        self._run_timeout = run_timeout_seconds
        self._risk_thresholds = risk_thresholds

    async def create_assessment(
        self,
        context: ServiceContext,
        request: CreateAssessmentRequest,
    ) -> AssessmentResponse:
        """Create a pending assessment.

        Raises:
            NotFoundError: If the framework does not exist or is inactive.
        """
        async with self._store.transaction() as tx:
            framework = await tx.catalog.get_framework(request.framework_id)
            if not framework.is_active:
                raise NotFoundError(resource="ComplianceFramework", resource_id=request.framework_id)

            assessment = await tx.assessments.create(
                tenant_id=context.tenant_id,
                framework_id=request.framework_id,
                target_system_id=request.target_system_id,
                target_system_name=request.target_system_name,
                target_system_description=request.target_system_description,
                scope=list(request.scope),
                excluded_controls=list(request.excluded_controls),
            )

        logger.info(
            "Assessment created",
            assessment_id=str(assessment.id),
            tenant_id=context.tenant_id,
            framework_id=request.framework_id,
            target_system_id=request.target_system_id,
            request_id=context.request_id,
        )
        return _assessment_to_response(assessment)

    async def get_assessment(self, tenant_id: str, assessment_id: uuid.UUID) -> AssessmentResponse:
        async with self._store.transaction() as tx:
            assessment = await tx.assessments.get_by_id(assessment_id, tenant_id)
        return _assessment_to_response(assessment)

    async def list_assessments(
        self,
        tenant_id: str,
        framework_id: str | None = None,
        target_system_id: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> AssessmentListResponse:
        """List a tenant's assessments.

        Unknown sort fields fall back to created_at.
        """
        if sort_by not in ASSESSMENT_SORT_FIELDS:
            sort_by = "created_at"
        if sort_order not in ("asc", "desc"):
            sort_order = "desc"

        async with self._store.transaction() as tx:
            assessments, total = await tx.assessments.list_all(
                tenant_id,
                framework_id=framework_id,
                target_system_id=target_system_id,
                status=status,
                page=page,
                page_size=page_size,
                sort_by=sort_by,
                sort_order=sort_order,
            )
        return AssessmentListResponse(
            items=[_assessment_to_response(a) for a in assessments],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def run_assessment(
        self,
        context: ServiceContext,
        assessment_id: uuid.UUID,
        request: RunAssessmentRequest,
    ) -> AssessmentResponse:
        """Execute an assessment: evaluate every applicable control, then score.

        Steps, all inside one transaction holding the assessment row lock:
        1. check the status is runnable and mark the assessment in_progress;
        2. resolve the controls from the catalog (scope, exclusions);
        3. evaluate each control and insert exactly one finding per control;
        4. aggregate the findings into counters, score and risk level;
        5. mark the assessment completed.

        Steps 2-5 run inside a savepoint. A failure rolls back to it, so no
        findings are kept, and the assessment is marked failed before the row
        lock is released. A caller that waited on the lock while another run
        started is rejected with InvalidStateError rather than running again.

        Args:
            context: Caller identity and provenance.
            assessment_id: Assessment to run.
            request: Run options.

        Returns:
            The completed AssessmentResponse.

        Raises:
            NotFoundError: If the assessment does not exist for the tenant.
            InvalidStateError: If the assessment is not pending or failed, or
                another run started while this call waited for the row lock.
            EvaluatorUnavailableError: If the evaluator cannot serve the run.
            AssessmentTimeoutError: If the run exceeds its global deadline.
            StorageError: If the store fails.
        """
        log = logger.bind(
            assessment_id=str(assessment_id),
            tenant_id=context.tenant_id,
            request_id=context.request_id,
        )
        started = False
        failure: Exception | None = None
        start_time = time.monotonic()

        try:
            async with self._store.transaction() as tx:
                seen = await tx.assessments.get_by_id(assessment_id, context.tenant_id)
                seen_status, seen_started_at = seen.status, seen.started_at

                assessment = await tx.assessments.get_by_id(assessment_id, context.tenant_id, for_update=True)
                if assessment.status not in _RUNNABLE_STATUSES:
                    raise InvalidStateError(
                        message=f"Assessment cannot be run in status: {assessment.status}",
                        current_status=assessment.status,
                    )
                if seen_status not in _RUNNABLE_STATUSES or assessment.started_at != seen_started_at:
                    raise InvalidStateError(
                        message=f"Assessment was run concurrently; current status: {assessment.status}",
                        current_status=assessment.status,
                    )
                started = True
                assessment = await tx.assessments.update(
                    assessment_id,
                    context.tenant_id,
                    {"status": ASSESSMENT_IN_PROGRESS, "started_at": _utcnow(), "failure_reason": None},
                )
                log.info("Assessment run started", framework_id=assessment.framework_id, use_ai=request.use_ai)

                try:
                    async with tx.savepoint():
                        try:
                            assessment = await asyncio.wait_for(
                                self._execute_run(tx, context, assessment, request),
                                timeout=self._run_timeout,
                            )
                        except TimeoutError:
                            raise AssessmentTimeoutError(
                                f"Assessment run exceeded its deadline of {self._run_timeout}s"
                            ) from None
                except Exception as exc:
                    failure = exc
                    await tx.assessments.update(
                        assessment_id,
                        context.tenant_id,
                        {"status": ASSESSMENT_FAILED, "failure_reason": _failure_reason(exc)[:2000]},
                    )
        except Exception as exc:
            if started:
                await self._record_failure(context, assessment_id, _failure_reason(failure or exc))
            raise

        if failure is not None:
            log.warning(
                "Assessment run failed",
                reason=_failure_reason(failure),
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
            raise failure

        log.info(
            "Assessment completed",
            overall_score=assessment.overall_score,
            risk_level=assessment.risk_level,
            controls_assessed=assessment.total_controls_assessed,
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
        )
        return _assessment_to_response(assessment)

    async def _execute_run(
        self,
        tx: IStoreTransaction,
        context: ServiceContext,
        assessment: ComplianceAssessment,
        request: RunAssessmentRequest,
    ) -> ComplianceAssessment:
        controls = await tx.catalog.list_controls(
            assessment.framework_id,
            domains=list(assessment.scope or []),
            exclude_ids=list(assessment.excluded_controls or []),
        )
        # Stable sort keeps catalog order for equal priorities
        controls = sorted(controls, key=lambda c: -c.implementation_priority)

        use_evaluator = self._ai_enabled and request.use_ai
        model = (request.ai_model or self._default_model) if use_evaluator else None
        target = TargetSystemContext(
            system_id=assessment.target_system_id,
            name=assessment.target_system_name,
            description=assessment.target_system_description,
        )

        drafts: list[FindingDraft] = []
        for control in controls:
            if use_evaluator:
                outcome = await self._evaluate_control(control, target, model)
            else:
                outcome = EvaluationOutcome(
                    status=FINDING_NOT_ASSESSED,
                    narrative="Not assessed",
                    confidence=0.0,
                    reasoning=_AI_DISABLED_REASONING,
                )
            drafts.append(_draft_from_outcome(control, outcome, request.include_recommendations))

        await tx.findings.create_many(assessment.id, context.tenant_id, drafts)

        summary = summarize(((d.status, d.severity) for d in drafts), self._risk_thresholds)
        ai_confidence = None
        if use_evaluator and drafts:
            ai_confidence = round(sum(d.ai_confidence for d in drafts) / len(drafts), 2)

        values: dict[str, Any] = summary.assessment_values()
        values.update(
            status=ASSESSMENT_COMPLETED,
            completed_at=_utcnow(),
            total_controls_assessed=len(controls),
            ai_model_used=model,
            ai_confidence=ai_confidence,
        )
        return await tx.assessments.update(assessment.id, context.tenant_id, values)

    async def _evaluate_control(
        self,
        control: ControlDefinition,
        target: TargetSystemContext,
        model: str | None,
    ) -> EvaluationOutcome:
        """Evaluate one control, recording per-control failures as not_assessed.

        Raises:
            EvaluatorUnavailableError: Systemic evaluator failure; aborts the run.
        """
        try:
            outcome = await asyncio.wait_for(
                self._evaluator.evaluate(control, target, use_ai=True, model=model),
                timeout=self._control_timeout,
            )
            _validate_outcome(control, outcome)
        except EvaluatorUnavailableError:
            raise
        except EvaluatorError as exc:
            logger.warning("Control evaluation failed", control_id=control.id, error=exc.message)
            return EvaluationOutcome(
                status=FINDING_NOT_ASSESSED,
                narrative="Evaluation failed",
                confidence=0.0,
                reasoning=f"Evaluator error: {exc.message}",
            )
        except TimeoutError:
            logger.warning("Control evaluation timed out", control_id=control.id, timeout=self._control_timeout)
            return EvaluationOutcome(
                status=FINDING_NOT_ASSESSED,
                narrative="Evaluation timed out",
                confidence=0.0,
                reasoning=f"Evaluator timed out after {self._control_timeout}s",
            )
        return outcome

    async def _record_failure(self, context: ServiceContext, assessment_id: uuid.UUID, reason: str) -> None:
        """Mark an assessment failed when its run transaction could not commit at all."""
        try:
            async with self._store.transaction() as tx:
                assessment = await tx.assessments.get_by_id(assessment_id, context.tenant_id, for_update=True)
                if assessment.status not in _RUNNABLE_STATUSES:
                    return
                await tx.assessments.update(
                    assessment_id,
                    context.tenant_id,
                    {"status": ASSESSMENT_FAILED, "failure_reason": reason[:2000]},
                )
        except ComplianceEngineError as exc:
            logger.error(
                "Could not record assessment failure",
                assessment_id=str(assessment_id),
                tenant_id=context.tenant_id,
                error=exc.message,
            )
            return
        logger.warning(
            "Assessment run failed",
            assessment_id=str(assessment_id),
            tenant_id=context.tenant_id,
            reason=reason,
            request_id=context.request_id,
        )

    async def get_findings(
        self,
        tenant_id: str,
        assessment_id: uuid.UUID,
        status: str | None = None,
        severity: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> FindingListResponse:
        """Return a page of an assessment's findings, most severe first.

        Raises:
            NotFoundError: If the assessment does not exist for the tenant.
        """
        async with self._store.transaction() as tx:
            await tx.assessments.get_by_id(assessment_id, tenant_id)
            findings, total = await tx.findings.list_by_assessment(
                assessment_id,
                tenant_id,
                status=status,
                severity=severity,
                page=page,
                page_size=page_size,
            )
        return FindingListResponse(
            items=[_finding_to_response(f) for f in findings],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def update_finding(
        self,
        context: ServiceContext,
        finding_id: uuid.UUID,
        request: FindingUpdateRequest,
    ) -> FindingResponse:
        """Apply a human override to a finding and mark it human-verified.

        The parent assessment's aggregates are not recomputed; use
        recalculate_score for that.

        An explicit null clears a nullable field, e.g. severity when a finding
        is overridden to compliant.

        Raises:
            ValidationError: If the request sets no fields, or sets a required
                field to null.
            NotFoundError: If the finding does not exist for the tenant.
        """
        values = request.model_dump(exclude_unset=True)
        if not values:
            raise ValidationError(message="No valid fields to update")
        for field in _REQUIRED_FINDING_FIELDS:
            if field in values and values[field] is None:
                raise ValidationError(message=f"Finding field cannot be null: {field}", field=field)

        values.update(human_verified=True, verified_by=context.user_id, verified_at=_utcnow())

        async with self._store.transaction() as tx:
            await tx.findings.get_by_id(finding_id, context.tenant_id, for_update=True)
            finding = await tx.findings.update(finding_id, context.tenant_id, values)

        logger.info(
            "Finding updated",
            finding_id=str(finding_id),
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            fields=sorted(k for k in values if k not in ("human_verified", "verified_by", "verified_at")),
        )
        return _finding_to_response(finding)

    async def recalculate_score(self, context: ServiceContext, assessment_id: uuid.UUID) -> AssessmentResponse:
        """Recompute a completed assessment's aggregates from its current findings.

        Raises:
            NotFoundError: If the assessment does not exist for the tenant.
            InvalidStateError: If the assessment is not completed.
        """
        async with self._store.transaction() as tx:
            assessment = await tx.assessments.get_by_id(assessment_id, context.tenant_id, for_update=True)
            if assessment.status != ASSESSMENT_COMPLETED:
                raise InvalidStateError(
                    message=f"Only completed assessments can be rescored, not {assessment.status}",
                    current_status=assessment.status,
                )
            findings = await tx.findings.all_for_assessment(assessment_id, context.tenant_id)
            summary = summarize(((f.status, f.severity) for f in findings), self._risk_thresholds)
            values: dict[str, Any] = summary.assessment_values()
            values["total_controls_assessed"] = len(findings)
            assessment = await tx.assessments.update(assessment_id, context.tenant_id, values)

        logger.info(
            "Assessment score recalculated",
            assessment_id=str(assessment_id),
            tenant_id=context.tenant_id,
            overall_score=summary.score,
            risk_level=summary.risk_level,
        )
        return _assessment_to_response(assessment)

    async def review_assessment(
        self,
        context: ServiceContext,
        assessment_id: uuid.UUID,
        review_notes: str,
    ) -> AssessmentResponse:
        """Record a human review on a completed assessment.

        Raises:
            NotFoundError: If the assessment does not exist for the tenant.
            InvalidStateError: If the assessment is not completed.
        """
        async with self._store.transaction() as tx:
            assessment = await tx.assessments.get_by_id(assessment_id, context.tenant_id, for_update=True)
            if assessment.status != ASSESSMENT_COMPLETED:
                raise InvalidStateError(
                    message=f"Only completed assessments can be reviewed, not {assessment.status}",
                    current_status=assessment.status,
                )
            assessment = await tx.assessments.update(
                assessment_id,
                context.tenant_id,
                {
                    "human_reviewed": True,
                    "reviewer_id": context.user_id,
                    "review_notes": review_notes,
                    "reviewed_at": _utcnow(),
                },
            )

        logger.info("Assessment reviewed", assessment_id=str(assessment_id), reviewer_id=context.user_id)
        return _assessment_to_response(assessment)

    async def cancel_assessment(self, context: ServiceContext, assessment_id: uuid.UUID) -> AssessmentResponse:
        """Cancel a pending or failed assessment.

        Raises:
            NotFoundError: If the assessment does not exist for the tenant.
            InvalidStateError: If the assessment is in_progress, completed or already cancelled.
        """
        async with self._store.transaction() as tx:
            assessment = await tx.assessments.get_by_id(assessment_id, context.tenant_id, for_update=True)
            if assessment.status not in _RUNNABLE_STATUSES:
                raise InvalidStateError(
                    message=f"Assessment cannot be cancelled in status: {assessment.status}",
                    current_status=assessment.status,
                )
            assessment = await tx.assessments.update(
                assessment_id,
                context.tenant_id,
                {"status": ASSESSMENT_CANCELLED},
            )

        logger.info("Assessment cancelled", assessment_id=str(assessment_id), user_id=context.user_id)
        return _assessment_to_response(assessment)


def _resolve_module(module: ComplianceModule | str) -> ComplianceModule:
    try:
        return ComplianceModule(module)
    except ValueError:
        raise ValidationError(message=f"Unknown compliance module: {module}", field="module") from None


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, ComplianceEngineError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"


def _validate_outcome(control: ControlDefinition, outcome: EvaluationOutcome) -> None:
    """Reject evaluator output outside the finding vocabulary.

    Raises:
        EvaluatorError: If status, severity or confidence is invalid.
    """
    if outcome.status not in FINDING_STATUSES:
        raise EvaluatorError(f"Unknown finding status '{outcome.status}'", control_id=control.id)
    if outcome.severity is not None and outcome.severity not in FINDING_SEVERITIES:
        raise EvaluatorError(f"Unknown finding severity '{outcome.severity}'", control_id=control.id)
    if not 0.0 <= outcome.confidence <= 1.0:
        raise EvaluatorError(f"Confidence {outcome.confidence} outside [0, 1]", control_id=control.id)


def _draft_from_outcome(
    control: ControlDefinition,
    outcome: EvaluationOutcome,
    include_recommendations: bool,
) -> FindingDraft:
    needs_remediation = outcome.status in (FINDING_NON_COMPLIANT, FINDING_PARTIAL)
    judged_gap = outcome.status != FINDING_COMPLIANT
    return FindingDraft(
        control_id=control.id,
        status=outcome.status,
        severity=outcome.severity,
        finding_title=f"{control.title} - {outcome.status}" if judged_gap else None,
        finding_description=f"Review and remediate {control.control_number}" if judged_gap else None,
        ai_assessment=outcome.narrative,
        ai_confidence=outcome.confidence,
        ai_reasoning=outcome.reasoning,
        remediation_required=needs_remediation,
        remediation_status="pending" if needs_remediation else "not_required",
        remediation_plan=outcome.reasoning if needs_remediation and include_recommendations else None,
        evidence=list(outcome.evidence),
    )


# ---------------------------------------------------------------------------
# AI system registry
# ---------------------------------------------------------------------------


class AISystemRegistryService:
    """EU AI Act system registry, gated on the aiAct module."""

    def __init__(self, store: IComplianceStore, gate: GateEvaluator) -> None:
        self._store = store
        self._gate = gate

    async def register_system(self, context: ServiceContext, request: RegisterAISystemRequest) -> AISystemResponse:
        """Register an AI system for the tenant.

        Raises:
            ModuleDisabledError: If the aiAct module is not active for the tenant.
            ConflictError: If the tenant already registered the same system_id.
        """
        await self._gate.require_enabled(context.tenant_id, ComplianceModule.AI_ACT)

        values = request.model_dump()
        values["system_metadata"] = values.pop("metadata")
        async with self._store.transaction() as tx:
            system = await tx.ai_systems.create(context.tenant_id, values)

        logger.info(
            "AI system registered",
            tenant_id=context.tenant_id,
            system_id=request.system_id,
            risk_classification=request.risk_classification,
            request_id=context.request_id,
        )
        return _ai_system_to_response(system)

    async def get_system(self, tenant_id: str, identifier: str) -> AISystemResponse:
        async with self._store.transaction() as tx:
            system = await tx.ai_systems.get(tenant_id, identifier)
        return _ai_system_to_response(system)

    async def list_systems(
        self,
        tenant_id: str,
        risk_classification: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> AISystemListResponse:
        async with self._store.transaction() as tx:
            systems, total = await tx.ai_systems.list_all(
                tenant_id,
                risk_classification=risk_classification,
                status=status,
                limit=limit,
                offset=offset,
            )
        return AISystemListResponse(
            items=[_ai_system_to_response(s) for s in systems],
            total=total,
            limit=limit,
            offset=offset,
        )


# ---------------------------------------------------------------------------
# Private response mappers: ORM model → Pydantic response schema
# ---------------------------------------------------------------------------


def _config_to_response(config: ComplianceConfig) -> ComplianceConfigResponse:
    """Convert a ComplianceConfig ORM model to a response schema.

    The module map is normalized through ModuleConfigMap so the response
    always carries the complete closed structure.
    """
    return ComplianceConfigResponse(
        id=config.id,
        tenant_id=config.tenant_id,
        master_enabled=config.master_enabled,
        modules=ModuleConfigMap.from_json(config.module_config).to_json(),
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


def _audit_to_response(entry: ComplianceConfigAudit) -> ConfigAuditEntryResponse:
    return ConfigAuditEntryResponse(
        id=entry.id,
        config_id=entry.config_id,
        tenant_id=entry.tenant_id,
        action=entry.action,
        changed_by=entry.changed_by,
        change_reason=entry.change_reason,
        previous_state=entry.previous_state,
        new_state=entry.new_state,
        module_affected=entry.module_affected,
        feature_affected=entry.feature_affected,
        previous_value=entry.previous_value,
        new_value=entry.new_value,
        ip_address=str(entry.ip_address) if entry.ip_address is not None else None,
        user_agent=entry.user_agent,
        session_id=entry.session_id,
        request_id=entry.request_id,
        created_at=entry.created_at,
    )


def _framework_to_response(framework: ComplianceFramework) -> FrameworkResponse:
    return FrameworkResponse.model_validate(framework, from_attributes=True)


def _control_to_response(control: ComplianceControl) -> ControlResponse:
    return ControlResponse.model_validate(control, from_attributes=True)


def _assessment_to_response(assessment: ComplianceAssessment) -> AssessmentResponse:
    """Convert a ComplianceAssessment ORM model to a response schema."""
    return AssessmentResponse.model_validate(assessment, from_attributes=True)


def _finding_to_response(finding: ControlFinding) -> FindingResponse:
    """Convert a ControlFinding ORM model to a response schema."""
    return FindingResponse.model_validate(finding, from_attributes=True)


def _ai_system_to_response(system: AISystem) -> AISystemResponse:
    return AISystemResponse(
        id=system.id,
        tenant_id=system.tenant_id,
        system_id=system.system_id,
        name=system.name,
        description=system.description,
        version=system.version,
        risk_classification=system.risk_classification,
        provider=system.provider,
        provider_contact=system.provider_contact,
        is_third_party=system.is_third_party,
        status=system.status,
        environments=system.environments,
        data_categories=system.data_categories,
        purpose_of_processing=system.purpose_of_processing,
        data_sources=system.data_sources,
        human_oversight_enabled=system.human_oversight_enabled,
        human_oversight_description=system.human_oversight_description,
        human_oversight_contact=system.human_oversight_contact,
        tags=system.tags,
        metadata=system.system_metadata,
        created_at=system.created_at,
        updated_at=system.updated_at,
    )
