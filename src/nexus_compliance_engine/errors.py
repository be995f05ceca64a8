"""Typed error taxonomy for the compliance engine.

Every error the core raises derives from ComplianceEngineError and carries
enough structure (error_code, http_status, message) for the API layer to map
it to a response without inspecting the message text. The core never logs
and swallows: errors propagate to the caller.

Errors:
- ValidationError          — bad input shape or values (422)
- ModuleDisabledError      — a gated module/feature is switched off (403)
- NotFoundError            — framework, assessment, finding, or config missing (404)
- InvalidStateError        — operation illegal for the current lifecycle state (409)
- InvalidFeatureError      — unknown feature name for a module (422)
- ConflictError            — duplicate unique key (409)
- StorageError             — transport or transaction failure (503)
- EvaluatorError           — per-control evaluation failure (502)
- EvaluatorUnavailableError — systemic evaluator failure, aborts a run (503)
- AssessmentTimeoutError   — global run deadline exceeded (504)
"""

from typing import Any


class ComplianceEngineError(Exception):
    """Base class for all typed compliance engine errors.

    Attributes:
        message: Human-readable error description.
        error_code: Stable machine-readable code.
        http_status: Suggested HTTP status for the API layer.
    """

    error_code: str = "compliance_engine_error"
    http_status: int = 500

    def __init__(self, message: str) -> None:
        """Initialize ComplianceEngineError.

        Args:
            message: Human-readable error description.
        """
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for an API error body.

        Returns:
            Dict with error_code, message, and any error-specific details.
        """
        return {"error_code": self.error_code, "message": self.message, "details": self.details()}

    def details(self) -> dict[str, Any]:
        """Return error-specific structured details (empty by default)."""
        return {}


class ValidationError(ComplianceEngineError):
    """Raised when request input fails a business validation rule."""

    error_code = "validation_error"
    http_status = 422

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def details(self) -> dict[str, Any]:
        return {"field": self.field} if self.field else {}


class ModuleDisabledError(ValidationError):
    """Raised by the gate when a module or feature is not active for a tenant."""

    error_code = "module_disabled"
    http_status = 403

    def __init__(self, module: str, feature: str | None = None) -> None:
        target = f"{module}.{feature}" if feature else module
        super().__init__(f"Compliance capability '{target}' is disabled for this tenant", field="module")
        self.module = module
        self.feature = feature

    def details(self) -> dict[str, Any]:
        return {"module": self.module, "feature": self.feature}


class NotFoundError(ComplianceEngineError):
    """Raised when a tenant-scoped resource does not exist."""

    error_code = "not_found"
    http_status = 404

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} not found: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id

    def details(self) -> dict[str, Any]:
        return {"resource": self.resource, "resource_id": self.resource_id}


class InvalidStateError(ComplianceEngineError):
    """Raised when a lifecycle operation is illegal for the current status."""

    error_code = "invalid_state"
    http_status = 409

    def __init__(self, message: str, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status

    def details(self) -> dict[str, Any]:
        return {"current_status": self.current_status}


class InvalidFeatureError(ComplianceEngineError):
    """Raised when a feature name is not part of a module's fixed feature set."""

    error_code = "invalid_feature"
    http_status = 422

    def __init__(self, module: str, feature: str) -> None:
        super().__init__(f"Feature {feature} not found in module {module}")
        self.module = module
        self.feature = feature

    def details(self) -> dict[str, Any]:
        return {"module": self.module, "feature": self.feature}


class ConflictError(ComplianceEngineError):
    """Raised when a unique key would be duplicated."""

    error_code = "conflict"
    http_status = 409


class StorageError(ComplianceEngineError):
    """Raised when the store fails to execute or commit a transaction.

    Not retried internally; the caller applies its own retry policy.
    """

    error_code = "storage_error"
    http_status = 503


class EvaluatorError(ComplianceEngineError):
    """Raised when evaluating a single control fails.

    Recorded on that control's finding; does not abort the run.
    """

    error_code = "evaluator_error"
    http_status = 502

    def __init__(self, message: str, control_id: str | None = None) -> None:
        super().__init__(message)
        self.control_id = control_id

    def details(self) -> dict[str, Any]:
        return {"control_id": self.control_id}


class EvaluatorUnavailableError(EvaluatorError):
    """Raised when the evaluator cannot serve any control (e.g. missing credentials)."""

    error_code = "evaluator_unavailable"
    http_status = 503


class AssessmentTimeoutError(ComplianceEngineError):
    """Raised when an assessment run exceeds its global deadline."""

    error_code = "assessment_timeout"
    http_status = 504
