"""HTTP client for the external control evaluation service.

The evaluator classifies one control for one target system and returns a
verdict (status, optional severity, narrative, confidence, reasoning). The
service is reached over REST with httpx and a hard per-call timeout; the
assessment engine applies its own per-control and per-run budgets on top.

Failure classes:
- EvaluatorError            — this control could not be evaluated (timeout,
                               transport error, malformed reply); the engine
                               records the control as not_assessed
- EvaluatorUnavailableError — no control can be evaluated (missing or
                               rejected credentials); the engine fails the run
"""

from typing import Any

import httpx

from nexus_compliance_engine.core.interfaces import ControlDefinition, EvaluationOutcome, TargetSystemContext
from nexus_compliance_engine.errors import EvaluatorError, EvaluatorUnavailableError
from nexus_compliance_engine.observability import get_logger

logger = get_logger(__name__)

_EVALUATE_PATH = "/v1/compliance/evaluate"
_HEALTH_PATH = "/health"


class HttpControlEvaluator:
    """Async client for the control evaluation REST API.

    Args:
        base_url: Evaluation service base URL.
        api_key: Bearer credential; empty means the evaluator is unavailable.
        default_model: Model requested when the run names none.
        timeout_seconds: Hard timeout for a single HTTP call.
        transport: Optional httpx transport (tests inject httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        default_model: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize HttpControlEvaluator.

        Args:
            base_url: Evaluation service base URL (e.g., http://nexus-mageagent:9001).
            api_key: Bearer credential forwarded on every call.
            default_model: Model identifier used when the caller passes none.
            timeout_seconds: Hard HTTP timeout in seconds.
            transport: Optional custom httpx transport.
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._default_model = default_model
        self._timeout = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )

    async def evaluate(
        self,
        control: ControlDefinition,
        target: TargetSystemContext,
        use_ai: bool,
        model: str | None = None,
    ) -> EvaluationOutcome:
        """Evaluate one control via the evaluation service.

        Args:
            control: The control to evaluate.
            target: The system under assessment.
            use_ai: Whether AI assistance was requested.
            model: Model to request; defaults to the configured model.

        Returns:
            The parsed EvaluationOutcome.

        Raises:
            EvaluatorUnavailableError: If no credential is configured or it is rejected.
            EvaluatorError: On timeout, transport failure, unexpected status, or malformed reply.
        """
        if not self._api_key:
            raise EvaluatorUnavailableError("Control evaluator has no API key configured", control_id=control.id)

        payload = {
            "control": {
                "id": control.id,
                "framework_id": control.framework_id,
                "control_number": control.control_number,
                "title": control.title,
                "description": control.description,
                "domain": control.domain,
                "risk_category": control.risk_category,
                "evidence_requirements": list(control.evidence_requirements),
                "prompt": control.ai_assessment_prompt,
            },
            "target": {
                "system_id": target.system_id,
                "name": target.name,
                "description": target.description,
            },
            "use_ai": use_ai,
            "model": model or self._default_model,
        }

        logger.debug("Evaluating control", control_id=control.id, target_system_id=target.system_id)

        try:
            async with self._client() as client:
                response = await client.post(_EVALUATE_PATH, json=payload)
        except httpx.TimeoutException:
            logger.warning("Control evaluation timed out", control_id=control.id, timeout_s=self._timeout)
            raise EvaluatorError(
                f"Evaluator timed out after {self._timeout}s",
                control_id=control.id,
            ) from None
        except httpx.RequestError as exc:
            logger.error("Evaluator request failed", control_id=control.id, error=str(exc))
            raise EvaluatorError(f"Evaluator request error: {exc}", control_id=control.id) from exc

        if response.status_code in (401, 403):
            logger.error("Evaluator rejected credentials", status_code=response.status_code)
            raise EvaluatorUnavailableError(
                f"Evaluator rejected credentials with status {response.status_code}",
                control_id=control.id,
            )
        if response.status_code != 200:
            logger.error(
                "Evaluator returned unexpected status",
                control_id=control.id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise EvaluatorError(
                f"Evaluator failed with status {response.status_code}: {response.text[:200]}",
                control_id=control.id,
            )

        return _parse_outcome(control, response)

    async def health_check(self) -> bool:
        """Check whether the evaluation service answers its health endpoint.

        Returns:
            True if it responded with 200, False otherwise.
        """
        try:
            async with self._client() as client:
                response = await client.get(_HEALTH_PATH)
            return response.status_code == 200
        except httpx.RequestError as exc:
            logger.warning("Evaluator health check failed", error=str(exc))
            return False


def _parse_outcome(control: ControlDefinition, response: httpx.Response) -> EvaluationOutcome:
    try:
        body: dict[str, Any] = response.json()
        evidence = body.get("evidence") or []
        return EvaluationOutcome(
            status=str(body["status"]),
            narrative=str(body.get("narrative") or ""),
            confidence=float(body["confidence"]),
            severity=body.get("severity"),
            reasoning=body.get("reasoning"),
            evidence=[item for item in evidence if isinstance(item, dict)],
        )
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise EvaluatorError(f"Malformed evaluator response: {exc}", control_id=control.id) from exc
