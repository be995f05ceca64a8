"""Tests for API endpoints (router layer).

Builds the real application with create_app(), backed by the in-memory store
and a scripted evaluator, and drives it over httpx's ASGITransport.

Tests verify:
- Request validation (Pydantic schema enforcement, required tenant header)
- HTTP status codes, including the ComplianceEngineError mapping
- Response schema shapes
- End-to-end flows through config, assessments, findings and AI systems
"""

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from nexus_compliance_engine.api.router import get_assessment_service
from nexus_compliance_engine.errors import StorageError
from nexus_compliance_engine.main import create_app
from nexus_compliance_engine.settings import Settings
from tests.conftest import ISO_CONTROLS, make_outcome
from tests.fakes import InMemoryComplianceStore, ScriptedEvaluator

PREFIX = "/api/v1/compliance"
HEADERS = {"X-Tenant-ID": "t1", "X-User-ID": "u-admin", "X-Request-ID": "req-1"}
REASON = "Enable for the EU rollout"


@pytest.fixture()
def test_app(seeded_store: InMemoryComplianceStore) -> FastAPI:
    """Create the application over the seeded in-memory store.

    Args:
        seeded_store: Injected store with the iso27001 catalog.

    Returns:
        FastAPI app with a scripted evaluator.
    """
    evaluator = ScriptedEvaluator({ISO_CONTROLS[2]: make_outcome("non_compliant", "major", reasoning="No log review")})
    settings = Settings(ai_assessment_enabled=True, ai_api_key="test-key", ai_model="model-x")
    return create_app(settings=settings, store=seeded_store, evaluator=evaluator)


def client_for(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestHealthAndContext:
    """Tests for /health and request context handling."""

    @pytest.mark.asyncio()
    async def test_health(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "nexus-compliance-engine", "version": "1.0.0"}

    @pytest.mark.asyncio()
    async def test_missing_tenant_header_returns_422(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.get(f"{PREFIX}/config")

        assert response.status_code == 422


class TestConfigEndpoints:
    """Tests for /config endpoints."""

    @pytest.mark.asyncio()
    async def test_get_config_returns_defaults(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.get(f"{PREFIX}/config", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["tenant_id"] == "t1"
        assert body["master_enabled"] is True
        assert body["modules"]["gdpr"]["dataErasure"] is True

    @pytest.mark.asyncio()
    async def test_toggle_feature_then_check_gate_and_audit(
        self,
        test_app: FastAPI,
        seeded_store: InMemoryComplianceStore,
    ) -> None:
        async with client_for(test_app) as client:
            toggled = await client.put(
                f"{PREFIX}/config",
                headers={**HEADERS, "User-Agent": "console/2.1"},
                json={"module": "gdpr", "feature": "dataErasure", "enabled": False, "reason": REASON},
            )
            gate = await client.get(f"{PREFIX}/config/enabled/gdpr", headers=HEADERS, params={"feature": "dataErasure"})
            audit = await client.get(f"{PREFIX}/config/audit", headers=HEADERS)

        assert toggled.status_code == 200
        assert toggled.json()["modules"]["gdpr"]["dataErasure"] is False
        assert gate.json() == {"module": "gdpr", "feature": "dataErasure", "enabled": False}
        entries = audit.json()["entries"]
        assert audit.json()["total"] == 1
        assert entries[0]["action"] == "TOGGLE_FEATURE"
        assert entries[0]["changed_by"] == "u-admin"
        assert entries[0]["request_id"] == "req-1"
        assert entries[0]["user_agent"] == "console/2.1"

    @pytest.mark.asyncio()
    async def test_short_reason_returns_422_with_error_body(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.put(
                f"{PREFIX}/config/master",
                headers=HEADERS,
                json={"enabled": False, "reason": "because"},
            )

        assert response.status_code == 422
        assert response.json()["error_code"] == "validation_error"
        assert response.json()["details"] == {"field": "reason"}

    @pytest.mark.asyncio()
    async def test_unknown_feature_returns_422(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.put(
                f"{PREFIX}/config",
                headers=HEADERS,
                json={"module": "hipaa", "feature": "dataErasure", "enabled": True, "reason": REASON},
            )

        assert response.status_code == 422
        assert response.json()["error_code"] == "invalid_feature"

    @pytest.mark.asyncio()
    async def test_unknown_module_rejected_by_schema(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.put(
                f"{PREFIX}/config",
                headers=HEADERS,
                json={"module": "pci", "enabled": True, "reason": REASON},
            )

        assert response.status_code == 422


class TestCatalogEndpoints:
    """Tests for /frameworks endpoints."""

    @pytest.mark.asyncio()
    async def test_list_frameworks_defaults_to_active(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.get(f"{PREFIX}/frameworks")

        assert response.status_code == 200
        assert [f["id"] for f in response.json()["items"]] == ["iso27001"]

    @pytest.mark.asyncio()
    async def test_list_controls_and_missing_framework(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            controls = await client.get(f"{PREFIX}/frameworks/iso27001/controls", params={"automated_only": True})
            missing = await client.get(f"{PREFIX}/frameworks/pci-dss")

        assert controls.status_code == 200
        assert [c["id"] for c in controls.json()["items"]] == [ISO_CONTROLS[2]]
        assert missing.status_code == 404
        assert missing.json()["error_code"] == "not_found"


class TestAssessmentEndpoints:
    """Tests for /assessments and /findings endpoints."""

    @pytest.mark.asyncio()
    async def test_full_assessment_lifecycle(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            created = await client.post(
                f"{PREFIX}/assessments",
                headers=HEADERS,
                json={"framework_id": "iso27001", "target_system_id": "sys-42", "target_system_name": "Payments API"},
            )
            assessment_id = created.json()["id"]
            run = await client.post(f"{PREFIX}/assessments/{assessment_id}/run", headers=HEADERS, json={})
            rerun = await client.post(f"{PREFIX}/assessments/{assessment_id}/run", headers=HEADERS, json={})
            findings = await client.get(f"{PREFIX}/assessments/{assessment_id}/findings", headers=HEADERS)

            failing = next(f for f in findings.json()["items"] if f["status"] == "non_compliant")
            patched = await client.patch(
                f"{PREFIX}/findings/{failing['id']}",
                headers=HEADERS,
                json={"status": "compliant", "verification_notes": "Log review scheduled"},
            )
            rescored = await client.post(f"{PREFIX}/assessments/{assessment_id}/recalculate", headers=HEADERS)
            reviewed = await client.post(
                f"{PREFIX}/assessments/{assessment_id}/review",
                headers=HEADERS,
                json={"review_notes": "Accepted"},
            )

        assert created.status_code == 201
        assert created.json()["status"] == "pending"

        assert run.status_code == 200
        assert run.json()["status"] == "completed"
        assert run.json()["overall_score"] == 67
        assert run.json()["risk_level"] == "high"
        assert run.json()["ai_model_used"] == "model-x"

        assert rerun.status_code == 409
        assert rerun.json()["error_code"] == "invalid_state"
        assert rerun.json()["details"] == {"current_status": "completed"}

        assert findings.json()["total"] == 3
        assert findings.json()["items"][0]["severity"] == "major"
        assert failing["remediation_plan"] == "No log review"

        assert patched.status_code == 200
        assert patched.json()["human_verified"] is True
        assert rescored.json()["overall_score"] == 100
        assert reviewed.json()["human_reviewed"] is True

    @pytest.mark.asyncio()
    async def test_run_without_body_uses_defaults(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            created = await client.post(
                f"{PREFIX}/assessments",
                headers=HEADERS,
                json={"framework_id": "iso27001", "target_system_id": "sys-1", "target_system_name": "Ledger"},
            )
            run = await client.post(f"{PREFIX}/assessments/{created.json()['id']}/run", headers=HEADERS)

        assert run.status_code == 200
        assert run.json()["total_controls_assessed"] == 3

    @pytest.mark.asyncio()
    async def test_assessment_of_other_tenant_returns_404(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            created = await client.post(
                f"{PREFIX}/assessments",
                headers=HEADERS,
                json={"framework_id": "iso27001", "target_system_id": "sys-1", "target_system_name": "Ledger"},
            )
            response = await client.get(
                f"{PREFIX}/assessments/{created.json()['id']}",
                headers={**HEADERS, "X-Tenant-ID": "t2"},
            )

        assert response.status_code == 404

    @pytest.mark.asyncio()
    async def test_create_assessment_missing_fields_returns_422(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            response = await client.post(f"{PREFIX}/assessments", headers=HEADERS, json={"framework_id": "iso27001"})

        assert response.status_code == 422

    @pytest.mark.asyncio()
    async def test_cancel_then_list_by_status(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            created = await client.post(
                f"{PREFIX}/assessments",
                headers=HEADERS,
                json={"framework_id": "iso27001", "target_system_id": "sys-1", "target_system_name": "Ledger"},
            )
            cancelled = await client.post(f"{PREFIX}/assessments/{created.json()['id']}/cancel", headers=HEADERS)
            listed = await client.get(f"{PREFIX}/assessments", headers=HEADERS, params={"status": "cancelled"})

        assert cancelled.json()["status"] == "cancelled"
        assert listed.json()["total"] == 1

    @pytest.mark.asyncio()
    async def test_storage_error_maps_to_503(self, test_app: FastAPI) -> None:
        service = AsyncMock()
        service.list_assessments.side_effect = StorageError("Database operation failed: OperationalError")
        test_app.dependency_overrides[get_assessment_service] = lambda: service

        async with client_for(test_app) as client:
            response = await client.get(f"{PREFIX}/assessments", headers=HEADERS)

        assert response.status_code == 503
        assert response.json()["error_code"] == "storage_error"


class TestAISystemEndpoints:
    """Tests for /ai-systems endpoints."""

    def _payload(self) -> dict[str, object]:
        return {
            "system_id": "credit-scoring-v2",
            "name": "Credit scoring",
            "description": "Scores consumer loan applications",
            "provider": "In-house",
            "risk_classification": "high_risk",
            "metadata": {"owner": "risk-team"},
        }

    @pytest.mark.asyncio()
    async def test_register_list_and_get(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            created = await client.post(f"{PREFIX}/ai-systems", headers=HEADERS, json=self._payload())
            duplicate = await client.post(f"{PREFIX}/ai-systems", headers=HEADERS, json=self._payload())
            listed = await client.get(f"{PREFIX}/ai-systems", headers=HEADERS, params={"risk_classification": "high_risk"})
            fetched = await client.get(f"{PREFIX}/ai-systems/credit-scoring-v2", headers=HEADERS)

        assert created.status_code == 201
        assert created.json()["metadata"] == {"owner": "risk-team"}
        assert duplicate.status_code == 409
        assert listed.json()["total"] == 1
        assert fetched.json()["id"] == created.json()["id"]

    @pytest.mark.asyncio()
    async def test_register_requires_ai_act_module(self, test_app: FastAPI) -> None:
        async with client_for(test_app) as client:
            await client.put(
                f"{PREFIX}/config",
                headers=HEADERS,
                json={"module": "aiAct", "enabled": False, "reason": REASON},
            )
            response = await client.post(f"{PREFIX}/ai-systems", headers=HEADERS, json=self._payload())

        assert response.status_code == 403
        assert response.json()["error_code"] == "module_disabled"
        assert response.json()["details"] == {"module": "aiAct", "feature": None}
