"""Test fixtures for nexus-compliance-engine.

Provides:
- tenant_id / context: a deterministic ServiceContext for service tests
- store: an InMemoryComplianceStore (transactions with rollback and row locks)
- seeded_store: the store preloaded with an iso27001 framework of three controls
- config_service / gate: configuration store services over the in-memory store
- make_context / make_outcome: helpers for building inputs in tests
"""

import uuid

import pytest

from nexus_compliance_engine.core.context import ServiceContext
from nexus_compliance_engine.core.interfaces import EvaluationOutcome
from nexus_compliance_engine.core.services import ComplianceConfigService, GateEvaluator
from tests.fakes import InMemoryComplianceStore

ISO_CONTROLS = ("iso27001-A.5.1", "iso27001-A.8.2", "iso27001-A.12.4")


def make_context(tenant_id: str = "t1", user_id: str = "u-admin") -> ServiceContext:
    """Create a ServiceContext with a fresh request ID."""
    return ServiceContext(
        tenant_id=tenant_id,
        user_id=user_id,
        request_id=str(uuid.uuid4()),
        session_id="sess-1",
        ip_address="10.0.0.7",
        user_agent="pytest",
    )


def make_outcome(
    status: str,
    severity: str | None = None,
    confidence: float = 0.8,
    reasoning: str | None = None,
) -> EvaluationOutcome:
    """Create an EvaluationOutcome for scripted evaluators."""
    return EvaluationOutcome(
        status=status,
        narrative=f"Control judged {status}",
        confidence=confidence,
        severity=severity,
        reasoning=reasoning,
    )


@pytest.fixture()
def tenant_id() -> str:
    """Return a fixed tenant identifier for consistent test assertions.

    Returns:
        The test tenant ID.
    """
    return "t1"


@pytest.fixture()
def context(tenant_id: str) -> ServiceContext:
    """Create a ServiceContext for the test tenant.

    Args:
        tenant_id: Injected tenant fixture.

    Returns:
        ServiceContext with provenance fields populated.
    """
    return make_context(tenant_id)


@pytest.fixture()
def store() -> InMemoryComplianceStore:
    """Create an empty in-memory store.

    Returns:
        InMemoryComplianceStore with no rows.
    """
    return InMemoryComplianceStore()


@pytest.fixture()
def seeded_store(store: InMemoryComplianceStore) -> InMemoryComplianceStore:
    """Preload the store with an iso27001 framework and three controls.

    Priorities are 90, 70 and 50 so catalog order is deterministic.

    Args:
        store: Injected empty store.

    Returns:
        The same store, seeded.
    """
    store.db.add_framework("iso27001", name="ISO/IEC 27001")
    store.db.add_framework("legacy", name="Legacy Framework", is_active=False)
    store.db.add_control("iso27001", ISO_CONTROLS[0], priority=90, domain="Organizational", risk_category="high")
    store.db.add_control("iso27001", ISO_CONTROLS[1], priority=70, domain="Asset Management")
    store.db.add_control("iso27001", ISO_CONTROLS[2], priority=50, domain="Operations", automated=True)
    return store


@pytest.fixture()
def config_service(store: InMemoryComplianceStore) -> ComplianceConfigService:
    return ComplianceConfigService(store=store, min_reason_length=10)


@pytest.fixture()
def gate(config_service: ComplianceConfigService) -> GateEvaluator:
    return GateEvaluator(config_service)
