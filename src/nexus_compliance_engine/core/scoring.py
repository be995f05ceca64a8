"""Finding aggregation: counters, score and risk level.

Pure functions with no I/O. The score only counts controls that were actually
judged (compliant, non_compliant, partial); not_applicable and not_assessed
findings are kept in their own counters for reporting.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from nexus_compliance_engine.core.models import (
    FINDING_COMPLIANT,
    FINDING_NON_COMPLIANT,
    FINDING_NOT_APPLICABLE,
    FINDING_NOT_ASSESSED,
    FINDING_PARTIAL,
)


@dataclass
class FindingTally:
    """Per-status and per-severity finding counters for one assessment."""

    compliant: int = 0
    non_compliant: int = 0
    partial: int = 0
    not_applicable: int = 0
    not_assessed: int = 0
    critical: int = 0
    major: int = 0
    minor: int = 0
    observation: int = 0

    @property
    def scored(self) -> int:
        """Controls that count towards the score denominator."""
        return self.compliant + self.non_compliant + self.partial

    @property
    def total(self) -> int:
        return self.scored + self.not_applicable + self.not_assessed

    def record(self, status: str, severity: str | None = None) -> None:
        """Count one finding.

        Args:
            status: Finding status.
            severity: Optional finding severity.

        Raises:
            ValueError: If status or severity is outside the known vocabulary.
        """
        counters = {
            FINDING_COMPLIANT: "compliant",
            FINDING_NON_COMPLIANT: "non_compliant",
            FINDING_PARTIAL: "partial",
            FINDING_NOT_APPLICABLE: "not_applicable",
            FINDING_NOT_ASSESSED: "not_assessed",
        }
        if status not in counters:
            raise ValueError(f"Unknown finding status: {status}")
        setattr(self, counters[status], getattr(self, counters[status]) + 1)

        if severity is not None:
            if severity not in ("critical", "major", "minor", "observation"):
                raise ValueError(f"Unknown finding severity: {severity}")
            setattr(self, severity, getattr(self, severity) + 1)

    @classmethod
    def from_findings(cls, findings: Iterable[tuple[str, str | None]]) -> "FindingTally":
        """Build a tally from (status, severity) pairs."""
        tally = cls()
        for status, severity in findings:
            tally.record(status, severity)
        return tally


@dataclass(frozen=True)
class RiskThresholds:
    """Minimum scores for each risk bucket; anything below `high` is critical."""

    low: int = 90
    medium: int = 70
    high: int = 50

    def __post_init__(self) -> None:
        if not 0 <= self.high <= self.medium <= self.low <= 100:
            raise ValueError("Risk thresholds must satisfy 0 <= high <= medium <= low <= 100")


DEFAULT_RISK_THRESHOLDS = RiskThresholds()


def compute_score(tally: FindingTally) -> int:
    """Compute the 0-100 compliance score.

    score = round(100 * compliant / scored + 50 * partial / scored), rounding
    halves up; 0 when nothing was scored.
    """
    if tally.scored == 0:
        return 0
    raw = Decimal(100 * tally.compliant + 50 * tally.partial) / Decimal(tally.scored)
    return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def risk_level_for_score(score: float, thresholds: RiskThresholds = DEFAULT_RISK_THRESHOLDS) -> str:
    """Map a score to low | medium | high | critical."""
    if score >= thresholds.low:
        return "low"
    if score >= thresholds.medium:
        return "medium"
    if score >= thresholds.high:
        return "high"
    return "critical"


@dataclass(frozen=True)
class ScoreSummary:
    tally: FindingTally
    score: int
    risk_level: str

    def assessment_values(self) -> dict[str, int | str]:
        """Column values persisted on the assessment for this summary."""
        return {
            "compliant_controls": self.tally.compliant,
            "non_compliant_controls": self.tally.non_compliant,
            "partial_controls": self.tally.partial,
            "not_applicable_controls": self.tally.not_applicable,
            "not_assessed_controls": self.tally.not_assessed,
            "critical_findings": self.tally.critical,
            "major_findings": self.tally.major,
            "minor_findings": self.tally.minor,
            "observations": self.tally.observation,
            "overall_score": self.score,
            "risk_level": self.risk_level,
        }


def summarize(
    findings: Iterable[tuple[str, str | None]],
    thresholds: RiskThresholds = DEFAULT_RISK_THRESHOLDS,
) -> ScoreSummary:
    """Tally findings and derive score and risk level in one step."""
    tally = FindingTally.from_findings(findings)
    score = compute_score(tally)
    return ScoreSummary(tally=tally, score=score, risk_level=risk_level_for_score(score, thresholds))
