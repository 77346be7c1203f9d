"""Coverage and consistency checks over the engine's output tables.

Findings are values: every check returns a :class:`CheckResult` with a
pass / warning / fail status and the raw counts behind it. Nothing in this
module raises on bad data.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence

from customer_tiering.storage import ClassificationStore

logger = logging.getLogger(__name__)

REVENUE_SPLIT_SAMPLE_SIZE = 100
REVENUE_SPLIT_TOLERANCE = 0.01

B2B_SEGMENTS = frozenset({"SMB", "Large", "Enterprise"})


class CheckStatus(str, Enum):
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {CheckStatus.PASS: 0, CheckStatus.WARNING: 1, CheckStatus.FAIL: 2}


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class ValidationSummary:
    total: int
    with_features: int
    with_segments: int
    with_pyramid: int

    @property
    def coverage_pct(self) -> int:
        """Feature coverage as a whole percentage, rounded half up."""
        return int(math.floor(self.with_features / max(self.total, 1) * 100 + 0.5))

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "with_features": self.with_features,
            "with_segments": self.with_segments,
            "with_pyramid": self.with_pyramid,
            "coverage_pct": self.coverage_pct,
        }


@dataclass(frozen=True)
class ValidationReport:
    overall_status: CheckStatus
    checks: tuple[CheckResult, ...]
    summary: ValidationSummary

    def as_dict(self) -> dict[str, Any]:
        return {
            "overall_status": self.overall_status.value,
            "checks": [check.as_dict() for check in self.checks],
            "summary": self.summary.as_dict(),
        }


def grade(pct: float, pass_at: float, warn_at: float) -> CheckStatus:
    """Map a coverage percentage onto a status.

    >>> grade(96.0, 95, 80).value
    'pass'
    >>> grade(79.9, 95, 80).value
    'fail'
    """
    if pct >= pass_at:
        return CheckStatus.PASS
    if pct >= warn_at:
        return CheckStatus.WARNING
    return CheckStatus.FAIL


def worst_status(checks: Sequence[CheckResult]) -> CheckStatus:
    """Overall status: fail beats warning beats pass."""
    status = CheckStatus.PASS
    for check in checks:
        if check.status.severity > status.severity:
            status = check.status
    return status


def _pct(numerator: int, denominator: int, *, empty: float = 0.0) -> float:
    return numerator / denominator * 100 if denominator else empty


def check_feature_coverage(with_features: int, total: int) -> CheckResult:
    pct = _pct(with_features, total)
    return CheckResult(
        name="Feature Coverage",
        status=grade(pct, 95, 80),
        message=f"{with_features}/{total} customers have features ({pct:.1f}%)",
        details={"with_features": with_features, "total": total, "coverage": pct},
    )


def check_segment_coverage(with_segment: int, total: int) -> CheckResult:
    pct = _pct(with_segment, total)
    return CheckResult(
        name="Customer Segment Assignment",
        status=grade(pct, 90, 70),
        message=(
            f"{with_segment}/{total} customers have customer_segment assigned ({pct:.1f}%)"
        ),
        details={"with_segment": with_segment, "total": total, "coverage": pct},
    )


def check_pyramid_coverage(tiered: int, dormant: int, total: int) -> CheckResult:
    pct = _pct(tiered, total)
    return CheckResult(
        name="Pyramid Tier Distribution",
        status=grade(pct, 50, 30),
        message=f"{tiered} tiered, {dormant} dormant ({pct:.1f}% of {total} active customers)",
        details={"tiered": tiered, "dormant": dormant, "total": total, "coverage": pct},
    )


def check_revenue_split(feature_rows: Sequence[Mapping[str, Any]]) -> CheckResult:
    """Tire and service revenue must add up to the 24-month revenue.

    Only the first :data:`REVENUE_SPLIT_SAMPLE_SIZE` rows are inspected.
    """
    sample = list(feature_rows[:REVENUE_SPLIT_SAMPLE_SIZE])
    valid = 0
    for row in sample:
        tire = row.get("tire_revenue_24m")
        service = row.get("service_revenue_24m")
        revenue = row.get("revenue_24m")
        if tire is None or service is None or revenue is None:
            continue
        if abs((float(tire) + float(service)) - float(revenue)) < REVENUE_SPLIT_TOLERANCE:
            valid += 1
    pct = _pct(valid, len(sample))
    return CheckResult(
        name="Tire/Service Revenue Split",
        status=grade(pct, 95, 80),
        message=(
            f"{valid}/{len(sample)} sampled records have accurate revenue split ({pct:.1f}%)"
        ),
        details={"valid": valid, "sample_size": len(sample), "accuracy": pct},
    )


def check_b2b_fleet_size(segment_rows: Sequence[Mapping[str, Any]]) -> CheckResult:
    """B2B customers should have at least one known vehicle.

    With no B2B customers at all there is nothing to track, which passes.
    """
    b2b = [row for row in segment_rows if row.get("customer_segment") in B2B_SEGMENTS]
    with_fleet = sum(1 for row in b2b if (row.get("fleet_size") or 0) > 0)
    pct = _pct(with_fleet, len(b2b), empty=100.0)
    return CheckResult(
        name="B2B Fleet Size Tracking",
        status=grade(pct, 90, 70),
        message=f"{with_fleet}/{len(b2b)} B2B customers have fleet_size > 0 ({pct:.1f}%)",
        details={"with_fleet": with_fleet, "b2b_total": len(b2b), "coverage": pct},
    )


def check_composite_scores(segment_rows: Sequence[Mapping[str, Any]]) -> CheckResult:
    tiered = [row for row in segment_rows if row.get("pyramid_tier") is not None]
    with_score = sum(1 for row in tiered if row.get("composite_score") is not None)
    pct = _pct(with_score, len(tiered))
    return CheckResult(
        name="Composite Score Calculation",
        status=grade(pct, 95, 80),
        message=f"{with_score}/{len(tiered)} tiered customers have composite_score ({pct:.1f}%)",
        details={"with_score": with_score, "tiered_total": len(tiered), "coverage": pct},
    )


def check_high_value_tire_purchasers(segment_rows: Sequence[Mapping[str, Any]]) -> CheckResult:
    """Informational count; always passes."""
    count = sum(1 for row in segment_rows if row.get("high_value_tire_purchaser"))
    return CheckResult(
        name="High-Value Tire Purchasers",
        status=CheckStatus.PASS,
        message=f"{count} customers flagged as high-value tire purchasers",
        details={"high_value_count": count},
    )


def _active_customer_count(store: ClassificationStore) -> int:
    """Customers that own at least one booking; the population under audit."""
    owners = set()
    for row in store.bookings_for():
        owner = row.get("user_group_id")
        if owner is None:
            continue
        try:
            owners.add(int(owner))
        except (TypeError, ValueError):
            continue
    return len(owners)


def validate_classification(store: ClassificationStore) -> ValidationReport:
    """Audit the feature and segment tables of ``store``."""
    total = _active_customer_count(store)
    feature_rows = list(store.iter_features())
    segment_rows = list(store.iter_segments())

    with_segment = sum(1 for row in segment_rows if row.get("customer_segment") is not None)
    tiered = sum(1 for row in segment_rows if row.get("pyramid_tier") is not None)
    dormant = sum(
        1
        for row in segment_rows
        if row.get("pyramid_tier") is None and row.get("dormant_segment") is not None
    )

    checks = (
        check_feature_coverage(len(feature_rows), total),
        check_segment_coverage(with_segment, total),
        check_pyramid_coverage(tiered, dormant, total),
        check_revenue_split(feature_rows),
        check_b2b_fleet_size(segment_rows),
        check_composite_scores(segment_rows),
        check_high_value_tire_purchasers(segment_rows),
    )
    for check in checks:
        if check.status is CheckStatus.PASS:
            logger.info("%s: %s", check.name, check.message)
        else:
            logger.warning("%s [%s]: %s", check.name, check.status.value, check.message)

    report = ValidationReport(
        overall_status=worst_status(checks),
        checks=checks,
        summary=ValidationSummary(
            total=total,
            with_features=len(feature_rows),
            with_segments=with_segment,
            with_pyramid=tiered,
        ),
    )
    logger.info("Validation overall status: %s", report.overall_status.value)
    return report
