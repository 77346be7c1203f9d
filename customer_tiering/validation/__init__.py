"""Validation checks for classification output."""

from .checks import (
    CheckResult,
    CheckStatus,
    ValidationReport,
    ValidationSummary,
    check_b2b_fleet_size,
    check_composite_scores,
    check_feature_coverage,
    check_high_value_tire_purchasers,
    check_pyramid_coverage,
    check_revenue_split,
    check_segment_coverage,
    grade,
    validate_classification,
    worst_status,
)

__all__ = [
    "CheckResult",
    "CheckStatus",
    "ValidationReport",
    "ValidationSummary",
    "check_b2b_fleet_size",
    "check_composite_scores",
    "check_feature_coverage",
    "check_high_value_tire_purchasers",
    "check_pyramid_coverage",
    "check_revenue_split",
    "check_segment_coverage",
    "grade",
    "validate_classification",
    "worst_status",
]
