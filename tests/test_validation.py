"""Tests for classification output validation."""

import pytest

from customer_tiering.storage import InMemoryStore
from customer_tiering.validation import (
    CheckResult,
    CheckStatus,
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


def _feature_row(user_group_id, tire=100.0, service=200.0, revenue=300.0):
    return {
        "user_group_id": user_group_id,
        "tire_revenue_24m": tire,
        "service_revenue_24m": service,
        "revenue_24m": revenue,
    }


def _segment_row(user_group_id, *, tier=3, composite=0.5, segment="B2C", fleet=1, dormant=None):
    return {
        "user_group_id": user_group_id,
        "customer_segment": segment,
        "pyramid_tier": tier,
        "composite_score": composite if tier is not None else None,
        "dormant_segment": dormant,
        "fleet_size": fleet,
        "high_value_tire_purchaser": False,
    }


class TestGrade:
    @pytest.mark.parametrize(
        "pct, expected",
        [
            (100.0, CheckStatus.PASS),
            (95.0, CheckStatus.PASS),
            (94.9, CheckStatus.WARNING),
            (80.0, CheckStatus.WARNING),
            (79.9, CheckStatus.FAIL),
            (0.0, CheckStatus.FAIL),
        ],
    )
    def test_feature_thresholds(self, pct, expected):
        assert grade(pct, 95, 80) is expected

    def test_worst_status_wins(self):
        checks = [
            CheckResult("a", CheckStatus.PASS, ""),
            CheckResult("b", CheckStatus.FAIL, ""),
            CheckResult("c", CheckStatus.WARNING, ""),
        ]
        assert worst_status(checks) is CheckStatus.FAIL
        assert worst_status(checks[::2]) is CheckStatus.WARNING
        assert worst_status([]) is CheckStatus.PASS


class TestCoverageChecks:
    def test_feature_coverage_message(self):
        result = check_feature_coverage(19, 20)
        assert result.status is CheckStatus.PASS
        assert result.message == "19/20 customers have features (95.0%)"
        assert result.details["with_features"] == 19

    def test_segment_coverage_thresholds(self):
        assert check_segment_coverage(9, 10).status is CheckStatus.PASS
        assert check_segment_coverage(7, 10).status is CheckStatus.WARNING
        assert check_segment_coverage(6, 10).status is CheckStatus.FAIL

    def test_pyramid_coverage_thresholds(self):
        assert check_pyramid_coverage(5, 5, 10).status is CheckStatus.PASS
        assert check_pyramid_coverage(3, 7, 10).status is CheckStatus.WARNING
        assert check_pyramid_coverage(2, 8, 10).status is CheckStatus.FAIL

    def test_empty_population_fails(self):
        assert check_feature_coverage(0, 0).status is CheckStatus.FAIL


class TestRevenueSplit:
    def test_consistent_rows_pass(self):
        result = check_revenue_split([_feature_row(i) for i in range(10)])
        assert result.status is CheckStatus.PASS
        assert result.details["valid"] == 10

    def test_only_first_hundred_rows_sampled(self):
        rows = [_feature_row(i) for i in range(100)] + [
            _feature_row(i, revenue=999.0) for i in range(100, 150)
        ]
        result = check_revenue_split(rows)
        assert result.details["sample_size"] == 100
        assert result.status is CheckStatus.PASS

    def test_inconsistent_or_missing_values_count_as_invalid(self):
        rows = [_feature_row(1), _feature_row(2, revenue=500.0), _feature_row(3, tire=None)]
        result = check_revenue_split(rows)
        assert result.details["valid"] == 1
        assert result.status is CheckStatus.FAIL


class TestSegmentChecks:
    def test_no_b2b_customers_passes(self):
        result = check_b2b_fleet_size([_segment_row(1)])
        assert result.status is CheckStatus.PASS
        assert result.details["b2b_total"] == 0

    def test_b2b_without_fleet(self):
        rows = [_segment_row(1, segment="SMB", fleet=0), _segment_row(2, segment="SMB", fleet=3)]
        assert check_b2b_fleet_size(rows).status is CheckStatus.FAIL

    def test_composite_scores_for_tiered_only(self):
        rows = [
            _segment_row(1),
            _segment_row(2, tier=None, dormant="Transient"),
        ]
        result = check_composite_scores(rows)
        assert result.status is CheckStatus.PASS
        assert result.details["tiered_total"] == 1

    def test_high_value_count_is_informational(self):
        rows = [dict(_segment_row(1), high_value_tire_purchaser=True), _segment_row(2)]
        result = check_high_value_tire_purchasers(rows)
        assert result.status is CheckStatus.PASS
        assert result.details["high_value_count"] == 1


class TestValidateClassification:
    def _store(self, customers, with_features):
        store = InMemoryStore(
            customers=[{"user_group_id": i} for i in range(1, customers + 1)],
            bookings=[
                {"id": i, "user_group_id": i, "started_at": "2025-01-01T00:00:00+00:00"}
                for i in range(1, customers + 1)
            ],
        )
        store.upsert_features(_feature_row(i) for i in range(1, with_features + 1))
        store.upsert_segments(_segment_row(i) for i in range(1, with_features + 1))
        return store

    def test_full_coverage_passes(self):
        report = validate_classification(self._store(10, 10))
        assert report.overall_status is CheckStatus.PASS
        assert len(report.checks) == 7
        assert report.summary.as_dict() == {
            "total": 10,
            "with_features": 10,
            "with_segments": 10,
            "with_pyramid": 10,
            "coverage_pct": 100,
        }

    def test_partial_coverage_warns(self):
        report = validate_classification(self._store(10, 9))
        statuses = {check.name: check.status for check in report.checks}

        assert statuses["Feature Coverage"] is CheckStatus.WARNING
        assert statuses["Customer Segment Assignment"] is CheckStatus.PASS
        assert report.overall_status is CheckStatus.WARNING
        assert report.summary.coverage_pct == 90

    def test_empty_store_fails_without_raising(self):
        report = validate_classification(InMemoryStore())
        assert report.overall_status is CheckStatus.FAIL
        assert report.summary.coverage_pct == 0

    def test_report_as_dict(self):
        payload = validate_classification(self._store(3, 3)).as_dict()
        assert payload["overall_status"] == "pass"
        assert {"name", "status", "message", "details"} <= set(payload["checks"][0])
