"""Tests for the lifecycle cascade and Winback resolution."""

import pytest

from customer_tiering.analyses.lifecycle import (
    Lifecycle,
    classify_lifecycle,
    resolve_lifecycle,
)
from customer_tiering.config import ThresholdConfig


class TestClassifyLifecycle:
    def test_first_booking_ten_days_ago_is_new(self, make_features, config):
        features = make_features(recency_days=10, tenure_days=10, frequency_24m=1)
        assert classify_lifecycle(features, config) is Lifecycle.NEW

    def test_new_wins_over_storage(self, make_features, config):
        features = make_features(recency_days=5, tenure_days=60, storage_active=True)
        assert classify_lifecycle(features, config) is Lifecycle.NEW

    def test_storage_contract_keeps_customer_active(self, make_features, config):
        features = make_features(recency_days=400, tenure_days=900, storage_active=True)
        assert classify_lifecycle(features, config) is Lifecycle.ACTIVE

    def test_recent_booking_is_active(self, make_features, config):
        features = make_features(recency_days=200, tenure_days=900)
        assert classify_lifecycle(features, config) is Lifecycle.ACTIVE

    def test_eight_months_is_at_risk(self, make_features, config):
        features = make_features(recency_days=240, tenure_days=900)
        assert classify_lifecycle(features, config) is Lifecycle.AT_RISK

    def test_beyond_at_risk_window_is_churned(self, make_features, config):
        features = make_features(recency_days=300, tenure_days=900)
        assert classify_lifecycle(features, config) is Lifecycle.CHURNED

    def test_thresholds_come_from_config(self, make_features):
        features = make_features(recency_days=240, tenure_days=900)
        config = ThresholdConfig(active_months=9, at_risk_from_months=9, at_risk_to_months=12)
        assert classify_lifecycle(features, config) is Lifecycle.ACTIVE

    def test_pure_function(self, make_features, config):
        features = make_features(recency_days=240, tenure_days=900)
        assert {classify_lifecycle(features, config) for _ in range(5)} == {Lifecycle.AT_RISK}


class TestResolveLifecycle:
    def test_first_classification_has_no_previous(self, make_features, config):
        assignment = resolve_lifecycle(make_features(recency_days=10), config)
        assert assignment.lifecycle is Lifecycle.ACTIVE
        assert assignment.previous_lifecycle is None
        assert assignment.changed

    def test_churned_customer_returning_is_winback(self, make_features, config):
        features = make_features(recency_days=5, tenure_days=900)
        assignment = resolve_lifecycle(features, config, stored_lifecycle="Churned")
        assert assignment.lifecycle is Lifecycle.WINBACK
        assert assignment.previous_lifecycle is Lifecycle.CHURNED
        assert assignment.changed

    def test_winback_sticks_until_return_booking_ages_out(self, make_features, config):
        features = make_features(recency_days=30, tenure_days=900)
        assignment = resolve_lifecycle(
            features,
            config,
            stored_lifecycle=Lifecycle.WINBACK,
            stored_previous=Lifecycle.CHURNED,
        )
        assert assignment.lifecycle is Lifecycle.WINBACK
        assert assignment.previous_lifecycle is Lifecycle.CHURNED
        assert not assignment.changed

    def test_winback_reclassified_after_window(self, make_features, config):
        features = make_features(recency_days=90, tenure_days=900)
        assignment = resolve_lifecycle(
            features,
            config,
            stored_lifecycle=Lifecycle.WINBACK,
            stored_previous=Lifecycle.CHURNED,
        )
        assert assignment.lifecycle is Lifecycle.ACTIVE
        assert assignment.previous_lifecycle is Lifecycle.WINBACK

    def test_storage_alone_is_not_a_return(self, make_features, config):
        features = make_features(recency_days=400, tenure_days=900, storage_active=True)
        assignment = resolve_lifecycle(features, config, stored_lifecycle="Churned")
        assert assignment.lifecycle is Lifecycle.ACTIVE

    def test_at_risk_customer_recovering_is_active(self, make_features, config):
        features = make_features(recency_days=5, tenure_days=900)
        assignment = resolve_lifecycle(features, config, stored_lifecycle="At-risk")
        assert assignment.lifecycle is Lifecycle.ACTIVE
        assert assignment.previous_lifecycle is Lifecycle.AT_RISK

    def test_unchanged_lifecycle_keeps_previous(self, make_features, config):
        features = make_features(recency_days=240, tenure_days=900)
        assignment = resolve_lifecycle(
            features, config, stored_lifecycle="At-risk", stored_previous="Active"
        )
        assert assignment.lifecycle is Lifecycle.AT_RISK
        assert assignment.previous_lifecycle is Lifecycle.ACTIVE
        assert not assignment.changed

    def test_change_records_lifecycle_held_before_this_run(self, make_features, config):
        features = make_features(recency_days=5, tenure_days=900)
        assignment = resolve_lifecycle(
            features, config, stored_lifecycle="Churned", stored_previous="At-risk"
        )
        assert assignment.lifecycle is Lifecycle.WINBACK
        assert assignment.previous_lifecycle is Lifecycle.CHURNED

    def test_unknown_stored_value_raises(self, make_features, config):
        with pytest.raises(ValueError):
            resolve_lifecycle(make_features(), config, stored_lifecycle="Sleeping")
