"""Tests for per-customer feature aggregation."""

from datetime import datetime, timedelta, timezone

import pytest

from customer_tiering.foundation.features import (
    FEATURE_FRAME_COLUMNS,
    CategoryMetrics,
    CustomerFeatures,
    FeatureAggregator,
    SeasonalStatus,
    ServiceCategory,
    categorize_line,
    features_to_dataframe,
)


def _aggregate(dataset, as_of, **kwargs):
    ids = [row["user_group_id"] for row in dataset["customers"]]
    return FeatureAggregator(**kwargs).aggregate(
        ids, dataset["bookings"], dataset["order_lines"], as_of=as_of
    )


class TestCategorizeLine:
    def test_wheel_change_before_tire_shop(self):
        assert categorize_line("Dekkskift sommer") is ServiceCategory.WHEEL_CHANGE
        assert categorize_line("Dekk 4 stk") is ServiceCategory.SHOP_TIRE

    def test_case_insensitive(self):
        assert categorize_line("HJULSKIFT") is ServiceCategory.WHEEL_CHANGE
        assert categorize_line("Dekkhotell") is ServiceCategory.WHEEL_STORAGE

    def test_other_categories(self):
        assert categorize_line("Bilvask utvendig") is ServiceCategory.CAR_WASH
        assert categorize_line("EU-kontroll") is ServiceCategory.CAR_REPAIR

    def test_unmatched_line(self):
        assert categorize_line("Rabatt") is None
        assert categorize_line("") is None


class TestFeatureAggregator:
    def test_regular_customer_metrics(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        features = {f.user_group_id: f for f in result.features}[1]

        assert features.recency_days == 20
        assert features.tenure_days == 400
        assert features.frequency_12m == 2
        assert features.frequency_24m == 3
        assert features.frequency_lifetime == 3
        assert features.revenue_12m == 8589.0
        assert features.revenue_24m == 9388.0
        assert features.margin_24m == 2347.0
        assert features.tire_revenue_24m == 6500.0
        assert features.service_revenue_24m == 2888.0
        assert features.largest_tire_order == 6500.0
        assert features.tire_order_count_24m == 1
        assert features.fully_paid_rate == 1.0
        assert features.service_tags == ("shop_tire", "wheel_change", "wheel_storage")

    def test_category_metrics(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        features = {f.user_group_id: f for f in result.features}[1]
        metrics = features.category_metrics

        assert metrics[ServiceCategory.WHEEL_CHANGE].frequency_24m == 2
        assert metrics[ServiceCategory.WHEEL_CHANGE].recency_days == 20
        assert metrics[ServiceCategory.WHEEL_STORAGE].frequency_24m == 1
        assert metrics[ServiceCategory.WHEEL_STORAGE].revenue_24m == 1290.0
        # Unused categories have no recency
        assert metrics[ServiceCategory.CAR_WASH].frequency_24m == 0
        assert metrics[ServiceCategory.CAR_WASH].recency_days is None

    def test_relationship_profile(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        features = {f.user_group_id: f for f in result.features}[1]

        assert features.is_storage_customer
        assert features.is_wheel_change_customer
        assert features.is_tire_buyer
        assert features.is_multi_service
        assert features.service_mix_count == 3
        assert not features.is_fleet_customer
        assert features.primary_category is ServiceCategory.SHOP_TIRE

    def test_discount_lines_excluded_from_revenue(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        fleet = {f.user_group_id: f for f in result.features}[3]

        assert fleet.revenue_24m == 54000.0
        assert fleet.tire_revenue_24m + fleet.service_revenue_24m == pytest.approx(
            fleet.revenue_24m
        )
        assert fleet.discount_share_24m == pytest.approx(0.0167)

    def test_fleet_size_counts_distinct_vehicles(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        fleet = {f.user_group_id: f for f in result.features}[3]
        assert fleet.fleet_size == 60
        assert fleet.largest_tire_order == 9000.0

    def test_bookings_outside_24_months_only_count_for_lifetime(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        churned = {f.user_group_id: f for f in result.features}[4]

        assert churned.frequency_24m == 1
        assert churned.frequency_lifetime == 2
        assert churned.revenue_lifetime == 3299.0
        assert churned.category_metrics[ServiceCategory.CAR_REPAIR].frequency_24m == 0

    def test_longer_windows_nest(self, make_booking, make_line, as_of):
        bookings = [
            make_booking(1, 1, 1600),
            make_booking(2, 1, 1300),
            make_booking(3, 1, 1000),
            make_booking(4, 1, 10),
        ]
        lines = [make_line(i, 1000.0 * i, "Verksted") for i in range(1, 5)]
        features = FeatureAggregator().aggregate([1], bookings, lines, as_of=as_of).features[0]

        assert (features.frequency_12m, features.frequency_24m) == (1, 1)
        assert features.frequency_36m == 2
        assert features.frequency_48m == 3
        assert features.frequency_lifetime == 4
        assert features.revenue_36m == 7000.0
        assert features.revenue_48m == 9000.0
        assert features.margin_48m == 2250.0
        assert features.revenue_lifetime == 10000.0
        row = features.as_dict()
        assert row["frequency_36m"] == 2
        assert row["revenue_48m"] == 9000.0

    def test_customer_without_bookings_is_skipped(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        assert result.skipped == [5]
        assert [f.user_group_id for f in result.features] == [1, 2, 3, 4]

    def test_cancelled_bookings_are_ignored(self, make_booking, make_line, as_of):
        bookings = [
            make_booking(1, 1, 30),
            make_booking(2, 1, 5, is_cancelled=True),
        ]
        lines = [make_line(1, 500.0), make_line(2, 9999.0)]
        result = FeatureAggregator().aggregate([1], bookings, lines, as_of=as_of)
        (features,) = result.features

        assert features.recency_days == 30
        assert features.frequency_lifetime == 1
        assert features.revenue_24m == 500.0

    def test_only_cancelled_bookings_is_skipped(self, make_booking, as_of):
        bookings = [make_booking(1, 1, 30, is_cancelled=True)]
        result = FeatureAggregator().aggregate([1], bookings, [], as_of=as_of)
        assert result.features == []
        assert result.skipped == [1]

    def test_bad_timestamp_skips_only_that_customer(self, make_booking, as_of):
        bookings = [
            make_booking(1, 1, 30, started_at="not a date"),
            make_booking(2, 2, 30),
        ]
        result = FeatureAggregator().aggregate([1, 2], bookings, [], as_of=as_of)

        assert [f.user_group_id for f in result.features] == [2]
        assert 1 in result.failed
        assert "Unparseable started_at" in result.failed[1]

    def test_future_booking_clamps_recency(self, make_booking, as_of):
        result = FeatureAggregator().aggregate(
            [1], [make_booking(1, 1, -5)], [], as_of=as_of
        )
        (features,) = result.features
        assert features.recency_days == 0
        assert features.tenure_days == 0

    def test_storage_flag_is_passed_through(self, make_booking, as_of):
        result = FeatureAggregator().aggregate(
            [1], [make_booking(1, 1, 30)], [], as_of=as_of, storage_flags={1: True}
        )
        (features,) = result.features
        assert features.storage_active
        assert features.is_storage_customer

    def test_margin_percentage(self, make_booking, make_line, as_of):
        result = FeatureAggregator(margin_pct=40.0).aggregate(
            [1], [make_booking(1, 1, 30)], [make_line(1, 1000.0)], as_of=as_of
        )
        assert result.features[0].margin_24m == 400.0

    def test_reruns_are_identical(self, small_dataset, as_of):
        first = _aggregate(small_dataset, as_of)
        second = _aggregate(small_dataset, as_of)
        assert [f.as_dict() for f in first.features] == [f.as_dict() for f in second.features]

    def test_parallel_matches_serial(self, small_dataset, as_of):
        serial = _aggregate(small_dataset, as_of, parallel=False)
        parallel = _aggregate(small_dataset, as_of, parallel_threshold=1, n_workers=2)
        assert [f.as_dict() for f in parallel.features] == [
            f.as_dict() for f in serial.features
        ]
        assert parallel.skipped == serial.skipped


class TestSeasonalStatus:
    def test_recent_wheel_change(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        features = {f.user_group_id: f for f in result.features}[1]

        assert features.seasonal_status == SeasonalStatus.RECENTLY_SERVICED.value
        assert features.last_wheel_change_at == as_of - timedelta(days=20)
        assert features.seasonal_due_at == datetime(2025, 11, 12, 12, 0, tzinfo=timezone.utc)

    def test_overdue_wheel_change(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        churned = {f.user_group_id: f for f in result.features}[4]
        assert churned.seasonal_status == SeasonalStatus.DUE.value

    def test_no_wheel_change_history(self, make_booking, make_line, as_of):
        result = FeatureAggregator().aggregate(
            [1], [make_booking(1, 1, 30)], [make_line(1, 349.0, "Vask")], as_of=as_of
        )
        assert result.features[0].seasonal_status == SeasonalStatus.NO_HISTORY.value


class TestFeatureRecordInvariants:
    def test_negative_recency_raises(self, make_features):
        with pytest.raises(ValueError, match="Recency cannot be negative"):
            make_features(recency_days=-1)

    def test_category_without_frequency_cannot_have_recency(self):
        with pytest.raises(ValueError, match="zero frequency must have null recency"):
            CategoryMetrics(frequency_24m=0, recency_days=3)

    def test_category_revenue_bounded_by_total(self, make_features):
        features = make_features(revenue_24m=100.0)
        metrics = dict(features.category_metrics)
        metrics[ServiceCategory.CAR_REPAIR] = CategoryMetrics(
            frequency_24m=1, revenue_24m=500.0, recency_days=1
        )
        row = features.as_dict()
        row["category_metrics"] = {c.value: m.as_dict() for c, m in metrics.items()}
        with pytest.raises(ValueError, match="exceeds revenue_24m"):
            CustomerFeatures.from_dict(row)

    def test_window_frequencies_must_nest(self, make_features):
        row = make_features(frequency_24m=3).as_dict()
        row["frequency_36m"] = 1
        with pytest.raises(ValueError, match="Window frequencies must nest"):
            CustomerFeatures.from_dict(row)

    def test_stored_row_rebuilds_same_record(self, small_dataset, as_of):
        result = _aggregate(small_dataset, as_of)
        for features in result.features:
            assert CustomerFeatures.from_dict(features.as_dict()) == features


class TestFeaturesToDataFrame:
    def test_columns(self, make_features):
        frame = features_to_dataframe([make_features(1), make_features(2)])
        assert list(frame.columns) == FEATURE_FRAME_COLUMNS
        assert frame["user_group_id"].tolist() == [1, 2]

    def test_empty(self):
        frame = features_to_dataframe([])
        assert frame.empty
        assert list(frame.columns) == FEATURE_FRAME_COLUMNS
