"""Shared builders for classification tests."""

from datetime import datetime, timedelta, timezone

import pytest

from customer_tiering.config import THRESHOLDS_SETTING_KEY, ThresholdConfig
from customer_tiering.foundation.features import (
    CategoryMetrics,
    CustomerFeatures,
    ServiceCategory,
)
from customer_tiering.storage import InMemoryStore

AS_OF = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def days_before(days, as_of=AS_OF):
    return as_of - timedelta(days=days)


def build_features(
    user_group_id=1,
    *,
    recency_days=10,
    tenure_days=400,
    frequency_24m=3,
    revenue_24m=3000.0,
    frequency_lifetime=None,
    storage_active=False,
    fleet_size=1,
    largest_tire_order=0.0,
    category_frequency=None,
    as_of=AS_OF,
):
    """Build a consistent :class:`CustomerFeatures` without going through bookings.

    ``category_frequency`` maps :class:`ServiceCategory` to a 24-month
    booking count; those categories get zero revenue so the revenue
    invariants always hold.
    """
    frequency_lifetime = frequency_lifetime or max(frequency_24m, 1)
    last_booking_at = days_before(recency_days, as_of)
    metrics = {}
    for category in ServiceCategory:
        count = (category_frequency or {}).get(category, 0)
        metrics[category] = CategoryMetrics(
            frequency_24m=count,
            last_booking_at=last_booking_at if count else None,
            recency_days=recency_days if count else None,
        )
    return CustomerFeatures(
        user_group_id=user_group_id,
        computed_at=as_of,
        first_booking_at=days_before(tenure_days, as_of),
        last_booking_at=last_booking_at,
        recency_days=recency_days,
        tenure_days=tenure_days,
        frequency_12m=min(frequency_24m, frequency_lifetime),
        revenue_12m=revenue_24m,
        margin_12m=round(revenue_24m * 0.25, 2),
        frequency_24m=min(frequency_24m, frequency_lifetime),
        revenue_24m=revenue_24m,
        margin_24m=round(revenue_24m * 0.25, 2),
        frequency_36m=min(frequency_24m, frequency_lifetime),
        revenue_36m=revenue_24m,
        margin_36m=round(revenue_24m * 0.25, 2),
        frequency_48m=min(frequency_24m, frequency_lifetime),
        revenue_48m=revenue_24m,
        margin_48m=round(revenue_24m * 0.25, 2),
        frequency_lifetime=frequency_lifetime,
        revenue_lifetime=revenue_24m,
        margin_lifetime=round(revenue_24m * 0.25, 2),
        tire_revenue_24m=0.0,
        service_revenue_24m=revenue_24m,
        tire_revenue_lifetime=0.0,
        service_revenue_lifetime=revenue_24m,
        largest_tire_order=largest_tire_order,
        tire_order_count_24m=0,
        discount_share_24m=0.0,
        fully_paid_rate=1.0,
        fleet_size=fleet_size,
        storage_active=storage_active,
        category_metrics=metrics,
    )


def booking_row(booking_id, user_group_id, days_ago, *, as_of=AS_OF, **extra):
    row = {
        "id": booking_id,
        "user_group_id": user_group_id,
        "started_at": days_before(days_ago, as_of).isoformat(),
        "is_completed": True,
        "is_cancelled": False,
        "is_fully_paid": True,
        "car_ids": [user_group_id * 100],
    }
    row.update(extra)
    return row


def line_row(booking_id, amount, description="Dekkskift", *, is_discount=False):
    return {
        "booking_id": booking_id,
        "amount_gross": amount,
        "description": description,
        "currency": "NOK",
        "is_discount": is_discount,
    }


def default_settings():
    return {THRESHOLDS_SETTING_KEY: ThresholdConfig().model_dump()}


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def config():
    return ThresholdConfig()


@pytest.fixture
def make_features():
    return build_features


@pytest.fixture
def make_booking():
    return booking_row


@pytest.fixture
def make_line():
    return line_row


@pytest.fixture
def small_dataset():
    """Four customers covering the main lifecycle paths.

    1: B2C, recent regular (Active)
    2: B2C, single booking 10 days ago (New)
    3: B2B with 60 vehicles, recent (Enterprise)
    4: B2C, last booking 13 months ago (Churned)
    5: B2C, no bookings (skipped)
    """
    customers = [
        {"user_group_id": 1, "org_id": None, "is_personal": True},
        {"user_group_id": 2, "org_id": None, "is_personal": True},
        {"user_group_id": 3, "org_id": 900, "is_personal": False},
        {"user_group_id": 4, "org_id": None, "is_personal": True},
        {"user_group_id": 5, "org_id": None, "is_personal": True},
    ]
    bookings = [
        booking_row(101, 1, 400),
        booking_row(102, 1, 200),
        booking_row(103, 1, 20),
        booking_row(201, 2, 10),
        booking_row(301, 3, 300, car_ids=list(range(3000, 3060))),
        booking_row(302, 3, 15, car_ids=[3000, 3001]),
        booking_row(401, 4, 800),
        booking_row(402, 4, 396),
    ]
    order_lines = [
        line_row(101, 799.0, "Dekkskift"),
        line_row(102, 1290.0, "Dekkhotell sesong"),
        line_row(103, 799.0, "Dekkskift"),
        line_row(103, 6500.0, "Dekk Michelin 4 stk"),
        line_row(201, 349.0, "Bilvask"),
        line_row(301, 45000.0, "Dekkskift flåte"),
        line_row(302, 9000.0, "Dekk vinter"),
        line_row(302, -900.0, "Rabatt", is_discount=True),
        line_row(401, 2500.0, "Verksted reparasjon"),
        line_row(402, 799.0, "Dekkskift"),
    ]
    return {
        "customers": customers,
        "bookings": bookings,
        "order_lines": order_lines,
        "settings": default_settings(),
        "storage_status": [],
    }


@pytest.fixture
def store(small_dataset):
    return InMemoryStore.from_dataset(small_dataset)
