"""Per-customer feature aggregation from bookings and order lines.

Each customer (user group) gets one feature record per run, built from all
of its bookings. Windows are trailing from ``as_of``: 12, 24, 36 and 48 months
(365, 730, 1095 and 1460 days) and lifetime. Order lines are tagged into a closed set
of service categories by keyword rules, which lets us track category mix,
tire vs service revenue and the seasonal wheel-change cycle.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence

import pandas as pd

from customer_tiering.foundation.customer_contract import (
    Booking,
    OrderLine,
    parse_booking,
    parse_order_line,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

WINDOW_12M_DAYS = 365
WINDOW_24M_DAYS = 730
WINDOW_36M_DAYS = 1095
WINDOW_48M_DAYS = 1460
DAYS_PER_MONTH = 30.4375
SEASONAL_CYCLE_MONTHS = 6
FLEET_WASH_THRESHOLD = 2  # more than two washes in 24 months
MULTI_SERVICE_MIN_CATEGORIES = 2
MONEY_PRECISION = Decimal("0.01")
SHARE_PRECISION = 4


class ServiceCategory(str, Enum):
    """Closed set of service categories an order line can be tagged with."""

    WHEEL_CHANGE = "wheel_change"
    WHEEL_STORAGE = "wheel_storage"
    CAR_WASH = "car_wash"
    CAR_REPAIR = "car_repair"
    SHOP_TIRE = "shop_tire"


# Evaluated in order, first match wins. Wheel change must precede tire shop
# because "dekkskift" also contains "dekk".
CATEGORY_KEYWORD_RULES: tuple[tuple[ServiceCategory, tuple[str, ...]], ...] = (
    (
        ServiceCategory.WHEEL_CHANGE,
        ("dekkskift", "hjulskift", "hjulbytte", "wheel change", "tire change", "tyre change"),
    ),
    (
        ServiceCategory.WHEEL_STORAGE,
        ("dekkhotell", "dekklagring", "hjullagring", "lagring", "storage"),
    ),
    (ServiceCategory.CAR_WASH, ("vask", "wash", "polering")),
    (ServiceCategory.CAR_REPAIR, ("reparasjon", "verksted", "repair", "eu-kontroll")),
    (ServiceCategory.SHOP_TIRE, ("dekk", "tire", "tyre", "felg")),
)


def categorize_line(description: str) -> ServiceCategory | None:
    """Return the first category whose keywords appear in ``description``."""
    text = description.lower()
    for category, keywords in CATEGORY_KEYWORD_RULES:
        if any(keyword in text for keyword in keywords):
            return category
    return None


class SeasonalStatus(str, Enum):
    NO_HISTORY = "No Tire Service History"
    RECENTLY_SERVICED = "Recently Serviced"
    ON_SCHEDULE = "On Schedule"
    DUE = "Due for Seasonal Change"


@dataclass(frozen=True)
class CategoryMetrics:
    """24-month metrics for one service category.

    Attributes
    ----------
    frequency_24m:
        Number of bookings with at least one line in this category
    revenue_24m:
        Gross amount of this category's lines
    margin_24m:
        ``revenue_24m`` times the configured margin percentage
    last_booking_at:
        Most recent booking containing this category, ``None`` if never
    recency_days:
        Days from ``last_booking_at`` to the run date, ``None`` if never
    """

    frequency_24m: int = 0
    revenue_24m: float = 0.0
    margin_24m: float = 0.0
    last_booking_at: datetime | None = None
    recency_days: int | None = None

    def __post_init__(self) -> None:
        if self.frequency_24m < 0:
            raise ValueError(f"Category frequency cannot be negative: {self.frequency_24m}")
        if self.frequency_24m == 0 and self.recency_days is not None:
            raise ValueError("A category with zero frequency must have null recency")

    def as_dict(self) -> dict[str, Any]:
        return {
            "frequency_24m": self.frequency_24m,
            "revenue_24m": self.revenue_24m,
            "margin_24m": self.margin_24m,
            "last_booking_at": _iso(self.last_booking_at),
            "recency_days": self.recency_days,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CategoryMetrics":
        return cls(
            frequency_24m=int(payload.get("frequency_24m", 0)),
            revenue_24m=float(payload.get("revenue_24m", 0.0)),
            margin_24m=float(payload.get("margin_24m", 0.0)),
            last_booking_at=parse_timestamp(
                payload.get("last_booking_at"), field_name="last_booking_at"
            ),
            recency_days=payload.get("recency_days"),
        )


def _empty_category_metrics() -> dict[ServiceCategory, CategoryMetrics]:
    return {category: CategoryMetrics() for category in ServiceCategory}


@dataclass(frozen=True)
class CustomerFeatures:
    """Feature vector for one customer, owned by the feature stage.

    Revenue figures are gross order-line amounts excluding discount lines,
    so ``tire_revenue_24m + service_revenue_24m == revenue_24m``.
    """

    user_group_id: int
    computed_at: datetime
    first_booking_at: datetime
    last_booking_at: datetime
    recency_days: int
    tenure_days: int
    frequency_12m: int
    revenue_12m: float
    margin_12m: float
    frequency_24m: int
    revenue_24m: float
    margin_24m: float
    frequency_36m: int
    revenue_36m: float
    margin_36m: float
    frequency_48m: int
    revenue_48m: float
    margin_48m: float
    frequency_lifetime: int
    revenue_lifetime: float
    margin_lifetime: float
    tire_revenue_24m: float
    service_revenue_24m: float
    tire_revenue_lifetime: float
    service_revenue_lifetime: float
    largest_tire_order: float
    tire_order_count_24m: int
    discount_share_24m: float
    fully_paid_rate: float
    fleet_size: int
    storage_active: bool
    category_metrics: Mapping[ServiceCategory, CategoryMetrics] = field(
        default_factory=_empty_category_metrics
    )
    service_tags: tuple[str, ...] = ()
    last_wheel_change_at: datetime | None = None
    seasonal_due_at: datetime | None = None
    seasonal_status: str = SeasonalStatus.NO_HISTORY.value

    def __post_init__(self) -> None:
        if self.recency_days < 0:
            raise ValueError(
                f"Recency cannot be negative: {self.recency_days} (user_group_id={self.user_group_id})"
            )
        if self.frequency_lifetime <= 0:
            raise ValueError(
                f"Lifetime frequency must be positive: {self.frequency_lifetime} "
                f"(user_group_id={self.user_group_id})"
            )
        if not (
            self.frequency_12m
            <= self.frequency_24m
            <= self.frequency_36m
            <= self.frequency_48m
            <= self.frequency_lifetime
        ):
            raise ValueError(
                f"Window frequencies must nest: 12m={self.frequency_12m}, "
                f"24m={self.frequency_24m}, 36m={self.frequency_36m}, "
                f"48m={self.frequency_48m}, lifetime={self.frequency_lifetime} "
                f"(user_group_id={self.user_group_id})"
            )
        category_revenue = sum(m.revenue_24m for m in self.category_metrics.values())
        if category_revenue > self.revenue_24m + 0.01:
            raise ValueError(
                f"Category revenue ({category_revenue}) exceeds revenue_24m "
                f"({self.revenue_24m}) (user_group_id={self.user_group_id})"
            )
        if set(self.category_metrics) != set(ServiceCategory):
            raise ValueError(
                f"category_metrics must cover every ServiceCategory "
                f"(user_group_id={self.user_group_id})"
            )

    @property
    def tenure_months(self) -> int:
        return int(self.tenure_days / DAYS_PER_MONTH)

    def _frequency(self, category: ServiceCategory) -> int:
        return self.category_metrics[category].frequency_24m

    @property
    def is_storage_customer(self) -> bool:
        return self.storage_active or self._frequency(ServiceCategory.WHEEL_STORAGE) > 0

    @property
    def is_fleet_customer(self) -> bool:
        return self._frequency(ServiceCategory.CAR_WASH) > FLEET_WASH_THRESHOLD

    @property
    def is_wheel_change_customer(self) -> bool:
        return self._frequency(ServiceCategory.WHEEL_CHANGE) > 0

    @property
    def is_tire_buyer(self) -> bool:
        return self._frequency(ServiceCategory.SHOP_TIRE) > 0

    @property
    def service_mix_count(self) -> int:
        return sum(1 for m in self.category_metrics.values() if m.frequency_24m > 0)

    @property
    def is_multi_service(self) -> bool:
        return self.service_mix_count >= MULTI_SERVICE_MIN_CATEGORIES

    @property
    def primary_category(self) -> ServiceCategory:
        """Category with the highest 24-month revenue (ties keep enum order)."""
        best = ServiceCategory.WHEEL_CHANGE
        for category in ServiceCategory:
            if self.category_metrics[category].revenue_24m > self.category_metrics[best].revenue_24m:
                best = category
        return best

    def as_dict(self) -> dict[str, Any]:
        """Return the JSON-serialisable feature row."""
        return {
            "user_group_id": self.user_group_id,
            "computed_at": _iso(self.computed_at),
            "first_booking_at": _iso(self.first_booking_at),
            "last_booking_at": _iso(self.last_booking_at),
            "recency_days": self.recency_days,
            "tenure_days": self.tenure_days,
            "tenure_months": self.tenure_months,
            "frequency_12m": self.frequency_12m,
            "revenue_12m": self.revenue_12m,
            "margin_12m": self.margin_12m,
            "frequency_24m": self.frequency_24m,
            "revenue_24m": self.revenue_24m,
            "margin_24m": self.margin_24m,
            "frequency_36m": self.frequency_36m,
            "revenue_36m": self.revenue_36m,
            "margin_36m": self.margin_36m,
            "frequency_48m": self.frequency_48m,
            "revenue_48m": self.revenue_48m,
            "margin_48m": self.margin_48m,
            "frequency_lifetime": self.frequency_lifetime,
            "revenue_lifetime": self.revenue_lifetime,
            "margin_lifetime": self.margin_lifetime,
            "tire_revenue_24m": self.tire_revenue_24m,
            "service_revenue_24m": self.service_revenue_24m,
            "tire_revenue_lifetime": self.tire_revenue_lifetime,
            "service_revenue_lifetime": self.service_revenue_lifetime,
            "largest_tire_order": self.largest_tire_order,
            "tire_order_count_24m": self.tire_order_count_24m,
            "discount_share_24m": self.discount_share_24m,
            "fully_paid_rate": self.fully_paid_rate,
            "fleet_size": self.fleet_size,
            "storage_active": self.storage_active,
            "category_metrics": {
                category.value: metrics.as_dict()
                for category, metrics in self.category_metrics.items()
            },
            "service_tags": list(self.service_tags),
            "last_wheel_change_at": _iso(self.last_wheel_change_at),
            "seasonal_due_at": _iso(self.seasonal_due_at),
            "seasonal_status": self.seasonal_status,
            "is_storage_customer": self.is_storage_customer,
            "is_fleet_customer": self.is_fleet_customer,
            "is_wheel_change_customer": self.is_wheel_change_customer,
            "is_tire_buyer": self.is_tire_buyer,
            "is_multi_service": self.is_multi_service,
            "service_mix_count": self.service_mix_count,
            "primary_category": self.primary_category.value,
        }

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> "CustomerFeatures":
        """Rebuild a feature record from a stored row (derived keys are ignored)."""

        def ts(key: str) -> datetime | None:
            return parse_timestamp(row.get(key), field_name=key)

        raw_metrics = row.get("category_metrics") or {}
        category_metrics = {
            category: CategoryMetrics.from_dict(raw_metrics.get(category.value, {}))
            for category in ServiceCategory
        }
        return cls(
            user_group_id=int(row["user_group_id"]),
            computed_at=ts("computed_at"),
            first_booking_at=ts("first_booking_at"),
            last_booking_at=ts("last_booking_at"),
            recency_days=int(row["recency_days"]),
            tenure_days=int(row["tenure_days"]),
            frequency_12m=int(row["frequency_12m"]),
            revenue_12m=float(row["revenue_12m"]),
            margin_12m=float(row["margin_12m"]),
            frequency_24m=int(row["frequency_24m"]),
            revenue_24m=float(row["revenue_24m"]),
            margin_24m=float(row["margin_24m"]),
            frequency_36m=int(row["frequency_36m"]),
            revenue_36m=float(row["revenue_36m"]),
            margin_36m=float(row["margin_36m"]),
            frequency_48m=int(row["frequency_48m"]),
            revenue_48m=float(row["revenue_48m"]),
            margin_48m=float(row["margin_48m"]),
            frequency_lifetime=int(row["frequency_lifetime"]),
            revenue_lifetime=float(row["revenue_lifetime"]),
            margin_lifetime=float(row["margin_lifetime"]),
            tire_revenue_24m=float(row["tire_revenue_24m"]),
            service_revenue_24m=float(row["service_revenue_24m"]),
            tire_revenue_lifetime=float(row["tire_revenue_lifetime"]),
            service_revenue_lifetime=float(row["service_revenue_lifetime"]),
            largest_tire_order=float(row["largest_tire_order"]),
            tire_order_count_24m=int(row["tire_order_count_24m"]),
            discount_share_24m=float(row["discount_share_24m"]),
            fully_paid_rate=float(row["fully_paid_rate"]),
            fleet_size=int(row["fleet_size"]),
            storage_active=bool(row["storage_active"]),
            category_metrics=category_metrics,
            service_tags=tuple(row.get("service_tags") or ()),
            last_wheel_change_at=ts("last_wheel_change_at"),
            seasonal_due_at=ts("seasonal_due_at"),
            seasonal_status=str(row.get("seasonal_status") or SeasonalStatus.NO_HISTORY.value),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _money(value: Decimal) -> float:
    return float(value.quantize(MONEY_PRECISION, rounding=ROUND_HALF_UP))


def _days_between(later: datetime, earlier: datetime) -> int:
    # Bookings scheduled after the run date count as "today".
    return max(0, (later - earlier).days)


def _add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp to the last day of the target month
    next_month = datetime(year + (month // 12), month % 12 + 1, 1, tzinfo=dt.tzinfo)
    last_day = (next_month - timedelta(days=1)).day
    return dt.replace(year=year, month=month, day=min(dt.day, last_day))


@dataclass
class _WindowTotals:
    frequency: int = 0
    revenue: Decimal = Decimal("0")
    tire_revenue: Decimal = Decimal("0")
    service_revenue: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    tire_orders: int = 0
    largest_tire_order: Decimal = Decimal("0")

    def add_booking(self, lines: Sequence[OrderLine]) -> None:
        self.frequency += 1
        booking_tire_total = Decimal("0")
        for line in lines:
            if line.is_discount:
                self.discount += abs(line.amount_gross)
                continue
            self.revenue += line.amount_gross
            if categorize_line(line.description) is ServiceCategory.SHOP_TIRE:
                self.tire_revenue += line.amount_gross
                booking_tire_total += line.amount_gross
            else:
                self.service_revenue += line.amount_gross
        if booking_tire_total > 0:
            self.tire_orders += 1
            self.largest_tire_order = max(self.largest_tire_order, booking_tire_total)


def compute_customer_features(
    user_group_id: int,
    bookings: Sequence[Booking],
    lines_by_booking: Mapping[int, Sequence[OrderLine]],
    *,
    as_of: datetime,
    storage_active: bool = False,
    margin_pct: float = 25.0,
) -> Optional[CustomerFeatures]:
    """Aggregate one customer's bookings into a :class:`CustomerFeatures`.

    Cancelled bookings and bookings without any timestamp are ignored.
    Returns ``None`` when nothing is left, since a user group without a
    booking is not yet a customer.
    """
    dated = [
        (booking.effective_ts, booking)
        for booking in bookings
        if not booking.is_cancelled and booking.effective_ts is not None
    ]
    if not dated:
        return None
    # booking_id breaks ties so output never depends on input order
    dated.sort(key=lambda item: (item[0], item[1].booking_id))

    margin_rate = Decimal(str(margin_pct)) / Decimal("100")
    cutoff_12m = as_of - timedelta(days=WINDOW_12M_DAYS)
    cutoff_24m = as_of - timedelta(days=WINDOW_24M_DAYS)
    cutoff_36m = as_of - timedelta(days=WINDOW_36M_DAYS)
    cutoff_48m = as_of - timedelta(days=WINDOW_48M_DAYS)

    totals_12m = _WindowTotals()
    totals_24m = _WindowTotals()
    totals_36m = _WindowTotals()
    totals_48m = _WindowTotals()
    totals_lifetime = _WindowTotals()

    category_frequency = {category: 0 for category in ServiceCategory}
    category_revenue = {category: Decimal("0") for category in ServiceCategory}
    category_last = {category: None for category in ServiceCategory}
    tags: set[str] = set()
    car_ids: set[int] = set()
    last_wheel_change_at: datetime | None = None
    fully_paid = 0

    for booked_at, booking in dated:
        lines = lines_by_booking.get(booking.booking_id, ())
        car_ids.update(booking.car_ids)
        if booking.is_fully_paid:
            fully_paid += 1

        totals_lifetime.add_booking(lines)
        if booked_at >= cutoff_48m:
            totals_48m.add_booking(lines)
        if booked_at >= cutoff_36m:
            totals_36m.add_booking(lines)
        if booked_at >= cutoff_24m:
            totals_24m.add_booking(lines)
        if booked_at >= cutoff_12m:
            totals_12m.add_booking(lines)

        booking_categories: set[ServiceCategory] = set()
        for line in lines:
            if line.is_discount:
                continue
            category = categorize_line(line.description)
            if category is None:
                continue
            tags.add(category.value)
            booking_categories.add(category)
            if booked_at >= cutoff_24m:
                category_revenue[category] += line.amount_gross

        if ServiceCategory.WHEEL_CHANGE in booking_categories:
            last_wheel_change_at = booked_at
        if booked_at >= cutoff_24m:
            for category in booking_categories:
                category_frequency[category] += 1
                category_last[category] = booked_at  # bookings are sorted

    category_metrics = {}
    for category in ServiceCategory:
        last = category_last[category]
        revenue = category_revenue[category]
        category_metrics[category] = CategoryMetrics(
            frequency_24m=category_frequency[category],
            revenue_24m=_money(revenue),
            margin_24m=_money(revenue * margin_rate),
            last_booking_at=last,
            recency_days=_days_between(as_of, last) if last is not None else None,
        )

    first_booking_at = dated[0][0]
    last_booking_at = dated[-1][0]

    gross_24m = totals_24m.revenue
    discount_share = (
        round(float(totals_24m.discount / gross_24m), SHARE_PRECISION)
        if gross_24m > 0
        else 0.0
    )

    anchor = last_wheel_change_at or last_booking_at
    seasonal_due_at = _add_months(anchor, SEASONAL_CYCLE_MONTHS)
    if last_wheel_change_at is None:
        seasonal_status = SeasonalStatus.NO_HISTORY
    else:
        months_since = _days_between(as_of, last_wheel_change_at) / DAYS_PER_MONTH
        if months_since < 3:
            seasonal_status = SeasonalStatus.RECENTLY_SERVICED
        elif months_since > SEASONAL_CYCLE_MONTHS:
            seasonal_status = SeasonalStatus.DUE
        else:
            seasonal_status = SeasonalStatus.ON_SCHEDULE

    return CustomerFeatures(
        user_group_id=user_group_id,
        computed_at=as_of,
        first_booking_at=first_booking_at,
        last_booking_at=last_booking_at,
        recency_days=_days_between(as_of, last_booking_at),
        tenure_days=_days_between(as_of, first_booking_at),
        frequency_12m=totals_12m.frequency,
        revenue_12m=_money(totals_12m.revenue),
        margin_12m=_money(totals_12m.revenue * margin_rate),
        frequency_24m=totals_24m.frequency,
        revenue_24m=_money(totals_24m.revenue),
        margin_24m=_money(totals_24m.revenue * margin_rate),
        frequency_36m=totals_36m.frequency,
        revenue_36m=_money(totals_36m.revenue),
        margin_36m=_money(totals_36m.revenue * margin_rate),
        frequency_48m=totals_48m.frequency,
        revenue_48m=_money(totals_48m.revenue),
        margin_48m=_money(totals_48m.revenue * margin_rate),
        frequency_lifetime=totals_lifetime.frequency,
        revenue_lifetime=_money(totals_lifetime.revenue),
        margin_lifetime=_money(totals_lifetime.revenue * margin_rate),
        tire_revenue_24m=_money(totals_24m.tire_revenue),
        service_revenue_24m=_money(totals_24m.service_revenue),
        tire_revenue_lifetime=_money(totals_lifetime.tire_revenue),
        service_revenue_lifetime=_money(totals_lifetime.service_revenue),
        largest_tire_order=_money(totals_lifetime.largest_tire_order),
        tire_order_count_24m=totals_24m.tire_orders,
        discount_share_24m=discount_share,
        fully_paid_rate=round(fully_paid / len(dated), SHARE_PRECISION),
        fleet_size=len(car_ids),
        storage_active=storage_active,
        category_metrics=category_metrics,
        service_tags=tuple(sorted(tags)),
        last_wheel_change_at=last_wheel_change_at,
        seasonal_due_at=seasonal_due_at,
        seasonal_status=seasonal_status.value,
    )


@dataclass
class AggregationResult:
    """Outcome of one aggregation batch.

    Attributes
    ----------
    features:
        Feature records, sorted by user_group_id
    skipped:
        Customers without any usable booking
    failed:
        Customers whose input could not be parsed, with the error message
    """

    features: list[CustomerFeatures] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    def merge(self, other: "AggregationResult") -> None:
        self.features.extend(other.features)
        self.skipped.extend(other.skipped)
        self.failed.update(other.failed)


# (user_group_id, raw booking rows, raw order-line rows for those bookings)
_CustomerInput = tuple[int, list[Mapping[str, Any]], list[Mapping[str, Any]]]


def _aggregate_chunk(
    chunk: Sequence[_CustomerInput],
    storage_flags: Mapping[int, bool],
    as_of: datetime,
    margin_pct: float,
) -> AggregationResult:
    """Aggregate a chunk of customers.

    Module-level so it can be dispatched to multiprocessing workers.
    """
    result = AggregationResult()
    for user_group_id, raw_bookings, raw_lines in chunk:
        try:
            bookings = [parse_booking(row) for row in raw_bookings]
            lines_by_booking: dict[int, list[OrderLine]] = {}
            for row in raw_lines:
                line = parse_order_line(row)
                lines_by_booking.setdefault(line.booking_id, []).append(line)
            features = compute_customer_features(
                user_group_id,
                bookings,
                lines_by_booking,
                as_of=as_of,
                storage_active=bool(storage_flags.get(user_group_id, False)),
                margin_pct=margin_pct,
            )
        except (ValueError, TypeError, KeyError, ArithmeticError) as exc:
            result.failed[user_group_id] = str(exc)
            continue
        if features is None:
            result.skipped.append(user_group_id)
        else:
            result.features.append(features)
    return result


class FeatureAggregator:
    """Build feature records for a population of customers.

    Customers are independent, so large populations are split into chunks
    and processed with a ``multiprocessing.Pool``. Below
    ``parallel_threshold`` everything runs in-process.
    """

    def __init__(
        self,
        margin_pct: float = 25.0,
        *,
        parallel: bool = True,
        parallel_threshold: int = 50_000,
        n_workers: int | None = None,
    ) -> None:
        self.margin_pct = margin_pct
        self.parallel = parallel
        self.parallel_threshold = parallel_threshold
        self.n_workers = n_workers

    def aggregate(
        self,
        customer_ids: Iterable[int],
        bookings: Iterable[Mapping[str, Any]],
        order_lines: Iterable[Mapping[str, Any]],
        *,
        as_of: datetime,
        storage_flags: Mapping[int, bool] | None = None,
    ) -> AggregationResult:
        """Aggregate raw booking and order-line rows per customer.

        Parameters
        ----------
        customer_ids:
            Customers to compute features for. Bookings of other customers
            are ignored.
        bookings:
            Raw booking rows (must carry ``user_group_id``)
        order_lines:
            Raw order-line rows (must carry ``booking_id``)
        as_of:
            Run date that recency and windows are measured from
        storage_flags:
            External storage-contract status per customer
        """
        storage_flags = dict(storage_flags or {})
        wanted = sorted(set(customer_ids))
        wanted_set = set(wanted)

        bookings_by_customer: dict[int, list[Mapping[str, Any]]] = {}
        booking_owner: dict[Any, int] = {}
        for row in bookings:
            owner = row.get("user_group_id")
            if owner is None:
                continue
            try:
                owner = int(owner)
            except (TypeError, ValueError):
                logger.warning("Ignoring booking with invalid user_group_id %r", owner)
                continue
            if owner not in wanted_set:
                continue
            bookings_by_customer.setdefault(owner, []).append(row)
            booking_owner[row.get("id", row.get("booking_id"))] = owner

        lines_by_customer: dict[int, list[Mapping[str, Any]]] = {}
        for row in order_lines:
            owner = booking_owner.get(row.get("booking_id"))
            if owner is not None:
                lines_by_customer.setdefault(owner, []).append(row)

        inputs: list[_CustomerInput] = [
            (cid, bookings_by_customer.get(cid, []), lines_by_customer.get(cid, []))
            for cid in wanted
        ]

        use_parallel = self.parallel and len(inputs) >= self.parallel_threshold
        if use_parallel:
            workers = max(1, self.n_workers) if self.n_workers else (os.cpu_count() or 1)
            chunk_size = max(1, len(inputs) // workers)
            chunks = [
                (inputs[i : i + chunk_size], storage_flags, as_of, self.margin_pct)
                for i in range(0, len(inputs), chunk_size)
            ]
            logger.info(
                "Aggregating %d customers in %d chunks across %d workers",
                len(inputs),
                len(chunks),
                workers,
            )
            with multiprocessing.Pool(processes=workers) as pool:
                chunk_results = pool.starmap(_aggregate_chunk, chunks)
            result = AggregationResult()
            for chunk_result in chunk_results:
                result.merge(chunk_result)
        else:
            result = _aggregate_chunk(inputs, storage_flags, as_of, self.margin_pct)

        for user_group_id, message in sorted(result.failed.items()):
            logger.warning("Skipping customer %s: %s", user_group_id, message)
        if result.skipped:
            logger.info("%d user groups have no bookings yet", len(result.skipped))

        result.features.sort(key=lambda f: f.user_group_id)
        result.skipped.sort()
        return result


FEATURE_FRAME_COLUMNS = [
    "user_group_id",
    "recency_days",
    "frequency_24m",
    "revenue_24m",
    "frequency_lifetime",
    "tenure_days",
    "largest_tire_order",
    "fleet_size",
    "storage_active",
    "is_storage_customer",
    "is_fleet_customer",
    "is_multi_service",
]


def features_to_dataframe(features: Sequence[CustomerFeatures]) -> pd.DataFrame:
    """Convert feature records into the frame used by population scorers."""
    if not features:
        return pd.DataFrame(columns=FEATURE_FRAME_COLUMNS)

    rows = [
        {
            "user_group_id": f.user_group_id,
            "recency_days": f.recency_days,
            "frequency_24m": f.frequency_24m,
            "revenue_24m": f.revenue_24m,
            "frequency_lifetime": f.frequency_lifetime,
            "tenure_days": f.tenure_days,
            "largest_tire_order": f.largest_tire_order,
            "fleet_size": f.fleet_size,
            "storage_active": f.storage_active,
            "is_storage_customer": f.is_storage_customer,
            "is_fleet_customer": f.is_fleet_customer,
            "is_multi_service": f.is_multi_service,
        }
        for f in features
    ]
    df = pd.DataFrame(rows, columns=FEATURE_FRAME_COLUMNS)
    return df.sort_values("user_group_id").reset_index(drop=True)
