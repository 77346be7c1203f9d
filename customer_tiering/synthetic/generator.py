from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import math
import random
from typing import Any, Dict, List, Optional, Sequence, Tuple

from customer_tiering.config import THRESHOLDS_SETTING_KEY, ThresholdConfig


@dataclass(frozen=True)
class DatasetConfig:
    """Configuration for the synthetic workshop dataset.

    Attributes
    ----------
    n_customers: Number of user groups to generate.
    history_days: How far back acquisition dates are spread.
    b2b_share: Fraction of customers that are organizations.
    storage_share: Fraction of customers with an active storage contract.
    churn_hazard: Monthly probability an active customer stops booking.
    bookings_per_year: Average bookings per active customer per year.
    tire_purchase_prob: Probability a booking includes a tire purchase.
    discount_prob: Probability a booking carries a discount line.
    cancel_prob: Probability a booking is cancelled.
    seed: Optional RNG seed for reproducibility.
    """

    n_customers: int = 200
    history_days: int = 1095
    b2b_share: float = 0.15
    storage_share: float = 0.2
    churn_hazard: float = 0.04
    bookings_per_year: float = 2.5
    tire_purchase_prob: float = 0.25
    discount_prob: float = 0.1
    cancel_prob: float = 0.03
    seed: Optional[int] = None


# (description, mean price NOK)
SERVICE_LINES: Tuple[Tuple[str, float], ...] = (
    ("Dekkskift sommer/vinter", 799.0),
    ("Dekkhotell sesong", 1290.0),
    ("Bilvask utvendig", 349.0),
    ("Verksted reparasjon", 2500.0),
)
TIRE_LINE = ("Dekk 4 stk inkl. montering", 6000.0)
DISCOUNT_DESCRIPTION = "Rabatt"

# (min, max) vehicles per B2B fleet bucket and the bucket weights
_FLEET_BUCKETS: Tuple[Tuple[int, int], ...] = ((1, 10), (20, 45), (50, 90))
_FLEET_WEIGHTS = (0.7, 0.2, 0.1)


def _month_range(start: date, end: date) -> List[date]:
    cur = date(start.year, start.month, 1)
    last = date(end.year, end.month, 1)
    out: List[date] = []
    while cur <= last:
        out.append(cur)
        if cur.month == 12:
            cur = date(cur.year + 1, 1, 1)
        else:
            cur = date(cur.year, cur.month + 1, 1)
    return out


def _poisson(rng: random.Random, lam: float) -> int:
    # Knuth's algorithm; fine for the small lambdas used here
    if lam <= 0:
        return 0
    L = math.exp(-lam)
    k = 0
    p = 1.0
    while p > L:
        k += 1
        p *= rng.random()
    return max(0, k - 1)


def _sample_price(rng: random.Random, mean: float, variability: float = 0.35) -> float:
    sigma = min(max(variability, 0.01), 1.0)
    mu = math.log(max(mean, 0.01)) - 0.5 * sigma * sigma
    return round(max(math.exp(rng.normalvariate(mu, sigma)), 1.0), 2)


def _fleet_for(rng: random.Random, user_group_id: int, is_business: bool) -> List[int]:
    if is_business:
        low, high = rng.choices(_FLEET_BUCKETS, weights=_FLEET_WEIGHTS)[0]
        size = rng.randint(low, high)
    else:
        size = rng.randint(1, 2)
    return [user_group_id * 1000 + i for i in range(size)]


def _order_lines(
    rng: random.Random,
    booking_id: int,
    is_business: bool,
    cars: Sequence[int],
    scenario: DatasetConfig,
) -> List[Dict[str, Any]]:
    lines: List[Dict[str, Any]] = []
    description, mean = rng.choice(SERVICE_LINES)
    lines.append(
        {
            "booking_id": booking_id,
            "amount_gross": round(_sample_price(rng, mean) * len(cars), 2),
            "description": description,
            "currency": "NOK",
            "is_discount": False,
        }
    )
    if rng.random() < scenario.tire_purchase_prob:
        tire_mean = TIRE_LINE[1] * (2.0 if is_business else 1.0)
        lines.append(
            {
                "booking_id": booking_id,
                "amount_gross": _sample_price(rng, tire_mean),
                "description": TIRE_LINE[0],
                "currency": "NOK",
                "is_discount": False,
            }
        )
    if rng.random() < scenario.discount_prob:
        gross = sum(line["amount_gross"] for line in lines)
        lines.append(
            {
                "booking_id": booking_id,
                "amount_gross": -round(gross * 0.1, 2),
                "description": DISCOUNT_DESCRIPTION,
                "currency": "NOK",
                "is_discount": True,
            }
        )
    return lines


def generate_dataset(
    as_of: datetime, scenario: Optional[DatasetConfig] = None
) -> Dict[str, Any]:
    """Generate a dataset that :meth:`InMemoryStore.from_dataset` accepts.

    Customers are acquired uniformly over ``history_days`` before ``as_of``
    and then book at a Poisson rate each month until they churn. The default
    thresholds record is included so the dataset can be classified as is.
    """
    scenario = scenario or DatasetConfig()
    if scenario.n_customers < 0:
        raise ValueError("n_customers must be >= 0")
    if scenario.history_days <= 0:
        raise ValueError("history_days must be positive")
    if as_of.tzinfo is None:
        as_of = as_of.replace(tzinfo=timezone.utc)

    rng = random.Random(scenario.seed)
    start = as_of - timedelta(days=scenario.history_days)
    months = _month_range(start.date(), as_of.date())
    monthly_rate = scenario.bookings_per_year / 12.0

    customers: List[Dict[str, Any]] = []
    bookings: List[Dict[str, Any]] = []
    order_lines: List[Dict[str, Any]] = []
    storage_status: List[Dict[str, Any]] = []
    booking_seq = 1

    for i in range(scenario.n_customers):
        user_group_id = i + 1
        is_business = rng.random() < scenario.b2b_share
        customers.append(
            {
                "user_group_id": user_group_id,
                "org_id": 10_000 + user_group_id if is_business else None,
                "is_personal": not is_business,
            }
        )
        if rng.random() < scenario.storage_share:
            storage_status.append({"user_group_id": user_group_id, "is_active": True})

        fleet = _fleet_for(rng, user_group_id, is_business)
        acquired = start + timedelta(days=rng.randrange(scenario.history_days))
        rate = monthly_rate * (3.0 if is_business else 1.0)

        # The acquisition booking
        event_times = [acquired]
        for month_start in months:
            month_dt = datetime(month_start.year, month_start.month, 1, tzinfo=timezone.utc)
            if month_dt + timedelta(days=31) <= acquired:
                continue
            if rng.random() < scenario.churn_hazard:
                break
            for _ in range(_poisson(rng, rate)):
                event = month_dt + timedelta(days=rng.randrange(28), hours=rng.randrange(8, 17))
                if acquired < event <= as_of:
                    event_times.append(event)

        for event in sorted(event_times):
            booking_id = booking_seq
            booking_seq += 1
            cars = rng.sample(fleet, k=min(len(fleet), rng.randint(1, 3)))
            cancelled = rng.random() < scenario.cancel_prob
            bookings.append(
                {
                    "id": booking_id,
                    "user_group_id": user_group_id,
                    "started_at": event.isoformat(),
                    "completed_at": None if cancelled else (event + timedelta(hours=2)).isoformat(),
                    "is_completed": not cancelled,
                    "is_cancelled": cancelled,
                    "is_fully_paid": not cancelled and rng.random() < 0.95,
                    "car_ids": cars,
                }
            )
            order_lines.extend(_order_lines(rng, booking_id, is_business, cars, scenario))

    return {
        "customers": customers,
        "bookings": bookings,
        "order_lines": order_lines,
        "storage_status": storage_status,
        "settings": {THRESHOLDS_SETTING_KEY: ThresholdConfig().model_dump()},
    }
