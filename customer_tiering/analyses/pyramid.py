"""Segment-aware pyramid tiers.

Customers are first bucketed into a customer segment (B2C, SMB, Large,
Enterprise). The composite score is then normalized within each segment,
because a fleet operator's revenue is orders of magnitude above a private
customer's and a population-wide ranking would put every B2C customer at
the bottom.

Customers in an active lifecycle state are placed into one of four tiers by
a rule cascade (first match wins); everyone else goes to the dormant pool.

=====  =========  ==========================================================
Tier   Name       Rule
=====  =========  ==========================================================
1      Champion   Active and (composite >= 0.75, storage contract,
                  high-value tire purchase or Enterprise segment)
2      Loyalist   (Active and composite >= 0.50) or
                  (At-risk and composite >= 0.70)
3      Engaged    (Active or At-risk) with 2+ lifetime bookings, or
                  Winback with composite >= 0.50
4      Prospect   New, any other Winback, or a single booking with
                  tenure below the prospect window
-      Dormant    Salvageable when churned within the salvage window,
                  else Transient
=====  =========  ==========================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Sequence

from customer_tiering.analyses.lifecycle import Lifecycle
from customer_tiering.config import ThresholdConfig
from customer_tiering.foundation.customer_contract import Customer
from customer_tiering.foundation.features import CustomerFeatures, features_to_dataframe
from customer_tiering.foundation.scoring import percentile_rank, rfm_scores

logger = logging.getLogger(__name__)

ENTERPRISE_MIN_FLEET = 50
LARGE_MIN_FLEET = 20

CHAMPION_MIN_COMPOSITE = 0.75
LOYALIST_ACTIVE_MIN_COMPOSITE = 0.50
LOYALIST_AT_RISK_MIN_COMPOSITE = 0.70
ENGAGED_WINBACK_MIN_COMPOSITE = 0.50
ENGAGED_MIN_BOOKINGS = 2

COMPOSITE_PRECISION = 4

ELIGIBLE_LIFECYCLES = frozenset(
    {Lifecycle.NEW, Lifecycle.ACTIVE, Lifecycle.AT_RISK, Lifecycle.WINBACK}
)


class CustomerSegment(str, Enum):
    B2C = "B2C"
    SMB = "SMB"
    LARGE = "Large"
    ENTERPRISE = "Enterprise"


SEGMENT_ORDER = (
    CustomerSegment.B2C,
    CustomerSegment.SMB,
    CustomerSegment.LARGE,
    CustomerSegment.ENTERPRISE,
)


class PyramidTier(int, Enum):
    CHAMPION = 1
    LOYALIST = 2
    ENGAGED = 3
    PROSPECT = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()


class DormantSegment(str, Enum):
    SALVAGEABLE = "Salvageable"
    TRANSIENT = "Transient"


def determine_customer_segment(customer: Customer, fleet_size: int) -> CustomerSegment:
    """Bucket a customer by account type and fleet size.

    Personal accounts are always B2C. Business accounts are bucketed by
    fleet size; a business without any known vehicle falls back to SMB.
    """
    if not customer.is_business:
        return CustomerSegment.B2C
    if fleet_size >= ENTERPRISE_MIN_FLEET:
        return CustomerSegment.ENTERPRISE
    if fleet_size >= LARGE_MIN_FLEET:
        return CustomerSegment.LARGE
    return CustomerSegment.SMB


@dataclass(frozen=True)
class TierInputs:
    """Everything the tier cascade looks at for one customer."""

    lifecycle: Lifecycle
    composite_score: float
    storage_active: bool
    high_value_tire_purchaser: bool
    customer_segment: CustomerSegment
    lifetime_bookings: int
    tenure_days: int
    recency_days: int


def assign_tier(inputs: TierInputs, config: ThresholdConfig) -> PyramidTier | None:
    """Run the tier cascade; ``None`` means the customer is dormant."""
    lifecycle = inputs.lifecycle
    if lifecycle not in ELIGIBLE_LIFECYCLES:
        return None
    score = inputs.composite_score

    if lifecycle is Lifecycle.ACTIVE and (
        score >= CHAMPION_MIN_COMPOSITE
        or inputs.storage_active
        or inputs.high_value_tire_purchaser
        or inputs.customer_segment is CustomerSegment.ENTERPRISE
    ):
        return PyramidTier.CHAMPION

    if (lifecycle is Lifecycle.ACTIVE and score >= LOYALIST_ACTIVE_MIN_COMPOSITE) or (
        lifecycle is Lifecycle.AT_RISK and score >= LOYALIST_AT_RISK_MIN_COMPOSITE
    ):
        return PyramidTier.LOYALIST

    if (
        lifecycle in (Lifecycle.ACTIVE, Lifecycle.AT_RISK)
        and inputs.lifetime_bookings >= ENGAGED_MIN_BOOKINGS
    ) or (lifecycle is Lifecycle.WINBACK and score >= ENGAGED_WINBACK_MIN_COMPOSITE):
        return PyramidTier.ENGAGED

    if (
        lifecycle in (Lifecycle.NEW, Lifecycle.WINBACK)
        or (
            inputs.lifetime_bookings == 1
            and inputs.tenure_days < config.prospect_tenure_days
        )
    ):
        return PyramidTier.PROSPECT

    return None


def assign_dormant_segment(inputs: TierInputs, config: ThresholdConfig) -> DormantSegment:
    if (
        inputs.lifecycle is Lifecycle.CHURNED
        and inputs.recency_days <= config.salvageable_window_days
    ):
        return DormantSegment.SALVAGEABLE
    return DormantSegment.TRANSIENT


def next_tier_requirements(tier: PyramidTier | None, inputs: TierInputs) -> str | None:
    """Describe the smallest unmet condition of the next tier up.

    Champions have nothing left to reach and get ``None``.
    """
    score = inputs.composite_score
    lifecycle = inputs.lifecycle

    if tier is None:
        if lifecycle is Lifecycle.CHURNED:
            return "needs a new booking to re-enter the pyramid as Prospect"
        return (
            f"{inputs.lifetime_bookings} lifetime booking(s) over {inputs.tenure_days} "
            f"days, needs >={ENGAGED_MIN_BOOKINGS} bookings to re-enter the pyramid"
        )

    if tier is PyramidTier.CHAMPION:
        return None

    if tier is PyramidTier.LOYALIST:
        if lifecycle is not Lifecycle.ACTIVE:
            return f"lifecycle {lifecycle.value}, needs Active for Champion"
        return (
            f"composite score {score:.2f}, needs >={CHAMPION_MIN_COMPOSITE:.2f} for Champion"
        )

    if tier is PyramidTier.ENGAGED:
        if lifecycle is Lifecycle.ACTIVE:
            return (
                f"composite score {score:.2f}, needs "
                f">={LOYALIST_ACTIVE_MIN_COMPOSITE:.2f} for Loyalist"
            )
        if lifecycle is Lifecycle.AT_RISK:
            return (
                f"composite score {score:.2f}, needs "
                f">={LOYALIST_AT_RISK_MIN_COMPOSITE:.2f} for Loyalist"
            )
        return f"lifecycle {lifecycle.value}, needs Active or At-risk for Loyalist"

    # Prospect
    if lifecycle is Lifecycle.WINBACK:
        return (
            f"composite score {score:.2f}, needs "
            f">={ENGAGED_WINBACK_MIN_COMPOSITE:.2f} for Engaged"
        )
    if lifecycle is Lifecycle.NEW:
        return "lifecycle New, needs Active or At-risk with 2+ bookings for Engaged"
    return (
        f"{inputs.lifetime_bookings} lifetime booking(s), needs "
        f">={ENGAGED_MIN_BOOKINGS} for Engaged"
    )


@dataclass(frozen=True)
class PyramidAssignment:
    """Pyramid fields written to the segment record.

    Attributes
    ----------
    user_group_id:
        Customer key
    customer_segment:
        B2C, SMB, Large or Enterprise
    fleet_size:
        Distinct vehicles serviced for the customer
    high_value_tire_purchaser:
        Whether any single booking had tire lines worth at least the
        configured threshold
    pyramid_tier:
        1-4, or ``None`` for dormant customers
    pyramid_tier_name:
        Champion, Loyalist, Engaged or Prospect; ``None`` when dormant
    composite_score:
        Segment-normalized score in [0, 1]; only set for tiered customers
    dormant_segment:
        Salvageable or Transient; only set for dormant customers
    next_tier_requirements:
        Human-readable hint on what the next tier up requires
    """

    user_group_id: int
    customer_segment: CustomerSegment
    fleet_size: int
    high_value_tire_purchaser: bool
    pyramid_tier: PyramidTier | None
    pyramid_tier_name: str | None
    composite_score: float | None
    dormant_segment: DormantSegment | None
    next_tier_requirements: str | None

    def __post_init__(self) -> None:
        if self.pyramid_tier is None:
            if self.composite_score is not None:
                raise ValueError(
                    f"Dormant customers cannot carry a composite score "
                    f"(user_group_id={self.user_group_id})"
                )
            if self.dormant_segment is None:
                raise ValueError(
                    f"Dormant customers need a dormant_segment "
                    f"(user_group_id={self.user_group_id})"
                )
        else:
            if self.dormant_segment is not None:
                raise ValueError(
                    f"Tiered customers cannot have a dormant_segment "
                    f"(user_group_id={self.user_group_id})"
                )
            if self.composite_score is None or not 0 <= self.composite_score <= 1:
                raise ValueError(
                    f"composite_score must be in [0, 1] for tiered customers, got "
                    f"{self.composite_score} (user_group_id={self.user_group_id})"
                )
        if self.fleet_size < 0:
            raise ValueError(f"fleet_size cannot be negative: {self.fleet_size}")

    def as_segment_fields(self) -> dict[str, object]:
        return {
            "customer_segment": self.customer_segment.value,
            "fleet_size": self.fleet_size,
            "high_value_tire_purchaser": self.high_value_tire_purchaser,
            "pyramid_tier": self.pyramid_tier.value if self.pyramid_tier is not None else None,
            "pyramid_tier_name": self.pyramid_tier_name,
            "composite_score": self.composite_score,
            "dormant_segment": self.dormant_segment.value if self.dormant_segment else None,
            "next_tier_requirements": self.next_tier_requirements,
        }


@dataclass
class PyramidResult:
    assignments: list[PyramidAssignment] = field(default_factory=list)

    @property
    def distribution(self) -> dict[str, dict[str, int]]:
        """Tier and dormant counts per customer segment."""
        labels = [tier.label for tier in PyramidTier] + [d.value for d in DormantSegment]
        counts: dict[str, dict[str, int]] = {}
        for assignment in self.assignments:
            bucket = counts.setdefault(
                assignment.customer_segment.value, {label: 0 for label in labels}
            )
            if assignment.pyramid_tier is not None:
                bucket[assignment.pyramid_tier.label] += 1
            else:
                bucket[assignment.dormant_segment.value] += 1
        order = {segment.value: idx for idx, segment in enumerate(SEGMENT_ORDER)}
        return dict(sorted(counts.items(), key=lambda item: order[item[0]]))


def segment_composite_scores(
    features: Sequence[CustomerFeatures],
    segments: Mapping[int, CustomerSegment],
    config: ThresholdConfig,
) -> dict[int, float]:
    """Return the composite score in [0, 1] per customer.

    The boosted RFM score is computed with percentile ranks taken within
    each customer segment and then re-ranked within the segment, so the
    composite is the customer's standing among peers of the same scale.
    """
    if not features:
        return {}
    frame = features_to_dataframe(features)
    frame["customer_segment"] = frame["user_group_id"].map(
        lambda cid: segments[int(cid)].value
    )
    scored = rfm_scores(frame, config, group_by="customer_segment")
    scored["composite_score"] = scored.groupby("customer_segment", sort=False)[
        "boosted_score"
    ].transform(percentile_rank) / 100.0
    return {
        int(row.user_group_id): round(float(row.composite_score), COMPOSITE_PRECISION)
        for row in scored.itertuples(index=False)
    }


def assign_pyramid_tiers(
    features: Sequence[CustomerFeatures],
    lifecycles: Mapping[int, Lifecycle],
    customers: Mapping[int, Customer],
    config: ThresholdConfig,
) -> PyramidResult:
    """Assign segment, composite score and pyramid tier to every customer.

    Parameters
    ----------
    features:
        Feature records for the full population of the run
    lifecycles:
        Lifecycle (after Winback resolution) per customer
    customers:
        Customer identity records; unknown customers are treated as B2C
    config:
        Run configuration
    """
    if not features:
        return PyramidResult()

    segments: dict[int, CustomerSegment] = {}
    for f in features:
        customer = customers.get(f.user_group_id) or Customer(user_group_id=f.user_group_id)
        segments[f.user_group_id] = determine_customer_segment(customer, f.fleet_size)

    composites = segment_composite_scores(features, segments, config)

    assignments: list[PyramidAssignment] = []
    for f in sorted(features, key=lambda item: item.user_group_id):
        lifecycle = lifecycles.get(f.user_group_id)
        if lifecycle is None:
            logger.warning(
                "No lifecycle for customer %s; treating as Churned", f.user_group_id
            )
            lifecycle = Lifecycle.CHURNED
        high_value = f.largest_tire_order >= config.high_value_tire_order
        inputs = TierInputs(
            lifecycle=lifecycle,
            composite_score=composites[f.user_group_id],
            storage_active=f.storage_active,
            high_value_tire_purchaser=high_value,
            customer_segment=segments[f.user_group_id],
            lifetime_bookings=f.frequency_lifetime,
            tenure_days=f.tenure_days,
            recency_days=f.recency_days,
        )
        tier = assign_tier(inputs, config)
        assignments.append(
            PyramidAssignment(
                user_group_id=f.user_group_id,
                customer_segment=inputs.customer_segment,
                fleet_size=f.fleet_size,
                high_value_tire_purchaser=high_value,
                pyramid_tier=tier,
                pyramid_tier_name=tier.label if tier is not None else None,
                composite_score=inputs.composite_score if tier is not None else None,
                dormant_segment=(
                    None if tier is not None else assign_dormant_segment(inputs, config)
                ),
                next_tier_requirements=next_tier_requirements(tier, inputs),
            )
        )

    result = PyramidResult(assignments=assignments)
    logger.info("Pyramid distribution by segment: %s", result.distribution)
    return result
