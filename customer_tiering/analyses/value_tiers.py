"""Population-relative value tiers (High / Mid / Low).

Tiering needs the whole population: every customer's boosted RFM score is
ranked against everyone else's before any tier can be assigned, so this
stage always runs over the full set of feature records of a run.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from customer_tiering.config import ThresholdConfig
from customer_tiering.foundation.features import CustomerFeatures, features_to_dataframe
from customer_tiering.foundation.scoring import rfm_scores

logger = logging.getLogger(__name__)


class ValueTier(str, Enum):
    HIGH = "High"
    MID = "Mid"
    LOW = "Low"


@dataclass(frozen=True)
class ValueTierAssignment:
    """Value tier of one customer.

    Attributes
    ----------
    user_group_id:
        Customer key
    value_tier:
        High, Mid or Low
    rfm_score:
        Weighted RFM score before boosts (0-100)
    boosted_score:
        RFM score after stickiness boosts
    rank:
        1-based position in the descending score order; tied customers
        share the rank of the first of them
    """

    user_group_id: int
    value_tier: ValueTier
    rfm_score: float
    boosted_score: float
    rank: int

    def __post_init__(self) -> None:
        if not 0 <= self.rfm_score <= 100:
            raise ValueError(
                f"rfm_score must be in [0, 100], got {self.rfm_score} "
                f"(user_group_id={self.user_group_id})"
            )
        if self.boosted_score < self.rfm_score:
            raise ValueError(
                f"boosted_score ({self.boosted_score}) cannot be below rfm_score "
                f"({self.rfm_score}) (user_group_id={self.user_group_id})"
            )
        if self.rank < 1:
            raise ValueError(f"rank must be >= 1, got {self.rank}")


@dataclass
class ValueTierResult:
    assignments: list[ValueTierAssignment] = field(default_factory=list)

    @property
    def distribution(self) -> dict[str, int]:
        counts = {tier.value: 0 for tier in ValueTier}
        for assignment in self.assignments:
            counts[assignment.value_tier.value] += 1
        return counts

    def by_customer(self) -> dict[int, ValueTierAssignment]:
        return {a.user_group_id: a for a in self.assignments}


def tier_cut_counts(population: int, config: ThresholdConfig) -> tuple[int, int]:
    """Return how many leading ranks fall into High and into High+Mid.

    >>> from customer_tiering.config import ThresholdConfig
    >>> tier_cut_counts(100, ThresholdConfig())
    (20, 50)
    """
    # round half up; the epsilon absorbs float noise in 1 - percentile
    high = int(math.floor(population * config.high_value_fraction + 0.5 + 1e-9))
    high_or_mid = int(math.floor(population * config.high_or_mid_fraction + 0.5 + 1e-9))
    return high, high_or_mid


def assign_value_tiers(
    features: Sequence[CustomerFeatures], config: ThresholdConfig
) -> ValueTierResult:
    """Score the population and cut it into value tiers.

    Customers are sorted by boosted score (descending), then by
    ``user_group_id`` so the order is stable across runs. A customer whose
    shared rank lies within the first ``high`` positions is High, within
    the first ``high_or_mid`` positions Mid, else Low. Because tied
    customers share the rank of the first of them, a tie is never split
    across two tiers.
    """
    if not features:
        return ValueTierResult()

    scored = rfm_scores(features_to_dataframe(features), config)
    scored = scored.sort_values(
        ["boosted_score", "user_group_id"], ascending=[False, True], kind="mergesort"
    ).reset_index(drop=True)
    # min rank over descending scores: ties share the best position
    scored["rank"] = (
        scored["boosted_score"].rank(method="min", ascending=False).astype(int)
    )

    high_count, high_or_mid_count = tier_cut_counts(len(scored), config)

    assignments: list[ValueTierAssignment] = []
    for record in scored.to_dict("records"):
        rank = int(record["rank"])
        if rank <= high_count:
            tier = ValueTier.HIGH
        elif rank <= high_or_mid_count:
            tier = ValueTier.MID
        else:
            tier = ValueTier.LOW
        assignments.append(
            ValueTierAssignment(
                user_group_id=int(record["user_group_id"]),
                value_tier=tier,
                rfm_score=round(float(record["rfm_score"]), 4),
                boosted_score=round(float(record["boosted_score"]), 4),
                rank=rank,
            )
        )

    result = ValueTierResult(assignments=assignments)
    logger.info("Value tier distribution: %s", result.distribution)
    return result

