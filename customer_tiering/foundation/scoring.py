"""Percentile-rank RFM scoring shared by the value and pyramid stages.

Both stages use the same formula:

1. Recency, Frequency and Monetary are each turned into a 0-100 score by
   percentile rank, i.e. the fraction of the population whose value is
   less than or equal to the customer's value. Recency is inverted, so
   fewer days since the last booking scores higher.
2. The weighted RFM score combines the three with the configured weights
   (0.30 / 0.40 / 0.30 by default).
3. Stickiness boosts are added as a fraction of the RFM score for storage,
   fleet and multi-service customers.

Percentile rank is used everywhere because it is insensitive to a handful
of very large fleet accounts that would flatten a max-scaled score.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from customer_tiering.config import ThresholdConfig

RECENCY_COLUMN = "recency_days"
FREQUENCY_COLUMN = "frequency_24m"
MONETARY_COLUMN = "revenue_24m"

SCORE_COLUMNS = [
    "recency_score",
    "frequency_score",
    "monetary_score",
    "rfm_score",
    "boost_multiplier",
    "boosted_score",
]


def percentile_rank(values: pd.Series, invert: bool = False) -> pd.Series:
    """Return the percentile rank (0-100] of each value in ``values``.

    The rank is the share of values less than or equal to the value, so
    tied values share the same, highest rank of their group. With
    ``invert=True`` the share of values greater than or equal to the value
    is used instead.

    Examples
    --------
    >>> percentile_rank(pd.Series([10, 20, 20, 40])).tolist()
    [25.0, 75.0, 75.0, 100.0]
    >>> percentile_rank(pd.Series([10, 20, 20, 40]), invert=True).tolist()
    [100.0, 75.0, 75.0, 25.0]
    """
    if values.empty:
        return pd.Series([], index=values.index, dtype=float)
    numeric = values.astype(float)
    if invert:
        numeric = -numeric
    return numeric.rank(method="max", pct=True) * 100.0


def stickiness_multiplier(
    is_storage_customer: pd.Series,
    is_fleet_customer: pd.Series,
    is_multi_service: pd.Series,
    config: ThresholdConfig,
) -> pd.Series:
    """Return ``1 + sum of applicable boosts`` per customer."""
    return (
        1.0
        + is_storage_customer.astype(bool).astype(float) * config.storage_boost
        + is_fleet_customer.astype(bool).astype(float) * config.fleet_boost
        + is_multi_service.astype(bool).astype(float) * config.multi_service_boost
    )


def rfm_scores(
    frame: pd.DataFrame,
    config: ThresholdConfig,
    group_by: str | Sequence[str] | None = None,
) -> pd.DataFrame:
    """Add percentile-rank RFM and boosted scores to a feature frame.

    Parameters
    ----------
    frame:
        Output of :func:`customer_tiering.foundation.features.features_to_dataframe`
        (optionally with extra columns)
    config:
        Run configuration supplying weights and boosts
    group_by:
        Column(s) to rank within. When given, customers are only compared
        against others in the same group.

    Returns
    -------
    pd.DataFrame
        A copy of ``frame`` with the columns in :data:`SCORE_COLUMNS` added.
    """
    scored = frame.copy()
    if scored.empty:
        for column in SCORE_COLUMNS:
            scored[column] = pd.Series(dtype=float)
        return scored

    if group_by is None:
        recency = percentile_rank(scored[RECENCY_COLUMN], invert=True)
        frequency = percentile_rank(scored[FREQUENCY_COLUMN])
        monetary = percentile_rank(scored[MONETARY_COLUMN])
    else:
        grouped = scored.groupby(group_by, sort=False, group_keys=False)
        recency = grouped[RECENCY_COLUMN].transform(
            lambda s: percentile_rank(s, invert=True)
        )
        frequency = grouped[FREQUENCY_COLUMN].transform(percentile_rank)
        monetary = grouped[MONETARY_COLUMN].transform(percentile_rank)

    scored["recency_score"] = recency
    scored["frequency_score"] = frequency
    scored["monetary_score"] = monetary
    scored["rfm_score"] = (
        config.recency_weight * recency
        + config.frequency_weight * frequency
        + config.monetary_weight * monetary
    )
    scored["boost_multiplier"] = stickiness_multiplier(
        scored["is_storage_customer"],
        scored["is_fleet_customer"],
        scored["is_multi_service"],
        config,
    )
    scored["boosted_score"] = scored["rfm_score"] * scored["boost_multiplier"]
    # Guard against float noise pushing identical inputs apart
    scored["boosted_score"] = np.round(scored["boosted_score"].astype(float), 9)
    return scored
