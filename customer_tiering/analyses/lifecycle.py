"""Lifecycle stage classification.

Every customer gets exactly one lifecycle label. The base label comes from
a fixed rule cascade over the feature record (first match wins):

1. days since first booking <= ``new_days``               -> New
2. active storage contract                                -> Active
3. months since last booking <= ``active_months``         -> Active
4. ``at_risk_from`` < months since last <= ``at_risk_to`` -> At-risk
5. otherwise                                              -> Churned

Winback is not part of the cascade. It is derived by comparing the new base
label with the lifecycle stored from the previous run, which must happen
before that stored value is overwritten.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from customer_tiering.config import ThresholdConfig
from customer_tiering.foundation.features import DAYS_PER_MONTH, CustomerFeatures


class Lifecycle(str, Enum):
    NEW = "New"
    ACTIVE = "Active"
    AT_RISK = "At-risk"
    CHURNED = "Churned"
    WINBACK = "Winback"


# Base states a returning churned customer can land in
_RETURNING_STATES = frozenset({Lifecycle.NEW, Lifecycle.ACTIVE})


def months_since(days: int) -> float:
    return days / DAYS_PER_MONTH


def classify_lifecycle(features: CustomerFeatures, config: ThresholdConfig) -> Lifecycle:
    """Run the lifecycle cascade. Never returns :attr:`Lifecycle.WINBACK`."""
    if features.tenure_days <= config.new_days:
        return Lifecycle.NEW
    if features.storage_active:
        return Lifecycle.ACTIVE
    months = months_since(features.recency_days)
    if months <= config.active_months:
        return Lifecycle.ACTIVE
    if config.at_risk_from_months < months <= config.at_risk_to_months:
        return Lifecycle.AT_RISK
    return Lifecycle.CHURNED


@dataclass(frozen=True)
class LifecycleAssignment:
    """Lifecycle fields written to the segment record.

    Attributes
    ----------
    lifecycle:
        Lifecycle after Winback resolution
    previous_lifecycle:
        Lifecycle held before the most recent change, ``None`` if the
        customer has never changed state
    changed:
        Whether this run changed the stored lifecycle
    """

    lifecycle: Lifecycle
    previous_lifecycle: Lifecycle | None
    changed: bool


def resolve_lifecycle(
    features: CustomerFeatures,
    config: ThresholdConfig,
    stored_lifecycle: Lifecycle | str | None = None,
    stored_previous: Lifecycle | str | None = None,
) -> LifecycleAssignment:
    """Compute the lifecycle for this run, including Winback.

    A customer is Winback when the stored lifecycle is Churned (or already
    Winback) and the cascade now puts them in New or Active because of a
    booking made within ``winback_days``. An active storage contract alone
    does not count as coming back. Once the cascade yields anything else,
    or the return booking ages past ``winback_days``, the customer is
    reclassified normally.

    ``previous_lifecycle`` only moves when the lifecycle changes, and it
    always receives the stored value from before this run.
    """
    prior = Lifecycle(stored_lifecycle) if stored_lifecycle is not None else None
    previous = Lifecycle(stored_previous) if stored_previous is not None else None

    base = classify_lifecycle(features, config)
    lifecycle = base
    if (
        prior in (Lifecycle.CHURNED, Lifecycle.WINBACK)
        and base in _RETURNING_STATES
        and features.recency_days <= config.winback_days
    ):
        lifecycle = Lifecycle.WINBACK

    if prior is None or lifecycle is prior:
        return LifecycleAssignment(lifecycle=lifecycle, previous_lifecycle=previous, changed=prior is None)
    return LifecycleAssignment(lifecycle=lifecycle, previous_lifecycle=prior, changed=True)
