"""Run configuration for the classification engine.

All cutoffs used by the lifecycle, value tier and pyramid stages live in a
single versioned ``thresholds`` settings record. The record is read once at
the start of a run and passed explicitly into every stage, so two runs with
different thresholds never share state.

Normalization is percentile rank for every stage, and the stickiness boost
schedule below is the only one in use. Both are exposed as tunables rather
than hard-coded in the scorers.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

if TYPE_CHECKING:  # pragma: no cover
    from customer_tiering.storage import ClassificationStore

logger = logging.getLogger(__name__)

THRESHOLDS_SETTING_KEY = "thresholds"

# Lifecycle defaults
DEFAULT_NEW_DAYS = 90
DEFAULT_ACTIVE_MONTHS = 7
DEFAULT_AT_RISK_FROM_MONTHS = 7
DEFAULT_AT_RISK_TO_MONTHS = 9
DEFAULT_WINBACK_DAYS = 60

# Revenue
DEFAULT_MARGIN_PCT = 25.0

# Value tier cuts: top 20% High, next 30% Mid, remaining 50% Low
DEFAULT_VALUE_HIGH_PERCENTILE = 0.80
DEFAULT_VALUE_MID_PERCENTILE = 0.50

# RFM weights (must sum to 1.0)
DEFAULT_RECENCY_WEIGHT = 0.30
DEFAULT_FREQUENCY_WEIGHT = 0.40
DEFAULT_MONETARY_WEIGHT = 0.30

# Stickiness boosts, as a fraction of the weighted RFM score
DEFAULT_STORAGE_BOOST = 0.15
DEFAULT_FLEET_BOOST = 0.10
DEFAULT_MULTI_SERVICE_BOOST = 0.05

# Pyramid
DEFAULT_HIGH_VALUE_TIRE_ORDER = 8000.0  # NOK, single booking
DEFAULT_SALVAGEABLE_WINDOW_DAYS = 730
DEFAULT_PROSPECT_TENURE_DAYS = 180

_WEIGHT_TOLERANCE = 1e-9


class ConfigurationError(ValueError):
    """Raised when the threshold record is missing or malformed."""


class ThresholdConfig(BaseModel):
    """Immutable snapshot of the thresholds record for one run."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    version: int = Field(default=1, ge=1, description="Settings record version")

    new_days: int = Field(default=DEFAULT_NEW_DAYS, ge=0)
    active_months: float = Field(default=DEFAULT_ACTIVE_MONTHS, ge=0)
    at_risk_from_months: float = Field(default=DEFAULT_AT_RISK_FROM_MONTHS, ge=0)
    at_risk_to_months: float = Field(default=DEFAULT_AT_RISK_TO_MONTHS, ge=0)
    winback_days: int = Field(default=DEFAULT_WINBACK_DAYS, ge=0)

    default_margin_pct: float = Field(default=DEFAULT_MARGIN_PCT, ge=0, le=100)

    value_high_percentile: float = Field(
        default=DEFAULT_VALUE_HIGH_PERCENTILE, gt=0, lt=1
    )
    value_mid_percentile: float = Field(
        default=DEFAULT_VALUE_MID_PERCENTILE, gt=0, lt=1
    )

    recency_weight: float = Field(default=DEFAULT_RECENCY_WEIGHT, ge=0, le=1)
    frequency_weight: float = Field(default=DEFAULT_FREQUENCY_WEIGHT, ge=0, le=1)
    monetary_weight: float = Field(default=DEFAULT_MONETARY_WEIGHT, ge=0, le=1)

    storage_boost: float = Field(default=DEFAULT_STORAGE_BOOST, ge=0, le=1)
    fleet_boost: float = Field(default=DEFAULT_FLEET_BOOST, ge=0, le=1)
    multi_service_boost: float = Field(default=DEFAULT_MULTI_SERVICE_BOOST, ge=0, le=1)

    high_value_tire_order: float = Field(default=DEFAULT_HIGH_VALUE_TIRE_ORDER, gt=0)
    salvageable_window_days: int = Field(default=DEFAULT_SALVAGEABLE_WINDOW_DAYS, ge=0)
    prospect_tenure_days: int = Field(default=DEFAULT_PROSPECT_TENURE_DAYS, ge=0)

    @model_validator(mode="after")
    def _check_cross_field_rules(self) -> "ThresholdConfig":
        weights = self.recency_weight + self.frequency_weight + self.monetary_weight
        if abs(weights - 1.0) > _WEIGHT_TOLERANCE:
            raise ValueError(f"RFM weights must sum to 1.0, got {weights}")
        if self.value_mid_percentile >= self.value_high_percentile:
            raise ValueError(
                f"value_mid_percentile ({self.value_mid_percentile}) must be below "
                f"value_high_percentile ({self.value_high_percentile})"
            )
        if self.at_risk_from_months > self.at_risk_to_months:
            raise ValueError(
                f"at_risk_from_months ({self.at_risk_from_months}) cannot exceed "
                f"at_risk_to_months ({self.at_risk_to_months})"
            )
        return self

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ThresholdConfig":
        """Build a config from a raw settings record.

        Keys absent from the record take their defaults. Invalid values raise
        :class:`ConfigurationError`.
        """
        if not isinstance(record, Mapping):
            raise ConfigurationError(
                f"Threshold record must be a mapping, got {type(record).__name__}"
            )
        try:
            return cls.model_validate(dict(record))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'record'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ConfigurationError(f"Invalid threshold record: {problems}") from exc

    @property
    def high_value_fraction(self) -> float:
        """Share of the population cut into the High value tier."""
        return 1.0 - self.value_high_percentile

    @property
    def high_or_mid_fraction(self) -> float:
        """Share of the population cut into High or Mid."""
        return 1.0 - self.value_mid_percentile


def load_thresholds(store: "ClassificationStore") -> ThresholdConfig:
    """Read and validate the thresholds record from the store.

    Raises
    ------
    ConfigurationError
        If the record does not exist or cannot be validated.
    """
    record = store.get_setting(THRESHOLDS_SETTING_KEY)
    if record is None:
        raise ConfigurationError(
            f"Settings record '{THRESHOLDS_SETTING_KEY}' not found; refusing to classify"
        )
    config = ThresholdConfig.from_record(record)
    logger.info(
        "Loaded thresholds version %s (new_days=%s, active_months=%s, at_risk=%s-%s)",
        config.version,
        config.new_days,
        config.active_months,
        config.at_risk_from_months,
        config.at_risk_to_months,
    )
    return config
