"""Foundational building blocks for customer classification.

This package exposes the booking contract, the per-customer feature
aggregation and the percentile-rank RFM scoring shared by the tiering
stages.
"""

from .customer_contract import (
    Booking,
    Customer,
    OrderLine,
    parse_booking,
    parse_customer,
    parse_flag,
    parse_order_line,
    parse_timestamp,
)
from .features import (
    CATEGORY_KEYWORD_RULES,
    AggregationResult,
    CategoryMetrics,
    CustomerFeatures,
    FeatureAggregator,
    SeasonalStatus,
    ServiceCategory,
    categorize_line,
    compute_customer_features,
    features_to_dataframe,
)
from .scoring import percentile_rank, rfm_scores, stickiness_multiplier

__all__ = [
    "Booking",
    "Customer",
    "OrderLine",
    "parse_booking",
    "parse_flag",
    "parse_customer",
    "parse_order_line",
    "parse_timestamp",
    "CATEGORY_KEYWORD_RULES",
    "AggregationResult",
    "CategoryMetrics",
    "CustomerFeatures",
    "FeatureAggregator",
    "SeasonalStatus",
    "ServiceCategory",
    "categorize_line",
    "compute_customer_features",
    "features_to_dataframe",
    "percentile_rank",
    "rfm_scores",
    "stickiness_multiplier",
]
