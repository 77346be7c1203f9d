"""Customer classification stages.

Each stage consumes the output of the previous one:

1. Lifecycle - temporal state from booking recency and tenure
2. Value tiers - population-relative High / Mid / Low cut of the RFM score
3. Pyramid tiers - segment-normalized engagement tiers and the dormant pool
"""

from .lifecycle import (
    Lifecycle,
    LifecycleAssignment,
    classify_lifecycle,
    resolve_lifecycle,
)
from .pyramid import (
    CustomerSegment,
    DormantSegment,
    PyramidAssignment,
    PyramidResult,
    PyramidTier,
    TierInputs,
    assign_pyramid_tiers,
    assign_tier,
    determine_customer_segment,
    next_tier_requirements,
    segment_composite_scores,
)
from .value_tiers import (
    ValueTier,
    ValueTierAssignment,
    ValueTierResult,
    assign_value_tiers,
    tier_cut_counts,
)

__all__ = [
    # Lifecycle
    "Lifecycle",
    "LifecycleAssignment",
    "classify_lifecycle",
    "resolve_lifecycle",
    # Value tiers
    "ValueTier",
    "ValueTierAssignment",
    "ValueTierResult",
    "assign_value_tiers",
    "tier_cut_counts",
    # Pyramid
    "CustomerSegment",
    "DormantSegment",
    "PyramidAssignment",
    "PyramidResult",
    "PyramidTier",
    "TierInputs",
    "assign_pyramid_tiers",
    "assign_tier",
    "determine_customer_segment",
    "next_tier_requirements",
    "segment_composite_scores",
]
