"""Customer classification engine.

Rolls bookings and order lines into per-customer features, then assigns
lifecycle stages, population-relative value tiers and segment-aware pyramid
tiers, and audits the result.
"""

from customer_tiering.config import ConfigurationError, ThresholdConfig, load_thresholds
from customer_tiering.pipeline import ClassificationEngine, StageRun, StageStatus
from customer_tiering.storage import ClassificationStore, InMemoryStore

__version__ = "0.1.0"

__all__ = [
    "ClassificationEngine",
    "ClassificationStore",
    "ConfigurationError",
    "InMemoryStore",
    "StageRun",
    "StageStatus",
    "ThresholdConfig",
    "load_thresholds",
]
