"""Synthetic data generation.

Produces realistic-but-fake workshop customers, bookings and order lines to
exercise the classification pipeline without production data.
"""

from .generator import (
    DISCOUNT_DESCRIPTION,
    SERVICE_LINES,
    TIRE_LINE,
    DatasetConfig,
    generate_dataset,
)

__all__ = [
    "DISCOUNT_DESCRIPTION",
    "SERVICE_LINES",
    "TIRE_LINE",
    "DatasetConfig",
    "generate_dataset",
]
