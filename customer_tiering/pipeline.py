"""Classification run orchestration.

A run executes the stages strictly in order, each one persisting its output
before the next starts::

    config -> features -> lifecycle -> value_tiers -> pyramid -> validation

Every stage leaves a status row (running / completed / error) in the store.
A failing stage is recorded and re-raised; rows written by earlier stages
are kept, and the next run simply recomputes everything.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Sequence, TypeVar

from customer_tiering.analyses.lifecycle import Lifecycle, resolve_lifecycle
from customer_tiering.analyses.pyramid import PyramidResult, assign_pyramid_tiers
from customer_tiering.analyses.value_tiers import ValueTierResult, assign_value_tiers
from customer_tiering.config import ThresholdConfig, load_thresholds
from customer_tiering.foundation.customer_contract import Customer, parse_customer
from customer_tiering.foundation.features import (
    AggregationResult,
    CustomerFeatures,
    FeatureAggregator,
)
from customer_tiering.storage import ClassificationStore
from customer_tiering.validation.checks import ValidationReport, validate_classification

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StageStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class StageRun:
    """Status of one pipeline stage in one run."""

    name: str
    status: StageStatus
    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            "error": self.error,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stored_lifecycle(row: Mapping[str, Any] | None, key: str) -> Lifecycle | None:
    if not row or row.get(key) is None:
        return None
    try:
        return Lifecycle(row[key])
    except ValueError:
        logger.warning(
            "Ignoring unknown stored %s %r for customer %s",
            key,
            row[key],
            row.get("user_group_id"),
        )
        return None


class ClassificationEngine:
    """Run the classification stages against a :class:`ClassificationStore`.

    Parameters
    ----------
    store:
        Source of customers, bookings and settings, and sink for feature,
        segment and stage rows
    parallel, parallel_threshold, n_workers:
        Passed to :class:`FeatureAggregator`
    """

    def __init__(
        self,
        store: ClassificationStore,
        *,
        parallel: bool = True,
        parallel_threshold: int = 50_000,
        n_workers: int | None = None,
    ) -> None:
        self.store = store
        self.parallel = parallel
        self.parallel_threshold = parallel_threshold
        self.n_workers = n_workers
        self._stage_runs: list[StageRun] = []

    # Stage bookkeeping ---------------------------------------------------

    def _run_stage(self, name: str, func: Callable[[], tuple[T, int]]) -> T:
        run = StageRun(name=name, status=StageStatus.RUNNING, started_at=_utcnow())
        self.store.record_stage(run.as_dict())
        logger.info("Stage %s started", name)
        try:
            result, processed = func()
        except Exception as exc:
            run = replace(
                run, status=StageStatus.ERROR, finished_at=_utcnow(), error=str(exc)
            )
            self.store.record_stage(run.as_dict())
            self._stage_runs.append(run)
            logger.error("Stage %s failed: %s", name, exc)
            raise
        run = replace(
            run, status=StageStatus.COMPLETED, finished_at=_utcnow(), processed=processed
        )
        self.store.record_stage(run.as_dict())
        self._stage_runs.append(run)
        logger.info("Stage %s completed (%d processed)", name, processed)
        return result

    # Stages --------------------------------------------------------------

    def _load_config(self) -> tuple[ThresholdConfig, int]:
        return load_thresholds(self.store), 1

    def _aggregate_features(
        self, config: ThresholdConfig, as_of: datetime
    ) -> tuple[AggregationResult, int]:
        customer_rows = self.store.list_customers()
        customer_ids = [
            int(row.get("user_group_id", row.get("id"))) for row in customer_rows
        ]
        bookings = self.store.bookings_for(customer_ids)
        booking_ids = [row.get("id", row.get("booking_id")) for row in bookings]
        order_lines = self.store.order_lines_for(booking_ids)

        aggregator = FeatureAggregator(
            config.default_margin_pct,
            parallel=self.parallel,
            parallel_threshold=self.parallel_threshold,
            n_workers=self.n_workers,
        )
        result = aggregator.aggregate(
            customer_ids,
            bookings,
            order_lines,
            as_of=as_of,
            storage_flags=self.store.storage_status(),
        )
        written = self.store.upsert_features(f.as_dict() for f in result.features)
        return result, written

    def _classify_lifecycles(
        self,
        features: Sequence[CustomerFeatures],
        config: ThresholdConfig,
        updated_at: str,
    ) -> tuple[dict[int, Lifecycle], int]:
        lifecycles: dict[int, Lifecycle] = {}
        rows = []
        changed = 0
        for f in features:
            # Read the stored state before anything for this run is written
            stored = self.store.get_segment(f.user_group_id)
            assignment = resolve_lifecycle(
                f,
                config,
                stored_lifecycle=_stored_lifecycle(stored, "lifecycle"),
                stored_previous=_stored_lifecycle(stored, "previous_lifecycle"),
            )
            if assignment.changed:
                changed += 1
            lifecycles[f.user_group_id] = assignment.lifecycle
            rows.append(
                {
                    "user_group_id": f.user_group_id,
                    "lifecycle": assignment.lifecycle.value,
                    "previous_lifecycle": (
                        assignment.previous_lifecycle.value
                        if assignment.previous_lifecycle is not None
                        else None
                    ),
                    "updated_at": updated_at,
                }
            )
        written = self.store.upsert_segments(rows)
        logger.info("%d customers changed lifecycle", changed)
        return lifecycles, written

    def _score_value_tiers(
        self,
        features: Sequence[CustomerFeatures],
        config: ThresholdConfig,
        updated_at: str,
    ) -> tuple[ValueTierResult, int]:
        result = assign_value_tiers(features, config)
        written = self.store.upsert_segments(
            {
                "user_group_id": a.user_group_id,
                "value_tier": a.value_tier.value,
                "rfm_score": a.rfm_score,
                "updated_at": updated_at,
            }
            for a in result.assignments
        )
        return result, written

    def _load_customers(self) -> dict[int, Customer]:
        customers: dict[int, Customer] = {}
        for row in self.store.list_customers():
            try:
                customer = parse_customer(row)
            except (ValueError, TypeError, KeyError) as exc:
                logger.warning("Treating unparseable customer row as B2C: %s", exc)
                continue
            customers[customer.user_group_id] = customer
        return customers

    def _assign_pyramid(
        self,
        features: Sequence[CustomerFeatures],
        lifecycles: Mapping[int, Lifecycle],
        config: ThresholdConfig,
        updated_at: str,
    ) -> tuple[PyramidResult, int]:
        result = assign_pyramid_tiers(features, lifecycles, self._load_customers(), config)
        written = self.store.upsert_segments(
            {"user_group_id": a.user_group_id, **a.as_segment_fields(), "updated_at": updated_at}
            for a in result.assignments
        )
        return result, written

    # Public operations ---------------------------------------------------

    def run_classification(self, as_of: datetime | None = None) -> dict[str, Any]:
        """Run every stage and return run statistics.

        Parameters
        ----------
        as_of:
            Moment recency and windows are measured from; defaults to now.
            Pinning it makes reruns reproducible.

        Returns
        -------
        dict
            ``processed_count``, ``duration_seconds``, ``skipped_count``,
            ``failed_count``, ``validation_status`` and ``stages``.

        Raises
        ------
        ConfigurationError
            If the thresholds record is missing or invalid. Nothing is
            written to the feature or segment tables in that case.
        """
        started = time.perf_counter()
        as_of = as_of or _utcnow()
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=timezone.utc)
        updated_at = as_of.isoformat()
        self._stage_runs = []
        logger.info("Classification run started (as_of=%s)", updated_at)

        config = self._run_stage("config", self._load_config)
        aggregation = self._run_stage(
            "features", lambda: self._aggregate_features(config, as_of)
        )
        features = aggregation.features
        lifecycles = self._run_stage(
            "lifecycle", lambda: self._classify_lifecycles(features, config, updated_at)
        )
        self._run_stage(
            "value_tiers", lambda: self._score_value_tiers(features, config, updated_at)
        )
        self._run_stage(
            "pyramid",
            lambda: self._assign_pyramid(features, lifecycles, config, updated_at),
        )
        report = self._run_stage("validation", lambda: (self.validate(), len(features)))

        duration = time.perf_counter() - started
        logger.info(
            "Classification run finished: %d processed, %d skipped, %d failed in %.2fs",
            len(features),
            len(aggregation.skipped),
            len(aggregation.failed),
            duration,
        )
        return {
            "processed_count": len(features),
            "duration_seconds": round(duration, 3),
            "skipped_count": len(aggregation.skipped),
            "failed_count": len(aggregation.failed),
            "validation_status": report.overall_status.value,
            "stages": [run.as_dict() for run in self._stage_runs],
        }

    def validate(self) -> ValidationReport:
        """Audit the current feature and segment tables."""
        return validate_classification(self.store)
