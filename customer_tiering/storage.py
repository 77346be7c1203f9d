"""Storage boundary for the classification engine.

The engine reads customers, bookings, order lines, settings and the
external storage-contract status, and writes feature and segment rows
keyed by ``user_group_id``. :class:`ClassificationStore` describes that
contract; :class:`InMemoryStore` implements it over plain dictionaries and
backs the CLI and the tests.
"""

from __future__ import annotations

import abc
import copy
import threading
from typing import Any, Iterable, Iterator, Mapping

from customer_tiering.foundation.customer_contract import parse_flag


class ClassificationStore(abc.ABC):
    """Relational-style store exposing upsert-by-key and range scans."""

    @abc.abstractmethod
    def list_customers(self) -> list[dict[str, Any]]:
        """Return all customer (user group) rows ordered by key."""

    @abc.abstractmethod
    def bookings_for(self, user_group_ids: Iterable[int] | None = None) -> list[dict[str, Any]]:
        """Return booking rows, optionally restricted to some customers."""

    @abc.abstractmethod
    def order_lines_for(self, booking_ids: Iterable[Any] | None = None) -> list[dict[str, Any]]:
        """Return order-line rows, optionally restricted to some bookings."""

    @abc.abstractmethod
    def get_setting(self, key: str) -> Any | None:
        """Return a settings value or ``None`` when the key is absent."""

    @abc.abstractmethod
    def storage_status(self) -> dict[int, bool]:
        """Return the external storage-contract flag per customer."""

    @abc.abstractmethod
    def upsert_features(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Replace feature rows by key; returns the number written."""

    @abc.abstractmethod
    def upsert_segments(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Merge segment rows by key.

        Only the fields present in each row are written, so one stage never
        resets fields owned by another.
        """

    @abc.abstractmethod
    def iter_features(
        self, start: int | None = None, stop: int | None = None
    ) -> Iterator[dict[str, Any]]:
        """Range-scan feature rows with ``start <= key < stop``."""

    @abc.abstractmethod
    def iter_segments(
        self, start: int | None = None, stop: int | None = None
    ) -> Iterator[dict[str, Any]]:
        """Range-scan segment rows with ``start <= key < stop``."""

    @abc.abstractmethod
    def get_segment(self, user_group_id: int) -> dict[str, Any] | None:
        """Return one segment row or ``None``."""

    @abc.abstractmethod
    def record_stage(self, row: Mapping[str, Any]) -> None:
        """Upsert a stage status row keyed by its ``name``."""

    @abc.abstractmethod
    def stage_runs(self) -> list[dict[str, Any]]:
        """Return the latest status row per stage."""


def _in_range(key: int, start: int | None, stop: int | None) -> bool:
    return (start is None or key >= start) and (stop is None or key < stop)


class InMemoryStore(ClassificationStore):
    """Thread-safe dictionary-backed store.

    Rows are copied on the way in and out so callers cannot mutate stored
    state behind the store's back.
    """

    def __init__(
        self,
        *,
        customers: Iterable[Mapping[str, Any]] = (),
        bookings: Iterable[Mapping[str, Any]] = (),
        order_lines: Iterable[Mapping[str, Any]] = (),
        settings: Mapping[str, Any] | None = None,
        storage_status: Mapping[int, bool] | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._customers: dict[int, dict[str, Any]] = {}
        for row in customers:
            key = int(row.get("user_group_id", row.get("id")))
            self._customers[key] = dict(row)
        self._bookings: list[dict[str, Any]] = [dict(row) for row in bookings]
        self._order_lines: list[dict[str, Any]] = [dict(row) for row in order_lines]
        self._settings: dict[str, Any] = copy.deepcopy(dict(settings or {}))
        self._storage_status: dict[int, bool] = {
            int(k): bool(v) for k, v in (storage_status or {}).items()
        }
        self._features: dict[int, dict[str, Any]] = {}
        self._segments: dict[int, dict[str, Any]] = {}
        self._stages: dict[str, dict[str, Any]] = {}

    @classmethod
    def from_dataset(cls, payload: Mapping[str, Any]) -> "InMemoryStore":
        """Build a store from a JSON-style dataset.

        Expected keys: ``customers``, ``bookings``, ``order_lines``,
        ``settings`` (mapping) and ``storage_status`` (list of
        ``{"user_group_id", "is_active"}`` rows). Existing ``features`` and
        ``segments`` rows are loaded too, so a previous run's output can be
        fed back in.
        """
        status = {
            int(row["user_group_id"]): parse_flag(row.get("is_active"), field_name="is_active")
            for row in payload.get("storage_status", [])
        }
        store = cls(
            customers=payload.get("customers", []),
            bookings=payload.get("bookings", []),
            order_lines=payload.get("order_lines", []),
            settings=payload.get("settings", {}),
            storage_status=status,
        )
        store.upsert_features(payload.get("features", []))
        store.upsert_segments(payload.get("segments", []))
        return store

    def as_dict(self) -> dict[str, Any]:
        """Return the engine-owned tables as JSON-serialisable data."""
        with self._lock:
            return {
                "features": [copy.deepcopy(self._features[k]) for k in sorted(self._features)],
                "segments": [copy.deepcopy(self._segments[k]) for k in sorted(self._segments)],
                "stage_runs": [copy.deepcopy(row) for row in self._stages.values()],
            }

    # Read side -----------------------------------------------------------

    def list_customers(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(self._customers[k]) for k in sorted(self._customers)]

    def bookings_for(self, user_group_ids: Iterable[int] | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if user_group_ids is None:
                return [dict(row) for row in self._bookings]
            wanted = {int(cid) for cid in user_group_ids}
            return [
                dict(row)
                for row in self._bookings
                if row.get("user_group_id") is not None
                and int(row["user_group_id"]) in wanted
            ]

    def order_lines_for(self, booking_ids: Iterable[Any] | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if booking_ids is None:
                return [dict(row) for row in self._order_lines]
            wanted = set(booking_ids)
            return [dict(row) for row in self._order_lines if row.get("booking_id") in wanted]

    def get_setting(self, key: str) -> Any | None:
        with self._lock:
            return copy.deepcopy(self._settings.get(key))

    def put_setting(self, key: str, value: Any) -> None:
        with self._lock:
            self._settings[key] = copy.deepcopy(value)

    def storage_status(self) -> dict[int, bool]:
        with self._lock:
            return dict(self._storage_status)

    def set_storage_status(self, user_group_id: int, is_active: bool) -> None:
        with self._lock:
            self._storage_status[int(user_group_id)] = bool(is_active)

    def add_bookings(
        self,
        bookings: Iterable[Mapping[str, Any]],
        order_lines: Iterable[Mapping[str, Any]] = (),
    ) -> None:
        """Append rows the way the ingestion layer would."""
        with self._lock:
            self._bookings.extend(dict(row) for row in bookings)
            self._order_lines.extend(dict(row) for row in order_lines)

    # Write side ----------------------------------------------------------

    def upsert_features(self, rows: Iterable[Mapping[str, Any]]) -> int:
        written = 0
        with self._lock:
            for row in rows:
                key = int(row["user_group_id"])
                self._features[key] = copy.deepcopy(dict(row))
                written += 1
        return written

    def upsert_segments(self, rows: Iterable[Mapping[str, Any]]) -> int:
        written = 0
        with self._lock:
            for row in rows:
                key = int(row["user_group_id"])
                merged = self._segments.get(key, {"user_group_id": key})
                merged.update(copy.deepcopy(dict(row)))
                self._segments[key] = merged
                written += 1
        return written

    def iter_features(
        self, start: int | None = None, stop: int | None = None
    ) -> Iterator[dict[str, Any]]:
        with self._lock:
            rows = [
                copy.deepcopy(self._features[k])
                for k in sorted(self._features)
                if _in_range(k, start, stop)
            ]
        return iter(rows)

    def iter_segments(
        self, start: int | None = None, stop: int | None = None
    ) -> Iterator[dict[str, Any]]:
        with self._lock:
            rows = [
                copy.deepcopy(self._segments[k])
                for k in sorted(self._segments)
                if _in_range(k, start, stop)
            ]
        return iter(rows)

    def get_segment(self, user_group_id: int) -> dict[str, Any] | None:
        with self._lock:
            row = self._segments.get(int(user_group_id))
            return copy.deepcopy(row) if row is not None else None

    def record_stage(self, row: Mapping[str, Any]) -> None:
        with self._lock:
            self._stages[str(row["name"])] = dict(row)

    def stage_runs(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(row) for row in self._stages.values()]
