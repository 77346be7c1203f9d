"""Customer, booking and order-line contract definitions.

The ingestion layer writes raw rows for customers (user groups), bookings
and order lines. These helpers turn those rows into canonical, typed
records so the classifiers never have to guess at timestamp formats or
missing flags.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

# Larger amounts cannot be rounded to cents within the default decimal context
MAX_AMOUNT = Decimal("1e15")


def parse_timestamp(value: Any, *, field_name: str) -> datetime | None:
    """Parse an ISO timestamp, ``date`` or ``datetime`` into an aware datetime.

    ``None`` and empty strings map to ``None``. Naive values are treated as
    UTC.

    Raises
    ------
    ValueError
        If a string value is not valid ISO 8601.
    TypeError
        If the value is of an unsupported type.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"Unparseable {field_name}: {value!r}") from exc
    else:
        raise TypeError(
            f"{field_name} must be an ISO string, date or datetime, "
            f"got {type(value).__name__}"
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_amount(value: Any, *, field_name: str) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be numeric, got bool")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Unparseable {field_name}: {value!r}") from exc
    if not amount.is_finite() or abs(amount) >= MAX_AMOUNT:
        raise ValueError(f"{field_name} out of range: {value!r}")
    return amount


_TRUE_STRINGS = frozenset({"true", "t", "yes", "y", "1"})
_FALSE_STRINGS = frozenset({"false", "f", "no", "n", "0", ""})


def parse_flag(value: Any, *, field_name: str) -> bool:
    """Coerce a boolean column that may arrive as a string or 0/1.

    ``None`` is ``False``. Anything else that is not recognisably boolean
    raises ``ValueError`` rather than being treated as truthy.

    >>> parse_flag("false", field_name="is_discount")
    False
    >>> parse_flag(1, field_name="is_cancelled")
    True
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalised = value.strip().lower()
        if normalised in _TRUE_STRINGS:
            return True
        if normalised in _FALSE_STRINGS:
            return False
    raise ValueError(f"Unparseable {field_name}: {value!r}")


@dataclass(frozen=True)
class Customer:
    """A billing/booking unit (user group).

    Attributes
    ----------
    user_group_id:
        Unique customer key.
    org_id:
        Owning organization, ``None`` for personal (B2C) customers.
    is_personal:
        Whether the user group is a personal account.
    """

    user_group_id: int
    org_id: int | None = None
    is_personal: bool = True

    @property
    def is_business(self) -> bool:
        return not self.is_personal


@dataclass(frozen=True)
class OrderLine:
    """One priced line on a booking."""

    booking_id: int
    amount_gross: Decimal
    description: str = ""
    currency: str = "NOK"
    is_discount: bool = False


@dataclass(frozen=True)
class Booking:
    """One service event belonging to a customer."""

    booking_id: int
    user_group_id: int
    started_at: datetime | None = None
    date: datetime | None = None
    completed_at: datetime | None = None
    is_completed: bool = False
    is_cancelled: bool = False
    is_fully_paid: bool = False
    car_ids: frozenset[int] = field(default_factory=frozenset)

    @property
    def effective_ts(self) -> datetime | None:
        """First non-null of ``started_at``, ``date``, ``completed_at``."""
        for candidate in (self.started_at, self.date, self.completed_at):
            if candidate is not None:
                return candidate
        return None


def parse_customer(record: Mapping[str, Any]) -> Customer:
    """Build a :class:`Customer` from a raw user-group row."""
    if "user_group_id" not in record and "id" not in record:
        raise KeyError("Customer record missing 'user_group_id'")
    raw_id = record.get("user_group_id", record.get("id"))
    org_id = record.get("org_id")
    is_personal = record.get("is_personal")
    if is_personal is None:
        is_personal = org_id is None
    return Customer(
        user_group_id=int(raw_id),
        org_id=int(org_id) if org_id is not None else None,
        is_personal=parse_flag(is_personal, field_name="is_personal"),
    )


def parse_booking(record: Mapping[str, Any]) -> Booking:
    """Build a :class:`Booking` from a raw booking row.

    Vehicles may be given either as ``car_ids`` or as the ingestion API's
    ``booking_items`` list (``[{"car": {"id": ...}}, ...]``).
    """
    try:
        booking_id = int(record["id"] if "id" in record else record["booking_id"])
        user_group_id = int(record["user_group_id"])
    except KeyError as exc:
        raise KeyError(f"Booking record missing key {exc.args[0]}") from exc

    car_ids: set[int] = set()
    for car_id in record.get("car_ids") or ():
        car_ids.add(int(car_id))
    for item in record.get("booking_items") or ():
        car = item.get("car") if isinstance(item, Mapping) else None
        if isinstance(car, Mapping) and car.get("id") is not None:
            car_ids.add(int(car["id"]))

    return Booking(
        booking_id=booking_id,
        user_group_id=user_group_id,
        started_at=parse_timestamp(record.get("started_at"), field_name="started_at"),
        date=parse_timestamp(record.get("date"), field_name="date"),
        completed_at=parse_timestamp(
            record.get("completed_at"), field_name="completed_at"
        ),
        is_completed=parse_flag(record.get("is_completed"), field_name="is_completed"),
        is_cancelled=(
            parse_flag(record.get("is_cancelled"), field_name="is_cancelled")
            or parse_flag(
                record.get("is_fully_unable_to_complete"),
                field_name="is_fully_unable_to_complete",
            )
        ),
        is_fully_paid=parse_flag(record.get("is_fully_paid"), field_name="is_fully_paid"),
        car_ids=frozenset(car_ids),
    )


def parse_order_line(record: Mapping[str, Any]) -> OrderLine:
    """Build an :class:`OrderLine` from a raw order-line row."""
    try:
        booking_id = int(record["booking_id"])
    except KeyError as exc:
        raise KeyError("Order line record missing 'booking_id'") from exc
    return OrderLine(
        booking_id=booking_id,
        amount_gross=_parse_amount(record.get("amount_gross"), field_name="amount_gross"),
        description=str(record.get("description") or ""),
        currency=str(record.get("currency") or "NOK"),
        is_discount=parse_flag(record.get("is_discount"), field_name="is_discount"),
    )
