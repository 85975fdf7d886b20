"""
Domain models for the Washman integration.

Pure, immutable data classes built from backend rows and realtime payloads.
These classes have no dependencies on HTTP, Supabase, or Home Assistant internals.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
from datetime import datetime

_LOGGER = logging.getLogger(__name__)


class OrderStatus(str, enum.Enum):
    """Lifecycle status of a car-wash order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    ON_THE_WAY = "on_the_way"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SenderType(str, enum.Enum):
    CUSTOMER = "customer"
    WASHER = "washer"


class ConnectionState(str, enum.Enum):
    """Connectivity of a realtime subscription as seen by its owner."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERRORED = "errored"


def _optional_float(value) -> float | None:
    if value is None:
        return None
    return float(value)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; returns None for missing or malformed values."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        _LOGGER.debug("Unparseable timestamp: %s", value)
        return None


def normalize_status(value: str | None) -> str | None:
    """Return the OrderStatus value for known statuses, the raw string otherwise."""
    if value is None:
        return None
    try:
        return OrderStatus(value).value
    except ValueError:
        _LOGGER.debug("Unknown order status received: %s", value)
        return value


@dataclasses.dataclass(frozen=True)
class Position:
    """A single washer position sample. Speed is in m/s."""

    latitude: float
    longitude: float
    heading: float | None = None
    speed: float | None = None
    timestamp: str = ""

    @classmethod
    def from_payload(cls, payload: dict) -> Position:
        """Build a Position from a `location` broadcast payload."""
        return cls(
            latitude=float(payload["latitude"]),
            longitude=float(payload["longitude"]),
            heading=_optional_float(payload.get("heading")),
            speed=_optional_float(payload.get("speed")),
            timestamp=payload.get("timestamp") or "",
        )


@dataclasses.dataclass(frozen=True)
class WasherLocation:
    """Raw washer position as broadcast on the order's location topic."""

    washer_id: str | None
    position: Position

    @classmethod
    def from_payload(cls, payload: dict) -> WasherLocation:
        return cls(washer_id=payload.get("washer_id"), position=Position.from_payload(payload))


@dataclasses.dataclass(frozen=True)
class Message:
    """One chat message exchanged between customer and washer on an order."""

    id: str
    order_id: str
    sender_id: str
    sender_type: str
    content: str
    is_quick_reply: bool = False
    created_at: str = ""
    read_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> Message:
        """
        Map a `messages` row (from a fetch or an INSERT event) to a Message.

        Rows only carry an `is_read` flag; a read row without `read_at`
        reports its creation time as the read time.
        """
        created_at = row.get("created_at") or ""
        read_at = row.get("read_at")
        if read_at is None and row.get("is_read"):
            read_at = created_at
        return cls(
            id=str(row["id"]),
            order_id=str(row.get("order_id", "")),
            sender_id=str(row.get("sender_id", "")),
            sender_type=row.get("sender_type", SenderType.CUSTOMER.value),
            content=row.get("content", ""),
            is_quick_reply=bool(row.get("is_quick_reply", False)),
            created_at=created_at,
            read_at=read_at,
        )

    @property
    def created(self) -> datetime | None:
        return parse_timestamp(self.created_at)


@dataclasses.dataclass(frozen=True)
class OrderState:
    """
    Copy-on-write snapshot of one order's realtime state.

    Always replace via dataclasses.replace(); never mutate in place.
    """

    status: str | None = None
    washer_id: str | None = None
    estimated_arrival: str | None = None
    # Non-decreasing in created_at, unique by id
    messages: tuple[Message, ...] = ()
    washer_location: WasherLocation | None = None
    connection: ConnectionState = ConnectionState.DISCONNECTED
    error: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.connection == ConnectionState.CONNECTED
