"""
CoordinatorData: immutable snapshot of one order's tracking state shared with entities.

This is a pure data module with no HA or network dependencies.
"""
from __future__ import annotations

import dataclasses

from .models import Message, Position, WasherLocation


@dataclasses.dataclass(frozen=True)
class CoordinatorData:
    """
    Typed, copy-on-write snapshot of the tracker and order channel state.

    Always replace via dataclasses.replace(); never mutate in place.
    """

    # LocationTracker
    current_location: Position | None = None
    previous_location: Position | None = None
    eta: int | None = None
    is_tracking: bool = False
    tracking_error: str | None = None

    # OrderChannel
    order_status: str | None = None
    estimated_arrival: str | None = None
    messages: tuple[Message, ...] = ()
    washer_location: WasherLocation | None = None
    is_connected: bool = False
    error: str | None = None

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None
