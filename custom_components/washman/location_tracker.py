"""
LocationTracker: live washer position for one order.

Responsibilities:
- Own exactly one subscription to the order's location broadcast topic.
- Smooth discrete samples into continuous movement (cubic ease-out over a
  fixed duration, one frame per FrameScheduler tick).
- Keep a rolling ETA to an optional destination, recomputed on every frame.

Subscription and channel failures are represented as state (is_tracking,
error) and never raised to the caller.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from .backend import (
    BackendError,
    EventBinding,
    RealtimeEvent,
    SubscribeState,
    Subscription,
)
from .const import (
    DEFAULT_AVERAGE_SPEED_KMH,
    INTERPOLATION_DURATION,
    LOCATION_EVENT,
    LOCATION_TOPIC,
    SUBSCRIBE_TIMEOUT,
)
from .frame_scheduler import FrameHandle, FrameScheduler
from .geo import calculate_eta, ease_out_cubic, interpolate_position
from .models import Position

_LOGGER = logging.getLogger(__name__)

CONNECT_ERROR = "Failed to connect to location tracking"
TIMEOUT_ERROR = "Timed out connecting to location tracking"


class LocationTracker:
    """Tracking session for one washer on one order."""

    def __init__(
        self,
        backend,
        order_id: str,
        *,
        washer_id: str | None = None,
        destination: tuple[float, float] | None = None,
        interpolate: bool = True,
        average_speed_kmh: float = DEFAULT_AVERAGE_SPEED_KMH,
        duration: float = INTERPOLATION_DURATION,
        scheduler: FrameScheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
        ack_timeout: float = SUBSCRIBE_TIMEOUT,
        on_location_update: Callable[[Position], None] | None = None,
    ) -> None:
        self._backend = backend
        self.order_id = order_id
        self.washer_id = washer_id
        self.interpolate = interpolate
        self.average_speed_kmh = average_speed_kmh
        self._duration = duration
        self._scheduler = scheduler or FrameScheduler()
        self._clock = clock
        self._ack_timeout = ack_timeout
        self._on_location_update = on_location_update

        self.current_location: Position | None = None
        self.previous_location: Position | None = None
        self.last_raw_location: Position | None = None
        self.destination: tuple[float, float] | None = destination
        self.eta: int | None = None
        self.is_tracking: bool = False
        self.error: str | None = None

        self._subscription: Subscription | None = None
        self._starting = False
        self._generation = 0
        self._frame: FrameHandle | None = None
        self._ack_timer: asyncio.TimerHandle | None = None
        self._listeners: list[Callable[[], None]] = []
        self._cleanup_tasks: set[asyncio.Task] = set()

    @property
    def topic(self) -> str:
        return LOCATION_TOPIC.format(order_id=self.order_id)

    @property
    def is_animating(self) -> bool:
        return self._frame is not None

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a change callback; returns a function that removes it."""
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _notify(self) -> None:
        for callback in list(self._listeners):
            callback()

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to the location topic.  No-op while a subscription exists."""
        if self._subscription is not None or self._starting:
            return

        self._starting = True
        generation = self._generation
        try:
            subscription = await self._backend.subscribe(
                self.topic,
                [EventBinding.broadcast(LOCATION_EVENT)],
                self._handle_event,
                self._handle_status,
            )
        except BackendError as exc:
            _LOGGER.warning("Location subscription for order %s failed: %s", self.order_id, exc)
            self._set_failed(CONNECT_ERROR)
            return
        finally:
            self._starting = False

        if generation != self._generation:
            # stop() ran while the subscribe call was in flight
            await self._backend.unsubscribe(subscription)
            return

        self._subscription = subscription
        self._ack_timer = asyncio.get_running_loop().call_later(
            self._ack_timeout, self._handle_ack_timeout
        )
        _LOGGER.debug("Subscribed to %s", self.topic)

    async def stop(self) -> None:
        """Close the subscription and cancel any running animation.  Idempotent."""
        self._generation += 1
        self._cancel_animation()
        self._cancel_ack_timer()
        subscription, self._subscription = self._subscription, None
        was_tracking = self.is_tracking
        self.is_tracking = False

        if subscription is not None:
            subscription.close()
            await self._backend.unsubscribe(subscription)
            _LOGGER.debug("Unsubscribed from %s", self.topic)
        if was_tracking:
            self._notify()

    def set_destination(self, latitude: float, longitude: float) -> None:
        """Change the ETA target; the next computation uses it."""
        self.destination = (latitude, longitude)

    # ------------------------------------------------------------------
    # Subscription callbacks
    # ------------------------------------------------------------------

    def _handle_status(self, state: SubscribeState, error: str | None = None) -> None:
        if state == SubscribeState.SUBSCRIBED:
            self._cancel_ack_timer()
            self.is_tracking = True
            self.error = None
            self._notify()
        elif state in (SubscribeState.CHANNEL_ERROR, SubscribeState.TIMED_OUT):
            _LOGGER.warning(
                "Location channel for order %s reported %s: %s", self.order_id, state.value, error
            )
            self._release_subscription()
            self._set_failed(CONNECT_ERROR if state == SubscribeState.CHANNEL_ERROR else TIMEOUT_ERROR)
        elif state == SubscribeState.CLOSED:
            _LOGGER.debug("Location channel for order %s closed by the server", self.order_id)
            self._release_subscription()
            self.is_tracking = False
            self._notify()

    def _handle_ack_timeout(self) -> None:
        self._ack_timer = None
        if self.is_tracking or self._subscription is None:
            return
        _LOGGER.warning(
            "No acknowledgment for %s after %s seconds", self.topic, self._ack_timeout
        )
        self._release_subscription()
        self._set_failed(TIMEOUT_ERROR)

    def _handle_event(self, event: RealtimeEvent) -> None:
        payload = event.payload
        if self.washer_id and payload.get("washer_id") != self.washer_id:
            _LOGGER.debug(
                "Ignoring location for washer %s on order %s",
                payload.get("washer_id"), self.order_id,
            )
            return
        try:
            raw = Position.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            _LOGGER.warning("Malformed location payload on %s: %s", self.topic, exc)
            return

        self.on_update(raw)

    # ------------------------------------------------------------------
    # Position updates
    # ------------------------------------------------------------------

    def on_update(self, raw: Position) -> None:
        """Apply one raw (already filtered) position sample."""
        self.last_raw_location = raw
        if self.current_location is None:
            self._display(raw)
        else:
            self.previous_location = self.current_location
            if self.interpolate:
                self._animate(self.current_location, raw)
            else:
                self._display(raw)

        if self._on_location_update is not None:
            self._on_location_update(raw)

    def _animate(self, origin: Position, target: Position) -> None:
        """Start a new animation from origin to target, preempting any running one."""
        self._cancel_animation()
        started = self._clock()

        def _frame() -> None:
            if self._duration > 0:
                progress = min((self._clock() - started) / self._duration, 1.0)
            else:
                progress = 1.0
            # Request the next frame first so listeners see is_animating on intermediate frames
            self._frame = self._scheduler.request(_frame) if progress < 1.0 else None
            self._display(interpolate_position(origin, target, ease_out_cubic(progress)))

        self._frame = self._scheduler.request(_frame)

    def _display(self, position: Position) -> None:
        self.current_location = position
        self._update_eta()
        self._notify()

    def _update_eta(self) -> None:
        if self.destination is None or self.current_location is None:
            return
        lat, lng = self.destination
        self.eta = calculate_eta(self.current_location, lat, lng, self.average_speed_kmh)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _set_failed(self, message: str) -> None:
        self.error = message
        self.is_tracking = False
        self._notify()

    def _release_subscription(self) -> None:
        """Drop the current subscription so a later start() can retry."""
        self._cancel_ack_timer()
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        subscription.close()
        task = asyncio.ensure_future(self._backend.unsubscribe(subscription))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    def _cancel_animation(self) -> None:
        if self._frame is not None:
            self._frame.cancel()
            self._frame = None

    def _cancel_ack_timer(self) -> None:
        if self._ack_timer is not None:
            self._ack_timer.cancel()
            self._ack_timer = None
