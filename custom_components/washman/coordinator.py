"""
DataUpdateCoordinator for the Washman integration.

Responsibilities:
- Own the LocationTracker and OrderChannel for the order of one config entry.
- Start both on the first refresh; later refreshes and the refetch service
  resubscribe a dropped order channel and reload the order and its messages.
- Push CoordinatorData snapshots to entities as soon as either component
  changes.  Intermediate interpolation frames are pushed at most once per
  FRAME_PUSH_INTERVAL.
- Expose the write path (send_message) and the imperative tracker controls.
"""
from __future__ import annotations

import dataclasses
import logging
import time

from homeassistant.core import HomeAssistant
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator, UpdateFailed

from .backend import BackendError
from .const import (
    CONF_AVERAGE_SPEED,
    CONF_DESTINATION_LATITUDE,
    CONF_DESTINATION_LONGITUDE,
    CONF_INTERPOLATE,
    CONF_ORDER_ID,
    CONF_WASHER_ID,
    DEFAULT_AVERAGE_SPEED_KMH,
    DOMAIN,
    FRAME_PUSH_INTERVAL,
    VERSION,
)
from .coordinator_data import CoordinatorData
from .location_tracker import LocationTracker
from .order_channel import OrderChannel

__all__ = ["CoordinatorData", "WashmanCoordinator"]

_LOGGER = logging.getLogger(__name__)


def destination_from_entry(entry_data: dict) -> tuple[float, float] | None:
    """Return the configured (lat, lng) destination, or None when incomplete."""
    lat = entry_data.get(CONF_DESTINATION_LATITUDE)
    lng = entry_data.get(CONF_DESTINATION_LONGITUDE)
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


class WashmanCoordinator(DataUpdateCoordinator[CoordinatorData]):
    """
    Coordinator for one Washman order.

    Push-driven: there is no polling interval.  HA refreshes (first refresh,
    the refetch service) only (re)subscribe and reload.
    """

    def __init__(self, hass: HomeAssistant, entry_data: dict, backend) -> None:
        """Initialize the coordinator from config-entry data and a signed-in backend."""
        super().__init__(
            hass,
            _LOGGER,
            name=DOMAIN,
            update_interval=None,
        )

        self.backend = backend
        self._entry_data = entry_data
        self.order_id: str = entry_data[CONF_ORDER_ID]
        # Configured washer filter; without one the tracker follows the order's washer
        self._configured_washer_id: str | None = entry_data.get(CONF_WASHER_ID) or None

        self.tracker = LocationTracker(
            backend,
            self.order_id,
            washer_id=self._configured_washer_id,
            destination=destination_from_entry(entry_data),
            interpolate=entry_data.get(CONF_INTERPOLATE, True),
            average_speed_kmh=float(entry_data.get(CONF_AVERAGE_SPEED, DEFAULT_AVERAGE_SPEED_KMH)),
        )
        self.channel = OrderChannel(backend, self.order_id)

        self._remove_listeners = [
            self.tracker.add_listener(self._handle_tracker_change),
            self.channel.add_listener(self._handle_channel_change),
        ]

        self._initial_refresh_done: bool = False
        self._closed: bool = False
        self._clock = time.monotonic
        self._last_frame_push: float = 0.0

        # Snapshot starts empty; entities must handle None gracefully until first refresh
        self.data = CoordinatorData()

    # ------------------------------------------------------------------
    # HA entry point
    # ------------------------------------------------------------------

    async def _async_update_data(self) -> CoordinatorData:
        """
        First call: subscribe the order channel and start live tracking.
        Subsequent calls: resubscribe the order channel if it was dropped
        and reload order status and messages.
        """
        try:
            await self.channel.start()
            if not self._initial_refresh_done:
                await self.tracker.start()
                self._initial_refresh_done = True
        except BackendError as exc:
            raise UpdateFailed(f"Washman backend error: {exc}") from exc

        return self._snapshot()

    async def async_refetch(self) -> None:
        """Resubscribe the order channel if it was dropped, then reload order status and messages."""
        await self.channel.start()

    # ------------------------------------------------------------------
    # Component listeners
    # ------------------------------------------------------------------

    def _handle_tracker_change(self) -> None:
        tracker = self.tracker
        if (
            tracker.is_animating
            and tracker.is_tracking == self.data.is_tracking
            and tracker.error == self.data.tracking_error
        ):
            # Intermediate frame: throttle entity writes, the final frame always goes through
            now = self._clock()
            if now - self._last_frame_push < FRAME_PUSH_INTERVAL:
                return
            self._last_frame_push = now
        self.async_set_updated_data(self._snapshot())

    def _handle_channel_change(self) -> None:
        washer_id = self.channel.state.washer_id
        if self._configured_washer_id is None and washer_id and self.tracker.washer_id != washer_id:
            _LOGGER.debug("Following washer %s for order %s", washer_id, self.order_id)
            self.tracker.washer_id = washer_id
        self.async_set_updated_data(self._snapshot())

    def _snapshot(self) -> CoordinatorData:
        tracker = self.tracker
        state = self.channel.state
        return dataclasses.replace(
            self.data,
            current_location=tracker.current_location,
            previous_location=tracker.previous_location,
            eta=tracker.eta,
            is_tracking=tracker.is_tracking,
            tracking_error=tracker.error,
            order_status=state.status,
            estimated_arrival=state.estimated_arrival,
            messages=state.messages,
            washer_location=state.washer_location,
            is_connected=state.is_connected,
            error=state.error,
        )

    # ------------------------------------------------------------------
    # Write path / controls (called from services and switch.py)
    # ------------------------------------------------------------------

    async def async_send_message(self, content: str, is_quick_reply: bool = False) -> None:
        """Send a customer message; errors propagate to the caller."""
        await self.channel.send_message(content, is_quick_reply)

    async def async_start_tracking(self) -> None:
        await self.tracker.start()

    async def async_stop_tracking(self) -> None:
        await self.tracker.stop()

    def set_destination(self, latitude: float, longitude: float) -> None:
        self.tracker.set_destination(latitude, longitude)

    # ------------------------------------------------------------------
    # Entity helper: device info dict
    # ------------------------------------------------------------------

    def get_device_info(self) -> dict:
        """Return the HA DeviceInfo dict for this entry's order."""
        return {
            "identifiers": {(DOMAIN, f"{self._entry_data['guid']}_{self.order_id}")},
            "name": self._entry_data.get("entry_name") or f"Washman order {self.order_id}",
            "manufacturer": "Washman",
            "model": "Car wash order",
            "sw_version": VERSION,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def async_shutdown(self) -> None:
        """Clean up all resources owned by this coordinator.  Runs once."""
        if self._closed:
            return
        self._closed = True
        for remove in self._remove_listeners:
            remove()
        self._remove_listeners.clear()
        await self.tracker.stop()
        await self.channel.stop()
        await self.backend.close()
        await super().async_shutdown()

    @property
    def entry_data(self):
        return self._entry_data
