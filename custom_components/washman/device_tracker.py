"""
Platform for washer position tracking.
This module is responsible for setting up the washer device_tracker entity
and updating its position from the interpolated LocationTracker state.
"""
from __future__ import annotations

import logging

from homeassistant.components.device_tracker import SourceType
from homeassistant.components.device_tracker.config_entry import TrackerEntity
from homeassistant.core import HomeAssistant
from homeassistant import config_entries
from homeassistant.helpers.entity import DeviceInfo
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .coordinator import WashmanCoordinator

_LOGGER = logging.getLogger(__name__)


class WashmanWasherTracker(CoordinatorEntity[WashmanCoordinator], TrackerEntity):
    """
    Representation of the washer assigned to the order.
    Position is the smoothed (interpolated) one, updated every animation frame.
    """

    def __init__(self, coordinator: WashmanCoordinator) -> None:
        """Initialize the tracker."""
        super().__init__(coordinator)
        guid = coordinator.entry_data["guid"]
        self._attr_unique_id = f"washman_{guid}_{coordinator.order_id}_washer"
        self._attr_name = "Washer Location"
        self._attr_icon = "mdi:car-wash"

    @property
    def device_info(self) -> DeviceInfo | None:
        """Return the device info."""
        return self.coordinator.get_device_info()

    @property
    def latitude(self) -> float | None:
        """Return latitude value of the washer."""
        location = self.coordinator.data.current_location
        return location.latitude if location is not None else None

    @property
    def longitude(self) -> float | None:
        """Return longitude value of the washer."""
        location = self.coordinator.data.current_location
        return location.longitude if location is not None else None

    @property
    def source_type(self) -> SourceType:
        """Return the source type, eg gps or router, of the device."""
        return SourceType.GPS

    @property
    def extra_state_attributes(self) -> dict:
        data = self.coordinator.data
        attributes: dict = {"tracking": data.is_tracking}
        location = data.current_location
        if location is not None:
            attributes["heading"] = location.heading
            attributes["speed"] = location.speed
            attributes["timestamp"] = location.timestamp
        if data.previous_location is not None:
            attributes["previous_latitude"] = data.previous_location.latitude
            attributes["previous_longitude"] = data.previous_location.longitude
        if data.tracking_error:
            attributes["error"] = data.tracking_error
        return attributes


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: config_entries.ConfigEntry,
    async_add_entities,
):
    """Add the washer tracker for passed config_entry in HA."""
    coordinator: WashmanCoordinator = config_entry.runtime_data
    _LOGGER.debug("Adding washer tracker for order %s", coordinator.order_id)
    async_add_entities([WashmanWasherTracker(coordinator)])
