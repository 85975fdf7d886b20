"""
Platform for Washman connectivity sensors.
This module is responsible for setting up the binary sensors that report
whether the order updates channel and the live location feed are connected.
"""
from __future__ import annotations

import logging

from homeassistant.components.binary_sensor import BinarySensorEntity, BinarySensorDeviceClass
from homeassistant.core import HomeAssistant
from homeassistant import config_entries
from homeassistant.helpers.entity import DeviceInfo
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .coordinator import WashmanCoordinator

_LOGGER = logging.getLogger(__name__)


class WashmanConnectivitySensor(CoordinatorEntity[WashmanCoordinator], BinarySensorEntity):
    """
    Connectivity of one realtime feed.
    A lost connection is non-fatal: the last known data stays on the other entities
    and the error string is exposed as an attribute.
    """

    _attr_device_class = BinarySensorDeviceClass.CONNECTIVITY

    def __init__(self, coordinator: WashmanCoordinator, feed: str) -> None:
        """Initialize the sensor for feed 'order_updates' or 'location_tracking'."""
        super().__init__(coordinator)
        self._feed = feed
        guid = coordinator.entry_data["guid"]
        self._attr_unique_id = f"washman_{guid}_{coordinator.order_id}_{feed}"
        self._attr_name = "Order Updates" if feed == "order_updates" else "Location Tracking"

    @property
    def device_info(self) -> DeviceInfo | None:
        """Return the device info."""
        return self.coordinator.get_device_info()

    @property
    def is_on(self) -> bool:
        """Return if the feed is connected."""
        data = self.coordinator.data
        if self._feed == "order_updates":
            return data.is_connected
        return data.is_tracking

    @property
    def icon(self) -> str | None:
        if self.is_on:
            return "mdi:lan-connect"
        return "mdi:lan-disconnect"

    @property
    def extra_state_attributes(self) -> dict:
        data = self.coordinator.data
        error = data.error if self._feed == "order_updates" else data.tracking_error
        return {"error": error} if error else {}


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: config_entries.ConfigEntry,
    async_add_entities,
):
    """Add connectivity sensors for passed config_entry in HA."""
    coordinator: WashmanCoordinator = config_entry.runtime_data
    async_add_entities(
        [
            WashmanConnectivitySensor(coordinator, "order_updates"),
            WashmanConnectivitySensor(coordinator, "location_tracking"),
        ]
    )
