"""
Platform for the Washman live tracking switch.
Turning the switch on subscribes the LocationTracker to the washer's position
feed; turning it off unsubscribes and cancels any running interpolation.
"""
from __future__ import annotations

import logging

from homeassistant.components.switch import SwitchEntity, SwitchDeviceClass
from homeassistant.core import HomeAssistant
from homeassistant import config_entries
from homeassistant.helpers.entity import DeviceInfo
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .coordinator import WashmanCoordinator

_LOGGER = logging.getLogger(__name__)


class WashmanLiveTrackingSwitch(CoordinatorEntity[WashmanCoordinator], SwitchEntity):
    """
    Representation of the live tracking control.
    Reports on only once the location subscription is acknowledged.
    """

    _attr_device_class = SwitchDeviceClass.SWITCH
    _attr_icon = "mdi:crosshairs-gps"

    def __init__(self, coordinator: WashmanCoordinator) -> None:
        """Initialize the switch."""
        super().__init__(coordinator)
        guid = coordinator.entry_data["guid"]
        self._attr_unique_id = f"washman_{guid}_{coordinator.order_id}_live_tracking"
        self._attr_name = "Live Tracking"

    @property
    def device_info(self) -> DeviceInfo | None:
        """Return the device info."""
        return self.coordinator.get_device_info()

    @property
    def is_on(self) -> bool:
        """Return true if live tracking is active."""
        return self.coordinator.data.is_tracking

    async def async_turn_on(self, **kwargs) -> None:
        """Start live tracking."""
        await self.coordinator.async_start_tracking()

    async def async_turn_off(self, **kwargs) -> None:
        """Stop live tracking."""
        await self.coordinator.async_stop_tracking()


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: config_entries.ConfigEntry,
    async_add_entities,
):
    """Add the live tracking switch for passed config_entry in HA."""
    coordinator: WashmanCoordinator = config_entry.runtime_data
    async_add_entities([WashmanLiveTrackingSwitch(coordinator)])
