"""
Platform for Washman order sensors.
This module is responsible for setting up the ETA, order status, estimated
arrival and last message sensors and deriving their state from CoordinatorData.
"""
from __future__ import annotations

import logging
from datetime import datetime

from homeassistant.components.sensor import SensorEntity, SensorDeviceClass, SensorStateClass
from homeassistant.const import UnitOfTime
from homeassistant.core import HomeAssistant
from homeassistant import config_entries
from homeassistant.helpers.entity import DeviceInfo
from homeassistant.helpers.update_coordinator import CoordinatorEntity
from homeassistant.util import dt as dt_util

from .const import MAX_STATE_LENGTH, ORDER_STATUSES
from .coordinator import WashmanCoordinator

_LOGGER = logging.getLogger(__name__)

STATUS_ICONS = {
    "pending": "mdi:clock-outline",
    "confirmed": "mdi:check-circle-outline",
    "assigned": "mdi:account-check",
    "on_the_way": "mdi:car-arrow-right",
    "arrived": "mdi:map-marker-check",
    "in_progress": "mdi:car-wash",
    "completed": "mdi:check-all",
    "cancelled": "mdi:cancel",
}


class WashmanSensor(CoordinatorEntity[WashmanCoordinator], SensorEntity):
    """Base class for sensors of one Washman order."""

    def __init__(self, coordinator: WashmanCoordinator, key: str, name: str) -> None:
        super().__init__(coordinator)
        guid = coordinator.entry_data["guid"]
        self._attr_unique_id = f"washman_{guid}_{coordinator.order_id}_{key}"
        self._attr_name = name

    @property
    def device_info(self) -> DeviceInfo | None:
        """Return the device info."""
        return self.coordinator.get_device_info()


class WashmanEtaSensor(WashmanSensor):
    """Minutes until the washer reaches the destination."""

    _attr_device_class = SensorDeviceClass.DURATION
    _attr_state_class = SensorStateClass.MEASUREMENT
    _attr_native_unit_of_measurement = UnitOfTime.MINUTES
    _attr_icon = "mdi:timer-sand"

    def __init__(self, coordinator: WashmanCoordinator) -> None:
        super().__init__(coordinator, "eta", "ETA")

    @property
    def native_value(self) -> int | None:
        return self.coordinator.data.eta


class WashmanOrderStatusSensor(WashmanSensor):
    """Current order status."""

    _attr_device_class = SensorDeviceClass.ENUM
    _attr_options = list(ORDER_STATUSES)

    def __init__(self, coordinator: WashmanCoordinator) -> None:
        super().__init__(coordinator, "order_status", "Order Status")

    @property
    def native_value(self) -> str | None:
        status = self.coordinator.data.order_status
        if status not in ORDER_STATUSES:
            # ENUM sensors reject values outside options
            return None
        return status

    @property
    def icon(self) -> str | None:
        return STATUS_ICONS.get(self.coordinator.data.order_status, "mdi:help-circle-outline")

    @property
    def extra_state_attributes(self) -> dict:
        status = self.coordinator.data.order_status
        if status is not None and status not in ORDER_STATUSES:
            return {"raw_status": status}
        return {}


class WashmanEstimatedArrivalSensor(WashmanSensor):
    """Arrival time as set on the order by the backend."""

    _attr_device_class = SensorDeviceClass.TIMESTAMP
    _attr_icon = "mdi:clock-check-outline"

    def __init__(self, coordinator: WashmanCoordinator) -> None:
        super().__init__(coordinator, "estimated_arrival", "Estimated Arrival")

    @property
    def native_value(self) -> datetime | None:
        value = self.coordinator.data.estimated_arrival
        if not value:
            return None
        parsed = dt_util.parse_datetime(value)
        if parsed is None:
            _LOGGER.debug("Unparseable estimated arrival: %s", value)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=dt_util.UTC)
        return parsed


class WashmanLastMessageSensor(WashmanSensor):
    """Content of the most recent chat message on the order."""

    _attr_icon = "mdi:message-text-outline"

    def __init__(self, coordinator: WashmanCoordinator) -> None:
        super().__init__(coordinator, "last_message", "Last Message")

    @property
    def native_value(self) -> str | None:
        message = self.coordinator.data.last_message
        if message is None:
            return None
        return message.content[:MAX_STATE_LENGTH]

    @property
    def extra_state_attributes(self) -> dict:
        data = self.coordinator.data
        attributes: dict = {"message_count": len(data.messages)}
        message = data.last_message
        if message is not None:
            attributes.update(
                {
                    "message_id": message.id,
                    "sender_type": message.sender_type,
                    "created_at": message.created_at,
                    "is_quick_reply": message.is_quick_reply,
                    "read": message.read_at is not None,
                }
            )
        return attributes


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: config_entries.ConfigEntry,
    async_add_entities,
):
    """Add sensors for passed config_entry in HA."""
    coordinator: WashmanCoordinator = config_entry.runtime_data
    _LOGGER.debug("Adding Washman sensors for order %s", coordinator.order_id)
    async_add_entities(
        [
            WashmanEtaSensor(coordinator),
            WashmanOrderStatusSensor(coordinator),
            WashmanEstimatedArrivalSensor(coordinator),
            WashmanLastMessageSensor(coordinator),
        ]
    )
