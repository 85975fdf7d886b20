import logging

import voluptuous as vol
import homeassistant.helpers.config_validation as cv
from homeassistant import config_entries, core
from homeassistant.const import Platform
from homeassistant.core import HomeAssistant, ServiceCall
from homeassistant.exceptions import ConfigEntryNotReady, HomeAssistantError

from .backend import AuthenticationError, BackendError, SupabaseBackend
from .const import (
    CONF_EMAIL,
    CONF_PASSWORD,
    CONF_SUPABASE_KEY,
    CONF_SUPABASE_URL,
    DOMAIN,
)
from .coordinator import WashmanCoordinator

PLATFORMS: list[Platform] = [Platform.DEVICE_TRACKER, Platform.SENSOR, Platform.BINARY_SENSOR, Platform.SWITCH]
_LOGGER = logging.getLogger(__name__)

SERVICE_SEND_MESSAGE = "send_message"
SERVICE_REFETCH = "refetch"
SERVICE_SET_DESTINATION = "set_destination"

ATTR_ENTRY_ID = "entry_id"

SEND_MESSAGE_SCHEMA = vol.Schema(
    {
        vol.Required("content"): vol.All(cv.string, vol.Length(min=1)),
        vol.Optional("is_quick_reply", default=False): cv.boolean,
        vol.Optional(ATTR_ENTRY_ID): cv.string,
    }
)
REFETCH_SCHEMA = vol.Schema({vol.Optional(ATTR_ENTRY_ID): cv.string})
SET_DESTINATION_SCHEMA = vol.Schema(
    {
        vol.Required("latitude"): cv.latitude,
        vol.Required("longitude"): cv.longitude,
        vol.Optional(ATTR_ENTRY_ID): cv.string,
    }
)


async def async_setup(hass: core.HomeAssistant, config: dict) -> bool:
    """Set up the integration."""
    hass.data.setdefault(DOMAIN, {})
    return True


async def async_setup_entry(
    hass: core.HomeAssistant, entry: config_entries.ConfigEntry
) -> bool:
    """Set up platform from a ConfigEntry."""
    try:
        backend = await SupabaseBackend.connect(
            entry.data[CONF_SUPABASE_URL],
            entry.data[CONF_SUPABASE_KEY],
            entry.data[CONF_EMAIL],
            entry.data[CONF_PASSWORD],
        )
    except AuthenticationError as exc:
        raise ConfigEntryNotReady(f"Washman rejected the configured credentials: {exc}") from exc
    except BackendError as exc:
        raise ConfigEntryNotReady(f"Cannot reach the Washman backend: {exc}") from exc

    coordinator = WashmanCoordinator(hass, dict(entry.data), backend)
    try:
        await coordinator.async_config_entry_first_refresh()
    except Exception:
        await backend.close()
        raise

    entry.runtime_data = coordinator
    entry.async_on_unload(
        entry.add_update_listener(_async_update_listener)
    )

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)
    _async_register_services(hass)

    return True


def _resolve_coordinators(hass: HomeAssistant, call: ServiceCall) -> list[WashmanCoordinator]:
    """Return the coordinators a service call targets (one entry or all loaded ones)."""
    entry_id = call.data.get(ATTR_ENTRY_ID)
    entries = hass.config_entries.async_entries(DOMAIN)
    coordinators = [
        entry.runtime_data
        for entry in entries
        if (entry_id is None or entry.entry_id == entry_id)
        and isinstance(getattr(entry, "runtime_data", None), WashmanCoordinator)
    ]
    if not coordinators:
        raise HomeAssistantError(f"No loaded Washman order matches {entry_id or 'the call'}")
    return coordinators


def _async_register_services(hass: HomeAssistant) -> None:
    """Register the integration services once."""
    if hass.services.has_service(DOMAIN, SERVICE_SEND_MESSAGE):
        return

    async def _send_message(call: ServiceCall) -> None:
        for coordinator in _resolve_coordinators(hass, call):
            try:
                await coordinator.async_send_message(
                    call.data["content"], call.data.get("is_quick_reply", False)
                )
            except BackendError as exc:
                raise HomeAssistantError(f"Failed to send message: {exc}") from exc

    async def _refetch(call: ServiceCall) -> None:
        for coordinator in _resolve_coordinators(hass, call):
            await coordinator.async_refetch()

    async def _set_destination(call: ServiceCall) -> None:
        for coordinator in _resolve_coordinators(hass, call):
            coordinator.set_destination(call.data["latitude"], call.data["longitude"])

    hass.services.async_register(DOMAIN, SERVICE_SEND_MESSAGE, _send_message, schema=SEND_MESSAGE_SCHEMA)
    hass.services.async_register(DOMAIN, SERVICE_REFETCH, _refetch, schema=REFETCH_SCHEMA)
    hass.services.async_register(DOMAIN, SERVICE_SET_DESTINATION, _set_destination, schema=SET_DESTINATION_SCHEMA)


async def _async_update_listener(hass: HomeAssistant, config_entry):
    """Handle config options update."""
    # Reload the integration when the options change.
    await hass.config_entries.async_reload(config_entry.entry_id)


async def async_unload_entry(
    hass: core.HomeAssistant, entry: config_entries.ConfigEntry
) -> bool:
    """Unload a config entry."""
    unloaded = await hass.config_entries.async_unload_platforms(entry, PLATFORMS)
    if unloaded:
        await entry.runtime_data.async_shutdown()
    return unloaded
