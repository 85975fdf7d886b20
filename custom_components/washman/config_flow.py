"""Config flow for the Washman order tracking integration."""
from __future__ import annotations
import logging
import uuid
from typing import Any, Dict, Optional
import homeassistant.helpers.config_validation as cv
import voluptuous as vol

from homeassistant import config_entries
from homeassistant.core import callback

from .backend import AuthenticationError, BackendError, SupabaseBackend
from .const import (
    CONF_AVERAGE_SPEED,
    CONF_DESTINATION_LATITUDE,
    CONF_DESTINATION_LONGITUDE,
    CONF_EMAIL,
    CONF_ENTRY_NAME,
    CONF_INTERPOLATE,
    CONF_ORDER_ID,
    CONF_PASSWORD,
    CONF_SUPABASE_KEY,
    CONF_SUPABASE_URL,
    CONF_WASHER_ID,
    DEFAULT_AVERAGE_SPEED_KMH,
    DOMAIN,
)

speed_kmh = vol.All(vol.Coerce(float), vol.Range(min=1, max=200))

_LOGGER = logging.getLogger(__name__)
CONFIG_SCHEMA = vol.Schema(
            {
                vol.Required(CONF_ENTRY_NAME, default='My car wash order'): cv.string,
                vol.Required(CONF_SUPABASE_URL, default=''): cv.string,
                vol.Required(CONF_SUPABASE_KEY, default=''): cv.string,
                vol.Required(CONF_EMAIL, default=''): cv.string,
                vol.Required(CONF_PASSWORD, default=''): cv.string,
                vol.Required(CONF_ORDER_ID, default=''): cv.string,
                vol.Optional(CONF_WASHER_ID, default=''): cv.string,
                vol.Optional(CONF_DESTINATION_LATITUDE): cv.latitude,
                vol.Optional(CONF_DESTINATION_LONGITUDE): cv.longitude,
                vol.Required(CONF_INTERPOLATE, default=True): cv.boolean,
                vol.Required(CONF_AVERAGE_SPEED, default=DEFAULT_AVERAGE_SPEED_KMH): speed_kmh,
            }
        )

# Fields that must be non-empty, checked in this order; the last failure wins
_REQUIRED_FIELDS = [
    (CONF_ENTRY_NAME, 'entry_name_required'),
    (CONF_SUPABASE_URL, 'supabase_url_required'),
    (CONF_SUPABASE_KEY, 'supabase_key_required'),
    (CONF_EMAIL, 'email_required'),
    (CONF_PASSWORD, 'password_required'),
    (CONF_ORDER_ID, 'order_id_required'),
]

# Fields the options flow may change; credentials and the order stay fixed
_OPTION_FIELDS = [
    CONF_ENTRY_NAME,
    CONF_WASHER_ID,
    CONF_DESTINATION_LATITUDE,
    CONF_DESTINATION_LONGITUDE,
    CONF_INTERPOLATE,
    CONF_AVERAGE_SPEED,
]


async def _validate_credentials(data: Dict[str, Any]) -> str | None:
    """
    Sign in once with the given settings.

    Returns None on success, or an error key for the form:
    'invalid_auth' when the credentials are rejected, 'cannot_connect' otherwise.
    """
    try:
        backend = await SupabaseBackend.connect(
            data[CONF_SUPABASE_URL], data[CONF_SUPABASE_KEY], data[CONF_EMAIL], data[CONF_PASSWORD]
        )
    except AuthenticationError as e:
        _LOGGER.warning("Washman credentials rejected: %s", e)
        return 'invalid_auth'
    except BackendError as e:
        _LOGGER.warning("Cannot connect to Washman backend: %s", e)
        return 'cannot_connect'
    await backend.close()
    return None


def _destination_errors(data: Dict[str, Any]) -> str | None:
    has_lat = data.get(CONF_DESTINATION_LATITUDE) is not None
    has_lng = data.get(CONF_DESTINATION_LONGITUDE) is not None
    if has_lat != has_lng:
        return 'destination_incomplete'
    return None


class CustomFlow(config_entries.ConfigFlow, domain=DOMAIN):
    data: Optional[Dict[str, Any]]

    async def async_step_user(self, user_input: Optional[Dict[str, Any]] = None):
        errors: Dict[str, str] = {}
        if user_input is not None:
            self.data = user_input
            # Create new guid for the entry
            self.data['guid'] = str(uuid.uuid4())
            for field, error in _REQUIRED_FIELDS:
                if not self.data.get(field):
                    errors['base'] = error
            destination_error = _destination_errors(self.data)
            if destination_error:
                errors['base'] = destination_error
            if not errors:
                credentials_error = await _validate_credentials(self.data)
                if credentials_error:
                    errors['base'] = credentials_error
            if not errors:
                return self.async_create_entry(title=f"{self.data[CONF_ENTRY_NAME]}", data=self.data)

        return self.async_show_form(step_id="user", data_schema=CONFIG_SCHEMA, errors=errors)

    @staticmethod
    @callback
    def async_get_options_flow(config_entry):
        """Get the options flow for this handler."""
        return OptionsFlowHandler(config_entry)


class OptionsFlowHandler(config_entries.OptionsFlow):
    """Handles options flow for the component."""

    def __init__(self, config_entry: config_entries.ConfigEntry) -> None:
        self._entry = config_entry

    def _default(self, field: str, fallback: Any = None) -> Any:
        """Options override data; data overrides the fallback."""
        if field in self._entry.options:
            return self._entry.options[field]
        return self._entry.data.get(field, fallback)

    async def async_step_init(
        self, user_input: Dict[str, Any] = None
    ) -> Dict[str, Any]:
        errors: Dict[str, str] = {}

        if user_input is not None:
            if not user_input.get(CONF_ENTRY_NAME):
                errors['base'] = 'entry_name_required'
            destination_error = _destination_errors(user_input)
            if destination_error:
                errors['base'] = destination_error
            if not errors:
                new_data = dict(self._entry.data)
                for field in _OPTION_FIELDS:
                    new_data.pop(field, None)
                    if user_input.get(field) is not None:
                        new_data[field] = user_input[field]

                # Rename the entry in the UI; the update listener reloads it
                self.hass.config_entries.async_update_entry(
                    self._entry,
                    data=new_data,
                    title=new_data[CONF_ENTRY_NAME],
                )
                return self.async_create_entry(title=f"{new_data[CONF_ENTRY_NAME]}", data={})

        destination_lat = self._default(CONF_DESTINATION_LATITUDE)
        destination_lng = self._default(CONF_DESTINATION_LONGITUDE)
        OPTIONS_SCHEMA = vol.Schema(
            {
                vol.Required(CONF_ENTRY_NAME, default=self._default(CONF_ENTRY_NAME, '')): cv.string,
                vol.Optional(CONF_WASHER_ID, default=self._default(CONF_WASHER_ID, '')): cv.string,
                vol.Optional(
                    CONF_DESTINATION_LATITUDE,
                    description={"suggested_value": destination_lat},
                ): cv.latitude,
                vol.Optional(
                    CONF_DESTINATION_LONGITUDE,
                    description={"suggested_value": destination_lng},
                ): cv.longitude,
                vol.Required(CONF_INTERPOLATE, default=self._default(CONF_INTERPOLATE, True)): cv.boolean,
                vol.Required(
                    CONF_AVERAGE_SPEED,
                    default=self._default(CONF_AVERAGE_SPEED, DEFAULT_AVERAGE_SPEED_KMH),
                ): speed_kmh,
            }
        )
        return self.async_show_form(step_id="init", data_schema=OPTIONS_SCHEMA, errors=errors)
