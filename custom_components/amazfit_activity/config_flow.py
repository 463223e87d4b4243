from __future__ import annotations

import re
import voluptuous as vol

from homeassistant import config_entries
from homeassistant.components.bluetooth import BluetoothServiceInfoBleak
from homeassistant.core import callback
from homeassistant.data_entry_flow import FlowResult
from homeassistant.helpers.selector import (
    TextSelector,
    TextSelectorConfig,
    TextSelectorType,
)

from huamisync import ConfigurationError, Credential

from .const import (
    CONF_ADDRESS,
    CONF_AUTH_KEY,
    CONF_DEVICE_NAME,
    CONF_RETAIN_ON_DEVICE,
    DEFAULT_RETAIN_ON_DEVICE,
    DOMAIN,
)


_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


def _looks_like_amazfit(info: BluetoothServiceInfoBleak) -> bool:
    name = (info.name or "").lower()
    return any(tag in name for tag in ("amazfit", "bip", "mi band", "mi smart band"))


def _normalize_mac(mac: str) -> str:
    return mac.strip().upper()


def _key_is_valid(key: str) -> bool:
    try:
        Credential.from_hex(key)
    except ConfigurationError:
        return False
    return True


class ConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    VERSION = 1

    def __init__(self) -> None:
        self._discovered_address: str | None = None
        self._discovered_name: str | None = None

    async def async_step_bluetooth(
        self, discovery_info: BluetoothServiceInfoBleak
    ) -> FlowResult:
        if not _looks_like_amazfit(discovery_info):
            return self.async_abort(reason="not_supported")

        address = _normalize_mac(discovery_info.address)
        await self.async_set_unique_id(address)
        self._abort_if_unique_id_configured()

        self._discovered_address = address
        self._discovered_name = discovery_info.name or f"Amazfit {address}"

        return await self.async_step_confirm()

    async def async_step_confirm(self, user_input=None) -> FlowResult:
        assert self._discovered_address is not None
        errors: dict[str, str] = {}

        if user_input is not None:
            key = user_input[CONF_AUTH_KEY].strip()
            if not _key_is_valid(key):
                errors[CONF_AUTH_KEY] = "invalid_auth_key"
            else:
                return self.async_create_entry(
                    title=f"{self._discovered_name} {self._discovered_address}",
                    data={
                        CONF_ADDRESS: self._discovered_address,
                        CONF_AUTH_KEY: key.lower(),
                        CONF_DEVICE_NAME: self._discovered_name,
                    },
                )

        schema = vol.Schema(
            {
                vol.Optional(
                    CONF_ADDRESS, default=self._discovered_address
                ): TextSelector(
                    TextSelectorConfig(type=TextSelectorType.TEXT, read_only=True)
                ),
                vol.Required(CONF_AUTH_KEY): TextSelector(
                    TextSelectorConfig(type=TextSelectorType.PASSWORD)
                ),
            }
        )
        return self.async_show_form(step_id="confirm", data_schema=schema, errors=errors)

    async def async_step_user(self, user_input=None) -> FlowResult:
        """Manual entry: allow user to supply MAC and auth key."""
        errors: dict[str, str] = {}

        if user_input is not None:
            address = _normalize_mac(user_input[CONF_ADDRESS])
            key = user_input[CONF_AUTH_KEY].strip()

            if not _MAC_RE.match(address):
                errors[CONF_ADDRESS] = "invalid_mac"
            elif not _key_is_valid(key):
                errors[CONF_AUTH_KEY] = "invalid_auth_key"
            else:
                await self.async_set_unique_id(address)
                self._abort_if_unique_id_configured()

                name = user_input.get(CONF_DEVICE_NAME) or f"Amazfit {address}"
                return self.async_create_entry(
                    title=f"{name} {address}",
                    data={
                        CONF_ADDRESS: address,
                        CONF_AUTH_KEY: key.lower(),
                        CONF_DEVICE_NAME: name,
                    },
                )

        schema = vol.Schema(
            {
                vol.Required(CONF_ADDRESS): str,
                vol.Required(CONF_AUTH_KEY): str,
                vol.Optional(CONF_DEVICE_NAME): str,
            }
        )
        return self.async_show_form(step_id="user", data_schema=schema, errors=errors)

    @staticmethod
    @callback
    def async_get_options_flow(
        config_entry: config_entries.ConfigEntry,
    ) -> config_entries.OptionsFlow:
        return OptionsFlowHandler()


class OptionsFlowHandler(config_entries.OptionsFlow):
    async def async_step_init(self, user_input=None) -> FlowResult:
        if user_input is not None:
            return self.async_create_entry(title="", data=user_input)

        retain = self.config_entry.options.get(
            CONF_RETAIN_ON_DEVICE, DEFAULT_RETAIN_ON_DEVICE
        )
        schema = vol.Schema({vol.Optional(CONF_RETAIN_ON_DEVICE, default=retain): bool})
        return self.async_show_form(step_id="init", data_schema=schema)
