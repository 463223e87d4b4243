from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

import voluptuous as vol

from homeassistant.components import bluetooth
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import (
    HomeAssistant,
    ServiceCall,
    ServiceResponse,
    SupportsResponse,
)
from homeassistant.helpers import config_validation as cv
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator

from huamisync import (
    ActivitySummary,
    Credential,
    HuamiDevice,
    HuamiError,
    export_summary,
)

from .const import (
    CONF_ADDRESS,
    CONF_AUTH_KEY,
    CONF_DEVICE_NAME,
    CONF_RETAIN_ON_DEVICE,
    DEFAULT_RETAIN_ON_DEVICE,
    DOMAIN,
    EVENT_ACTIVITY_FETCHED,
    EVENT_FETCH_PROGRESS,
    PLATFORMS,
    SERVICE_FETCH_ACTIVITIES,
)

_LOGGER = logging.getLogger(__name__)

SERVICE_SCHEMA_FETCH_ACTIVITIES = vol.Schema(
    {
        vol.Required("address"): str,
        vol.Optional("start"): cv.datetime,
    }
)


class AmazfitUnavailable(HuamiError):
    """Watch not found / not advertising."""


@dataclass
class AmazfitState:
    fetching: bool = False
    bytes_received: int = 0
    values: dict = field(default_factory=dict)
    last_gpx: str | None = None


class AmazfitCoordinator(DataUpdateCoordinator[AmazfitState]):
    def __init__(self, hass: HomeAssistant, entry: ConfigEntry):
        self.address = entry.data[CONF_ADDRESS]
        self.device_name = entry.data.get(CONF_DEVICE_NAME) or f"Amazfit {self.address}"
        super().__init__(hass, _LOGGER, name=self.device_name, update_interval=None)

        self._credential = Credential.from_hex(entry.data[CONF_AUTH_KEY])
        self._retain = entry.options.get(CONF_RETAIN_ON_DEVICE, DEFAULT_RETAIN_ON_DEVICE)
        self._lock = asyncio.Lock()
        self.state = AmazfitState()
        self.async_set_updated_data(self.state)

    def _handle_progress(self, received: int) -> None:
        self.state.bytes_received = received
        self.async_set_updated_data(self.state)
        self.hass.bus.async_fire(
            EVENT_FETCH_PROGRESS, {"address": self.address, "bytes_received": received}
        )

    async def async_fetch(self, start: datetime | None = None) -> ActivitySummary:
        if self._lock.locked():
            raise HuamiError(f"Fetch already running for {self.address}")

        async with self._lock:
            ble_device = bluetooth.async_ble_device_from_address(
                self.hass, self.address, connectable=True
            )
            if ble_device is None:
                raise AmazfitUnavailable(f"Watch not advertising: {self.address}")

            self.state.fetching = True
            self.state.bytes_received = 0
            self.async_set_updated_data(self.state)
            try:
                async with HuamiDevice(ble_device, self._credential) as device:
                    summary = await device.fetch_activities(
                        start=start,
                        retain=self._retain,
                        on_progress=self._handle_progress,
                    )
            finally:
                self.state.fetching = False
                self.async_set_updated_data(self.state)

        exported = export_summary(summary, name=self.device_name)
        self.state.last_gpx = exported.pop("gpx")
        self.state.values = exported
        self.async_set_updated_data(self.state)

        self.hass.bus.async_fire(
            EVENT_ACTIVITY_FETCHED,
            {"address": self.address, **self.state.values},
        )
        return summary


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    async def _handle_fetch_activities(call: ServiceCall) -> ServiceResponse:
        address = call.data["address"].strip().upper()

        # Locate the matching coordinator by MAC
        for coordinator in hass.data[DOMAIN].values():
            if coordinator.address.upper() == address:
                await coordinator.async_fetch(call.data.get("start"))
                if not call.return_response:
                    return None
                return {
                    "address": coordinator.address,
                    **coordinator.state.values,
                    "gpx": coordinator.state.last_gpx,
                }

        raise ValueError(f"No configured watch matches address {address}")

    hass.data.setdefault(DOMAIN, {})
    coordinator = AmazfitCoordinator(hass, entry)
    hass.data[DOMAIN][entry.entry_id] = coordinator

    if not hass.services.has_service(DOMAIN, SERVICE_FETCH_ACTIVITIES):
        hass.services.async_register(
            DOMAIN,
            SERVICE_FETCH_ACTIVITIES,
            _handle_fetch_activities,
            schema=SERVICE_SCHEMA_FETCH_ACTIVITIES,
            supports_response=SupportsResponse.OPTIONAL,
        )

    entry.async_on_unload(entry.add_update_listener(_async_update_listener))
    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)
    return True


async def _async_update_listener(hass: HomeAssistant, entry: ConfigEntry) -> None:
    await hass.config_entries.async_reload(entry.entry_id)


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    hass.data[DOMAIN].pop(entry.entry_id)
    if not hass.data[DOMAIN]:
        hass.services.async_remove(DOMAIN, SERVICE_FETCH_ACTIVITIES)
    return await hass.config_entries.async_unload_platforms(entry, PLATFORMS)
