from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from homeassistant.components.sensor import (
    SensorDeviceClass,
    SensorEntity,
    SensorEntityDescription,
    SensorStateClass,
)
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import UnitOfEnergy, UnitOfInformation, UnitOfLength, UnitOfTime
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity import DeviceInfo, EntityCategory
from homeassistant.helpers.entity_platform import AddEntitiesCallback

from . import AmazfitCoordinator
from .const import DOMAIN


@dataclass(frozen=True, kw_only=True)
class AmazfitSensorDescription(SensorEntityDescription):
    key: str
    live: bool = False


SENSORS: list[AmazfitSensorDescription] = [
    # ---------- Last activity ----------
    AmazfitSensorDescription(
        key="distance_km",
        name="Last Activity Distance",
        native_unit_of_measurement=UnitOfLength.KILOMETERS,
        device_class=SensorDeviceClass.DISTANCE,
        suggested_display_precision=2,
        icon="mdi:map-marker-distance",
    ),
    AmazfitSensorDescription(
        key="duration_seconds",
        name="Last Activity Duration",
        native_unit_of_measurement=UnitOfTime.SECONDS,
        suggested_unit_of_measurement=UnitOfTime.MINUTES,
        device_class=SensorDeviceClass.DURATION,
        suggested_display_precision=0,
        icon="mdi:timer-outline",
    ),
    AmazfitSensorDescription(
        key="calorie_estimate",
        name="Last Activity Calories",
        native_unit_of_measurement=UnitOfEnergy.KILO_CALORIE,
        suggested_display_precision=0,
        icon="mdi:fire",
    ),
    AmazfitSensorDescription(
        key="avg_heart_rate",
        name="Last Activity Avg Heart Rate",
        native_unit_of_measurement="bpm",
        suggested_display_precision=0,
        icon="mdi:heart-pulse",
    ),
    AmazfitSensorDescription(
        key="points",
        name="Last Activity Trackpoints",
        icon="mdi:map-marker-path",
    ),
    # ---------- Sync diagnostics ----------
    AmazfitSensorDescription(
        key="sync_timestamp",
        name="Last Sync",
        device_class=SensorDeviceClass.TIMESTAMP,
        entity_category=EntityCategory.DIAGNOSTIC,
        icon="mdi:sync",
    ),
    AmazfitSensorDescription(
        key="byte_count",
        name="Last Sync Payload",
        native_unit_of_measurement=UnitOfInformation.BYTES,
        device_class=SensorDeviceClass.DATA_SIZE,
        entity_category=EntityCategory.DIAGNOSTIC,
        icon="mdi:database-arrow-down",
    ),
    AmazfitSensorDescription(
        key="outcome",
        name="Last Sync Outcome",
        entity_category=EntityCategory.DIAGNOSTIC,
        icon="mdi:state-machine",
    ),
    AmazfitSensorDescription(
        key="bytes_received",
        name="Sync Progress",
        native_unit_of_measurement=UnitOfInformation.BYTES,
        device_class=SensorDeviceClass.DATA_SIZE,
        state_class=SensorStateClass.MEASUREMENT,
        entity_category=EntityCategory.DIAGNOSTIC,
        icon="mdi:progress-download",
        live=True,
    ),
]


async def async_setup_entry(
    hass: HomeAssistant, entry: ConfigEntry, async_add_entities: AddEntitiesCallback
) -> None:
    coordinator: AmazfitCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_add_entities(
        [AmazfitSensor(coordinator, d) for d in SENSORS], update_before_add=False
    )


class AmazfitSensor(SensorEntity):
    _attr_should_poll = False

    def __init__(
        self, coordinator: AmazfitCoordinator, description: AmazfitSensorDescription
    ) -> None:
        self.coordinator = coordinator
        self.entity_description = description
        self._attr_name = f"{coordinator.device_name} {description.name}"
        self._attr_unique_id = f"{coordinator.address}_{description.key}"

    @property
    def available(self) -> bool:
        if self.entity_description.live:
            return True
        data = self.coordinator.data
        if not data:
            return False
        if self.entity_description.key in ("sync_timestamp", "byte_count", "outcome"):
            return bool(data.values)
        # Positions are only meaningful for a real decode
        return bool(data.values.get("is_real_data"))

    @property
    def native_value(self) -> Any:
        data = self.coordinator.data
        if not data:
            return None
        if self.entity_description.live:
            return data.bytes_received
        value = data.values.get(self.entity_description.key)
        if self.entity_description.key == "sync_timestamp" and value:
            return datetime.fromisoformat(value)
        return value

    @property
    def extra_state_attributes(self) -> dict[str, Any] | None:
        if self.entity_description.key != "outcome":
            return None
        data = self.coordinator.data
        if not data or not data.values:
            return None
        return {
            "layout": data.values.get("layout"),
            "is_real_data": data.values.get("is_real_data"),
            "duration": data.values.get("duration"),
            "gpx_available": data.last_gpx is not None,
        }

    async def async_added_to_hass(self) -> None:
        await super().async_added_to_hass()
        self.async_on_remove(
            self.coordinator.async_add_listener(self.async_write_ha_state)
        )

    @property
    def device_info(self) -> DeviceInfo:
        return DeviceInfo(
            identifiers={(DOMAIN, self.coordinator.address)},
            name=self.coordinator.device_name,
            manufacturer="Huami",
            model="Amazfit",
        )
