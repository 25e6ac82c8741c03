"""Home Assistant MQTT discovery payloads."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from .constants import MANUFACTURER

if TYPE_CHECKING:
    from .devices.base import Device

STATUS_TOPIC_SUFFIX = "status"


class DiscoveryConfig:
    """One discovered entity; setters return ``self`` so they can be chained."""

    def __init__(
        self,
        device: "Device",
        component: str,
        id_postfix: Optional[str] = None,
        name_postfix: Optional[str] = None,
    ) -> None:
        id_suffix = f"_{id_postfix}" if id_postfix else ""
        name_suffix = f" {name_postfix}" if name_postfix else id_suffix.replace("_", " ")

        self.component = component
        self.config: Dict[str, Any] = {
            "name": device.name + name_suffix,
            "~": device.base_topic,
            "state_topic": "~tele/SENSOR",
            "availability_topic": "~tele/LWT",
            "payload_available": "Online",
            "payload_not_available": "Offline",
            "json_attributes_topic": "~tele/HASS_STATE",
            "force_update": True,
            "unique_id": device.id + id_suffix,
            "device": {
                "identifiers": [device.id],
                "name": device.name,
                "manufacturer": MANUFACTURER,
                "model": device.context.link_status.model or device.protocol or "Unknown",
                "sw_version": device.context.app_version,
            },
        }

    @property
    def unique_id(self) -> str:
        return self.config["unique_id"]

    def set(self, key: str, value: Any) -> "DiscoveryConfig":
        self.config[key] = value
        return self

    def drop(self, *keys: str) -> "DiscoveryConfig":
        for key in keys:
            self.config.pop(key, None)
        return self

    def set_icon(self, icon: str = "mdi:information-outline") -> "DiscoveryConfig":
        return self.set("icon", icon)

    def set_unit(self, unit: str) -> "DiscoveryConfig":
        return self.set("unit_of_measurement", unit)

    def set_value(self, key: str) -> "DiscoveryConfig":
        return self.set("value_template", f"{{{{value_json.{key}}}}}")

    def set_class(self, device_class: str) -> "DiscoveryConfig":
        return self.set("device_class", device_class)

    def set_state_topic(self, topic: str) -> "DiscoveryConfig":
        return self.set("state_topic", topic)

    def topic(self, discovery_prefix: str) -> str:
        return f"{discovery_prefix}/{self.component}/{self.unique_id}/config"

    def payload(self) -> bytes:
        return json.dumps(self.config).encode("utf-8")


def status_sensor(device: "Device", state_topic: str = "~tele/STATE") -> DiscoveryConfig:
    """Message-rate sensor every device exposes."""

    return (
        DiscoveryConfig(device, "sensor", "Status")
        .set_icon()
        .set_state_topic(state_topic)
        .set_value("MsgRate")
        .set_unit("Msgs/h")
    )


def gateway_configs(device: "Device") -> List[DiscoveryConfig]:
    return [status_sensor(device)]


def sensor_configs(device: "Device", features: Iterable[str]) -> List[DiscoveryConfig]:
    configs = [status_sensor(device)]
    for feature in features:
        configs.append(
            DiscoveryConfig(device, "sensor", feature.upper(), feature).set_value(feature)
        )
    return configs


def cover_configs(device: "Device", *, advanced: bool) -> List[DiscoveryConfig]:
    cover = (
        DiscoveryConfig(device, "cover")
        .drop("force_update")
        .set("command_topic", "~cmnd/CONTROL")
        .set("payload_open", "UP")
        .set("payload_close", "DOWN")
        .set("payload_stop", "STOP")
        .set_state_topic("~tele/STATE")
    )
    if advanced:
        cover.drop("state_topic").set("position_topic", "~tele/STATE").set(
            "position_template", "{{value_json.POSITION}}"
        ).set("set_position_topic", "~cmnd/POSITION").set("position_open", 0).set(
            "position_closed", 100
        )
    else:
        cover.set_value("STATE").set("state_open", "Open").set("state_closed", "Closed")
    return [cover]
