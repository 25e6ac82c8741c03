"""Pass-through sensors publishing the configured radio fields."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..core.models import RadioFrame
from .base import DeviceBehavior

if TYPE_CHECKING:
    from ..config import DeviceConfig
    from ..hass import DiscoveryConfig
    from .base import Device

LOGGER = logging.getLogger(__name__)


class SensorBehavior(DeviceBehavior):
    """Goes online when data arrives and offline with the link.

    A sensor that stays silent for ``expiration`` seconds is reported
    offline until its next transmission.
    """

    def __init__(self, device: "Device", config: "DeviceConfig") -> None:
        super().__init__(device)
        self.features = list(config.features)
        self.expiration = config.expiration
        self.last_reading: Optional[Dict[str, Any]] = None
        self._expiry_handle: Optional[asyncio.TimerHandle] = None

    async def on_telemetry(self, frame: RadioFrame) -> None:
        self.device.set_online(True)
        self._arm_expiry()

        reading: Dict[str, Any] = {
            "Time": frame.received_at.isoformat(timespec="seconds"),
            "msgrate": self.device.message_rate,
        }
        for feature in self.features:
            if feature in frame.fields:
                reading[feature] = frame.fields[feature]
        self.last_reading = reading

        self.device.publish_reading(json.dumps(reading))
        self.device.update_state()

    def on_link_state(self, active: bool) -> None:
        if not active:
            self._cancel_expiry()
            self.device.set_online(False)

    def discovery(self) -> List["DiscoveryConfig"]:
        from ..hass import sensor_configs

        return sensor_configs(self.device, self.features)

    def close(self) -> None:
        self._cancel_expiry()
        super().close()

    def _arm_expiry(self) -> None:
        self._cancel_expiry()
        if self.expiration <= 0:
            return
        loop = asyncio.get_running_loop()
        self._expiry_handle = loop.call_later(self.expiration, self._on_expired)

    def _cancel_expiry(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _on_expired(self) -> None:
        self._expiry_handle = None
        LOGGER.info(
            "Sensor '%s' silent for %d seconds, marking offline",
            self.device.name,
            self.expiration,
        )
        self.device.set_online(False)
