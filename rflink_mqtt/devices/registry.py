"""Device registry routing radio frames and MQTT commands to devices."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional

from ..config import BridgeConfig, ConfigurationError, DeviceConfig
from ..core.models import LinkStatus, RadioFrame
from .base import Device, DeviceContext
from .cover import CoverController
from .gateway import GatewayBehavior
from .sensor import SensorBehavior

LOGGER = logging.getLogger(__name__)


class DeviceRegistry:
    """Owns every configured device plus the gateway's own device."""

    def __init__(self, context: DeviceContext) -> None:
        self.context = context
        self.gateway: Optional[Device] = None
        self.dispatch_count = 0

        self._devices: List[Device] = []
        self._by_rfid: Dict[str, Device] = {}
        self._initialized = False

    @classmethod
    def from_config(cls, config: BridgeConfig, context: DeviceContext) -> "DeviceRegistry":
        registry = cls(context)
        registry.register_gateway(config.gateway.name, config.gateway.id)
        for device_config in config.devices:
            registry.register(device_config)
        return registry

    def __iter__(self) -> Iterator[Device]:
        return iter(self._devices)

    def __len__(self) -> int:
        return len(self._devices)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register_gateway(self, name: str, device_id: str) -> Device:
        device = Device(
            name=name,
            device_id=device_id,
            rfid="",
            kind="gateway",
            context=self.context,
        )
        device.behavior = GatewayBehavior(device)
        self.gateway = device
        self._devices.append(device)
        return device

    def register(self, config: DeviceConfig) -> Device:
        existing = self.find(config.name)
        if existing is not None:
            return existing

        device = Device(
            name=config.name,
            device_id=config.id,
            rfid=config.rfid,
            kind=config.device_class,
            context=self.context,
        )
        if config.device_class == "cover":
            device.behavior = CoverController(device, config)
        elif config.device_class == "sensor":
            device.behavior = SensorBehavior(device, config)
        else:
            raise ConfigurationError(
                f"Cannot create '{config.name}' - unsupported device class '{config.device_class}'"
            )

        self._devices.append(device)
        if config.rfid:
            self._by_rfid[config.rfid] = device
        else:
            LOGGER.warning("Device '%s' has no rfid and will not receive telemetry", config.name)
        LOGGER.debug("Registered %s '%s' (%s)", config.device_class, config.name, config.rfid)
        return device

    def find(self, name: str) -> Optional[Device]:
        for device in self._devices:
            if device.name == name:
                return device
        return None

    def subscriptions(self) -> List[str]:
        topics: List[str] = []
        for device in self._devices:
            topics.extend(device.subscriptions())
        return topics

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def dispatch_frame(self, frame: RadioFrame) -> None:
        now = self.context.clock()
        device = self._by_rfid.get(frame.routing_key)
        if device is not None:
            self.dispatch_count += 1
            await device.dispatch_frame(frame, now)
        else:
            LOGGER.debug("No device configured for %s", frame.routing_key)

        if self.gateway is not None and self.gateway is not device:
            self.gateway.update_message_rate(frame.ts, now)

    async def dispatch_message(self, topic: str, payload: bytes) -> None:
        message = payload.decode("utf-8", errors="replace")
        for device in self._devices:
            if await device.dispatch_message(topic, message):
                return

    async def on_link_state(self, status: LinkStatus) -> None:
        if self._initialized or not status.active:
            for device in self._devices:
                device.behavior.on_link_state(status.active)
            return

        # first activation: devices must be online before pending moves run
        self._initialized = True
        for device in self._devices:
            device.behavior.on_link_state(True)
        for device in self._devices:
            await device.behavior.initialize()

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------
    def refresh_all(self) -> None:
        for device in self._devices:
            device.refresh()

    def set_all_offline(self) -> None:
        for device in self._devices:
            device.set_online(False)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": device.name,
                "id": device.id,
                "kind": device.kind,
                "rfid": device.rfid,
                "online": device.online,
                "state": device.get_state(),
            }
            for device in self._devices
        ]

    def close(self) -> None:
        for device in self._devices:
            device.behavior.close()
