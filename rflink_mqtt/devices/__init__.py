"""Device models bridging radio frames and MQTT topics."""

from .base import Device, DeviceBehavior, DeviceContext
from .cover import CoverController, CoverState
from .gateway import GatewayBehavior
from .registry import DeviceRegistry
from .sensor import SensorBehavior

__all__ = [
    "CoverController",
    "CoverState",
    "Device",
    "DeviceBehavior",
    "DeviceContext",
    "DeviceRegistry",
    "GatewayBehavior",
    "SensorBehavior",
]
