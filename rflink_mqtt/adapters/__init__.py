"""Adapter modules for external integrations."""

from .mqtt import MQTTClient, MQTTConnectionError
from .serial import SerialConfigurationError, open_serial, serial_options

__all__ = [
    "MQTTClient",
    "MQTTConnectionError",
    "SerialConfigurationError",
    "open_serial",
    "serial_options",
]
