"""Constants used across the rflink-mqtt package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "rflink-mqtt"
APP_VERSION = "0.3.0"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / f".{APP_NAME}" / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / f".{APP_NAME}" / "logs" / f"{APP_NAME}.log"

DEFAULT_GATEWAY_NAME = "rflink-01"

DEFAULT_SERIAL_BAUDRATE = 57600
DEFAULT_SERIAL_DELIMITER = "\r\n"
DEFAULT_SERIAL_ENCODING = "utf-8"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_DISCOVERY_PREFIX = "homeassistant"

MANUFACTURER = "Nodo RadioFrequencyLink"
