"""Configuration loader for rflink-mqtt."""

from __future__ import annotations

import codecs
import re
from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import constants

MIN_RETRY_SECONDS = 5.0
MIN_KEEPALIVE_SECONDS = 5.0

DEVICE_SECTION_PREFIX = "device "


class ConfigurationError(RuntimeError):
    """Raised when the configuration cannot be used."""


@dataclass(slots=True)
class GatewayConfig:
    name: str = constants.DEFAULT_GATEWAY_NAME
    id: str = ""
    prefix: str = ""

    @property
    def topic_prefix(self) -> str:
        if self.prefix and not self.prefix.endswith("/"):
            return self.prefix + "/"
        return self.prefix


@dataclass(slots=True)
class RFLinkConfig:
    port: Optional[str] = None
    baudrate: int = constants.DEFAULT_SERIAL_BAUDRATE
    databits: int = 8
    parity: str = "none"
    stopbits: float = 1
    delimiter: str = constants.DEFAULT_SERIAL_DELIMITER
    encoding: str = constants.DEFAULT_SERIAL_ENCODING
    retry: float = 60.0
    keepalive: float = 10.0
    command_timeout: float = 5.0


@dataclass(slots=True)
class MQTTConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: int = 60
    qos: int = 0
    discovery_prefix: str = constants.DEFAULT_DISCOVERY_PREFIX
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.5
    log_network: bool = False


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class DeviceConfig:
    name: str
    device_class: str
    id: str
    rfid: str
    open_time: float = 0.0
    close_time: float = 0.0
    features: List[str] = field(default_factory=list)
    expiration: int = 1800

    @property
    def normalized_id(self) -> str:
        return re.sub(r"[_-]", "", self.id).upper()


@dataclass(slots=True)
class BridgeConfig:
    gateway: GatewayConfig
    rflink: RFLinkConfig
    mqtt: MQTTConfig
    logging: LoggingConfig
    health: HealthConfig
    devices: List[DeviceConfig]
    raw: ConfigParser
    path: Path


def _parse_list(value: str, *, default: Iterable[str] = ()) -> List[str]:
    if not value:
        return list(default)
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def _parse_float(section: SectionProxy, option: str, default: float) -> float:
    try:
        return section.getfloat(option, fallback=default)
    except ValueError:
        return default


def _decode_delimiter(value: str) -> str:
    return codecs.decode(value, "unicode_escape") if value else constants.DEFAULT_SERIAL_DELIMITER


def _load_device(name: str, section: SectionProxy) -> DeviceConfig:
    device_class = section.get("class", fallback="").strip().lower()
    device_id = section.get("id", fallback="").strip()
    if not device_id:
        raise ConfigurationError(f"Cannot create '{name}' - no id specified")
    if device_class not in ("cover", "sensor"):
        raise ConfigurationError(
            f"Cannot create '{name}' - unsupported device class '{device_class}'"
        )

    return DeviceConfig(
        name=name,
        device_class=device_class,
        id=device_id,
        rfid=section.get("rfid", fallback="").strip(),
        open_time=_parse_float(section, "open_time", 0.0),
        close_time=_parse_float(section, "close_time", 0.0),
        features=_parse_list(section.get("features", fallback="")),
        expiration=section.getint("expiration", fallback=1800),
    )


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "gateway": {
                "name": constants.DEFAULT_GATEWAY_NAME,
                "id": "",
                "prefix": "",
            },
            "rflink": {
                "baudrate": str(constants.DEFAULT_SERIAL_BAUDRATE),
                "databits": "8",
                "parity": "none",
                "stopbits": "1",
                "delimiter": "\\r\\n",
                "encoding": constants.DEFAULT_SERIAL_ENCODING,
                "retry": "60",
                "keepalive": "10",
                "command_timeout": "5.0",
            },
            "mqtt": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "keepalive": "60",
                "qos": "0",
                "discovery_prefix": constants.DEFAULT_DISCOVERY_PREFIX,
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.5",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    gateway_name = parser.get("gateway", "name") or constants.DEFAULT_GATEWAY_NAME
    gateway = GatewayConfig(
        name=gateway_name,
        id=parser.get("gateway", "id") or gateway_name,
        prefix=parser.get("gateway", "prefix"),
    )

    rflink_section = parser["rflink"]
    rflink = RFLinkConfig(
        port=rflink_section.get("port", fallback=None) or None,
        baudrate=rflink_section.getint("baudrate", fallback=constants.DEFAULT_SERIAL_BAUDRATE),
        databits=rflink_section.getint("databits", fallback=8),
        parity=rflink_section.get("parity", fallback="none").strip().lower(),
        stopbits=_parse_float(rflink_section, "stopbits", 1),
        delimiter=_decode_delimiter(rflink_section.get("delimiter", fallback="")),
        encoding=rflink_section.get("encoding", fallback=constants.DEFAULT_SERIAL_ENCODING),
        retry=max(MIN_RETRY_SECONDS, _parse_float(rflink_section, "retry", 60.0)),
        keepalive=max(
            MIN_KEEPALIVE_SECONDS, _parse_float(rflink_section, "keepalive", 10.0)
        ),
        command_timeout=max(0.0, _parse_float(rflink_section, "command_timeout", 5.0)),
    )

    mqtt_section = parser["mqtt"]
    mqtt = MQTTConfig(
        host=mqtt_section.get("host"),
        port=mqtt_section.getint("port", fallback=constants.DEFAULT_BROKER_PORT),
        username=mqtt_section.get("username", fallback=None),
        password=mqtt_section.get("password", fallback=None),
        client_id=mqtt_section.get("client_id", fallback=None),
        keepalive=mqtt_section.getint("keepalive", fallback=60),
        qos=max(0, min(2, mqtt_section.getint("qos", fallback=0))),
        discovery_prefix=mqtt_section.get(
            "discovery_prefix", fallback=constants.DEFAULT_DISCOVERY_PREFIX
        ),
        reconnect_initial_seconds=_parse_float(
            mqtt_section, "reconnect_initial_seconds", 1.0
        ),
        reconnect_max_seconds=_parse_float(mqtt_section, "reconnect_max_seconds", 30.0),
        reconnect_jitter_ratio=max(
            0.0, min(1.0, _parse_float(mqtt_section, "reconnect_jitter_ratio", 0.5))
        ),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(
            parser.get("logging", "path", fallback=str(constants.DEFAULT_LOG_PATH))
        ).expanduser(),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    devices = [
        _load_device(section[len(DEVICE_SECTION_PREFIX):].strip(), parser[section])
        for section in parser.sections()
        if section.startswith(DEVICE_SECTION_PREFIX)
    ]
    _check_unique_ids(gateway, devices)

    return BridgeConfig(
        gateway=gateway,
        rflink=rflink,
        mqtt=mqtt,
        logging=logging_config,
        health=health,
        devices=devices,
        raw=parser,
        path=config_path,
    )


def _check_unique_ids(gateway: GatewayConfig, devices: List[DeviceConfig]) -> None:
    seen: Dict[str, str] = {re.sub(r"[_-]", "", gateway.id).upper(): gateway.name}
    for device in devices:
        owner = seen.get(device.normalized_id)
        if owner is not None:
            raise ConfigurationError(
                f"Duplicate device id '{device.id}' used by '{owner}' and '{device.name}'"
            )
        seen[device.normalized_id] = device.name


def save_config(config: BridgeConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
