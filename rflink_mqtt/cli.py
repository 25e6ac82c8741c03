"""Command-line interface for rflink-mqtt."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import fields
from pathlib import Path
from typing import Iterator, Optional

from . import constants
from .app import RFLinkBridgeApp
from .config import BridgeConfig, ConfigurationError, DeviceConfig, load_config

LOGGER = logging.getLogger(__name__)

_SETTINGS_SECTIONS = ("gateway", "rflink", "mqtt", "logging", "health")
_MASKED_SETTINGS = frozenset({"password"})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME, description="RFLink serial to MQTT gateway"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {constants.APP_VERSION}"
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("start", help="bridge the RFLink serial port to MQTT")
    commands.add_parser(
        "show-config", help="print the effective settings and configured devices"
    )
    return parser


def _format_setting(name: str, value: object) -> str:
    if value is None:
        return ""
    if name in _MASKED_SETTINGS and value:
        return "********"
    if isinstance(value, str) and not value.isprintable():
        # line delimiters and other control characters
        return value.encode("unicode_escape").decode("ascii")
    return str(value)


def _describe_device(device: DeviceConfig) -> str:
    if device.device_class == "cover":
        if device.open_time > 0 and device.close_time > 0:
            detail = f"open {device.open_time:g}s, close {device.close_time:g}s"
        else:
            detail = "open/closed only"
    else:
        features = ", ".join(device.features) or "no features"
        expiry = f"expires after {device.expiration}s" if device.expiration else "never expires"
        detail = f"{features}, {expiry}"
    return f"  {device.name} ({device.device_class}) id={device.id} rfid={device.rfid}: {detail}"


def describe_config(config: BridgeConfig) -> Iterator[str]:
    """Effective settings after defaults and limits were applied."""

    yield f"Configuration loaded from {config.path!s}"
    for section in _SETTINGS_SECTIONS:
        settings = getattr(config, section)
        yield ""
        yield f"[{section}]"
        for item in fields(settings):
            yield f"{item.name} = {_format_setting(item.name, getattr(settings, item.name))}"

    yield ""
    if not config.devices:
        yield "No devices configured"
        return
    yield f"Devices ({len(config.devices)}):"
    for device in config.devices:
        yield _describe_device(device)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    if args.command == "show-config":
        for line in describe_config(config):
            print(line)
        return 0

    if args.command == "start":
        RFLinkBridgeApp.start(config)
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
