"""Serial adapter opening the RFLink port as asyncio streams."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Tuple

import serial
import serial_asyncio

from ..config import RFLinkConfig

LOGGER = logging.getLogger(__name__)

StreamPair = Tuple[asyncio.StreamReader, asyncio.StreamWriter]
SerialOpener = Callable[[RFLinkConfig], Awaitable[StreamPair]]

_PARITIES = {
    "none": serial.PARITY_NONE,
    "even": serial.PARITY_EVEN,
    "odd": serial.PARITY_ODD,
    "mark": serial.PARITY_MARK,
    "space": serial.PARITY_SPACE,
}

_STOPBITS = {
    1: serial.STOPBITS_ONE,
    1.5: serial.STOPBITS_ONE_POINT_FIVE,
    2: serial.STOPBITS_TWO,
}


class SerialConfigurationError(ValueError):
    """Raised when the serial options cannot be mapped onto pyserial."""


def serial_options(config: RFLinkConfig) -> dict:
    """Translate the link configuration into pyserial keyword arguments."""

    if not config.port:
        raise SerialConfigurationError("No serial port specified")

    try:
        parity = _PARITIES[config.parity.lower()]
    except KeyError as exc:
        raise SerialConfigurationError(f"Unsupported parity '{config.parity}'") from exc

    try:
        stopbits = _STOPBITS[float(config.stopbits)]
    except KeyError as exc:
        raise SerialConfigurationError(
            f"Unsupported stop bits '{config.stopbits}'"
        ) from exc

    return {
        "url": config.port,
        "baudrate": config.baudrate,
        "bytesize": config.databits,
        "parity": parity,
        "stopbits": stopbits,
    }


async def open_serial(config: RFLinkConfig) -> StreamPair:
    """Open the configured serial port.

    Raises:
        SerialConfigurationError: If the options are invalid.
        serial.SerialException: If the port cannot be opened.
    """

    options = serial_options(config)
    LOGGER.debug("Opening serial port %s at %d baud", options["url"], options["baudrate"])
    return await serial_asyncio.open_serial_connection(**options)
