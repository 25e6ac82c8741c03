"""Core primitives for rflink-mqtt."""

from .command_queue import CommandQueue, PendingCommand
from .errors import (
    CommandError,
    CommandTimeoutError,
    CommandUnknownError,
    LinkError,
    LinkStoppingError,
    LinkUnavailableError,
    TransportError,
)
from .models import CommandResult, LinkStatus, RadioFrame
from .protocols import CommandSender, Publisher, StatusProvider
from .utils import clamp, epoch_ms, format_uptime

__all__ = [
    "CommandError",
    "CommandQueue",
    "CommandResult",
    "CommandSender",
    "CommandTimeoutError",
    "CommandUnknownError",
    "LinkError",
    "LinkStatus",
    "LinkStoppingError",
    "LinkUnavailableError",
    "PendingCommand",
    "Publisher",
    "RadioFrame",
    "StatusProvider",
    "TransportError",
    "clamp",
    "epoch_ms",
    "format_uptime",
]
