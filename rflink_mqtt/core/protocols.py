"""Protocol definitions for the seams between link, devices and broker."""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from .models import CommandResult, LinkStatus, RadioFrame


TelemetryListener = Callable[[RadioFrame], Awaitable[None] | None]
StateListener = Callable[[LinkStatus], Awaitable[None] | None]
Clock = Callable[[], int]


class CommandSender(Protocol):
    """Downward control interface used by device drivers."""

    def send_command(self, rfid: str, command: str) -> Awaitable[CommandResult]:
        """Queue a device command, resolving once the transceiver acknowledged it.

        Raises:
            CommandError: If the command could not be delivered.
        """
        ...

    def send_raw_command(self, text: str) -> Awaitable[CommandResult]:
        """Queue a raw command line without any framing."""
        ...


class Publisher(Protocol):
    """Minimal broker contract used by devices to publish their topics."""

    def publish(
        self, topic: str, payload: bytes, qos: int = 0, retain: bool = False
    ) -> None:
        ...


class StatusProvider(Protocol):
    @property
    def status(self) -> LinkStatus:
        ...

    def is_active(self) -> bool:
        ...
