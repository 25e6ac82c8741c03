"""Strictly ordered command queue with acknowledgement correlation.

RFLink replies are not tagged with a request identifier, so a reply can only
be matched to a command by keeping exactly one command in flight at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Optional, Type

from ..codec import is_unacknowledged
from .errors import CommandError, CommandTimeoutError, TransportError
from .models import CommandResult
from .protocols import Clock
from .utils import epoch_ms

LOGGER = logging.getLogger(__name__)

# Compensates for the time the line spends in the serial write buffer.
SEND_LATENCY_MS = 10

DEFAULT_ACK_TIMEOUT_SECONDS = 5.0

WriteLine = Callable[[str], Awaitable[None]]
WriteErrorHandler = Callable[[BaseException], None]


@dataclass(slots=True)
class PendingCommand:
    text: str
    future: "asyncio.Future[CommandResult]"
    sent_at_ms: Optional[int] = None
    expects_reply: bool = True

    @property
    def in_flight(self) -> bool:
        return self.sent_at_ms is not None


class CommandQueue:
    """FIFO of pending commands, transmitting one at a time."""

    def __init__(
        self,
        write_line: WriteLine,
        *,
        on_write_error: Optional[WriteErrorHandler] = None,
        ack_timeout: Optional[float] = DEFAULT_ACK_TIMEOUT_SECONDS,
        clock: Clock = epoch_ms,
    ) -> None:
        self._write_line = write_line
        self._on_write_error = on_write_error
        self._ack_timeout = ack_timeout
        self._clock = clock

        self._entries: Deque[PendingCommand] = deque()
        self._transmit_task: Optional[asyncio.Task[None]] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def head(self) -> Optional[PendingCommand]:
        return self._entries[0] if self._entries else None

    @property
    def in_flight(self) -> Optional[PendingCommand]:
        head = self.head
        if head is not None and head.in_flight:
            return head
        return None

    def enqueue(self, text: str) -> "asyncio.Future[CommandResult]":
        """Append a command; it is transmitted once every earlier one completed."""

        future: asyncio.Future[CommandResult] = asyncio.get_running_loop().create_future()
        self._entries.append(
            PendingCommand(text=text, future=future, expects_reply=not is_unacknowledged(text))
        )
        self._pump()
        return future

    def complete(
        self,
        data: Optional[Dict[str, str]] = None,
        error: Optional[CommandError] = None,
    ) -> Optional[PendingCommand]:
        """Resolve the in-flight command and start transmitting the next one.

        Returns the completed entry, or ``None`` when nothing was in flight.
        """

        entry = self.in_flight
        if entry is None:
            return None

        self._entries.popleft()
        self._cancel_timeout()
        self._resolve(entry, data, error)
        self._pump()
        return entry

    def fail_all(self, error_type: Type[CommandError], message: str) -> int:
        """Fail every queued command with a fresh ``error_type`` instance."""

        if self._transmit_task is not None:
            self._transmit_task.cancel()
            self._transmit_task = None
        self._cancel_timeout()

        count = 0
        while self._entries:
            entry = self._entries.popleft()
            self._resolve(entry, None, error_type(message))
            count += 1
        return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _pump(self) -> None:
        if self._transmit_task is not None:
            return
        head = self.head
        if head is None or head.in_flight:
            return
        self._transmit_task = asyncio.create_task(self._transmit(head))

    async def _transmit(self, entry: PendingCommand) -> None:
        entry.sent_at_ms = self._clock() + SEND_LATENCY_MS
        LOGGER.debug("send: %s", entry.text)
        try:
            await self._write_line(entry.text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._transmit_task = None
            LOGGER.error("Failed to write command '%s': %s", entry.text, exc)
            error = TransportError(f"Failed to write command: {exc}")
            error.__cause__ = exc
            if self.head is entry:
                self._entries.popleft()
                self._cancel_timeout()
                self._resolve(entry, None, error)
            if self._on_write_error is not None:
                self._on_write_error(exc)
            else:
                self._pump()
            return

        self._transmit_task = None
        if self.head is not entry:
            # completed while the write was still draining
            self._pump()
            return

        if not entry.expects_reply:
            self.complete()
        elif self._ack_timeout:
            loop = asyncio.get_running_loop()
            self._timeout_handle = loop.call_later(
                self._ack_timeout, self._on_ack_timeout, entry
            )

    def _on_ack_timeout(self, entry: PendingCommand) -> None:
        self._timeout_handle = None
        if self.in_flight is not entry:
            return
        LOGGER.warning(
            "No acknowledgement for '%s' within %.1fs", entry.text, self._ack_timeout
        )
        self.complete(error=CommandTimeoutError("Command was not acknowledged"))

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _resolve(
        self,
        entry: PendingCommand,
        data: Optional[Dict[str, str]],
        error: Optional[CommandError],
    ) -> None:
        latency = -1
        if entry.sent_at_ms is not None:
            latency = max(self._clock() - entry.sent_at_ms, 0)

        if entry.future.done():
            return

        if error is None:
            entry.future.set_result(
                CommandResult(data=data, sent_at_ms=entry.sent_at_ms, ack_latency_ms=latency)
            )
        else:
            error.command = entry.text
            error.sent_at_ms = entry.sent_at_ms
            error.ack_latency_ms = latency
            entry.future.set_exception(error)
