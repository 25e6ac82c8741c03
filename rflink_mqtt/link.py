"""RFLink link engine.

Owns the serial session: opening and retrying the port, waiting for the
transceiver to identify itself, keepalive pings and dead-link detection,
reply classification, and the ordered command interface used by devices.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Coroutine, Dict, List, Optional, Set

from . import codec
from .adapters.serial import SerialOpener, open_serial
from .config import RFLinkConfig
from .core.command_queue import CommandQueue
from .core.errors import (
    CommandError,
    CommandUnknownError,
    LinkStoppingError,
    LinkUnavailableError,
    TransportError,
)
from .core.models import CommandResult, LinkStatus, RadioFrame
from .core.protocols import Clock, StateListener, TelemetryListener
from .core.utils import epoch_ms

LOGGER = logging.getLogger(__name__)

DEAD_LINK_INTERVALS = 3

_ACK_TOKENS = frozenset(
    {
        "VER",
        "RFDEBUG",
        "RFUDEBUG",
        "QRFDEBUG",
        "RTSINVERT",
        "RTSLONGTX",
        "TRISTATEINVERT",
        "RTS CLEANED",
    }
)
_RECORD_CLEANED = re.compile(r"^RECORD \d{2} CLEANED$")

_DEBUG_MODES = {"U": "RFUDEBUG", "Q": "QRFDEBUG"}


class LinkState(str, Enum):
    """Lifecycle of the serial link."""

    CLOSED = "closed"
    OPENING = "opening"
    AWAITING_IDENTITY = "awaiting_identity"
    ACTIVE = "active"
    CLOSING = "closing"
    RETRY_PENDING = "retry_pending"


class RFLinkEngine:
    """Maintains the serial session and exposes the command interface."""

    def __init__(
        self,
        config: RFLinkConfig,
        *,
        opener: SerialOpener = open_serial,
        clock: Clock = epoch_ms,
    ) -> None:
        self.config = config
        self.status = LinkStatus()

        self._opener = opener
        self._clock = clock
        self._state = LinkState.CLOSED
        self._queue = CommandQueue(
            self._write_line,
            on_write_error=self._on_write_error,
            ack_timeout=config.command_timeout or None,
            clock=clock,
        )
        self._telemetry_listeners: List[TelemetryListener] = []
        self._state_listeners: List[StateListener] = []
        self._writer: Optional[asyncio.StreamWriter] = None
        self._supervisor_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._restart_event = asyncio.Event()
        self._background: Set[asyncio.Task[Any]] = set()
        self._opened_at_ms: Optional[int] = None
        self._last_message_ms: Optional[int] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def queue(self) -> CommandQueue:
        return self._queue

    def is_active(self) -> bool:
        return self.status.active

    def add_telemetry_listener(self, listener: TelemetryListener) -> None:
        self._telemetry_listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def remove_listener(self, listener: Any) -> None:
        for listeners in (self._telemetry_listeners, self._state_listeners):
            with contextlib.suppress(ValueError):
                listeners.remove(listener)

    async def start(self) -> None:
        """Start the supervisor that opens the port and keeps it open."""

        if self._supervisor_task is not None and not self._supervisor_task.done():
            return

        LOGGER.info("Starting up rflink interface on %s", self.config.port)
        self._stop_event.clear()
        self._restart_event.clear()
        self._supervisor_task = asyncio.create_task(self._supervise())
        await asyncio.sleep(0)

    async def stop(self) -> None:
        """Close the port, fail pending commands and cancel every timer."""

        task = self._supervisor_task
        if task is None:
            return

        self._stop_event.set()
        self._restart_event.set()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._supervisor_task = None

    def restart(self) -> None:
        """Drop the current session and reopen after the retry delay."""

        if self._state in (LinkState.AWAITING_IDENTITY, LinkState.ACTIVE):
            self._restart_event.set()

    def send_command(self, rfid: str, command: str) -> "asyncio.Future[CommandResult]":
        return self._enqueue(codec.encode_device_command(rfid, command))

    def send_raw_command(self, text: str) -> "asyncio.Future[CommandResult]":
        return self._enqueue(text.strip())

    def reboot(self) -> "asyncio.Future[CommandResult]":
        return self._enqueue(codec.encode_command("REBOOT"))

    def request_version(self) -> "asyncio.Future[CommandResult]":
        return self._enqueue(codec.encode_command("VERSION"))

    def set_debug(self, mode: str, enabled: bool) -> "asyncio.Future[CommandResult]":
        """Toggle debug output; ``mode`` is ``"U"``, ``"Q"`` or anything else for plain."""

        option = _DEBUG_MODES.get(mode.upper(), "RFDEBUG")
        return self._enqueue(codec.encode_command(f"{option}={'ON' if enabled else 'OFF'}"))

    def tristate_invert(self) -> "asyncio.Future[CommandResult]":
        return self._enqueue(codec.encode_command("TRISTATEINVERT"))

    def rts_clean(self) -> "asyncio.Future[CommandResult]":
        return self._enqueue(codec.encode_command("RTSCLEAN"))

    def rts_record_clean(self, record: int) -> "asyncio.Future[CommandResult]":
        return self._enqueue(codec.encode_command(f"RTSRECCLEAN={int(record)}"))

    def rts_show(self) -> "asyncio.Future[CommandResult]":
        return self._enqueue(codec.encode_command("RTSSHOW"))

    def rts_invert(self) -> "asyncio.Future[CommandResult]":
        return self._enqueue(codec.encode_command("RTSINVERT"))

    def rts_long_tx(self) -> "asyncio.Future[CommandResult]":
        return self._enqueue(codec.encode_command("RTSLONGTX"))

    # ------------------------------------------------------------------
    # Session supervision
    # ------------------------------------------------------------------
    async def _supervise(self) -> None:
        try:
            while not self._stop_event.is_set():
                await self._run_session()
                if self._stop_event.is_set():
                    break

                self._set_state(LinkState.RETRY_PENDING)
                LOGGER.info(
                    "Retrying to open serial port in %.0f second(s)", self.config.retry
                )
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self.config.retry
                    )
        finally:
            self._set_active(False)
            self._set_state(LinkState.CLOSED)
            LOGGER.info("rflink interface stopped")

    async def _run_session(self) -> None:
        self._restart_event.clear()
        self._set_state(LinkState.OPENING)

        try:
            reader, writer = await self._opener(self.config)
        except asyncio.CancelledError:
            raise
        except ValueError as exc:
            LOGGER.error("Wrong rflink options specified: %s", exc)
            self._stop_event.set()
            return
        except Exception as exc:
            self._record_error("Error opening serial port %s: %s", exc)
            return

        self._writer = writer
        self._opened_at_ms = self._clock()
        self._last_message_ms = None
        self.status.last_opened = datetime.now(timezone.utc)
        self.status.session_count += 1
        LOGGER.info("RFLink port %s successfully opened", self.config.port)
        self._set_state(LinkState.AWAITING_IDENTITY)

        reader_task = asyncio.create_task(self._read_loop(reader))
        keepalive_task = asyncio.create_task(self._keepalive_loop())
        restart_task = asyncio.create_task(self._restart_event.wait())

        try:
            done, _ = await asyncio.wait(
                {reader_task, restart_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if (
                reader_task in done
                and not reader_task.cancelled()
                and not self._restart_event.is_set()
            ):
                error = reader_task.exception() or ConnectionError("end of stream")
                self._record_error("Error on serial port %s: %s", error)
        finally:
            self._set_state(LinkState.CLOSING)
            for task in (reader_task, keepalive_task, restart_task):
                task.cancel()
            await asyncio.gather(
                reader_task, keepalive_task, restart_task, return_exceptions=True
            )
            self._set_active(False)

            if self._stop_event.is_set():
                self._queue.fail_all(LinkStoppingError, "Link stopping")
            else:
                self._queue.fail_all(TransportError, "Link restarting")

            self._writer = None
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            LOGGER.info("Serial port '%s' closed", self.config.port)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        encoding = self.config.encoding
        delimiter = self.config.delimiter.encode(encoding)

        while True:
            try:
                raw = await reader.readuntil(delimiter)
            except asyncio.IncompleteReadError as exc:
                raise ConnectionError("Serial stream closed") from exc
            except asyncio.LimitOverrunError as exc:
                await reader.readexactly(exc.consumed)
                LOGGER.warning("Discarding oversized frame (%d bytes)", exc.consumed)
                continue

            line = raw[: -len(delimiter)].decode(encoding, errors="replace")
            self._handle_line(line)

    async def _keepalive_loop(self) -> None:
        interval = self.config.keepalive
        dead_after_ms = interval * 1000 * DEAD_LINK_INTERVALS

        while True:
            await asyncio.sleep(interval)

            reference = self._last_message_ms or self._opened_at_ms or self._clock()
            if self._clock() - reference > dead_after_ms:
                LOGGER.warning("Connection appears to be dead. Restarting...")
                self.status.dead_count += 1
                self._restart_event.set()
                return

            if self.status.active:
                try:
                    await self._write_line(codec.encode_command("PING"))
                except Exception as exc:
                    self._on_write_error(exc)
                    return

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------
    def _handle_line(self, line: str) -> None:
        LOGGER.debug("recv: %s", line)
        now = datetime.now(timezone.utc)
        self.status.message_count += 1
        self.status.last_message = now
        self._last_message_ms = self._clock()

        frame = codec.split_frame(line)
        if frame is None:
            LOGGER.warning("Discarding malformed frame '%s'", line)
            return

        if not self.status.active:
            self._handle_identity(frame)
            return

        if frame.node in (codec.COMMAND_NODE, codec.SYSTEM_NODE):
            return
        if frame.node != codec.DATA_NODE:
            LOGGER.warning("Unknown message type received: '%s'", line)
            return

        self._handle_data(frame, now)

    def _handle_identity(self, frame: codec.RawFrame) -> None:
        if frame.node == codec.DATA_NODE and frame.packet_index == 0 and frame.fields:
            self.status.model = codec.parse_banner_model(frame.fields[0])
            LOGGER.info("RFLink identified as '%s'", self.status.model)
            self._spawn(self._write_direct(codec.encode_command("VERSION")))

        if frame.first_token == "VER":
            self._apply_version(codec.decompose(frame.fields))
            self._set_active(True)

    def _handle_data(self, frame: codec.RawFrame, now: datetime) -> None:
        token = frame.first_token

        if token == "PONG":
            # keepalive traffic is not counted as a received message
            self.status.message_count -= 1
            return

        if token == "OK":
            self._complete_command(None)
            return

        if token == "CMD UNKNOWN":
            error = CommandUnknownError("Command unknown")
            if self._queue.complete(error=error) is None:
                LOGGER.warning("Received CMD UNKNOWN without pending command")
            return

        if token in _ACK_TOKENS or _RECORD_CLEANED.match(token):
            data = codec.decompose(frame.fields)
            if token == "VER":
                self._apply_version(data)
            self._complete_command(data)
            return

        # DEBUG output and device telemetry both travel upward
        self._emit_telemetry(self._build_frame(frame, now))

    def _complete_command(self, data: Optional[Dict[str, str]]) -> None:
        if self._queue.complete(data) is None:
            LOGGER.debug("Ignoring unsolicited acknowledgement %s", data)
            return
        self.status.confirm_count += 1

    def _apply_version(self, data: Dict[str, str]) -> None:
        self.status.version = data.get("ver", "")
        self.status.revision = data.get("rev", "")
        self.status.build = data.get("build", "")

    @staticmethod
    def _build_frame(frame: codec.RawFrame, now: datetime) -> RadioFrame:
        name = frame.fields[0] if frame.fields else ""
        fields = codec.decompose(frame.fields[1:])
        fields["name"] = name
        return RadioFrame(
            name=name,
            fields=fields,
            node=frame.node,
            packet_index=frame.packet_index,
            received_at=now,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _enqueue(self, text: str) -> "asyncio.Future[CommandResult]":
        if not self.status.active:
            future: asyncio.Future[CommandResult] = (
                asyncio.get_running_loop().create_future()
            )
            future.set_exception(
                LinkUnavailableError("RFLink is not available", command=text)
            )
            return future

        self.status.command_count += 1
        return self._queue.enqueue(text)

    async def _write_line(self, text: str) -> None:
        writer = self._writer
        if writer is None:
            raise ConnectionError("Serial port is not open")
        writer.write((text + self.config.delimiter).encode(self.config.encoding))
        await writer.drain()

    async def _write_direct(self, text: str) -> None:
        try:
            await self._write_line(text)
        except Exception as exc:
            self._on_write_error(exc)

    def _on_write_error(self, exc: BaseException) -> None:
        self._record_error("Error writing on serial port %s: %s", exc)
        self._restart_event.set()

    def _record_error(self, message: str, exc: BaseException) -> None:
        LOGGER.error(message, self.config.port, exc)
        self.status.last_error = datetime.now(timezone.utc)
        self.status.error_count += 1

    def _set_state(self, state: LinkState) -> None:
        if state == self._state:
            return
        LOGGER.debug("Link state %s -> %s", self._state.value, state.value)
        self._state = state

    def _set_active(self, active: bool) -> None:
        if self.status.active == active:
            return

        self.status.active = active
        if active:
            self._set_state(LinkState.ACTIVE)
            LOGGER.info(
                "RFLink active (model=%s, version=%s, revision=%s, build=%s)",
                self.status.model,
                self.status.version,
                self.status.revision,
                self.status.build,
            )

        for listener in list(self._state_listeners):
            try:
                result = listener(self.status)
                if asyncio.iscoroutine(result):
                    self._spawn(result)
            except Exception:
                LOGGER.exception("Link state listener failed")

    def _emit_telemetry(self, frame: RadioFrame) -> None:
        for listener in list(self._telemetry_listeners):
            try:
                result = listener(frame)
                # listeners may send commands and await replies, which are
                # only read once this handler returns
                if asyncio.iscoroutine(result):
                    self._spawn(result)
            except Exception:
                LOGGER.exception("Telemetry listener failed")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, CommandError):
            LOGGER.warning("Command failed in listener: %s", exc)
        else:
            LOGGER.error("Listener task failed", exc_info=exc)
