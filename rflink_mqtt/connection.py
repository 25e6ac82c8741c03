"""Broker connection supervision.

paho-mqtt reports a lost connection from its network thread; the app
forwards those reports here, where a single supervisor task serializes
every reconnect attempt and spaces them out with exponential backoff.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional

if TYPE_CHECKING:
    from .adapters.mqtt import MQTTClient
    from .config import MQTTConfig

LOGGER = logging.getLogger(__name__)

ReconnectedCallback = Callable[[], Awaitable[None] | None]

# CONNACK "not authorized"
NOT_AUTHORIZED_RC = 5
MIN_RETRY_DELAY_SECONDS = 0.5


class ReconnectReason(str, Enum):
    CONNECTION_LOST = "connection_lost"
    AUTH_FAILURE = "auth_failure"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(slots=True)
class Backoff:
    """Doubling retry delay with symmetric jitter."""

    initial: float
    maximum: float
    jitter_ratio: float = 0.0
    current: float = 0.0

    @classmethod
    def from_config(cls, config: "MQTTConfig") -> "Backoff":
        initial = max(MIN_RETRY_DELAY_SECONDS, config.reconnect_initial_seconds)
        return cls(
            initial=initial,
            maximum=max(initial, config.reconnect_max_seconds),
            jitter_ratio=config.reconnect_jitter_ratio,
        )

    def reset(self, *, slow: bool = False) -> None:
        self.current = self.maximum if slow else self.initial

    def next_delay(self) -> float:
        delay = self.current or self.initial
        self.current = min(delay * 2, self.maximum)
        if self.jitter_ratio <= 0.0:
            return delay
        spread = delay * self.jitter_ratio
        return random.uniform(max(0.1, delay - spread), delay + spread)


class ConnectionCoordinator:
    """Owns the broker session of the gateway.

    Reconnect requests are coalesced: however many arrive while an attempt
    is running, at most one further attempt follows. An authorization
    failure waits the longest backoff before the first retry.
    """

    def __init__(self, *, mqtt_client: "MQTTClient", config: "MQTTConfig") -> None:
        self._mqtt_client = mqtt_client
        self._backoff = Backoff.from_config(config)

        self._state = ConnectionState.DISCONNECTED
        self._pending_reason: Optional[ReconnectReason] = None
        self._reconnect_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._supervisor_task: Optional[asyncio.Task[None]] = None
        self._reconnected_callbacks: List[ReconnectedCallback] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def register_reconnected_callback(self, callback: ReconnectedCallback) -> None:
        self._reconnected_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def request_reconnect(self, reason: ReconnectReason) -> None:
        """Queue a reconnect; must be called on the event loop."""

        if self._stop_event.is_set() or self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.RECONNECTING,
        ):
            return
        if reason == ReconnectReason.AUTH_FAILURE or self._pending_reason is None:
            self._pending_reason = reason
        LOGGER.debug("Reconnect requested (%s)", self._pending_reason.value)
        self._reconnect_event.set()

    def on_disconnect(self, rc: int) -> None:
        """Disconnect handler registered with the MQTT client."""

        # attempts in progress report their own failures
        if self._state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            return
        self._set_state(ConnectionState.DISCONNECTED)
        self.request_reconnect(
            ReconnectReason.AUTH_FAILURE
            if rc == NOT_AUTHORIZED_RC
            else ReconnectReason.CONNECTION_LOST
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> bool:
        """First connection; keeps retrying until connected or stopped."""

        self._set_state(ConnectionState.CONNECTING)
        self._backoff.reset()
        connected = await self._connect_until_stopped()
        self._set_state(
            ConnectionState.CONNECTED if connected else ConnectionState.DISCONNECTED
        )
        return connected

    def start_supervisor(self) -> None:
        if self._supervisor_task is not None and not self._supervisor_task.done():
            LOGGER.warning("Connection supervisor already running")
            return
        self._stop_event.clear()
        self._supervisor_task = asyncio.create_task(self._supervise())

    async def stop(self) -> None:
        self._stop_event.set()
        self._reconnect_event.set()

        task, self._supervisor_task = self._supervisor_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _supervise(self) -> None:
        while True:
            await self._reconnect_event.wait()
            self._reconnect_event.clear()
            if self._stop_event.is_set():
                return

            reason, self._pending_reason = self._pending_reason, None
            if reason is not None:
                await self._reconnect(reason)

    async def _reconnect(self, reason: ReconnectReason) -> None:
        LOGGER.info("Reconnecting to MQTT broker (%s)", reason.value)
        self._set_state(ConnectionState.RECONNECTING)

        # drop the dead session before building a new one
        with contextlib.suppress(Exception):
            await self._mqtt_client.disconnect()

        self._backoff.reset(slow=reason == ReconnectReason.AUTH_FAILURE)
        if reason == ReconnectReason.AUTH_FAILURE and not await self._pause(
            self._backoff.next_delay()
        ):
            self._set_state(ConnectionState.DISCONNECTED)
            return

        if not await self._connect_until_stopped():
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._set_state(ConnectionState.CONNECTED)
        for callback in list(self._reconnected_callbacks):
            try:
                result: Any = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Reconnected callback failed")

    async def _connect_until_stopped(self) -> bool:
        attempt = 0
        while not self._stop_event.is_set():
            attempt += 1
            try:
                await self._mqtt_client.connect()
            except Exception as exc:
                delay = self._backoff.next_delay()
                LOGGER.warning(
                    "MQTT connection attempt %d failed: %s, retrying in %.1fs",
                    attempt,
                    exc,
                    delay,
                )
                if not await self._pause(delay):
                    return False
                continue

            LOGGER.debug("MQTT connection attempt %d succeeded", attempt)
            return True
        return False

    async def _pause(self, seconds: float) -> bool:
        """Sleep unless stopped first; returns ``False`` once stopped."""

        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        return not self._stop_event.is_set()

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        LOGGER.debug("MQTT connection %s -> %s", self._state.value, state.value)
        self._state = state
