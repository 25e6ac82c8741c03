"""paho-mqtt adapter used by the gateway to reach the broker."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

import paho.mqtt.client as mqtt

from ..config import MQTTConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
StatusHandler = Callable[[int], None]


class MQTTConnectionError(RuntimeError):
    """Raised when the broker cannot be reached or refuses an operation."""


def _reason_value(reason_code: Any) -> int:
    # paho 2.x hands out ReasonCode objects, older call sites plain ints
    return getattr(reason_code, "value", reason_code)


class MQTTClient:
    """Runs the paho network thread and hands its events to the event loop.

    The gateway's LWT topic is registered as the last will so the broker
    reports the bridge offline when the connection drops unexpectedly.
    """

    def __init__(
        self,
        config: MQTTConfig,
        *,
        client_id: str,
        will_topic: Optional[str] = None,
        will_payload: bytes = b"Offline",
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.will_topic = will_topic
        self.will_payload = will_payload

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Event] = None
        self._closed: Optional[asyncio.Event] = None
        self._connack_rc: Optional[int] = None
        self._connected = False
        self._message_handler: Optional[MessageHandler] = None
        self._connect_handlers: List[StatusHandler] = []
        self._disconnect_handlers: List[StatusHandler] = []
        self._handler_tasks: Set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    async def connect(self, timeout: float = 30.0) -> None:
        """Open a new broker session and wait for the CONNACK.

        Raises:
            MQTTConnectionError: On timeout or when the broker refuses the session.
        """

        self._loop = asyncio.get_running_loop()
        self._connack = asyncio.Event()
        self._closed = asyncio.Event()
        self._connack_rc = None

        client = self._build_client()
        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.host,
            self.config.port,
            self.client_id,
        )
        client.connect_async(self.config.host, self.config.port, self.config.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connack.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._abandon(client)
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc

        if self._connack_rc != 0:
            self._abandon(client)
            raise MQTTConnectionError(
                f"MQTT broker rejected connection (rc={self._connack_rc})"
            )

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Close the session cleanly; the will message is not sent."""

        client = self._client
        if client is None:
            return

        client.disconnect()
        if self._closed is not None:
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                LOGGER.warning("Timed out waiting for MQTT disconnect")
        self._abandon(client)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Traffic
    # ------------------------------------------------------------------
    def publish(
        self, topic: str, payload: bytes, qos: int = 0, retain: bool = False
    ) -> None:
        client = self._require_client()
        if self.config.log_network:
            LOGGER.debug("publish %s%s: %r", topic, " (retained)" if retain else "", payload)
        info = client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish to {topic} failed with rc={info.rc}")

    def subscribe(self, topic: str, qos: int = 0) -> None:
        client = self._require_client()
        result, _ = client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe to {topic} failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_connect_handler(self, handler: StatusHandler) -> None:
        self._connect_handlers.append(handler)

    def register_disconnect_handler(self, handler: StatusHandler) -> None:
        self._disconnect_handlers.append(handler)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self.will_topic:
            client.will_set(self.will_topic, self.will_payload, qos=self.config.qos, retain=True)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise RuntimeError("MQTT client not connected")
        return self._client

    def _abandon(self, client: mqtt.Client) -> None:
        client.loop_stop()
        if self._client is client:
            self._client = None
        self._connected = False

    def _call_on_loop(self, callback: Callable[..., Any], *args: Any) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(callback, *args)

    # paho network thread -------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        self._connack_rc = rc
        self._connected = rc == 0
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            for handler in self._connect_handlers:
                self._call_on_loop(handler, rc)
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
        if self._connack is not None:
            self._call_on_loop(self._connack.set)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        if self._closed is not None:
            self._call_on_loop(self._closed.set)
        for handler in self._disconnect_handlers:
            self._call_on_loop(handler, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        if self.config.log_network:
            LOGGER.debug("message %s: %r", message.topic, message.payload)
        self._call_on_loop(self._dispatch, message.topic, message.payload)

    # event loop ----------------------------------------------------------
    def _dispatch(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if handler is None:
            return
        try:
            result = handler(topic, payload)
        except Exception:
            LOGGER.exception("MQTT message handler failed for %s", topic)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: "asyncio.Task[Any]") -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("MQTT message handler failed", exc_info=task.exception())
