"""Main application entry-point for rflink-mqtt."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from enum import Enum
from typing import Optional

from . import constants
from .adapters import MQTTClient
from .config import BridgeConfig, load_config
from .connection import ConnectionCoordinator
from .core.models import LinkStatus
from .devices import DeviceContext, DeviceRegistry
from .hass import STATUS_TOPIC_SUFFIX
from .health import HealthReporter, HealthServer
from .link import RFLinkEngine
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGQUIT")


class BridgeState(str, Enum):
    COLD_START = "cold_start"
    AWAITING_MQTT = "awaiting_mqtt"
    ACTIVE = "active"
    STOPPING = "stopping"


class RFLinkBridgeApp:
    """Coordinates startup and shutdown of the link, the devices and the broker.

    The link engine and the MQTT client can be injected for testing.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        engine: Optional[RFLinkEngine] = None,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self._config = config or load_config()
        self._engine = engine or RFLinkEngine(self._config.rflink)
        self._health = HealthReporter(self._engine)
        self._health_server: Optional[HealthServer] = None

        self._context = DeviceContext(
            link=self._engine,
            link_status=self._engine.status,
            topic_prefix=self._config.gateway.topic_prefix,
            discovery_prefix=self._config.mqtt.discovery_prefix,
            qos=self._config.mqtt.qos,
            app_version=constants.APP_VERSION,
        )
        self._registry = DeviceRegistry.from_config(self._config, self._context)

        gateway = self._registry.gateway
        assert gateway is not None
        self._mqtt_client = mqtt_client or MQTTClient(
            self._config.mqtt,
            client_id=self._config.mqtt.client_id
            or f"{constants.APP_NAME}-{self._config.gateway.id}",
            will_topic=f"{gateway.base_topic}tele/LWT",
        )
        self._context.publisher = self._mqtt_client
        self._coordinator: Optional[ConnectionCoordinator] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._state = BridgeState.COLD_START
        self._stopping = False

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def state(self) -> BridgeState:
        return self._state

    @classmethod
    def start(cls, config: Optional[BridgeConfig] = None) -> None:
        config = config or load_config()
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        instance = cls(config=config)
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("rflink-mqtt received shutdown signal")

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._install_signal_handlers()

        LOGGER.info(
            "%s %s starting with config: %s",
            constants.APP_NAME,
            constants.APP_VERSION,
            self._config.path,
        )
        start_task = asyncio.create_task(self._start_services())
        try:
            await self._shutdown_event.wait()
        finally:
            if not start_task.done():
                start_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await start_task
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None and not self._shutdown_event.is_set():
            LOGGER.info("Shutdown requested")
            self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _start_services(self) -> None:
        self._stopping = False
        await self._health.update("mqtt", False, "initialising")
        await self._health.update("rflink", False, "initialising")

        self._mqtt_client.set_message_handler(self._handle_message)
        self._mqtt_client.register_connect_handler(self._on_mqtt_connect)
        self._mqtt_client.register_disconnect_handler(self._on_mqtt_disconnect)

        coordinator = ConnectionCoordinator(
            mqtt_client=self._mqtt_client, config=self._config.mqtt
        )
        coordinator.register_reconnected_callback(self._on_mqtt_ready)
        self._coordinator = coordinator

        self._transition(BridgeState.AWAITING_MQTT)
        if not await coordinator.connect():
            return
        await self._on_mqtt_ready()

        self._engine.add_telemetry_listener(self._registry.dispatch_frame)
        self._engine.add_state_listener(self._on_link_state)
        await self._engine.start()

        await self._start_health_server()
        coordinator.start_supervisor()
        self._transition(BridgeState.ACTIVE)

    async def _stop_services(self) -> None:
        self._transition(BridgeState.STOPPING)
        self._stopping = True

        if self._coordinator is not None:
            await self._coordinator.stop()

        self._engine.remove_listener(self._registry.dispatch_frame)
        self._engine.remove_listener(self._on_link_state)
        await self._engine.stop()

        self._registry.close()
        self._registry.set_all_offline()

        await self._stop_health_server()
        with contextlib.suppress(Exception):
            await self._mqtt_client.disconnect()
        await self._health.update("mqtt", False, "shutdown")
        LOGGER.info("%s stopped", constants.APP_NAME)

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(
            self._health, health.host, health.port, devices=self._registry.snapshot
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_health_server(self) -> None:
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

    def _install_signal_handlers(self) -> None:
        loop = self._loop
        if loop is None:
            return
        for name in _SHUTDOWN_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self.request_shutdown)

    def _transition(self, state: BridgeState) -> None:
        if state == self._state:
            return
        LOGGER.info("Bridge state transition %s -> %s", self._state.value, state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Broker
    # ------------------------------------------------------------------
    async def _on_mqtt_ready(self) -> None:
        """Subscribe and republish everything after each (re)connect."""

        topics = self._registry.subscriptions()
        topics.append(f"{self._config.mqtt.discovery_prefix}/{STATUS_TOPIC_SUFFIX}")
        try:
            for topic in topics:
                self._mqtt_client.subscribe(topic, qos=self._config.mqtt.qos)
        except RuntimeError as exc:
            LOGGER.error("Failed to subscribe: %s", exc)
            await self._health.update("mqtt", False, str(exc))
            return

        LOGGER.debug("Subscribed to %d topics", len(topics))
        self._registry.refresh_all()
        await self._health.update("mqtt", True, None)

    async def _handle_message(self, topic: str, payload: bytes) -> None:
        if topic == f"{self._config.mqtt.discovery_prefix}/{STATUS_TOPIC_SUFFIX}":
            if payload.decode("utf-8", errors="replace").strip().lower() == "online":
                LOGGER.info("Home Assistant online, republishing devices")
                self._registry.refresh_all()
            return
        await self._registry.dispatch_message(topic, payload)

    def _on_mqtt_connect(self, rc: int) -> None:
        if self._stopping:
            return
        asyncio.create_task(self._health.update("mqtt", True, None))

    def _on_mqtt_disconnect(self, rc: int) -> None:
        asyncio.create_task(self._health.update("mqtt", False, f"disconnected (rc={rc})"))
        if self._stopping or self._coordinator is None:
            return
        self._coordinator.on_disconnect(rc)

    # ------------------------------------------------------------------
    # Link
    # ------------------------------------------------------------------
    async def _on_link_state(self, status: LinkStatus) -> None:
        detail = None if status.active else "link inactive"
        await self._health.update("rflink", status.active, detail)
        await self._registry.on_link_state(status)
