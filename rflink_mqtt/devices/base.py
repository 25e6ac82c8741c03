"""Device record and the behaviour interface shared by all device kinds."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Coroutine, Deque, Dict, List, Optional, Set, Tuple

from ..core.errors import CommandError
from ..core.models import LinkStatus, RadioFrame
from ..core.protocols import Clock, CommandSender, Publisher
from ..core.utils import epoch_ms, format_uptime

if TYPE_CHECKING:
    from ..hass import DiscoveryConfig

LOGGER = logging.getLogger(__name__)

RATE_WINDOW_MS = 3_600_000


@dataclass(slots=True)
class DeviceContext:
    """Collaborators shared by every device of one gateway."""

    link: CommandSender
    link_status: LinkStatus
    publisher: Optional[Publisher] = None
    topic_prefix: str = ""
    discovery_prefix: str = "homeassistant"
    qos: int = 0
    app_version: str = ""
    clock: Clock = epoch_ms


class DeviceBehavior:
    """Capability set plugged into a :class:`Device`.

    Subclasses override the hooks they need; the defaults do nothing.
    """

    commands: Tuple[str, ...] = ()

    def __init__(self, device: "Device") -> None:
        self.device = device
        self._tasks: Set[asyncio.Task[Any]] = set()

    async def initialize(self) -> None:
        """Called once, the first time the link becomes active."""

    async def on_telemetry(self, frame: RadioFrame) -> None:
        """Called for each radio frame routed to the device."""

    async def on_command(self, command: str, payload: str) -> None:
        """Called for each accepted ``cmnd/<command>`` message."""

    def on_link_state(self, active: bool) -> None:
        self.device.set_online(active)

    def state(self) -> Optional[Dict[str, Any]]:
        """Behaviour part of ``tele/STATE``; ``None`` suppresses publication."""

        return {}

    def hass_state(self) -> Dict[str, Any]:
        return {}

    def discovery(self) -> List["DiscoveryConfig"]:
        return []

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, CommandError):
            LOGGER.warning("Command for '%s' failed: %s", self.device.name, exc)
        else:
            LOGGER.error("Task for '%s' failed", self.device.name, exc_info=exc)


class Device:
    """A configured endpoint with its MQTT topics and message statistics."""

    def __init__(
        self,
        *,
        name: str,
        device_id: str,
        rfid: str,
        kind: str,
        context: DeviceContext,
    ) -> None:
        self.name = name
        self.id = device_id
        self.rfid = rfid
        self.kind = kind
        self.context = context
        self.online: Optional[bool] = None
        self.count = 0
        self.message_rate = 0
        self.behavior: DeviceBehavior = DeviceBehavior(self)

        self._birth_ms = context.clock()
        self._timestamps: Deque[int] = deque()

    @property
    def base_topic(self) -> str:
        return f"{self.context.topic_prefix}{self.name}/"

    @property
    def commands(self) -> Tuple[str, ...]:
        return self.behavior.commands

    @property
    def protocol(self) -> str:
        return self.rfid.split(":")[0] if self.rfid else ""

    def subscriptions(self) -> List[str]:
        return [f"{self.base_topic}cmnd/{command}" for command in self.commands]

    def uptime_seconds(self) -> int:
        return max(0, (self.context.clock() - self._birth_ms) // 1000)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    async def dispatch_frame(self, frame: RadioFrame, now_ms: int) -> None:
        self.update_message_rate(frame.ts, now_ms)
        await self.behavior.on_telemetry(frame)

    async def dispatch_message(self, topic: str, payload: str) -> bool:
        prefix = f"{self.base_topic}cmnd/"
        if not topic.startswith(prefix):
            return False

        command = topic[len(prefix):].upper()
        if command not in self.commands:
            LOGGER.warning("Ignoring unsupported cmnd/%s sent to '%s'", command, self.name)
            return False

        LOGGER.debug("Command cmnd/%s '%s' for '%s'", command, payload, self.name)
        await self.behavior.on_command(command, payload)
        return True

    def update_message_rate(self, ts_ms: int, now_ms: int) -> None:
        """Track messages per hour over a sliding one hour window."""

        window_start = now_ms - RATE_WINDOW_MS
        self._timestamps.append(ts_ms)
        self.count += 1
        while self._timestamps and self._timestamps[0] < window_start:
            self._timestamps.popleft()

        if window_start > self._birth_ms:
            self.message_rate = len(self._timestamps)
        elif len(self._timestamps) > 1 and now_ms > self._birth_ms:
            elapsed = now_ms - self._birth_ms
            self.message_rate = len(self._timestamps) * RATE_WINDOW_MS // elapsed

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    def set_online(self, online: bool) -> None:
        online = online is True
        if self.online == online:
            return
        self.online = online
        self._publish_sequence(self.publish_online, self.publish_state, self.publish_hass_state)

    def refresh(self) -> None:
        """Republish availability, state, attributes and discovery."""

        self._publish_sequence(
            self.publish_online,
            self.publish_state,
            self.publish_hass_state,
            self.publish_discovery,
        )

    def update_state(self) -> None:
        """Publish ``tele/STATE`` after a behaviour changed its value."""

        self._publish_sequence(self.publish_state)

    def publish_reading(self, payload: str) -> None:
        self._publish_sequence(lambda: self.publish("tele/SENSOR", payload))

    def publish_result(self, payload: str) -> None:
        self._publish_sequence(lambda: self.publish("tele/RESULT", payload))

    def publish_online(self) -> None:
        self.publish("tele/LWT", "Online" if self.online else "Offline", retain=True)

    def publish_state(self) -> None:
        state = self.get_state()
        if state is not None:
            self.publish("tele/STATE", json.dumps(state))

    def publish_hass_state(self) -> None:
        self.publish("tele/HASS_STATE", json.dumps(self.get_hass_state(), default=str))

    def publish_discovery(self) -> None:
        publisher = self.context.publisher
        if publisher is None:
            return
        for config in self.behavior.discovery():
            publisher.publish(
                config.topic(self.context.discovery_prefix),
                config.payload(),
                qos=self.context.qos,
                retain=True,
            )

    def publish(self, suffix: str, payload: str, *, retain: bool = False) -> None:
        publisher = self.context.publisher
        if publisher is None:
            return
        publisher.publish(
            self.base_topic + suffix,
            payload.encode("utf-8"),
            qos=self.context.qos,
            retain=retain,
        )

    def get_state(self) -> Optional[Dict[str, Any]]:
        behavior_state = self.behavior.state()
        if behavior_state is None:
            return None

        uptime = self.uptime_seconds()
        state: Dict[str, Any] = {
            "Time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "Uptime": format_uptime(uptime),
            "UptimeSec": uptime,
            "MqttCount": self.count,
            "MsgRate": self.message_rate,
            "ONLINE": self.online,
        }
        state.update(behavior_state)
        return state

    def get_hass_state(self) -> Dict[str, Any]:
        status = self.context.link_status
        hass_state: Dict[str, Any] = {
            "Model": status.model,
            "Version": status.version,
            "Revision": status.revision,
            "Build": status.build,
            "Gateway": self.context.app_version,
            "Uptime": format_uptime(self.uptime_seconds()),
        }
        if self.rfid:
            parts = self.rfid.split(":")
            hass_state["Module"] = parts[0]
            if len(parts) > 1:
                hass_state["Id"] = parts[1]
        hass_state.update(self.behavior.hass_state())
        return hass_state

    def _publish_sequence(self, *steps: Any) -> None:
        for step in steps:
            try:
                step()
            except RuntimeError as exc:
                LOGGER.warning("Failed to publish for '%s': %s", self.name, exc)
                return
