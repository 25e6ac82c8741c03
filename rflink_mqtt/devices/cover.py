"""Time-based motion tracking for covers, shutters and blinds.

Positions run from 0 (fully open) to 100 (fully closed). Movement is
inferred from the configured travel times because the motors report
nothing back; the position is interpolated from the moment a command
was acknowledged.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from ..core.errors import CommandError
from ..core.models import RadioFrame
from ..core.utils import clamp
from .base import DeviceBehavior

if TYPE_CHECKING:
    from ..config import DeviceConfig
    from ..hass import DiscoveryConfig
    from .base import Device

LOGGER = logging.getLogger(__name__)

OPEN_POSITION = 0.0
CLOSED_POSITION = 100.0
MIN_MOVE_DELTA = 3.0
END_STOP_MULTIPLIER = 1.1
RECALIBRATION_THRESHOLD = 50.0
REFRESH_INTERVAL_SECONDS = 0.5
POSITION_STEP = 5

_MOTION_COMMANDS = ("UP", "DOWN", "STOP")
_SIMPLE_STATES = {"UP": "Open", "DOWN": "Closed"}


@dataclass(slots=True)
class CoverState:
    """Motion bookkeeping of a single cover."""

    position: Optional[float] = None
    # signed milliseconds per percent; positive while closing
    direction_ms_per_percent: float = 0.0
    start_time_ms: Optional[int] = None
    start_position: Optional[float] = None
    position_uncertain: bool = False
    recalibration_target: Optional[float] = None
    deferred_target: Optional[float] = None

    @property
    def moving(self) -> bool:
        return self.start_time_ms is not None

    @property
    def recalibrating(self) -> bool:
        return self.recalibration_target is not None


class CoverController(DeviceBehavior):
    """Drives a cover to a target position using timed UP/DOWN/STOP commands.

    Without both travel times the cover runs in simple mode and only
    reports ``Open`` or ``Closed`` after a command.

    Motion requests are handled one at a time: a request that arrives while
    a command is waiting for its acknowledgement is evaluated against the
    motion that command started.
    """

    def __init__(self, device: "Device", config: "DeviceConfig") -> None:
        super().__init__(device)
        self.open_time = max(0.0, config.open_time)
        self.close_time = max(0.0, config.close_time)
        self.advanced = self.open_time > 0 and self.close_time > 0
        self.commands = ("CONTROL", "POSITION", "RESET") if self.advanced else ("CONTROL",)

        self.cover = CoverState()
        self.value: Optional[Union[int, str]] = None

        self._stop_handle: Optional[asyncio.TimerHandle] = None
        self._recalibration_handle: Optional[asyncio.TimerHandle] = None
        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._motion_lock = asyncio.Lock()

    @property
    def open_ms_per_percent(self) -> float:
        return self.open_time * 1000 / 100

    @property
    def close_ms_per_percent(self) -> float:
        return self.close_time * 1000 / 100

    @property
    def refresh_task(self) -> Optional["asyncio.Task[None]"]:
        return self._refresh_task

    def _now(self) -> int:
        return self.device.context.clock()

    # ------------------------------------------------------------------
    # Device hooks
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        if not self.advanced:
            return

        # nothing tells us where the cover is after a restart
        self.cover.position_uncertain = True
        if self.cover.deferred_target is not None:
            target = self.cover.deferred_target
            self.cover.deferred_target = None
            await self.move_to(target)

    async def on_command(self, command: str, payload: str) -> None:
        message = payload.strip().upper()

        if not self.advanced:
            if command == "CONTROL" and message in _MOTION_COMMANDS:
                await self._send_simple(message)
            else:
                LOGGER.warning(
                    "Unsupported command cmnd/%s '%s' for '%s'", command, payload, self.device.name
                )
            return

        if command == "CONTROL":
            if message == "UP":
                await self.move_to(OPEN_POSITION)
            elif message == "DOWN":
                await self.move_to(CLOSED_POSITION)
            elif message == "STOP":
                await self.stop()
            else:
                LOGGER.warning("Unsupported cmnd/CONTROL '%s' for '%s'", payload, self.device.name)
        elif command == "POSITION":
            try:
                target = float(payload)
            except ValueError:
                LOGGER.warning("Invalid cmnd/POSITION '%s' for '%s'", payload, self.device.name)
                return
            await self.move_to(target)
        elif command == "RESET":
            await self.recalibrate()

    async def on_telemetry(self, frame: RadioFrame) -> None:
        command = frame.command
        if command not in _MOTION_COMMANDS:
            return

        if not self.advanced:
            self._apply_simple(command)
            return

        # another remote moved the cover; follow it without transmitting
        if self._external_intervention():
            return
        if command == "UP":
            await self.move_to(OPEN_POSITION, simulate=True)
        elif command == "DOWN":
            await self.move_to(CLOSED_POSITION, simulate=True)
        else:
            await self.stop(simulate=True)

    def state(self) -> Optional[Dict[str, Any]]:
        if self.value is None:
            return None
        return {"POSITION" if self.advanced else "STATE": self.value}

    def hass_state(self) -> Dict[str, Any]:
        if not self.advanced:
            return {}
        return {
            "OpenTime": self.open_time,
            "CloseTime": self.close_time,
            "Uncertain": self.cover.position_uncertain,
        }

    def discovery(self) -> List["DiscoveryConfig"]:
        from ..hass import cover_configs

        return cover_configs(self.device, advanced=self.advanced)

    def close(self) -> None:
        self._cancel_stop_timer()
        self._cancel_recalibration_timer()
        self._cancel_refresh()
        super().close()

    # ------------------------------------------------------------------
    # Motion
    # ------------------------------------------------------------------
    def current_position(self, at_ms: Optional[int] = None) -> Optional[float]:
        """Interpolated position at ``at_ms`` (defaults to now)."""

        cover = self.cover
        if not cover.moving or cover.start_position is None:
            return cover.position
        elapsed = (at_ms if at_ms is not None else self._now()) - cover.start_time_ms
        return clamp(cover.start_position + elapsed / cover.direction_ms_per_percent)

    async def move_to(self, target: float, simulate: bool = False) -> None:
        """Move towards ``target``; ``simulate`` tracks motion without transmitting."""

        async with self._motion_lock:
            await self._move_to(clamp(float(target)), simulate)

    async def stop(self, simulate: bool = False) -> bool:
        """Stop the cover; returns ``False`` when the STOP command failed."""

        async with self._motion_lock:
            return await self._stop(simulate)

    async def recalibrate(self, target: Optional[float] = None) -> None:
        """Run the cover into an end stop to re-learn its position, then go to ``target``."""

        async with self._motion_lock:
            await self._recalibrate(target)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _move_to(self, target: float, simulate: bool) -> None:
        if not self.device.online:
            self.cover.deferred_target = target
            LOGGER.info(
                "Cover '%s' will move to %.0f%% once it is online", self.device.name, target
            )
            return

        cover = self.cover
        if cover.position_uncertain or cover.recalibrating or cover.position is None:
            await self._recalibrate(target)
            return

        now = self._now()
        current = self.current_position(now)
        delta = target - current
        multiplier = END_STOP_MULTIPLIER if target in (OPEN_POSITION, CLOSED_POSITION) else 1.0

        if cover.moving and delta * cover.direction_ms_per_percent < 0:
            LOGGER.info("Reversing direction of cover '%s'", self.device.name)
            if await self._stop(simulate):
                await self._move_to(target, simulate)
            return

        if abs(delta) < MIN_MOVE_DELTA:
            LOGGER.debug(
                "Cover '%s' already at %.1f%% (target %.1f%%)", self.device.name, current, target
            )
            if cover.moving:
                await self._stop(simulate)
            return

        if cover.moving:
            duration = abs(delta * cover.direction_ms_per_percent) * multiplier
            cover.start_time_ms = now
            cover.start_position = current
            cover.position = current
            LOGGER.info(
                "Cover '%s' continues by %.1f%% for %d ms", self.device.name, delta, duration
            )
            self._arm_stop_timer(duration, simulate)
            return

        if delta > 0:
            command, direction = "DOWN", self.close_ms_per_percent
        else:
            command, direction = "UP", -self.open_ms_per_percent
        duration = abs(delta * direction) * multiplier

        LOGGER.info(
            "Moving cover '%s' %s by %.1f%% for %d ms",
            self.device.name,
            command,
            abs(delta),
            duration,
        )
        if simulate:
            self._start_moving(direction, duration, now, simulate=True)
            return

        try:
            result = await self.device.context.link.send_command(self.device.rfid, command)
        except CommandError as exc:
            LOGGER.error("Failed to move cover '%s' %s: %s", self.device.name, command, exc)
            self.cover.position_uncertain = True
            return

        started = result.sent_at_ms if result.sent_at_ms is not None else now
        self._start_moving(direction, max(duration - result.ack_latency_ms, 1.0), started)

    async def _stop(self, simulate: bool) -> bool:
        self._cancel_stop_timer()
        self._cancel_refresh()

        if simulate:
            self._end_moving()
            return True

        try:
            result = await self.device.context.link.send_command(self.device.rfid, "STOP")
        except CommandError as exc:
            LOGGER.error(
                "Failed to stop cover '%s', position uncertain: %s", self.device.name, exc
            )
            if self.cover.moving:
                self.cover.position_uncertain = True
            self._end_moving(exc.sent_at_ms)
            return False

        self._end_moving(result.sent_at_ms)
        return True

    async def _recalibrate(self, target: Optional[float]) -> None:
        cover = self.cover
        if target is None:
            target = cover.position if cover.position is not None else OPEN_POSITION
        target = clamp(float(target))

        if cover.recalibrating:
            cover.recalibration_target = target
            LOGGER.info(
                "Recalibration target of '%s' changed to %.0f%%", self.device.name, target
            )
            return

        if target < RECALIBRATION_THRESHOLD:
            command, duration_ms, extreme = "DOWN", self.close_time * 1000, CLOSED_POSITION
        else:
            command, duration_ms, extreme = "UP", self.open_time * 1000, OPEN_POSITION

        # a running move would otherwise send STOP halfway through
        self._cancel_stop_timer()
        self._cancel_refresh()
        cover.start_time_ms = None
        cover.start_position = None
        cover.direction_ms_per_percent = 0.0

        cover.recalibration_target = target
        LOGGER.info(
            "Recalibrating cover '%s' via %s for %d ms, then moving to %.0f%%",
            self.device.name,
            command,
            duration_ms,
            target,
        )

        try:
            await self.device.context.link.send_command(self.device.rfid, command)
        except CommandError as exc:
            cover.recalibration_target = None
            cover.position_uncertain = True
            LOGGER.error("Recalibration of cover '%s' failed: %s", self.device.name, exc)
            return

        if not cover.recalibrating:
            # interrupted while the command was being acknowledged
            return

        loop = asyncio.get_running_loop()
        self._recalibration_handle = loop.call_later(
            duration_ms / 1000, self._on_recalibrated, extreme
        )

    def _start_moving(
        self, direction: float, duration_ms: float, start_ms: int, *, simulate: bool = False
    ) -> None:
        cover = self.cover
        cover.direction_ms_per_percent = direction
        cover.start_time_ms = start_ms
        cover.start_position = cover.position
        self._arm_stop_timer(duration_ms, simulate)
        self._start_refresh()

    def _end_moving(self, at_ms: Optional[int] = None) -> None:
        self._cancel_stop_timer()
        self._cancel_refresh()
        cover = self.cover
        if not cover.moving:
            return

        end_ms = at_ms if at_ms is not None else self._now()
        position = self.current_position(end_ms)
        elapsed = end_ms - cover.start_time_ms

        cover.direction_ms_per_percent = 0.0
        cover.start_time_ms = None
        cover.start_position = None
        if position is not None:
            self._change_position(position)
        LOGGER.info(
            "Cover '%s' stopped at %.1f%% after %d ms", self.device.name, cover.position, elapsed
        )

    def _external_intervention(self) -> bool:
        cover = self.cover
        if cover.recalibrating:
            LOGGER.warning(
                "Cover '%s' operated externally during recalibration, position uncertain",
                self.device.name,
            )
            self._cancel_recalibration_timer()
            cover.recalibration_target = None
            cover.position_uncertain = True
            return True
        return cover.position_uncertain

    def _on_recalibrated(self, extreme: float) -> None:
        self._recalibration_handle = None
        target = self.cover.recalibration_target
        if target is None:
            return

        self.cover.recalibration_target = None
        self.cover.position_uncertain = False
        self._change_position(extreme)
        LOGGER.info("Cover '%s' recalibrated at %.0f%%", self.device.name, extreme)
        self._spawn(self.move_to(target))

    def _arm_stop_timer(self, duration_ms: float, simulate: bool) -> None:
        self._cancel_stop_timer()
        loop = asyncio.get_running_loop()
        self._stop_handle = loop.call_later(duration_ms / 1000, self._on_stop_timer, simulate)

    def _on_stop_timer(self, simulate: bool) -> None:
        self._stop_handle = None
        self._spawn(self._stop_when_due(simulate))

    async def _stop_when_due(self, simulate: bool) -> None:
        async with self._motion_lock:
            # re-armed or already stopped while waiting for the lock
            if self._stop_handle is not None or not self.cover.moving:
                return
            await self._stop(simulate)

    def _cancel_stop_timer(self) -> None:
        if self._stop_handle is not None:
            self._stop_handle.cancel()
            self._stop_handle = None

    def _cancel_recalibration_timer(self) -> None:
        if self._recalibration_handle is not None:
            self._recalibration_handle.cancel()
            self._recalibration_handle = None

    def _start_refresh(self) -> None:
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    def _cancel_refresh(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(REFRESH_INTERVAL_SECONDS)
            position = self.current_position()
            if position is not None:
                self._change_position(position)

    def _change_position(self, position: float) -> None:
        position = clamp(position)
        if self.cover.position == position:
            return
        self.cover.position = position
        self._change_value(int(math.floor(position / POSITION_STEP + 0.5) * POSITION_STEP))

    def _change_value(self, value: Union[int, str]) -> None:
        if self.value == value:
            return
        self.value = value
        self.device.update_state()

    # ------------------------------------------------------------------
    # Simple mode
    # ------------------------------------------------------------------
    async def _send_simple(self, command: str) -> None:
        try:
            await self.device.context.link.send_command(self.device.rfid, command)
        except CommandError as exc:
            LOGGER.error("Failed to send %s to cover '%s': %s", command, self.device.name, exc)
            return
        self._apply_simple(command)

    def _apply_simple(self, command: str) -> None:
        value = _SIMPLE_STATES.get(command)
        if value is not None:
            self._change_value(value)
