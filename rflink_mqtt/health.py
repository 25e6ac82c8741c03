"""Health reporting utilities for rflink-mqtt."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from aiohttp import web

from .core.protocols import StatusProvider

LOGGER = logging.getLogger(__name__)

DeviceSnapshot = Callable[[], List[Dict[str, Any]]]


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses for the running bridge."""

    def __init__(self, link: Optional[StatusProvider] = None) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._lock = asyncio.Lock()
        self._link = link

    def attach_link(self, link: StatusProvider) -> None:
        self._link = link

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            current = self._status.get(name)
            if current is not None and current.healthy == healthy and current.detail == detail:
                return
            self._status[name] = ComponentStatus(name=name, healthy=healthy, detail=detail)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._status.values()]

        healthy = all(item["healthy"] for item in components)
        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if self._link is not None:
            payload["link"] = self._link.status.as_dict()
        return payload


class HealthServer:
    """HTTP endpoint serving ``/healthz`` and, when given, the ``/devices`` listing."""

    def __init__(
        self,
        reporter: HealthReporter,
        host: str,
        port: int,
        devices: Optional[DeviceSnapshot] = None,
    ) -> None:
        self._reporter = reporter
        self._devices = devices
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        if self._devices is not None:
            app.router.add_get("/devices", self._handle_devices)

        runner = web.AppRunner(app)
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info("Health endpoint listening on http://%s:%s/healthz", self._host, self._port)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _handle_devices(self, request: web.Request) -> web.Response:
        assert self._devices is not None
        return web.json_response({"devices": self._devices()})
