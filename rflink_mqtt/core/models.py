"""Shared data models for the RFLink bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="seconds")


@dataclass(slots=True)
class LinkStatus:
    """Live view of the serial link, owned and mutated by the link engine."""

    active: bool = False
    model: str = ""
    version: str = ""
    revision: str = ""
    build: str = ""
    last_opened: Optional[datetime] = None
    last_message: Optional[datetime] = None
    last_error: Optional[datetime] = None
    session_count: int = 0
    message_count: int = 0
    command_count: int = 0
    confirm_count: int = 0
    error_count: int = 0
    dead_count: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "model": self.model,
            "version": self.version,
            "revision": self.revision,
            "build": self.build,
            "lastOpened": _isoformat(self.last_opened),
            "lastMessage": _isoformat(self.last_message),
            "lastError": _isoformat(self.last_error),
            "sessionCount": self.session_count,
            "messageCount": self.message_count,
            "commandCount": self.command_count,
            "confirmCount": self.confirm_count,
            "errorCount": self.error_count,
            "deadCount": self.dead_count,
        }


@dataclass(slots=True)
class RadioFrame:
    """A decoded telemetry line received from the transceiver."""

    name: str
    fields: Dict[str, str]
    node: str = "20"
    packet_index: int = 0
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def device_id(self) -> Optional[str]:
        return self.fields.get("id")

    @property
    def switch(self) -> Optional[str]:
        return self.fields.get("switch")

    @property
    def command(self) -> Optional[str]:
        value = self.fields.get("cmd")
        return value.upper() if value else None

    @property
    def ts(self) -> int:
        return int(self.received_at.timestamp() * 1000)

    @property
    def routing_key(self) -> str:
        """Key used to look up the configured device, ``name:id[:switch]``."""

        key = f"{self.name}:{self.device_id}"
        if self.switch:
            key = f"{key}:{self.switch}"
        return key

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.fields)
        payload["name"] = self.name
        payload["time"] = self.received_at.isoformat(timespec="milliseconds")
        payload["ts"] = self.ts
        return payload


@dataclass(slots=True)
class CommandResult:
    """Outcome of an acknowledged command."""

    data: Optional[Dict[str, str]] = None
    sent_at_ms: Optional[int] = None
    ack_latency_ms: int = 0
