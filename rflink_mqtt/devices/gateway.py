"""The gateway's own device, exposing link statistics and maintenance commands."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List

from .. import codec
from ..core.errors import CommandError
from .base import DeviceBehavior

if TYPE_CHECKING:
    from ..hass import DiscoveryConfig

LOGGER = logging.getLogger(__name__)


class GatewayBehavior(DeviceBehavior):
    commands = ("RAW", "REBOOT", "VERSION")

    async def on_command(self, command: str, payload: str) -> None:
        if command == "RAW":
            text = payload.strip()
            if not text:
                LOGGER.warning("Ignoring empty cmnd/RAW")
                return
        else:
            text = codec.encode_command(command)

        try:
            result = await self.device.context.link.send_raw_command(text)
        except CommandError as exc:
            LOGGER.error("Gateway command '%s' failed: %s", text, exc)
            self._publish_result(text, {"Error": str(exc)})
            return

        LOGGER.info("Gateway command '%s' acknowledged", text)
        self._publish_result(text, result.data or {"Result": "OK"})

    def hass_state(self) -> Dict[str, Any]:
        status = self.device.context.link_status
        return {
            "Last Connected": status.last_opened,
            "Last Message": status.last_message,
            "Last Error": status.last_error,
            "Connections": status.session_count,
            "Messages": status.message_count,
            "Commands": status.command_count,
            "Confirmations": status.confirm_count,
            "Errors": status.error_count,
            "Dead Links": status.dead_count,
        }

    def discovery(self) -> List["DiscoveryConfig"]:
        from ..hass import gateway_configs

        return gateway_configs(self.device)

    def _publish_result(self, command: str, result: Dict[str, Any]) -> None:
        payload = {"Command": command}
        payload.update(result)
        self.device.publish_result(json.dumps(payload, default=str))
