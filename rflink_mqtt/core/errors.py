"""Exception hierarchy for link and command failures."""

from __future__ import annotations

from typing import Optional


class LinkError(RuntimeError):
    """Base class for errors raised by the RFLink link engine."""


class CommandError(LinkError):
    """Raised when a queued command does not complete successfully.

    The timing attributes mirror :class:`~rflink_mqtt.core.models.CommandResult`
    so callers can still reconstruct motion from a failed command.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        sent_at_ms: Optional[int] = None,
        ack_latency_ms: int = -1,
    ) -> None:
        super().__init__(message)
        self.command = command
        self.sent_at_ms = sent_at_ms
        self.ack_latency_ms = ack_latency_ms


class CommandUnknownError(CommandError):
    """The transceiver answered ``CMD UNKNOWN``."""


class CommandTimeoutError(CommandError):
    """No acknowledgement arrived within the configured timeout."""


class LinkUnavailableError(CommandError):
    """The link is not active and cannot accept commands."""


class LinkStoppingError(CommandError):
    """The link was stopped while the command was pending."""


class TransportError(CommandError):
    """The serial transport failed while the command was in flight."""
