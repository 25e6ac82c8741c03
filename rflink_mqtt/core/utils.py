"""Core utility functions shared across modules."""

from __future__ import annotations

import time


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def clamp(value: float, lower: float = 0.0, upper: float = 100.0) -> float:
    return min(upper, max(lower, value))


def format_uptime(seconds: float) -> str:
    """Render a duration as ``<days>T<HH>:<MM>:<SS>``.

    Examples:
        >>> format_uptime(90061)
        '1T01:01:01'
    """
    seconds = int(seconds)
    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{days}T{hours:02d}:{minutes:02d}:{secs:02d}"
