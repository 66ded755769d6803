"""Utility helpers for the add-on."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from .services.exceptions import ConfigError


DURATION_RE = re.compile(r"^(\d+)([dh])$")


def parse_duration(value: str) -> int:
    """Return the number of seconds described by ``<n>d`` or ``<n>h``."""

    match = DURATION_RE.match((value or "").strip())
    if not match:
        raise ConfigError(
            f"Invalid duration {value!r}. Use '<number>d' for days or '<number>h' for hours."
        )
    amount = int(match.group(1))
    unit = match.group(2)
    return amount * 86_400 if unit == "d" else amount * 3_600


def format_runtime(minutes: int | None) -> str | None:
    """Format a runtime in minutes as ``1h05``, ``2h`` or ``45m``."""

    if not minutes:
        return None
    hours, remainder = divmod(int(minutes), 60)
    if hours and remainder:
        return f"{hours}h{remainder:02d}"
    if hours:
        return f"{hours}h"
    return f"{remainder}m"


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: object) -> datetime | None:
    """Parse a Trakt ISO-8601 timestamp into a naive UTC datetime."""

    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
