"""Time helpers shared by the queue, breaker, delta sync and monitor."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Timezone-aware current time; the default clock everywhere."""
    return datetime.now(timezone.utc)


def parse_remote_datetime(value: Any) -> Optional[datetime]:
    """
    Parse the back office's ``YYYY-MM-DD HH:MM:SS[.ffffff]`` timestamps.

    The remote sends naive timestamps; they are taken to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace(" ", "T"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = ["Clock", "EPOCH", "parse_remote_datetime", "utc_now"]
