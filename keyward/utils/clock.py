"""Injectable wall clock.

Components take a ``clock`` callable instead of calling ``datetime.now()``
directly so tests can move time forward deterministically.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Serialise a UTC datetime for SQLite TEXT columns.

    Fixed-width microsecond precision keeps lexicographic order equal to
    chronological order, which the ``<`` comparisons in SQL rely on.
    """
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
