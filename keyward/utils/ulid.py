"""ULID generation for Keyward identifiers.

ULIDs (https://github.com/ulid/spec) are 26-character Crockford Base32 strings:
a 48-bit millisecond timestamp followed by 80 random bits. They are used for
account, key, idempotency-record and audit-event ids, and as the ``X-Request-ID``
fallback. Because they sort lexicographically by creation time, an audit
``sort_key`` built from one keeps events in chronological order.

Uses the ``python-ulid`` library.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Example::

        event_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
        assert len(event_id) == 26
    """
    return str(ULID())


class MonotonicULIDGenerator:
    """ULIDs that strictly increase within one process.

    Two ids minted in the same millisecond (or from a clock that stands still,
    as in tests) would otherwise order randomly. When the candidate does not
    sort after the previous id, the previous id plus one is issued instead.
    """

    def __init__(self) -> None:
        self._last: Optional[ULID] = None

    def __call__(self, moment: Optional[datetime] = None) -> str:
        candidate = ULID.from_datetime(moment) if moment is not None else ULID()
        if self._last is not None and int(candidate) <= int(self._last):
            candidate = ULID.from_int(int(self._last) + 1)
        self._last = candidate
        return str(candidate)
