"""Unit tests for ULID generation (keyward/utils/ulid.py)."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from keyward.utils.ulid import MonotonicULIDGenerator, generate_ulid

# Crockford Base32 charset: 0-9 and A-Z, excluding I, L, O, U
ULID_CHARSET = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")


def test_generate_ulid_format() -> None:
    result = generate_ulid()
    assert isinstance(result, str)
    assert ULID_CHARSET.match(result), f"invalid ULID: {result!r}"


def test_generate_ulid_unique() -> None:
    ids = {generate_ulid() for _ in range(1000)}
    assert len(ids) == 1000


class TestMonotonicULIDGenerator:
    def test_same_instant_strictly_increasing(self) -> None:
        """A clock that stands still must still yield ordered ids."""
        gen = MonotonicULIDGenerator()
        moment = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        ids = [gen(moment) for _ in range(50)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 50
        assert all(ULID_CHARSET.match(i) for i in ids)

    def test_later_instant_sorts_after(self) -> None:
        gen = MonotonicULIDGenerator()
        moment = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        first = gen(moment)
        second = gen(moment + timedelta(seconds=1))
        assert second > first

    def test_earlier_instant_never_goes_backwards(self) -> None:
        gen = MonotonicULIDGenerator()
        moment = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        first = gen(moment)
        assert gen(moment - timedelta(minutes=5)) > first
