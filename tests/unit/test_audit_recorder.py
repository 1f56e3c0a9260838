"""Unit tests for AuditRecorder: fire-and-forget writes, the failure alarm,
and the bounded query path over LocalSQLiteBackend."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from keyward.audit import AuditCategory, AuditEvent, AuditQuery, AuditRecorder, NullAuditBackend
from keyward.audit.sqlite_backend import MAX_PARTITION_DAYS, LocalSQLiteBackend, day_partitions
from keyward.errors import AuditQueryError


@pytest.fixture
async def backend(tmp_path: Path):
    b = LocalSQLiteBackend(db_path=str(tmp_path / "audit.db"))
    await b.initialize()
    yield b
    await b.close()


@pytest.fixture
def recorder(backend: LocalSQLiteBackend, clock) -> AuditRecorder:
    return AuditRecorder(backend, clock, retention_days=90, alarm_threshold=3)


class FailingBackend(NullAuditBackend):
    """Every write fails; flips to healthy once ``healthy`` is set."""

    def __init__(self, raises: bool = False) -> None:
        self.healthy = False
        self.raises = raises
        self.attempts = 0

    async def log_event(self, event: AuditEvent) -> bool:
        self.attempts += 1
        if self.healthy:
            return True
        if self.raises:
            raise ConnectionError("audit store gone")
        return False


# ─── Write path ───────────────────────────────────────────────────────────────


class TestRecord:
    async def test_record_is_scheduled_not_awaited(self, recorder: AuditRecorder, backend) -> None:
        result = recorder.authentication(success=True, account_id="acct-1", key_id="key-1")
        assert result.scheduled is True

        await recorder.drain()
        events = await recorder.query(AuditQuery(account_id="acct-1"))
        assert len(events) == 1
        event = events[0]
        assert event.category is AuditCategory.AUTHENTICATION
        assert event.key_id == "key-1"
        assert event.success is True

    async def test_failure_reason_in_detail(self, recorder: AuditRecorder) -> None:
        recorder.authentication(success=False, account_id="acct-1", reason="expired")
        await recorder.drain()

        (event,) = await recorder.query(AuditQuery(account_id="acct-1"))
        assert event.success is False
        assert event.detail == {"reason": "expired"}

    async def test_detail_values_coerced_to_strings(self, recorder: AuditRecorder) -> None:
        recorder.key_issued(
            success=True, account_id="acct-1", key_id="k", detail={"ttl_hours": 24}
        )
        await recorder.drain()
        (event,) = await recorder.query(AuditQuery(account_id="acct-1"))
        assert event.detail == {"ttl_hours": "24"}

    def test_record_without_running_loop_is_skipped(self, clock) -> None:
        recorder = AuditRecorder(NullAuditBackend(), clock)
        result = recorder.account_created(account_id="acct-1")
        assert result.scheduled is False

    async def test_events_minted_in_same_instant_keep_order(
        self, recorder: AuditRecorder
    ) -> None:
        for name in ("first", "second", "third"):
            recorder.key_issued(success=True, account_id="acct-1", key_name=name)
        await recorder.drain()

        events = await recorder.query(AuditQuery(account_id="acct-1"))
        assert [e.key_name for e in events] == ["first", "second", "third"]


# ─── Failure alarm ────────────────────────────────────────────────────────────


class TestFailureAlarm:
    @pytest.mark.parametrize("raises", [False, True], ids=["returns-false", "raises"])
    async def test_alarm_after_threshold(self, clock, raises: bool) -> None:
        backend = FailingBackend(raises=raises)
        recorder = AuditRecorder(backend, clock, alarm_threshold=3)

        for _ in range(2):
            recorder.authentication(success=True, account_id="a")
        await recorder.drain()
        assert recorder.consecutive_failures == 2
        assert recorder.alarm_active is False

        recorder.authentication(success=True, account_id="a")
        await recorder.drain()
        assert recorder.consecutive_failures == 3
        assert recorder.alarm_active is True

    async def test_success_clears_alarm(self, clock) -> None:
        backend = FailingBackend()
        recorder = AuditRecorder(backend, clock, alarm_threshold=1)

        recorder.authentication(success=True, account_id="a")
        await recorder.drain()
        assert recorder.alarm_active is True

        backend.healthy = True
        recorder.authentication(success=True, account_id="a")
        await recorder.drain()
        assert recorder.consecutive_failures == 0
        assert recorder.alarm_active is False


# ─── Query path ───────────────────────────────────────────────────────────────


class TestQuery:
    async def test_requires_category_or_account(self, recorder: AuditRecorder) -> None:
        with pytest.raises(AuditQueryError):
            await recorder.query(AuditQuery())

    @pytest.mark.parametrize("limit", [0, 1001])
    async def test_limit_bounds(self, recorder: AuditRecorder, limit: int) -> None:
        with pytest.raises(AuditQueryError):
            await recorder.query(AuditQuery(account_id="a", limit=limit))

    async def test_inverted_range_rejected(self, recorder: AuditRecorder, clock) -> None:
        now = clock()
        with pytest.raises(AuditQueryError):
            await recorder.query(
                AuditQuery(account_id="a", since=now, until=now - timedelta(hours=1))
            )

    async def test_category_query_span_capped(self, recorder: AuditRecorder, clock) -> None:
        now = clock()
        with pytest.raises(AuditQueryError):
            await recorder.query(
                AuditQuery(
                    category=AuditCategory.KEY_ISSUED,
                    since=now - timedelta(days=400),
                    until=now,
                )
            )

    async def test_span_cap_counts_calendar_days(self, recorder: AuditRecorder, clock) -> None:
        """Under 366 elapsed days can still touch 367 daily partitions."""
        now = clock()
        since = now - timedelta(days=365, hours=23)
        assert len(day_partitions(AuditCategory.KEY_ISSUED, since, now)) == MAX_PARTITION_DAYS + 1
        with pytest.raises(AuditQueryError):
            await recorder.query(
                AuditQuery(category=AuditCategory.KEY_ISSUED, since=since, until=now)
            )

    async def test_span_at_cap_allowed(self, recorder: AuditRecorder, clock) -> None:
        now = clock()
        since = now - timedelta(days=365)
        assert len(day_partitions(AuditCategory.KEY_ISSUED, since, now)) == MAX_PARTITION_DAYS
        events = await recorder.query(
            AuditQuery(category=AuditCategory.KEY_ISSUED, since=since, until=now)
        )
        assert events == []

    async def test_by_category_spans_days(self, recorder: AuditRecorder, clock) -> None:
        recorder.key_revoked(account_id="a", key_id="k1")
        await recorder.drain()
        clock.advance(days=2)
        recorder.key_revoked(account_id="b", key_id="k2")
        recorder.account_created(account_id="c")
        await recorder.drain()

        events = await recorder.query(
            AuditQuery(
                category=AuditCategory.KEY_REVOKED,
                since=clock() - timedelta(days=3),
            )
        )
        assert [e.key_id for e in events] == ["k1", "k2"]

    async def test_default_window_is_last_24h(self, recorder: AuditRecorder, clock) -> None:
        recorder.account_created(account_id="a")
        await recorder.drain()
        clock.advance(hours=25)
        recorder.authentication(success=True, account_id="a")
        await recorder.drain()

        events = await recorder.query(AuditQuery(account_id="a"))
        assert [e.category for e in events] == [AuditCategory.AUTHENTICATION]

    async def test_naive_bounds_treated_as_utc(self, recorder: AuditRecorder, clock) -> None:
        recorder.account_created(account_id="a")
        await recorder.drain()

        now: datetime = clock()
        naive_since: Optional[datetime] = (now - timedelta(minutes=5)).replace(tzinfo=None)
        events = await recorder.query(AuditQuery(account_id="a", since=naive_since))
        assert len(events) == 1
        assert events[0].timestamp.tzinfo is not None
        assert events[0].timestamp.utcoffset() == timezone.utc.utcoffset(None)

    async def test_account_scoping(self, recorder: AuditRecorder) -> None:
        recorder.account_created(account_id="a")
        recorder.account_created(account_id="b")
        await recorder.drain()

        events = await recorder.query(AuditQuery(account_id="b"))
        assert [e.account_id for e in events] == ["b"]


# ─── Retention ────────────────────────────────────────────────────────────────


class TestPrune:
    async def test_prune_drops_events_past_retention(self, recorder: AuditRecorder, clock) -> None:
        recorder.account_created(account_id="old")
        await recorder.drain()
        clock.advance(days=91)
        recorder.account_created(account_id="new")
        await recorder.drain()

        assert await recorder.prune() == 1
        assert await recorder.query(AuditQuery(account_id="old", since=clock() - timedelta(days=100))) == []

    async def test_null_backend_prunes_nothing(self, clock) -> None:
        recorder = AuditRecorder(NullAuditBackend(), clock)
        assert await recorder.prune() == 0
        assert await recorder.query(AuditQuery(account_id="a")) == []
