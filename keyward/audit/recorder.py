"""AuditRecorder: the request path's only entry point into the audit trail.

``record()`` builds an AuditEvent and hands the write to a background task; it
returns immediately and never raises, so a slow or broken audit store cannot
delay or fail authentication. Write failures are counted: once
``alarm_threshold`` consecutive writes have failed, a CRITICAL
``audit_write_alarm`` log event fires (and again at every further multiple of
the threshold) until a write succeeds.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from keyward.audit.models import AuditCategory, AuditEvent, AuditQuery
from keyward.audit.protocol import AuditBackend
from keyward.audit.sqlite_backend import MAX_PARTITION_DAYS
from keyward.constants import AUDIT_QUERY_MAX_LIMIT
from keyward.errors import AuditQueryError
from keyward.utils.clock import Clock, utc_now
from keyward.utils.logger import get_logger
from keyward.utils.tasks import BestEffort, TaskTracker
from keyward.utils.ulid import MonotonicULIDGenerator

logger = get_logger(__name__)

DEFAULT_QUERY_WINDOW = timedelta(hours=24)


class AuditRecorder:
    def __init__(
        self,
        backend: AuditBackend,
        clock: Clock = utc_now,
        *,
        retention_days: int = 90,
        alarm_threshold: int = 5,
        tasks: Optional[TaskTracker] = None,
    ) -> None:
        self._backend = backend
        self._clock = clock
        self._retention_days = retention_days
        self._alarm_threshold = alarm_threshold
        self._tasks = tasks or TaskTracker()
        self._next_event_id = MonotonicULIDGenerator()
        self._consecutive_failures = 0

    @property
    def backend(self) -> AuditBackend:
        return self._backend

    @property
    def retention_days(self) -> int:
        return self._retention_days

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def alarm_active(self) -> bool:
        return self._consecutive_failures >= self._alarm_threshold

    # ── Write path ────────────────────────────────────────────────────────────

    def record(
        self,
        category: AuditCategory,
        *,
        account_id: Optional[str] = None,
        key_id: Optional[str] = None,
        key_name: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        detail: Optional[dict[str, str]] = None,
    ) -> BestEffort:
        """Schedule an audit write. Never raises, never blocks."""
        try:
            now = self._clock()
            event = AuditEvent(
                event_id=self._next_event_id(now),
                category=category,
                timestamp=now,
                account_id=account_id,
                key_id=key_id,
                key_name=key_name,
                source_ip=source_ip,
                user_agent=user_agent,
                success=success,
                detail={str(k): str(v) for k, v in (detail or {}).items()},
            )
        except Exception as exc:
            logger.warning(
                "audit_event_build_failed",
                category=category.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return BestEffort.skipped()
        return self._tasks.spawn(self._write(event), name=f"audit_{category.value}")

    async def _write(self, event: AuditEvent) -> None:
        try:
            ok = await self._backend.log_event(event)
        except Exception as exc:
            # Backends must not raise; treat a violation as a failed write.
            logger.error(
                "audit_write_failed",
                event_id=event.event_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            ok = False

        if ok:
            if self._consecutive_failures:
                logger.info(
                    "audit_write_recovered",
                    failures_before_recovery=self._consecutive_failures,
                )
            self._consecutive_failures = 0
            return

        self._consecutive_failures += 1
        if (
            self._consecutive_failures >= self._alarm_threshold
            and self._consecutive_failures % self._alarm_threshold == 0
        ):
            logger.critical(
                "audit_write_alarm",
                consecutive_failures=self._consecutive_failures,
                alarm_threshold=self._alarm_threshold,
            )

    # ── Convenience wrappers ──────────────────────────────────────────────────

    def authentication(
        self,
        *,
        success: bool,
        account_id: Optional[str] = None,
        key_id: Optional[str] = None,
        key_name: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> BestEffort:
        return self.record(
            AuditCategory.AUTHENTICATION,
            account_id=account_id,
            key_id=key_id,
            key_name=key_name,
            source_ip=source_ip,
            user_agent=user_agent,
            success=success,
            detail={"reason": reason} if reason else None,
        )

    def key_issued(
        self,
        *,
        success: bool,
        account_id: str,
        key_id: Optional[str] = None,
        key_name: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[dict[str, str]] = None,
    ) -> BestEffort:
        return self.record(
            AuditCategory.KEY_ISSUED,
            account_id=account_id,
            key_id=key_id,
            key_name=key_name,
            source_ip=source_ip,
            user_agent=user_agent,
            success=success,
            detail=detail,
        )

    def key_revoked(
        self,
        *,
        account_id: str,
        key_id: str,
        key_name: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[dict[str, str]] = None,
    ) -> BestEffort:
        return self.record(
            AuditCategory.KEY_REVOKED,
            account_id=account_id,
            key_id=key_id,
            key_name=key_name,
            source_ip=source_ip,
            user_agent=user_agent,
            detail=detail,
        )

    def account_created(
        self,
        *,
        account_id: str,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[dict[str, str]] = None,
    ) -> BestEffort:
        return self.record(
            AuditCategory.ACCOUNT_CREATED,
            account_id=account_id,
            source_ip=source_ip,
            user_agent=user_agent,
            detail=detail,
        )

    async def drain(self) -> None:
        """Wait for all scheduled writes. Used at shutdown and in tests."""
        await self._tasks.drain()

    # ── Read path ─────────────────────────────────────────────────────────────

    async def query(self, query: AuditQuery) -> list[AuditEvent]:
        """Chronological events matching ``query``.

        Raises:
            AuditQueryError: neither category nor account_id given, bad range
                             or limit.
        """
        if query.category is None and query.account_id is None:
            raise AuditQueryError()
        if not 1 <= query.limit <= AUDIT_QUERY_MAX_LIMIT:
            raise AuditQueryError(f"limit must be between 1 and {AUDIT_QUERY_MAX_LIMIT}")

        until = _as_utc(query.until) if query.until else self._clock()
        since = _as_utc(query.since) if query.since else until - DEFAULT_QUERY_WINDOW
        if since > until:
            raise AuditQueryError("since must not be after until")
        spanned_days = (until.date() - since.date()).days + 1
        if query.category is not None and spanned_days > MAX_PARTITION_DAYS:
            raise AuditQueryError(
                f"category queries may span at most {MAX_PARTITION_DAYS} days"
            )

        resolved = AuditQuery(
            category=query.category,
            account_id=query.account_id,
            since=since,
            until=until,
            limit=query.limit,
        )
        return await self._backend.query_events(resolved)

    async def prune(self) -> int:
        return await self._backend.prune_old_events(
            retention_days=self._retention_days, now=self._clock()
        )


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
