"""AuditBackend Protocol + NullAuditBackend.

AuditEvent and AuditQuery are defined in keyward/audit/models.py.
This module defines the pluggable backend interface.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from keyward.audit.models import AuditEvent, AuditQuery
from keyward.utils.logger import get_logger

logger = get_logger(__name__)


# ─── AuditBackend Protocol ────────────────────────────────────────────────────


@runtime_checkable
class AuditBackend(Protocol):
    """Pluggable audit backend interface.

    Implementations: LocalSQLiteBackend (default), NullAuditBackend.
    Selection via create_audit_backend() factory (audit/factory.py).

    log_event() is only ever awaited from a background task scheduled by
    AuditRecorder; it must never propagate exceptions.
    """

    async def log_event(self, event: AuditEvent) -> bool:
        """Persist an audit event.

        Returns True on success, False on failure. Must NEVER raise.
        """
        ...

    async def query_events(self, query: AuditQuery) -> list[AuditEvent]:
        """Return matching events in chronological order (oldest first).

        ``query.since`` and ``query.until`` are already resolved by the caller.
        """
        ...

    async def health_check(self) -> bool:
        """Returns True if the backend is operational. Must not raise."""
        ...

    async def prune_old_events(
        self, retention_days: int = 90, now: Optional[datetime] = None
    ) -> int:
        """Delete events older than retention_days. Returns count of deleted rows."""
        ...

    async def close(self) -> None:
        """Clean up connections and resources. Called during graceful shutdown."""
        ...


# ─── NullAuditBackend ────────────────────────────────────────────────────────


class NullAuditBackend:
    """No-op AuditBackend for tests and ``audit.backend: null``.

    Every write "succeeds" and every query is empty.
    """

    async def log_event(self, event: AuditEvent) -> bool:
        logger.debug("NullAuditBackend.log_event", event_id=event.event_id)
        return True

    async def query_events(self, query: AuditQuery) -> list[AuditEvent]:
        return []

    async def health_check(self) -> bool:
        return True

    async def prune_old_events(
        self, retention_days: int = 90, now: Optional[datetime] = None
    ) -> int:
        return 0

    async def close(self) -> None:
        logger.debug("NullAuditBackend.close")


# ─── Protocol compliance assertion ────────────────────────────────────────────
# Checked at import time.
assert isinstance(NullAuditBackend(), AuditBackend), (
    "NullAuditBackend does not satisfy AuditBackend protocol"
)
