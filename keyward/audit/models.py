"""AuditEvent dataclass and category enum for the Keyward audit trail.

Every security-relevant action flows through AuditEvent. Events are
append-only; the only deletion path is retention pruning.

IMPORTANT: no field may ever contain a raw API key secret or a bcrypt hash.
Identify keys by ``key_id`` / ``key_name`` only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from keyward.constants import AUDIT_QUERY_DEFAULT_LIMIT


class AuditCategory(str, Enum):
    AUTHENTICATION = "authentication"
    KEY_ISSUED = "key_issued"
    KEY_REVOKED = "key_revoked"
    ACCOUNT_CREATED = "account_created"


def partition_key_for(category: AuditCategory, day: str) -> str:
    """``<category>#<YYYY-MM-DD>``: one partition per category per UTC day."""
    return f"{category.value}#{day}"


# ─── AuditEvent ───────────────────────────────────────────────────────────────


@dataclass
class AuditEvent:
    """Complete audit record for one authentication or lifecycle action.

    Usage at call sites (non-negotiable):
        recorder.record(...)            # schedules asyncio.create_task()
        # NEVER: await backend.log_event(event) on the request path
    """

    # ── Required fields (no defaults) ─────────────────────────────────────────
    event_id: str
    """Monotonic ULID; orders events minted within the same millisecond."""
    category: AuditCategory
    timestamp: datetime
    """UTC datetime of the action."""

    # ── Subject ───────────────────────────────────────────────────────────────
    account_id: Optional[str] = None
    key_id: Optional[str] = None
    key_name: Optional[str] = None

    # ── Request context ───────────────────────────────────────────────────────
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None

    # ── Outcome ───────────────────────────────────────────────────────────────
    success: bool = True
    detail: dict[str, str] = field(default_factory=dict)
    """Free-form string map, e.g. {"reason": "expired"} on a failed authentication."""

    schema_version: int = 1

    @property
    def day(self) -> str:
        return self.timestamp.strftime("%Y-%m-%d")

    @property
    def partition_key(self) -> str:
        return partition_key_for(self.category, self.day)

    @property
    def sort_key(self) -> str:
        """``<YYYY-MM-DD>#<event_id>``: chronological within a partition."""
        return f"{self.day}#{self.event_id}"


# ─── AuditQuery ───────────────────────────────────────────────────────────────


@dataclass
class AuditQuery:
    """Query filters for AuditRecorder.query() / AuditBackend.query_events().

    At least one of ``category`` or ``account_id`` must be set; there is no
    unbounded scan of the whole trail.
    """

    category: Optional[AuditCategory] = None
    """Restrict to one category; only the day partitions in [since, until] are read."""
    account_id: Optional[str] = None
    """Per-tenant history via the account secondary index."""
    since: Optional[datetime] = None
    """Include events with timestamp >= since (UTC). Defaults to until - 24h."""
    until: Optional[datetime] = None
    """Include events with timestamp <= until (UTC). Defaults to now."""
    limit: int = AUDIT_QUERY_DEFAULT_LIMIT
    """Maximum number of events to return."""
