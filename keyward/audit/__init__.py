"""Keyward audit package.

Re-exports the public API for ergonomic imports:

    from keyward.audit import AuditEvent, AuditBackend, AuditQuery, AuditRecorder

Layout:
    models.py         - AuditEvent, AuditCategory, AuditQuery
    protocol.py       - AuditBackend Protocol + NullAuditBackend
    sqlite_backend.py - LocalSQLiteBackend (aiosqlite, WAL mode, PRAGMA version guard)
                        + run_retention_pruner
    recorder.py       - AuditRecorder (fire-and-forget writes, failure alarm, queries)
    factory.py        - create_audit_backend() - backend selection from config
"""

from keyward.audit.models import AuditCategory, AuditEvent, AuditQuery
from keyward.audit.protocol import AuditBackend, NullAuditBackend
from keyward.audit.recorder import AuditRecorder

__all__ = [
    "AuditCategory",
    "AuditEvent",
    "AuditQuery",
    "AuditBackend",
    "NullAuditBackend",
    "AuditRecorder",
]
