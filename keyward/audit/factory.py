"""Audit backend factory: backend selection and initialization.

Backend selection (audit.backend in config):
  "sqlite" → LocalSQLiteBackend at audit.path (default ~/.keyward/audit.db,
             KEYWARD_AUDIT_DB_PATH overrides)
  "null"   → NullAuditBackend (events discarded; development and tests)

LocalSQLiteBackend.initialize() raises RuntimeError if PRAGMA user_version is
not 0 (fresh) or 1 (expected). The FastAPI lifespan propagates it to refuse
startup.
"""

from __future__ import annotations

from keyward.audit.protocol import AuditBackend, NullAuditBackend
from keyward.config import AuditConfig
from keyward.utils.logger import get_logger

logger = get_logger(__name__)


async def create_audit_backend(config: AuditConfig) -> AuditBackend:
    """Create and initialize the configured audit backend.

    Raises:
      RuntimeError: LocalSQLiteBackend found an incompatible schema version.
    """
    if config.backend == "null":
        logger.warning(
            "audit_backend_selected",
            backend="NullAuditBackend",
            note="audit events are discarded",
        )
        return NullAuditBackend()
    return await _create_local_sqlite_backend(config.path)


async def _create_local_sqlite_backend(db_path: str) -> AuditBackend:
    from keyward.audit.sqlite_backend import LocalSQLiteBackend

    backend = LocalSQLiteBackend(db_path=db_path)
    await backend.initialize()

    logger.info(
        "audit_backend_selected",
        backend="LocalSQLiteBackend",
        db_path=db_path,
    )
    return backend
