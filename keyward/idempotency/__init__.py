"""Idempotency ledger: deduplicates retried mutating requests.

    from keyward.idempotency import IdempotencyLedger, compute_fingerprint
"""

from keyward.idempotency.fingerprint import compute_fingerprint, extract_idempotency_key
from keyward.idempotency.ledger import IdempotencyLedger
from keyward.idempotency.models import (
    IdempotencyCheck,
    IdempotencyRecord,
    IdempotencyState,
    IdempotencyStatus,
)
from keyward.idempotency.store import IdempotencyStore

__all__ = [
    "IdempotencyCheck",
    "IdempotencyLedger",
    "IdempotencyRecord",
    "IdempotencyState",
    "IdempotencyStatus",
    "IdempotencyStore",
    "compute_fingerprint",
    "extract_idempotency_key",
]
