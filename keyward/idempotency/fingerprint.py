"""Request fingerprinting and idempotency-key extraction."""

from __future__ import annotations

import hashlib
from typing import Mapping, Optional

from keyward.constants import IDEMPOTENCY_KEY_FALLBACK_HEADER, IDEMPOTENCY_KEY_HEADER


def extract_idempotency_key(headers: Mapping[str, str]) -> Optional[str]:
    """``Idempotency-Key``, falling back to ``X-Idempotency-Key``.

    Returns None when neither is present (deduplication disabled).
    """
    value = headers.get(IDEMPOTENCY_KEY_HEADER) or headers.get(IDEMPOTENCY_KEY_FALLBACK_HEADER)
    if value is None:
        return None
    value = value.strip()
    return value or None


def compute_fingerprint(
    method: str,
    path: str,
    body: bytes,
    account_id: str,
    content_type: str,
    idempotency_key: str,
) -> str:
    """SHA-256 hex over the request identity.

    Fields are joined with newlines in this order: method, path, body,
    account id, lowercased content-type, idempotency key. The same key reused
    with a different body, path or account yields a different fingerprint.
    """
    digest = hashlib.sha256()
    parts = [
        method.upper().encode(),
        path.encode(),
        body,
        account_id.encode(),
        content_type.lower().encode(),
        idempotency_key.encode(),
    ]
    digest.update(b"\n".join(parts))
    return digest.hexdigest()
