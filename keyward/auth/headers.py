"""API key extraction from request headers.

Precedence (first match wins):
  1. X-API-Key: <secret>
  2. Authorization: Bearer <secret>
"""

from __future__ import annotations

import re
from typing import Mapping, Optional

from keyward.constants import API_KEY_HEADER

_BEARER_RE = re.compile(r"^Bearer\s+(\S+)$", re.IGNORECASE)


def _extract_bearer(authorization: str) -> Optional[str]:
    if not authorization:
        return None
    m = _BEARER_RE.match(authorization.strip())
    return m.group(1) if m else None


def extract_api_key(headers: Mapping[str, str]) -> Optional[str]:
    """Return the presented secret, or None when no key header is present."""
    key = (headers.get(API_KEY_HEADER) or "").strip()
    if key:
        return key
    return _extract_bearer(headers.get("Authorization", ""))
