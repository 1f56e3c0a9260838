"""Shared constants for Keyward.

Field limits and numeric caps used across modules are defined here.
"""

# ─── Key material ─────────────────────────────────────────────────────────────

# Prefix on every raw secret; lets secret scanners recognise leaked keys.
KEY_PREFIX: str = "kw_"

# Random bytes per secret (hex-encoded, so the secret body is 64 chars).
KEY_RANDOM_BYTES: int = 32

# Presented secrets outside this length range are rejected before any lookup.
MIN_SECRET_LENGTH: int = 32
MAX_SECRET_LENGTH: int = 256

DEFAULT_BCRYPT_ROUNDS: int = 12
MIN_BCRYPT_ROUNDS: int = 4

# ─── Key lifetime ─────────────────────────────────────────────────────────────

DEFAULT_KEY_TTL_HOURS: int = 90 * 24
MAX_KEY_TTL_HOURS: int = 8760  # one year

# ─── Names and paging ─────────────────────────────────────────────────────────

NAME_MIN_LENGTH: int = 3
NAME_MAX_LENGTH: int = 100

LIST_DEFAULT_LIMIT: int = 20
LIST_MAX_LIMIT: int = 100

AUDIT_QUERY_DEFAULT_LIMIT: int = 100
AUDIT_QUERY_MAX_LIMIT: int = 1000

# ─── HTTP headers ─────────────────────────────────────────────────────────────

API_KEY_HEADER: str = "X-API-Key"
ADMIN_TOKEN_HEADER: str = "X-Admin-Token"
REQUEST_ID_HEADER: str = "X-Request-ID"
IDEMPOTENCY_KEY_HEADER: str = "Idempotency-Key"
IDEMPOTENCY_KEY_FALLBACK_HEADER: str = "X-Idempotency-Key"
IDEMPOTENT_REPLAY_HEADER: str = "Idempotent-Replayed"
