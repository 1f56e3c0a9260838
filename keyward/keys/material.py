"""Key material: secret generation, hashing and verification.

Two hashes are kept for every secret:

  storage_hash  bcrypt (salted, slow); the value the secret is verified against
  lookup_hash   SHA-256 hex (deterministic, fast); an index, never proof of
                possession on its own

The raw secret is ``kw_`` followed by 32 random bytes in hex (256 bits of
entropy) and is never persisted or logged. Use ``mask_secret()`` when a
secret has to appear in a log line at all.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass, field

import bcrypt

from keyward.constants import (
    DEFAULT_BCRYPT_ROUNDS,
    KEY_PREFIX,
    KEY_RANDOM_BYTES,
    MAX_SECRET_LENGTH,
    MIN_SECRET_LENGTH,
)
from keyward.errors import KeyGenerationError
from keyward.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeyMaterial:
    raw_secret: str = field(repr=False)
    storage_hash: str = field(repr=False)
    lookup_hash: str


def mask_secret(secret: str) -> str:
    """First 4 + ``****`` + last 4 characters; fully masked when short."""
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}****{secret[-4:]}"


def is_plausible_secret(raw: str) -> bool:
    """Cheap length pre-check run before any store lookup."""
    return MIN_SECRET_LENGTH <= len(raw) <= MAX_SECRET_LENGTH


class KeyMaterialManager:
    """Generates and verifies API key secrets.

    bcrypt work is CPU-bound (~250ms at 12 rounds); async callers should run
    ``generate()`` and ``verify()`` via ``asyncio.to_thread``.
    """

    def __init__(self, bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS) -> None:
        self._rounds = bcrypt_rounds

    @property
    def bcrypt_rounds(self) -> int:
        return self._rounds

    def generate(self) -> KeyMaterial:
        """Mint a new secret with both hashes.

        Raises:
            KeyGenerationError: the OS random source is unavailable.
        """
        try:
            raw = KEY_PREFIX + secrets.token_hex(KEY_RANDOM_BYTES)
        except (NotImplementedError, OSError) as exc:
            logger.critical("key_randomness_unavailable", error=str(exc))
            raise KeyGenerationError() from exc

        storage_hash = bcrypt.hashpw(raw.encode(), bcrypt.gensalt(rounds=self._rounds)).decode()
        return KeyMaterial(
            raw_secret=raw,
            storage_hash=storage_hash,
            lookup_hash=self.lookup_hash(raw),
        )

    @staticmethod
    def lookup_hash(raw: str) -> str:
        return hashlib.sha256(raw.encode()).hexdigest()

    @staticmethod
    def verify(raw: str, storage_hash: str) -> bool:
        """Constant-time bcrypt check. A malformed hash yields False, never raises."""
        try:
            return bcrypt.checkpw(raw.encode(), storage_hash.encode())
        except (ValueError, TypeError) as exc:
            logger.warning("bcrypt_verify_error", error=str(exc))
            return False

    @staticmethod
    def secrets_match(a: str, b: str) -> bool:
        return hmac.compare_digest(a.encode(), b.encode())
