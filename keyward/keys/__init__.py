"""API keys package.

Layout:
  material.py - KeyMaterialManager: secret generation, bcrypt + SHA-256 hashing
  models.py   - ApiKeyRecord, Permission, ValidationReason, KeyValidation
  store.py    - ApiKeyStore (aiosqlite, unique lookup-hash index)
  registry.py - ApiKeyRegistry: issue, validate, revoke, list, purge
"""

from keyward.keys.material import KeyMaterialManager, mask_secret
from keyward.keys.models import (
    ApiKeyRecord,
    ApiKeyStatus,
    IssuedKey,
    KeyValidation,
    Permission,
    ValidationReason,
)
from keyward.keys.registry import ApiKeyRegistry
from keyward.keys.store import ApiKeyStore

__all__ = [
    "ApiKeyRecord",
    "ApiKeyRegistry",
    "ApiKeyStatus",
    "ApiKeyStore",
    "IssuedKey",
    "KeyMaterialManager",
    "KeyValidation",
    "Permission",
    "ValidationReason",
    "mask_secret",
]
