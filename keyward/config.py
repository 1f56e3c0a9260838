"""Config loading for Keyward.

Reads `.keyward/config.yaml` (or `~/.keyward/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field, or values out of
range. If no config file is found, returns default values (safe to run
without config).

Config search order:
  1. `config_path` argument (explicit override, used by tests)
  2. KEYWARD_CONFIG environment variable (if set)
  3. `.keyward/config.yaml` (working directory, development)
  4. `~/.keyward/config.yaml` (home directory, production)

Environment variable overrides:
  KEYWARD_PORT          - overrides server.port
  KEYWARD_DB_PATH       - overrides storage.db_path
  KEYWARD_AUDIT_DB_PATH - overrides audit.path
  KEYWARD_ADMIN_TOKEN   - enables the admin routes (never read from the file)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from keyward.constants import (
    DEFAULT_BCRYPT_ROUNDS,
    DEFAULT_KEY_TTL_HOURS,
    MAX_KEY_TTL_HOURS,
    MIN_BCRYPT_ROUNDS,
)
from keyward.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (KEYWARD_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".keyward/config.yaml",
    os.path.expanduser("~/.keyward/config.yaml"),
]

# rate_limit.storage_uri value selecting the aiosqlite counter table
SQLITE_COUNTER_STORAGE = "sqlite"


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 8420


@dataclass
class StorageConfig:
    """Core store (accounts, keys, idempotency, counters).

    timeout_seconds bounds every single store call; on expiry the call fails
    with StoreUnavailableError instead of hanging the request.
    """

    db_path: str = "~/.keyward/keyward.db"
    timeout_seconds: float = 5.0


@dataclass
class KeysConfig:
    """API key issuance and purge settings."""

    bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS
    default_ttl_hours: int = DEFAULT_KEY_TTL_HOURS
    max_ttl_hours: int = MAX_KEY_TTL_HOURS
    purge_retention_days: int = 30
    """Expired keys are deleted this many days after expires_at."""
    purge_interval_seconds: int = 3600


@dataclass
class IdempotencyConfig:
    retention_hours: int = 24
    purge_interval_seconds: int = 3600


@dataclass
class RateLimitRule:
    """One fixed-window dimension: at most ``ceiling`` requests per window."""

    ceiling: int
    window_seconds: int


@dataclass
class RateLimitConfig:
    """Rate limiter configuration.

    storage_uri: "sqlite" for the aiosqlite counter table in storage.db_path,
                 or any ``limits`` async storage URI (e.g. "async+memory://",
                 "async+redis://localhost:6379").
    """

    enabled: bool = True
    storage_uri: str = SQLITE_COUNTER_STORAGE
    ip: RateLimitRule = field(default_factory=lambda: RateLimitRule(ceiling=300, window_seconds=60))
    account: RateLimitRule = field(default_factory=lambda: RateLimitRule(ceiling=1000, window_seconds=60))
    endpoint: RateLimitRule = field(default_factory=lambda: RateLimitRule(ceiling=60, window_seconds=60))


@dataclass
class AuditConfig:
    """Audit backend configuration.

    backend:         "sqlite" (default) or "null" (discard, for tests/dev)
    alarm_threshold: consecutive write failures before audit_write_alarm fires
    """

    backend: str = "sqlite"
    path: str = "~/.keyward/audit.db"
    retention_days: int = 90
    alarm_threshold: int = 5


@dataclass
class Config:
    """Root configuration object populated from .keyward/config.yaml.

    All fields have safe defaults; Keyward can start without any config file.
    admin_token is only ever populated from KEYWARD_ADMIN_TOKEN.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    keys: KeysConfig = field(default_factory=KeysConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    admin_token: Optional[str] = field(default=None, repr=False)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On out-of-range values (see _validate).
        """
        # ── Server ────────────────────────────────────────────────────────────
        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 8420),
        )

        # ── Storage ───────────────────────────────────────────────────────────
        storage_raw = raw.get("storage") or {}
        storage = StorageConfig(
            db_path=storage_raw.get("db_path", "~/.keyward/keyward.db"),
            timeout_seconds=float(storage_raw.get("timeout_seconds", 5.0)),
        )

        # ── Keys ──────────────────────────────────────────────────────────────
        keys_raw = raw.get("keys") or {}
        keys = KeysConfig(
            bcrypt_rounds=keys_raw.get("bcrypt_rounds", DEFAULT_BCRYPT_ROUNDS),
            default_ttl_hours=keys_raw.get("default_ttl_hours", DEFAULT_KEY_TTL_HOURS),
            max_ttl_hours=keys_raw.get("max_ttl_hours", MAX_KEY_TTL_HOURS),
            purge_retention_days=keys_raw.get("purge_retention_days", 30),
            purge_interval_seconds=keys_raw.get("purge_interval_seconds", 3600),
        )

        # ── Idempotency ───────────────────────────────────────────────────────
        idem_raw = raw.get("idempotency") or {}
        idempotency = IdempotencyConfig(
            retention_hours=idem_raw.get("retention_hours", 24),
            purge_interval_seconds=idem_raw.get("purge_interval_seconds", 3600),
        )

        # ── Rate limit ────────────────────────────────────────────────────────
        rl_raw = raw.get("rate_limit") or {}
        rl_defaults = RateLimitConfig()
        rate_limit = RateLimitConfig(
            enabled=rl_raw.get("enabled", True),
            storage_uri=rl_raw.get("storage_uri", SQLITE_COUNTER_STORAGE),
            ip=_parse_rule(rl_raw.get("ip"), rl_defaults.ip),
            account=_parse_rule(rl_raw.get("account"), rl_defaults.account),
            endpoint=_parse_rule(rl_raw.get("endpoint"), rl_defaults.endpoint),
        )

        # ── Audit ─────────────────────────────────────────────────────────────
        audit_raw = raw.get("audit") or {}
        audit = AuditConfig(
            backend=audit_raw.get("backend", "sqlite"),
            path=audit_raw.get("path", "~/.keyward/audit.db"),
            retention_days=audit_raw.get("retention_days", 90),
            alarm_threshold=audit_raw.get("alarm_threshold", 5),
        )

        config = cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            storage=storage,
            keys=keys,
            idempotency=idempotency,
            rate_limit=rate_limit,
            audit=audit,
            path=path,
        )
        _validate(config, source=path or "<config>")
        return config


def _parse_rule(raw: Optional[dict[str, Any]], default: RateLimitRule) -> RateLimitRule:
    if not raw:
        return RateLimitRule(ceiling=default.ceiling, window_seconds=default.window_seconds)
    return RateLimitRule(
        ceiling=raw.get("ceiling", default.ceiling),
        window_seconds=raw.get("window_seconds", default.window_seconds),
    )


def _fail(msg: str) -> None:
    print(f"CONFIG ERROR: {msg}", file=sys.stderr)
    raise SystemExit(1)


def _validate(config: Config, source: str) -> None:
    """Reject values that would make the service unsafe or unusable."""
    if config.keys.bcrypt_rounds < MIN_BCRYPT_ROUNDS or config.keys.bcrypt_rounds > 31:
        _fail(
            f"{source}: keys.bcrypt_rounds must be between {MIN_BCRYPT_ROUNDS} and 31, "
            f"got {config.keys.bcrypt_rounds}."
        )
    if not 0 < config.keys.max_ttl_hours <= MAX_KEY_TTL_HOURS:
        _fail(
            f"{source}: keys.max_ttl_hours must be between 1 and {MAX_KEY_TTL_HOURS}, "
            f"got {config.keys.max_ttl_hours}."
        )
    if not 0 < config.keys.default_ttl_hours <= config.keys.max_ttl_hours:
        _fail(
            f"{source}: keys.default_ttl_hours must be between 1 and keys.max_ttl_hours "
            f"({config.keys.max_ttl_hours}), got {config.keys.default_ttl_hours}."
        )
    if config.storage.timeout_seconds <= 0:
        _fail(f"{source}: storage.timeout_seconds must be positive.")
    if config.idempotency.retention_hours <= 0:
        _fail(f"{source}: idempotency.retention_hours must be positive.")
    for name in ("ip", "account", "endpoint"):
        rule: RateLimitRule = getattr(config.rate_limit, name)
        if rule.ceiling <= 0 or rule.window_seconds <= 0:
            _fail(
                f"{source}: rate_limit.{name} needs a positive ceiling and window_seconds."
            )
    if config.audit.backend not in ("sqlite", "null"):
        _fail(
            f"{source}: Invalid audit.backend: '{config.audit.backend}'. "
            "Supported values: ['null', 'sqlite']."
        )
    if config.audit.retention_days <= 0 or config.audit.alarm_threshold <= 0:
        _fail(f"{source}: audit.retention_days and audit.alarm_threshold must be positive.")


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate Keyward configuration.

    If no file is found at any of the search paths, returns default Config
    (not an error). If a file is found but invalid, writes error to stderr and
    raises SystemExit(1).

    Environment overrides are applied last, whether or not a file was found.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, out-of-range values, or an invalid ``KEYWARD_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("KEYWARD_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found, using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"Failed to parse {found_path}: {exc}\n"
            "Keyward refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _fail(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )

    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: Keyward is configured to bind on 0.0.0.0 (all interfaces). "
            "Put it behind a TLS-terminating proxy."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        rate_limit_storage=config.rate_limit.storage_uri,
        audit_backend=config.audit.backend,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If KEYWARD_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("KEYWARD_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _fail(f"KEYWARD_PORT environment variable is not a valid integer: '{env_port}'")

    env_db = os.environ.get("KEYWARD_DB_PATH")
    if env_db:
        config.storage.db_path = env_db

    env_audit = os.environ.get("KEYWARD_AUDIT_DB_PATH")
    if env_audit:
        config.audit.path = env_audit

    env_token = os.environ.get("KEYWARD_ADMIN_TOKEN")
    if env_token:
        config.admin_token = env_token
