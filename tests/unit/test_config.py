"""Unit tests for Keyward config loading, validation and env overrides."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from keyward.config import SUPPORTED_VERSIONS, Config, load_config


@pytest.fixture(autouse=True)
def no_default_search_paths(monkeypatch: pytest.MonkeyPatch) -> None:
    """Only the explicitly passed path is searched."""
    monkeypatch.setattr("keyward.config.DEFAULT_CONFIG_PATHS", [])


def _write(tmp_path: Path, body: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


# ─── Missing file ─────────────────────────────────────────────────────────────


class TestMissingConfigFile:
    """A missing config file is not an error: defaults apply."""

    def test_returns_defaults(self) -> None:
        config = load_config(config_path="/nonexistent/keyward.yaml")
        assert isinstance(config, Config)
        assert config.version == 1
        assert config.server.host == "127.0.0.1"
        assert config.server.port == 8420
        assert config.keys.bcrypt_rounds == 12
        assert config.keys.default_ttl_hours == 2160
        assert config.idempotency.retention_hours == 24
        assert config.rate_limit.storage_uri == "sqlite"
        assert config.audit.retention_days == 90
        assert config.admin_token is None

    def test_supported_versions(self) -> None:
        assert SUPPORTED_VERSIONS == frozenset({1})


# ─── Valid file ───────────────────────────────────────────────────────────────


class TestValidConfigFile:
    def test_sections_parsed(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """
            version: 1
            server:
              port: 9000
            storage:
              db_path: /tmp/kw.db
              timeout_seconds: 2.5
            keys:
              bcrypt_rounds: 10
              default_ttl_hours: 24
            rate_limit:
              storage_uri: async+memory://
              ip:
                ceiling: 5
                window_seconds: 10
            audit:
              backend: "null"
            """,
        )
        config = load_config(config_path=path)

        assert config.path == path
        assert config.server.port == 9000
        assert config.storage.db_path == "/tmp/kw.db"
        assert config.storage.timeout_seconds == 2.5
        assert config.keys.bcrypt_rounds == 10
        assert config.keys.default_ttl_hours == 24
        assert config.rate_limit.storage_uri == "async+memory://"
        assert config.rate_limit.ip.ceiling == 5
        assert config.rate_limit.ip.window_seconds == 10
        assert config.rate_limit.account.ceiling == 1000
        assert config.audit.backend == "null"

    def test_admin_token_not_in_repr(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KEYWARD_ADMIN_TOKEN", "super-secret-admin")
        config = load_config(config_path="/nonexistent/keyward.yaml")
        assert config.admin_token == "super-secret-admin"
        assert "super-secret-admin" not in repr(config)


# ─── Invalid file → SystemExit(1) ─────────────────────────────────────────────


class TestInvalidConfigFile:
    @pytest.mark.parametrize(
        "body",
        [
            "server:\n  port: 1\n",
            "version: 2\n",
            "version: 1\nserver: [unclosed\n",
            "",
            "version: 1\nkeys:\n  bcrypt_rounds: 3\n",
            "version: 1\nkeys:\n  default_ttl_hours: 9000\n",
            "version: 1\nrate_limit:\n  ip:\n    ceiling: 0\n",
            "version: 1\naudit:\n  backend: dynamodb\n",
        ],
        ids=[
            "missing-version",
            "unsupported-version",
            "bad-yaml",
            "empty-file",
            "bcrypt-too-cheap",
            "ttl-above-max",
            "zero-ceiling",
            "unknown-audit-backend",
        ],
    )
    def test_refuses_to_start(
        self, tmp_path: Path, body: str, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = _write(tmp_path, body)
        with pytest.raises(SystemExit) as exc_info:
            load_config(config_path=path)
        assert exc_info.value.code == 1
        assert "CONFIG ERROR" in capsys.readouterr().err


# ─── Environment overrides ────────────────────────────────────────────────────


class TestEnvOverrides:
    def test_paths_and_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KEYWARD_PORT", "9999")
        monkeypatch.setenv("KEYWARD_DB_PATH", "/data/kw.db")
        monkeypatch.setenv("KEYWARD_AUDIT_DB_PATH", "/data/audit.db")
        config = load_config(config_path="/nonexistent/keyward.yaml")
        assert config.server.port == 9999
        assert config.storage.db_path == "/data/kw.db"
        assert config.audit.path == "/data/audit.db"

    def test_env_config_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, "version: 1\nserver:\n  port: 7777\n")
        monkeypatch.setenv("KEYWARD_CONFIG", path)
        assert load_config().server.port == 7777

    def test_invalid_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KEYWARD_PORT", "not-a-port")
        with pytest.raises(SystemExit):
            load_config(config_path="/nonexistent/keyward.yaml")
