"""Tests for the cardboard CLI commands.

Covers:
- limits (table and JSON)
- token minting and validation round trip
- usage for existing and missing tenants
- reconcile for one tenant and for the stale batch
- cleanup-reservations
- database failures mapped to exit code 3
- serve handing the app to uvicorn
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

from cardboard_api.security import TokenManager
from cardboard_cli.app import app
from typer.testing import CliRunner

runner = CliRunner()


class TestLimits:
    def test_json(self) -> None:
        result = runner.invoke(app, ["--json", "limits"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["free"]["boards"] == 10
        assert data["free"]["cards"] == 250
        assert data["pro"]["boards"] == "unlimited"

    def test_table(self) -> None:
        result = runner.invoke(app, ["limits"])
        assert result.exit_code == 0


class TestToken:
    def test_mints_valid_token(self) -> None:
        result = runner.invoke(app, ["token", "user-7", "--email", "u7@example.com", "--secret", "cli-secret"])
        assert result.exit_code == 0
        claims = TokenManager("cli-secret").validate_token(result.stdout.strip())
        assert claims.tenant_id == "user-7"
        assert claims.email == "u7@example.com"

    def test_secret_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("API_JWT_SECRET", "env-secret")
        result = runner.invoke(app, ["token", "user-8"])
        assert result.exit_code == 0
        assert TokenManager("env-secret").validate_token(result.stdout.strip()).sub == "user-8"

    def test_empty_secret(self) -> None:
        result = runner.invoke(app, ["token", "user-8", "--secret", ""])
        assert result.exit_code == 3


class TestUsage:
    def test_stored_and_live(self, database_url: str, seed) -> None:
        seed("user-1", boards=2, board_count=5, confirmed_storage_bytes=1024)

        result = runner.invoke(app, ["--json", "--database-url", database_url, "usage", "user-1"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["tier"] == "free"
        assert data["stored"]["boards"] == 5
        assert data["live"]["boards"] == 2
        assert data["live"]["storage_bytes"] == 0

    def test_missing_tenant(self, database_url: str) -> None:
        result = runner.invoke(app, ["--database-url", database_url, "usage", "ghost"])
        assert result.exit_code == 1

    def test_table_output(self, database_url: str, seed) -> None:
        seed("user-1", boards=1, board_count=1)
        result = runner.invoke(app, ["--database-url", database_url, "usage", "user-1"])
        assert result.exit_code == 0


class TestReconcile:
    def test_single_tenant(self, database_url: str, seed) -> None:
        seed("user-1", boards=3, board_count=9, card_count=4)

        result = runner.invoke(app, ["--json", "--database-url", database_url, "reconcile", "--tenant", "user-1"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["drifted"] is True
        assert data["before"]["boards"] == 9
        assert data["after"] == {"boards": 3, "cards": 0, "storage_bytes": 0}

    def test_single_tenant_missing(self, database_url: str) -> None:
        result = runner.invoke(app, ["--database-url", database_url, "reconcile", "--tenant", "ghost"])
        assert result.exit_code == 1

    def test_batch(self, database_url: str, seed) -> None:
        seed("stale", boards=1, board_count=4)
        seed("fresh", board_count=2, counters_last_reconciled=datetime.now(UTC) - timedelta(minutes=1))

        result = runner.invoke(app, ["--json", "--database-url", database_url, "reconcile", "--max-age", "3600"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"reconciled": 1, "total": 1, "drifted": 1, "failed": 0}

    def test_batch_table_output(self, database_url: str, seed) -> None:
        seed("stale", boards=1, board_count=1)
        result = runner.invoke(app, ["--database-url", database_url, "reconcile"])
        assert result.exit_code == 0


class TestCleanupReservations:
    def test_sweeps(self, database_url: str, seed) -> None:
        seed(
            "stale",
            pending_storage_bytes=2048,
            last_storage_sync=datetime.now(UTC) - timedelta(hours=5),
        )
        seed("busy", pending_storage_bytes=512, last_storage_sync=datetime.now(UTC))

        result = runner.invoke(app, ["--json", "--database-url", database_url, "cleanup-reservations"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"cleaned": 1}


class TestDatabaseErrors:
    def test_missing_tables_exit_3(self, tmp_path) -> None:
        url = f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"
        result = runner.invoke(app, ["--database-url", url, "usage", "user-1"])
        assert result.exit_code == 3


class TestServe:
    def test_runs_uvicorn_with_database_url(self, monkeypatch, database_url: str) -> None:
        monkeypatch.setenv("API_DATABASE_URL", "sqlite+aiosqlite:///unused.db")
        with patch("uvicorn.Server") as server_cls:
            result = runner.invoke(app, ["--database-url", database_url, "serve", "--port", "9123"])

        assert result.exit_code == 0
        config = server_cls.call_args.args[0]
        assert config.app == "cardboard_api.main:app"
        assert config.port == 9123
        server_cls.return_value.run.assert_called_once()
        assert os.environ["API_DATABASE_URL"] == database_url

    def test_server_error_exit_3(self) -> None:
        with patch("uvicorn.Server") as server_cls:
            server_cls.return_value.run.side_effect = OSError("address in use")
            result = runner.invoke(app, ["serve"])
        assert result.exit_code == 3
