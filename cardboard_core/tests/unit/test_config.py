"""Unit tests for core settings and engine helpers."""

from __future__ import annotations

from pathlib import Path

import pytest
from cardboard_core.config import PlatformEnv, load_settings
from cardboard_core.state.database import get_engine, get_session, get_session_factory, ping


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CARDBOARD_DATABASE_URL", raising=False)
        settings = load_settings()
        assert settings.env is PlatformEnv.DEV
        assert settings.reconcile_max_age_seconds == 86_400
        assert settings.reservation_cleanup_max_age_seconds == 7_200

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CARDBOARD_RECONCILE_BATCH_SIZE", "25")
        assert load_settings().reconcile_batch_size == 25

    def test_overrides(self) -> None:
        assert load_settings(database_url="sqlite+aiosqlite:///x.db").database_url == "sqlite+aiosqlite:///x.db"


class TestDatabaseHelpers:
    @pytest.mark.asyncio
    async def test_sqlite_url_uses_local_engine(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'db' / 'state.db'}")
        try:
            assert engine.dialect.name == "sqlite"
            assert (tmp_path / "db").is_dir()
            async with get_session(engine) as session:
                assert await ping(session)
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_session_factory_is_cached(self, engine) -> None:
        assert get_session_factory(engine) is get_session_factory(engine)
