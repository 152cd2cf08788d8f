"""Unit tests for the batch maintenance jobs."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from cardboard_core.billing.counters import AtomicCounterService
from cardboard_core.billing.maintenance import cleanup_stale_reservations, reconcile_stale_accounts
from cardboard_core.state.repository import BoardRepository


class TestReconcileStaleAccounts:
    @pytest.mark.asyncio
    async def test_reconciles_stale_and_skips_recent(self, session_factory, make_account, fetch_account) -> None:
        now = datetime.now(UTC)
        await make_account("drifted", board_count=4)
        await make_account("recent", board_count=99, counters_last_reconciled=now - timedelta(minutes=5))
        async with session_factory() as session:
            await BoardRepository(session, "drifted").create()
            await session.commit()

        summary = await reconcile_stale_accounts(
            session_factory,
            AtomicCounterService(session_factory),
            max_age_seconds=3600,
        )

        assert summary.to_dict() == {"reconciled": 1, "total": 1, "drifted": 1, "failed": 0}
        assert (await fetch_account("drifted")).board_count == 1
        assert (await fetch_account("recent")).board_count == 99

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self, session_factory, make_account) -> None:
        await make_account("a")
        await make_account("b")

        real = AtomicCounterService(session_factory)
        counters = MagicMock(spec=AtomicCounterService)

        async def _reconcile(tenant_id: str):
            if tenant_id == "a":
                raise RuntimeError("boom")
            return await real.reconcile(tenant_id)

        counters.reconcile = AsyncMock(side_effect=_reconcile)

        summary = await reconcile_stale_accounts(session_factory, counters, max_age_seconds=0)

        assert summary.total == 2
        assert summary.reconciled == 1
        assert summary.failed == ["a"]

    @pytest.mark.asyncio
    async def test_respects_batch_size(self, session_factory, make_account) -> None:
        for i in range(3):
            await make_account(f"t{i}")
        summary = await reconcile_stale_accounts(
            session_factory,
            AtomicCounterService(session_factory),
            batch_size=2,
        )
        assert summary.total == 2


class TestCleanupStaleReservations:
    @pytest.mark.asyncio
    async def test_delegates_to_service(self) -> None:
        reservations = MagicMock()
        reservations.cleanup_stale = AsyncMock(return_value=3)

        cleaned = await cleanup_stale_reservations(reservations, max_age_seconds=60)

        assert cleaned == 3
        reservations.cleanup_stale.assert_awaited_once_with(60)
