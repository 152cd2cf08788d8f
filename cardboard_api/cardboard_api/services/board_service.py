"""Quota-checked board and card mutations.

Creation follows the same shape for boards and cards:

1. Entitlement pre-check (gives the user-facing reason and usage snapshot).
2. Conditional counter increment, which is the actual gate.
3. Record insert.  If it fails, the increment is compensated and the
   original error propagates.

Deletion adjusts the counters inside the same transaction as the soft
delete, so a crash cannot leave the two out of step.

Storage is not touched here: it is charged when an upload completes and
given back when the object is deleted.  An image or file card only points
at a completed upload and copies its verified size for display.
"""

from __future__ import annotations

import logging
from typing import Any

from cardboard_core.billing.counters import AtomicCounterService
from cardboard_core.billing.entitlement import check_limit
from cardboard_core.billing.exceptions import QuotaExceededError
from cardboard_core.billing.limits import ResourceKind, limit_for
from cardboard_core.models.card import CardPayload, upload_key
from cardboard_core.state.repository import (
    AccountRepository,
    BoardRepository,
    CardRepository,
    StorageUploadRepository,
)
from cardboard_core.state.tables import BoardTable, CardTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

_COUNTER_FOR_KIND = {
    ResourceKind.BOARDS: "board_count",
    ResourceKind.CARDS: "card_count",
}


class BoardNotFoundError(LookupError):
    """The board does not exist, is deleted, or is not the caller's."""


class CardNotFoundError(LookupError):
    """The card does not exist on the given board."""


class UploadNotFoundError(LookupError):
    """A card names an upload key with no completed upload on its board."""


class BoardService:
    """Board/card operations for one authenticated tenant.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions.
    counters:
        Counter service used for the quota gate and its compensation.
    tenant_id:
        The caller.  Only board owners may add or remove cards.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        counters: AtomicCounterService,
        tenant_id: str,
    ) -> None:
        self._session_factory = session_factory
        self._counters = counters
        self._tenant_id = tenant_id

    async def _claim_slot(self, kind: ResourceKind) -> None:
        """Gate a new board/card on the caller's tier and bump its counter.

        Raises
        ------
        QuotaExceededError
            If the tier limit is reached, including when a concurrent
            request took the last slot between the check and the increment.
        """
        async with self._session_factory() as session:
            check = await check_limit(session, self._tenant_id, kind, 1)
        if not check.allowed:
            raise QuotaExceededError(check.reason or "Limit reached", check)

        counter = _COUNTER_FOR_KIND[kind]
        result = await self._counters.increment_with_check(
            self._tenant_id, counter, 1, limit_for(check.tier, kind)
        )
        if not result.ok:
            async with self._session_factory() as session:
                recheck = await check_limit(session, self._tenant_id, kind, 1)
            raise QuotaExceededError(recheck.reason or result.reason or "Limit reached", recheck)

    # -- Boards --------------------------------------------------------------

    async def list_boards(self, limit: int = 200, offset: int = 0) -> list[BoardTable]:
        async with self._session_factory() as session:
            return await BoardRepository(session, self._tenant_id).list_active(limit=limit, offset=offset)

    async def create_board(
        self,
        *,
        title: str = "Untitled Board",
        color: str = "#ffffff",
        is_public: bool = False,
        parent_board_id: str | None = None,
    ) -> BoardTable:
        """Create a board if the tenant's board limit allows it."""
        await self._claim_slot(ResourceKind.BOARDS)
        try:
            async with self._session_factory() as session:
                boards = BoardRepository(session, self._tenant_id)
                if parent_board_id is not None and await boards.get(parent_board_id) is None:
                    raise BoardNotFoundError(parent_board_id)
                board = await boards.create(
                    title=title,
                    color=color,
                    is_public=is_public,
                    parent_board_id=parent_board_id,
                )
                await session.commit()
        except Exception:
            await self._counters.compensate(self._tenant_id, "board_count", 1)
            raise

        logger.info("Board %s created by tenant=%s", board.id, self._tenant_id)
        return board

    async def delete_board(self, board_id: str) -> int:
        """Soft-delete a board with its cards; returns the cards deleted."""
        async with self._session_factory() as session:
            if not await BoardRepository(session, self._tenant_id).soft_delete(board_id):
                raise BoardNotFoundError(board_id)
            cards = await CardRepository(session, self._tenant_id).soft_delete_for_board(board_id)

            accounts = AccountRepository(session)
            await accounts.decrement_counter(self._tenant_id, "board_count", 1)
            if cards:
                await accounts.decrement_counter(self._tenant_id, "card_count", cards)
            await session.commit()

        logger.info("Board %s deleted by tenant=%s (%d cards)", board_id, self._tenant_id, cards)
        return cards

    # -- Cards ---------------------------------------------------------------

    async def list_cards(self, board_id: str) -> list[CardTable]:
        async with self._session_factory() as session:
            if await BoardRepository(session, self._tenant_id).get(board_id) is None:
                raise BoardNotFoundError(board_id)
            return await CardRepository(session, self._tenant_id).list_for_board(board_id)

    async def create_card(self, board_id: str, card: CardPayload) -> CardTable:
        """Add a card to one of the caller's boards.

        An image or file card that names an upload key must point at a
        completed upload on this board; the card records that upload's
        verified size, whatever size its payload claims.

        Raises
        ------
        UploadNotFoundError
            The key has no confirmed upload on this board.
        """
        key = upload_key(card)
        nbytes = 0
        async with self._session_factory() as session:
            if await BoardRepository(session, self._tenant_id).get(board_id) is None:
                raise BoardNotFoundError(board_id)
            if key is not None:
                upload = None
                if key.startswith(f"boards/{board_id}/"):
                    upload = await StorageUploadRepository(session).find_confirmed(self._tenant_id, key)
                if upload is None:
                    raise UploadNotFoundError(key)
                nbytes = upload.actual_bytes or 0

        await self._claim_slot(ResourceKind.CARDS)
        payload: dict[str, Any] = card.model_dump(mode="json")
        try:
            async with self._session_factory() as session:
                row = await CardRepository(session, self._tenant_id).create(
                    board_id, card.kind, payload, storage_bytes=nbytes
                )
                await session.commit()
        except Exception:
            await self._counters.compensate(self._tenant_id, "card_count", 1)
            raise

        logger.debug("Card %s (%s, %d bytes) added to board %s", row.id, card.kind, nbytes, board_id)
        return row

    async def delete_card(self, board_id: str, card_id: str) -> None:
        """Soft-delete a card.  Its upload, if any, stays stored and charged."""
        async with self._session_factory() as session:
            cards = CardRepository(session, self._tenant_id)
            existing = await cards.get(card_id)
            if existing is None or existing.board_id != board_id:
                raise CardNotFoundError(card_id)
            await cards.soft_delete(card_id)
            await AccountRepository(session).decrement_counter(self._tenant_id, "card_count", 1)
            await session.commit()
