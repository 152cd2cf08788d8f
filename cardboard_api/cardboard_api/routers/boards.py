"""Board and card endpoints with quota enforcement.

Quota denials raise :class:`~cardboard_core.billing.exceptions.QuotaExceededError`,
which the application-level handler turns into a 403 with
``upgrade_required``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query

from cardboard_api.dependencies import AccountDep, CounterServiceDep, SessionFactoryDep
from cardboard_api.schemas import (
    BoardListResponse,
    BoardResponse,
    CardListResponse,
    CardResponse,
    CreateBoardRequest,
    CreateCardRequest,
    DeleteBoardResponse,
)
from cardboard_api.services.board_service import (
    BoardNotFoundError,
    BoardService,
    CardNotFoundError,
    UploadNotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/boards", tags=["boards"])


@router.get("", response_model=BoardListResponse)
async def list_boards(
    account: AccountDep,
    factory: SessionFactoryDep,
    counters: CounterServiceDep,
    limit: int = Query(200, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> BoardListResponse:
    """List the caller's non-deleted boards, newest first."""
    service = BoardService(factory, counters, account.tenant_id)
    boards = await service.list_boards(limit=limit, offset=offset)
    return BoardListResponse(
        boards=[BoardResponse.model_validate(b) for b in boards],
        total=len(boards),
    )


@router.post("", response_model=BoardResponse, status_code=201)
async def create_board(
    body: CreateBoardRequest,
    account: AccountDep,
    factory: SessionFactoryDep,
    counters: CounterServiceDep,
) -> BoardResponse:
    """Create a board if the caller's tier allows another one."""
    service = BoardService(factory, counters, account.tenant_id)
    try:
        board = await service.create_board(
            title=body.title,
            color=body.color,
            is_public=body.is_public,
            parent_board_id=body.parent_board_id,
        )
    except BoardNotFoundError:
        raise HTTPException(status_code=404, detail="Parent board not found")
    return BoardResponse.model_validate(board)


@router.delete("/{board_id}", response_model=DeleteBoardResponse)
async def delete_board(
    board_id: str,
    account: AccountDep,
    factory: SessionFactoryDep,
    counters: CounterServiceDep,
) -> DeleteBoardResponse:
    """Soft-delete a board and its cards and give back their counts."""
    service = BoardService(factory, counters, account.tenant_id)
    try:
        cards = await service.delete_board(board_id)
    except BoardNotFoundError:
        raise HTTPException(status_code=404, detail=f"Board '{board_id}' not found")
    return DeleteBoardResponse(cards_deleted=cards)


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------


@router.get("/{board_id}/cards", response_model=CardListResponse)
async def list_cards(
    board_id: str,
    account: AccountDep,
    factory: SessionFactoryDep,
    counters: CounterServiceDep,
) -> CardListResponse:
    service = BoardService(factory, counters, account.tenant_id)
    try:
        cards = await service.list_cards(board_id)
    except BoardNotFoundError:
        raise HTTPException(status_code=404, detail=f"Board '{board_id}' not found")
    return CardListResponse(cards=[CardResponse.model_validate(c) for c in cards], total=len(cards))


@router.post("/{board_id}/cards", response_model=CardResponse, status_code=201)
async def create_card(
    board_id: str,
    body: CreateCardRequest,
    account: AccountDep,
    factory: SessionFactoryDep,
    counters: CounterServiceDep,
) -> CardResponse:
    """Add a card; an upload key on an image or file card must be a completed upload."""
    service = BoardService(factory, counters, account.tenant_id)
    try:
        card = await service.create_card(board_id, body.card)
    except BoardNotFoundError:
        raise HTTPException(status_code=404, detail=f"Board '{board_id}' not found")
    except UploadNotFoundError:
        raise HTTPException(status_code=400, detail="Card references an upload that was not completed on this board")
    return CardResponse.model_validate(card)


@router.delete("/{board_id}/cards/{card_id}")
async def delete_card(
    board_id: str,
    card_id: str,
    account: AccountDep,
    factory: SessionFactoryDep,
    counters: CounterServiceDep,
) -> dict[str, bool]:
    service = BoardService(factory, counters, account.tenant_id)
    try:
        await service.delete_card(board_id, card_id)
    except CardNotFoundError:
        raise HTTPException(status_code=404, detail=f"Card '{card_id}' not found")
    return {"deleted": True}
