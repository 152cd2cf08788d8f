"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI specification.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from cardboard_core.models.card import CardPayload
from pydantic import BaseModel, Field

from cardboard_api.services.upload_service import UploadType

# ---------------------------------------------------------------------------
# Quota errors
# ---------------------------------------------------------------------------


class QuotaExceededResponse(BaseModel):
    """Body of a 403 returned when a tier limit blocks a mutation."""

    error: str
    upgrade_required: bool = True
    current_usage: dict[str, int] = Field(default_factory=dict)
    limits: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Boards and cards
# ---------------------------------------------------------------------------


class CreateBoardRequest(BaseModel):
    title: str = Field(default="Untitled Board", max_length=512)
    color: str = Field(default="#ffffff", max_length=32)
    is_public: bool = False
    parent_board_id: str | None = None


class BoardResponse(BaseModel):
    """A board owned by the caller."""

    id: str
    title: str
    color: str
    is_public: bool
    parent_board_id: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BoardListResponse(BaseModel):
    boards: list[BoardResponse]
    total: int


class DeleteBoardResponse(BaseModel):
    deleted: bool = True
    cards_deleted: int = 0


class CreateCardRequest(BaseModel):
    """Request body for ``POST /boards/{id}/cards``; ``card`` is keyed on ``kind``."""

    card: CardPayload


class CardResponse(BaseModel):
    id: str
    board_id: str
    kind: str
    payload: dict[str, Any]
    storage_bytes: int
    created_at: datetime

    model_config = {"from_attributes": True}


class CardListResponse(BaseModel):
    cards: list[CardResponse]
    total: int


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


class PresignedUrlRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=1024)
    content_type: str = Field(..., min_length=1, max_length=255)
    upload_type: UploadType
    declared_size: int = Field(..., gt=0)


class PresignedUrlResponse(BaseModel):
    upload_url: str
    public_url: str
    key: str
    expires_in: int
    reservation_id: str | None = None
    declared_size: int


class CompleteUploadRequest(BaseModel):
    """The declared size is taken from the reservation, not from this body."""

    key: str = Field(..., min_length=1, max_length=1024)
    board_id: str = Field(..., min_length=1)
    reservation_id: str = Field(..., min_length=1, max_length=64)


class CompleteUploadResponse(BaseModel):
    success: bool
    actual_size: int | None = None
    reason: str | None = None


class DeleteUploadRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=1024)


class DeleteUploadResponse(BaseModel):
    success: bool
    key: str
    storage_bytes_released: int = 0


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class UsageResponse(BaseModel):
    """Current usage against the tier limits."""

    usage: dict[str, int]
    limits: dict[str, Any]
    tier: str


class SubscriptionResponse(BaseModel):
    """Locally mirrored subscription state."""

    tier: str
    status: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    grace_period_end: datetime | None = None
    in_grace_period: bool = False


class CheckoutRequest(BaseModel):
    price_id: str = Field(..., description="Stripe price ID of the standard or pro plan.")


class SessionUrlResponse(BaseModel):
    """Stripe checkout or portal session response."""

    url: str


class WebhookAckResponse(BaseModel):
    received: bool = True


# ---------------------------------------------------------------------------
# Cron triggers
# ---------------------------------------------------------------------------


class ReconcileCountersResponse(BaseModel):
    success: bool = True
    reconciled: int
    total: int
    drifted: int = 0
    failed: int = 0


class CleanupReservationsResponse(BaseModel):
    success: bool = True
    cleaned: int
