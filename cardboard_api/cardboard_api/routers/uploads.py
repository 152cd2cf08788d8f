"""Direct-to-storage upload endpoints with storage reservations."""

from __future__ import annotations

import logging

from cardboard_core.billing.exceptions import QuotaExceededError
from cardboard_core.billing.reservation import StorageReservationService
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardboard_api.config import APISettings
from cardboard_api.dependencies import (
    AccountDep,
    BlobStoreDep,
    ReservationServiceDep,
    SessionFactoryDep,
    SettingsDep,
)
from cardboard_api.schemas import (
    CompleteUploadRequest,
    CompleteUploadResponse,
    DeleteUploadRequest,
    DeleteUploadResponse,
    PresignedUrlRequest,
    PresignedUrlResponse,
)
from cardboard_api.services.blob_store import BlobStore
from cardboard_api.services.board_service import BoardNotFoundError
from cardboard_api.services.upload_service import UploadService, UploadValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", tags=["uploads"])


def _service(
    account_id: str,
    factory: async_sessionmaker[AsyncSession],
    reservations: StorageReservationService,
    blob_store: BlobStore,
    settings: APISettings,
) -> UploadService:
    return UploadService(factory, reservations, blob_store, settings, account_id)


@router.post("/presigned-url", response_model=PresignedUrlResponse)
async def create_presigned_url(
    body: PresignedUrlRequest,
    account: AccountDep,
    factory: SessionFactoryDep,
    reservations: ReservationServiceDep,
    blob_store: BlobStoreDep,
    settings: SettingsDep,
) -> PresignedUrlResponse:
    """Reserve storage for a board upload and return a presigned ``PUT`` URL.

    The reservation id must be sent to ``POST /upload/complete`` once the
    object is in storage.
    """
    service = _service(account.tenant_id, factory, reservations, blob_store, settings)
    try:
        upload = await service.create_presigned_upload(
            body.key,
            body.content_type,
            body.upload_type,
            body.declared_size,
        )
    except UploadValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    except BoardNotFoundError:
        raise HTTPException(status_code=404, detail="Board not found")
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc))

    return PresignedUrlResponse(
        upload_url=upload.upload_url,
        public_url=upload.public_url,
        key=upload.key,
        expires_in=upload.expires_in,
        reservation_id=upload.reservation_id,
        declared_size=upload.declared_size,
    )


@router.post("/complete", response_model=CompleteUploadResponse)
async def complete_upload(
    body: CompleteUploadRequest,
    account: AccountDep,
    factory: SessionFactoryDep,
    reservations: ReservationServiceDep,
    blob_store: BlobStoreDep,
    settings: SettingsDep,
) -> CompleteUploadResponse | JSONResponse:
    """Validate a finished upload and confirm or release its reservation.

    Each reservation settles once: a repeated completion gets a 409 and
    leaves the storage counters alone.
    """
    service = _service(account.tenant_id, factory, reservations, blob_store, settings)
    try:
        actual_size = await service.complete_upload(body.key, body.board_id, body.reservation_id)
    except UploadValidationError as exc:
        return JSONResponse(status_code=exc.status_code, content={"success": False, "reason": exc.message})
    except QuotaExceededError as exc:
        content = {"success": False, "reason": exc.reason, "upgrade_required": True}
        if exc.result is not None:
            content["current_usage"] = exc.result.current_usage.to_dict()
            content["limits"] = exc.result.limits
        return JSONResponse(status_code=403, content=content)
    except BoardNotFoundError:
        raise HTTPException(status_code=404, detail="Board not found")
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc))

    logger.info(
        "Upload confirmed: key=%s reservation=%s actual=%d",
        body.key,
        body.reservation_id,
        actual_size,
    )
    return CompleteUploadResponse(success=True, actual_size=actual_size)


@router.delete("", response_model=DeleteUploadResponse)
async def delete_upload(
    body: DeleteUploadRequest,
    account: AccountDep,
    factory: SessionFactoryDep,
    reservations: ReservationServiceDep,
    blob_store: BlobStoreDep,
    settings: SettingsDep,
) -> DeleteUploadResponse:
    """Delete an uploaded object owned by the caller."""
    service = _service(account.tenant_id, factory, reservations, blob_store, settings)
    try:
        freed = await service.delete_upload(body.key)
    except UploadValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    return DeleteUploadResponse(success=True, key=body.key, storage_bytes_released=freed)
