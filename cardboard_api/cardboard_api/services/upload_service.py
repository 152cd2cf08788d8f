"""Presigned uploads with storage reservations and post-upload validation.

Key layout in the bucket::

    boards/{board_id}/images/...   metered against the board owner
    boards/{board_id}/files/...    metered against the board owner
    users/{user_id}/avatar/...     not metered

A board upload reserves its declared size before the URL is signed.  Once
the client reports completion, with the reservation id it was given, the
object is inspected and the reservation is confirmed or released (see
:meth:`UploadService.complete_upload`).  Confirming charges the size read
back from the bucket; deleting the object gives it back.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from cardboard_core.billing.exceptions import QuotaExceededError
from cardboard_core.billing.reservation import StorageReservationService
from cardboard_core.state.repository import get_board_any_owner
from cardboard_core.state.tables import UploadState
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardboard_api.config import APISettings
from cardboard_api.services.blob_store import BlobStore
from cardboard_api.services.board_service import BoardNotFoundError

logger = logging.getLogger(__name__)

_BOARD_KEY_RE = re.compile(r"^boards/([^/]+)/")
_USER_KEY_RE = re.compile(r"^users/([^/]+)/")


class UploadType(str, Enum):
    IMAGE = "image"
    FILE = "file"
    AVATAR = "avatar"


class UploadValidationError(Exception):
    """An upload request or a completed upload was rejected."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def has_traversal(key: str) -> bool:
    return ".." in key or "\\" in key


def validate_key(key: str, upload_type: UploadType) -> bool:
    """Check *key* against the directory layout for *upload_type*."""
    if has_traversal(key):
        return False
    if upload_type is UploadType.IMAGE:
        return key.startswith("boards/") and "/images/" in key
    if upload_type is UploadType.FILE:
        return key.startswith("boards/") and "/files/" in key
    return key.startswith("users/") and "/avatar/" in key


def board_id_from_key(key: str) -> str | None:
    match = _BOARD_KEY_RE.match(key)
    return match.group(1) if match else None


def user_id_from_key(key: str) -> str | None:
    match = _USER_KEY_RE.match(key)
    return match.group(1) if match else None


@dataclass(frozen=True)
class PresignedUpload:
    upload_url: str
    public_url: str
    key: str
    expires_in: int
    reservation_id: str | None
    declared_size: int


class UploadService:
    """Upload flow for one authenticated tenant.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions (board ownership lookups).
    reservations:
        Storage reservation service.
    blob_store:
        Object storage access.
    settings:
        Expiry, size tolerance and violation ratio.
    tenant_id:
        The caller.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reservations: StorageReservationService,
        blob_store: BlobStore,
        settings: APISettings,
        tenant_id: str,
    ) -> None:
        self._session_factory = session_factory
        self._reservations = reservations
        self._blob_store = blob_store
        self._settings = settings
        self._tenant_id = tenant_id

    async def _board_owner(self, board_id: str) -> str:
        """Owner of a live board; the caller must be that owner."""
        async with self._session_factory() as session:
            board = await get_board_any_owner(session, board_id)
        if board is None:
            raise BoardNotFoundError(board_id)
        if board.owner_id != self._tenant_id:
            raise PermissionError("Only the board owner can upload to this board")
        return board.owner_id

    async def _storage_owner(self, key: str, upload_type: UploadType) -> str | None:
        """Tenant whose storage quota pays for *key*; ``None`` for avatars."""
        if upload_type is UploadType.AVATAR:
            if user_id_from_key(key) != self._tenant_id:
                raise PermissionError("Avatar uploads must target the caller's own directory")
            return None
        board_id = board_id_from_key(key)
        if board_id is None:
            raise UploadValidationError("Invalid key format or path traversal attempt")
        return await self._board_owner(board_id)

    # -- Presign -------------------------------------------------------------

    async def create_presigned_upload(
        self,
        key: str,
        content_type: str,
        upload_type: UploadType,
        declared_size: int,
    ) -> PresignedUpload:
        """Reserve quota (board uploads) and sign a ``PUT`` URL.

        Raises
        ------
        UploadValidationError
            Bad key layout, traversal attempt, or an oversized declaration.
        QuotaExceededError
            The reservation does not fit the owner's storage limit.
        """
        if not validate_key(key, upload_type):
            raise UploadValidationError("Invalid key format or path traversal attempt")
        if declared_size <= 0:
            raise UploadValidationError("Declared size must be positive")
        if declared_size > self._settings.max_upload_bytes:
            raise UploadValidationError("File exceeds the maximum upload size")

        expires_in = self._settings.upload_url_expiry_seconds
        owner = await self._storage_owner(key, upload_type)

        reservation_id: str | None = None
        if owner is not None:
            reservation = await self._reservations.reserve(
                owner, declared_size, ttl_seconds=expires_in, object_key=key
            )
            if not reservation.allowed:
                raise QuotaExceededError(reservation.reason or "Storage limit reached", reservation.entitlement)
            reservation_id = reservation.reservation_id

        try:
            upload_url = self._blob_store.presign_put(key, content_type, expires_in)
        except Exception:
            if reservation_id is not None:
                await self._release_quietly(reservation_id)
            raise

        return PresignedUpload(
            upload_url=upload_url,
            public_url=self._blob_store.public_url(key),
            key=key,
            expires_in=expires_in,
            reservation_id=reservation_id,
            declared_size=declared_size,
        )

    # -- Complete ------------------------------------------------------------

    async def complete_upload(self, key: str, board_id: str, reservation_id: str) -> int:
        """Validate a finished board upload and settle its reservation.

        The declared size is the one stored with the reservation, and the
        reservation must have been made for *key* on *board_id*'s owner.

        Sequence:

        1. HEAD the object; missing means release and 404.
        2. If the actual size is off by more than the tolerance *and* exceeds
           the declaration by the violation ratio, release, delete, 400.
        3. Re-check the storage limit with the actual size; on failure
           release, delete and raise :class:`QuotaExceededError`.
        4. Confirm the reservation, charging the actual size.

        Only the request that moves the reservation out of ``pending``
        changes any counter or deletes the object; a replayed or racing
        completion gets a 409.

        Returns
        -------
        int
            The object's actual size in bytes.
        """
        if not (validate_key(key, UploadType.IMAGE) or validate_key(key, UploadType.FILE)):
            raise UploadValidationError("Invalid key format or path traversal attempt")
        if board_id_from_key(key) != board_id:
            raise UploadValidationError("Key does not belong to this board")

        owner = await self._board_owner(board_id)

        reservation = await self._reservations.lookup(reservation_id)
        if reservation is None or reservation.tenant_id != owner or reservation.object_key != key:
            raise UploadValidationError("Upload reservation not found", status_code=404)
        if reservation.state != UploadState.PENDING.value:
            logger.warning("Completion for settled reservation %s (%s)", reservation_id, reservation.state)
            if reservation.state == UploadState.EXPIRED.value:
                # The quota it held is gone; the object must not outlive it.
                self._delete_quietly(key)
            raise UploadValidationError("Upload reservation is no longer pending", status_code=409)
        declared_size = reservation.declared_bytes

        actual_size = self._blob_store.head_size(key)
        if actual_size is None:
            logger.warning("Completed upload %s not found in storage", key)
            await self._reservations.release(reservation_id)
            raise UploadValidationError("File not found in storage", status_code=404)

        deviation = abs(actual_size - declared_size) / declared_size
        if deviation > self._settings.upload_size_tolerance:
            logger.warning("Upload size mismatch for %s: declared=%d actual=%d", key, declared_size, actual_size)
            if actual_size > declared_size * self._settings.upload_size_violation_ratio:
                await self._reject(reservation_id, key)
                raise UploadValidationError("File size mismatch detected")

        check = await self._reservations.recheck_actual(owner, declared_size, actual_size)
        if not check.allowed:
            logger.info("Storage limit exceeded after upload %s: %s", key, check.reason)
            await self._reject(reservation_id, key)
            raise QuotaExceededError(check.reason or "Storage limit reached", check)

        if await self._reservations.confirm(reservation_id, actual_size) is None:
            raise UploadValidationError("Upload reservation is no longer pending", status_code=409)
        return actual_size

    # -- Delete --------------------------------------------------------------

    async def delete_upload(self, key: str) -> int:
        """Delete an object the caller owns (own avatar or own board's file).

        Returns the confirmed storage bytes given back.
        """
        if not key or has_traversal(key):
            raise UploadValidationError("Invalid key format")
        if not await self._may_delete(key):
            raise PermissionError("You do not have permission to delete this file")
        self._blob_store.delete(key)
        freed = await self._reservations.discard_object(key)
        logger.info("Deleted object %s for tenant=%s (%d bytes released)", key, self._tenant_id, freed)
        return freed

    async def _may_delete(self, key: str) -> bool:
        if key.startswith("users/"):
            return user_id_from_key(key) == self._tenant_id
        if key.startswith("boards/"):
            board_id = board_id_from_key(key)
            if board_id is None:
                return False
            async with self._session_factory() as session:
                board = await get_board_any_owner(session, board_id)
            return board is not None and board.owner_id == self._tenant_id
        return False

    # -- Helpers -------------------------------------------------------------

    async def _reject(self, reservation_id: str, key: str) -> None:
        """Release a rejected upload and delete its object.

        The object is only deleted by the request that released the
        reservation, so a losing concurrent completion cannot remove an
        object another request already confirmed.
        """
        if await self._reservations.release(reservation_id) is not None:
            self._delete_quietly(key)

    def _delete_quietly(self, key: str) -> None:
        try:
            self._blob_store.delete(key)
        except Exception:
            logger.error("Failed to delete rejected upload %s", key, exc_info=True)

    async def _release_quietly(self, reservation_id: str) -> None:
        try:
            await self._reservations.release(reservation_id)
        except Exception:
            logger.error("Failed to release reservation %s", reservation_id, exc_info=True)
