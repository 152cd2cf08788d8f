"""Unit tests for UploadService helpers and failure paths."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from cardboard_core.billing.reservation import StorageReservationService
from cardboard_core.state.repository import BoardRepository

from cardboard_api.services.upload_service import (
    UploadService,
    UploadType,
    UploadValidationError,
    board_id_from_key,
    has_traversal,
    user_id_from_key,
    validate_key,
)


class TestKeyHelpers:
    @pytest.mark.parametrize(
        ("key", "upload_type", "expected"),
        [
            ("boards/b1/images/a.png", UploadType.IMAGE, True),
            ("boards/b1/files/a.pdf", UploadType.FILE, True),
            ("users/u1/avatar/me.png", UploadType.AVATAR, True),
            ("boards/b1/files/a.pdf", UploadType.IMAGE, False),
            ("users/u1/images/a.png", UploadType.IMAGE, False),
            ("boards/b1/images/../../x", UploadType.IMAGE, False),
        ],
    )
    def test_validate_key(self, key: str, upload_type: UploadType, expected: bool) -> None:
        assert validate_key(key, upload_type) is expected

    def test_traversal(self) -> None:
        assert has_traversal("a/../b")
        assert has_traversal("a\\b")
        assert not has_traversal("boards/b/images/a.png")

    def test_id_extraction(self) -> None:
        assert board_id_from_key("boards/b1/images/a.png") == "b1"
        assert board_id_from_key("users/u1/avatar/a.png") is None
        assert user_id_from_key("users/u1/avatar/a.png") == "u1"


class TestPresignFailure:
    @pytest.mark.asyncio
    async def test_signing_error_releases_reservation(
        self, session_factory, make_account, fetch_account, test_settings
    ) -> None:
        await make_account()
        async with session_factory() as session:
            board = await BoardRepository(session, "user-1").create()
            await session.commit()

        blob_store = MagicMock()
        blob_store.presign_put.side_effect = RuntimeError("signer down")
        service = UploadService(
            session_factory,
            StorageReservationService(session_factory),
            blob_store,
            test_settings,
            "user-1",
        )

        with pytest.raises(RuntimeError):
            await service.create_presigned_upload(
                f"boards/{board.id}/images/a.png", "image/png", UploadType.IMAGE, 1024
            )

        assert (await fetch_account()).pending_storage_bytes == 0


async def _service_with_board(session_factory, make_account, test_settings):
    await make_account()
    async with session_factory() as session:
        board = await BoardRepository(session, "user-1").create()
        await session.commit()
    blob_store = MagicMock()
    blob_store.presign_put.return_value = "https://r2.test/signed"
    blob_store.public_url.side_effect = lambda key: f"https://cdn.test/{key}"
    reservations = StorageReservationService(session_factory)
    service = UploadService(session_factory, reservations, blob_store, test_settings, "user-1")
    return service, reservations, blob_store, board.id


class TestSettledReservations:
    @pytest.mark.asyncio
    async def test_expired_reservation_deletes_late_object(
        self, session_factory, make_account, fetch_account, test_settings
    ) -> None:
        service, reservations, blob_store, board_id = await _service_with_board(
            session_factory, make_account, test_settings
        )
        key = f"boards/{board_id}/images/late.png"
        upload = await service.create_presigned_upload(key, "image/png", UploadType.IMAGE, 4096)
        assert await reservations.cleanup_stale(max_age_seconds=0) == 1
        blob_store.head_size.return_value = 4096

        with pytest.raises(UploadValidationError) as excinfo:
            await service.complete_upload(key, board_id, upload.reservation_id)

        assert excinfo.value.status_code == 409
        blob_store.delete.assert_called_once_with(key)
        account = await fetch_account()
        assert (account.pending_storage_bytes, account.confirmed_storage_bytes) == (0, 0)

    @pytest.mark.asyncio
    async def test_losing_completion_keeps_confirmed_object(
        self, session_factory, make_account, fetch_account, test_settings
    ) -> None:
        service, reservations, blob_store, board_id = await _service_with_board(
            session_factory, make_account, test_settings
        )
        key = f"boards/{board_id}/files/doc.pdf"
        upload = await service.create_presigned_upload(key, "application/pdf", UploadType.FILE, 1024)
        seen_pending = await reservations.lookup(upload.reservation_id)

        # A concurrent completion confirms first; this one still saw the row pending.
        await reservations.confirm(upload.reservation_id, 1024)
        reservations.lookup = AsyncMock(return_value=seen_pending)
        blob_store.head_size.return_value = 10 * 1024

        with pytest.raises(UploadValidationError):
            await service.complete_upload(key, board_id, upload.reservation_id)

        blob_store.delete.assert_not_called()
        account = await fetch_account()
        assert (account.pending_storage_bytes, account.confirmed_storage_bytes) == (0, 1024)
