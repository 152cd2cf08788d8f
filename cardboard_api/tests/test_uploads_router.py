"""Tests for the presigned upload flow.

Covers:
- Presign reserving declared bytes against the board owner
- Key validation (layout, traversal) and the maximum upload size
- Quota refusal at presign time
- Completion: missing object, size mismatch, over-limit actual size, success
- Each reservation settling once, with the size stored at presign time
- Storage charged at the verified object size, not the size a card claims
- Avatar uploads (unmetered, own directory only)
- Deleting uploads (ownership, storage given back)
"""

from __future__ import annotations

import pytest
from cardboard_core.billing.limits import MB


async def _board(client) -> str:
    resp = await client.post("/api/v1/boards", json={})
    assert resp.status_code == 201
    return resp.json()["id"]


def _presign_body(
    board_id: str,
    size: int,
    kind: str = "images",
    upload_type: str = "image",
    name: str = "photo.png",
) -> dict:
    return {
        "key": f"boards/{board_id}/{kind}/{name}",
        "content_type": "image/png",
        "upload_type": upload_type,
        "declared_size": size,
    }


# ---------------------------------------------------------------------------
# Presign
# ---------------------------------------------------------------------------


class TestPresign:
    @pytest.mark.asyncio
    async def test_presign_reserves_storage(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)

        resp = await client.post("/api/v1/upload/presigned-url", json=_presign_body(board_id, 10 * MB))

        assert resp.status_code == 200
        body = resp.json()
        assert body["upload_url"].startswith("https://r2.test/boards/")
        assert body["public_url"] == f"https://cdn.test/boards/{board_id}/images/photo.png"
        assert body["reservation_id"].startswith("res_")
        assert body["declared_size"] == 10 * MB
        assert body["expires_in"] == 3600
        assert (await fetch_account()).pending_storage_bytes == 10 * MB
        mock_blob_store.presign_put.assert_called_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "key",
        [
            "boards/b/../../etc/passwd",
            "other/b/images/x.png",
            "boards/b/files/x.png",
            "boards\\b\\images\\x.png",
        ],
    )
    async def test_invalid_keys(self, client, key: str) -> None:
        body = {"key": key, "content_type": "image/png", "upload_type": "image", "declared_size": 10}
        resp = await client.post("/api/v1/upload/presigned-url", json=body)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid key format or path traversal attempt"

    @pytest.mark.asyncio
    async def test_non_positive_size_rejected(self, client) -> None:
        board_id = await _board(client)
        resp = await client.post("/api/v1/upload/presigned-url", json=_presign_body(board_id, 0))
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_over_max_upload_size(self, client) -> None:
        board_id = await _board(client)
        resp = await client.post("/api/v1/upload/presigned-url", json=_presign_body(board_id, 101 * MB))
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_quota_refusal(self, client, make_account, fetch_account) -> None:
        await make_account(confirmed_storage_bytes=240 * MB)
        board_id = await _board(client)

        resp = await client.post("/api/v1/upload/presigned-url", json=_presign_body(board_id, 20 * MB))

        assert resp.status_code == 403
        body = resp.json()
        assert body["upgrade_required"] is True
        assert body["error"].startswith("Storage limit reached")
        assert (await fetch_account()).pending_storage_bytes == 0

    @pytest.mark.asyncio
    async def test_unknown_board(self, client) -> None:
        resp = await client.post("/api/v1/upload/presigned-url", json=_presign_body("missing", 10))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_other_tenants_board(self, client, auth_headers) -> None:
        board_id = await _board(client)
        resp = await client.post(
            "/api/v1/upload/presigned-url",
            json=_presign_body(board_id, 10),
            headers=auth_headers("intruder"),
        )
        assert resp.status_code == 403


class TestAvatar:
    @pytest.mark.asyncio
    async def test_avatar_is_unmetered(self, client, fetch_account) -> None:
        body = {
            "key": "users/user-1/avatar/me.png",
            "content_type": "image/png",
            "upload_type": "avatar",
            "declared_size": 2 * MB,
        }
        resp = await client.post("/api/v1/upload/presigned-url", json=body)
        assert resp.status_code == 200
        assert resp.json()["reservation_id"] is None
        assert (await fetch_account()).pending_storage_bytes == 0

    @pytest.mark.asyncio
    async def test_avatar_for_someone_else(self, client) -> None:
        body = {
            "key": "users/user-2/avatar/me.png",
            "content_type": "image/png",
            "upload_type": "avatar",
            "declared_size": 10,
        }
        resp = await client.post("/api/v1/upload/presigned-url", json=body)
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Complete
# ---------------------------------------------------------------------------


async def _reserve(client, board_id: str, size: int, name: str = "photo.png") -> dict:
    resp = await client.post("/api/v1/upload/presigned-url", json=_presign_body(board_id, size, name=name))
    assert resp.status_code == 200
    return resp.json()


def _complete_body(board_id: str, reservation_id: str, name: str = "photo.png") -> dict:
    return {
        "key": f"boards/{board_id}/images/{name}",
        "board_id": board_id,
        "reservation_id": reservation_id,
    }


class TestComplete:
    @pytest.mark.asyncio
    async def test_success_confirms_reservation(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        presigned = await _reserve(client, board_id, 10 * MB)
        mock_blob_store.head_size.return_value = 10 * MB + 1000

        resp = await client.post(
            "/api/v1/upload/complete",
            json=_complete_body(board_id, presigned["reservation_id"]),
        )

        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.json()["actual_size"] == 10 * MB + 1000
        account = await fetch_account()
        assert account.pending_storage_bytes == 0
        assert account.confirmed_storage_bytes == 10 * MB + 1000

    @pytest.mark.asyncio
    async def test_missing_object_releases(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        presigned = await _reserve(client, board_id, 10 * MB)
        mock_blob_store.head_size.return_value = None

        resp = await client.post("/api/v1/upload/complete", json=_complete_body(board_id, presigned["reservation_id"]))

        assert resp.status_code == 404
        assert resp.json() == {"success": False, "reason": "File not found in storage"}
        account = await fetch_account()
        assert (account.pending_storage_bytes, account.confirmed_storage_bytes) == (0, 0)

    @pytest.mark.asyncio
    async def test_size_violation_deletes_object(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        presigned = await _reserve(client, board_id, 1 * MB)
        mock_blob_store.head_size.return_value = 2 * MB

        resp = await client.post("/api/v1/upload/complete", json=_complete_body(board_id, presigned["reservation_id"]))

        assert resp.status_code == 400
        assert resp.json()["reason"] == "File size mismatch detected"
        mock_blob_store.delete.assert_called_once_with(f"boards/{board_id}/images/photo.png")
        account = await fetch_account()
        assert (account.pending_storage_bytes, account.confirmed_storage_bytes) == (0, 0)

    @pytest.mark.asyncio
    async def test_moderate_mismatch_is_tolerated(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        presigned = await _reserve(client, board_id, 10 * MB)
        # 20 % larger: beyond the tolerance but under the violation ratio.
        mock_blob_store.head_size.return_value = 12 * MB

        resp = await client.post("/api/v1/upload/complete", json=_complete_body(board_id, presigned["reservation_id"]))

        assert resp.status_code == 200
        mock_blob_store.delete.assert_not_called()
        assert (await fetch_account()).confirmed_storage_bytes == 12 * MB

    @pytest.mark.asyncio
    async def test_actual_size_over_limit(self, client, make_account, fetch_account, mock_blob_store) -> None:
        await make_account(confirmed_storage_bytes=200 * MB)
        board_id = await _board(client)
        presigned = await _reserve(client, board_id, 40 * MB)
        mock_blob_store.head_size.return_value = 55 * MB

        resp = await client.post("/api/v1/upload/complete", json=_complete_body(board_id, presigned["reservation_id"]))

        assert resp.status_code == 403
        body = resp.json()
        assert body["success"] is False
        assert body["upgrade_required"] is True
        assert body["reason"].startswith("Storage limit reached")
        mock_blob_store.delete.assert_called_once()
        account = await fetch_account()
        assert (account.pending_storage_bytes, account.confirmed_storage_bytes) == (0, 200 * MB)

    @pytest.mark.asyncio
    async def test_key_must_match_board(self, client) -> None:
        board_id = await _board(client)
        body = _complete_body(board_id, "res_1_abc")
        body["board_id"] = "another-board"
        resp = await client.post("/api/v1/upload/complete", json=body)
        assert resp.status_code == 400
        assert resp.json()["reason"] == "Key does not belong to this board"

    @pytest.mark.asyncio
    async def test_reservation_id_required(self, client) -> None:
        board_id = await _board(client)
        body = _complete_body(board_id, "res_1_abc")
        del body["reservation_id"]
        resp = await client.post("/api/v1/upload/complete", json=body)
        assert resp.status_code == 422


class TestCompleteSettlesOnce:
    @pytest.mark.asyncio
    async def test_replayed_completion_keeps_other_reservations(
        self, client, fetch_account, mock_blob_store
    ) -> None:
        board_id = await _board(client)
        first = await _reserve(client, board_id, 100 * MB, name="a.png")
        await _reserve(client, board_id, 100 * MB, name="b.png")
        mock_blob_store.head_size.return_value = 100 * MB
        body = _complete_body(board_id, first["reservation_id"], name="a.png")

        assert (await client.post("/api/v1/upload/complete", json=body)).status_code == 200
        replay = await client.post("/api/v1/upload/complete", json=body)

        assert replay.status_code == 409
        assert replay.json() == {"success": False, "reason": "Upload reservation is no longer pending"}
        account = await fetch_account()
        # b.png is still in flight and a.png is charged exactly once.
        assert account.pending_storage_bytes == 100 * MB
        assert account.confirmed_storage_bytes == 100 * MB

    @pytest.mark.asyncio
    async def test_unknown_reservation_leaves_pending(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        await _reserve(client, board_id, 30 * MB)
        mock_blob_store.head_size.return_value = 30 * MB

        resp = await client.post("/api/v1/upload/complete", json=_complete_body(board_id, "res_0_forged0000"))

        assert resp.status_code == 404
        assert resp.json()["reason"] == "Upload reservation not found"
        account = await fetch_account()
        assert (account.pending_storage_bytes, account.confirmed_storage_bytes) == (30 * MB, 0)
        mock_blob_store.head_size.assert_not_called()

    @pytest.mark.asyncio
    async def test_reservation_for_another_key(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        small = await _reserve(client, board_id, 1 * MB, name="small.png")
        mock_blob_store.head_size.return_value = 1 * MB

        resp = await client.post(
            "/api/v1/upload/complete",
            json=_complete_body(board_id, small["reservation_id"], name="large.png"),
        )

        assert resp.status_code == 404
        assert (await fetch_account()).pending_storage_bytes == 1 * MB

    @pytest.mark.asyncio
    async def test_reservation_after_release(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        presigned = await _reserve(client, board_id, 10 * MB)
        mock_blob_store.head_size.return_value = None
        body = _complete_body(board_id, presigned["reservation_id"])
        assert (await client.post("/api/v1/upload/complete", json=body)).status_code == 404

        mock_blob_store.head_size.return_value = 10 * MB
        resp = await client.post("/api/v1/upload/complete", json=body)

        assert resp.status_code == 409
        account = await fetch_account()
        assert (account.pending_storage_bytes, account.confirmed_storage_bytes) == (0, 0)


class TestStorageChargedAtVerifiedSize:
    @pytest.mark.asyncio
    async def test_card_cannot_understate_upload(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        presigned = await _reserve(client, board_id, 90 * MB)
        mock_blob_store.head_size.return_value = 90 * MB
        done = await client.post("/api/v1/upload/complete", json=_complete_body(board_id, presigned["reservation_id"]))
        assert done.status_code == 200

        card = {
            "kind": "image",
            "image_url": presigned["public_url"],
            "image_key": presigned["key"],
            "image_size": 1,
        }
        resp = await client.post(f"/api/v1/boards/{board_id}/cards", json={"card": card})

        assert resp.status_code == 201
        assert resp.json()["storage_bytes"] == 90 * MB
        assert (await fetch_account()).confirmed_storage_bytes == 90 * MB

    @pytest.mark.asyncio
    async def test_uploads_without_cards_count_toward_limit(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        mock_blob_store.head_size.return_value = 90 * MB
        for name in ("one.png", "two.png"):
            presigned = await _reserve(client, board_id, 90 * MB, name=name)
            resp = await client.post(
                "/api/v1/upload/complete",
                json=_complete_body(board_id, presigned["reservation_id"], name=name),
            )
            assert resp.status_code == 200

        third = await client.post(
            "/api/v1/upload/presigned-url", json=_presign_body(board_id, 90 * MB, name="three.png")
        )

        assert third.status_code == 403
        assert (await fetch_account()).confirmed_storage_bytes == 180 * MB

    @pytest.mark.asyncio
    async def test_card_for_uncompleted_upload_rejected(self, client, fetch_account) -> None:
        board_id = await _board(client)
        presigned = await _reserve(client, board_id, 5 * MB)
        card = {"kind": "image", "image_url": presigned["public_url"], "image_key": presigned["key"], "image_size": 1}

        resp = await client.post(f"/api/v1/boards/{board_id}/cards", json={"card": card})

        assert resp.status_code == 400
        assert (await fetch_account()).card_count == 0

    @pytest.mark.asyncio
    async def test_overwrite_charges_latest_object_only(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        for size in (40 * MB, 10 * MB):
            presigned = await _reserve(client, board_id, size)
            mock_blob_store.head_size.return_value = size
            resp = await client.post(
                "/api/v1/upload/complete", json=_complete_body(board_id, presigned["reservation_id"])
            )
            assert resp.status_code == 200

        assert (await fetch_account()).confirmed_storage_bytes == 10 * MB


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDeleteUpload:
    @pytest.mark.asyncio
    async def test_owner_can_delete(self, client, mock_blob_store) -> None:
        board_id = await _board(client)
        key = f"boards/{board_id}/files/doc.pdf"

        resp = await client.request("DELETE", "/api/v1/upload", json={"key": key})

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "key": key, "storage_bytes_released": 0}
        mock_blob_store.delete.assert_called_once_with(key)

    @pytest.mark.asyncio
    async def test_delete_gives_back_confirmed_bytes(self, client, fetch_account, mock_blob_store) -> None:
        board_id = await _board(client)
        presigned = await _reserve(client, board_id, 8 * MB)
        mock_blob_store.head_size.return_value = 8 * MB
        await client.post("/api/v1/upload/complete", json=_complete_body(board_id, presigned["reservation_id"]))
        assert (await fetch_account()).confirmed_storage_bytes == 8 * MB

        resp = await client.request("DELETE", "/api/v1/upload", json={"key": presigned["key"]})
        again = await client.request("DELETE", "/api/v1/upload", json={"key": presigned["key"]})

        assert resp.json()["storage_bytes_released"] == 8 * MB
        assert again.json()["storage_bytes_released"] == 0
        assert (await fetch_account()).confirmed_storage_bytes == 0

    @pytest.mark.asyncio
    async def test_own_avatar(self, client, mock_blob_store) -> None:
        resp = await client.request("DELETE", "/api/v1/upload", json={"key": "users/user-1/avatar/a.png"})
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_non_owner_forbidden(self, client, auth_headers, mock_blob_store) -> None:
        board_id = await _board(client)
        resp = await client.request(
            "DELETE",
            "/api/v1/upload",
            json={"key": f"boards/{board_id}/files/doc.pdf"},
            headers=auth_headers("intruder"),
        )
        assert resp.status_code == 403
        mock_blob_store.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_traversal_rejected(self, client) -> None:
        resp = await client.request("DELETE", "/api/v1/upload", json={"key": "users/user-1/../user-2/a.png"})
        assert resp.status_code == 400
