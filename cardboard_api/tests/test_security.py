"""Tests for bearer tokens and the authentication middleware."""

from __future__ import annotations

import time
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from cardboard_api.middleware.auth import AuthenticationMiddleware
from cardboard_api.security import TOKEN_PREFIX, TokenManager

_SECRET = "unit-test-secret"


@pytest.fixture()
def manager() -> TokenManager:
    return TokenManager(_SECRET)


class TestTokenManager:
    def test_round_trip_claims(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-9", email="u9@example.com")
        assert token.startswith(f"{TOKEN_PREFIX}.")

        claims = manager.validate_token(token)
        assert claims.tenant_id == "user-9"
        assert claims.email == "u9@example.com"
        assert claims.exp > claims.iat

    def test_empty_secret_rejected(self) -> None:
        with pytest.raises(ValueError):
            TokenManager("")

    def test_wrong_secret(self, manager: TokenManager) -> None:
        token = TokenManager("another-secret").generate_token("user-1")
        with pytest.raises(PermissionError, match="Signature mismatch"):
            manager.validate_token(token)

    def test_tampered_payload(self, manager: TokenManager) -> None:
        prefix, _payload, sig = manager.generate_token("user-1").split(".")
        forged = manager.generate_token("admin").split(".")[1]
        with pytest.raises(PermissionError):
            manager.validate_token(f"{prefix}.{forged}.{sig}")

    @pytest.mark.parametrize("token", ["", "abc", "cb1.only-two", "jwt.a.b", "cb1.!!!.sig"])
    def test_malformed(self, manager: TokenManager, token: str) -> None:
        with pytest.raises(PermissionError):
            manager.validate_token(token)

    def test_expired(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1", ttl_seconds=10)
        with patch("cardboard_api.security.time.time", return_value=time.time() + 3600):
            with pytest.raises(PermissionError, match="expired"):
                manager.validate_token(token)

    def test_leeway(self) -> None:
        manager = TokenManager(_SECRET, leeway_seconds=60)
        token = manager.generate_token("user-1", ttl_seconds=1)
        with patch("cardboard_api.security.time.time", return_value=time.time() + 30):
            assert manager.validate_token(token).sub == "user-1"


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _make_app(manager: TokenManager) -> Starlette:
    async def _whoami(request: Request) -> JSONResponse:
        return JSONResponse(
            {"tenant_id": getattr(request.state, "tenant_id", None), "email": getattr(request.state, "email", None)}
        )

    app = Starlette(
        routes=[
            Route("/api/v1/boards", _whoami),
            Route("/api/v1/health", _whoami),
            Route("/api/v1/billing/webhooks", _whoami, methods=["POST"]),
            Route("/api/v1/cron/reconcile-counters", _whoami, methods=["POST"]),
        ]
    )
    app.add_middleware(AuthenticationMiddleware, token_manager=manager)
    return app


class TestAuthenticationMiddleware:
    @pytest.mark.asyncio
    async def test_valid_token_populates_state(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1", email="one@example.com")
        async with AsyncClient(transport=ASGITransport(app=_make_app(manager)), base_url="http://test") as client:
            resp = await client.get("/api/v1/boards", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json() == {"tenant_id": "user-1", "email": "one@example.com"}

    @pytest.mark.asyncio
    async def test_missing_header(self, manager: TokenManager) -> None:
        async with AsyncClient(transport=ASGITransport(app=_make_app(manager)), base_url="http://test") as client:
            resp = await client.get("/api/v1/boards")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing Authorization header"

    @pytest.mark.asyncio
    async def test_wrong_scheme(self, manager: TokenManager) -> None:
        async with AsyncClient(transport=ASGITransport(app=_make_app(manager)), base_url="http://test") as client:
            resp = await client.get("/api/v1/boards", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, manager: TokenManager) -> None:
        async with AsyncClient(transport=ASGITransport(app=_make_app(manager)), base_url="http://test") as client:
            resp = await client.get("/api/v1/boards", headers={"Authorization": "Bearer cb1.garbage.sig"})
        assert resp.status_code == 401
        assert resp.json()["detail"].startswith("Invalid token")

    @pytest.mark.asyncio
    async def test_expired_token_is_403(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1", ttl_seconds=-3600)
        async with AsyncClient(transport=ASGITransport(app=_make_app(manager)), base_url="http://test") as client:
            resp = await client.get("/api/v1/boards", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Token has expired"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("GET", "/api/v1/health"),
            ("POST", "/api/v1/billing/webhooks"),
            ("POST", "/api/v1/cron/reconcile-counters"),
        ],
    )
    async def test_public_paths(self, manager: TokenManager, method: str, path: str) -> None:
        async with AsyncClient(transport=ASGITransport(app=_make_app(manager)), base_url="http://test") as client:
            resp = await client.request(method, path)
        assert resp.status_code == 200
        assert resp.json()["tenant_id"] is None
