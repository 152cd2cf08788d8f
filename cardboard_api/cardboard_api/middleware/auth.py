"""Bearer-token authentication for tenant routes.

A valid ``Authorization: Bearer cb1....`` header puts the caller's identity
on ``request.state`` (``tenant_id``, ``sub``, ``email``); everything below
the middleware can assume it is there.

Some routes authenticate differently and pass through untouched: the
Stripe webhook (signature header) and the cron triggers (shared secret).
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from cardboard_api.security import TokenManager

logger = logging.getLogger(__name__)

_OPEN_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/api/v1/billing/webhooks",
        "/openapi.json",
        "/favicon.ico",
    }
)
_OPEN_PREFIXES: tuple[str, ...] = ("/api/v1/cron/", "/docs", "/redoc")


def is_open_path(path: str) -> bool:
    return path in _OPEN_PATHS or path.startswith(_OPEN_PREFIXES)


def _unauthorized(detail: str, status_code: int = 401) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Reject tenant routes without a valid bearer token.

    Missing or malformed credentials get 401; an expired token gets 403 so
    clients can tell "log in again" apart from "you sent garbage".
    """

    def __init__(self, app: Any, token_manager: TokenManager) -> None:
        super().__init__(app)
        self._tokens = token_manager

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or is_open_path(request.url.path):
            return await call_next(request)

        header = request.headers.get("authorization")
        if not header:
            return _unauthorized("Missing Authorization header")

        scheme, _, credentials = header.partition(" ")
        credentials = credentials.strip()
        if scheme.lower() != "bearer" or not credentials:
            return _unauthorized("Authorization header must use Bearer scheme")

        try:
            claims = self._tokens.validate_token(credentials)
        except PermissionError as exc:
            if "expired" in str(exc).lower():
                return _unauthorized("Token has expired", status_code=403)
            logger.info("Rejected bearer token on %s: %s", request.url.path, exc)
            return _unauthorized(f"Invalid token: {exc}")

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.email = claims.email
        return await call_next(request)
