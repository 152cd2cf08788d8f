"""Access log and correlation ids.

The id comes from the caller's ``X-Correlation-ID`` header when present,
otherwise a fresh uuid4.  It lives in a context variable for the duration
of the request so records from the billing engine pick it up through
:class:`CorrelationIdFilter`, and it is echoed on the response.
"""

from __future__ import annotations

import contextvars
import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("cardboard.access")

CORRELATION_HEADER = "X-Correlation-ID"

_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")

_REDACTED_HEADERS = frozenset({"authorization", "cookie", "stripe-signature"})


def current_correlation_id() -> str:
    return _correlation_id.get()


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get()  # type: ignore[attr-defined]
        return True


def _access_record(request: Request, status_code: int, elapsed: float) -> dict[str, Any]:
    headers = {name: ("***" if name in _REDACTED_HEADERS else value) for name, value in request.headers.items()}
    return {
        "method": request.method,
        "path": request.url.path,
        "query": request.url.query or None,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
        "client": request.client.host if request.client else None,
        "tenant_id": getattr(request.state, "tenant_id", None),
        "correlation_id": _correlation_id.get(),
        "headers": headers,
    }


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured access-log line per request on ``cardboard.access``."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        reset_token = _correlation_id.set(correlation_id)
        request.state.correlation_id = correlation_id

        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            record = _access_record(request, status_code, time.monotonic() - started)
            logger.log(
                _level_for(status_code),
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={"request": record},
            )
            _correlation_id.reset(reset_token)
