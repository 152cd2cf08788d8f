"""Per-client request budgets over a sliding one-minute window.

A client is the authenticated tenant when there is one, otherwise the
peer address.  Each client gets a separate window per route rule, so
hammering ``POST /upload/presigned-url`` does not eat into the budget for
reading boards.  The routes that touch quota counters or Stripe have the
tightest budgets.

Windows live in process memory: every replica counts separately and a
restart forgets all of them.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections import deque
from typing import Any

from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)


class RouteLimit(BaseModel):
    method: str
    pattern: str
    requests_per_minute: int
    name: str

    def matches(self, method: str, path: str) -> bool:
        if method != self.method:
            return False
        return path == self.pattern or fnmatch.fnmatch(path, self.pattern)


def _rule(method: str, pattern: str, per_minute: int, name: str) -> RouteLimit:
    return RouteLimit(method=method, pattern=pattern, requests_per_minute=per_minute, name=name)


_QUOTA_ROUTES: list[RouteLimit] = [
    _rule("POST", "/api/v1/upload/presigned-url", 10, "upload-presigned-url"),
    _rule("POST", "/api/v1/upload/complete", 5, "upload-complete"),
    _rule("DELETE", "/api/v1/upload", 20, "upload-delete"),
    _rule("POST", "/api/v1/boards", 5, "board-create"),
    _rule("POST", "/api/v1/billing/checkout", 3, "billing-checkout"),
    _rule("POST", "/api/v1/billing/portal", 10, "billing-portal"),
    _rule("GET", "/api/v1/billing/subscription", 30, "billing-subscription"),
    _rule("GET", "/api/v1/billing/usage", 30, "billing-usage"),
]


class RateLimitConfig(BaseModel):
    """Budgets for :class:`RateLimitMiddleware`.

    ``route_limits`` is searched in order and the first match wins; any
    other route shares the ``default_requests_per_minute`` window.  Every
    budget is scaled by ``burst_multiplier``.  Paths under an
    ``exempt_prefixes`` entry are never counted.
    """

    enabled: bool = True
    default_requests_per_minute: int = 60
    burst_multiplier: float = 1.0
    route_limits: list[RouteLimit] = _QUOTA_ROUTES
    exempt_prefixes: tuple[str, ...] = ("/api/v1/health", "/api/v1/billing/webhooks", "/api/v1/cron/")

    def budget_for(self, method: str, path: str) -> tuple[str, int] | None:
        """``(window name, scaled budget)`` for a request, ``None`` if exempt."""
        if path.startswith(self.exempt_prefixes):
            return None
        name, per_minute = "default", self.default_requests_per_minute
        for rule in self.route_limits:
            if rule.matches(method, path):
                name, per_minute = rule.name, rule.requests_per_minute
                break
        return name, max(int(per_minute * self.burst_multiplier), 1)


class SlidingWindowCounter:
    """Timestamps of recent hits per key, trimmed to the window on each hit.

    Only admitted hits are recorded, so a client that keeps retrying while
    blocked is let back in as soon as its earlier hits age out.

    Keys whose newest hit has left the window are dropped, at most once
    per window length, on whichever hit comes along next.
    """

    def __init__(self, window_seconds: float = 60.0) -> None:
        self._window = window_seconds
        self._buckets: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()
        self._next_sweep = time.monotonic() + window_seconds

    async def hit(self, key: str, limit: int | None = None) -> tuple[bool, int, float]:
        """Count a hit unless the window already holds *limit* of them.

        Returns whether the hit was admitted, the hits now in the window and
        the seconds until the oldest of them expires.
        """
        now = time.monotonic()
        horizon = now - self._window
        async with self._lock:
            if now >= self._next_sweep:
                self._sweep(horizon)
                self._next_sweep = now + self._window

            hits = self._buckets.setdefault(key, deque())
            while hits and hits[0] <= horizon:
                hits.popleft()
            allowed = limit is None or len(hits) < limit
            if allowed:
                hits.append(now)
            resets_in = max(hits[0] - horizon, 0.0) if hits else self._window
            return allowed, len(hits), resets_in

    def _sweep(self, horizon: float) -> None:
        idle = [key for key, hits in self._buckets.items() if not hits or hits[-1] <= horizon]
        for key in idle:
            del self._buckets[key]
        if idle:
            logger.debug("Dropped %d idle rate-limit windows", len(idle))


def _client_id(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Answer 429 once a client's window for the route is full.

    Counted responses carry ``X-RateLimit-Limit``, ``-Remaining`` and
    ``-Reset``; a 429 also carries ``Retry-After``.
    """

    def __init__(self, app: Any, config: RateLimitConfig | None = None) -> None:
        super().__init__(app)
        self._config = config or RateLimitConfig()
        self._windows = SlidingWindowCounter()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        budget = self._config.budget_for(request.method, request.url.path) if self._config.enabled else None
        if budget is None:
            return await call_next(request)

        window, limit = budget
        client = _client_id(request)
        allowed, used, resets_in = await self._windows.hit(f"{client}:{window}", limit)
        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(max(limit - used, 0)),
            "X-RateLimit-Reset": str(int(resets_in) + 1),
        }

        if not allowed:
            logger.warning("Rate limit hit: %s on %s (%d/%d)", client, window, used, limit)
            retry_after = headers["X-RateLimit-Reset"]
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later.", "retry_after": int(retry_after)},
                headers={**headers, "Retry-After": retry_after},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
