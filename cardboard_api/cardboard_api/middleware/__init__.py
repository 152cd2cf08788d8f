"""Middleware components for the Cardboard API."""

from __future__ import annotations

from cardboard_api.middleware.auth import AuthenticationMiddleware
from cardboard_api.middleware.json_formatter import JSONFormatter
from cardboard_api.middleware.logging import CorrelationIdFilter, RequestLoggingMiddleware
from cardboard_api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware, RouteLimit

__all__ = [
    "AuthenticationMiddleware",
    "CorrelationIdFilter",
    "JSONFormatter",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RequestLoggingMiddleware",
    "RouteLimit",
]
