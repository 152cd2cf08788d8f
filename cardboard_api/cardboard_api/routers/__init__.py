"""API router modules for the Cardboard control plane."""

from __future__ import annotations

from cardboard_api.routers import billing, boards, cron, health, uploads

__all__ = [
    "billing",
    "boards",
    "cron",
    "health",
    "uploads",
]
