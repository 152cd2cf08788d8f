"""Subscription tier limits.

Tier defaults (``None`` means unlimited)::

    free:      boards=10,  cards=250,  storage=250 MB
    standard:  boards=∞,   cards=∞,    storage=5 GB
    pro:       unlimited

Limits are immutable and looked up per request; a tier change from a
webhook takes effect on the next entitlement check.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Any

MB = 1024 * 1024
GB = 1024 * MB

# Accounts at or above this usage are flagged for manual review.
STORAGE_FLAG_THRESHOLD_BYTES = 100 * GB


class Tier(str, Enum):
    FREE = "free"
    STANDARD = "standard"
    PRO = "pro"


class ResourceKind(str, Enum):
    BOARDS = "boards"
    CARDS = "cards"
    STORAGE = "storage"


# ---------------------------------------------------------------------------
# Tier defaults
# ---------------------------------------------------------------------------

_TIER_LIMITS: dict[Tier, dict[ResourceKind, int | None]] = {
    Tier.FREE: {
        ResourceKind.BOARDS: 10,
        ResourceKind.CARDS: 250,
        ResourceKind.STORAGE: 250 * MB,
    },
    Tier.STANDARD: {
        ResourceKind.BOARDS: None,
        ResourceKind.CARDS: None,
        ResourceKind.STORAGE: 5 * GB,
    },
    Tier.PRO: {
        ResourceKind.BOARDS: None,
        ResourceKind.CARDS: None,
        ResourceKind.STORAGE: None,
    },
}

TIER_LIMITS = MappingProxyType({tier: MappingProxyType(limits) for tier, limits in _TIER_LIMITS.items()})


def resolve_tier(value: str | Tier | None) -> Tier:
    """Coerce a stored tier string to :class:`Tier`; unknown values fall back to free."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier((value or Tier.FREE.value).lower())
    except ValueError:
        return Tier.FREE


def limit_for(tier: str | Tier | None, kind: ResourceKind) -> int | None:
    return TIER_LIMITS[resolve_tier(tier)][kind]


def is_within_limit(usage: int, limit: int | None) -> bool:
    """``True`` if *usage* (already including any requested amount) fits *limit*."""
    return limit is None or usage <= limit


def format_bytes(value: int | None) -> str:
    """Human-readable byte count, e.g. ``"250.00 MB"``; ``None`` is ``"Unlimited"``."""
    if value is None:
        return "Unlimited"
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(value)
    unit = 0
    while size >= 1024 and unit < len(units) - 1:
        size /= 1024
        unit += 1
    return f"{size:.2f} {units[unit]}"


def limits_payload(tier: str | Tier | None) -> dict[str, Any]:
    """JSON-friendly limits for API responses (``"unlimited"`` for ``None``)."""
    limits = TIER_LIMITS[resolve_tier(tier)]
    return {
        "boards": limits[ResourceKind.BOARDS] if limits[ResourceKind.BOARDS] is not None else "unlimited",
        "cards": limits[ResourceKind.CARDS] if limits[ResourceKind.CARDS] is not None else "unlimited",
        "storage_bytes": (
            limits[ResourceKind.STORAGE] if limits[ResourceKind.STORAGE] is not None else "unlimited"
        ),
    }
