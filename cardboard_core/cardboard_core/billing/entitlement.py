"""Entitlement checks: tier limits versus current usage.

``check_limit`` is a pure read followed by a comparison.  It is used both
as a pre-check before a mutation and as a re-check after the fact with
corrected numbers (e.g. the actual size of an uploaded object).

Usage comes from the running counters on the tenant account; storage
usage is ``confirmed + pending`` so that in-flight reservations count
against the limit.  :func:`calculate_live_usage` recomputes the same
numbers from the underlying records and is what reconciliation trusts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cardboard_core.billing.limits import (
    ResourceKind,
    Tier,
    format_bytes,
    is_within_limit,
    limit_for,
    limits_payload,
    resolve_tier,
)
from cardboard_core.state.repository import (
    AccountRepository,
    BoardRepository,
    CardRepository,
    StorageUploadRepository,
)
from cardboard_core.state.tables import TenantAccountTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Usage:
    """Point-in-time resource consumption for one tenant."""

    boards: int = 0
    cards: int = 0
    storage_bytes: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"boards": self.boards, "cards": self.cards, "storage_bytes": self.storage_bytes}

    @classmethod
    def from_account(cls, account: TenantAccountTable) -> Usage:
        return cls(
            boards=account.board_count or 0,
            cards=account.card_count or 0,
            storage_bytes=(account.confirmed_storage_bytes or 0) + (account.pending_storage_bytes or 0),
        )


@dataclass(frozen=True)
class EntitlementResult:
    """Allow/deny decision for a resource action."""

    allowed: bool
    reason: str | None
    current_usage: Usage
    limits: dict[str, Any]
    tier: Tier = Tier.FREE

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "current_usage": self.current_usage.to_dict(),
            "limits": self.limits,
            "tier": self.tier.value,
        }


def _denial_reason(kind: ResourceKind, used: int, limit: int) -> str:
    if kind is ResourceKind.BOARDS:
        return f"Board limit reached ({used}/{limit}). Upgrade to create more boards."
    if kind is ResourceKind.CARDS:
        return f"Card limit reached ({used}/{limit}). Upgrade to add more cards."
    return f"Storage limit reached ({format_bytes(used)} / {format_bytes(limit)}). Upgrade for more storage."


def evaluate(
    tier: str | Tier | None,
    usage: Usage,
    kind: ResourceKind,
    extra: int = 0,
) -> EntitlementResult:
    """Decide whether *usage* plus *extra* of *kind* fits the tier limit.

    Parameters
    ----------
    tier:
        Stored subscription tier; unknown values are treated as free.
    usage:
        Current consumption, excluding the requested amount.
    kind:
        Resource being requested.
    extra:
        Amount about to be added (``1`` for a new board/card, a byte
        count for storage).

    Returns
    -------
    EntitlementResult
        ``allowed`` is ``True`` when ``usage + extra <= limit`` or the
        limit is unlimited.
    """
    resolved = resolve_tier(tier)
    limit = limit_for(resolved, kind)
    current = {
        ResourceKind.BOARDS: usage.boards,
        ResourceKind.CARDS: usage.cards,
        ResourceKind.STORAGE: usage.storage_bytes,
    }[kind]
    projected = current + extra

    if is_within_limit(projected, limit):
        return EntitlementResult(True, None, usage, limits_payload(resolved), resolved)

    assert limit is not None
    reason = _denial_reason(kind, projected if kind is ResourceKind.STORAGE else current, limit)
    return EntitlementResult(False, reason, usage, limits_payload(resolved), resolved)


async def check_limit(
    session: AsyncSession,
    tenant_id: str,
    kind: ResourceKind,
    extra: int = 0,
) -> EntitlementResult:
    """Check *tenant_id*'s entitlement for *extra* more units of *kind*.

    A missing account is never entitled to anything.
    """
    account = await AccountRepository(session).get(tenant_id)
    if account is None:
        logger.warning("Entitlement check for unknown account tenant=%s", tenant_id)
        return EntitlementResult(False, "Account not found", Usage(), limits_payload(Tier.FREE), Tier.FREE)

    result = evaluate(account.subscription_tier, Usage.from_account(account), kind, extra)
    if not result.allowed:
        logger.info(
            "Entitlement denied: tenant=%s kind=%s extra=%d reason=%s",
            tenant_id,
            kind.value,
            extra,
            result.reason,
        )
    return result


async def get_usage(session: AsyncSession, tenant_id: str) -> tuple[Usage, Tier] | None:
    """Return ``(usage, tier)`` from the running counters, or ``None``."""
    account = await AccountRepository(session).get(tenant_id)
    if account is None:
        return None
    return Usage.from_account(account), resolve_tier(account.subscription_tier)


async def calculate_live_usage(session: AsyncSession, tenant_id: str) -> Usage:
    """Recompute usage from the board, card and upload records themselves.

    Storage is the verified size of every confirmed, undeleted upload;
    pending reservations are left out.
    """
    boards = await BoardRepository(session, tenant_id).count_active()
    cards = await CardRepository(session, tenant_id).count_active()
    storage = await StorageUploadRepository(session).sum_confirmed_bytes(tenant_id)
    return Usage(boards=boards, cards=cards, storage_bytes=storage)
