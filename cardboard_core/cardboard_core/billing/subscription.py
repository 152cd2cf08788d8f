"""Subscription state machine driven by Stripe events.

Each handler returns the absolute ``tenant_accounts`` field values an event
implies; none of them return deltas, so applying the same event twice
yields the same account state.

Transitions::

    free --checkout completed--> active (standard|pro)
    active --payment failed--> past_due (grace period running)
    past_due --payment succeeded--> active
    active|past_due --subscription deleted--> free (canceled)

Field effects:

==========================  ==================  ================  ================
Event                       Tier                Status            grace_period_end
==========================  ==================  ================  ================
checkout.session.completed  price metadata      provider status   cleared
customer.subscription.*     price metadata      provider status   unchanged
  (created / updated)
customer.subscription       free                canceled          cleared
  .deleted
invoice.payment_failed      unchanged           past_due          now + grace
invoice.payment_succeeded   unchanged           active            cleared
==========================  ==================  ================  ================
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from cardboard_core.billing.limits import Tier, resolve_tier

DEFAULT_GRACE_PERIOD = timedelta(days=7)


class StripeEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


HANDLED_EVENT_TYPES = frozenset(e.value for e in StripeEventType)


def get_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read *key* from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, key, default)


def ref_id(value: Any) -> str | None:
    """Return the id of an expandable Stripe reference (string or object)."""
    if value is None or isinstance(value, str):
        return value
    return get_field(value, "id")


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The subset of a Stripe subscription the state machine needs."""

    subscription_id: str | None
    customer_id: str | None
    status: str | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    price_id: str | None
    price_tier: str | None

    @classmethod
    def from_stripe(cls, subscription: Any) -> SubscriptionSnapshot:
        items = get_field(get_field(subscription, "items"), "data") or []
        first_item = items[0] if items else None
        price = get_field(first_item, "price")
        metadata = get_field(price, "metadata") or {}

        # Newer API versions carry the billing period on the item.
        period_end = get_field(subscription, "current_period_end")
        if period_end is None:
            period_end = get_field(first_item, "current_period_end")

        return cls(
            subscription_id=get_field(subscription, "id"),
            customer_id=ref_id(get_field(subscription, "customer")),
            status=get_field(subscription, "status"),
            current_period_end=_timestamp(period_end),
            cancel_at_period_end=bool(get_field(subscription, "cancel_at_period_end", False)),
            price_id=ref_id(price),
            price_tier=get_field(metadata, "tier"),
        )


def tier_from_metadata(value: str | None) -> Tier:
    """Tier named in price metadata; missing or unknown means free."""
    return resolve_tier(value)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def checkout_completed(snapshot: SubscriptionSnapshot, tier: Tier) -> dict[str, Any]:
    return {
        "subscription_tier": tier.value,
        "subscription_status": snapshot.status,
        "stripe_subscription_id": snapshot.subscription_id,
        "current_period_end": snapshot.current_period_end,
        "cancel_at_period_end": False,
        "grace_period_end": None,
    }


def subscription_updated(snapshot: SubscriptionSnapshot, tier: Tier) -> dict[str, Any]:
    return {
        "subscription_tier": tier.value,
        "subscription_status": snapshot.status,
        "stripe_subscription_id": snapshot.subscription_id,
        "current_period_end": snapshot.current_period_end,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
    }


def subscription_deleted() -> dict[str, Any]:
    return {
        "subscription_tier": Tier.FREE.value,
        "subscription_status": "canceled",
        "stripe_subscription_id": None,
        "cancel_at_period_end": False,
        "grace_period_end": None,
    }


def payment_failed(now: datetime | None = None, grace: timedelta = DEFAULT_GRACE_PERIOD) -> dict[str, Any]:
    now = now or datetime.now(UTC)
    return {
        "subscription_status": "past_due",
        "grace_period_end": now + grace,
    }


def payment_succeeded() -> dict[str, Any]:
    return {
        "subscription_status": "active",
        "grace_period_end": None,
    }


def in_grace_period(grace_period_end: datetime | None, now: datetime | None = None) -> bool:
    """``True`` while a past-due account still has paid-tier service."""
    if grace_period_end is None:
        return False
    return (now or datetime.now(UTC)) < grace_period_end
