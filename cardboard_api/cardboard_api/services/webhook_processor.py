"""Idempotent processing of Stripe billing events.

Processing contract per event:

1. If a ``stripe_webhook_events`` row exists for the event id, return
   without touching anything (redelivery).
2. Resolve the tenant from the Stripe customer id, falling back to the
   Stripe customer's email and backfilling the customer id on a match.
3. Apply the absolute field values from
   :mod:`cardboard_core.billing.subscription` to the tenant account.
4. Insert the processed marker in the *same* transaction as step 3.

A handler failure rolls back both the mutation and the marker, so Stripe's
retry starts again from step 1.  Two concurrent deliveries of one event
race on the unique ``event_id``; the loser's ``IntegrityError`` is reported
as a duplicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from cardboard_core.billing.exceptions import AccountNotLinkedError
from cardboard_core.billing.limits import Tier
from cardboard_core.billing.subscription import (
    DEFAULT_GRACE_PERIOD,
    HANDLED_EVENT_TYPES,
    StripeEventType,
    SubscriptionSnapshot,
    checkout_completed,
    get_field,
    payment_failed,
    payment_succeeded,
    ref_id,
    subscription_deleted,
    subscription_updated,
    tier_from_metadata,
)
from cardboard_core.state.repository import AccountRepository, WebhookEventRepository
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardboard_api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    """What happened to one delivered event."""

    event_id: str
    event_type: str
    status: str  # "processed" | "duplicate" | "ignored"
    tenant_id: str | None = None


class WebhookProcessor:
    """Drive the subscription state machine from Stripe events.

    Parameters
    ----------
    session_factory:
        Factory for the per-event transaction.
    gateway:
        Stripe access for customer, subscription and price lookups.
    grace_period:
        How long a past-due account keeps paid service.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
        *,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._grace_period = grace_period

    async def process(self, event: dict[str, Any]) -> WebhookOutcome:
        """Apply *event* at most once.

        Raises
        ------
        AccountNotLinkedError
            The event's customer matches no tenant.  Not retryable.
        """
        event_id = str(event["id"])
        event_type = str(event["type"])
        data = event.get("data") or {}
        data_object = data.get("object") or {}
        log_extra = {"event_id": event_id}

        async with self._session_factory() as session:
            events = WebhookEventRepository(session)
            if await events.exists(event_id):
                logger.info("Stripe event %s already processed", event_id, extra=log_extra)
                return WebhookOutcome(event_id, event_type, "duplicate")

            tenant_id: str | None = None
            note: str | None = None
            if event_type in HANDLED_EVENT_TYPES:
                accounts = AccountRepository(session)
                resolved = await self._dispatch(accounts, StripeEventType(event_type), data_object)
                if resolved is None:
                    note = "no subscription attached"
                else:
                    tenant_id, fields = resolved
                    await accounts.apply_fields(tenant_id, fields)
            else:
                note = "unhandled event type"
                logger.debug("Unhandled Stripe event type: %s", event_type, extra=log_extra)

            try:
                await events.record(event_id, event_type, data, note=note)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Stripe event %s recorded concurrently; skipping", event_id, extra=log_extra)
                return WebhookOutcome(event_id, event_type, "duplicate")

        status = "processed" if tenant_id is not None else "ignored"
        logger.info(
            "Stripe event %s (%s) %s for tenant=%s",
            event_id,
            event_type,
            status,
            tenant_id,
            extra=log_extra,
        )
        return WebhookOutcome(event_id, event_type, status, tenant_id)

    # -- Dispatch ------------------------------------------------------------

    async def _dispatch(
        self,
        accounts: AccountRepository,
        event_type: StripeEventType,
        obj: Any,
    ) -> tuple[str, dict[str, Any]] | None:
        customer_id = ref_id(get_field(obj, "customer"))

        if event_type is StripeEventType.CHECKOUT_COMPLETED:
            subscription_id = ref_id(get_field(obj, "subscription"))
            if not subscription_id:
                return None
            tenant_id = await self._resolve_tenant(accounts, customer_id)
            snapshot = SubscriptionSnapshot.from_stripe(self._gateway.retrieve_subscription(subscription_id))
            return tenant_id, checkout_completed(snapshot, self._resolve_tier(snapshot))

        if event_type in (StripeEventType.SUBSCRIPTION_CREATED, StripeEventType.SUBSCRIPTION_UPDATED):
            snapshot = SubscriptionSnapshot.from_stripe(obj)
            tenant_id = await self._resolve_tenant(accounts, snapshot.customer_id or customer_id)
            return tenant_id, subscription_updated(snapshot, self._resolve_tier(snapshot))

        tenant_id = await self._resolve_tenant(accounts, customer_id)
        if event_type is StripeEventType.SUBSCRIPTION_DELETED:
            return tenant_id, subscription_deleted()
        if event_type is StripeEventType.PAYMENT_FAILED:
            return tenant_id, payment_failed(datetime.now(UTC), self._grace_period)
        return tenant_id, payment_succeeded()

    async def _resolve_tenant(self, accounts: AccountRepository, customer_id: str | None) -> str:
        """Map a Stripe customer to a tenant, healing the link by email."""
        if not customer_id:
            raise AccountNotLinkedError(None)

        account = await accounts.get_by_stripe_customer(customer_id)
        if account is not None:
            return account.tenant_id

        customer = self._gateway.retrieve_customer(customer_id)
        if get_field(customer, "deleted", False):
            raise AccountNotLinkedError(customer_id)
        email = get_field(customer, "email")
        if not email:
            raise AccountNotLinkedError(customer_id)

        account = await accounts.get_by_email(email)
        if account is None:
            logger.warning("Stripe customer %s has no matching account (email lookup failed)", customer_id)
            raise AccountNotLinkedError(customer_id)

        await accounts.link_stripe_customer(account.tenant_id, customer_id)
        logger.info("Linked Stripe customer %s to tenant=%s by email", customer_id, account.tenant_id)
        return account.tenant_id

    def _resolve_tier(self, snapshot: SubscriptionSnapshot) -> Tier:
        """Tier from the price metadata, fetching the price when not embedded."""
        if snapshot.price_tier:
            return tier_from_metadata(snapshot.price_tier)
        if snapshot.price_id:
            price = self._gateway.retrieve_price(snapshot.price_id)
            return tier_from_metadata(get_field(get_field(price, "metadata"), "tier"))
        return Tier.FREE
