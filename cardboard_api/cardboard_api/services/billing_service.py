"""Tenant-facing billing operations: usage, subscription state, Stripe sessions."""

from __future__ import annotations

import logging
from typing import Any

from cardboard_core.billing.entitlement import get_usage
from cardboard_core.billing.exceptions import AccountNotFoundError, BillingError
from cardboard_core.billing.limits import limits_payload, resolve_tier
from cardboard_core.billing.subscription import in_grace_period
from cardboard_core.state.repository import AccountRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardboard_api.config import APISettings
from cardboard_api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class NoBillingCustomerError(BillingError):
    """The tenant has never been linked to a Stripe customer."""


class BillingService:
    """Billing operations for a single tenant.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions.
    gateway:
        Stripe access.
    settings:
        API settings (price ids, app URL).
    tenant_id:
        The tenant performing billing operations.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
        settings: APISettings,
        *,
        tenant_id: str,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._settings = settings
        self._tenant_id = tenant_id

    async def get_usage(self) -> dict[str, Any]:
        """Return ``{usage, limits, tier}`` from the running counters."""
        async with self._session_factory() as session:
            found = await get_usage(session, self._tenant_id)
        if found is None:
            raise AccountNotFoundError(self._tenant_id)
        usage, tier = found
        return {"usage": usage.to_dict(), "limits": limits_payload(tier), "tier": tier.value}

    async def get_subscription(self) -> dict[str, Any]:
        """Return the locally mirrored subscription state."""
        async with self._session_factory() as session:
            account = await AccountRepository(session).get(self._tenant_id)
        if account is None:
            raise AccountNotFoundError(self._tenant_id)
        return {
            "tier": resolve_tier(account.subscription_tier).value,
            "status": account.subscription_status,
            "current_period_end": account.current_period_end,
            "cancel_at_period_end": account.cancel_at_period_end,
            "grace_period_end": account.grace_period_end,
            "in_grace_period": in_grace_period(account.grace_period_end),
        }

    async def _get_or_create_customer(self, email: str | None) -> str:
        async with self._session_factory() as session:
            accounts = AccountRepository(session)
            account = await accounts.get(self._tenant_id)
            if account is None:
                raise AccountNotFoundError(self._tenant_id)
            if account.stripe_customer_id:
                return account.stripe_customer_id

            customer_id = self._gateway.create_customer(self._tenant_id, email or account.email)
            await accounts.link_stripe_customer(self._tenant_id, customer_id)
            await session.commit()
        return customer_id

    async def create_checkout_session(self, price_id: str, email: str | None = None) -> str:
        """Start a subscription checkout for one of the configured prices.

        Raises
        ------
        ValueError
            If *price_id* is not the standard or pro price.
        """
        if not price_id or price_id not in self._settings.allowed_price_ids:
            raise ValueError("Invalid or no price id provided")

        customer_id = await self._get_or_create_customer(email)
        app_url = self._settings.app_url.rstrip("/")
        url = self._gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=f"{app_url}/dashboard?checkout=success",
            cancel_url=f"{app_url}/pricing?checkout=canceled",
            tenant_id=self._tenant_id,
        )
        logger.info("Checkout session created for tenant=%s price=%s", self._tenant_id, price_id)
        return url

    async def create_portal_session(self) -> str:
        """Open the Stripe customer portal for an existing customer."""
        async with self._session_factory() as session:
            account = await AccountRepository(session).get(self._tenant_id)
        if account is None or not account.stripe_customer_id:
            raise NoBillingCustomerError("No subscription found")
        return self._gateway.create_portal_session(
            account.stripe_customer_id,
            f"{self._settings.app_url.rstrip('/')}/dashboard/settings/billing",
        )
