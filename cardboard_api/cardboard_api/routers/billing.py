"""Billing endpoints: usage, subscription state, Stripe sessions and webhooks."""

from __future__ import annotations

import logging
from datetime import timedelta

from cardboard_core.billing.exceptions import AccountNotLinkedError
from fastapi import APIRouter, HTTPException, Request

from cardboard_api.dependencies import (
    AccountDep,
    EmailDep,
    SessionFactoryDep,
    SettingsDep,
    StripeGatewayDep,
)
from cardboard_api.schemas import (
    CheckoutRequest,
    SessionUrlResponse,
    SubscriptionResponse,
    UsageResponse,
    WebhookAckResponse,
)
from cardboard_api.services.billing_service import BillingService, NoBillingCustomerError
from cardboard_api.services.stripe_gateway import WebhookSignatureError
from cardboard_api.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    account: AccountDep,
    factory: SessionFactoryDep,
    gateway: StripeGatewayDep,
    settings: SettingsDep,
) -> UsageResponse:
    """Return the caller's running counters next to their tier limits."""
    service = BillingService(factory, gateway, settings, tenant_id=account.tenant_id)
    return UsageResponse(**await service.get_usage())


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    account: AccountDep,
    factory: SessionFactoryDep,
    gateway: StripeGatewayDep,
    settings: SettingsDep,
) -> SubscriptionResponse:
    service = BillingService(factory, gateway, settings, tenant_id=account.tenant_id)
    return SubscriptionResponse(**await service.get_subscription())


@router.post("/checkout", response_model=SessionUrlResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    account: AccountDep,
    email: EmailDep,
    factory: SessionFactoryDep,
    gateway: StripeGatewayDep,
    settings: SettingsDep,
) -> SessionUrlResponse:
    """Create a Stripe Checkout session for the standard or pro plan.

    The Stripe customer is created on first checkout and linked to the
    tenant so that later webhooks resolve directly.
    """
    service = BillingService(factory, gateway, settings, tenant_id=account.tenant_id)
    try:
        url = await service.create_checkout_session(body.price_id, email)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid or no price id provided")
    return SessionUrlResponse(url=url)


@router.post("/portal", response_model=SessionUrlResponse)
async def create_portal_session(
    account: AccountDep,
    factory: SessionFactoryDep,
    gateway: StripeGatewayDep,
    settings: SettingsDep,
) -> SessionUrlResponse:
    """Open the Stripe customer portal for subscription management."""
    service = BillingService(factory, gateway, settings, tenant_id=account.tenant_id)
    try:
        url = await service.create_portal_session()
    except NoBillingCustomerError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return SessionUrlResponse(url=url)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@router.post("/webhooks", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    factory: SessionFactoryDep,
    gateway: StripeGatewayDep,
    settings: SettingsDep,
) -> WebhookAckResponse:
    """Handle incoming Stripe webhook events.

    This endpoint bypasses bearer authentication; the ``Stripe-Signature``
    header is verified instead.  A 5xx response makes Stripe redeliver, so
    only transient failures return one.  Redeliveries of an event that was
    already applied are acknowledged without side effects.
    """
    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = gateway.verify_event(body, sig_header)
    except WebhookSignatureError as exc:
        logger.warning("Stripe webhook rejected: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed")

    processor = WebhookProcessor(
        factory,
        gateway,
        grace_period=timedelta(days=settings.grace_period_days),
    )
    try:
        await processor.process(event)
    except AccountNotLinkedError as exc:
        logger.warning("Stripe event %s for unknown customer: %s", event.get("id"), exc)
        raise HTTPException(status_code=400, detail="No account linked to this customer")
    except Exception:
        logger.exception("Stripe event %s failed; Stripe will retry", event.get("id"))
        raise HTTPException(status_code=500, detail="Webhook handler failed")

    return WebhookAckResponse(received=True)
