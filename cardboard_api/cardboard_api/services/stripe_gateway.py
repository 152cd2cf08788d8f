"""Thin wrapper over the Stripe SDK.

Every Stripe call the API makes goes through :class:`StripeGateway` so that
routers and the webhook processor can be tested with a mock gateway.  The
SDK is imported lazily and configured per call with the secret key from
settings.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import SecretStr

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    """The webhook payload failed signature verification or could not be parsed."""


class StripeGateway:
    """Customer, subscription, price and session operations against Stripe.

    Parameters
    ----------
    secret_key:
        Stripe API secret key.
    webhook_secret:
        Signing secret of the webhook endpoint.
    tolerance_seconds:
        Maximum age of a signed webhook timestamp.
    """

    def __init__(
        self,
        secret_key: SecretStr | str,
        webhook_secret: SecretStr | str,
        tolerance_seconds: int = 300,
    ) -> None:
        self._secret_key = secret_key.get_secret_value() if isinstance(secret_key, SecretStr) else secret_key
        self._webhook_secret = (
            webhook_secret.get_secret_value() if isinstance(webhook_secret, SecretStr) else webhook_secret
        )
        self._tolerance = tolerance_seconds

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._secret_key
        return stripe

    # -- Webhooks ------------------------------------------------------------

    def verify_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and parse the event.

        Returns
        -------
        dict
            The decoded event body.

        Raises
        ------
        WebhookSignatureError
            Missing header or secret, bad signature, stale timestamp, or a
            body that is not a JSON object.
        """
        if not sig_header:
            raise WebhookSignatureError("Missing Stripe signature")
        if not self._webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")

        stripe = self._get_stripe()
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookSignatureError("Invalid payload encoding") from exc

        try:
            stripe.WebhookSignature.verify_header(text, sig_header, self._webhook_secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(f"Signature verification failed: {exc}") from exc

        try:
            event = json.loads(text)
        except ValueError as exc:
            raise WebhookSignatureError("Invalid payload") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookSignatureError("Invalid payload")
        return event

    # -- Lookups -------------------------------------------------------------

    def retrieve_subscription(self, subscription_id: str) -> Any:
        return self._get_stripe().Subscription.retrieve(subscription_id)

    def retrieve_price(self, price_id: str) -> Any:
        return self._get_stripe().Price.retrieve(price_id)

    def retrieve_customer(self, customer_id: str) -> Any:
        return self._get_stripe().Customer.retrieve(customer_id)

    # -- Mutations -----------------------------------------------------------

    def create_customer(self, tenant_id: str, email: str | None) -> str:
        """Create a Stripe customer tagged with the tenant id; returns its id."""
        params: dict[str, Any] = {"metadata": {"cardboard_tenant_id": tenant_id}}
        if email:
            params["email"] = email
        customer = self._get_stripe().Customer.create(**params)
        logger.info("Created Stripe customer %s for tenant=%s", customer["id"], tenant_id)
        return customer["id"]

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        tenant_id: str,
    ) -> str:
        """Create a subscription-mode Checkout session; returns its URL."""
        session = self._get_stripe().checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"cardboard_tenant_id": tenant_id},
            subscription_data={"metadata": {"cardboard_tenant_id": tenant_id}},
        )
        return session["url"]

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._get_stripe().billing_portal.Session.create(customer=customer_id, return_url=return_url)
        return session["url"]
