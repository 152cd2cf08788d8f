"""Domain errors raised by the billing engine.

Routers translate these into HTTP responses at the request boundary.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cardboard_core.billing.entitlement import EntitlementResult


class BillingError(Exception):
    """Base class for quota and billing failures."""


class AccountNotFoundError(BillingError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Account not found: {tenant_id}")
        self.tenant_id = tenant_id


class QuotaExceededError(BillingError):
    """A mutation would push usage past the tenant's tier limit.

    Never retried automatically; surfaced to the client with an upgrade hint.
    """

    def __init__(self, reason: str, result: EntitlementResult | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.result = result


class AccountNotLinkedError(BillingError):
    """A Stripe customer cannot be matched to any tenant account.

    Terminal for the event: redelivery cannot fix a missing join.
    """

    def __init__(self, customer_id: str | None) -> None:
        super().__init__(f"No account linked to Stripe customer {customer_id!r}")
        self.customer_id = customer_id
