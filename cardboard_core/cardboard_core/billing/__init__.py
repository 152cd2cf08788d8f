"""Usage-quota enforcement and subscription state."""

from cardboard_core.billing.counters import AtomicCounterService, IncrementResult, ReconcileResult
from cardboard_core.billing.entitlement import EntitlementResult, Usage, calculate_live_usage, check_limit
from cardboard_core.billing.exceptions import (
    AccountNotFoundError,
    AccountNotLinkedError,
    BillingError,
    QuotaExceededError,
)
from cardboard_core.billing.limits import TIER_LIMITS, ResourceKind, Tier
from cardboard_core.billing.reservation import Reservation, Settlement, StorageReservationService

__all__ = [
    "TIER_LIMITS",
    "AccountNotFoundError",
    "AccountNotLinkedError",
    "AtomicCounterService",
    "BillingError",
    "EntitlementResult",
    "IncrementResult",
    "QuotaExceededError",
    "ReconcileResult",
    "Reservation",
    "ResourceKind",
    "Settlement",
    "StorageReservationService",
    "Tier",
    "Usage",
    "calculate_live_usage",
    "check_limit",
]
