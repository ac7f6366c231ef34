"""Billing status vocabularies and the tagged subscription state.

A subscription's state is one of five variants. ``Active`` carries the
optional scheduled-cancellation instant and ``PendingDowngrade`` carries the
plan that takes over at the period boundary, so combinations such as
"paused but cancelling at period end" cannot be expressed at all.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    PENDING_DOWNGRADE = "pending_downgrade"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Statuses that count towards the one-subscription-per-user rule.
LIVE_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PENDING_DOWNGRADE,
        SubscriptionStatus.PAUSED,
    }
)

ACCESS_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_DOWNGRADE}
)


class PlanInterval(StrEnum):
    MONTH = "month"
    YEAR = "year"
    LIFETIME = "lifetime"


class PaymentType(StrEnum):
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    MERCH = "merch"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


# Allowed forward moves; a completed payment can only ever become refunded.
PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.AUTHORIZED, PaymentStatus.COMPLETED, PaymentStatus.FAILED}
    ),
    PaymentStatus.AUTHORIZED: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


class RefundStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSED = "processed"
    REJECTED = "rejected"


OPEN_REFUND_STATUSES: frozenset[RefundStatus] = frozenset(
    {RefundStatus.PENDING, RefundStatus.APPROVED}
)


class PurchaseStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class MerchOrderStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class UserRole(StrEnum):
    USER = "user"
    ADMIN = "admin"


# ---------------------------------------------------------------------------
# Tagged subscription state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Active:
    cancels_at: datetime | None = None

    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus.ACTIVE


@dataclass(frozen=True)
class PendingDowngrade:
    to_plan_id: uuid.UUID

    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus.PENDING_DOWNGRADE


@dataclass(frozen=True)
class Paused:
    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus.PAUSED


@dataclass(frozen=True)
class Cancelled:
    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus.CANCELLED


@dataclass(frozen=True)
class Expired:
    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus.EXPIRED


SubscriptionState = Active | PendingDowngrade | Paused | Cancelled | Expired


def has_access(status: str) -> bool:
    """Whether a subscription in ``status`` grants its plan's entitlements."""
    return status in ACCESS_STATUSES
