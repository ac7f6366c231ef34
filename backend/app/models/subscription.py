"""Subscription model: one row per subscription a user has ever held."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.billing.states import (
    Active,
    Cancelled,
    Expired,
    Paused,
    PendingDowngrade,
    SubscriptionState,
    SubscriptionStatus,
    has_access,
)
from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow

_LIVE_PREDICATE = "status IN ('active', 'pending_downgrade', 'paused')"


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A user's subscription to a pricing plan and its billing period.

    The status columns are never written one by one: callers build the next
    :data:`SubscriptionState` and hand it to :meth:`apply_state`.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_subscriptions_period_order",
        ),
        CheckConstraint(
            "status IN ('active', 'pending_downgrade', 'paused', 'cancelled', 'expired')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint(
            "NOT cancel_at_period_end OR status = 'active'",
            name="ck_subscriptions_cancel_flag_active_only",
        ),
        CheckConstraint(
            "(status = 'pending_downgrade' AND pending_plan_id IS NOT NULL)"
            " OR (status <> 'pending_downgrade' AND pending_plan_id IS NULL)",
            name="ck_subscriptions_pending_plan",
        ),
        # At most one live subscription per user
        Index(
            "uq_subscriptions_live_user",
            "user_id",
            unique=True,
            postgresql_where=text(_LIVE_PREDICATE),
            sqlite_where=text(_LIVE_PREDICATE),
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("pricing_plans.id"), nullable=False)

    # Plan & status
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Billing period
    current_period_start: Mapped[datetime] = mapped_column(nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(nullable=False, index=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pending_plan_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("pricing_plans.id"), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Gateway identifiers
    gateway_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def state(self) -> SubscriptionState:
        match SubscriptionStatus(self.status):
            case SubscriptionStatus.ACTIVE:
                return Active(cancels_at=self.current_period_end if self.cancel_at_period_end else None)
            case SubscriptionStatus.PENDING_DOWNGRADE:
                return PendingDowngrade(to_plan_id=self.pending_plan_id)
            case SubscriptionStatus.PAUSED:
                return Paused()
            case SubscriptionStatus.CANCELLED:
                return Cancelled()
            case SubscriptionStatus.EXPIRED:
                return Expired()

    def apply_state(self, state: SubscriptionState) -> None:
        """Write ``state`` to every column that depends on it."""
        self.status = state.status.value
        match state:
            case Active(cancels_at=cancels_at):
                self.cancel_at_period_end = cancels_at is not None
                self.pending_plan_id = None
                self.cancelled_at = None
            case PendingDowngrade(to_plan_id=to_plan_id):
                self.cancel_at_period_end = False
                self.pending_plan_id = to_plan_id
                self.cancelled_at = None
            case Cancelled():
                self.cancel_at_period_end = False
                self.pending_plan_id = None
                if self.cancelled_at is None:
                    self.cancelled_at = utcnow()
            case Paused() | Expired():
                self.cancel_at_period_end = False
                self.pending_plan_id = None

    @property
    def has_access(self) -> bool:
        return has_access(self.status)

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, plan_id={self.plan_id}, status={self.status})>"
