"""Payment model: every charge (or zero-amount plan change entry) a user makes."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.billing.errors import InvalidStateTransition
from app.billing.states import PAYMENT_TRANSITIONS, PaymentStatus
from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class Payment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A gateway order and what it pays for.

    ``ref_type``/``ref_id`` point at the subscription, purchase or merch order
    the payment settles; ``plan_id``/``podcast_id`` capture the intent at order
    creation so verification can check the client's claim against it.
    """

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'authorized', 'completed', 'failed', 'refunded')",
            name="ck_payments_status",
        ),
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=PaymentStatus.PENDING.value)

    # Gateway identifiers
    gateway_order_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    gateway_signature: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # What the payment settles
    ref_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ref_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    plan_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("pricing_plans.id"), nullable=True)
    podcast_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("podcasts.id"), nullable=True)
    merch_order_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("merch_orders.id"), nullable=True)

    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def transition_to(self, new_status: PaymentStatus) -> None:
        """Move along the allowed payment transitions or raise."""
        current = PaymentStatus(self.status)
        if new_status not in PAYMENT_TRANSITIONS[current]:
            raise InvalidStateTransition(current.value, f"mark payment {new_status.value}")
        self.status = new_status.value
        if new_status == PaymentStatus.COMPLETED:
            self.completed_at = utcnow()
            self.failure_reason = None

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, type={self.type}, amount={self.amount}, status={self.status})>"
