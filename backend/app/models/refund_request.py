"""RefundRequest model: user refund requests and their approval workflow."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.billing.states import RefundStatus
from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

_OPEN_PREDICATE = "status IN ('pending', 'approved')"


class RefundRequest(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A refund request against a subscription or a one-off purchase."""

    __tablename__ = "refund_requests"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'processed', 'rejected')",
            name="ck_refund_requests_status",
        ),
        CheckConstraint(
            "subscription_id IS NOT NULL OR purchase_id IS NOT NULL",
            name="ck_refund_requests_target",
        ),
        # One open request per target
        Index(
            "uq_refund_requests_open_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text(_OPEN_PREDICATE),
            sqlite_where=text(_OPEN_PREDICATE),
        ),
        Index(
            "uq_refund_requests_open_purchase",
            "purchase_id",
            unique=True,
            postgresql_where=text(_OPEN_PREDICATE),
            sqlite_where=text(_OPEN_PREDICATE),
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("subscriptions.id"), nullable=True)
    purchase_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("purchases.id"), nullable=True)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("payments.id"), nullable=True, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=RefundStatus.PENDING.value)

    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_refund_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    processed_by: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<RefundRequest(id={self.id}, status={self.status}, amount={self.amount})>"
