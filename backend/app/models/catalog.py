"""Catalog and store records: only the fields needed to price a charge.

Podcasts and merch orders are created by the wider product; this service reads
them to price charges and writes the status fields a payment settles.
"""

import uuid
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.billing.states import MerchOrderStatus, PurchaseStatus
from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Podcast(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "podcasts"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    is_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Podcast(id={self.id}, title={self.title!r})>"


class Purchase(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One-off access to a paid podcast."""

    __tablename__ = "purchases"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    podcast_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("podcasts.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=PurchaseStatus.PENDING.value)
    gateway_order_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Purchase(id={self.id}, podcast_id={self.podcast_id}, status={self.status})>"


class MerchOrder(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A store checkout awaiting (or settled by) a payment."""

    __tablename__ = "merch_orders"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=MerchOrderStatus.PENDING.value)
    gateway_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<MerchOrder(id={self.id}, total={self.total_amount}, status={self.status})>"
