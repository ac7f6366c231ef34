"""PricingPlan model: the plan catalog."""

from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class PricingPlan(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A named plan with a flat price, billing interval and entitlements."""

    __tablename__ = "pricing_plans"
    __table_args__ = (
        CheckConstraint("interval IN ('month', 'year', 'lifetime')", name="ck_pricing_plans_interval"),
        CheckConstraint("price >= 0", name="ck_pricing_plans_price_non_negative"),
    )

    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    interval: Mapped[str] = mapped_column(String(20), nullable=False, default="month")

    # Entitlements
    allow_downloads: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_offline: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    includes_playlists: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Recurring plan on the gateway side, when the plan is billed automatically
    gateway_plan_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    def __repr__(self) -> str:
        return f"<PricingPlan slug={self.slug!r} price={self.price} interval={self.interval}>"
