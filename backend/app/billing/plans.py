"""Plan catalog: default pricing tiers and catalog lookups."""

import uuid
from dataclasses import asdict, dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import RecordNotFound, ValidationFailed
from app.models.pricing_plan import PricingPlan


@dataclass(frozen=True)
class PlanDefinition:
    """Seed data for one pricing plan."""

    slug: str
    name: str
    description: str
    price: Decimal
    currency: str
    interval: str  # month, year, lifetime
    allow_downloads: bool
    allow_offline: bool
    includes_playlists: bool
    sort_order: int


DEFAULT_PLANS: list[PlanDefinition] = [
    PlanDefinition(
        slug="free",
        name="Free",
        description="Stream every free episode",
        price=Decimal("0.00"),
        currency="INR",
        interval="month",
        allow_downloads=False,
        allow_offline=False,
        includes_playlists=False,
        sort_order=0,
    ),
    PlanDefinition(
        slug="premium-monthly",
        name="Premium Monthly",
        description="Premium episodes, early releases and downloads",
        price=Decimal("199.00"),
        currency="INR",
        interval="month",
        allow_downloads=True,
        allow_offline=False,
        includes_playlists=True,
        sort_order=1,
    ),
    PlanDefinition(
        slug="premium-yearly",
        name="Premium Yearly",
        description="Everything in Premium Monthly plus offline listening",
        price=Decimal("1999.00"),
        currency="INR",
        interval="year",
        allow_downloads=True,
        allow_offline=True,
        includes_playlists=True,
        sort_order=2,
    ),
    PlanDefinition(
        slug="lifetime",
        name="Lifetime",
        description="One payment, premium access forever",
        price=Decimal("9999.00"),
        currency="INR",
        interval="lifetime",
        allow_downloads=True,
        allow_offline=True,
        includes_playlists=True,
        sort_order=3,
    ),
]


async def list_active_plans(db: AsyncSession) -> list[PricingPlan]:
    result = await db.execute(
        select(PricingPlan)
        .where(PricingPlan.is_active.is_(True))
        .order_by(PricingPlan.sort_order, PricingPlan.price)
    )
    return list(result.scalars().all())


async def get_plan(db: AsyncSession, plan_id: uuid.UUID) -> PricingPlan:
    """Get a plan by id. Raises RecordNotFound if it does not exist."""
    plan = await db.get(PricingPlan, plan_id)
    if plan is None:
        raise RecordNotFound("Pricing plan", plan_id)
    return plan


async def get_active_plan(db: AsyncSession, plan_id: uuid.UUID) -> PricingPlan:
    """Get a plan that can still be subscribed to."""
    plan = await get_plan(db, plan_id)
    if not plan.is_active:
        raise ValidationFailed("This plan is no longer available", plan_id=str(plan_id))
    return plan


async def seed_default_plans(db: AsyncSession) -> list[PricingPlan]:
    """Insert any default plan whose slug is missing. Existing plans are left alone."""
    result = await db.execute(select(PricingPlan.slug))
    existing = set(result.scalars().all())

    created: list[PricingPlan] = []
    for definition in DEFAULT_PLANS:
        if definition.slug in existing:
            continue
        plan = PricingPlan(**asdict(definition))
        db.add(plan)
        created.append(plan)

    await db.flush()
    return created
