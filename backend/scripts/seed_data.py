"""Seed the database with the default plan catalog and demo records.

Installs the default pricing plans, an admin and a regular user (ids printed
so tokens can be minted for them), one paid podcast and one pending merch
order. Safe to run repeatedly; existing rows are left alone.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_data
"""

import asyncio
import logging
from decimal import Decimal

from sqlalchemy import select

from app.billing.plans import seed_default_plans
from app.billing.states import UserRole
from app.config import settings
from app.database import async_session_factory, engine
from app.models.catalog import MerchOrder, Podcast
from app.models.user import User

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

DEMO_USERS = [
    {"email": "admin@podcast.local", "name": "Demo Admin", "role": UserRole.ADMIN.value},
    {"email": "listener@podcast.local", "name": "Demo Listener", "role": UserRole.USER.value},
]

DEMO_PODCAST = {"title": "Founders Unfiltered, Season 1", "price": Decimal("149.00"), "is_free": False}


async def _get_or_create_user(db, data: dict) -> User:
    result = await db.execute(select(User).where(User.email == data["email"]))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(**data)
        db.add(user)
        await db.flush()
        logger.info("Created user %s (%s)", user.email, user.id)
    return user


async def seed() -> None:
    async with async_session_factory() as db:
        plans = await seed_default_plans(db)
        logger.info("Seeded %d pricing plan(s)", len(plans))

        users = [await _get_or_create_user(db, data) for data in DEMO_USERS]

        result = await db.execute(select(Podcast).where(Podcast.title == DEMO_PODCAST["title"]))
        if result.scalar_one_or_none() is None:
            db.add(Podcast(**DEMO_PODCAST))
            logger.info("Created demo podcast")

        listener = users[-1]
        result = await db.execute(select(MerchOrder).where(MerchOrder.user_id == listener.id))
        if result.first() is None:
            db.add(
                MerchOrder(
                    user_id=listener.id,
                    total_amount=Decimal("799.00"),
                    currency=settings.default_currency,
                )
            )
            logger.info("Created demo merch order for %s", listener.email)

        await db.commit()

        for user in users:
            print(f"{user.role:<6} {user.email:<28} {user.id}")

    await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(seed())
