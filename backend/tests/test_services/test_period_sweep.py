"""Tests for the period sweep worker."""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.errors import InvalidStateTransition
from app.billing.plans import seed_default_plans
from app.billing.states import SubscriptionStatus
from app.database import utcnow
from app.models.subscription import Subscription
from app.models.user import User
from app.services import subscription_service
from app.workers.period_sweep import run_once, sweep_batch


def _overdue(user, plan, **kwargs) -> Subscription:
    start = utcnow() - timedelta(days=31)
    return Subscription(
        user_id=user.id,
        plan_id=plan.id,
        amount=plan.price,
        currency=plan.currency,
        current_period_start=start,
        current_period_end=start + timedelta(days=30),
        **kwargs,
    )


def _failing_for(subscription_id: uuid.UUID) -> AsyncMock:
    """close_period that rejects one subscription and closes the rest normally."""
    real_close_period = subscription_service.close_period

    async def close_period(db, subscription, *, now=None):
        if subscription.id == subscription_id:
            raise InvalidStateTransition(subscription.status, "close period")
        return await real_close_period(db, subscription, now=now)

    return AsyncMock(side_effect=close_period)


async def _status(db: AsyncSession, subscription_id: uuid.UUID) -> str:
    result = await db.execute(select(Subscription.status).where(Subscription.id == subscription_id))
    return result.scalar_one()


class TestSweepBatch:
    async def test_closes_only_due_subscriptions(
        self, db_session: AsyncSession, test_user, other_user, plans, make_subscription
    ):
        start = utcnow() - timedelta(days=31)
        due = await make_subscription(
            test_user,
            plans["premium-monthly"],
            period_start=start,
            period_end=start + timedelta(days=30),
            cancel_at_period_end=True,
        )
        running = await make_subscription(other_user, plans["premium-monthly"])

        batch = await sweep_batch(db_session, now=utcnow(), limit=10)

        assert batch.closed == [due.id]
        assert batch.failed == []
        assert due.status == SubscriptionStatus.CANCELLED
        assert running.status == SubscriptionStatus.ACTIVE

    async def test_respects_limit(self, db_session: AsyncSession, test_user, other_user, plans, make_subscription):
        start = utcnow() - timedelta(days=31)
        for user in (test_user, other_user):
            await make_subscription(
                user, plans["premium-monthly"], period_start=start, period_end=start + timedelta(days=30)
            )

        batch = await sweep_batch(db_session, now=utcnow(), limit=1)

        assert batch.handled == 1

    async def test_failing_row_is_skipped(
        self, db_session: AsyncSession, test_user, other_user, plans, make_subscription
    ):
        start = utcnow() - timedelta(days=31)
        broken = await make_subscription(
            test_user,
            plans["premium-monthly"],
            period_start=start,
            period_end=start + timedelta(days=30),
            cancel_at_period_end=True,
        )
        healthy = await make_subscription(
            other_user,
            plans["premium-monthly"],
            period_start=start,
            period_end=start + timedelta(days=30),
            cancel_at_period_end=True,
        )

        with patch("app.services.subscription_service.close_period", new=_failing_for(broken.id)):
            batch = await sweep_batch(db_session, now=utcnow(), limit=10)

        assert batch.closed == [healthy.id]
        assert batch.failed == [broken.id]
        assert await _status(db_session, healthy.id) == SubscriptionStatus.CANCELLED
        assert await _status(db_session, broken.id) == SubscriptionStatus.ACTIVE

    async def test_excluded_rows_not_locked(self, db_session: AsyncSession, test_user, plans, make_subscription):
        start = utcnow() - timedelta(days=31)
        sub = await make_subscription(
            test_user, plans["premium-monthly"], period_start=start, period_end=start + timedelta(days=30)
        )

        batch = await sweep_batch(db_session, now=utcnow(), limit=10, exclude={sub.id})

        assert batch.handled == 0
        assert sub.status == SubscriptionStatus.ACTIVE


class TestRenewalGrace:
    """Rows billed by a Razorpay subscription wait for the charge before expiring."""

    async def test_gateway_row_held_within_grace(
        self, db_session: AsyncSession, test_user, plans, make_subscription
    ):
        end = utcnow() - timedelta(hours=1)
        sub = await make_subscription(
            test_user,
            plans["premium-monthly"],
            period_start=end - timedelta(days=30),
            period_end=end,
            gateway_subscription_id="sub_grace_001",
        )

        batch = await sweep_batch(db_session, now=utcnow(), limit=10)

        assert batch.handled == 0
        assert sub.status == SubscriptionStatus.ACTIVE

    async def test_gateway_row_expires_after_grace(
        self, db_session: AsyncSession, test_user, plans, make_subscription
    ):
        end = utcnow() - timedelta(days=3)
        sub = await make_subscription(
            test_user,
            plans["premium-monthly"],
            period_start=end - timedelta(days=30),
            period_end=end,
            gateway_subscription_id="sub_grace_002",
        )

        batch = await sweep_batch(db_session, now=utcnow(), limit=10)

        assert batch.closed == [sub.id]
        assert sub.status == SubscriptionStatus.EXPIRED

    async def test_scheduled_cancel_not_held(self, db_session: AsyncSession, test_user, plans, make_subscription):
        end = utcnow() - timedelta(hours=1)
        sub = await make_subscription(
            test_user,
            plans["premium-monthly"],
            period_start=end - timedelta(days=30),
            period_end=end,
            cancel_at_period_end=True,
            gateway_subscription_id="sub_grace_003",
        )

        batch = await sweep_batch(db_session, now=utcnow(), limit=10)

        assert batch.closed == [sub.id]
        assert sub.status == SubscriptionStatus.CANCELLED


class TestRunOnce:
    """run_once commits each batch through its own session."""

    @staticmethod
    async def _seed(factory: async_sessionmaker) -> tuple[uuid.UUID, uuid.UUID]:
        async with factory() as db:
            catalog = {plan.slug: plan for plan in await seed_default_plans(db)}
            users = [User(email=f"sweep-{uuid.uuid4().hex[:8]}@test.com", name="Sweep") for _ in range(2)]
            db.add_all(users)
            await db.flush()

            cancelling = _overdue(users[0], catalog["premium-monthly"], cancel_at_period_end=True)
            downgrading = _overdue(
                users[1],
                catalog["premium-yearly"],
                status=SubscriptionStatus.PENDING_DOWNGRADE.value,
                pending_plan_id=catalog["premium-monthly"].id,
            )
            db.add_all([cancelling, downgrading])
            await db.commit()
            return cancelling.id, downgrading.id

    async def test_sweeps_all_batches(self, test_engine):
        factory = async_sessionmaker(test_engine, expire_on_commit=False)
        cancelling_id, downgrading_id = await self._seed(factory)

        total = await run_once(factory, batch_size=1)

        assert total == 2
        async with factory() as db:
            rows = await db.execute(select(Subscription.id, Subscription.status))
            statuses = dict(rows.all())
        assert statuses[cancelling_id] == SubscriptionStatus.CANCELLED
        assert statuses[downgrading_id] == SubscriptionStatus.ACTIVE

    async def test_nothing_due(self, test_engine):
        factory = async_sessionmaker(test_engine, expire_on_commit=False)
        assert await run_once(factory) == 0

    async def test_failing_row_does_not_block_the_pass(self, test_engine):
        factory = async_sessionmaker(test_engine, expire_on_commit=False)
        cancelling_id, downgrading_id = await self._seed(factory)

        with patch("app.services.subscription_service.close_period", new=_failing_for(downgrading_id)):
            total = await run_once(factory, batch_size=1)

        assert total == 1
        async with factory() as db:
            assert await _status(db, cancelling_id) == SubscriptionStatus.CANCELLED
            assert await _status(db, downgrading_id) == SubscriptionStatus.PENDING_DOWNGRADE
