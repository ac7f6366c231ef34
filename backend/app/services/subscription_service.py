"""Subscription service: the subscription ledger and its state transitions.

Every mutating function expects a row loaded with :func:`lock_subscription`
(or another ``FOR UPDATE`` query) and only flushes; the caller's transaction
decides whether the change is committed.
"""

import logging
import uuid
from collections.abc import Collection
from datetime import datetime, timedelta

from sqlalchemy import and_, not_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import lifecycle, periods
from app.billing.errors import ActiveSubscriptionExists, InvalidStateTransition, RecordNotFound, ValidationFailed
from app.billing.plans import get_active_plan, get_plan
from app.billing.states import (
    LIVE_STATUSES,
    Active,
    Expired,
    PaymentStatus,
    PaymentType,
    PendingDowngrade,
    SubscriptionState,
)
from app.database import utcnow
from app.models.payment import Payment
from app.models.pricing_plan import PricingPlan
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)

_LIVE = [status.value for status in LIVE_STATUSES]


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_live_subscription(
    db: AsyncSession, user_id: uuid.UUID, *, for_update: bool = False
) -> Subscription | None:
    """Return the user's live (active, pending_downgrade or paused) subscription."""
    stmt = select(Subscription).where(
        Subscription.user_id == user_id,
        Subscription.status.in_(_LIVE),
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def require_live_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription:
    subscription = await get_live_subscription(db, user_id, for_update=True)
    if subscription is None:
        raise RecordNotFound("Active subscription")
    return subscription


async def lock_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription:
    """Load a subscription with a row lock. Raises RecordNotFound."""
    result = await db.execute(
        select(Subscription).where(Subscription.id == subscription_id).with_for_update()
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise RecordNotFound("Subscription", subscription_id)
    return subscription


async def get_subscription_by_gateway_id(
    db: AsyncSession, gateway_subscription_id: str
) -> Subscription | None:
    """Look up a subscription by Razorpay subscription id (used by webhooks)."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.gateway_subscription_id == gateway_subscription_id)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def list_subscriptions(
    db: AsyncSession, *, status: str | None = None, limit: int = 100, offset: int = 0
) -> list[Subscription]:
    stmt = select(Subscription).order_by(Subscription.created_at.desc()).limit(limit).offset(offset)
    if status:
        stmt = stmt.where(Subscription.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


def _set_state(subscription: Subscription, state: SubscriptionState, event: str) -> None:
    previous = subscription.status
    subscription.apply_state(state)
    logger.info(
        "Subscription %s: %s -> %s (%s)",
        subscription.id,
        previous,
        subscription.status,
        event,
    )


def _start_period(subscription: Subscription, plan: PricingPlan, start: datetime) -> None:
    subscription.current_period_start = start
    subscription.current_period_end = periods.period_end(plan.interval, start)


def _switch_plan(subscription: Subscription, plan: PricingPlan) -> None:
    subscription.plan_id = plan.id
    subscription.amount = plan.price
    subscription.currency = plan.currency


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


async def open_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    plan: PricingPlan,
    *,
    gateway_payment_id: str | None = None,
    gateway_subscription_id: str | None = None,
    now: datetime | None = None,
) -> Subscription:
    """Create an active subscription after a verified payment.

    Paying again for the plan the live subscription is already on extends that
    row by one period from its current end. A live subscription on another plan
    is cancelled first so the one-live-subscription rule holds inside the same
    transaction.
    """
    now = now or utcnow()

    current = await get_live_subscription(db, user_id, for_update=True)
    if current is not None and current.plan_id == plan.id:
        return await _extend_by_repurchase(
            db,
            current,
            plan,
            now=now,
            gateway_payment_id=gateway_payment_id,
            gateway_subscription_id=gateway_subscription_id,
        )
    if current is not None:
        _set_state(current, lifecycle.force_cancel(current.state), "superseded")
        current.cancellation_reason = "Superseded by a new subscription"
        await db.flush()

    subscription = Subscription(
        user_id=user_id,
        gateway_payment_id=gateway_payment_id,
        gateway_subscription_id=gateway_subscription_id,
    )
    _switch_plan(subscription, plan)
    _start_period(subscription, plan, now)
    subscription.apply_state(Active())
    db.add(subscription)
    await db.flush()

    logger.info(
        "Opened subscription %s for user %s on plan %s until %s",
        subscription.id,
        user_id,
        plan.slug,
        subscription.current_period_end,
    )
    return subscription


async def _extend_by_repurchase(
    db: AsyncSession,
    subscription: Subscription,
    plan: PricingPlan,
    *,
    now: datetime,
    gateway_payment_id: str | None,
    gateway_subscription_id: str | None,
) -> Subscription:
    new_state = lifecycle.repurchase(subscription.state)
    if subscription.current_period_end > now:
        subscription.current_period_end = periods.period_end(plan.interval, subscription.current_period_end)
    else:
        _start_period(subscription, plan, now)
    _set_state(subscription, new_state, "repurchase")
    subscription.cancellation_reason = None
    if gateway_payment_id:
        subscription.gateway_payment_id = gateway_payment_id
    if gateway_subscription_id:
        subscription.gateway_subscription_id = gateway_subscription_id
    await db.flush()

    logger.info(
        "Extended subscription %s on plan %s until %s after repeat payment",
        subscription.id,
        plan.slug,
        subscription.current_period_end,
    )
    return subscription


async def link_gateway_subscription(
    db: AsyncSession, user_id: uuid.UUID, gateway_subscription_id: str
) -> Subscription | None:
    """Attach a Razorpay subscription id to the user's live subscription.

    Returns None when the user has no live subscription or it is already
    linked to a different gateway subscription.
    """
    subscription = await get_live_subscription(db, user_id, for_update=True)
    if subscription is None:
        return None
    if subscription.gateway_subscription_id == gateway_subscription_id:
        return subscription
    if subscription.gateway_subscription_id is not None:
        logger.warning(
            "Subscription %s already linked to %s, not relinking to %s",
            subscription.id,
            subscription.gateway_subscription_id,
            gateway_subscription_id,
        )
        return None

    subscription.gateway_subscription_id = gateway_subscription_id
    await db.flush()
    logger.info("Linked subscription %s to Razorpay subscription %s", subscription.id, gateway_subscription_id)
    return subscription


# ---------------------------------------------------------------------------
# User and admin transitions
# ---------------------------------------------------------------------------


async def cancel_subscription(
    db: AsyncSession,
    subscription: Subscription,
    *,
    immediate: bool,
    reason: str | None = None,
) -> Subscription:
    new_state = lifecycle.cancel(
        subscription.state,
        immediate=immediate,
        period_end=subscription.current_period_end,
    )
    _set_state(subscription, new_state, "cancel now" if immediate else "cancel at period end")
    if reason:
        subscription.cancellation_reason = reason
    await db.flush()
    return subscription


async def undo_cancellation(
    db: AsyncSession, subscription: Subscription, *, now: datetime | None = None
) -> Subscription:
    """Clear a scheduled cancellation while the paid period is still running."""
    now = now or utcnow()
    if subscription.current_period_end <= now:
        raise InvalidStateTransition(
            subscription.status,
            "reactivate",
            "The billing period has already ended, subscribe again instead",
        )
    _set_state(subscription, lifecycle.undo_cancellation(subscription.state), "undo cancellation")
    subscription.cancellation_reason = None
    await db.flush()
    return subscription


async def change_plan(
    db: AsyncSession,
    subscription: Subscription,
    new_plan_id: uuid.UUID,
) -> Payment | None:
    """Schedule a plan change for the end of the current period.

    No proration: the current plan stays in force until ``current_period_end``.
    A zero-amount upgrade/downgrade entry is written to the payment history.
    Choosing the current plan again drops the scheduled change and writes no entry.
    """
    new_plan = await get_active_plan(db, new_plan_id)
    current_plan = await get_plan(db, subscription.plan_id)

    new_state = lifecycle.schedule_plan_change(
        subscription.state,
        current_plan_id=subscription.plan_id,
        new_plan_id=new_plan.id,
    )
    _set_state(subscription, new_state, f"change plan to {new_plan.slug}")
    if not isinstance(new_state, PendingDowngrade):
        await db.flush()
        return None

    entry_type = PaymentType.UPGRADE if new_plan.price > current_plan.price else PaymentType.DOWNGRADE
    entry = Payment(
        user_id=subscription.user_id,
        type=entry_type.value,
        amount=0,
        currency=subscription.currency,
        status=PaymentStatus.COMPLETED.value,
        ref_type="subscription",
        ref_id=subscription.id,
        plan_id=new_plan.id,
        completed_at=utcnow(),
        details={
            "from_plan": current_plan.slug,
            "to_plan": new_plan.slug,
            "effective_at": subscription.current_period_end.isoformat(),
        },
    )
    db.add(entry)
    await db.flush()
    return entry


async def pause_subscription(db: AsyncSession, subscription: Subscription) -> Subscription:
    _set_state(subscription, lifecycle.pause(subscription.state), "pause")
    await db.flush()
    return subscription


async def _ensure_no_other_live(db: AsyncSession, subscription: Subscription) -> None:
    other = await get_live_subscription(db, subscription.user_id)
    if other is not None and other.id != subscription.id:
        raise ActiveSubscriptionExists()


async def reactivate_subscription(
    db: AsyncSession, subscription: Subscription, *, now: datetime | None = None
) -> Subscription:
    """Resume a paused or cancelled subscription with a fresh period from now."""
    now = now or utcnow()
    new_state = lifecycle.reactivate(subscription.state)
    await _ensure_no_other_live(db, subscription)

    plan = await get_plan(db, subscription.plan_id)
    _start_period(subscription, plan, now)
    _set_state(subscription, new_state, "reactivate")
    subscription.cancellation_reason = None
    await db.flush()
    return subscription


async def extend_subscription(db: AsyncSession, subscription: Subscription, days: int) -> Subscription:
    if days <= 0:
        raise ValidationFailed("Extension must be a positive number of days", days=days)
    lifecycle.extend(subscription.state)
    subscription.current_period_end = periods.extend_period(subscription.current_period_end, days)
    await db.flush()
    logger.info(
        "Extended subscription %s by %d days to %s",
        subscription.id,
        days,
        subscription.current_period_end,
    )
    return subscription


async def force_cancel(db: AsyncSession, subscription: Subscription, reason: str) -> Subscription:
    _set_state(subscription, lifecycle.force_cancel(subscription.state), reason)
    subscription.cancellation_reason = reason
    await db.flush()
    return subscription


# ---------------------------------------------------------------------------
# Period boundary and gateway-driven transitions
# ---------------------------------------------------------------------------


async def _roll_forward(
    db: AsyncSession,
    subscription: Subscription,
    outcome: lifecycle.PeriodOutcome,
    *,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> None:
    if outcome.new_plan_id is not None:
        _switch_plan(subscription, await get_plan(db, outcome.new_plan_id))
    plan = await get_plan(db, subscription.plan_id)

    start, end = periods.next_period(plan.interval, subscription.current_period_end)
    if period_start is not None and period_end is not None and period_end > period_start:
        start, end = period_start, period_end
    subscription.current_period_start = start
    subscription.current_period_end = end


async def close_period(
    db: AsyncSession, subscription: Subscription, *, now: datetime | None = None
) -> Subscription:
    """Apply the period boundary to a subscription whose period has ended."""
    now = now or utcnow()
    if subscription.current_period_end > now:
        raise InvalidStateTransition(subscription.status, "close period", "The billing period has not ended yet")

    outcome = lifecycle.reach_period_boundary(subscription.state)
    if outcome.roll_forward:
        await _roll_forward(db, subscription, outcome)
    _set_state(subscription, outcome.state, "period boundary")
    await db.flush()
    return subscription


async def renew_subscription(
    db: AsyncSession,
    subscription: Subscription,
    *,
    gateway_payment_id: str | None = None,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> Subscription:
    """Roll the same row into its next period after a renewal charge.

    A charge that lands after the sweep expired the row revives it, unless the
    user has opened another live subscription in the meantime. Without gateway
    bounds the revived period runs from now when the rolled period is already over.
    """
    revived = isinstance(subscription.state, Expired)
    outcome = lifecycle.renew(subscription.state)
    if revived:
        await _ensure_no_other_live(db, subscription)
    await _roll_forward(db, subscription, outcome, period_start=period_start, period_end=period_end)
    now = utcnow()
    if revived and subscription.current_period_end <= now:
        _start_period(subscription, await get_plan(db, subscription.plan_id), now)
    _set_state(subscription, outcome.state, "renewal")
    if gateway_payment_id:
        subscription.gateway_payment_id = gateway_payment_id
    await db.flush()
    return subscription


async def halt_subscription(db: AsyncSession, subscription: Subscription) -> Subscription:
    _set_state(subscription, lifecycle.halt(subscription.state), "gateway halted")
    await db.flush()
    return subscription


async def complete_subscription(db: AsyncSession, subscription: Subscription) -> Subscription:
    _set_state(subscription, lifecycle.complete(subscription.state), "gateway completed")
    await db.flush()
    return subscription


async def terminate_subscription(db: AsyncSession, subscription: Subscription) -> Subscription:
    _set_state(subscription, lifecycle.terminate(subscription.state), "gateway cancelled")
    await db.flush()
    return subscription


async def lock_due_subscriptions(
    db: AsyncSession,
    *,
    now: datetime,
    limit: int,
    grace: timedelta = timedelta(0),
    exclude: Collection[uuid.UUID] = (),
) -> list[Subscription]:
    """Lock up to ``limit`` live subscriptions whose period has ended.

    Rows billed by a Razorpay subscription that are not set to cancel only
    become due ``grace`` after their period end, leaving room for the
    ``subscription.charged`` webhook. Rows in ``exclude`` and rows already
    locked by another worker are skipped.
    """
    awaiting_charge = and_(
        Subscription.gateway_subscription_id.is_not(None),
        Subscription.cancel_at_period_end.is_(False),
    )
    stmt = (
        select(Subscription)
        .where(
            Subscription.status.in_(_LIVE),
            or_(
                and_(not_(awaiting_charge), Subscription.current_period_end <= now),
                and_(awaiting_charge, Subscription.current_period_end <= now - grace),
            ),
        )
        .order_by(Subscription.current_period_end)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if exclude:
        stmt = stmt.where(Subscription.id.not_in(list(exclude)))
    result = await db.execute(stmt)
    return list(result.scalars().all())
