"""Account views: the caller's subscription with derived fields and billing history."""

import uuid
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import periods
from app.billing.plans import get_plan
from app.database import utcnow
from app.models.subscription import Subscription
from app.schemas.billing import (
    PaymentHistoryResponse,
    PaymentResponse,
    PlanResponse,
    RefundResponse,
    SubscriptionDetailResponse,
    SubscriptionResponse,
)
from app.services import payment_service, refund_service, subscription_service


async def describe_subscription(
    db: AsyncSession, subscription: Subscription, *, now: datetime | None = None
) -> SubscriptionDetailResponse:
    """Build the subscription view; derived values are recomputed on every call."""
    now = now or utcnow()
    plan = await get_plan(db, subscription.plan_id)
    pending_plan = await get_plan(db, subscription.pending_plan_id) if subscription.pending_plan_id else None
    eligibility = await refund_service.check_eligibility(db, subscription_id=subscription.id, now=now)

    base = SubscriptionResponse.model_validate(subscription)
    return SubscriptionDetailResponse(
        **base.model_dump(),
        plan=PlanResponse.model_validate(plan),
        pending_plan=PlanResponse.model_validate(pending_plan) if pending_plan else None,
        has_access=subscription.has_access,
        days_remaining=periods.days_remaining(subscription.current_period_end, now),
        can_request_refund=eligibility.can_request_refund,
        days_until_refund_expires=eligibility.days_until_refund_expires,
        has_pending_refund=eligibility.has_pending_refund,
    )


async def get_subscription_detail(
    db: AsyncSession, user_id: uuid.UUID
) -> SubscriptionDetailResponse | None:
    subscription = await subscription_service.get_live_subscription(db, user_id)
    if subscription is None:
        return None
    return await describe_subscription(db, subscription)


async def get_payment_history(db: AsyncSession, user_id: uuid.UUID) -> PaymentHistoryResponse:
    """Latest 50 payments and all refund requests of a user."""
    payments = await payment_service.list_user_payments(db, user_id, limit=50)
    refunds = await refund_service.list_refunds(db, user_id=user_id)
    return PaymentHistoryResponse(
        payments=[PaymentResponse.model_validate(p) for p in payments],
        refunds=[RefundResponse.model_validate(r) for r in refunds],
    )
