"""Self-service endpoints: the caller's subscription, refunds and payment history."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.models.user import User
from app.schemas.billing import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    PaymentHistoryResponse,
    RefundRequestCreate,
    RefundResponse,
    SubscriptionActionResponse,
    SubscriptionDetailResponse,
    SubscriptionResponse,
)
from app.services import account_service, refund_service, subscription_service

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.get("/subscription", response_model=SubscriptionDetailResponse | None)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionDetailResponse | None:
    """Get the live subscription with derived fields, or null."""
    return await account_service.get_subscription_detail(db, current_user.id)


@router.post("/subscription/cancel", response_model=SubscriptionActionResponse)
async def cancel_subscription(
    body: CancelSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionActionResponse:
    """Cancel now or at the end of the current period."""
    subscription = await subscription_service.require_live_subscription(db, current_user.id)
    await subscription_service.cancel_subscription(
        db,
        subscription,
        immediate=body.immediate,
        reason=body.reason,
    )
    eligibility = await refund_service.check_eligibility(db, subscription_id=subscription.id)

    if body.immediate:
        message = "Subscription cancelled"
        effective_at = subscription.cancelled_at
    else:
        message = "Subscription will be cancelled at the end of the billing period"
        effective_at = subscription.current_period_end

    return SubscriptionActionResponse(
        message=message,
        subscription=SubscriptionResponse.model_validate(subscription),
        effective_at=effective_at,
        can_request_refund=eligibility.can_request_refund,
        days_until_refund_expires=eligibility.days_until_refund_expires,
    )


@router.post("/subscription/reactivate", response_model=SubscriptionActionResponse)
async def reactivate_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionActionResponse:
    """Undo a scheduled cancellation."""
    subscription = await subscription_service.require_live_subscription(db, current_user.id)
    await subscription_service.undo_cancellation(db, subscription)
    return SubscriptionActionResponse(
        message="Subscription reactivated",
        subscription=SubscriptionResponse.model_validate(subscription),
    )


@router.post("/subscription/change", response_model=SubscriptionActionResponse)
async def change_plan(
    body: ChangePlanRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionActionResponse:
    """Schedule a plan change for the next period boundary."""
    subscription = await subscription_service.require_live_subscription(db, current_user.id)
    await subscription_service.change_plan(db, subscription, body.plan_id)

    if subscription.pending_plan_id is None:
        message = "Scheduled plan change cancelled"
    else:
        message = "Plan change scheduled for the end of the billing period"
    return SubscriptionActionResponse(
        message=message,
        subscription=SubscriptionResponse.model_validate(subscription),
        effective_at=subscription.current_period_end,
    )


@router.post("/refunds", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
async def request_refund(
    body: RefundRequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> RefundResponse:
    """Request a refund inside the refund window."""
    refund = await refund_service.request_refund(
        db,
        current_user,
        subscription_id=body.subscription_id,
        purchase_id=body.purchase_id,
        reason=body.reason,
    )
    return RefundResponse.model_validate(refund)


@router.get("/payments", response_model=PaymentHistoryResponse)
async def list_payments(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PaymentHistoryResponse:
    """Latest payments and refund requests."""
    return await account_service.get_payment_history(db, current_user.id)
