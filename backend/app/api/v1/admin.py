"""Admin endpoints: subscription, refund and payment management."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, require_admin
from app.billing.states import PaymentStatus, PaymentType
from app.models.user import User
from app.schemas.admin import (
    AdminPaymentListResponse,
    AdminRefundActionResponse,
    AdminRefundCreateRequest,
    AdminSubscriptionActionResponse,
    RefundActionRequest,
    RefundListResponse,
    SubscriptionActionRequest,
    SubscriptionListResponse,
)
from app.schemas.billing import PaymentResponse, RefundResponse, SubscriptionResponse
from app.services import payment_service, refund_service, subscription_service
from app.services.admin_actions import apply_refund_action, apply_subscription_action, create_refund_for_payment

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/subscriptions", response_model=SubscriptionListResponse)
async def list_subscriptions(
    status: str | None = Query(None, description="Filter by subscription status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> SubscriptionListResponse:
    subscriptions = await subscription_service.list_subscriptions(db, status=status, limit=limit, offset=offset)
    return SubscriptionListResponse(
        subscriptions=[SubscriptionResponse.model_validate(s) for s in subscriptions]
    )


@router.post("/subscriptions", response_model=AdminSubscriptionActionResponse)
async def subscription_action(
    body: SubscriptionActionRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> AdminSubscriptionActionResponse:
    """Apply pause, cancel, reactivate or extend to a subscription."""
    result = await apply_subscription_action(db, admin, body.subscription_id, body.action, body.data)
    return AdminSubscriptionActionResponse(
        message=result.message,
        subscription=SubscriptionResponse.model_validate(result.record),
    )


@router.get("/refunds", response_model=RefundListResponse)
async def list_refunds(
    status: str | None = Query(None, description="Filter by refund status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> RefundListResponse:
    refunds = await refund_service.list_refunds(db, status=status, limit=limit, offset=offset)
    return RefundListResponse(refunds=[RefundResponse.model_validate(r) for r in refunds])


@router.post("/refunds", response_model=AdminRefundActionResponse)
async def refund_action(
    body: RefundActionRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> AdminRefundActionResponse:
    """Approve, reject, process or mark a refund request processed.

    A failed gateway refund returns 502 with ``manual_refund_required: true``.
    """
    result = await apply_refund_action(
        db,
        admin,
        body.refund_id,
        body.action,
        {"admin_notes": body.admin_notes, "razorpay_refund_id": body.razorpay_refund_id},
    )
    return AdminRefundActionResponse(
        message=result.message,
        refund=RefundResponse.model_validate(result.record),
        manual_refund_required=result.manual_refund_required,
    )


@router.post("/refunds/create", response_model=AdminRefundActionResponse, status_code=status.HTTP_201_CREATED)
async def create_refund(
    body: AdminRefundCreateRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> AdminRefundActionResponse:
    """Refund a payment on the customer's behalf.

    With ``process_immediately`` the refund is sent to the gateway at once. A
    gateway failure keeps the approved request and returns
    ``manual_refund_required: true``.
    """
    result = await create_refund_for_payment(
        db,
        admin,
        gateway_payment_id=body.razorpay_payment_id,
        amount=body.amount,
        reason=body.reason,
        process_immediately=body.process_immediately,
    )
    return AdminRefundActionResponse(
        message=result.message,
        refund=RefundResponse.model_validate(result.record),
        manual_refund_required=result.manual_refund_required,
        gateway_error=result.gateway_error,
    )


@router.get("/payments", response_model=AdminPaymentListResponse)
async def list_payments(
    type: PaymentType | None = Query(None, description="Filter by payment type"),
    status: PaymentStatus | None = Query(None, description="Filter by payment status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> AdminPaymentListResponse:
    payments = await payment_service.list_payments(
        db,
        payment_type=type.value if type else None,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
    )
    return AdminPaymentListResponse(payments=[PaymentResponse.model_validate(p) for p in payments])
