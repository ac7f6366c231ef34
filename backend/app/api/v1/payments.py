"""Payment endpoints: gateway order creation and checkout verification."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.billing.states import PaymentType
from app.config import settings
from app.models.user import User
from app.schemas.billing import (
    CreateOrderRequest,
    CreateOrderResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from app.services.payment_service import create_checkout_order, verify_checkout

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    body: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CreateOrderResponse:
    """Create a Razorpay order for a purchase, subscription or merch checkout."""
    payment, order = await create_checkout_order(
        db,
        current_user,
        PaymentType(body.type),
        currency=body.currency,
        plan_id=body.plan_id,
        podcast_id=body.podcast_id,
        merch_order_id=body.merch_order_id,
    )
    return CreateOrderResponse(
        order_id=order["id"],
        amount=order["amount"],
        currency=order["currency"],
        key=settings.razorpay_key_id,
        payment_id=payment.id,
    )


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> VerifyPaymentResponse:
    """Verify the checkout signature and apply the payment once."""
    result = await verify_checkout(
        db,
        current_user,
        order_id=body.razorpay_order_id,
        payment_id=body.razorpay_payment_id,
        signature=body.razorpay_signature,
        payment_type=PaymentType(body.type),
        plan_id=body.plan_id,
        podcast_id=body.podcast_id,
        merch_order_id=body.merch_order_id,
        gateway_subscription_id=body.razorpay_subscription_id,
    )
    return VerifyPaymentResponse(
        already_processed=result.already_processed,
        payment_id=result.payment.id,
        subscription_id=result.subscription.id if result.subscription else None,
    )
