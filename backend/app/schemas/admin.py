"""Pydantic v2 request/response schemas for admin endpoints."""

import uuid
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from app.schemas.billing import PaymentResponse, RefundResponse, SubscriptionResponse
from app.services.admin_actions import RefundAction, SubscriptionAction

# --- Request schemas ---


class SubscriptionActionRequest(BaseModel):
    """``data`` carries action arguments, e.g. ``{"days": 30}`` for extend."""

    subscription_id: uuid.UUID
    action: SubscriptionAction
    data: dict[str, Any] = Field(default_factory=dict)


class RefundActionRequest(BaseModel):
    refund_id: uuid.UUID
    action: RefundAction
    admin_notes: str | None = Field(None, max_length=2000)
    razorpay_refund_id: str | None = Field(None, max_length=255)


class AdminRefundCreateRequest(BaseModel):
    """Refund a payment directly. ``amount`` defaults to the full amount paid."""

    razorpay_payment_id: str = Field(..., min_length=1, max_length=255)
    amount: Decimal | None = Field(None, gt=0, decimal_places=2)
    reason: str | None = Field(None, max_length=1000)
    process_immediately: bool = False


# --- Response schemas ---


class SubscriptionListResponse(BaseModel):
    subscriptions: list[SubscriptionResponse]


class RefundListResponse(BaseModel):
    refunds: list[RefundResponse]


class AdminPaymentListResponse(BaseModel):
    payments: list[PaymentResponse]


class AdminSubscriptionActionResponse(BaseModel):
    message: str
    subscription: SubscriptionResponse


class AdminRefundActionResponse(BaseModel):
    message: str
    refund: RefundResponse
    manual_refund_required: bool = False
    gateway_error: str | None = None
