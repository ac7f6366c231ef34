"""Pydantic v2 request/response schemas for plan, payment and account endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

CheckoutType = Literal["purchase", "subscription", "merch"]

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class CreateOrderRequest(BaseModel):
    """Start a gateway checkout. The amount is priced server-side."""

    type: CheckoutType
    currency: str | None = Field(None, min_length=3, max_length=3)
    plan_id: uuid.UUID | None = None
    podcast_id: uuid.UUID | None = None
    merch_order_id: uuid.UUID | None = None


class VerifyPaymentRequest(BaseModel):
    """Gateway checkout response forwarded by the client."""

    razorpay_order_id: str = Field(..., min_length=1, max_length=255)
    razorpay_payment_id: str = Field(..., min_length=1, max_length=255)
    razorpay_signature: str = Field(..., min_length=1, max_length=255)
    type: CheckoutType
    plan_id: uuid.UUID | None = None
    podcast_id: uuid.UUID | None = None
    merch_order_id: uuid.UUID | None = None
    razorpay_subscription_id: str | None = Field(None, max_length=255)


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False
    reason: str | None = Field(None, max_length=1000)


class ChangePlanRequest(BaseModel):
    plan_id: uuid.UUID


class RefundRequestCreate(BaseModel):
    """Ask for a refund of a subscription or a one-off purchase."""

    subscription_id: uuid.UUID | None = None
    purchase_id: uuid.UUID | None = None
    reason: str | None = Field(None, max_length=1000)

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "RefundRequestCreate":
        if (self.subscription_id is None) == (self.purchase_id is None):
            raise ValueError("Provide exactly one of subscription_id or purchase_id")
        return self


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class PlanResponse(BaseModel):
    """Plan details for display."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    slug: str
    name: str
    description: str | None = None
    price: Decimal
    currency: str
    interval: str
    allow_downloads: bool
    allow_offline: bool
    includes_playlists: bool
    sort_order: int


class PlansListResponse(BaseModel):
    plans: list[PlanResponse]


class CreateOrderResponse(BaseModel):
    """Everything the client needs to open the gateway checkout."""

    order_id: str
    amount: int  # minor units (paise)
    currency: str
    key: str
    payment_id: uuid.UUID


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    already_processed: bool
    payment_id: uuid.UUID
    subscription_id: uuid.UUID | None = None


class SubscriptionResponse(BaseModel):
    """A subscription row as stored."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    plan_id: uuid.UUID
    status: str
    amount: Decimal
    currency: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    pending_plan_id: uuid.UUID | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    gateway_subscription_id: str | None = None
    created_at: datetime
    updated_at: datetime


class SubscriptionDetailResponse(SubscriptionResponse):
    """The caller's live subscription with values derived at read time."""

    plan: PlanResponse
    pending_plan: PlanResponse | None = None
    has_access: bool
    days_remaining: int
    can_request_refund: bool
    days_until_refund_expires: int
    has_pending_refund: bool


class SubscriptionActionResponse(BaseModel):
    message: str
    subscription: SubscriptionResponse
    effective_at: datetime | None = None
    can_request_refund: bool | None = None
    days_until_refund_expires: int | None = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: str
    amount: Decimal
    currency: str
    status: str
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    ref_type: str | None = None
    ref_id: uuid.UUID | None = None
    plan_id: uuid.UUID | None = None
    podcast_id: uuid.UUID | None = None
    details: dict[str, Any] | None = None
    completed_at: datetime | None = None
    created_at: datetime


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    subscription_id: uuid.UUID | None = None
    purchase_id: uuid.UUID | None = None
    payment_id: uuid.UUID | None = None
    amount: Decimal
    currency: str
    reason: str | None = None
    status: str
    admin_notes: str | None = None
    gateway_refund_id: str | None = None
    processed_by: uuid.UUID | None = None
    processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class PaymentHistoryResponse(BaseModel):
    payments: list[PaymentResponse]
    refunds: list[RefundResponse]
