"""Payment service: order creation, checkout verification and payment commits.

Client checkout verification and the gateway webhooks both end in
:func:`commit_confirmed_payment`, which applies a payment's effect exactly once.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import InvalidSignature, PaymentRecordNotFound, RecordNotFound, ValidationFailed
from app.billing.plans import get_active_plan, get_plan
from app.billing.razorpay_client import create_order, to_minor_units, verify_payment_signature
from app.billing.states import MerchOrderStatus, PaymentStatus, PaymentType, PurchaseStatus
from app.config import settings
from app.database import utcnow
from app.models.catalog import MerchOrder, Podcast, Purchase
from app.models.payment import Payment
from app.models.subscription import Subscription
from app.models.user import User
from app.services import subscription_service

logger = logging.getLogger(__name__)

# Charges a client can start a checkout for
CHECKOUT_TYPES = frozenset({PaymentType.PURCHASE, PaymentType.SUBSCRIPTION, PaymentType.MERCH})


@dataclass(frozen=True)
class ChargeQuote:
    """A server-side price for a checkout."""

    payment_type: PaymentType
    amount: Decimal
    currency: str
    plan_id: uuid.UUID | None = None
    podcast_id: uuid.UUID | None = None
    merch_order_id: uuid.UUID | None = None


@dataclass
class VerificationResult:
    payment: Payment
    already_processed: bool
    subscription: Subscription | None = None


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_payment_by_order_id(
    db: AsyncSession, gateway_order_id: str, *, for_update: bool = True
) -> Payment | None:
    stmt = select(Payment).where(Payment.gateway_order_id == gateway_order_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_user_payments(db: AsyncSession, user_id: uuid.UUID, limit: int = 50) -> list[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_payments(
    db: AsyncSession,
    *,
    payment_type: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Payment]:
    """All users' payments, newest first (admin view)."""
    stmt = select(Payment).order_by(Payment.created_at.desc()).limit(limit).offset(offset)
    if payment_type:
        stmt = stmt.where(Payment.type == payment_type)
    if status:
        stmt = stmt.where(Payment.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Order creation
# ---------------------------------------------------------------------------


async def _has_completed_purchase(db: AsyncSession, user_id: uuid.UUID, podcast_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(Purchase.id).where(
            Purchase.user_id == user_id,
            Purchase.podcast_id == podcast_id,
            Purchase.status == PurchaseStatus.COMPLETED.value,
        )
    )
    return result.first() is not None


async def quote_charge(
    db: AsyncSession,
    user: User,
    payment_type: PaymentType,
    *,
    plan_id: uuid.UUID | None = None,
    podcast_id: uuid.UUID | None = None,
    merch_order_id: uuid.UUID | None = None,
) -> ChargeQuote:
    """Price a checkout from server-side records. Client amounts are never used."""
    match payment_type:
        case PaymentType.PURCHASE:
            if podcast_id is None:
                raise ValidationFailed("podcast_id is required for a purchase")
            podcast = await db.get(Podcast, podcast_id)
            if podcast is None:
                raise RecordNotFound("Podcast", podcast_id)
            if podcast.is_free or podcast.price <= 0:
                raise ValidationFailed("This podcast is free")
            if await _has_completed_purchase(db, user.id, podcast.id):
                raise ValidationFailed("You already own this podcast")
            return ChargeQuote(payment_type, podcast.price, settings.default_currency, podcast_id=podcast.id)

        case PaymentType.SUBSCRIPTION:
            if plan_id is None:
                raise ValidationFailed("plan_id is required for a subscription")
            plan = await get_active_plan(db, plan_id)
            if plan.price <= 0:
                raise ValidationFailed("Free plans do not require payment")
            return ChargeQuote(payment_type, plan.price, plan.currency, plan_id=plan.id)

        case PaymentType.MERCH:
            if merch_order_id is None:
                raise ValidationFailed("merch_order_id is required for a merch checkout")
            order = await db.get(MerchOrder, merch_order_id)
            if order is None or order.user_id != user.id:
                raise RecordNotFound("Merch order", merch_order_id)
            if order.status != MerchOrderStatus.PENDING:
                raise ValidationFailed("This order is not awaiting payment", status=order.status)
            return ChargeQuote(payment_type, order.total_amount, order.currency, merch_order_id=order.id)

        case _:
            raise ValidationFailed(f"Checkout is not available for '{payment_type}' payments")


async def create_checkout_order(
    db: AsyncSession,
    user: User,
    payment_type: PaymentType,
    *,
    currency: str | None = None,
    plan_id: uuid.UUID | None = None,
    podcast_id: uuid.UUID | None = None,
    merch_order_id: uuid.UUID | None = None,
) -> tuple[Payment, dict[str, Any]]:
    """Create a gateway order and the pending Payment that tracks it."""
    quote = await quote_charge(
        db,
        user,
        payment_type,
        plan_id=plan_id,
        podcast_id=podcast_id,
        merch_order_id=merch_order_id,
    )
    if currency and currency.upper() != quote.currency:
        raise ValidationFailed(
            f"This item is priced in {quote.currency}",
            currency=quote.currency,
        )

    receipt = f"{payment_type.value}_{user.id.hex[:12]}_{secrets.token_hex(6)}"
    order = await create_order(
        to_minor_units(quote.amount),
        quote.currency,
        receipt,
        notes={"user_id": str(user.id), "type": payment_type.value},
    )

    payment = Payment(
        user_id=user.id,
        type=payment_type.value,
        amount=quote.amount,
        currency=quote.currency,
        status=PaymentStatus.PENDING.value,
        gateway_order_id=order["id"],
        plan_id=quote.plan_id,
        podcast_id=quote.podcast_id,
        merch_order_id=quote.merch_order_id,
        details={"receipt": receipt},
    )

    match payment_type:
        case PaymentType.PURCHASE:
            purchase = Purchase(
                user_id=user.id,
                podcast_id=quote.podcast_id,
                amount=quote.amount,
                currency=quote.currency,
                status=PurchaseStatus.PENDING.value,
                gateway_order_id=order["id"],
            )
            db.add(purchase)
            await db.flush()
            payment.ref_type, payment.ref_id = "purchase", purchase.id
        case PaymentType.MERCH:
            merch_order = await db.get(MerchOrder, quote.merch_order_id)
            merch_order.gateway_order_id = order["id"]
            payment.ref_type, payment.ref_id = "merch", quote.merch_order_id
        case _:
            payment.ref_type = "subscription"

    db.add(payment)
    await db.flush()
    logger.info(
        "Created %s order %s for user %s (%s %s)",
        payment_type.value,
        order["id"],
        user.id,
        quote.amount,
        quote.currency,
    )
    return payment, order


# ---------------------------------------------------------------------------
# Verification and commit
# ---------------------------------------------------------------------------


def _check_intent(
    payment: Payment,
    payment_type: PaymentType,
    plan_id: uuid.UUID | None,
    podcast_id: uuid.UUID | None,
    merch_order_id: uuid.UUID | None,
) -> None:
    mismatches = []
    if payment.type != payment_type:
        mismatches.append("type")
    if plan_id is not None and plan_id != payment.plan_id:
        mismatches.append("plan_id")
    if podcast_id is not None and podcast_id != payment.podcast_id:
        mismatches.append("podcast_id")
    if merch_order_id is not None and merch_order_id != payment.merch_order_id:
        mismatches.append("merch_order_id")
    if mismatches:
        raise ValidationFailed("Payment details do not match the order", fields=mismatches)


async def verify_checkout(
    db: AsyncSession,
    user: User,
    *,
    order_id: str,
    payment_id: str,
    signature: str,
    payment_type: PaymentType,
    plan_id: uuid.UUID | None = None,
    podcast_id: uuid.UUID | None = None,
    merch_order_id: uuid.UUID | None = None,
    gateway_subscription_id: str | None = None,
) -> VerificationResult:
    """Verify a completed client checkout and apply it once."""
    payment = await get_payment_by_order_id(db, order_id)
    if payment is None or payment.user_id != user.id:
        logger.warning("Verification for unknown order %s by user %s", order_id, user.id)
        raise PaymentRecordNotFound()

    _check_intent(payment, payment_type, plan_id, podcast_id, merch_order_id)

    if not verify_payment_signature(order_id, payment_id, signature):
        logger.warning("Invalid payment signature for order %s (payment %s)", order_id, payment_id)
        raise InvalidSignature()

    return await commit_confirmed_payment(
        db,
        payment,
        gateway_payment_id=payment_id,
        signature=signature,
        gateway_subscription_id=gateway_subscription_id,
    )


async def commit_confirmed_payment(
    db: AsyncSession,
    payment: Payment,
    *,
    gateway_payment_id: str,
    signature: str | None = None,
    details: dict[str, Any] | None = None,
    gateway_subscription_id: str | None = None,
) -> VerificationResult:
    """Mark a locked payment completed and apply its effect.

    A payment that is already completed (or refunded) is reported as
    ``already_processed`` and nothing is applied again, except that a Razorpay
    subscription id seen for the first time is linked to the subscription.
    """
    if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
        logger.info("Payment %s for order %s already processed", payment.id, payment.gateway_order_id)
        subscription = None
        if payment.ref_type == "subscription" and payment.ref_id is not None:
            subscription = await db.get(Subscription, payment.ref_id)
            if subscription is not None and gateway_subscription_id and subscription.gateway_subscription_id is None:
                subscription.gateway_subscription_id = gateway_subscription_id
                await db.flush()
        return VerificationResult(payment, already_processed=True, subscription=subscription)

    payment.transition_to(PaymentStatus.COMPLETED)
    payment.gateway_payment_id = gateway_payment_id
    if signature:
        payment.gateway_signature = signature
    if details:
        payment.details = {**(payment.details or {}), **details}

    subscription = None
    match PaymentType(payment.type):
        case PaymentType.SUBSCRIPTION:
            plan = await get_plan(db, payment.plan_id)
            subscription = await subscription_service.open_subscription(
                db,
                payment.user_id,
                plan,
                gateway_payment_id=gateway_payment_id,
                gateway_subscription_id=gateway_subscription_id,
            )
            payment.ref_type, payment.ref_id = "subscription", subscription.id
        case PaymentType.PURCHASE:
            purchase = await _lock_ref(db, Purchase, payment.ref_id)
            purchase.status = PurchaseStatus.COMPLETED.value
            purchase.gateway_payment_id = gateway_payment_id
        case PaymentType.MERCH:
            merch_order = await _lock_ref(db, MerchOrder, payment.ref_id)
            merch_order.status = MerchOrderStatus.PAID.value
            merch_order.gateway_payment_id = gateway_payment_id
        case _:
            logger.warning("Payment %s of type %s has no checkout effect", payment.id, payment.type)

    await db.flush()
    logger.info(
        "Payment %s completed (%s %s, order %s)",
        payment.id,
        payment.amount,
        payment.currency,
        payment.gateway_order_id,
    )
    return VerificationResult(payment, already_processed=False, subscription=subscription)


async def _lock_ref(db: AsyncSession, model, ref_id: uuid.UUID | None):
    result = await db.execute(select(model).where(model.id == ref_id).with_for_update())
    record = result.scalar_one_or_none()
    if record is None:
        raise RecordNotFound(model.__name__, ref_id)
    return record


# ---------------------------------------------------------------------------
# Gateway notifications
# ---------------------------------------------------------------------------


async def mark_payment_authorized(
    db: AsyncSession, payment: Payment, gateway_payment_id: str, details: dict[str, Any] | None = None
) -> Payment:
    if payment.status != PaymentStatus.PENDING:
        logger.info("Payment %s is %s, ignoring authorization", payment.id, payment.status)
        return payment
    payment.transition_to(PaymentStatus.AUTHORIZED)
    payment.gateway_payment_id = gateway_payment_id
    if details:
        payment.details = {**(payment.details or {}), **details}
    await db.flush()
    return payment


async def mark_payment_failed(
    db: AsyncSession, payment: Payment, reason: str | None, details: dict[str, Any] | None = None
) -> Payment:
    if payment.status not in (PaymentStatus.PENDING, PaymentStatus.AUTHORIZED):
        logger.info("Payment %s is %s, ignoring failure", payment.id, payment.status)
        return payment
    payment.transition_to(PaymentStatus.FAILED)
    payment.failure_reason = reason
    if details:
        payment.details = {**(payment.details or {}), **details}

    if payment.type == PaymentType.PURCHASE and payment.ref_id is not None:
        purchase = await _lock_ref(db, Purchase, payment.ref_id)
        if purchase.status == PurchaseStatus.PENDING:
            purchase.status = PurchaseStatus.FAILED.value

    await db.flush()
    logger.info("Payment %s failed: %s", payment.id, reason)
    return payment


async def record_renewal_payment(
    db: AsyncSession,
    subscription: Subscription,
    *,
    gateway_payment_id: str,
    amount: Decimal,
    currency: str,
    details: dict[str, Any] | None = None,
) -> Payment | None:
    """Record a recurring charge. Returns None if this charge was already recorded."""
    result = await db.execute(select(Payment).where(Payment.gateway_payment_id == gateway_payment_id))
    if result.scalar_one_or_none() is not None:
        logger.info("Renewal payment %s already recorded", gateway_payment_id)
        return None

    payment = Payment(
        user_id=subscription.user_id,
        type=PaymentType.SUBSCRIPTION_RENEWAL.value,
        amount=amount,
        currency=currency,
        status=PaymentStatus.COMPLETED.value,
        gateway_payment_id=gateway_payment_id,
        ref_type="subscription",
        ref_id=subscription.id,
        plan_id=subscription.plan_id,
        completed_at=utcnow(),
        details=details,
    )
    db.add(payment)
    await db.flush()
    return payment
