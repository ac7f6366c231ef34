"""Refund service: refund requests, eligibility and settlement."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import periods
from app.billing.errors import (
    DuplicateRefundRequest,
    GatewayError,
    InvalidStateTransition,
    ManualRefundRequired,
    RecordNotFound,
    RefundWindowExpired,
    ValidationFailed,
)
from app.billing.razorpay_client import create_refund, from_minor_units, to_minor_units
from app.billing.states import OPEN_REFUND_STATUSES, PaymentStatus, PurchaseStatus, RefundStatus
from app.config import settings
from app.database import utcnow
from app.models.catalog import Purchase
from app.models.payment import Payment
from app.models.refund_request import RefundRequest
from app.models.user import User
from app.services import subscription_service

logger = logging.getLogger(__name__)

_OPEN = [status.value for status in OPEN_REFUND_STATUSES]


@dataclass(frozen=True)
class RefundEligibility:
    can_request_refund: bool
    days_until_refund_expires: int
    has_pending_refund: bool
    payment: Payment | None


def _target_filter(subscription_id: uuid.UUID | None, purchase_id: uuid.UUID | None):
    if subscription_id is not None:
        return RefundRequest.subscription_id == subscription_id
    return RefundRequest.purchase_id == purchase_id


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def find_originating_payment(
    db: AsyncSession,
    *,
    subscription_id: uuid.UUID | None = None,
    purchase_id: uuid.UUID | None = None,
) -> Payment | None:
    """Latest completed, non-zero payment made for a subscription or purchase."""
    ref_type, ref_id = ("subscription", subscription_id) if subscription_id else ("purchase", purchase_id)
    result = await db.execute(
        select(Payment)
        .where(
            Payment.ref_type == ref_type,
            Payment.ref_id == ref_id,
            Payment.status == PaymentStatus.COMPLETED.value,
            Payment.amount > 0,
        )
        .order_by(Payment.completed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_open_refund(
    db: AsyncSession,
    *,
    subscription_id: uuid.UUID | None = None,
    purchase_id: uuid.UUID | None = None,
) -> RefundRequest | None:
    result = await db.execute(
        select(RefundRequest).where(
            _target_filter(subscription_id, purchase_id),
            RefundRequest.status.in_(_OPEN),
        )
    )
    return result.scalar_one_or_none()


async def check_eligibility(
    db: AsyncSession,
    *,
    subscription_id: uuid.UUID | None = None,
    purchase_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> RefundEligibility:
    """Derived refund hints for a subscription or purchase, recomputed on every read."""
    now = now or utcnow()
    open_refund = await get_open_refund(db, subscription_id=subscription_id, purchase_id=purchase_id)
    payment = await find_originating_payment(db, subscription_id=subscription_id, purchase_id=purchase_id)

    if payment is None or payment.completed_at is None:
        return RefundEligibility(False, 0, open_refund is not None, payment)

    window = settings.refund_window_days
    in_window = periods.within_refund_window(payment.completed_at, now, window)
    return RefundEligibility(
        can_request_refund=in_window and open_refund is None,
        days_until_refund_expires=periods.days_until_refund_expires(payment.completed_at, now, window),
        has_pending_refund=open_refund is not None,
        payment=payment,
    )


async def lock_refund(db: AsyncSession, refund_id: uuid.UUID) -> RefundRequest:
    result = await db.execute(
        select(RefundRequest).where(RefundRequest.id == refund_id).with_for_update()
    )
    refund = result.scalar_one_or_none()
    if refund is None:
        raise RecordNotFound("Refund request", refund_id)
    return refund


async def get_refund_by_gateway_id(db: AsyncSession, gateway_refund_id: str) -> RefundRequest | None:
    result = await db.execute(
        select(RefundRequest)
        .where(RefundRequest.gateway_refund_id == gateway_refund_id)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def list_refunds(
    db: AsyncSession,
    *,
    status: str | None = None,
    user_id: uuid.UUID | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[RefundRequest]:
    stmt = select(RefundRequest).order_by(RefundRequest.created_at.desc()).limit(limit).offset(offset)
    if status:
        stmt = stmt.where(RefundRequest.status == status)
    if user_id:
        stmt = stmt.where(RefundRequest.user_id == user_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# User requests
# ---------------------------------------------------------------------------


async def _lock_purchase(db: AsyncSession, purchase_id: uuid.UUID, user_id: uuid.UUID) -> Purchase:
    result = await db.execute(
        select(Purchase)
        .where(Purchase.id == purchase_id, Purchase.user_id == user_id)
        .with_for_update()
    )
    purchase = result.scalar_one_or_none()
    if purchase is None:
        raise RecordNotFound("Purchase", purchase_id)
    return purchase


async def request_refund(
    db: AsyncSession,
    user: User,
    *,
    subscription_id: uuid.UUID | None = None,
    purchase_id: uuid.UUID | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> RefundRequest:
    """Open a refund request inside the refund window.

    The target row is locked first so two concurrent requests for the same
    subscription or purchase serialize on it.
    """
    now = now or utcnow()
    if (subscription_id is None) == (purchase_id is None):
        raise ValidationFailed("Provide exactly one of subscription_id or purchase_id")

    if subscription_id is not None:
        subscription = await subscription_service.lock_subscription(db, subscription_id)
        if subscription.user_id != user.id:
            raise RecordNotFound("Subscription", subscription_id)
    else:
        await _lock_purchase(db, purchase_id, user.id)

    if await get_open_refund(db, subscription_id=subscription_id, purchase_id=purchase_id):
        raise DuplicateRefundRequest()

    payment = await find_originating_payment(db, subscription_id=subscription_id, purchase_id=purchase_id)
    if payment is None or payment.completed_at is None:
        raise ValidationFailed("No refundable payment found for this item")

    window = settings.refund_window_days
    if not periods.within_refund_window(payment.completed_at, now, window):
        raise RefundWindowExpired(window, periods.days_since(payment.completed_at, now))

    refund = RefundRequest(
        user_id=user.id,
        subscription_id=subscription_id,
        purchase_id=purchase_id,
        payment_id=payment.id,
        amount=payment.amount,
        currency=payment.currency,
        reason=reason,
        status=RefundStatus.PENDING.value,
    )
    db.add(refund)
    await db.flush()
    logger.info(
        "Refund request %s opened by user %s for payment %s (%s %s)",
        refund.id,
        user.id,
        payment.id,
        payment.amount,
        payment.currency,
    )
    return refund


# ---------------------------------------------------------------------------
# Admin workflow
# ---------------------------------------------------------------------------


def _require_status(refund: RefundRequest, expected: RefundStatus, event: str) -> None:
    if refund.status != expected:
        raise InvalidStateTransition(refund.status, event)


def _set_notes(refund: RefundRequest, notes: str | None) -> None:
    if notes:
        refund.admin_notes = notes


def _append_note(refund: RefundRequest, note: str) -> None:
    refund.admin_notes = f"{refund.admin_notes}\n{note}" if refund.admin_notes else note


async def approve_refund(
    db: AsyncSession, refund: RefundRequest, actor: User, notes: str | None = None
) -> RefundRequest:
    """Approve a pending request. No money moves until it is processed."""
    _require_status(refund, RefundStatus.PENDING, "approve refund")
    refund.status = RefundStatus.APPROVED.value
    refund.processed_by = actor.id
    _set_notes(refund, notes)
    await db.flush()
    logger.info("Refund %s approved by %s", refund.id, actor.id)
    return refund


async def reject_refund(
    db: AsyncSession, refund: RefundRequest, actor: User, notes: str | None = None
) -> RefundRequest:
    _require_status(refund, RefundStatus.PENDING, "reject refund")
    refund.status = RefundStatus.REJECTED.value
    refund.processed_by = actor.id
    refund.processed_at = utcnow()
    _set_notes(refund, notes)
    await db.flush()
    logger.info("Refund %s rejected by %s", refund.id, actor.id)
    return refund


async def _lock_payment(db: AsyncSession, payment_id: uuid.UUID | None) -> Payment | None:
    if payment_id is None:
        return None
    result = await db.execute(select(Payment).where(Payment.id == payment_id).with_for_update())
    return result.scalar_one_or_none()


async def settle_refund(
    db: AsyncSession,
    refund: RefundRequest,
    *,
    actor_id: uuid.UUID | None = None,
    gateway_refund_id: str | None = None,
) -> RefundRequest:
    """Mark a refund processed and revoke what it paid for.

    The originating payment becomes ``refunded``; a subscription is forced to
    ``cancelled`` and a purchase to ``refunded``.
    """
    refund.status = RefundStatus.PROCESSED.value
    refund.processed_at = utcnow()
    if actor_id is not None:
        refund.processed_by = actor_id
    if gateway_refund_id:
        refund.gateway_refund_id = gateway_refund_id

    payment = await _lock_payment(db, refund.payment_id)
    if payment is not None and payment.status != PaymentStatus.REFUNDED:
        payment.transition_to(PaymentStatus.REFUNDED)

    if refund.subscription_id is not None:
        subscription = await subscription_service.lock_subscription(db, refund.subscription_id)
        await subscription_service.force_cancel(db, subscription, "refunded")

    if refund.purchase_id is not None:
        result = await db.execute(
            select(Purchase).where(Purchase.id == refund.purchase_id).with_for_update()
        )
        purchase = result.scalar_one_or_none()
        if purchase is not None:
            purchase.status = PurchaseStatus.REFUNDED.value

    await db.flush()
    logger.info("Refund %s processed (%s %s)", refund.id, refund.amount, refund.currency)
    return refund


async def _send_to_gateway(refund: RefundRequest, payment: Payment | None) -> dict:
    """Create the Razorpay refund for ``refund``.

    Raises:
        ManualRefundRequired: the gateway call failed or the payment has no
            gateway id.
    """
    if payment is None or not payment.gateway_payment_id:
        raise ManualRefundRequired("No gateway payment id is recorded for this refund")

    try:
        return await create_refund(
            payment.gateway_payment_id,
            to_minor_units(refund.amount),
            notes={"refund_request_id": str(refund.id)},
        )
    except GatewayError as exc:
        logger.warning("Gateway refund failed for request %s: %s", refund.id, exc.message)
        raise ManualRefundRequired(
            "Gateway refund failed. Refund manually and mark the request processed.",
            gateway_error=exc.message,
        ) from exc


async def process_refund(
    db: AsyncSession, refund: RefundRequest, actor: User, notes: str | None = None
) -> RefundRequest:
    """Send an approved refund to the gateway, then settle it.

    Raises:
        ManualRefundRequired: the gateway call failed or the payment has no
            gateway id; the admin must refund by hand and use ``mark_processed``.
    """
    _require_status(refund, RefundStatus.APPROVED, "process refund")

    payment = await _lock_payment(db, refund.payment_id)
    gateway_refund = await _send_to_gateway(refund, payment)

    _set_notes(refund, notes)
    return await settle_refund(
        db,
        refund,
        actor_id=actor.id,
        gateway_refund_id=gateway_refund.get("id"),
    )


@dataclass(frozen=True)
class AdminRefundOutcome:
    refund: RefundRequest
    failure: ManualRefundRequired | None = None


async def create_admin_refund(
    db: AsyncSession,
    actor: User,
    *,
    gateway_payment_id: str,
    amount: Decimal | None = None,
    reason: str | None = None,
    process_immediately: bool = False,
) -> AdminRefundOutcome:
    """Open a refund on a customer's behalf, optionally sending it right away.

    Without ``process_immediately`` the request waits as ``pending``. Otherwise
    it is approved and sent to the gateway; when the gateway refuses, the
    approved request is kept with the failure in its notes and the outcome
    carries the :class:`ManualRefundRequired` error for the admin.
    """
    result = await db.execute(
        select(Payment).where(Payment.gateway_payment_id == gateway_payment_id).with_for_update()
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise RecordNotFound("Payment", gateway_payment_id)
    if payment.status != PaymentStatus.COMPLETED:
        raise ValidationFailed("Only completed payments can be refunded", payment_status=payment.status)

    subscription_id = payment.ref_id if payment.ref_type == "subscription" else None
    purchase_id = payment.ref_id if payment.ref_type == "purchase" else None
    if subscription_id is None and purchase_id is None:
        raise ValidationFailed("This payment is not for a subscription or a purchase")

    refund_amount = payment.amount if amount is None else amount
    if refund_amount <= 0 or refund_amount > payment.amount:
        raise ValidationFailed(
            "Refund amount must be positive and no more than the amount paid",
            max_amount=str(payment.amount),
        )

    if await get_open_refund(db, subscription_id=subscription_id, purchase_id=purchase_id) is not None:
        raise DuplicateRefundRequest()

    status = RefundStatus.APPROVED if process_immediately else RefundStatus.PENDING
    refund = RefundRequest(
        user_id=payment.user_id,
        subscription_id=subscription_id,
        purchase_id=purchase_id,
        payment_id=payment.id,
        amount=refund_amount,
        currency=payment.currency,
        reason=reason or "Admin initiated refund",
        status=status.value,
        processed_by=actor.id,
    )
    db.add(refund)
    await db.flush()
    logger.info(
        "Refund request %s opened by admin %s for payment %s (%s %s, %s)",
        refund.id,
        actor.id,
        payment.id,
        refund_amount,
        payment.currency,
        status.value,
    )

    if not process_immediately:
        return AdminRefundOutcome(refund)

    try:
        gateway_refund = await _send_to_gateway(refund, payment)
    except ManualRefundRequired as exc:
        _append_note(refund, f"Refund failed: {exc.extra.get('gateway_error') or exc.message}")
        await db.flush()
        return AdminRefundOutcome(refund, failure=exc)

    await settle_refund(db, refund, actor_id=actor.id, gateway_refund_id=gateway_refund.get("id"))
    return AdminRefundOutcome(refund)


async def mark_refund_processed(
    db: AsyncSession,
    refund: RefundRequest,
    actor: User,
    notes: str | None = None,
    gateway_refund_id: str | None = None,
) -> RefundRequest:
    """Record a refund the admin completed outside the gateway API."""
    _require_status(refund, RefundStatus.APPROVED, "mark refund processed")
    _set_notes(refund, notes)
    return await settle_refund(db, refund, actor_id=actor.id, gateway_refund_id=gateway_refund_id)


# ---------------------------------------------------------------------------
# Gateway notifications
# ---------------------------------------------------------------------------


async def get_payment_by_gateway_id(db: AsyncSession, gateway_payment_id: str) -> Payment | None:
    result = await db.execute(select(Payment).where(Payment.gateway_payment_id == gateway_payment_id))
    return result.scalar_one_or_none()


async def attach_gateway_refund(
    db: AsyncSession,
    gateway_refund_id: str,
    gateway_payment_id: str,
    amount_minor: int | None = None,
) -> RefundRequest | None:
    """Link a refund created on the gateway to its request.

    An open request for the same item is approved and linked; otherwise an
    ``approved`` request is recorded. Returns None when the payment is unknown
    or pays for something that cannot carry a refund request.
    """
    existing = await get_refund_by_gateway_id(db, gateway_refund_id)
    if existing is not None:
        return existing

    payment = await get_payment_by_gateway_id(db, gateway_payment_id)
    if payment is None:
        logger.warning("No payment found for gateway payment %s (refund %s)", gateway_payment_id, gateway_refund_id)
        return None

    subscription_id = payment.ref_id if payment.ref_type == "subscription" else None
    purchase_id = payment.ref_id if payment.ref_type == "purchase" else None
    if subscription_id is None and purchase_id is None:
        logger.warning("Refund %s is for a %s payment, not tracked as a request", gateway_refund_id, payment.type)
        return None

    refund = await get_open_refund(db, subscription_id=subscription_id, purchase_id=purchase_id)
    if refund is None:
        amount = from_minor_units(amount_minor) if amount_minor is not None else payment.amount
        refund = RefundRequest(
            user_id=payment.user_id,
            subscription_id=subscription_id,
            purchase_id=purchase_id,
            payment_id=payment.id,
            amount=amount,
            currency=payment.currency,
            reason="Initiated via Razorpay Dashboard",
            status=RefundStatus.APPROVED.value,
        )
        db.add(refund)
    else:
        refund.status = RefundStatus.APPROVED.value

    refund.gateway_refund_id = gateway_refund_id
    await db.flush()
    logger.info("Gateway refund %s linked to request %s", gateway_refund_id, refund.id)
    return refund


async def confirm_gateway_refund(
    db: AsyncSession,
    gateway_refund_id: str,
    gateway_payment_id: str,
    amount_minor: int | None = None,
) -> RefundRequest | None:
    """Handle the gateway's confirmation that a refund went through. Idempotent."""
    refund = await attach_gateway_refund(db, gateway_refund_id, gateway_payment_id, amount_minor)
    if refund is None:
        return None
    if refund.status == RefundStatus.PROCESSED:
        logger.info("Refund %s already processed, skipping", refund.id)
        return refund
    if refund.status == RefundStatus.REJECTED:
        raise InvalidStateTransition(refund.status, "confirm refund")
    return await settle_refund(db, refund, gateway_refund_id=gateway_refund_id)


async def record_gateway_refund_failure(
    db: AsyncSession, gateway_refund_id: str, description: str | None
) -> RefundRequest | None:
    """Keep the request approved and note the failure for the admin."""
    refund = await get_refund_by_gateway_id(db, gateway_refund_id)
    if refund is None:
        logger.warning("No refund request found for failed gateway refund %s", gateway_refund_id)
        return None
    if refund.status == RefundStatus.PROCESSED:
        logger.warning("Gateway reported failure for already processed refund %s", refund.id)
        return refund

    _append_note(refund, f"Refund failed: {description or 'Unknown error'}")
    await db.flush()
    logger.warning("Gateway refund %s failed for request %s: %s", gateway_refund_id, refund.id, description)
    return refund
