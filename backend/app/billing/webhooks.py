"""Razorpay webhook event handlers: payments, refunds and recurring subscriptions."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.razorpay_client import from_minor_units
from app.services import payment_service, refund_service, subscription_service

logger = logging.getLogger(__name__)


def _entity(event: dict[str, Any], name: str) -> dict[str, Any] | None:
    """Return ``payload.<name>.entity`` or None when the event does not carry it."""
    return ((event.get("payload") or {}).get(name) or {}).get("entity")


def _ts_to_naive(ts: int | None) -> datetime | None:
    """Convert a Razorpay Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def _payment_details(payment: dict[str, Any], event_type: str) -> dict[str, Any]:
    card = payment.get("card") or {}
    return {
        "webhook_event": event_type,
        "method": payment.get("method"),
        "bank": payment.get("bank"),
        "wallet": payment.get("wallet"),
        "vpa": payment.get("vpa"),
        "card": {"last4": card.get("last4"), "network": card.get("network")} if card else None,
    }


def _gateway_subscription_id(payment: dict[str, Any]) -> str | None:
    """Razorpay subscription id carried by a subscription checkout payment, if any."""
    return payment.get("subscription_id") or (payment.get("notes") or {}).get("razorpay_subscription_id")


# ---------------------------------------------------------------------------
# Payment events
# ---------------------------------------------------------------------------


async def handle_payment_authorized(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle payment.authorized: record the authorization on the pending payment."""
    payment_entity = _entity(event, "payment")
    if not payment_entity or not payment_entity.get("order_id"):
        logger.info("payment.authorized without an order id, skipping")
        return

    payment = await payment_service.get_payment_by_order_id(db, payment_entity["order_id"])
    if payment is None:
        logger.warning("No local payment found for order %s (payment.authorized)", payment_entity["order_id"])
        return

    await payment_service.mark_payment_authorized(
        db,
        payment,
        payment_entity["id"],
        _payment_details(payment_entity, "payment.authorized"),
    )


async def handle_payment_captured(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle payment.captured: server-side confirmation of a checkout."""
    payment_entity = _entity(event, "payment")
    if not payment_entity or not payment_entity.get("order_id"):
        logger.info("payment.captured without an order id, skipping")
        return

    payment = await payment_service.get_payment_by_order_id(db, payment_entity["order_id"])
    if payment is None:
        logger.warning("No local payment found for order %s (payment.captured)", payment_entity["order_id"])
        return

    details = _payment_details(payment_entity, "payment.captured")
    details.update(fee=payment_entity.get("fee"), tax=payment_entity.get("tax"))
    await payment_service.commit_confirmed_payment(
        db,
        payment,
        gateway_payment_id=payment_entity["id"],
        details=details,
        gateway_subscription_id=_gateway_subscription_id(payment_entity),
    )


async def handle_payment_failed(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle payment.failed: mark the pending payment (and purchase) failed."""
    payment_entity = _entity(event, "payment")
    if not payment_entity or not payment_entity.get("order_id"):
        logger.info("payment.failed without an order id, skipping")
        return

    payment = await payment_service.get_payment_by_order_id(db, payment_entity["order_id"])
    if payment is None:
        logger.warning("No local payment found for order %s (payment.failed)", payment_entity["order_id"])
        return

    await payment_service.mark_payment_failed(
        db,
        payment,
        payment_entity.get("error_description") or payment_entity.get("error_reason"),
        {
            "webhook_event": "payment.failed",
            "error_code": payment_entity.get("error_code"),
            "error_source": payment_entity.get("error_source"),
            "error_step": payment_entity.get("error_step"),
        },
    )


async def handle_order_paid(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle order.paid: same commit routine as payment.captured."""
    order_entity = _entity(event, "order")
    payment_entity = _entity(event, "payment")
    if not order_entity or not payment_entity:
        logger.info("order.paid without order and payment entities, skipping")
        return

    payment = await payment_service.get_payment_by_order_id(db, order_entity["id"])
    if payment is None:
        logger.warning("No local payment found for order %s (order.paid)", order_entity["id"])
        return

    await payment_service.commit_confirmed_payment(
        db,
        payment,
        gateway_payment_id=payment_entity["id"],
        details={"webhook_event": "order.paid", "amount_paid": order_entity.get("amount_paid")},
        gateway_subscription_id=_gateway_subscription_id(payment_entity),
    )


# ---------------------------------------------------------------------------
# Refund events
# ---------------------------------------------------------------------------


async def handle_refund_created(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle refund.created: link dashboard refunds to a refund request."""
    refund_entity = _entity(event, "refund")
    if not refund_entity:
        return
    await refund_service.attach_gateway_refund(
        db,
        refund_entity["id"],
        refund_entity["payment_id"],
        refund_entity.get("amount"),
    )


async def handle_refund_processed(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle refund.processed: settle the refund request (idempotent)."""
    refund_entity = _entity(event, "refund")
    if not refund_entity:
        return
    await refund_service.confirm_gateway_refund(
        db,
        refund_entity["id"],
        refund_entity["payment_id"],
        refund_entity.get("amount"),
    )


async def handle_refund_failed(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle refund.failed: keep the request approved and note the failure."""
    refund_entity = _entity(event, "refund")
    if not refund_entity:
        return
    error = refund_entity.get("error") or {}
    await refund_service.record_gateway_refund_failure(db, refund_entity["id"], error.get("description"))


# ---------------------------------------------------------------------------
# Recurring subscription events
# ---------------------------------------------------------------------------


async def _find_subscription(event: dict[str, Any], db: AsyncSession, event_type: str, *, link: bool = False):
    """Return the local subscription for the event's Razorpay subscription.

    With ``link`` set, an unknown gateway subscription whose notes carry a
    ``user_id`` is attached to that user's live subscription.
    """
    sub_entity = _entity(event, "subscription")
    if not sub_entity:
        return None, None
    subscription = await subscription_service.get_subscription_by_gateway_id(db, sub_entity["id"])
    if subscription is None and link:
        user_id = _notes_user_id(sub_entity)
        if user_id is not None:
            subscription = await subscription_service.link_gateway_subscription(db, user_id, sub_entity["id"])
    if subscription is None:
        logger.warning("No local subscription found for Razorpay subscription %s (%s)", sub_entity["id"], event_type)
    return subscription, sub_entity


def _notes_user_id(entity: dict[str, Any]) -> uuid.UUID | None:
    raw = (entity.get("notes") or {}).get("user_id")
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        logger.warning("Ignoring malformed user_id %r in notes of %s", raw, entity.get("id"))
        return None


async def handle_subscription_activated(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle subscription.activated: link the Razorpay subscription to the local row."""
    await _find_subscription(event, db, "subscription.activated", link=True)


async def handle_subscription_charged(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle subscription.charged: roll the period forward and record the charge."""
    subscription, sub_entity = await _find_subscription(event, db, "subscription.charged", link=True)
    if subscription is None:
        return

    payment_entity = _entity(event, "payment") or {}
    gateway_payment_id = payment_entity.get("id") or sub_entity.get("payment_id")
    if not gateway_payment_id:
        logger.warning("subscription.charged for %s without a payment id, skipping", sub_entity["id"])
        return

    # Dedupe on the charge before touching the period
    existing = await refund_service.get_payment_by_gateway_id(db, gateway_payment_id)
    if existing is not None:
        logger.info("Renewal charge %s already applied, skipping", gateway_payment_id)
        return

    await subscription_service.renew_subscription(
        db,
        subscription,
        gateway_payment_id=gateway_payment_id,
        period_start=_ts_to_naive(sub_entity.get("current_start")),
        period_end=_ts_to_naive(sub_entity.get("current_end")),
    )

    amount_minor = payment_entity.get("amount")
    await payment_service.record_renewal_payment(
        db,
        subscription,
        gateway_payment_id=gateway_payment_id,
        amount=from_minor_units(amount_minor) if amount_minor is not None else subscription.amount,
        currency=(payment_entity.get("currency") or subscription.currency).upper(),
        details={
            "webhook_event": "subscription.charged",
            "gateway_subscription_id": sub_entity["id"],
            "paid_count": sub_entity.get("paid_count"),
        },
    )


async def handle_subscription_halted(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle subscription.halted: retries exhausted, access paused."""
    subscription, _ = await _find_subscription(event, db, "subscription.halted")
    if subscription is not None:
        await subscription_service.halt_subscription(db, subscription)


async def handle_subscription_cancelled(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle subscription.cancelled: cancelled on the gateway side."""
    subscription, _ = await _find_subscription(event, db, "subscription.cancelled")
    if subscription is not None:
        await subscription_service.terminate_subscription(db, subscription)


async def handle_subscription_completed(db: AsyncSession, event: dict[str, Any]) -> None:
    """Handle subscription.completed: all billing cycles done."""
    subscription, _ = await _find_subscription(event, db, "subscription.completed")
    if subscription is not None:
        await subscription_service.complete_subscription(db, subscription)
