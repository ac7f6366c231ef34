"""Razorpay webhook endpoint: receives and processes gateway events."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.billing.errors import BillingError
from app.billing.razorpay_client import verify_webhook_signature
from app.billing.webhooks import (
    handle_order_paid,
    handle_payment_authorized,
    handle_payment_captured,
    handle_payment_failed,
    handle_refund_created,
    handle_refund_failed,
    handle_refund_processed,
    handle_subscription_activated,
    handle_subscription_cancelled,
    handle_subscription_charged,
    handle_subscription_completed,
    handle_subscription_halted,
)
from app.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

# Map event types to handler functions
EVENT_HANDLERS = {
    "payment.authorized": handle_payment_authorized,
    "payment.captured": handle_payment_captured,
    "payment.failed": handle_payment_failed,
    "order.paid": handle_order_paid,
    "refund.created": handle_refund_created,
    "refund.processed": handle_refund_processed,
    "refund.failed": handle_refund_failed,
    "subscription.activated": handle_subscription_activated,
    "subscription.charged": handle_subscription_charged,
    "subscription.halted": handle_subscription_halted,
    "subscription.cancelled": handle_subscription_cancelled,
    "subscription.completed": handle_subscription_completed,
}


@router.post("/razorpay")
async def razorpay_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, str]:
    """Receive and process Razorpay webhook events."""
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()
    signature = request.headers.get("x-razorpay-signature", "")

    # 2. Verify signature
    if not verify_webhook_signature(payload, signature):
        logger.warning("Webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        )

    try:
        event = json.loads(payload)
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    event_type = event.get("event", "")
    event_id = request.headers.get("x-razorpay-event-id")

    # 3. Drop deliveries we have already handled
    if event_id:
        if await db.get(WebhookEvent, event_id) is not None:
            logger.info("Duplicate webhook event %s (%s), skipping", event_id, event_type)
            return {"status": "duplicate"}
        db.add(WebhookEvent(id=event_id, event_type=event_type))
        await db.flush()

    # 4. Dispatch to handler
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Unhandled webhook event type: %s", event_type)
        return {"status": "ignored"}

    logger.info("Processing webhook event: %s (id=%s)", event_type, event_id)

    try:
        await handler(db, event)
    except BillingError as e:
        logger.warning("Webhook event %s (%s) rejected: %s", event_id, event_type, e.message)
        raise
    except Exception as e:
        logger.exception("Error processing webhook event %s", event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return {"status": "processed"}
