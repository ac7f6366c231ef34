"""Admin action processor: privileged operations on subscriptions and refunds.

Actions are closed enumerations; adding a member without handling it is a
type error at the ``assert_never`` branch.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Any, assert_never

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import AdminRequired, ValidationFailed
from app.models.refund_request import RefundRequest
from app.models.subscription import Subscription
from app.models.user import User
from app.services import refund_service, subscription_service

logger = logging.getLogger(__name__)


class SubscriptionAction(StrEnum):
    PAUSE = "pause"
    CANCEL = "cancel"
    REACTIVATE = "reactivate"
    EXTEND = "extend"


class RefundAction(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    PROCESS = "process"
    MARK_PROCESSED = "mark_processed"


@dataclass
class ActionResult:
    message: str
    record: Subscription | RefundRequest
    manual_refund_required: bool = False
    gateway_error: str | None = None


def _require_admin(actor: User) -> None:
    if not actor.is_admin:
        raise AdminRequired()


def _extension_days(data: dict[str, Any]) -> int:
    days = data.get("days")
    if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
        raise ValidationFailed("'days' must be a positive integer", days=days)
    return days


async def apply_subscription_action(
    db: AsyncSession,
    actor: User,
    subscription_id: uuid.UUID,
    action: SubscriptionAction,
    data: dict[str, Any] | None = None,
) -> ActionResult:
    _require_admin(actor)
    data = data or {}
    subscription = await subscription_service.lock_subscription(db, subscription_id)

    match action:
        case SubscriptionAction.PAUSE:
            await subscription_service.pause_subscription(db, subscription)
            message = "Subscription paused"
        case SubscriptionAction.CANCEL:
            immediate = bool(data.get("immediate", True))
            await subscription_service.cancel_subscription(
                db,
                subscription,
                immediate=immediate,
                reason=data.get("reason") or "Cancelled by admin",
            )
            message = "Subscription cancelled" if immediate else "Subscription will cancel at period end"
        case SubscriptionAction.REACTIVATE:
            await subscription_service.reactivate_subscription(db, subscription)
            message = "Subscription reactivated"
        case SubscriptionAction.EXTEND:
            days = _extension_days(data)
            await subscription_service.extend_subscription(db, subscription, days)
            message = f"Subscription extended by {days} days"
        case _:
            assert_never(action)

    logger.info("Admin %s applied %s to subscription %s", actor.id, action.value, subscription.id)
    return ActionResult(message=message, record=subscription)


async def apply_refund_action(
    db: AsyncSession,
    actor: User,
    refund_id: uuid.UUID,
    action: RefundAction,
    data: dict[str, Any] | None = None,
) -> ActionResult:
    """Apply an admin decision to a refund request.

    ``process`` failures at the gateway propagate as ``ManualRefundRequired``
    so the admin can refund by hand and then use ``mark_processed``.
    """
    _require_admin(actor)
    data = data or {}
    notes = data.get("admin_notes")
    refund = await refund_service.lock_refund(db, refund_id)

    match action:
        case RefundAction.APPROVE:
            await refund_service.approve_refund(db, refund, actor, notes)
            message = "Refund approved"
        case RefundAction.REJECT:
            await refund_service.reject_refund(db, refund, actor, notes)
            message = "Refund rejected"
        case RefundAction.PROCESS:
            await refund_service.process_refund(db, refund, actor, notes)
            message = "Refund processed through the payment gateway"
        case RefundAction.MARK_PROCESSED:
            await refund_service.mark_refund_processed(
                db,
                refund,
                actor,
                notes,
                gateway_refund_id=data.get("razorpay_refund_id"),
            )
            message = "Refund marked as processed"
        case _:
            assert_never(action)

    logger.info("Admin %s applied %s to refund %s", actor.id, action.value, refund.id)
    return ActionResult(message=message, record=refund)


async def create_refund_for_payment(
    db: AsyncSession,
    actor: User,
    *,
    gateway_payment_id: str,
    amount: Decimal | None = None,
    reason: str | None = None,
    process_immediately: bool = False,
) -> ActionResult:
    """Open a refund for a payment without a customer request.

    A gateway failure while processing immediately does not raise: the
    approved request is kept and the result is flagged
    ``manual_refund_required``.
    """
    _require_admin(actor)
    outcome = await refund_service.create_admin_refund(
        db,
        actor,
        gateway_payment_id=gateway_payment_id,
        amount=amount,
        reason=reason,
        process_immediately=process_immediately,
    )

    if outcome.failure is not None:
        message = "Refund created but the gateway refund failed. Refund manually and mark it processed."
    elif process_immediately:
        message = "Refund created and processed through the payment gateway"
    else:
        message = "Refund created and awaiting review"

    logger.info("Admin %s created refund %s for payment %s", actor.id, outcome.refund.id, gateway_payment_id)
    return ActionResult(
        message=message,
        record=outcome.refund,
        manual_refund_required=outcome.failure is not None,
        gateway_error=outcome.failure.extra.get("gateway_error") if outcome.failure is not None else None,
    )
