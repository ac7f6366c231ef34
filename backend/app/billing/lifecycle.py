"""Subscription state machine.

Each function takes the current :data:`SubscriptionState` and returns the next
one, or raises :class:`InvalidStateTransition`. Period arithmetic and
persistence live in the service layer; these functions only decide which
moves are legal.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime

from app.billing.errors import InvalidStateTransition, ValidationFailed
from app.billing.states import (
    Active,
    Cancelled,
    Expired,
    Paused,
    PendingDowngrade,
    SubscriptionState,
)


@dataclass(frozen=True)
class PeriodOutcome:
    """Result of a period boundary or renewal.

    ``roll_forward`` means a new period starts at the old end;
    ``new_plan_id`` is the plan that takes over when a scheduled change applies.
    """

    state: SubscriptionState
    roll_forward: bool = False
    new_plan_id: uuid.UUID | None = None


def _reject(state: SubscriptionState, event: str, message: str | None = None) -> InvalidStateTransition:
    return InvalidStateTransition(state.status.value, event, message)


def cancel(state: SubscriptionState, *, immediate: bool, period_end: datetime) -> SubscriptionState:
    match state:
        case Active(cancels_at=cancels_at):
            if immediate:
                return Cancelled()
            if cancels_at is not None:
                raise _reject(state, "cancel", "Cancellation is already scheduled")
            return Active(cancels_at=period_end)
        case PendingDowngrade():
            # A scheduled plan change is dropped when the user cancels.
            return Cancelled() if immediate else Active(cancels_at=period_end)
        case _:
            raise _reject(state, "cancel")


def undo_cancellation(state: SubscriptionState) -> SubscriptionState:
    match state:
        case Active(cancels_at=cancels_at) if cancels_at is not None:
            return Active()
        case _:
            raise _reject(state, "reactivate", "No cancellation is scheduled for this subscription")


def pause(state: SubscriptionState) -> SubscriptionState:
    match state:
        case Active():
            return Paused()
        case _:
            raise _reject(state, "pause")


def reactivate(state: SubscriptionState) -> SubscriptionState:
    """Resume a paused or cancelled subscription; the caller opens a new period."""
    match state:
        case Paused() | Cancelled():
            return Active()
        case _:
            raise _reject(state, "reactivate")


def extend(state: SubscriptionState) -> SubscriptionState:
    match state:
        case Active() | PendingDowngrade() | Paused():
            return state
        case _:
            raise _reject(state, "extend")


def schedule_plan_change(
    state: SubscriptionState,
    *,
    current_plan_id: uuid.UUID,
    new_plan_id: uuid.UUID,
) -> SubscriptionState:
    match state:
        case Active():
            if new_plan_id == current_plan_id:
                raise ValidationFailed("Already on this plan")
            return PendingDowngrade(to_plan_id=new_plan_id)
        case PendingDowngrade(to_plan_id=to_plan_id):
            if new_plan_id == current_plan_id:
                return Active()
            if new_plan_id == to_plan_id:
                raise ValidationFailed("This plan change is already scheduled")
            return PendingDowngrade(to_plan_id=new_plan_id)
        case _:
            raise _reject(state, "change plan")


def reach_period_boundary(state: SubscriptionState) -> PeriodOutcome:
    """Apply the end of the current period when no renewal arrived."""
    match state:
        case Active(cancels_at=cancels_at) if cancels_at is not None:
            return PeriodOutcome(Cancelled())
        case PendingDowngrade(to_plan_id=to_plan_id):
            return PeriodOutcome(Active(), roll_forward=True, new_plan_id=to_plan_id)
        case Active() | Paused():
            return PeriodOutcome(Expired())
        case _:
            raise _reject(state, "close period")


def renew(state: SubscriptionState) -> PeriodOutcome:
    """Apply a renewal charge confirmed by the gateway.

    An expired row is revived: the sweep may close a gateway-billed period
    before a delayed charge arrives.
    """
    match state:
        case Active() | Paused() | Expired():
            return PeriodOutcome(Active(), roll_forward=True)
        case PendingDowngrade(to_plan_id=to_plan_id):
            return PeriodOutcome(Active(), roll_forward=True, new_plan_id=to_plan_id)
        case _:
            raise _reject(state, "renew")


def repurchase(state: SubscriptionState) -> SubscriptionState:
    """Another checkout for the plan the live subscription is already on.

    The paid period is appended to the current one; any scheduled cancellation
    or plan change is dropped.
    """
    match state:
        case Active() | PendingDowngrade() | Paused():
            return Active()
        case _:
            raise _reject(state, "repurchase")


def halt(state: SubscriptionState) -> SubscriptionState:
    """Gateway stopped charging (payment retries exhausted)."""
    match state:
        case Active() | PendingDowngrade() | Paused():
            return Paused()
        case _:
            raise _reject(state, "halt")


def complete(state: SubscriptionState) -> SubscriptionState:
    """Gateway finished the billing cycle count."""
    match state:
        case Active() | PendingDowngrade() | Paused():
            return Expired()
        case _:
            raise _reject(state, "complete")


def terminate(state: SubscriptionState) -> SubscriptionState:
    """Cancel from any live state (gateway-side cancellation)."""
    match state:
        case Active() | PendingDowngrade() | Paused():
            return Cancelled()
        case _:
            raise _reject(state, "cancel")


def force_cancel(state: SubscriptionState) -> SubscriptionState:
    """Refund processing revokes access whatever the current state."""
    return Cancelled()
