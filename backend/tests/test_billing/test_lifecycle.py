"""Tests for the subscription state machine."""

import uuid
from datetime import datetime

import pytest

from app.billing import lifecycle
from app.billing.errors import InvalidStateTransition, ValidationFailed
from app.billing.states import Active, Cancelled, Expired, Paused, PendingDowngrade

PERIOD_END = datetime(2026, 2, 1)
PLAN_A = uuid.uuid4()
PLAN_B = uuid.uuid4()
PLAN_C = uuid.uuid4()


class TestCancel:
    def test_scheduled_cancel_keeps_access(self):
        state = lifecycle.cancel(Active(), immediate=False, period_end=PERIOD_END)
        assert state == Active(cancels_at=PERIOD_END)

    def test_immediate_cancel(self):
        assert lifecycle.cancel(Active(), immediate=True, period_end=PERIOD_END) == Cancelled()

    def test_immediate_cancel_overrides_schedule(self):
        state = lifecycle.cancel(Active(cancels_at=PERIOD_END), immediate=True, period_end=PERIOD_END)
        assert state == Cancelled()

    def test_second_scheduled_cancel_rejected(self):
        with pytest.raises(InvalidStateTransition):
            lifecycle.cancel(Active(cancels_at=PERIOD_END), immediate=False, period_end=PERIOD_END)

    def test_cancel_drops_pending_downgrade(self):
        state = lifecycle.cancel(PendingDowngrade(to_plan_id=PLAN_B), immediate=False, period_end=PERIOD_END)
        assert state == Active(cancels_at=PERIOD_END)

    @pytest.mark.parametrize("state", [Paused(), Cancelled(), Expired()])
    def test_cancel_rejected_outside_active(self, state):
        with pytest.raises(InvalidStateTransition) as exc:
            lifecycle.cancel(state, immediate=True, period_end=PERIOD_END)
        assert exc.value.extra["current_status"] == state.status.value


class TestUndoCancellation:
    def test_clears_schedule(self):
        assert lifecycle.undo_cancellation(Active(cancels_at=PERIOD_END)) == Active()

    def test_nothing_scheduled(self):
        with pytest.raises(InvalidStateTransition):
            lifecycle.undo_cancellation(Active())

    def test_cancelled_cannot_be_undone(self):
        with pytest.raises(InvalidStateTransition):
            lifecycle.undo_cancellation(Cancelled())


class TestPauseAndReactivate:
    def test_pause_active(self):
        assert lifecycle.pause(Active()) == Paused()

    def test_pause_paused_rejected(self):
        with pytest.raises(InvalidStateTransition):
            lifecycle.pause(Paused())

    @pytest.mark.parametrize("state", [Paused(), Cancelled()])
    def test_reactivate(self, state):
        assert lifecycle.reactivate(state) == Active()

    @pytest.mark.parametrize("state", [Active(), Expired()])
    def test_reactivate_rejected(self, state):
        with pytest.raises(InvalidStateTransition):
            lifecycle.reactivate(state)

    def test_extend_keeps_state(self):
        assert lifecycle.extend(Paused()) == Paused()

    def test_extend_expired_rejected(self):
        with pytest.raises(InvalidStateTransition):
            lifecycle.extend(Expired())


class TestPlanChange:
    def test_schedule_change(self):
        state = lifecycle.schedule_plan_change(Active(), current_plan_id=PLAN_A, new_plan_id=PLAN_B)
        assert state == PendingDowngrade(to_plan_id=PLAN_B)

    def test_same_plan_rejected(self):
        with pytest.raises(ValidationFailed):
            lifecycle.schedule_plan_change(Active(), current_plan_id=PLAN_A, new_plan_id=PLAN_A)

    def test_revert_to_current_plan(self):
        state = lifecycle.schedule_plan_change(
            PendingDowngrade(to_plan_id=PLAN_B), current_plan_id=PLAN_A, new_plan_id=PLAN_A
        )
        assert state == Active()

    def test_replace_scheduled_change(self):
        state = lifecycle.schedule_plan_change(
            PendingDowngrade(to_plan_id=PLAN_B), current_plan_id=PLAN_A, new_plan_id=PLAN_C
        )
        assert state == PendingDowngrade(to_plan_id=PLAN_C)

    def test_duplicate_schedule_rejected(self):
        with pytest.raises(ValidationFailed):
            lifecycle.schedule_plan_change(
                PendingDowngrade(to_plan_id=PLAN_B), current_plan_id=PLAN_A, new_plan_id=PLAN_B
            )

    def test_paused_rejected(self):
        with pytest.raises(InvalidStateTransition):
            lifecycle.schedule_plan_change(Paused(), current_plan_id=PLAN_A, new_plan_id=PLAN_B)


class TestPeriodBoundary:
    def test_scheduled_cancel_takes_effect(self):
        outcome = lifecycle.reach_period_boundary(Active(cancels_at=PERIOD_END))
        assert outcome.state == Cancelled()
        assert not outcome.roll_forward

    def test_pending_downgrade_applies(self):
        outcome = lifecycle.reach_period_boundary(PendingDowngrade(to_plan_id=PLAN_B))
        assert outcome.state == Active()
        assert outcome.roll_forward
        assert outcome.new_plan_id == PLAN_B

    @pytest.mark.parametrize("state", [Active(), Paused()])
    def test_unrenewed_period_expires(self, state):
        assert lifecycle.reach_period_boundary(state).state == Expired()

    def test_terminal_state_rejected(self):
        with pytest.raises(InvalidStateTransition):
            lifecycle.reach_period_boundary(Cancelled())


class TestGatewayEvents:
    def test_renew_rolls_forward(self):
        outcome = lifecycle.renew(Paused())
        assert outcome.state == Active()
        assert outcome.roll_forward

    def test_renew_applies_pending_plan(self):
        outcome = lifecycle.renew(PendingDowngrade(to_plan_id=PLAN_C))
        assert outcome.new_plan_id == PLAN_C

    def test_late_charge_revives_expired(self):
        outcome = lifecycle.renew(Expired())
        assert outcome.state == Active()
        assert outcome.roll_forward

    def test_renew_cancelled_rejected(self):
        with pytest.raises(InvalidStateTransition):
            lifecycle.renew(Cancelled())

    @pytest.mark.parametrize(
        "state", [Active(cancels_at=PERIOD_END), PendingDowngrade(to_plan_id=PLAN_B), Paused()]
    )
    def test_repurchase_clears_schedule(self, state):
        assert lifecycle.repurchase(state) == Active()

    @pytest.mark.parametrize("state", [Cancelled(), Expired()])
    def test_repurchase_requires_live_state(self, state):
        with pytest.raises(InvalidStateTransition):
            lifecycle.repurchase(state)

    def test_halt(self):
        assert lifecycle.halt(PendingDowngrade(to_plan_id=PLAN_B)) == Paused()

    def test_complete(self):
        assert lifecycle.complete(Active()) == Expired()

    def test_terminate(self):
        assert lifecycle.terminate(Paused()) == Cancelled()

    def test_terminate_cancelled_rejected(self):
        with pytest.raises(InvalidStateTransition):
            lifecycle.terminate(Cancelled())

    @pytest.mark.parametrize("state", [Active(), Paused(), Cancelled(), Expired()])
    def test_force_cancel_from_anywhere(self, state):
        assert lifecycle.force_cancel(state) == Cancelled()
