"""
Tests for the pure subscription state machine
"""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from paywall.core.exceptions import InvalidTransition
from paywall.models.subscription import SubscriptionStatus
from paywall.services.state_machine import (
    CancelRequested,
    PaymentConfirmed,
    PeriodElapsed,
    Policy,
    ReactivateRequested,
    SubscriptionState,
    apply_event,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)
POLICY = Policy(period_days=30, grace_period_days=7)


def active_until(end_date: datetime, start_date: datetime = None) -> SubscriptionState:
    return SubscriptionState(
        status=SubscriptionStatus.ACTIVE,
        start_date=start_date or end_date - timedelta(days=30),
        end_date=end_date,
        next_payment_due=end_date + timedelta(days=1),
    )


class TestPaymentConfirmed:
    def test_first_payment_creates_active_subscription(self):
        transition = apply_event(None, PaymentConfirmed("TRC20:abc123"), NOW, POLICY)

        assert transition.actions == ["created"]
        assert transition.state.status == SubscriptionStatus.ACTIVE
        assert transition.state.start_date == NOW
        assert transition.state.end_date == NOW + timedelta(days=30)
        assert transition.state.next_payment_due == NOW + timedelta(days=31)
        assert transition.state.auto_renewal is True

    def test_payment_before_expiry_extends_from_end_date(self):
        end = NOW + timedelta(days=5)
        state = active_until(end)

        transition = apply_event(state, PaymentConfirmed(), NOW, POLICY)

        assert transition.state.end_date == end + timedelta(days=30)
        # Period still running, so the start is kept
        assert transition.state.start_date == state.start_date
        assert transition.actions == ["extended"]

    def test_payment_after_expiry_extends_from_now(self):
        state = replace(
            active_until(NOW - timedelta(days=3)),
            status=SubscriptionStatus.GRACE,
            grace_period_end=NOW + timedelta(days=4),
        )

        transition = apply_event(state, PaymentConfirmed(), NOW, POLICY)

        assert transition.state.status == SubscriptionStatus.ACTIVE
        assert transition.state.start_date == NOW
        assert transition.state.end_date == NOW + timedelta(days=30)
        assert transition.state.grace_period_end is None

    @pytest.mark.parametrize("status", [SubscriptionStatus.TRIAL, SubscriptionStatus.EXPIRED])
    def test_payment_from_trial_or_expired_activates(self, status):
        state = replace(active_until(NOW - timedelta(days=1)), status=status)

        transition = apply_event(state, PaymentConfirmed(), NOW, POLICY)

        assert transition.state.status == SubscriptionStatus.ACTIVE
        assert transition.state.end_date == NOW + timedelta(days=30)

    def test_payment_on_cancelled_is_rejected(self):
        state = replace(active_until(NOW), status=SubscriptionStatus.CANCELLED, cancellation_date=NOW)

        with pytest.raises(InvalidTransition):
            apply_event(state, PaymentConfirmed(), NOW, POLICY)

    def test_end_date_never_moves_backwards(self):
        state = None
        now = NOW
        previous_end = None
        for days_later in (0, 3, 40, 41, 120):
            now = NOW + timedelta(days=days_later)
            state = apply_event(state, PaymentConfirmed(), now, POLICY).state
            if previous_end is not None:
                assert state.end_date == max(previous_end, now) + timedelta(days=30)
                assert state.end_date >= previous_end
            previous_end = state.end_date


class TestPeriodElapsed:
    def test_not_due_is_noop(self):
        state = active_until(NOW + timedelta(seconds=1))

        transition = apply_event(state, PeriodElapsed(), NOW, POLICY)

        assert transition.state == state
        assert not transition.changed

    def test_one_second_after_expiry_enters_grace(self):
        end = NOW
        transition = apply_event(active_until(end), PeriodElapsed(), end + timedelta(seconds=1), POLICY)

        assert transition.state.status == SubscriptionStatus.GRACE
        assert transition.state.grace_period_end == end + timedelta(days=7)
        assert transition.actions == ["expired", "grace_started"]

    def test_grace_rerun_is_noop(self):
        end = NOW
        in_grace = apply_event(active_until(end), PeriodElapsed(), end + timedelta(seconds=1), POLICY).state

        again = apply_event(in_grace, PeriodElapsed(), end + timedelta(days=3), POLICY)

        assert again.state == in_grace
        assert again.actions == []

    def test_after_grace_end_cancels(self):
        grace_end = NOW
        state = replace(
            active_until(NOW - timedelta(days=7)),
            status=SubscriptionStatus.GRACE,
            grace_period_end=grace_end,
        )
        later = grace_end + timedelta(seconds=1)

        transition = apply_event(state, PeriodElapsed(), later, POLICY)

        assert transition.state.status == SubscriptionStatus.CANCELLED
        assert transition.state.cancellation_date == later
        assert transition.state.auto_renewal is False
        assert transition.state.grace_period_end is None
        assert transition.actions == ["cancelled"]

    def test_late_sweep_chains_to_cancelled(self):
        end = NOW - timedelta(days=10)

        transition = apply_event(active_until(end), PeriodElapsed(), NOW, POLICY)

        assert transition.state.status == SubscriptionStatus.CANCELLED
        assert transition.actions == ["expired", "grace_started", "cancelled"]

    def test_expired_record_moves_to_grace(self):
        end = NOW - timedelta(days=1)
        state = replace(active_until(end), status=SubscriptionStatus.EXPIRED)

        transition = apply_event(state, PeriodElapsed(), NOW, POLICY)

        assert transition.state.status == SubscriptionStatus.GRACE
        assert transition.state.grace_period_end == end + timedelta(days=7)

    @pytest.mark.parametrize("status", [SubscriptionStatus.TRIAL, SubscriptionStatus.CANCELLED])
    def test_trial_and_cancelled_are_untouched(self, status):
        state = replace(active_until(NOW - timedelta(days=30)), status=status)

        transition = apply_event(state, PeriodElapsed(), NOW, POLICY)

        assert transition.state == state
        assert not transition.changed


class TestCancelAndReactivate:
    @pytest.mark.parametrize("status", [SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE, SubscriptionStatus.EXPIRED])
    def test_cancel(self, status):
        state = replace(active_until(NOW + timedelta(days=3)), status=status)

        transition = apply_event(state, CancelRequested(), NOW, POLICY)

        assert transition.state.status == SubscriptionStatus.CANCELLED
        assert transition.state.cancellation_date == NOW
        assert transition.state.auto_renewal is False
        # Cancelling does not shorten the paid period
        assert transition.state.end_date == state.end_date

    def test_cancel_twice_is_noop(self):
        state = replace(active_until(NOW), status=SubscriptionStatus.CANCELLED, cancellation_date=NOW)

        transition = apply_event(state, CancelRequested(), NOW + timedelta(hours=1), POLICY)

        assert transition.state == state
        assert not transition.changed

    def test_cancel_trial_is_rejected(self):
        state = replace(active_until(NOW), status=SubscriptionStatus.TRIAL)

        with pytest.raises(InvalidTransition):
            apply_event(state, CancelRequested(), NOW, POLICY)

    def test_reactivate_cancelled(self):
        state = replace(
            active_until(NOW - timedelta(days=20)),
            status=SubscriptionStatus.CANCELLED,
            cancellation_date=NOW - timedelta(days=10),
            auto_renewal=False,
        )

        transition = apply_event(state, ReactivateRequested("BEP20:0xfeed"), NOW, POLICY)

        assert transition.state.status == SubscriptionStatus.ACTIVE
        assert transition.state.cancellation_date is None
        assert transition.state.auto_renewal is True
        assert transition.state.start_date == NOW
        assert transition.state.end_date == NOW + timedelta(days=30)
        assert transition.actions == ["reactivated"]

    def test_reactivate_active_behaves_like_payment(self):
        end = NOW + timedelta(days=2)

        transition = apply_event(active_until(end), ReactivateRequested(), NOW, POLICY)

        assert transition.state.end_date == end + timedelta(days=30)
        assert transition.actions == ["extended"]

    @pytest.mark.parametrize("event", [PeriodElapsed(), CancelRequested(), ReactivateRequested()])
    def test_events_without_subscription_are_rejected(self, event):
        with pytest.raises(InvalidTransition):
            apply_event(None, event, NOW, POLICY)
