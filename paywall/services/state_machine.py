"""
Subscription state machine.

Every transition is a pure function of (current state, event, now, policy);
persistence and locking live in the SubscriptionManager.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import List, Optional, Union

from paywall.core.exceptions import InvalidTransition
from paywall.models.subscription import SubscriptionStatus

# History actions recorded for each committed step
CREATED = "created"
EXTENDED = "extended"
REACTIVATED = "reactivated"
EXPIRED = "expired"
GRACE_STARTED = "grace_started"
CANCELLED = "cancelled"

LAPSABLE = (SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED, SubscriptionStatus.GRACE)


@dataclass(frozen=True)
class Policy:
    period_days: int = 30
    grace_period_days: int = 7

    @property
    def period(self) -> timedelta:
        return timedelta(days=self.period_days)

    @property
    def grace(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    @classmethod
    def from_settings(cls, settings) -> "Policy":
        return cls(
            period_days=settings.subscription_period_days,
            grace_period_days=settings.grace_period_days,
        )


@dataclass(frozen=True)
class SubscriptionState:
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    next_payment_due: datetime
    grace_period_end: Optional[datetime] = None
    auto_renewal: bool = True
    cancellation_date: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentConfirmed:
    payment_key: Optional[str] = None


@dataclass(frozen=True)
class PeriodElapsed:
    pass


@dataclass(frozen=True)
class CancelRequested:
    pass


@dataclass(frozen=True)
class ReactivateRequested:
    payment_key: Optional[str] = None


Event = Union[PaymentConfirmed, PeriodElapsed, CancelRequested, ReactivateRequested]


@dataclass(frozen=True)
class Transition:
    state: Optional[SubscriptionState]
    actions: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.actions)


def _due(end_date: datetime) -> datetime:
    return end_date + timedelta(days=1)


def _new_period(now: datetime, policy: Policy) -> SubscriptionState:
    end_date = now + policy.period
    return SubscriptionState(
        status=SubscriptionStatus.ACTIVE,
        start_date=now,
        end_date=end_date,
        next_payment_due=_due(end_date),
    )


def _extend(state: SubscriptionState, now: datetime, policy: Policy) -> SubscriptionState:
    """Add one period from max(end_date, now); end_date never moves backwards."""
    lapsed = state.end_date <= now
    end_date = max(state.end_date, now) + policy.period
    return replace(
        state,
        status=SubscriptionStatus.ACTIVE,
        start_date=now if lapsed else state.start_date,
        end_date=end_date,
        next_payment_due=_due(end_date),
        grace_period_end=None,
    )


def _cancel(state: SubscriptionState, now: datetime) -> SubscriptionState:
    return replace(
        state,
        status=SubscriptionStatus.CANCELLED,
        cancellation_date=now,
        auto_renewal=False,
        grace_period_end=None,
    )


def on_payment_confirmed(
    state: Optional[SubscriptionState],
    now: datetime,
    policy: Policy,
) -> Transition:
    if state is None:
        return Transition(_new_period(now, policy), [CREATED])
    if state.status == SubscriptionStatus.CANCELLED:
        raise InvalidTransition(
            "Subscription is cancelled; reactivate it instead",
            details={"status": state.status.value},
        )
    return Transition(_extend(state, now, policy), [EXTENDED])


def on_period_elapsed(state: SubscriptionState, now: datetime, policy: Policy) -> Transition:
    """
    Advance time-driven transitions that are due at ``now``.

    A late sweep may chain active -> expired -> grace -> cancelled in one call.
    Re-applying to a record with nothing due is a no-op.
    """
    actions: List[str] = []

    if state.status == SubscriptionStatus.ACTIVE:
        if now <= state.end_date:
            return Transition(state)
        state = replace(state, status=SubscriptionStatus.EXPIRED)
        actions.append(EXPIRED)

    if state.status == SubscriptionStatus.EXPIRED:
        state = replace(
            state,
            status=SubscriptionStatus.GRACE,
            grace_period_end=state.grace_period_end or state.end_date + policy.grace,
        )
        actions.append(GRACE_STARTED)

    if state.status == SubscriptionStatus.GRACE:
        grace_end = state.grace_period_end or state.end_date + policy.grace
        if now > grace_end:
            state = _cancel(state, now)
            actions.append(CANCELLED)
        elif state.grace_period_end is None:
            state = replace(state, grace_period_end=grace_end)
            if GRACE_STARTED not in actions:
                actions.append(GRACE_STARTED)

    return Transition(state, actions)


def on_cancel_requested(state: SubscriptionState, now: datetime) -> Transition:
    if state.status == SubscriptionStatus.CANCELLED:
        return Transition(state)
    if state.status not in LAPSABLE:
        raise InvalidTransition(
            f"Cannot cancel a subscription in status {state.status.value}",
            details={"status": state.status.value},
        )
    return Transition(_cancel(state, now), [CANCELLED])


def on_reactivate_requested(state: SubscriptionState, now: datetime, policy: Policy) -> Transition:
    if state.status != SubscriptionStatus.CANCELLED:
        return Transition(_extend(state, now, policy), [EXTENDED])
    reactivated = replace(
        _extend(state, now, policy),
        cancellation_date=None,
        auto_renewal=True,
    )
    return Transition(reactivated, [REACTIVATED])


def apply_event(
    state: Optional[SubscriptionState],
    event: Event,
    now: datetime,
    policy: Policy,
) -> Transition:
    """Apply ``event`` to ``state`` and return the resulting transition."""
    if isinstance(event, PaymentConfirmed):
        return on_payment_confirmed(state, now, policy)

    if state is None:
        raise InvalidTransition(
            f"{type(event).__name__} requires an existing subscription",
            details={"event": type(event).__name__},
        )

    if isinstance(event, PeriodElapsed):
        return on_period_elapsed(state, now, policy)
    if isinstance(event, CancelRequested):
        return on_cancel_requested(state, now)
    if isinstance(event, ReactivateRequested):
        return on_reactivate_requested(state, now, policy)

    raise InvalidTransition(f"Unknown event: {event!r}")
