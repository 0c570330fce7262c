import math
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from paywall.models.subscription import SubscriptionStatus

INACTIVE = "inactive"

ONE_DAY = timedelta(days=1)


class Entitlement(BaseModel):
    status: str
    is_active: bool = False
    in_grace_period: bool = False
    days_remaining: int = 0
    grace_period_remaining: int = 0
    next_payment_due: Optional[datetime] = None
    end_date: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None


def _ceil_days(until: Optional[datetime], now: datetime) -> int:
    if until is None:
        return 0
    return max(0, math.ceil((until - now) / ONE_DAY))


def project(subscription, now: datetime) -> Entitlement:
    """
    Derive the user-facing entitlement from a subscription snapshot.

    Read-only: takes anything exposing the subscription fields (ORM row or
    SubscriptionView) and never mutates it.
    """
    if subscription is None:
        return Entitlement(status=INACTIVE)

    status = SubscriptionStatus(subscription.status)
    in_grace = status == SubscriptionStatus.GRACE
    return Entitlement(
        status=status.value,
        is_active=status == SubscriptionStatus.ACTIVE,
        in_grace_period=in_grace,
        days_remaining=_ceil_days(subscription.end_date, now),
        grace_period_remaining=_ceil_days(subscription.grace_period_end, now) if in_grace else 0,
        next_payment_due=subscription.next_payment_due,
        end_date=subscription.end_date,
        grace_period_end=subscription.grace_period_end,
    )
