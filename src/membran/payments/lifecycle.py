"""Subscription state machine.

Pure functions over :class:`Subscription` records. Each returns a
:class:`LifecycleChange` holding a new record; nothing here touches storage.

    Pending   --success-->  Active    start = max(now, start), expiry = start + duration
    Pending   --failed--->  Failed    only if no earlier order succeeded
    Active    --success-->  Active    expiry = max(expiry, now) + duration
    Active    --sweep---->  Expired   once expiry <= now
    Active/Pending --cancel--> Cancelled
    Expired/Failed --success--> Active  start and expiry reset from now
    Cancelled --success-->  Active    only for an order placed after cancelling
"""

import calendar
from dataclasses import dataclass, replace
from datetime import datetime

from membran.db.models import SubscriptionStatus, TierDuration
from membran.payments.errors import InvalidTransition
from membran.payments.models import Subscription, Tier


@dataclass
class LifecycleChange:
    """Outcome of one lifecycle event."""

    subscription: Subscription
    previous_status: SubscriptionStatus
    changed: bool

    @property
    def status(self) -> SubscriptionStatus:
        return self.subscription.status


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_duration(start: datetime, duration: TierDuration) -> datetime | None:
    """
    Compute the end of one paid period starting at ``start``.

    Returns:
        The period end, or None for lifetime tiers (no expiry).
    """
    if duration is TierDuration.MONTHLY:
        return add_months(start, 1)
    if duration is TierDuration.YEARLY:
        return add_months(start, 12)
    if duration is TierDuration.LIFETIME:
        return None
    raise ValueError(f"Unknown tier duration: {duration!r}")


def _unchanged(subscription: Subscription) -> LifecycleChange:
    return LifecycleChange(subscription, subscription.status, changed=False)


def activate(
    subscription: Subscription,
    tier: Tier,
    now: datetime,
    amount: int,
    paid_at: datetime | None = None,
    reactivation: bool = False,
) -> LifecycleChange:
    """
    Apply a successful payment.

    Renewing an Active subscription extends from the current expiry so
    unused paid time is kept; a lapsed one restarts from ``now``.

    Args:
        subscription: Current record
        tier: Tier the subscription belongs to
        now: Evaluation time (UTC)
        amount: Amount actually paid
        paid_at: Gateway payment time, defaults to ``now``
        reactivation: True when the payment belongs to a checkout placed
            after the subscription was cancelled

    Raises:
        InvalidTransition: Payment on a Cancelled subscription without reactivation
    """
    status = subscription.status

    if status is SubscriptionStatus.CANCELLED and not reactivation:
        raise InvalidTransition(
            f"Subscription {subscription.id} is Cancelled; payment requires a new checkout",
            {"subscription_id": subscription.id, "current_status": status.value},
        )

    start_date = subscription.start_date
    if status is SubscriptionStatus.ACTIVE:
        if subscription.expiry_date is None:
            expiry_date = None
        else:
            expiry_date = add_duration(max(subscription.expiry_date, now), tier.duration)
    elif status is SubscriptionStatus.PENDING:
        start_date = max(now, start_date)
        expiry_date = add_duration(start_date, tier.duration)
    else:
        start_date = now
        expiry_date = add_duration(now, tier.duration)

    updated = replace(
        subscription,
        status=SubscriptionStatus.ACTIVE,
        start_date=start_date,
        expiry_date=expiry_date,
        last_payment_amount=amount,
        last_payment_date=paid_at or now,
        cancelled_at=None,
        updated_at=now,
    )
    return LifecycleChange(updated, status, changed=True)


def fail(subscription: Subscription, now: datetime, has_prior_success: bool) -> LifecycleChange:
    """Apply a failed payment; only an unpaid Pending subscription moves to Failed."""
    if subscription.status is not SubscriptionStatus.PENDING or has_prior_success:
        return _unchanged(subscription)

    updated = replace(subscription, status=SubscriptionStatus.FAILED, updated_at=now)
    return LifecycleChange(updated, SubscriptionStatus.PENDING, changed=True)


def expire(subscription: Subscription, now: datetime) -> LifecycleChange:
    """Move an Active subscription whose expiry has passed to Expired."""
    if (
        subscription.status is not SubscriptionStatus.ACTIVE
        or subscription.expiry_date is None
        or subscription.expiry_date > now
    ):
        return _unchanged(subscription)

    updated = replace(subscription, status=SubscriptionStatus.EXPIRED, updated_at=now)
    return LifecycleChange(updated, SubscriptionStatus.ACTIVE, changed=True)


def cancel(subscription: Subscription, now: datetime) -> LifecycleChange:
    """
    Cancel on explicit member or admin request.

    Cancelling twice is a no-op.

    Raises:
        InvalidTransition: Subscription is Expired or Failed
    """
    status = subscription.status
    if status is SubscriptionStatus.CANCELLED:
        return _unchanged(subscription)
    if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING):
        raise InvalidTransition(
            f"Cannot cancel subscription {subscription.id} in status {status.value}",
            {"subscription_id": subscription.id, "current_status": status.value},
        )

    updated = replace(
        subscription,
        status=SubscriptionStatus.CANCELLED,
        cancelled_at=now,
        updated_at=now,
    )
    return LifecycleChange(updated, status, changed=True)
