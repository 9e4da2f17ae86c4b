"""Member-facing subscription view.

``project`` is a pure function: it never writes, and a state that should
already have transitioned (scheduler lag, an unapplied payment) is reported
through ``inconsistencies`` rather than corrected.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from membran.db.models import SubscriptionStatus, TierDuration, TransactionStatus
from membran.payments.models import Subscription, Tier, Transaction

DEFAULT_LOOKAHEAD = timedelta(days=7)

# Inconsistency flags
EXPIRY_ELAPSED = "expiry_elapsed"
PAYMENT_NOT_APPLIED = "payment_not_applied"


@dataclass
class TierView:
    id: str
    name: str
    description: Optional[str]
    price_cents: int
    currency: str
    duration: TierDuration


@dataclass
class SubscriptionView:
    """Read model served to members and the rest of the system."""

    id: str
    member_id: str
    server_id: str
    tier_id: str
    status: SubscriptionStatus
    start_date: datetime
    expiry_date: Optional[datetime]
    last_payment_amount: Optional[int]
    last_payment_date: Optional[datetime]
    tier: TierView
    is_expiring_soon: bool
    inconsistencies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable shape of the outbound read contract."""
        return {
            "id": self.id,
            "memberId": self.member_id,
            "serverId": self.server_id,
            "tierId": self.tier_id,
            "status": self.status.value,
            "startDate": self.start_date.isoformat(),
            "expiryDate": self.expiry_date.isoformat() if self.expiry_date else None,
            "lastPaymentAmount": self.last_payment_amount,
            "lastPaymentDate": (
                self.last_payment_date.isoformat() if self.last_payment_date else None
            ),
            "tier": {
                "id": self.tier.id,
                "name": self.tier.name,
                "description": self.tier.description,
                "priceCents": self.tier.price_cents,
                "currency": self.tier.currency,
                "duration": self.tier.duration.value,
            },
            "isExpiringSoon": self.is_expiring_soon,
            "inconsistencies": list(self.inconsistencies),
        }


def is_expiring_soon(
    subscription: Subscription,
    now: datetime,
    lookahead: timedelta = DEFAULT_LOOKAHEAD,
) -> bool:
    """Active, not lifetime, and expiring after ``now`` but within ``lookahead``."""
    if subscription.status is not SubscriptionStatus.ACTIVE or subscription.expiry_date is None:
        return False
    return now < subscription.expiry_date <= now + lookahead


def project(
    subscription: Subscription,
    transactions: list[Transaction],
    tier: Tier,
    now: datetime,
    lookahead: timedelta = DEFAULT_LOOKAHEAD,
) -> SubscriptionView:
    """
    Build the member-facing view of one subscription.

    Args:
        subscription: Persisted subscription record
        transactions: Ledger entries owned by the subscription
        tier: The subscription's tier
        now: Evaluation time (UTC)
        lookahead: Window for ``is_expiring_soon``

    Raises:
        ValueError: ``tier`` is not the subscription's tier
    """
    if tier.id != subscription.tier_id:
        raise ValueError(
            f"Tier {tier.id} does not belong to subscription {subscription.id}"
        )

    inconsistencies = []
    if (
        subscription.status is SubscriptionStatus.ACTIVE
        and subscription.expiry_date is not None
        and subscription.expiry_date <= now
    ):
        inconsistencies.append(EXPIRY_ELAPSED)

    if subscription.status in (SubscriptionStatus.PENDING, SubscriptionStatus.FAILED) and any(
        t.status is TransactionStatus.SUCCESS for t in transactions
    ):
        inconsistencies.append(PAYMENT_NOT_APPLIED)

    return SubscriptionView(
        id=subscription.id,
        member_id=subscription.member_id,
        server_id=subscription.server_id,
        tier_id=subscription.tier_id,
        status=subscription.status,
        start_date=subscription.start_date,
        expiry_date=subscription.expiry_date,
        last_payment_amount=subscription.last_payment_amount,
        last_payment_date=subscription.last_payment_date,
        tier=TierView(
            id=tier.id,
            name=tier.name,
            description=tier.description,
            price_cents=tier.price_cents,
            currency=tier.currency,
            duration=tier.duration,
        ),
        is_expiring_soon=is_expiring_soon(subscription, now, lookahead),
        inconsistencies=inconsistencies,
    )
