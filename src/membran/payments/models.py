"""Canonical records for tiers, subscriptions and ledger entries."""

from dataclasses import dataclass
from datetime import datetime

from membran.db.models import SubscriptionStatus, TierDuration, TransactionStatus


@dataclass
class Tier:
    """Pricing tier (read-only reference data)."""

    id: str
    name: str
    description: str | None
    price_cents: int
    currency: str
    duration: TierDuration


@dataclass
class Subscription:
    """One member's membership of one tier on one community server."""

    id: str
    member_id: str
    server_id: str
    tier_id: str
    status: SubscriptionStatus
    start_date: datetime  # UTC
    expiry_date: datetime | None  # None = lifetime
    last_payment_amount: int | None = None
    last_payment_date: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Transaction:
    """Ledger entry for one gateway order."""

    id: str
    subscription_id: str
    gateway_order_id: str  # idempotency key
    amount: int  # minor units
    currency: str
    status: TransactionStatus
    created_at: datetime  # UTC
    updated_at: datetime  # UTC, strictly increasing per write
    gateway_transaction_id: str | None = None
    payment_method: str | None = None
    payment_date: datetime | None = None
    gross_amount: int | None = None


@dataclass
class GatewayUpdate:
    """Status report for one order, already mapped to ledger vocabulary."""

    gateway_order_id: str
    status: TransactionStatus
    amount: int | None = None
    gateway_transaction_id: str | None = None
    payment_method: str | None = None
    payment_date: datetime | None = None
