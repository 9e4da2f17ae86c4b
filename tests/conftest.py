"""Pytest configuration and fixtures for reconciliation tests.

Tests run against the in-process MemoryStore; the PostgreSQL store is
covered separately with a mocked asyncpg pool.
"""

from datetime import datetime, timedelta, timezone

import pytest

from membran.db.models import SubscriptionStatus, TierDuration, TransactionStatus
from membran.payments.models import Subscription, Tier, Transaction
from membran.payments.reconciler import Reconciler
from membran.payments.store import MemoryStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store() -> MemoryStore:
    """MemoryStore seeded with one tier per duration."""
    store = MemoryStore()
    store.add_tier(Tier("monthly", "Monthly", "One month of access", 50000, "IDR", TierDuration.MONTHLY))
    store.add_tier(Tier("yearly", "Yearly", "Twelve months of access", 500000, "IDR", TierDuration.YEARLY))
    store.add_tier(Tier("lifetime", "Lifetime", None, 1500000, "IDR", TierDuration.LIFETIME))
    return store


@pytest.fixture
def reconciler(store) -> Reconciler:
    return Reconciler(store, lock_timeout=0.2)


@pytest.fixture
def add_subscription(store):
    """Factory seeding a subscription into the store."""

    def _add(
        subscription_id: str = "sub-1",
        status: SubscriptionStatus = SubscriptionStatus.PENDING,
        tier_id: str = "monthly",
        start_date: datetime = NOW - timedelta(minutes=10),
        expiry_date: datetime | None = None,
        member_id: str | None = None,
        server_id: str = "server-1",
        **fields,
    ) -> Subscription:
        return store.add_subscription(
            Subscription(
                id=subscription_id,
                member_id=member_id or f"member-{subscription_id}",
                server_id=server_id,
                tier_id=tier_id,
                status=status,
                start_date=start_date,
                expiry_date=expiry_date,
                created_at=start_date,
                updated_at=start_date,
                **fields,
            )
        )

    return _add


@pytest.fixture
def add_order(store):
    """Factory seeding a ledger entry into the store."""

    def _add(
        gateway_order_id: str,
        subscription_id: str = "sub-1",
        status: TransactionStatus = TransactionStatus.PENDING,
        amount: int = 50000,
        created_at: datetime = NOW - timedelta(minutes=5),
        **fields,
    ) -> Transaction:
        return store.add_transaction(
            Transaction(
                id=f"txn-{gateway_order_id}",
                subscription_id=subscription_id,
                gateway_order_id=gateway_order_id,
                amount=amount,
                currency="IDR",
                status=status,
                created_at=created_at,
                updated_at=created_at,
                **fields,
            )
        )

    return _add


@pytest.fixture
def notification():
    """Factory for Midtrans notification bodies."""

    def _build(
        order_id: str,
        transaction_status: str = "settlement",
        gross_amount: str = "50000.00",
        **extra,
    ) -> dict:
        body = {
            "order_id": order_id,
            "transaction_status": transaction_status,
            "gross_amount": gross_amount,
            "status_code": "200",
            "transaction_id": f"mt-{order_id}",
            "payment_type": "bank_transfer",
        }
        if transaction_status == "settlement":
            # 19:00 WIB == 12:00 UTC
            body["settlement_time"] = "2024-06-01 19:00:00"
        body.update(extra)
        return body

    return _build
