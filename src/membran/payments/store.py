"""Storage contract for subscriptions and the transaction ledger.

All mutation goes through a unit of work obtained from
:meth:`SubscriptionStore.locked`, which holds the per-subscription exclusion
for its whole lifetime. Writes staged on the unit of work are committed
together when the ``async with`` block exits cleanly and discarded if it
raises, so a ledger update and the lifecycle transition it drives are never
persisted separately.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional

from membran.db.models import SubscriptionStatus, TransactionStatus
from membran.payments.errors import Busy, DuplicateOrder, NotFound
from membran.payments.models import Subscription, Tier, Transaction

logger = logging.getLogger(__name__)


class UnitOfWork(ABC):
    """Locked view of one subscription and its ledger entries."""

    subscription: Subscription
    tier: Tier

    @abstractmethod
    async def get_transaction(self, gateway_order_id: str) -> Optional[Transaction]:
        """Fetch a ledger entry by order id (staged writes included)."""

    @abstractmethod
    async def list_transactions(self) -> list[Transaction]:
        """All ledger entries owned by the locked subscription, oldest first."""

    @abstractmethod
    async def insert_transaction(self, transaction: Transaction) -> None:
        """Stage a new ledger entry.

        Raises:
            DuplicateOrder: The gateway order id is already in the ledger
        """

    @abstractmethod
    async def update_transaction(self, transaction: Transaction) -> None:
        """Stage a ledger entry update."""

    @abstractmethod
    async def update_subscription(self, subscription: Subscription) -> None:
        """Stage a subscription update; ``self.subscription`` reflects it."""


class SubscriptionStore(ABC):
    """Persistence for tiers, subscriptions, ledger entries and webhook audit."""

    @abstractmethod
    def locked(self, subscription_id: str, timeout: float) -> Any:
        """Async context manager yielding a :class:`UnitOfWork`.

        Raises:
            Busy: The subscription lock was not acquired within ``timeout`` seconds
            NotFound: No such subscription
        """

    @abstractmethod
    async def find_transaction(self, gateway_order_id: str) -> Optional[Transaction]:
        """Unlocked read used to route a notification to its subscription."""

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Unlocked read of one subscription."""

    @abstractmethod
    async def get_tier(self, tier_id: str) -> Optional[Tier]:
        """Unlocked read of one tier."""

    @abstractmethod
    async def list_transactions(self, subscription_id: str) -> list[Transaction]:
        """Unlocked read of a subscription's ledger entries, oldest first."""

    @abstractmethod
    async def get_or_create_subscription(
        self,
        subscription: Subscription,
    ) -> tuple[Subscription, bool]:
        """Return the (member, server, tier) subscription, inserting ``subscription`` if absent.

        Returns:
            (subscription, created)
        """

    @abstractmethod
    async def list_subscriptions(
        self,
        member_id: str,
        server_id: Optional[str] = None,
    ) -> list[Subscription]:
        """Unlocked read of a member's subscriptions, optionally on one server, oldest first."""

    @abstractmethod
    async def due_for_expiry(self, now: datetime) -> list[str]:
        """Ids of Active subscriptions whose expiry is at or before ``now``."""

    @abstractmethod
    async def stale_pending_orders(self, cutoff: datetime) -> list[Transaction]:
        """Pending ledger entries created before ``cutoff``."""

    @abstractmethod
    async def record_webhook_event(
        self,
        gateway_order_id: Optional[str],
        payload: str,
        verified: bool,
        outcome: Optional[str] = None,
        processing_error: Optional[str] = None,
    ) -> None:
        """Append one notification to the audit log."""


class _MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "MemoryStore", subscription: Subscription, tier: Tier):
        self._store = store
        self.subscription = subscription
        self.tier = tier
        self._staged: dict[str, Transaction] = {}
        self._subscription_dirty = False

    async def get_transaction(self, gateway_order_id: str) -> Optional[Transaction]:
        if gateway_order_id in self._staged:
            return replace(self._staged[gateway_order_id])
        return await self._store.find_transaction(gateway_order_id)

    async def list_transactions(self) -> list[Transaction]:
        merged = {
            t.gateway_order_id: t
            for t in await self._store.list_transactions(self.subscription.id)
        }
        for order_id, txn in self._staged.items():
            merged[order_id] = replace(txn)
        return sorted(merged.values(), key=lambda t: t.created_at)

    async def insert_transaction(self, transaction: Transaction) -> None:
        order_id = transaction.gateway_order_id
        if order_id in self._staged or order_id in self._store._transactions:
            raise DuplicateOrder(
                f"Order {order_id} already recorded",
                {"gateway_order_id": order_id},
            )
        self._staged[order_id] = replace(transaction)

    async def update_transaction(self, transaction: Transaction) -> None:
        self._staged[transaction.gateway_order_id] = replace(transaction)

    async def update_subscription(self, subscription: Subscription) -> None:
        self.subscription = replace(subscription)
        self._subscription_dirty = True

    def commit(self) -> None:
        for order_id, txn in self._staged.items():
            self._store._transactions[order_id] = txn
        if self._subscription_dirty:
            self._store._subscriptions[self.subscription.id] = replace(self.subscription)


class MemoryStore(SubscriptionStore):
    """
    In-process store with a keyed asyncio mutex per subscription.

    Suitable for a single event loop (tests, local runs). Records handed out
    are copies; callers cannot mutate stored state except through a unit of
    work.
    """

    def __init__(self):
        self._tiers: dict[str, Tier] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._transactions: dict[str, Transaction] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self.webhook_events: list[dict[str, Any]] = []

    def add_tier(self, tier: Tier) -> Tier:
        self._tiers[tier.id] = replace(tier)
        return tier

    def add_subscription(self, subscription: Subscription) -> Subscription:
        self._subscriptions[subscription.id] = replace(subscription)
        return subscription

    def add_transaction(self, transaction: Transaction) -> Transaction:
        self._transactions[transaction.gateway_order_id] = replace(transaction)
        return transaction

    @asynccontextmanager
    async def locked(self, subscription_id: str, timeout: float) -> AsyncIterator[UnitOfWork]:
        lock = self._locks.setdefault(subscription_id, asyncio.Lock())
        self._lock_users[subscription_id] = self._lock_users.get(subscription_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                raise Busy(
                    f"Subscription {subscription_id} is locked by another operation",
                    {"subscription_id": subscription_id, "timeout_seconds": timeout},
                )

            try:
                subscription = self._subscriptions.get(subscription_id)
                if subscription is None:
                    raise NotFound(
                        f"Subscription {subscription_id} not found",
                        {"subscription_id": subscription_id},
                    )
                tier = self._tiers.get(subscription.tier_id)
                if tier is None:
                    raise NotFound(
                        f"Tier {subscription.tier_id} not found",
                        {"tier_id": subscription.tier_id},
                    )

                uow = _MemoryUnitOfWork(self, replace(subscription), replace(tier))
                yield uow
                uow.commit()
            finally:
                lock.release()
        finally:
            # Drop the lock once no task holds or waits on it
            self._lock_users[subscription_id] -= 1
            if not self._lock_users[subscription_id]:
                del self._lock_users[subscription_id]
                del self._locks[subscription_id]

    async def find_transaction(self, gateway_order_id: str) -> Optional[Transaction]:
        txn = self._transactions.get(gateway_order_id)
        return replace(txn) if txn else None

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        subscription = self._subscriptions.get(subscription_id)
        return replace(subscription) if subscription else None

    async def get_tier(self, tier_id: str) -> Optional[Tier]:
        tier = self._tiers.get(tier_id)
        return replace(tier) if tier else None

    async def list_transactions(self, subscription_id: str) -> list[Transaction]:
        owned = [
            replace(t) for t in self._transactions.values()
            if t.subscription_id == subscription_id
        ]
        return sorted(owned, key=lambda t: t.created_at)

    async def get_or_create_subscription(
        self,
        subscription: Subscription,
    ) -> tuple[Subscription, bool]:
        for existing in self._subscriptions.values():
            if (
                existing.member_id == subscription.member_id
                and existing.server_id == subscription.server_id
                and existing.tier_id == subscription.tier_id
            ):
                return replace(existing), False
        self.add_subscription(subscription)
        return replace(subscription), True

    async def list_subscriptions(
        self,
        member_id: str,
        server_id: Optional[str] = None,
    ) -> list[Subscription]:
        owned = [
            replace(s) for s in self._subscriptions.values()
            if s.member_id == member_id
            and (server_id is None or s.server_id == server_id)
        ]
        return sorted(owned, key=lambda s: (s.created_at or s.start_date, s.id))

    async def due_for_expiry(self, now: datetime) -> list[str]:
        return [
            s.id for s in self._subscriptions.values()
            if s.status is SubscriptionStatus.ACTIVE
            and s.expiry_date is not None
            and s.expiry_date <= now
        ]

    async def stale_pending_orders(self, cutoff: datetime) -> list[Transaction]:
        stale = [
            replace(t) for t in self._transactions.values()
            if t.status is TransactionStatus.PENDING and t.created_at < cutoff
        ]
        return sorted(stale, key=lambda t: t.created_at)

    async def record_webhook_event(
        self,
        gateway_order_id: Optional[str],
        payload: str,
        verified: bool,
        outcome: Optional[str] = None,
        processing_error: Optional[str] = None,
    ) -> None:
        self.webhook_events.append(
            {
                "gateway_order_id": gateway_order_id,
                "payload": payload,
                "verified": verified,
                "outcome": outcome,
                "processing_error": processing_error,
            }
        )
