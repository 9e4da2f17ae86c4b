"""PostgreSQL-backed subscription store.

The per-subscription exclusion is the subscription row lock: ``locked`` opens
a transaction, bounds the wait with ``lock_timeout`` and takes
``SELECT ... FOR UPDATE`` on the subscription row. Every write made through
the unit of work belongs to that transaction and commits or rolls back with
it, so exclusion holds across processes sharing the database.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import asyncpg

from membran.db.models import SubscriptionStatus, Table, TierDuration, TransactionStatus
from membran.payments.errors import Busy, DuplicateOrder, NotFound
from membran.payments.models import Subscription, Tier, Transaction
from membran.payments.store import SubscriptionStore, UnitOfWork

logger = logging.getLogger(__name__)

_SUBSCRIPTION_COLUMNS = """
    id, member_id, server_id, tier_id, status, start_date, expiry_date,
    last_payment_amount, last_payment_date, cancelled_at, created_at, updated_at
"""

_TRANSACTION_COLUMNS = """
    id, subscription_id, gateway_order_id, amount, currency, status,
    created_at, updated_at, gateway_transaction_id, payment_method,
    payment_date, gross_amount
"""


def tier_from_row(row: asyncpg.Record) -> Tier:
    return Tier(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        price_cents=row["price_cents"],
        currency=row["currency"],
        duration=TierDuration(row["duration"]),
    )


def subscription_from_row(row: asyncpg.Record) -> Subscription:
    return Subscription(
        id=row["id"],
        member_id=row["member_id"],
        server_id=row["server_id"],
        tier_id=row["tier_id"],
        status=SubscriptionStatus(row["status"]),
        start_date=row["start_date"],
        expiry_date=row["expiry_date"],
        last_payment_amount=row["last_payment_amount"],
        last_payment_date=row["last_payment_date"],
        cancelled_at=row["cancelled_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def transaction_from_row(row: asyncpg.Record) -> Transaction:
    return Transaction(
        id=row["id"],
        subscription_id=row["subscription_id"],
        gateway_order_id=row["gateway_order_id"],
        amount=row["amount"],
        currency=row["currency"],
        status=TransactionStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        gateway_transaction_id=row["gateway_transaction_id"],
        payment_method=row["payment_method"],
        payment_date=row["payment_date"],
        gross_amount=row["gross_amount"],
    )


class _PostgresUnitOfWork(UnitOfWork):
    def __init__(self, conn: asyncpg.Connection, subscription: Subscription, tier: Tier):
        self._conn = conn
        self.subscription = subscription
        self.tier = tier

    async def get_transaction(self, gateway_order_id: str) -> Optional[Transaction]:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_TRANSACTION_COLUMNS}
            FROM {Table.TRANSACTIONS}
            WHERE gateway_order_id = $1
            """,
            gateway_order_id,
        )
        return transaction_from_row(row) if row else None

    async def list_transactions(self) -> list[Transaction]:
        rows = await self._conn.fetch(
            f"""
            SELECT {_TRANSACTION_COLUMNS}
            FROM {Table.TRANSACTIONS}
            WHERE subscription_id = $1
            ORDER BY created_at
            """,
            self.subscription.id,
        )
        return [transaction_from_row(r) for r in rows]

    async def insert_transaction(self, transaction: Transaction) -> None:
        try:
            await self._conn.execute(
                f"""
                INSERT INTO {Table.TRANSACTIONS} ({_TRANSACTION_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                transaction.id,
                transaction.subscription_id,
                transaction.gateway_order_id,
                transaction.amount,
                transaction.currency,
                transaction.status.value,
                transaction.created_at,
                transaction.updated_at,
                transaction.gateway_transaction_id,
                transaction.payment_method,
                transaction.payment_date,
                transaction.gross_amount,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateOrder(
                f"Order {transaction.gateway_order_id} already recorded",
                {"gateway_order_id": transaction.gateway_order_id},
            ) from e

    async def update_transaction(self, transaction: Transaction) -> None:
        await self._conn.execute(
            f"""
            UPDATE {Table.TRANSACTIONS}
            SET status = $2,
                gateway_transaction_id = $3,
                payment_method = $4,
                payment_date = $5,
                gross_amount = $6,
                updated_at = $7
            WHERE id = $1
            """,
            transaction.id,
            transaction.status.value,
            transaction.gateway_transaction_id,
            transaction.payment_method,
            transaction.payment_date,
            transaction.gross_amount,
            transaction.updated_at,
        )

    async def update_subscription(self, subscription: Subscription) -> None:
        await self._conn.execute(
            f"""
            UPDATE {Table.SUBSCRIPTIONS}
            SET status = $2,
                start_date = $3,
                expiry_date = $4,
                last_payment_amount = $5,
                last_payment_date = $6,
                cancelled_at = $7,
                updated_at = $8
            WHERE id = $1
            """,
            subscription.id,
            subscription.status.value,
            subscription.start_date,
            subscription.expiry_date,
            subscription.last_payment_amount,
            subscription.last_payment_date,
            subscription.cancelled_at,
            subscription.updated_at,
        )
        self.subscription = subscription


class PostgresStore(SubscriptionStore):
    """Subscription store over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def locked(self, subscription_id: str, timeout: float) -> AsyncIterator[UnitOfWork]:
        busy = Busy(
            f"Subscription {subscription_id} is locked by another operation",
            {"subscription_id": subscription_id, "timeout_seconds": timeout},
        )
        try:
            conn = await self._pool.acquire(timeout=timeout)
        except asyncio.TimeoutError as e:
            raise busy from e

        try:
            async with conn.transaction():
                # Scoped to this transaction; value in milliseconds
                await conn.execute(
                    "SELECT set_config('lock_timeout', $1, true)",
                    f"{int(timeout * 1000)}ms",
                )
                try:
                    row = await conn.fetchrow(
                        f"""
                        SELECT {_SUBSCRIPTION_COLUMNS}
                        FROM {Table.SUBSCRIPTIONS}
                        WHERE id = $1
                        FOR UPDATE
                        """,
                        subscription_id,
                    )
                except asyncpg.LockNotAvailableError as e:
                    raise busy from e
                if row is None:
                    raise NotFound(
                        f"Subscription {subscription_id} not found",
                        {"subscription_id": subscription_id},
                    )

                subscription = subscription_from_row(row)
                tier_row = await conn.fetchrow(
                    f"""
                    SELECT id, name, description, price_cents, currency, duration
                    FROM {Table.PRICING_TIERS}
                    WHERE id = $1
                    """,
                    subscription.tier_id,
                )
                if tier_row is None:
                    raise NotFound(
                        f"Tier {subscription.tier_id} not found",
                        {"tier_id": subscription.tier_id},
                    )

                yield _PostgresUnitOfWork(conn, subscription, tier_from_row(tier_row))
        finally:
            await self._pool.release(conn)

    async def find_transaction(self, gateway_order_id: str) -> Optional[Transaction]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_TRANSACTION_COLUMNS}
                FROM {Table.TRANSACTIONS}
                WHERE gateway_order_id = $1
                """,
                gateway_order_id,
            )
        return transaction_from_row(row) if row else None

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM {Table.SUBSCRIPTIONS}
                WHERE id = $1
                """,
                subscription_id,
            )
        return subscription_from_row(row) if row else None

    async def get_tier(self, tier_id: str) -> Optional[Tier]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT id, name, description, price_cents, currency, duration
                FROM {Table.PRICING_TIERS}
                WHERE id = $1
                """,
                tier_id,
            )
        return tier_from_row(row) if row else None

    async def list_transactions(self, subscription_id: str) -> list[Transaction]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_TRANSACTION_COLUMNS}
                FROM {Table.TRANSACTIONS}
                WHERE subscription_id = $1
                ORDER BY created_at
                """,
                subscription_id,
            )
        return [transaction_from_row(r) for r in rows]

    async def get_or_create_subscription(
        self,
        subscription: Subscription,
    ) -> tuple[Subscription, bool]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {Table.SUBSCRIPTIONS} ({_SUBSCRIPTION_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (member_id, server_id, tier_id) DO NOTHING
                RETURNING {_SUBSCRIPTION_COLUMNS}
                """,
                subscription.id,
                subscription.member_id,
                subscription.server_id,
                subscription.tier_id,
                subscription.status.value,
                subscription.start_date,
                subscription.expiry_date,
                subscription.last_payment_amount,
                subscription.last_payment_date,
                subscription.cancelled_at,
                subscription.created_at,
                subscription.updated_at,
            )
            if row is not None:
                return subscription_from_row(row), True

            row = await conn.fetchrow(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM {Table.SUBSCRIPTIONS}
                WHERE member_id = $1 AND server_id = $2 AND tier_id = $3
                """,
                subscription.member_id,
                subscription.server_id,
                subscription.tier_id,
            )
        return subscription_from_row(row), False

    async def list_subscriptions(
        self,
        member_id: str,
        server_id: Optional[str] = None,
    ) -> list[Subscription]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM {Table.SUBSCRIPTIONS}
                WHERE member_id = $1
                  AND ($2::text IS NULL OR server_id = $2)
                ORDER BY created_at, id
                """,
                member_id,
                server_id,
            )
        return [subscription_from_row(r) for r in rows]

    async def due_for_expiry(self, now: datetime) -> list[str]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT id
                FROM {Table.SUBSCRIPTIONS}
                WHERE status = $1
                  AND expiry_date IS NOT NULL
                  AND expiry_date <= $2
                ORDER BY expiry_date
                """,
                SubscriptionStatus.ACTIVE.value,
                now,
            )
        return [r["id"] for r in rows]

    async def stale_pending_orders(self, cutoff: datetime) -> list[Transaction]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_TRANSACTION_COLUMNS}
                FROM {Table.TRANSACTIONS}
                WHERE status = $1
                  AND created_at < $2
                ORDER BY created_at
                """,
                TransactionStatus.PENDING.value,
                cutoff,
            )
        return [transaction_from_row(r) for r in rows]

    async def record_webhook_event(
        self,
        gateway_order_id: Optional[str],
        payload: str,
        verified: bool,
        outcome: Optional[str] = None,
        processing_error: Optional[str] = None,
    ) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {Table.WEBHOOK_EVENTS}
                    (gateway_order_id, payload, verified, outcome, processing_error)
                VALUES ($1, $2, $3, $4, $5)
                """,
                gateway_order_id,
                payload,
                verified,
                outcome,
                processing_error,
            )
