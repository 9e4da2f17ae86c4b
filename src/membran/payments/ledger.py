"""Transaction ledger: one record per gateway order, keyed by order id.

Status moves forward only:

    Pending -> Success | Failed | Refunded
    Success -> Refunded

An update reporting a lower-ranked status than the stored one is stale. An
update repeating the stored status is a duplicate: it may fill in fields the
gateway had not sent before, but never changes the status and never bumps
``updated_at`` when nothing new arrived.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from membran.db.models import Outcome, TransactionStatus
from membran.payments.errors import (
    AmountMismatch,
    DuplicateOrder,
    InvalidTransition,
    NotFound,
    StaleUpdate,
)
from membran.payments.models import GatewayUpdate, Transaction
from membran.payments.store import UnitOfWork

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.SUCCESS, TransactionStatus.FAILED, TransactionStatus.REFUNDED}
    ),
    TransactionStatus.SUCCESS: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}

STATUS_RANK: dict[TransactionStatus, int] = {
    TransactionStatus.PENDING: 0,
    TransactionStatus.SUCCESS: 1,
    TransactionStatus.FAILED: 1,
    TransactionStatus.REFUNDED: 2,
}

_MERGEABLE_FIELDS = ("gateway_transaction_id", "payment_method", "payment_date")


@dataclass
class LedgerWrite:
    """Result of applying one gateway update to a ledger entry."""

    transaction: Transaction
    previous_status: TransactionStatus
    outcome: Outcome  # APPLIED or DUPLICATE
    written: bool


def next_write_time(previous: datetime, now: datetime) -> datetime:
    """Timestamp for a write that must sort strictly after ``previous``."""
    return max(now, previous + timedelta(microseconds=1))


def new_pending(
    subscription_id: str,
    gateway_order_id: str,
    amount: int,
    currency: str,
    now: datetime,
) -> Transaction:
    return Transaction(
        id=uuid.uuid4().hex,
        subscription_id=subscription_id,
        gateway_order_id=gateway_order_id,
        amount=amount,
        currency=currency,
        status=TransactionStatus.PENDING,
        created_at=now,
        updated_at=now,
    )


def plan_update(transaction: Transaction, update: GatewayUpdate, now: datetime) -> LedgerWrite:
    """
    Decide how ``update`` changes ``transaction`` without writing anything.

    Raises:
        AmountMismatch: Gateway amount differs from the recorded amount
        StaleUpdate: Update reports an older status than the stored one
        InvalidTransition: Status change not allowed by the ledger table
    """
    current = transaction.status
    target = update.status
    context = {
        "gateway_order_id": transaction.gateway_order_id,
        "attempted_status": target.value,
        "current_status": current.value,
    }

    if update.amount is not None and update.amount != transaction.amount:
        raise AmountMismatch(
            f"Order {transaction.gateway_order_id}: gateway amount {update.amount} "
            f"does not match recorded amount {transaction.amount}",
            {**context, "gateway_amount": update.amount, "recorded_amount": transaction.amount},
        )

    if target is current:
        fills = {
            field: getattr(update, field)
            for field in _MERGEABLE_FIELDS
            if getattr(transaction, field) is None and getattr(update, field) is not None
        }
        if update.amount is not None and transaction.gross_amount is None:
            fills["gross_amount"] = update.amount
        if not fills:
            return LedgerWrite(transaction, current, Outcome.DUPLICATE, written=False)
        merged = replace(
            transaction,
            updated_at=next_write_time(transaction.updated_at, now),
            **fills,
        )
        return LedgerWrite(merged, current, Outcome.DUPLICATE, written=True)

    if STATUS_RANK[target] < STATUS_RANK[current]:
        raise StaleUpdate(
            f"Order {transaction.gateway_order_id}: {target.value} is older than "
            f"stored {current.value}",
            context,
        )

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Order {transaction.gateway_order_id}: cannot move from "
            f"{current.value} to {target.value}",
            context,
        )

    applied = replace(
        transaction,
        status=target,
        gateway_transaction_id=update.gateway_transaction_id or transaction.gateway_transaction_id,
        payment_method=update.payment_method or transaction.payment_method,
        payment_date=update.payment_date or transaction.payment_date,
        gross_amount=update.amount if update.amount is not None else transaction.gross_amount,
        updated_at=next_write_time(transaction.updated_at, now),
    )
    return LedgerWrite(applied, current, Outcome.APPLIED, written=True)


class Ledger:
    """Ledger operations inside one locked unit of work."""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    async def record_pending(
        self,
        subscription_id: str,
        gateway_order_id: str,
        amount: int,
        currency: str,
        now: datetime,
    ) -> Transaction:
        """
        Record a payment attempt before the gateway reports on it.

        Raises:
            DuplicateOrder: The order id is already in the ledger
        """
        if await self.uow.get_transaction(gateway_order_id) is not None:
            raise DuplicateOrder(
                f"Order {gateway_order_id} already recorded",
                {"gateway_order_id": gateway_order_id},
            )

        transaction = new_pending(subscription_id, gateway_order_id, amount, currency, now)
        await self.uow.insert_transaction(transaction)
        logger.info(
            f"Recorded pending order {gateway_order_id} for subscription "
            f"{subscription_id}: {amount} {currency}"
        )
        return transaction

    async def apply_gateway_update(self, update: GatewayUpdate, now: datetime) -> LedgerWrite:
        """
        Apply a gateway status report to its ledger entry.

        Raises:
            NotFound: No ledger entry for the order id
            AmountMismatch, StaleUpdate, InvalidTransition: see :func:`plan_update`
        """
        transaction = await self.uow.get_transaction(update.gateway_order_id)
        if transaction is None:
            raise NotFound(
                f"Order {update.gateway_order_id} not found",
                {"gateway_order_id": update.gateway_order_id},
            )

        write = plan_update(transaction, update, now)
        if write.written:
            await self.uow.update_transaction(write.transaction)
        return write
