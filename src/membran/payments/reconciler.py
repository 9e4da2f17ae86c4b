"""Gateway notification reconciliation.

Routes each notification to its ledger entry, applies it under the owning
subscription's lock, and drives the lifecycle transition the new status
implies. Re-deliveries resolve to ``Outcome.DUPLICATE`` and out-of-order
deliveries to ``Outcome.STALE``; neither mutates state.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from membran.db.models import Outcome, SubscriptionStatus, TransactionStatus
from membran.payments import lifecycle
from membran.payments.errors import (
    InvalidTransition,
    ReconciliationError,
    SignatureInvalid,
    StaleUpdate,
    UnknownOrder,
)
from membran.payments.ledger import Ledger
from membran.payments.models import GatewayUpdate, Subscription
from membran.payments.notifications import parse_notification
from membran.payments.store import SubscriptionStore, UnitOfWork

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0

REFUND_REVIEW_NOTE = "refund_recorded_subscription_unchanged"


@dataclass
class ReconciliationResult:
    """What one notification did to the ledger and its subscription."""

    outcome: Outcome
    gateway_order_id: str
    transaction_status: TransactionStatus
    subscription_id: str
    subscription_status: SubscriptionStatus
    previous_subscription_status: SubscriptionStatus
    expiry_date: Optional[datetime]
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "gatewayOrderId": self.gateway_order_id,
            "transactionStatus": self.transaction_status.value,
            "subscriptionId": self.subscription_id,
            "subscriptionStatus": self.subscription_status.value,
            "previousSubscriptionStatus": self.previous_subscription_status.value,
            "expiryDate": self.expiry_date.isoformat() if self.expiry_date else None,
            "notes": list(self.notes),
        }


def _payload_text(raw: Union[bytes, str, Mapping[str, Any]]) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        return raw
    return json.dumps(dict(raw), default=str)


def _order_id_hint(raw: Union[bytes, str, Mapping[str, Any]]) -> Optional[str]:
    """Best-effort order id for audit rows of payloads that fail validation."""
    if isinstance(raw, Mapping):
        value = raw.get("order_id")
    else:
        try:
            decoded = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        value = decoded.get("order_id") if isinstance(decoded, dict) else None
    return str(value) if value else None


class Reconciler:
    """Applies gateway status reports to the ledger and subscription lifecycle."""

    def __init__(
        self,
        store: SubscriptionStore,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.lock_timeout = lock_timeout

    async def handle_notification(
        self,
        raw_payload: Union[bytes, str, Mapping[str, Any]],
        signature_verified: bool,
        now: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """
        Reconcile one gateway notification.

        Every call, accepted or rejected, is appended to the webhook audit log.

        Args:
            raw_payload: Notification body as received
            signature_verified: Result of upstream signature verification
            now: Evaluation time (defaults to current UTC time)

        Raises:
            SignatureInvalid: ``signature_verified`` is False; nothing is read or written
            MalformedPayload: Body lacks required fields or has unknown values
            UnknownOrder: No ledger entry for the order id
            InvalidTransition: Update conflicts with ledger or lifecycle rules
            Busy: Subscription lock not acquired in time; the gateway should redeliver
        """
        payload_text = _payload_text(raw_payload)

        if not signature_verified:
            order_hint = _order_id_hint(raw_payload)
            logger.warning(f"Rejected notification with invalid signature (order={order_hint})")
            await self._audit(order_hint, payload_text, False, None, "Invalid signature")
            raise SignatureInvalid(
                "Notification signature verification failed",
                {"gateway_order_id": order_hint},
            )

        order_hint = _order_id_hint(raw_payload)
        try:
            update = parse_notification(raw_payload)
            result = await self.apply_update(update, now)
        except ReconciliationError as e:
            await self._audit(order_hint, payload_text, True, e.code, e.detail)
            raise

        await self._audit(update.gateway_order_id, payload_text, True, result.outcome.value, None)
        return result

    async def apply_update(
        self,
        update: GatewayUpdate,
        now: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """
        Apply an already-authenticated status report.

        Shared by the webhook path and status polling. Raises the same
        errors as :meth:`handle_notification` except the signature and
        payload checks.
        """
        now = now or datetime.now(timezone.utc)
        order_id = update.gateway_order_id

        routed = await self.store.find_transaction(order_id)
        if routed is None:
            logger.error(
                f"Unknown order {order_id} (status={update.status.value}); "
                "held for manual review"
            )
            raise UnknownOrder(
                f"Order {order_id} not found in ledger",
                {"gateway_order_id": order_id, "attempted_status": update.status.value},
            )

        async with self.store.locked(routed.subscription_id, self.lock_timeout) as uow:
            try:
                return await self._reconcile(uow, update, now)
            except StaleUpdate as e:
                logger.info(f"Discarded stale notification: {e.detail}")
                return self._result(Outcome.STALE, uow, e.context["current_status"], order_id)
            except InvalidTransition as e:
                logger.error(
                    f"Rejected notification for order {order_id}: {e.detail} "
                    f"(attempted={update.status.value}, "
                    f"subscription={uow.subscription.id} {uow.subscription.status.value})"
                )
                e.context.setdefault("gateway_order_id", order_id)
                e.context.setdefault("attempted_status", update.status.value)
                e.context.setdefault("subscription_status", uow.subscription.status.value)
                raise

    async def _reconcile(
        self,
        uow: UnitOfWork,
        update: GatewayUpdate,
        now: datetime,
    ) -> ReconciliationResult:
        write = await Ledger(uow).apply_gateway_update(update, now)
        txn = write.transaction

        if write.outcome is Outcome.DUPLICATE:
            logger.info(
                f"Duplicate notification for order {txn.gateway_order_id} "
                f"({txn.status.value}); subscription untouched"
            )
            return self._result(Outcome.DUPLICATE, uow, txn.status.value, txn.gateway_order_id)

        subscription = uow.subscription
        notes: list[str] = []
        paid_first = (
            txn.status is TransactionStatus.REFUNDED
            and write.previous_status is TransactionStatus.PENDING
        )

        if txn.status is TransactionStatus.SUCCESS or paid_first:
            # A refund skipping Success still implies the payment settled
            reactivation = (
                subscription.cancelled_at is not None
                and txn.created_at > subscription.cancelled_at
            )
            change = lifecycle.activate(
                subscription,
                uow.tier,
                now,
                amount=txn.gross_amount if txn.gross_amount is not None else txn.amount,
                paid_at=txn.payment_date,
                reactivation=reactivation,
            )
        elif txn.status is TransactionStatus.FAILED:
            others = [t for t in await uow.list_transactions() if t.id != txn.id]
            has_prior_success = any(
                t.status in (TransactionStatus.SUCCESS, TransactionStatus.REFUNDED)
                for t in others
            )
            change = lifecycle.fail(subscription, now, has_prior_success)
        else:
            change = lifecycle.LifecycleChange(subscription, subscription.status, changed=False)

        if txn.status is TransactionStatus.REFUNDED:
            # Refund policy is pending a product decision; access is not revoked
            logger.warning(
                f"Refund recorded for order {txn.gateway_order_id}; subscription "
                f"{subscription.id} is {change.status.value}; flagged for review"
            )
            notes.append(REFUND_REVIEW_NOTE)

        if change.changed:
            await uow.update_subscription(change.subscription)
            logger.info(
                f"Subscription {subscription.id}: {change.previous_status.value} -> "
                f"{change.status.value} (order {txn.gateway_order_id}, "
                f"expiry={change.subscription.expiry_date})"
            )

        return ReconciliationResult(
            outcome=Outcome.APPLIED,
            gateway_order_id=txn.gateway_order_id,
            transaction_status=txn.status,
            subscription_id=subscription.id,
            subscription_status=change.status,
            previous_subscription_status=change.previous_status,
            expiry_date=change.subscription.expiry_date,
            notes=notes,
        )

    @staticmethod
    def _result(
        outcome: Outcome,
        uow: UnitOfWork,
        transaction_status: str,
        order_id: str,
    ) -> ReconciliationResult:
        subscription = uow.subscription
        return ReconciliationResult(
            outcome=outcome,
            gateway_order_id=order_id,
            transaction_status=TransactionStatus(transaction_status),
            subscription_id=subscription.id,
            subscription_status=subscription.status,
            previous_subscription_status=subscription.status,
            expiry_date=subscription.expiry_date,
        )

    async def cancel_subscription(
        self,
        subscription_id: str,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Cancel on explicit member or admin request.

        Raises:
            NotFound: No such subscription
            InvalidTransition: Subscription is Expired or Failed
            Busy: Subscription lock not acquired in time
        """
        now = now or datetime.now(timezone.utc)
        async with self.store.locked(subscription_id, self.lock_timeout) as uow:
            change = lifecycle.cancel(uow.subscription, now)
            if change.changed:
                await uow.update_subscription(change.subscription)
                logger.info(
                    f"Subscription {subscription_id}: {change.previous_status.value} -> Cancelled"
                )
            return change.subscription

    async def _audit(
        self,
        gateway_order_id: Optional[str],
        payload: str,
        verified: bool,
        outcome: Optional[str],
        error: Optional[str],
    ) -> None:
        try:
            await self.store.record_webhook_event(
                gateway_order_id, payload, verified, outcome, error
            )
        except Exception as e:
            # Best-effort
            logger.error(f"Failed to record webhook event for {gateway_order_id}: {e}")
