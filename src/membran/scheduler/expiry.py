"""Expiry sweep and abandoned-checkout cleanup."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from membran.db.models import Outcome, TransactionStatus
from membran.payments import lifecycle
from membran.payments.errors import Busy, InvalidTransition, NotFound
from membran.payments.models import GatewayUpdate
from membran.payments.reconciler import DEFAULT_LOCK_TIMEOUT_SECONDS, Reconciler
from membran.payments.store import SubscriptionStore

logger = logging.getLogger(__name__)


class ExpiryScheduler:
    """
    Transitions Active subscriptions whose expiry has passed to Expired.

    Each candidate is re-checked under its subscription lock, so a renewal
    that lands between the scan and the lock wins and the subscription is
    skipped. Re-running with the same ``now`` transitions nothing new.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.lock_timeout = lock_timeout

    async def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """
        Expire every lapsed Active subscription.

        A subscription whose lock is held past the timeout is skipped and
        picked up by the next sweep.

        Returns:
            Ids of subscriptions moved to Expired by this call
        """
        now = now or datetime.now(timezone.utc)
        candidates = await self.store.due_for_expiry(now)
        expired: list[str] = []

        for subscription_id in candidates:
            try:
                async with self.store.locked(subscription_id, self.lock_timeout) as uow:
                    change = lifecycle.expire(uow.subscription, now)
                    if change.changed:
                        await uow.update_subscription(change.subscription)
                        expired.append(subscription_id)
            except Busy:
                logger.warning(f"Subscription {subscription_id} busy; expiry deferred to next sweep")
            except NotFound:
                logger.warning(f"Subscription {subscription_id} vanished during sweep")

        logger.info(f"Expiry sweep at {now.isoformat()}: {len(expired)}/{len(candidates)} expired")
        return expired


async def expire_abandoned_checkouts(
    reconciler: Reconciler,
    now: Optional[datetime] = None,
    max_age: timedelta = timedelta(hours=24),
) -> list[str]:
    """
    Mark Pending orders older than ``max_age`` as Failed.

    Goes through the reconciler, so a subscription whose only order is
    abandoned moves Pending -> Failed while one with an earlier paid order
    is left alone. An order the gateway settled meanwhile is already past
    Pending and is not touched.

    Returns:
        Gateway order ids marked Failed by this call
    """
    now = now or datetime.now(timezone.utc)
    stale = await reconciler.store.stale_pending_orders(now - max_age)
    failed: list[str] = []

    for txn in stale:
        update = GatewayUpdate(gateway_order_id=txn.gateway_order_id, status=TransactionStatus.FAILED)
        try:
            result = await reconciler.apply_update(update, now)
        except Busy:
            logger.warning(f"Order {txn.gateway_order_id} busy; cleanup deferred")
            continue
        except InvalidTransition as e:
            logger.warning(f"Order {txn.gateway_order_id} not failed: {e.detail}")
            continue
        if result.outcome is Outcome.APPLIED:
            failed.append(txn.gateway_order_id)

    logger.info(f"Abandoned checkout cleanup: {len(failed)}/{len(stale)} orders failed")
    return failed
