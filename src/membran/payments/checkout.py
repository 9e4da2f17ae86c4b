"""Checkout: open (or reuse) a subscription and start a gateway payment."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from membran.db.models import SubscriptionStatus, TransactionStatus
from membran.payments.errors import ActiveSubscriptionExists, NotFound
from membran.payments.gateway import GatewayError, MidtransClient, PaymentLink
from membran.payments.ledger import Ledger
from membran.payments.models import GatewayUpdate, Subscription, Transaction
from membran.payments.reconciler import Reconciler

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    subscription: Subscription
    transaction: Transaction
    payment: PaymentLink


def generate_order_id(subscription_id: str, now: datetime) -> str:
    """Order id format: SUB-{subscription_id}-{epoch milliseconds}."""
    return f"SUB-{subscription_id}-{int(now.timestamp() * 1000)}"


async def open_checkout(
    reconciler: Reconciler,
    gateway: MidtransClient,
    member_id: str,
    server_id: str,
    tier_id: str,
    customer_email: str,
    now: Optional[datetime] = None,
) -> CheckoutSession:
    """
    Start a payment for one tier.

    The (member, server, tier) subscription is created Pending on first
    checkout and reused afterwards: a checkout on an Active subscription is
    a renewal, and one on a Cancelled subscription is the explicit
    reactivation that lets its payment activate it again.

    A member holds at most one Active subscription per server, so switching
    tiers waits until the current one lapses or is cancelled.

    If the gateway refuses the order, the ledger entry is marked Failed
    (the attempt stays on record) and the error is re-raised.

    Raises:
        NotFound: Unknown tier
        ActiveSubscriptionExists: Member is Active on another tier of the server
        Busy: Subscription lock not acquired in time
        GatewayError: Payment link could not be created
    """
    now = now or datetime.now(timezone.utc)
    store = reconciler.store

    tier = await store.get_tier(tier_id)
    if tier is None:
        raise NotFound(f"Tier {tier_id} not found", {"tier_id": tier_id})

    for existing in await store.list_subscriptions(member_id, server_id):
        if existing.status is SubscriptionStatus.ACTIVE and existing.tier_id != tier_id:
            raise ActiveSubscriptionExists(
                f"Member {member_id} already has an active subscription on server {server_id}",
                {"subscription_id": existing.id, "tier_id": existing.tier_id},
            )

    subscription, created = await store.get_or_create_subscription(
        Subscription(
            id=uuid.uuid4().hex,
            member_id=member_id,
            server_id=server_id,
            tier_id=tier_id,
            status=SubscriptionStatus.PENDING,
            start_date=now,
            expiry_date=None,
            created_at=now,
            updated_at=now,
        )
    )
    if created:
        logger.info(
            f"Created subscription {subscription.id} for member {member_id} "
            f"on server {server_id}, tier {tier_id}"
        )

    order_id = generate_order_id(subscription.id, now)
    async with store.locked(subscription.id, reconciler.lock_timeout) as uow:
        transaction = await Ledger(uow).record_pending(
            subscription.id, order_id, tier.price_cents, tier.currency, now
        )
        subscription = uow.subscription

    try:
        payment = await gateway.create_transaction(
            order_id,
            tier.price_cents,
            customer_email,
            tier.name,
        )
    except GatewayError as e:
        logger.error(f"Gateway refused order {order_id}: {e}")
        await reconciler.apply_update(
            GatewayUpdate(gateway_order_id=order_id, status=TransactionStatus.FAILED),
            now,
        )
        raise

    return CheckoutSession(subscription=subscription, transaction=transaction, payment=payment)
