"""Midtrans payment reconciliation.

Handles gateway notifications, the transaction ledger, subscription
lifecycle transitions, checkout, and the member-facing subscription view.
"""

from membran.payments.checkout import open_checkout
from membran.payments.projection import SubscriptionView, project
from membran.payments.reconciler import Reconciler, ReconciliationResult
from membran.payments.store import MemoryStore, SubscriptionStore

__all__ = [
    "MemoryStore",
    "Reconciler",
    "ReconciliationResult",
    "SubscriptionStore",
    "SubscriptionView",
    "open_checkout",
    "project",
]
