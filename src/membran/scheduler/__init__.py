"""Background jobs: expiry sweep and abandoned-checkout cleanup.

- ExpiryScheduler.sweep() moves lapsed Active subscriptions to Expired
- expire_abandoned_checkouts() fails Pending orders nobody paid
- cron entry points wrap both for external timers
"""

from membran.scheduler.expiry import ExpiryScheduler, expire_abandoned_checkouts

__all__ = ["ExpiryScheduler", "expire_abandoned_checkouts"]
