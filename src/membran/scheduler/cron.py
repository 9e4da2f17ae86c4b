"""Cron-compatible entry points for scheduled runs.

Provides callable functions with no arguments for cron integration:
- expiry_sweep_run()
- pending_cleanup_run()

``run_periodic`` runs both in-process on the configured interval instead.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from membran.config.settings import get_config
from membran.db.pool import close_pool, get_pool
from membran.db.store import PostgresStore
from membran.payments.reconciler import Reconciler
from membran.scheduler.expiry import ExpiryScheduler, expire_abandoned_checkouts

logger = logging.getLogger(__name__)


async def _build_reconciler() -> Reconciler:
    config = get_config()
    pool = await get_pool()
    return Reconciler(PostgresStore(pool), lock_timeout=config.lock_timeout_seconds)


async def run_expiry_sweep(reconciler: Reconciler) -> list[str]:
    return await ExpiryScheduler(reconciler.store, reconciler.lock_timeout).sweep()


async def run_pending_cleanup(reconciler: Reconciler) -> list[str]:
    config = get_config()
    return await expire_abandoned_checkouts(
        reconciler, max_age=timedelta(minutes=config.pending_timeout_minutes)
    )


async def _run_once(job) -> None:
    try:
        await job(await _build_reconciler())
    finally:
        await close_pool()


def expiry_sweep_run() -> None:
    """Entry point for the expiry sweep (hourly).

    Callable with no arguments for cron integration.
    """
    logger.info("Cron: expiry_sweep_run triggered")
    asyncio.run(_run_once(run_expiry_sweep))


def pending_cleanup_run() -> None:
    """Entry point for abandoned-checkout cleanup (hourly).

    Callable with no arguments for cron integration.
    """
    logger.info("Cron: pending_cleanup_run triggered")
    asyncio.run(_run_once(run_pending_cleanup))


async def run_periodic(
    reconciler: Reconciler,
    shutdown_event: Optional[asyncio.Event] = None,
    interval_seconds: Optional[float] = None,
) -> None:
    """Run sweep and cleanup every interval until ``shutdown_event`` is set.

    A failing run is logged and retried on the next tick.

    Args:
        reconciler: Reconciler bound to the application's store
        shutdown_event: Optional event to signal shutdown
        interval_seconds: Override for ``expiry_sweep_interval_minutes``
    """
    if interval_seconds is None:
        interval_seconds = get_config().expiry_sweep_interval_minutes * 60
    shutdown_event = shutdown_event or asyncio.Event()

    logger.info(f"Periodic jobs every {interval_seconds:.0f}s")
    while not shutdown_event.is_set():
        for job in (run_expiry_sweep, run_pending_cleanup):
            try:
                await job(reconciler)
            except Exception as e:
                logger.exception(f"Scheduled job {job.__name__} failed: {e}")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Periodic jobs stopped")
