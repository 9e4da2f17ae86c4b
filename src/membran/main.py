"""Application entry point."""

import asyncio
import logging
import sys

from membran.config import get_config
from membran.db import get_pool
from membran.db.pool import close_pool
from membran.db.schema.migrate import migrate
from membran.db.store import PostgresStore
from membran.payments.reconciler import Reconciler
from membran.payments.server import install_signal_handlers, run_server
from membran.scheduler.cron import run_periodic


async def boot() -> None:
    """
    Boot sequence: load config → initialize pool → migrate → serve until signalled.

    Runs the webhook/read API server and the periodic expiry sweep side by
    side on one event loop.

    Raises:
        SystemExit: On configuration or database errors
    """
    logger = logging.getLogger(__name__)

    try:
        config = get_config()
        logger.info(f"Configuration loaded: env={config.env}")

        pool = await get_pool()
        await migrate()
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        raise SystemExit(1) from e

    reconciler = Reconciler(PostgresStore(pool), lock_timeout=config.lock_timeout_seconds)

    shutdown_event = asyncio.Event()
    install_signal_handlers(shutdown_event)

    try:
        await asyncio.gather(
            run_server(reconciler, shutdown_event),
            run_periodic(reconciler, shutdown_event),
        )
    finally:
        await close_pool()
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging configuration."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(boot())
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
