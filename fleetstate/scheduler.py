"""Standalone process for periodic datastore maintenance.

Runs the supervised background monitors and exposes Prometheus metrics
over HTTP on ``settings.metrics_port``.

Usage:
    python -m fleetstate.scheduler
"""
from __future__ import annotations

import asyncio
import logging
import signal

from prometheus_client import start_http_server
from sqlalchemy import text

from fleetstate import db
from fleetstate.config import settings
from fleetstate.datastore import Datastore
from fleetstate.logging_config import setup_logging
from fleetstate.tasks.membership_cleanup import membership_cleanup_monitor
from fleetstate.utils.supervisor import supervised_task

logger = logging.getLogger(__name__)


async def wait_for_database(attempts: int = 30, delay: float = 2.0) -> None:
    for attempt in range(attempts):
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection verified")
            return
        except Exception as e:
            if attempt == attempts - 1:
                logger.error(f"Database not reachable after {attempts} attempts: {e}")
                raise
            logger.warning(
                f"Database not ready (attempt {attempt + 1}/{attempts}), retrying in {delay:.0f}s..."
            )
            await asyncio.sleep(delay)


def build_monitors(datastore: Datastore) -> list[tuple[str, object]]:
    """(name, coroutine factory) pairs for every enabled monitor."""
    monitors = []
    if settings.membership_cleanup_enabled:
        monitors.append(
            ("membership_cleanup_monitor", lambda: membership_cleanup_monitor(datastore))
        )
    return monitors


async def main() -> None:
    setup_logging()
    logger.info("Starting fleetstate scheduler")
    await wait_for_database()

    start_http_server(settings.metrics_port)
    logger.info(f"Metrics available on :{settings.metrics_port}/metrics")

    datastore = Datastore()
    tasks = [
        asyncio.create_task(supervised_task(factory, name=name), name=f"supervised_{name}")
        for name, factory in build_monitors(datastore)
    ]
    logger.info(f"Started {len(tasks)} supervised monitor task(s)")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await stop.wait()
    logger.info("Shutting down fleetstate scheduler")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Scheduler shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
