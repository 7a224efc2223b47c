"""Restart-on-crash wrapper for long-running monitor coroutines.

A monitor that runs for at least ``healthy_after`` seconds before crashing
gets its restart budget back, so only crash loops exhaust ``max_restarts``.
CancelledError (clean shutdown) is always re-raised.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Coroutine

from fleetstate import metrics

logger = logging.getLogger(__name__)


def restart_backoff(restarts: int, base_backoff: float, max_backoff: float) -> float:
    """Delay before restart number ``restarts`` (1-based)."""
    return min(base_backoff * (2 ** (restarts - 1)), max_backoff)


async def supervised_task(
    coro_factory: Callable[[], Coroutine[Any, Any, None]],
    name: str,
    max_restarts: int = 10,
    base_backoff: float = 5.0,
    max_backoff: float = 300.0,
    healthy_after: float = 3600.0,
) -> None:
    """Run a monitor coroutine, restarting it with backoff when it crashes.

    ``coro_factory`` is called once per run because a coroutine object can
    only be awaited once.

    Args:
        coro_factory: Callable that returns a new coroutine to run
        name: Monitor name for logging and the restart metric
        max_restarts: Consecutive crashes tolerated before giving up
        base_backoff: Delay before the first restart, in seconds
        max_backoff: Upper bound on the restart delay, in seconds
        healthy_after: Run time, in seconds, after which a crash no longer
            counts as consecutive
    """
    restarts = 0
    while restarts < max_restarts:
        started = time.monotonic()
        try:
            logger.info(f"Starting monitor: {name}")
            await coro_factory()
            logger.warning(f"Monitor {name} returned, not restarting")
            return
        except asyncio.CancelledError:
            logger.info(f"Monitor {name} cancelled")
            raise
        except Exception as e:
            if time.monotonic() - started >= healthy_after:
                restarts = 0
            restarts += 1
            metrics.record_monitor_restart(name)
            logger.error(
                f"Monitor {name} crashed (attempt {restarts}/{max_restarts}): {e}",
                exc_info=True,
            )
            if restarts < max_restarts:
                backoff = restart_backoff(restarts, base_backoff, max_backoff)
                logger.info(f"Restarting {name} in {backoff:.0f}s")
                await asyncio.sleep(backoff)

    logger.critical(f"Monitor {name} crashed {max_restarts} times in a row, giving up")
