"""Periodic sweep of orphaned label membership rows.

Memberships carry no foreign keys, so deleting a label or a host leaves
its membership rows behind. This monitor removes them on an interval.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from fleetstate.config import settings
from fleetstate.datastore import Datastore
from fleetstate.logging_config import set_correlation_id

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Outcome of one sweep."""

    task_name: str
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: float = 0

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


async def run_membership_cleanup(datastore: Datastore) -> CleanupResult:
    """Run one sweep in a worker thread, recording failures in the result."""
    set_correlation_id()
    result = CleanupResult(task_name="orphan_label_membership")
    start = time.monotonic()
    try:
        result.deleted = await asyncio.to_thread(datastore.cleanup_orphan_label_membership)
    except Exception as e:
        result.errors.append(str(e))
        logger.error(f"Orphan label membership cleanup failed: {e}")
    result.duration_ms = (time.monotonic() - start) * 1000

    if result.deleted:
        logger.info(
            f"Removed {result.deleted} orphaned label membership row(s) "
            f"in {result.duration_ms:.0f}ms"
        )
    return result


async def membership_cleanup_monitor(datastore: Datastore | None = None) -> None:
    """Background task to periodically remove orphaned memberships."""
    datastore = datastore or Datastore()
    logger.info(
        f"Label membership cleanup monitor started "
        f"(interval: {settings.membership_cleanup_interval}s)"
    )

    while True:
        try:
            await asyncio.sleep(settings.membership_cleanup_interval)
            await run_membership_cleanup(datastore)
        except asyncio.CancelledError:
            logger.info("Label membership cleanup monitor stopped")
            break
