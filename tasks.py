"""Background jobs that run alongside the API.

Two independent loops: the retention sweep and the periodic snapshot
save.  Each catches and logs its own failures so a bad run never stops
the loop or touches request handling.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from services import QueueCoordinator
from storage import SnapshotStore

logger = logging.getLogger(__name__)


async def persist_state(coordinator: QueueCoordinator, store: Optional[SnapshotStore]) -> bool:
    """Save a snapshot off the event loop; returns whether it succeeded."""
    if store is None:
        return False
    state = coordinator.export_state()
    try:
        await asyncio.to_thread(store.save, state)
    except Exception:
        logger.exception("Failed to persist queue state")
        return False
    return True


async def sweep_loop(coordinator: QueueCoordinator, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            coordinator.sweep()
        except Exception:
            logger.exception("Retention sweep failed")


async def persist_loop(
    coordinator: QueueCoordinator, store: SnapshotStore, interval: float
) -> None:
    while True:
        await asyncio.sleep(interval)
        await persist_state(coordinator, store)
