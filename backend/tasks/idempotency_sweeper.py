"""
Idempotency Sweeper
===================
Background task that purges processed-event ids older than the retention
window from every in-memory guard.

Features:
- Runs every IDEMPOTENCY_SWEEP_INTERVAL seconds (default 5 minutes)
- Evicts under each guard's own lock, so it never races an insert
- One guard failing never stops the others
"""

import asyncio
import os
from typing import Iterable

import structlog

from pipeline.idempotency import IIdempotencyGuard

logger = structlog.get_logger(component="idempotency_sweeper")


# =============================================================================
# CONFIGURATION
# =============================================================================

class SweeperConfig:
    """Sweeper configuration"""

    # How often to sweep (seconds)
    SWEEP_INTERVAL = int(os.getenv("IDEMPOTENCY_SWEEP_INTERVAL", "300"))  # 5 minutes

    # Enable/disable the sweeper
    ENABLED = os.getenv("IDEMPOTENCY_SWEEP_ENABLED", "true").lower() == "true"


config = SweeperConfig()


# =============================================================================
# SWEEP LOGIC
# =============================================================================

async def sweep_once(guards: Iterable[IIdempotencyGuard]) -> dict[str, int]:
    """
    Evict expired entries from each guard.

    Returns:
        Evicted count per guard namespace (-1 if the guard failed)
    """
    results: dict[str, int] = {}
    for guard in guards:
        try:
            results[guard.namespace] = await guard.evict_expired()
        except Exception as e:
            logger.error("sweep_failed", namespace=guard.namespace, error=str(e))
            results[guard.namespace] = -1
    return results


async def sweeper_loop(guards: list[IIdempotencyGuard], interval: int = None):
    """Sweep forever. Cancel the task to stop it."""
    interval = interval or config.SWEEP_INTERVAL

    logger.info(
        "sweeper_started",
        interval=interval,
        namespaces=[g.namespace for g in guards],
        enabled=config.ENABLED,
    )

    if not config.ENABLED:
        logger.info("sweeper_disabled")
        return

    while True:
        # Sleep first: nothing has expired at startup
        await asyncio.sleep(interval)

        try:
            results = await sweep_once(guards)
            evicted = sum(count for count in results.values() if count > 0)
            if evicted:
                logger.info("sweep_complete", evicted=evicted, per_namespace=results)
        except Exception as e:
            logger.error("sweeper_loop_error", error=str(e))
