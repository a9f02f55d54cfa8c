"""
Hold / waitlist-offer expiry sweeper.

Periodically expires lapsed waitlist offers (offering the slot to the next
waiter) and then expired holds (emitting `released`). Lazy expiry on access
keeps correctness; the sweep keeps the tables small and subscribers informed.

Runs as an asyncio task in backend lifespan.
Uses synchronous DB (via asyncio.to_thread).
"""

import asyncio
import logging

from .system import ReservationSystem

logger = logging.getLogger(__name__)


async def expiry_sweeper_loop(system: ReservationSystem, interval: float | None = None) -> None:
    """Run system.sweep() every `interval` seconds until cancelled."""
    interval = interval or system.settings.sweep_interval_seconds
    logger.info(f"expiry_sweeper_loop started (every {interval}s)")

    try:
        while True:
            try:
                await asyncio.to_thread(system.sweep)
            except asyncio.CancelledError:
                logger.info("expiry_sweeper_loop cancelled")
                raise
            except Exception:
                logger.exception("expiry_sweeper_loop error")

            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        pass
