"""Background task that drops expired platform rate limit entries"""
import asyncio
import logging

from app.core.config import settings
from app.core.metrics import rate_limit_sweep_counter
from app.services.rate_limiter import get_platform_rate_limiter

rate_limit_logger = logging.getLogger("rate_limit")


def sweep_once() -> int:
    """Run a single sweep of the shared limiter"""
    removed = get_platform_rate_limiter().sweep()
    rate_limit_sweep_counter.inc(removed)
    return removed


async def rate_limit_sweeper_task():
    """Sweep the in-memory rate limit store every RATE_LIMIT_SWEEP_INTERVAL_SECONDS

    Runs forever; the Redis store expires keys on its own so the sweep is a no-op there.
    """
    while True:
        try:
            await asyncio.sleep(settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS)
            removed = sweep_once()
            rate_limit_logger.debug(f"Rate limit sweep finished, {removed} entries removed")
        except asyncio.CancelledError:
            rate_limit_logger.info("Rate limit sweeper stopped")
            raise
        except Exception as e:
            rate_limit_logger.error(f"Error in rate limit sweeper: {e}", exc_info=True)
