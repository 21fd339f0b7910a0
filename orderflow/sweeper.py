import asyncio
import logging

from .commitments import CommitmentTracker

logger = logging.getLogger(__name__)


async def sweep_once(tracker: CommitmentTracker):
    report = await tracker.expire_overdue()
    reminded = await tracker.send_reminders()
    return report, reminded


async def run_sweeper(tracker: CommitmentTracker, interval: float, stop: asyncio.Event):
    """Expire overdue commitments and remind sellers every ``interval`` seconds until ``stop`` is set."""
    logger.info(f"Commitment sweeper started, interval={interval}s")
    while not stop.is_set():
        try:
            await sweep_once(tracker)
        except Exception:
            # One bad pass must not end the loop; the next pass retries.
            logger.exception("Commitment sweep failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Commitment sweeper stopped")
