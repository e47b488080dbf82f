"""
Intelligence Background Worker - runs passes for every tenant on a schedule.

Can be run as:
- FastAPI lifespan background thread (start_worker_in_thread)
- Standalone worker process (python -m careintel.services.intelligence.background_worker)
"""

import asyncio
import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from careintel.config import settings
from careintel.services.intelligence.pipeline import IntelligencePassRunner

logger = logging.getLogger(__name__)


class IntelligenceCronJob:
    """
    Cron-style job that wakes every tick and runs the intelligence pass for
    each tenant whose own pass interval has elapsed.
    Passes are blocking database work, so each run is moved off the event loop.
    """

    def __init__(
        self,
        db_session_factory: Callable[[], Session],
        interval_minutes: Optional[int] = None,
        runner: Optional[IntelligencePassRunner] = None
    ):
        self.db_session_factory = db_session_factory
        self.interval_minutes = interval_minutes or settings.INTELLIGENCE_WORKER_TICK_MINUTES
        self.runner = runner or IntelligencePassRunner(db_session_factory)
        self.running = False
        self._cancel_event = threading.Event()

    async def start(self):
        """Start the cron job"""
        self.running = True
        self._cancel_event.clear()
        logger.info(f"Intelligence Cron starting (interval: {self.interval_minutes} min)")

        while self.running:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                logger.error(f"Error in intelligence cron job: {e}", exc_info=True)

            await asyncio.sleep(self.interval_minutes * 60)

    async def stop(self):
        """Stop the cron job; an in-flight pass stops at the next subject boundary"""
        self.running = False
        self._cancel_event.set()

    def run_once(self):
        """Run one pass for every tenant whose configured pass interval has elapsed"""
        tenant_ids = self.runner.tenants_due()
        logger.info(f"Running intelligence pass for {len(tenant_ids)} due tenants")
        return self.runner.run_passes(tenant_ids, cancel_event=self._cancel_event)


def start_worker_in_thread(db_session_factory: Callable[[], Session]):
    """
    Start the Intelligence Cron in a background thread.
    Useful for integration with FastAPI startup events.
    """
    job = IntelligenceCronJob(db_session_factory)

    def run_worker():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        loop.run_until_complete(job.start())

    thread = threading.Thread(target=run_worker, daemon=True)
    thread.start()
    logger.info("Intelligence worker thread started")
    return job, thread


if __name__ == "__main__":
    from careintel.database import SessionLocal

    asyncio.run(IntelligenceCronJob(SessionLocal).start())
