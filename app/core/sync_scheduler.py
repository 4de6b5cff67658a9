"""Background scheduler for the reconciliation scanner."""

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Optional, Set

from app.config import settings
from app.core.kv_store import SqlKeyValueStore
from app.core.scheduled_sync import ReconciliationScanner
from app.core.services import (
    TrackerFactory,
    default_kv_store,
    default_tracker_factory,
    open_sync_engine,
)
from app.core.stats import StatsStore
from app.core.sync_config import ConfigStore


logger = logging.getLogger(__name__)


def is_due(last_run: Optional[str], interval_minutes: int, now: Optional[datetime] = None) -> bool:
    """True when no pass has run yet or the last one is at least ``interval_minutes`` old."""
    if not last_run:
        return True
    try:
        last = datetime.fromisoformat(last_run)
    except ValueError:
        logger.warning(f"Unparseable scheduled sync timestamp {last_run!r}, treating as due")
        return True
    return (now or datetime.utcnow()) - last >= timedelta(minutes=interval_minutes)


class SyncScheduler:
    """Runs the reconciliation scanner on its configured interval, with graceful shutdown."""

    def __init__(
        self,
        kv: Optional[SqlKeyValueStore] = None,
        factory: Optional[TrackerFactory] = None,
        poll_seconds: Optional[int] = None,
    ):
        """Initialize scheduler."""
        self.kv = kv or default_kv_store
        self.factory = factory or default_tracker_factory
        self.poll_seconds = settings.scheduler_poll_seconds if poll_seconds is None else poll_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self.active_sync_tasks: Set[asyncio.Task] = set()
        self._active_sync_tasks_lock = threading.Lock()
        self.shutdown_event = asyncio.Event()

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler is already running")
            return

        self.running = True
        self.shutdown_event.clear()
        self.task = asyncio.create_task(self._run())
        logger.info("Reconciliation scheduler started")

    async def stop(self):
        """
        Stop the scheduler with graceful shutdown.

        A pass in progress sees the shutdown event between issues; it is
        given up to sync_shutdown_timeout seconds to finish.
        """
        if not self.running:
            return

        logger.info("Stopping reconciliation scheduler (graceful shutdown)...")
        self.running = False
        self.shutdown_event.set()

        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        with self._active_sync_tasks_lock:
            if not self.active_sync_tasks:
                logger.info("Reconciliation scheduler stopped")
                return
            tasks_snapshot = list(self.active_sync_tasks)

        logger.info(
            f"Waiting for {len(tasks_snapshot)} active pass(es) to complete "
            f"(timeout: {settings.sync_shutdown_timeout}s)..."
        )
        try:
            results = await asyncio.wait_for(
                asyncio.gather(*tasks_snapshot, return_exceptions=True),
                timeout=settings.sync_shutdown_timeout
            )
            exceptions = [r for r in results if isinstance(r, Exception)]
            for exc in exceptions:
                logger.error(f"Scheduled sync exception during shutdown: {exc}")
        except asyncio.TimeoutError:
            remaining = [t for t in tasks_snapshot if not t.done()]
            logger.warning(
                f"Timeout waiting for scheduled sync after {settings.sync_shutdown_timeout}s. "
                f"{len(remaining)} pass(es) may have been interrupted."
            )
            for task in remaining:
                task.cancel()

        logger.info("Reconciliation scheduler stopped")

    async def _run(self):
        """Main scheduler loop."""
        while self.running:
            try:
                await self._check_and_sync()
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}", exc_info=True)

            await asyncio.sleep(self.poll_seconds)

    async def _check_and_sync(self):
        """Start a pass when scheduled sync is enabled and due."""
        scheduled = await ConfigStore(self.kv).get_scheduled_config()
        if not scheduled.enabled:
            return

        with self._active_sync_tasks_lock:
            if self.active_sync_tasks:
                logger.debug("Scheduled sync still in progress, skipping this tick")
                return

        last_stats = await StatsStore(self.kv).get_scheduled_stats()
        if not is_due(last_stats.get("lastRun"), scheduled.interval_minutes):
            return

        task = asyncio.create_task(self._run_pass())

        def remove_task(t, lock=self._active_sync_tasks_lock, tasks=self.active_sync_tasks):
            with lock:
                tasks.discard(t)

        with self._active_sync_tasks_lock:
            self.active_sync_tasks.add(task)
        task.add_done_callback(remove_task)

    async def _run_pass(self):
        """Run one reconciliation pass with its own clients."""
        try:
            scheduled = await ConfigStore(self.kv).get_scheduled_config()
            async with open_sync_engine(self.kv, self.factory) as engine:
                await ReconciliationScanner(engine, scheduled).run(stop_event=self.shutdown_event)
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}", exc_info=True)


# Global scheduler instance
scheduler = SyncScheduler()
