#!/usr/bin/env python3
"""
Background scheduler for reconciliation.

Runs up to three independent loops in one asyncio process:
- poll: reconcile queued/in-progress jobs against the transcoding service
- retry sweep: retry every eligible failed job (off by default)
- stuck scan: send operators a digest of jobs that stopped progressing

Each loop waits on a shared shutdown event between runs, so SIGINT/SIGTERM
stop the process at the next boundary. In-flight notifications are drained
before exit.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from api.database import configure_database, database
from api.job_locks import job_locks
from api.job_store import JobStore, job_store
from api.metrics import STUCK_JOBS, init_app_info, update_state_gauges
from config import (
    LOG_LEVEL,
    POLL_ENABLED,
    POLL_INTERVAL,
    RETRY_SWEEP_ENABLED,
    RETRY_SWEEP_INTERVAL,
    STUCK_CHECK_ENABLED,
    STUCK_CHECK_INTERVAL,
    STUCK_THRESHOLD_MINUTES,
)
from worker.notifier import drain_notifications, notify_stuck
from worker.poller import ReconciliationPoller
from worker.retry_engine import RetryEngine
from worker.stuck_detector import get_stuck_jobs

logger = logging.getLogger(__name__)


@dataclass
class LoopStatus:
    """Bookkeeping for one scheduler loop."""

    enabled: bool
    interval: int
    runs: int = 0
    failures: int = 0
    last_started: Optional[datetime] = None
    last_finished: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "interval": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_started": self.last_started.isoformat() if self.last_started else None,
            "last_finished": self.last_finished.isoformat() if self.last_finished else None,
            "last_error": self.last_error,
            "last_result": self.last_result,
        }


class Scheduler:
    """Drives the poller, the retry sweep and the stuck scan on timers."""

    def __init__(
        self,
        poller: Optional[ReconciliationPoller] = None,
        retry_engine: Optional[RetryEngine] = None,
        store: Optional[JobStore] = None,
        poll_enabled: bool = POLL_ENABLED,
        poll_interval: int = POLL_INTERVAL,
        retry_sweep_enabled: bool = RETRY_SWEEP_ENABLED,
        retry_sweep_interval: int = RETRY_SWEEP_INTERVAL,
        stuck_check_enabled: bool = STUCK_CHECK_ENABLED,
        stuck_check_interval: int = STUCK_CHECK_INTERVAL,
        stuck_threshold_minutes: int = STUCK_THRESHOLD_MINUTES,
    ):
        self.store = store or job_store
        self.poller = poller or ReconciliationPoller(store=self.store)
        self.retry_engine = retry_engine or RetryEngine(store=self.store)
        self.stuck_threshold_minutes = stuck_threshold_minutes
        self.loops: Dict[str, LoopStatus] = {
            "poll": LoopStatus(enabled=poll_enabled, interval=poll_interval),
            "retry_sweep": LoopStatus(enabled=retry_sweep_enabled, interval=retry_sweep_interval),
            "stuck_scan": LoopStatus(enabled=stuck_check_enabled, interval=stuck_check_interval),
        }
        self.started_at: Optional[datetime] = None
        self.heartbeat: Optional[datetime] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def shutdown_event(self) -> asyncio.Event:
        # Created lazily so it binds to the running loop
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
        return self._shutdown_event

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested, stopping after current work")
        self.shutdown_event.set()

    # =========================================================================
    # Units of work (also callable directly, e.g. from tests)
    # =========================================================================

    async def run_poll_cycle(self) -> dict:
        result = await self.poller.poll_once(trigger="scheduled")
        stats = await self.store.get_monitoring_stats()
        update_state_gauges(stats)
        return result.to_dict()

    async def run_retry_sweep(self) -> dict:
        recovered = await self.retry_engine.retry_all_failed()
        return {"recovered": recovered}

    async def run_stuck_scan(self) -> dict:
        stuck = await get_stuck_jobs(self.stuck_threshold_minutes, store=self.store)
        STUCK_JOBS.set(len(stuck))
        if stuck:
            logger.warning(f"{len(stuck)} job(s) stuck for over {self.stuck_threshold_minutes} minutes")
            await notify_stuck(stuck, self.stuck_threshold_minutes)
        return {"stuck": len(stuck), "job_ids": [job.id for job in stuck]}

    # =========================================================================
    # Loops
    # =========================================================================

    async def _run_loop(self, name: str, work: Callable[[], Awaitable[dict]]) -> None:
        status = self.loops[name]
        logger.info(f"Scheduler loop '{name}' started (every {status.interval}s)")

        while not self.shutdown_event.is_set():
            status.last_started = datetime.now(timezone.utc)
            self.heartbeat = status.last_started
            try:
                status.last_result = await work()
                status.last_error = None
            except Exception as e:
                status.failures += 1
                status.last_error = str(e)
                logger.exception(f"Scheduler loop '{name}' run failed: {e}")
            status.runs += 1
            status.last_finished = datetime.now(timezone.utc)

            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=status.interval)
            except asyncio.TimeoutError:
                pass

        logger.info(f"Scheduler loop '{name}' stopped")

    async def run(self) -> None:
        """Run the enabled loops until shutdown is requested."""
        self.started_at = datetime.now(timezone.utc)
        work = {
            "poll": self.run_poll_cycle,
            "retry_sweep": self.run_retry_sweep,
            "stuck_scan": self.run_stuck_scan,
        }
        tasks = [
            asyncio.create_task(self._run_loop(name, work[name]), name=f"scheduler-{name}")
            for name, status in self.loops.items()
            if status.enabled
        ]
        if not tasks:
            logger.warning("All scheduler loops are disabled; nothing to do")
            return

        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_status(self) -> dict:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "heartbeat": self.heartbeat.isoformat() if self.heartbeat else None,
            "shutting_down": self._shutdown_event is not None and self._shutdown_event.is_set(),
            "loops": {name: status.to_dict() for name, status in self.loops.items()},
        }

    async def close(self) -> None:
        await self.poller.close()
        await self.retry_engine.close()
        await job_locks.close()


# The scheduler owned by this process, if main() is running
_scheduler: Optional[Scheduler] = None


def get_scheduler_status() -> dict:
    """Status of this process's scheduler (empty when none is running)."""
    if _scheduler is None:
        return {"running": False}
    return {"running": True, **_scheduler.get_status()}


async def main() -> None:
    """Entry point for the scheduler process."""
    global _scheduler

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    init_app_info(component="scheduler")

    await database.connect()
    await configure_database()

    scheduler = Scheduler()
    _scheduler = scheduler

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.request_shutdown)

    logger.info("Reconciliation scheduler started")
    try:
        await scheduler.run()
    finally:
        pending = await drain_notifications()
        if pending:
            logger.warning(f"Exiting with {pending} notification(s) undelivered")
        await scheduler.close()
        await database.disconnect()
        _scheduler = None
        logger.info("Reconciliation scheduler stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
