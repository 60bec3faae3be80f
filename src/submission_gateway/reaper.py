"""
Periodic sweep for jobs stranded in PROCESSING.

A job stays in PROCESSING when its process crashes or hangs mid-run. Such jobs
are not an error the dispatcher can observe, so they are detected by age: any
PROCESSING row not updated for ``timeout_minutes`` is failed, which makes it
claimable again while its retry budget lasts. The same thread optionally purges
old COMPLETED rows.
"""

from __future__ import annotations

import logging
from threading import Event, Thread
from typing import TYPE_CHECKING, Optional

from .database import STUCK_JOB_MESSAGE

if TYPE_CHECKING:
    from .job_manager import JobManager

logger = logging.getLogger(__name__)


class StuckJobReaper:
    def __init__(
        self,
        manager: "JobManager",
        timeout_minutes: float = 30,
        interval_minutes: float = 10,
        retention_days: float = 0,
    ) -> None:
        self.manager = manager
        self.timeout_minutes = timeout_minutes
        self.interval_minutes = interval_minutes
        self.retention_days = retention_days
        self._stopping = Event()
        self._thread: Optional[Thread] = None

    def run_once(self, timeout_minutes: Optional[float] = None) -> int:
        """
        Fail every job stuck longer than the timeout.

        Each job is failed with its own conditional update, so a run that
        finishes while the sweep is in progress keeps its result.

        Returns:
            Number of jobs marked as failed
        """
        timeout = self.timeout_minutes if timeout_minutes is None else timeout_minutes
        database = self.manager.database
        logger.info(f"[Reaper] Checking for jobs stuck longer than {timeout} minutes")

        stuck_jobs = database.find_stuck(timeout)
        if not stuck_jobs:
            return 0
        logger.info(f"[Reaper] Found {len(stuck_jobs)} stuck jobs")

        reaped = 0
        for job in stuck_jobs:
            if not database.fail_stuck_job(job.id, timeout):
                continue
            reaped += 1
            logger.warning(f"[Reaper] Job {job.id} marked as failed after {timeout} minutes in processing")
            self.manager.handle_reaped_job(job, STUCK_JOB_MESSAGE)
        return reaped

    def purge_completed(self) -> int:
        if self.retention_days <= 0:
            return 0
        return self.manager.database.cleanup_old_jobs(self.retention_days)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = Thread(target=self._loop, name="queue-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stopping.wait(self.interval_minutes * 60):
            try:
                self.run_once()
                self.purge_completed()
            except Exception:  # noqa: BLE001
                logger.exception("[Reaper] Error cleaning up stuck jobs")
