"""
Background job queue and its retry/recovery state machine.

This module turns an accepted submission into durable background work:
- Job enqueueing with caller-supplied ids (the externally visible request id)
- Bounded-concurrency dispatch through a fixed pool of worker threads
- Exponential-backoff retries up to a per-job budget
- Completion callbacks fired once, after the terminal state is persisted
- Manual retry and cancellation for operators and partner integrations

State machine::

    PENDING --claim--> PROCESSING --success--> COMPLETED
    PROCESSING --failure, retries < max--> RETRYING --backoff--> PROCESSING
    PROCESSING --failure, retries >= max--> FAILED
    FAILED --retry_job--> PENDING
    PROCESSING --reaper timeout--> FAILED (reclaimed while retries remain)

The job store decides nothing; every transition here is a conditional write,
and a write that loses (the job was reaped or cancelled meanwhile) is logged
and skips the callback.
"""

from __future__ import annotations

import logging
from threading import Condition, Event, Lock, Thread, Timer
from typing import Any, Dict, List, Optional, Union

from omegaconf import DictConfig

from .configuration import backoff_delay_ms, load_settings, priority_value
from .database import JobDatabase
from .errors import InvalidJobStateError, JobCancelledError, JobNotFoundError
from .events import StatusBroadcaster
from .models import Job, JobStatus, JobStatusView, QueueStats
from .reaper import StuckJobReaper
from .registry import CompletionCallback, JobRegistry, Processor

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Job cancelled"

_RETRYABLE_STATUSES = (JobStatus.FAILED, JobStatus.PROCESSING)


class JobManager:
    """
    Central coordinator for background job execution.

    Jobs are claimed from the ``JobDatabase`` by ``max_concurrent_jobs`` long-lived
    worker threads. A worker that finishes a job immediately tries to claim the
    next one; an idle worker sleeps until it is signalled (enqueue, manual retry,
    elapsed backoff, reaped job) or until ``processor_interval_ms`` passes.

    ``process_next_job`` is the single dispatch attempt the workers run. It can
    also be called directly, which is how the tests drive the state machine
    without threads.

    Attributes:
        database: Durable job store
        registry: Per-job processors/callbacks and the job-type table
        events: Broadcast channel of persisted status changes
        reaper: Periodic stuck-job sweep
    """

    def __init__(
        self,
        database: JobDatabase,
        settings: DictConfig | None = None,
        registry: JobRegistry | None = None,
        events: StatusBroadcaster | None = None,
    ) -> None:
        self.settings = settings if settings is not None else load_settings()
        queue_settings = self.settings.queue

        self.database = database
        self.registry = registry or JobRegistry()
        self.events = events or StatusBroadcaster()

        self.max_concurrent_jobs = int(queue_settings.max_concurrent_jobs)
        self.default_max_retries = int(queue_settings.max_retries)
        self.default_priority = priority_value(self.settings, "NORMAL")
        self.processor_interval = float(queue_settings.processor_interval_ms) / 1000.0
        self.stuck_timeout_minutes = float(queue_settings.stuck_timeout_minutes)

        self.reaper = StuckJobReaper(
            self,
            timeout_minutes=self.stuck_timeout_minutes,
            interval_minutes=float(queue_settings.reaper_interval_minutes),
            retention_days=float(queue_settings.retention_days),
        )

        self._lock = Lock()
        self._enqueue_lock = Lock()
        self._active_jobs = 0
        self._wakeup = Condition()
        self._signals = 0
        self._stopping = Event()
        self._workers: List[Thread] = []
        self._timers: List[Timer] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Reap jobs stranded by a previous run, then start workers and the reaper.

        Stuck PROCESSING rows are failed before any worker claims work so two
        processes never both believe they own the same job.
        """
        if self._workers:
            return
        logger.info(f"[Queue] Starting job processor with max {self.max_concurrent_jobs} concurrent jobs")
        self._stopping.clear()

        stuck_count = self.reaper.run_once()
        if stuck_count > 0:
            logger.info(f"[Queue] Cleaned up {stuck_count} stuck jobs from previous runs")

        for index in range(self.max_concurrent_jobs):
            worker = Thread(target=self._worker_loop, name=f"queue-worker-{index}", daemon=True)
            worker.start()
            self._workers.append(worker)
        self.reaper.start()

    def stop(self, timeout: float = 10.0) -> None:
        """Signal workers and the reaper to exit and wait for them."""
        self._stopping.set()
        self._notify_workers()
        self.reaper.stop(timeout=timeout)

        with self._lock:
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()

        for worker in self._workers:
            worker.join(timeout=timeout)
        self._workers = []
        logger.info("[Queue] Job processor stopped")

    def __enter__(self) -> "JobManager":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    @property
    def active_jobs(self) -> int:
        with self._lock:
            return self._active_jobs

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def register_processor(self, job_type: str, processor: Processor) -> None:
        """Install the processor used for ``job_type`` when no per-job one is registered."""
        self.registry.register_processor(job_type, processor)

    def enqueue_job(
        self,
        job_id: str,
        job_type: str,
        payload: Dict[str, Any],
        max_retries: Optional[int] = None,
        priority: Union[int, str, None] = None,
        processor: Optional[Processor] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> Job:
        """
        Persist a PENDING job and signal the workers without waiting for them.

        Args:
            job_id: Unique id, usually the processing session id
            job_type: Job type tag (see ``JobType``)
            payload: JSON-serializable job data
            max_retries: Retry budget (default from settings)
            priority: Integer or priority name (LOW, NORMAL, HIGH, CRITICAL)
            processor: Callable run with the persisted ``Job``
            on_complete: Called once with ``(error, result)`` after the terminal state is stored

        Returns:
            The stored job record

        Raises:
            DuplicateJobError: If ``job_id`` exists; the existing job is untouched
        """
        retries = self.default_max_retries if max_retries is None else int(max_retries)
        if priority is None:
            priority_number = self.default_priority
        elif isinstance(priority, str):
            priority_number = priority_value(self.settings, priority)
        else:
            priority_number = int(priority)

        with self._enqueue_lock:
            # The registry entry must exist before the row is visible to workers,
            # and must not replace the entry of an existing job with the same id.
            existing = self.database.get_job(job_id)
            if existing is None:
                self.registry.register_job(job_id, processor, on_complete)
            try:
                job = self.database.add_job(job_id, job_type, payload, retries, priority_number)
            except Exception:
                if existing is None:
                    self.registry.pop(job_id)
                raise

        self.events.publish(job.id, JobStatus.PENDING)
        logger.info(f"[Queue] Enqueued job {job.id} ({job.type}, priority {job.priority})")
        self._notify_workers()
        return job

    def get_job(self, job_id: str) -> Job:
        job = self.database.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_status(self, job_id: str) -> JobStatusView:
        """
        Raises:
            JobNotFoundError: If the job does not exist
        """
        return self.get_job(job_id).to_status_view()

    def list_jobs(self, status: JobStatus | str | None = None, limit: int = 100) -> List[JobStatusView]:
        return [job.to_status_view() for job in self.database.list_jobs(status=status, limit=limit)]

    def retry_job(
        self,
        job_id: str,
        processor: Optional[Processor] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> bool:
        """
        Reset a FAILED (or stuck PROCESSING) job to PENDING with a fresh retry budget.

        The per-job entry is dropped when a job fails for good, so callers that
        need a specific processor or callback for the new cycle pass them here;
        otherwise the job-type table is used.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobStateError: If the job is not FAILED or PROCESSING
        """
        job = self.get_job(job_id)
        if job.status not in _RETRYABLE_STATUSES:
            raise InvalidJobStateError(job_id, job.status.value, "retried")

        previous = self.registry.register_job(job_id, processor, on_complete)
        if not self.database.reset_for_retry(job_id):
            if processor is not None or on_complete is not None:
                self.registry.restore(job_id, previous)
            logger.info(f"[Queue] Job {job_id} changed status before it could be reset for retry")
            return False

        logger.info(f"[Queue] Job {job_id} reset for manual retry")
        self.events.publish(job_id, JobStatus.PENDING)
        self._notify_workers()
        return True

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a job that has not completed.

        The job is stored as FAILED with ``CANCELLED_MESSAGE`` and an exhausted
        retry budget, so only ``retry_job`` brings it back. A run still in
        progress loses its final write and does not fire the callback again.

        Returns:
            False if the job is unknown, completed or already cancelled
        """
        if not self.database.cancel_job(job_id, CANCELLED_MESSAGE):
            return False

        logger.info(f"[Queue] Job {job_id} cancelled")
        self.events.publish(job_id, JobStatus.FAILED, CANCELLED_MESSAGE)
        self._finish(job_id, JobCancelledError(CANCELLED_MESSAGE), None)
        return True

    def cleanup_old_jobs(self, days_old: float = 30) -> int:
        return self.database.cleanup_old_jobs(days_old)

    def stats(self) -> QueueStats:
        return QueueStats(
            active_jobs=self.active_jobs,
            max_concurrent_jobs=self.max_concurrent_jobs,
            counts=self.database.count_by_status(),
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def process_next_job(self) -> bool:
        """
        Run one dispatch attempt in the calling thread.

        Returns:
            True if a job was claimed and run to an outcome, False if the
            concurrency ceiling is reached or nothing is eligible
        """
        with self._lock:
            if self._active_jobs >= self.max_concurrent_jobs:
                return False
            self._active_jobs += 1

        try:
            job = self.database.claim_next_job()
            if job is None:
                return False

            self.events.publish(job.id, JobStatus.PROCESSING)
            logger.info(
                f"[Queue] Processing job {job.id} ({job.type}) - "
                f"attempt {job.retries + 1}/{job.max_retries + 1}, "
                f"active jobs: {self.active_jobs}/{self.max_concurrent_jobs}"
            )
            self._execute(job)
            return True
        finally:
            with self._lock:
                self._active_jobs -= 1

    def handle_reaped_job(self, job: Job, error_message: str) -> None:
        """
        Follow-up for a job the reaper moved from PROCESSING to FAILED.

        With retries left the job is claimable again and the workers are woken;
        otherwise the failure is terminal and the callback fires.
        """
        self.events.publish(job.id, JobStatus.FAILED, error_message)
        if job.is_final_attempt:
            self._finish(job.id, RuntimeError(error_message), None)
        else:
            self._notify_workers()

    def _execute(self, job: Job) -> None:
        try:
            processor = self.registry.resolve(job)
            result = processor(job)
        except Exception as exc:  # noqa: BLE001
            self._handle_failure(job, exc)
        else:
            self._handle_success(job, result)

    def _handle_success(self, job: Job, result: Any) -> None:
        stored = self.database.transition(
            job.id,
            JobStatus.COMPLETED,
            expected=[JobStatus.PROCESSING],
            completion_data=result,
        )
        if not stored:
            logger.warning(f"[Queue] Job {job.id} finished but is no longer processing; result discarded")
            return

        self.events.publish(job.id, JobStatus.COMPLETED)
        logger.info(f"[Queue] Job {job.id} completed successfully")
        self._finish(job.id, None, result)

    def _handle_failure(self, job: Job, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        logger.error(f"[Queue] Error processing job {job.id}: {message}")

        if job.retries < job.max_retries:
            delay_ms = backoff_delay_ms(self.settings, job.retries)
            if not self.database.mark_retrying(job.id, message, delay_ms):
                logger.warning(f"[Queue] Job {job.id} failed but is no longer processing; retry not scheduled")
                return
            self.events.publish(job.id, JobStatus.RETRYING, message)
            logger.info(
                f"[Queue] Job {job.id} will be retried ({job.retries + 1}/{job.max_retries}) in {delay_ms:.0f}ms"
            )
            self._schedule_wakeup(delay_ms)
            return

        stored = self.database.transition(
            job.id,
            JobStatus.FAILED,
            expected=[JobStatus.PROCESSING],
            error_message=message,
        )
        if not stored:
            logger.warning(f"[Queue] Job {job.id} failed but is no longer processing; failure discarded")
            return

        self.events.publish(job.id, JobStatus.FAILED, message)
        logger.info(f"[Queue] Job {job.id} failed permanently after {job.retries} retries")
        self._finish(job.id, exc, None)

    def _finish(self, job_id: str, error: Optional[BaseException], result: Any) -> None:
        """Drop the job's registry entry and fire its callback, at most once."""
        entry = self.registry.pop(job_id)
        if entry is None or entry.on_complete is None:
            return
        try:
            entry.on_complete(error, result)
        except Exception:  # noqa: BLE001
            logger.exception(f"[Queue] Error executing completion callback for job {job_id}")

    # ------------------------------------------------------------------
    # Worker plumbing
    # ------------------------------------------------------------------

    def _notify_workers(self) -> None:
        with self._wakeup:
            self._signals += 1
            self._wakeup.notify_all()

    def _schedule_wakeup(self, delay_ms: float) -> None:
        if not self._workers:
            return
        timer = Timer(delay_ms / 1000.0, self._notify_workers)
        timer.daemon = True
        with self._lock:
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def _worker_loop(self) -> None:
        while not self._stopping.is_set():
            with self._wakeup:
                seen = self._signals
            try:
                processed = self.process_next_job()
            except Exception:  # noqa: BLE001
                logger.exception("[Queue] Error in job processing")
                processed = False

            if processed:
                continue

            with self._wakeup:
                if self._signals == seen and not self._stopping.is_set():
                    self._wakeup.wait(timeout=self.processor_interval)
