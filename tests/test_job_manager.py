"""
Tests for the job manager state machine.

Most tests drive dispatch synchronously through process_next_job(); the
TestWorkers class runs the real worker threads.

Tests cover:
- Success, retry-then-success and retry exhaustion
- Backoff timing
- Duplicate ids, processor lookup and the concurrency ceiling
- Manual retry and cancellation
- Completion callbacks and status events
"""

import threading
import time

import pytest

from submission_gateway.configuration import load_settings
from submission_gateway.errors import (
    DuplicateJobError,
    InvalidJobStateError,
    JobCancelledError,
    JobNotFoundError,
    NoProcessorError,
)
from submission_gateway.job_manager import CANCELLED_MESSAGE, JobManager
from submission_gateway.models import JobStatus


class CallbackRecorder:
    """Completion callback that records every call."""

    def __init__(self):
        self.calls = []

    def __call__(self, error, result):
        self.calls.append((error, result))


class FlakyProcessor:
    """Fails a fixed number of attempts, then succeeds."""

    def __init__(self, failures, result=None):
        self.failures = failures
        self.result = result if result is not None else {"status": "Success"}
        self.attempts = []

    def __call__(self, job):
        self.attempts.append((job.retries, job.is_final_attempt))
        if len(self.attempts) <= self.failures:
            raise RuntimeError(f"attempt {len(self.attempts)} failed")
        return self.result


def _drain(manager, limit=20):
    """Run dispatch attempts until nothing is claimable."""
    runs = 0
    while manager.process_next_job():
        runs += 1
        assert runs < limit
    return runs


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestSuccessPath:
    """Tests for jobs that succeed."""

    def test_success_completes_job_and_fires_callback_once(self, manager):
        callback = CallbackRecorder()
        manager.enqueue_job("job-1", "t", {"n": 1}, processor=lambda job: {"echo": job.payload["n"]}, on_complete=callback)

        assert manager.process_next_job() is True

        job = manager.get_job("job-1")
        assert job.status == JobStatus.COMPLETED
        assert job.completion_data == {"echo": 1}
        assert callback.calls == [(None, {"echo": 1})]
        assert "job-1" not in manager.registry
        assert manager.process_next_job() is False

    def test_enqueue_returns_without_running(self, manager):
        calls = []
        job = manager.enqueue_job("job-1", "t", {}, processor=calls.append)

        assert job.status == JobStatus.PENDING
        assert calls == []

    def test_callback_error_does_not_change_outcome(self, manager):
        def broken_callback(error, result):
            raise ValueError("callback exploded")

        manager.enqueue_job("job-1", "t", {}, processor=lambda job: {"ok": True}, on_complete=broken_callback)

        assert manager.process_next_job() is True
        assert manager.get_job("job-1").status == JobStatus.COMPLETED

    def test_callback_sees_persisted_terminal_state(self, manager):
        """The terminal status is stored before the callback runs."""
        observed = []

        def callback(error, result):
            observed.append(manager.get_job("job-1").status)

        manager.enqueue_job("job-1", "t", {}, processor=lambda job: {}, on_complete=callback)
        manager.process_next_job()

        assert observed == [JobStatus.COMPLETED]


class TestRetries:
    """Tests for automatic retries."""

    def test_failure_with_budget_moves_to_retrying(self, manager):
        callback = CallbackRecorder()
        manager.enqueue_job("job-1", "t", {}, max_retries=3, processor=FlakyProcessor(failures=10), on_complete=callback)

        manager.process_next_job()

        job = manager.get_job("job-1")
        assert job.status == JobStatus.RETRYING
        assert job.retries == 1
        assert job.error_message == "attempt 1 failed"
        assert callback.calls == []
        assert "job-1" in manager.registry

    def test_retry_then_success(self, manager):
        processor = FlakyProcessor(failures=2, result={"report_id": "job-1"})
        callback = CallbackRecorder()
        manager.enqueue_job("job-1", "t", {}, max_retries=3, processor=processor, on_complete=callback)

        assert _drain(manager) == 3

        job = manager.get_job("job-1")
        assert job.status == JobStatus.COMPLETED
        assert job.retries == 2
        assert job.completion_data == {"report_id": "job-1"}
        assert callback.calls == [(None, {"report_id": "job-1"})]

    def test_retry_exhaustion_fails_job(self, manager):
        processor = FlakyProcessor(failures=10)
        callback = CallbackRecorder()
        manager.enqueue_job("job-1", "t", {}, max_retries=2, processor=processor, on_complete=callback)

        assert _drain(manager) == 3

        job = manager.get_job("job-1")
        assert job.status == JobStatus.FAILED
        assert job.retries == 2
        assert job.error_message == "attempt 3 failed"
        assert len(callback.calls) == 1
        error, result = callback.calls[0]
        assert isinstance(error, RuntimeError)
        assert result is None
        assert "job-1" not in manager.registry

    def test_processor_sees_final_attempt(self, manager):
        processor = FlakyProcessor(failures=10)
        manager.enqueue_job("job-1", "t", {}, max_retries=2, processor=processor)

        _drain(manager)

        assert processor.attempts == [(0, False), (1, False), (2, True)]

    def test_zero_retries_fails_on_first_error(self, manager):
        callback = CallbackRecorder()
        manager.enqueue_job("job-1", "t", {}, max_retries=0, processor=FlakyProcessor(failures=1), on_complete=callback)

        assert _drain(manager) == 1
        assert manager.get_job("job-1").status == JobStatus.FAILED
        assert len(callback.calls) == 1

    def test_backoff_delays_next_attempt(self, database):
        """A retrying job is not claimable until its backoff has elapsed."""
        settings = load_settings(overrides={"queue": {"retry_delay_multiplier": 1000}}, environ={})
        manager = JobManager(database, settings=settings)
        manager.enqueue_job("job-1", "t", {}, max_retries=3, processor=FlakyProcessor(failures=10))

        manager.process_next_job()
        job = manager.get_job("job-1")

        delay = (job.available_at - job.updated_at).total_seconds()
        assert delay == pytest.approx(1.0, abs=0.05)
        assert manager.process_next_job() is False

    def test_backoff_grows_exponentially(self, database):
        settings = load_settings(overrides={"queue": {"retry_delay_multiplier": 1000}}, environ={})
        manager = JobManager(database, settings=settings)
        manager.enqueue_job("job-1", "t", {}, max_retries=3, processor=FlakyProcessor(failures=10))

        manager.process_next_job()
        with database._transaction() as conn:
            conn.execute("UPDATE jobs SET available_at = NULL WHERE id = ?", ("job-1",))
        manager.process_next_job()

        job = manager.get_job("job-1")
        assert job.retries == 2
        delay = (job.available_at - job.updated_at).total_seconds()
        assert delay == pytest.approx(2.0, abs=0.05)


class TestEnqueue:
    """Tests for enqueueing and processor lookup."""

    def test_duplicate_enqueue_keeps_original_job_and_callback(self, manager):
        first = CallbackRecorder()
        second = CallbackRecorder()
        manager.enqueue_job("job-1", "t", {"n": 1}, processor=lambda job: {"n": job.payload["n"]}, on_complete=first)

        with pytest.raises(DuplicateJobError):
            manager.enqueue_job("job-1", "t", {"n": 2}, processor=lambda job: {"n": 99}, on_complete=second)

        manager.process_next_job()

        assert manager.get_job("job-1").completion_data == {"n": 1}
        assert first.calls == [(None, {"n": 1})]
        assert second.calls == []

    def test_type_table_is_used_without_per_job_processor(self, manager):
        seen = []
        manager.register_processor("em_submission", lambda job: seen.append(job.id) or {"ok": True})
        manager.enqueue_job("job-1", "em_submission", {})

        manager.process_next_job()

        assert seen == ["job-1"]
        assert manager.get_job("job-1").status == JobStatus.COMPLETED

    def test_per_job_processor_wins_over_type_table(self, manager):
        manager.register_processor("t", lambda job: {"from": "table"})
        manager.enqueue_job("job-1", "t", {}, processor=lambda job: {"from": "job"})

        manager.process_next_job()

        assert manager.get_job("job-1").completion_data == {"from": "job"}

    def test_missing_processor_is_a_job_failure(self, manager):
        callback = CallbackRecorder()
        manager.enqueue_job("job-1", "unknown", {}, max_retries=0, on_complete=callback)

        manager.process_next_job()

        job = manager.get_job("job-1")
        assert job.status == JobStatus.FAILED
        assert "No processor available" in job.error_message
        assert isinstance(callback.calls[0][0], NoProcessorError)

    def test_priority_names_and_defaults(self, manager):
        assert manager.enqueue_job("a", "t", {}).priority == 5
        assert manager.enqueue_job("b", "t", {}, priority="HIGH").priority == 10
        assert manager.enqueue_job("c", "t", {}, priority="critical").priority == 20
        assert manager.enqueue_job("d", "t", {}, priority=7).priority == 7

    def test_default_max_retries_from_settings(self, manager):
        assert manager.enqueue_job("a", "t", {}).max_retries == 3

    def test_get_job_status_unknown_raises(self, manager):
        with pytest.raises(JobNotFoundError):
            manager.get_job_status("missing")


class TestConcurrencyCeiling:
    """Tests for the max_concurrent_jobs bound."""

    def test_dispatch_refused_at_ceiling(self, manager):
        release = threading.Event()
        entered = threading.Semaphore(0)

        def blocking(job):
            entered.release()
            release.wait(timeout=10)
            return {"id": job.id}

        for index in range(3):
            manager.enqueue_job(f"job-{index}", "t", {}, processor=blocking)

        threads = [threading.Thread(target=manager.process_next_job) for _ in range(2)]
        for thread in threads:
            thread.start()
        assert entered.acquire(timeout=5)
        assert entered.acquire(timeout=5)

        assert manager.active_jobs == 2
        assert manager.process_next_job() is False

        release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert manager.active_jobs == 0
        assert manager.process_next_job() is True
        assert manager.stats().counts["completed"] == 3


class TestManualRetry:
    """Tests for retry_job."""

    def test_retry_failed_job_resets_budget(self, manager):
        manager.enqueue_job("job-1", "t", {}, max_retries=1, processor=FlakyProcessor(failures=10))
        _drain(manager)
        assert manager.get_job("job-1").status == JobStatus.FAILED

        callback = CallbackRecorder()
        assert manager.retry_job("job-1", processor=lambda job: {"ok": True}, on_complete=callback) is True

        job = manager.get_job("job-1")
        assert job.status == JobStatus.PENDING
        assert job.retries == 0
        assert job.error_message is None

        manager.process_next_job()
        assert manager.get_job("job-1").status == JobStatus.COMPLETED
        assert callback.calls == [(None, {"ok": True})]

    def test_retry_falls_back_to_type_table(self, manager):
        manager.enqueue_job("job-1", "t", {}, max_retries=0, processor=FlakyProcessor(failures=10))
        _drain(manager)
        manager.register_processor("t", lambda job: {"from": "table"})

        manager.retry_job("job-1")
        manager.process_next_job()

        assert manager.get_job("job-1").completion_data == {"from": "table"}

    def test_retry_rejects_pending_and_completed(self, manager):
        manager.enqueue_job("pending", "t", {})
        manager.enqueue_job("done", "t", {}, priority=10, processor=lambda job: {})
        manager.process_next_job()

        with pytest.raises(InvalidJobStateError):
            manager.retry_job("pending")
        with pytest.raises(InvalidJobStateError):
            manager.retry_job("done")

    def test_lost_retry_race_leaves_no_registry_entry(self, manager, monkeypatch):
        """If the job moves on before the reset lands, the new processor is not kept."""
        manager.enqueue_job("job-1", "t", {}, max_retries=0, processor=FlakyProcessor(failures=10))
        _drain(manager)
        assert "job-1" not in manager.registry

        monkeypatch.setattr(manager.database, "reset_for_retry", lambda job_id: False)

        assert manager.retry_job("job-1", processor=lambda job: {"ok": True}, on_complete=CallbackRecorder()) is False
        assert "job-1" not in manager.registry

    def test_lost_retry_race_restores_previous_entry(self, manager, monkeypatch):
        manager.enqueue_job("job-1", "t", {}, processor=lambda job: {"from": "original"})
        manager.database.transition("job-1", "failed", expected=["pending"])

        monkeypatch.setattr(manager.database, "reset_for_retry", lambda job_id: False)
        assert manager.retry_job("job-1", processor=lambda job: {"from": "retry"}) is False
        monkeypatch.undo()

        manager.database.reset_for_retry("job-1")
        manager.process_next_job()
        assert manager.get_job("job-1").completion_data == {"from": "original"}

    def test_retry_unknown_job(self, manager):
        with pytest.raises(JobNotFoundError):
            manager.retry_job("missing")


class TestCancel:
    """Tests for cancel_job."""

    def test_cancel_pending_job(self, manager):
        callback = CallbackRecorder()
        manager.enqueue_job("job-1", "t", {}, processor=lambda job: {}, on_complete=callback)

        assert manager.cancel_job("job-1") is True

        job = manager.get_job("job-1")
        assert job.status == JobStatus.FAILED
        assert job.error_message == CANCELLED_MESSAGE
        assert job.retries == job.max_retries
        assert len(callback.calls) == 1
        assert isinstance(callback.calls[0][0], JobCancelledError)
        assert manager.process_next_job() is False

    def test_cancel_is_idempotent_and_refuses_completed(self, manager):
        manager.enqueue_job("job-1", "t", {})
        manager.enqueue_job("done", "t", {}, processor=lambda job: {}, priority=10)
        manager.process_next_job()

        assert manager.cancel_job("job-1") is True
        assert manager.cancel_job("job-1") is False
        assert manager.cancel_job("done") is False
        assert manager.cancel_job("missing") is False

    def test_cancel_during_processing_discards_late_result(self, manager):
        """A run that finishes after cancellation does not complete the job or call back twice."""
        callback = CallbackRecorder()

        def processor(job):
            assert manager.cancel_job(job.id) is True
            return {"late": True}

        manager.enqueue_job("job-1", "t", {}, processor=processor, on_complete=callback)
        manager.process_next_job()

        job = manager.get_job("job-1")
        assert job.status == JobStatus.FAILED
        assert job.error_message == CANCELLED_MESSAGE
        assert job.completion_data is None
        assert len(callback.calls) == 1
        assert isinstance(callback.calls[0][0], JobCancelledError)

    def test_cancelled_job_can_be_retried(self, manager):
        manager.enqueue_job("job-1", "t", {})
        manager.cancel_job("job-1")

        assert manager.retry_job("job-1", processor=lambda job: {"ok": True})
        manager.process_next_job()

        assert manager.get_job("job-1").status == JobStatus.COMPLETED


class TestStatusEvents:
    """Tests for the status broadcast channel."""

    def test_events_follow_persisted_transitions(self, manager):
        channel = manager.events.subscribe()
        manager.enqueue_job("job-1", "t", {}, max_retries=1, processor=FlakyProcessor(failures=1))

        _drain(manager)

        statuses = []
        while not channel.empty():
            event = channel.get_nowait()
            assert event.job_id == "job-1"
            statuses.append(event.status)
        assert statuses == [
            JobStatus.PENDING,
            JobStatus.PROCESSING,
            JobStatus.RETRYING,
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
        ]

    def test_unsubscribe_stops_delivery(self, manager):
        channel = manager.events.subscribe()
        manager.events.unsubscribe(channel)

        manager.enqueue_job("job-1", "t", {})

        assert channel.empty()


class TestWorkers:
    """Tests that run the worker threads."""

    def test_workers_process_all_jobs_within_ceiling(self, manager):
        lock = threading.Lock()
        running = {"now": 0, "peak": 0}
        processed = []

        def processor(job):
            with lock:
                running["now"] += 1
                running["peak"] = max(running["peak"], running["now"])
            time.sleep(0.05)
            with lock:
                running["now"] -= 1
                processed.append(job.id)
            return {"id": job.id}

        with manager:
            for index in range(10):
                manager.enqueue_job(f"job-{index}", "t", {}, processor=processor)
            assert _wait_for(lambda: manager.stats().counts["completed"] == 10)

        assert sorted(processed) == sorted(f"job-{index}" for index in range(10))
        assert running["peak"] <= manager.max_concurrent_jobs

    def test_workers_retry_after_backoff(self, manager):
        processor = FlakyProcessor(failures=2)
        callback = CallbackRecorder()

        with manager:
            manager.enqueue_job("job-1", "t", {}, max_retries=3, processor=processor, on_complete=callback)
            assert _wait_for(lambda: manager.get_job("job-1").status == JobStatus.COMPLETED)

        assert len(processor.attempts) == 3
        assert callback.calls == [(None, {"status": "Success"})]

    def test_stop_is_clean_when_idle(self, manager):
        manager.start()
        manager.stop(timeout=5)

        assert manager.active_jobs == 0
        assert manager._workers == []


class TestScenarios:
    """End-to-end queue scenarios."""

    def test_success_path(self, manager):
        channel = manager.events.subscribe()
        callback = CallbackRecorder()

        def scorer(job):
            time.sleep(0.05)
            return {"score": 42}

        manager.enqueue_job("req1", "t", {}, processor=scorer, on_complete=callback)
        manager.process_next_job()

        statuses = [channel.get_nowait().status for _ in range(channel.qsize())]
        assert statuses == [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED]
        assert manager.get_job_status("req1").completion_data == {"score": 42}
        assert callback.calls == [(None, {"score": 42})]

    def test_exhausted_retries_then_manual_retry(self, manager):
        """Manual retry starts a full new cycle with the retry counter reset to zero."""
        callback = CallbackRecorder()

        def boom(job):
            raise RuntimeError("boom")

        manager.enqueue_job("req2", "t", {}, max_retries=2, processor=boom, on_complete=callback)
        _drain(manager)

        status = manager.get_job_status("req2")
        assert status.status == JobStatus.FAILED
        assert status.retries == 2
        assert status.error_message == "boom"
        assert len(callback.calls) == 1

        second = CallbackRecorder()
        assert manager.retry_job("req2", processor=boom, on_complete=second)
        assert manager.get_job_status("req2").status == JobStatus.PENDING
        assert manager.get_job_status("req2").retries == 0

        assert _drain(manager) == 3
        assert manager.get_job_status("req2").status == JobStatus.FAILED
        assert manager.get_job_status("req2").retries == 2
        assert len(second.calls) == 1
        assert len(callback.calls) == 1

    def test_processing_count_never_exceeds_ceiling(self, manager, database):
        peaks = []

        def slow(job):
            peaks.append(database.count_by_status()["processing"])
            time.sleep(0.03)
            return {}

        with manager:
            for index in range(12):
                manager.enqueue_job(f"job-{index}", "t", {}, processor=slow)
            assert _wait_for(lambda: manager.stats().counts["completed"] == 12)

        assert len(peaks) == 12
        assert max(peaks) <= manager.max_concurrent_jobs


class TestRegistry:
    """Tests for per-job registry entries."""

    def test_register_returns_previous_entry_and_restore_puts_it_back(self, manager):
        registry = manager.registry

        def first(job):
            return {}

        def second(job):
            return {}

        assert registry.register_job("job-1", first) is None
        previous = registry.register_job("job-1", second)
        assert previous.processor is first

        registry.restore("job-1", previous)
        assert registry.pop("job-1").processor is first

    def test_restore_without_previous_drops_entry(self, manager):
        manager.registry.register_job("job-1", lambda job: {})
        manager.registry.restore("job-1", None)

        assert "job-1" not in manager.registry

    def test_registry_exposes_no_callback_lookup(self, manager):
        """Callbacks are only reached through pop() when a job finishes."""
        assert not hasattr(manager.registry, "completion_callback")
