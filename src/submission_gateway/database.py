"""
SQLite database for persistent job storage.

This module is the single source of truth for job state. Every status change
goes through a conditional UPDATE on one shared connection, so the dispatcher,
the reaper and manual retries/cancellations cannot overwrite each other, and
claiming a job is a single write transaction (``BEGIN IMMEDIATE``) that also
holds across processes sharing the same database file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .errors import DuplicateJobError
from .models import TERMINAL_STATUSES, Job, JobStatus

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/jobs.db")

STUCK_JOB_MESSAGE = "Job marked as failed due to timeout"

_ELIGIBLE_CLAUSE = """
    status = 'pending'
    OR (status = 'retrying' AND (available_at IS NULL OR available_at <= ?))
    OR (status = 'failed' AND retries < max_retries)
"""

_ELIGIBLE_ORDER = "ORDER BY priority DESC, created_at ASC, seq ASC"


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to a fixed-width ISO string so text order is time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _status_value(status: JobStatus | str) -> str:
    return status.value if isinstance(status, JobStatus) else JobStatus(status).value


class JobDatabase:
    """
    SQLite-backed durable job store.

    One connection is opened for the lifetime of the store and shared between
    threads under a re-entrant lock. The connection runs in autocommit mode and
    every multi-statement write is wrapped in an explicit transaction.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._lock = RLock()
        self._conn = sqlite3.connect(
            str(self.db_path),
            timeout=30.0,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_db()

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Run a block inside one transaction on the shared connection."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 5,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    available_at TEXT,
                    retries INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    error_message TEXT,
                    completion_data TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status_priority
                ON jobs(status, priority DESC, created_at ASC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_updated_at
                ON jobs(updated_at)
            """)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def add_job(
        self,
        job_id: str,
        job_type: str,
        payload: Dict[str, Any],
        max_retries: int = 3,
        priority: int = 5,
    ) -> Job:
        """
        Insert a new PENDING job.

        Args:
            job_id: Caller-supplied unique id (also the request/report id)
            job_type: Tag used to resolve the processor
            payload: JSON-serializable job data
            max_retries: Retry budget for automatic retries
            priority: Higher values are dispatched first

        Returns:
            The stored job record

        Raises:
            DuplicateJobError: If a job with this id already exists
        """
        now = _serialize_datetime(_utcnow())
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (
                        id, type, status, priority, payload,
                        created_at, updated_at, retries, max_retries
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        job_id,
                        job_type,
                        JobStatus.PENDING.value,
                        int(priority),
                        json.dumps(payload, default=str),
                        now,
                        now,
                        int(max_retries),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateJobError(job_id) from exc

        job = self.get_job(job_id)
        assert job is not None
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """
        Retrieve a job by ID.

        Returns:
            The job record or None if not found
        """
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, status: JobStatus | str | None = None, limit: int = 100) -> List[Job]:
        """
        List jobs ordered by creation time (newest first).

        Args:
            status: Optional status filter
            limit: Maximum number of jobs to return
        """
        sql = "SELECT * FROM jobs"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(_status_value(status))
        sql += " ORDER BY created_at DESC, seq DESC LIMIT ?"
        params.append(int(limit))

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status").fetchall()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def next_eligible_job(self) -> Optional[Job]:
        """
        Peek at the job the next claim would take, without claiming it.

        Eligible jobs are PENDING ones, RETRYING ones whose backoff has elapsed,
        and FAILED ones that still have retries left (e.g. reaped jobs).
        """
        now = _serialize_datetime(_utcnow())
        with self._lock:
            row = self._conn.execute(
                f"SELECT * FROM jobs WHERE {_ELIGIBLE_CLAUSE} {_ELIGIBLE_ORDER} LIMIT 1",
                (now,),
            ).fetchone()
        return self._row_to_job(row) if row else None

    def claim_next_job(self) -> Optional[Job]:
        """
        Atomically move the next eligible job to PROCESSING and return it.

        Selection and update run in one ``BEGIN IMMEDIATE`` transaction and the
        update is conditional on the status that was read, so a row is handed
        to exactly one caller.
        """
        now = _serialize_datetime(_utcnow())
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                f"SELECT * FROM jobs WHERE {_ELIGIBLE_CLAUSE} {_ELIGIBLE_ORDER} LIMIT 1",
                (now,),
            ).fetchone()
            if row is None:
                return None

            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, updated_at = ?, available_at = NULL
                WHERE id = ? AND status = ?
                """,
                (JobStatus.PROCESSING.value, now, row["id"], row["status"]),
            )
            if cursor.rowcount == 0:
                return None

            claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()
        return self._row_to_job(claimed)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def update_status(
        self,
        job_id: str,
        status: JobStatus | str,
        error_message: Optional[str] = None,
        completion_data: Any = None,
    ) -> bool:
        """
        Write a status decided by the caller.

        COMPLETED is absorbing: once a job is completed, further writes are
        no-ops and return False. A permanently FAILED job (retry budget spent)
        accepts no further COMPLETED or FAILED write either; only
        ``reset_for_retry`` reopens it. Completion data is stored only with
        COMPLETED and cleared by any other status.

        Returns:
            True if a row was updated, False for unknown or terminal jobs
        """
        return self.transition(
            job_id,
            status,
            expected=[s for s in JobStatus if s is not JobStatus.COMPLETED],
            error_message=error_message,
            completion_data=completion_data,
            exhausted_is_terminal=JobStatus(_status_value(status)) in TERMINAL_STATUSES,
        )

    def transition(
        self,
        job_id: str,
        status: JobStatus | str,
        expected: Iterable[JobStatus | str],
        error_message: Optional[str] = None,
        completion_data: Any = None,
        exhausted_is_terminal: bool = False,
    ) -> bool:
        """
        Conditionally move a job to ``status`` if its current status is in ``expected``.

        With ``exhausted_is_terminal`` a FAILED row whose retries are spent is
        left alone even when FAILED is expected.

        Returns:
            True if the transition happened
        """
        new_status = _status_value(status)
        expected_values = [_status_value(s) for s in expected]
        if not expected_values:
            return False

        updates = ["status = ?", "updated_at = ?"]
        values: list[Any] = [new_status, _serialize_datetime(_utcnow())]

        if new_status == JobStatus.COMPLETED.value:
            updates.append("completion_data = ?")
            values.append(json.dumps(completion_data if completion_data is not None else {}, default=str))
        else:
            updates.append("completion_data = NULL")

        if error_message is not None:
            updates.append("error_message = ?")
            values.append(error_message)

        placeholders = ", ".join("?" for _ in expected_values)
        values.append(job_id)
        values.extend(expected_values)
        where = f"id = ? AND status IN ({placeholders})"
        if exhausted_is_terminal:
            where += " AND NOT (status = ? AND retries >= max_retries)"
            values.append(JobStatus.FAILED.value)

        with self._transaction() as conn:
            cursor = conn.execute(f"UPDATE jobs SET {', '.join(updates)} WHERE {where}", values)
            return cursor.rowcount > 0

    def increment_retries(self, job_id: str) -> bool:
        """Count one more attempt, never past ``max_retries``."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET retries = retries + 1, updated_at = ?
                WHERE id = ? AND retries < max_retries
                """,
                (_serialize_datetime(_utcnow()), job_id),
            )
            updated = cursor.rowcount > 0
        if updated:
            logger.info(f"[DB] Incremented retry count for job {job_id}")
        return updated

    def mark_retrying(self, job_id: str, error_message: str, delay_ms: float) -> bool:
        """
        Record a failed attempt that will be retried after ``delay_ms``.

        Increments ``retries`` and sets RETRYING in one statement, only for a
        job that is still PROCESSING and has budget left.
        """
        now = _utcnow()
        available_at = now + timedelta(milliseconds=delay_ms)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, retries = retries + 1, error_message = ?,
                    available_at = ?, updated_at = ?, completion_data = NULL
                WHERE id = ? AND status = ? AND retries < max_retries
                """,
                (
                    JobStatus.RETRYING.value,
                    error_message,
                    _serialize_datetime(available_at),
                    _serialize_datetime(now),
                    job_id,
                    JobStatus.PROCESSING.value,
                ),
            )
            return cursor.rowcount > 0

    def reset_for_retry(self, job_id: str) -> bool:
        """
        Reset a FAILED (or stuck PROCESSING) job to PENDING with a fresh retry budget.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, retries = 0, error_message = NULL,
                    available_at = NULL, completion_data = NULL, updated_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    JobStatus.PENDING.value,
                    _serialize_datetime(_utcnow()),
                    job_id,
                    JobStatus.FAILED.value,
                    JobStatus.PROCESSING.value,
                ),
            )
            updated = cursor.rowcount > 0
        if updated:
            logger.info(f"[DB] Reset job {job_id} to pending status for retry")
        return updated

    def cancel_job(self, job_id: str, reason: str) -> bool:
        """
        Force a non-completed job to FAILED with ``reason`` and an exhausted budget.

        Returns:
            False if the job is unknown, completed or already cancelled
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, error_message = ?, retries = max_retries,
                    available_at = NULL, completion_data = NULL, updated_at = ?
                WHERE id = ? AND status != ?
                  AND NOT (status = ? AND COALESCE(error_message, '') = ?)
                """,
                (
                    JobStatus.FAILED.value,
                    reason,
                    _serialize_datetime(_utcnow()),
                    job_id,
                    JobStatus.COMPLETED.value,
                    JobStatus.FAILED.value,
                    reason,
                ),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Recovery and retention
    # ------------------------------------------------------------------

    def find_stuck(self, timeout_minutes: float = 30) -> List[Job]:
        """Jobs in PROCESSING whose last update is older than the timeout."""
        cutoff = _serialize_datetime(_utcnow() - timedelta(minutes=timeout_minutes))
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM jobs
                WHERE status = ? AND updated_at < ?
                ORDER BY created_at ASC, seq ASC
                """,
                (JobStatus.PROCESSING.value, cutoff),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def fail_stuck_job(self, job_id: str, timeout_minutes: float = 30) -> bool:
        """Fail one job if it is still stuck; the recheck guards against a late finish."""
        now = _utcnow()
        cutoff = _serialize_datetime(now - timedelta(minutes=timeout_minutes))
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, error_message = ?, updated_at = ?
                WHERE id = ? AND status = ? AND updated_at < ?
                """,
                (
                    JobStatus.FAILED.value,
                    STUCK_JOB_MESSAGE,
                    _serialize_datetime(now),
                    job_id,
                    JobStatus.PROCESSING.value,
                    cutoff,
                ),
            )
            return cursor.rowcount > 0

    def mark_stuck_as_failed(self, timeout_minutes: float = 30) -> int:
        """Fail every stuck job in one statement; returns how many were changed."""
        now = _utcnow()
        cutoff = _serialize_datetime(now - timedelta(minutes=timeout_minutes))
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, error_message = ?, updated_at = ?
                WHERE status = ? AND updated_at < ?
                """,
                (
                    JobStatus.FAILED.value,
                    STUCK_JOB_MESSAGE,
                    _serialize_datetime(now),
                    JobStatus.PROCESSING.value,
                    cutoff,
                ),
            )
            count = cursor.rowcount
        if count > 0:
            logger.info(f"[DB] Marked {count} stuck jobs as failed")
        return count

    def cleanup_old_jobs(self, days_old: float = 30) -> int:
        """Delete COMPLETED jobs created more than ``days_old`` days ago."""
        cutoff = _serialize_datetime(_utcnow() - timedelta(days=days_old))
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE status = ? AND created_at < ?",
                (JobStatus.COMPLETED.value, cutoff),
            )
            count = cursor.rowcount
        if count > 0:
            logger.info(f"[DB] Cleaned up {count} old completed jobs")
        return count

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert a database row to a Job."""
        completion_raw = row["completion_data"]
        return Job(
            id=row["id"],
            type=row["type"],
            payload=json.loads(row["payload"] or "{}"),
            status=JobStatus(row["status"]),
            priority=row["priority"],
            retries=row["retries"],
            max_retries=row["max_retries"],
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
            available_at=_deserialize_datetime(row["available_at"]),
            error_message=row["error_message"],
            completion_data=json.loads(completion_raw) if completion_raw is not None else None,
        )
