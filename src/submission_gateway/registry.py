"""
In-memory processor and callback registry.

Processor functions and completion callbacks are not serializable, so they live
next to the job store rather than inside it. Two lookups exist:

- a per-job entry registered at enqueue time (process-local, lost on restart)
- a static job-type table, which is what makes jobs surviving a restart
  runnable again without their original closure
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional

from .errors import NoProcessorError
from .models import Job

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Any]
CompletionCallback = Callable[[Optional[BaseException], Any], None]


@dataclass
class RegistryEntry:
    processor: Optional[Processor] = None
    on_complete: Optional[CompletionCallback] = None


class JobRegistry:
    """Thread-safe job id -> (processor, on_complete) map plus a job type -> processor table."""

    def __init__(self) -> None:
        self._entries: Dict[str, RegistryEntry] = {}
        self._type_table: Dict[str, Processor] = {}
        self._lock = Lock()

    def register_processor(self, job_type: str, processor: Processor) -> None:
        """Install the fallback processor for every job of ``job_type``."""
        if not callable(processor):
            raise TypeError(f"Processor for job type {job_type} must be callable")
        with self._lock:
            self._type_table[str(job_type)] = processor

    def register_job(
        self,
        job_id: str,
        processor: Optional[Processor] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> Optional[RegistryEntry]:
        """Attach a processor and/or callback to a job; returns a copy of the previous entry."""
        with self._lock:
            previous = self._entries.get(job_id)
            snapshot = RegistryEntry(previous.processor, previous.on_complete) if previous else None
            if processor is None and on_complete is None:
                return snapshot
            entry = self._entries.setdefault(job_id, RegistryEntry())
            if processor is not None:
                entry.processor = processor
            if on_complete is not None:
                entry.on_complete = on_complete
            return snapshot

    def restore(self, job_id: str, entry: Optional[RegistryEntry]) -> None:
        """Put back an entry returned by ``register_job``, or drop the job if there was none."""
        with self._lock:
            if entry is None:
                self._entries.pop(job_id, None)
            else:
                self._entries[job_id] = entry

    def resolve(self, job: Job) -> Processor:
        """
        Find the processor for a job: per-job entry first, then the type table.

        Raises:
            NoProcessorError: If neither lookup has a processor
        """
        with self._lock:
            entry = self._entries.get(job.id)
            if entry is not None and entry.processor is not None:
                return entry.processor
            processor = self._type_table.get(job.type)

        if processor is None:
            raise NoProcessorError(f"No processor available for job {job.id} (type {job.type})")
        logger.warning(f"[Queue] No specific processor found for job {job.id}. Using job type lookup.")
        return processor

    def pop(self, job_id: str) -> Optional[RegistryEntry]:
        """Remove and return a job's entry once it is terminal."""
        with self._lock:
            return self._entries.pop(job_id, None)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
