"""
Exception types raised by the job queue, the job store and the processors.

The HTTP layer maps these onto status codes; the dispatcher catches everything
raised by processors and turns it into job state instead of propagating it.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""


class DuplicateJobError(GatewayError, ValueError):
    """A job with the same id already exists in the store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class JobNotFoundError(GatewayError, LookupError):
    """No job record exists for the given id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidJobStateError(GatewayError, RuntimeError):
    """The requested operation is not allowed in the job's current status."""

    def __init__(self, job_id: str, status: str, operation: str) -> None:
        super().__init__(f"Job {job_id} cannot be {operation} (status: {status})")
        self.job_id = job_id
        self.status = status


class NoProcessorError(GatewayError, LookupError):
    """Neither the registry nor the type table has a processor for a job."""


class JobCancelledError(GatewayError):
    """Passed to completion callbacks of jobs that were cancelled."""


class AuditFlushError(GatewayError):
    """Writing a processing session to the audit sink failed."""


class AnalysisError(GatewayError):
    """The downstream analysis service could not process a document."""


class InvalidSubmissionError(GatewayError, ValueError):
    """A submission payload or its files failed validation."""
