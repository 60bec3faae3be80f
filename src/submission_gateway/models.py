from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobType(str, Enum):
    DIRECT_SUBMISSION = "direct_submission"
    EM_SUBMISSION = "em_submission"
    MAIL_SUBMISSION = "mail_submission"
    SCHOLARONE_SUBMISSION = "scholarone_submission"


class Job(BaseModel):
    """A persisted unit of background work, as read back from the job store."""

    id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    priority: int = 5
    retries: int = 0
    max_retries: int = 3
    created_at: datetime
    updated_at: datetime
    available_at: Optional[datetime] = None
    error_message: Optional[str] = None
    completion_data: Optional[Any] = None

    @property
    def is_final_attempt(self) -> bool:
        """True when a failure of the current attempt will not be retried."""
        return self.retries >= self.max_retries

    def to_status_view(self) -> "JobStatusView":
        return JobStatusView(
            id=self.id,
            type=self.type,
            status=self.status,
            retries=self.retries,
            max_retries=self.max_retries,
            created_at=self.created_at,
            updated_at=self.updated_at,
            error_message=self.error_message,
            completion_data=self.completion_data,
        )


class JobStatusView(BaseModel):
    id: str
    type: str
    status: JobStatus
    retries: int
    max_retries: int
    created_at: datetime
    updated_at: datetime
    error_message: Optional[str] = None
    completion_data: Optional[Any] = None


class QueueStats(BaseModel):
    active_jobs: int
    max_concurrent_jobs: int
    counts: Dict[str, int]


class SubmissionAccepted(BaseModel):
    status: str = "Success"
    request_id: str


class SessionFile(BaseModel):
    """An input file captured by a processing session."""

    path: str
    original_name: str
    size: int
    mime_type: str = "application/pdf"
    origin: str = "api"


class JobList(BaseModel):
    jobs: List[JobStatusView]
