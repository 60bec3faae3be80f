"""
Job processors for document submissions.

Every partner integration (Editorial Manager, ScholarOne, email intake) and the
direct API enqueue the same kind of work: analyse one uploaded PDF and keep an
audit trail of the run. ``SubmissionProcessor`` is that work; it is registered
in the job-type table once per job type, with the partner name as the session
origin.

Payload layout::

    {
        "user_id": "acme",
        "files": [{"path": "...", "original_name": "paper.pdf", "size": 123,
                   "mime_type": "application/pdf", "primary": true}],
        "options": {"article_id": "...", ...},
        "api_request": {...}            # optional client request snapshot
    }

Uploaded files are temporary. They are deleted after a successful run or after
the final failed attempt, never before, because every retry reads them again.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .analysis import AnalysisClient
from .errors import InvalidSubmissionError
from .job_manager import JobManager
from .models import Job, JobType
from .notifications import PartnerNotifier, completion_notifier
from .s3_service import AuditSink
from .session import ProcessingSession
from .utils import generate_request_id, validate_pdf

logger = logging.getLogger(__name__)

ORIGIN_SERVICES: Dict[str, Optional[str]] = {
    JobType.DIRECT_SUBMISSION.value: None,
    JobType.EM_SUBMISSION.value: "editorial-manager",
    JobType.MAIL_SUBMISSION.value: "snapshot-mails",
    JobType.SCHOLARONE_SUBMISSION.value: "scholarone",
}


class SubmissionProcessor:
    """Runs one attempt of a submission job: validate, analyse, audit, clean up."""

    def __init__(self, analysis: AnalysisClient, sink: AuditSink, service: Optional[str] = None) -> None:
        self.analysis = analysis
        self.sink = sink
        self.service = service

    def __call__(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        files: List[Dict[str, Any]] = list(payload.get("files") or [])
        temp_paths = [Path(item["path"]) for item in files if item.get("path")]

        session = ProcessingSession(str(payload.get("user_id") or "anonymous"), job.id, self.sink)
        if self.service:
            session.set_origin("external", self.service)
        else:
            session.set_origin("direct")
        session.add_log(f"Starting background processing (attempt {job.retries + 1}/{job.max_retries + 1})")
        if payload.get("api_request") is not None:
            session.set_api_request(payload["api_request"])

        try:
            for item in files:
                session.add_file(
                    item["path"],
                    item.get("original_name") or Path(item["path"]).name,
                    size=item.get("size"),
                    mime_type=item.get("mime_type") or "application/pdf",
                    origin=self.service or "api",
                )

            primary = self._primary_file(files)
            filename = primary.get("original_name") or Path(primary["path"]).name
            session.add_log("Validating PDF file...")
            validate_pdf(primary["path"], filename)
            session.add_log("PDF file validation passed")

            options = dict(payload.get("options") or {})
            session.set_analysis_version(self.analysis.version)
            session.set_request(self.analysis.describe_request(filename, options))
            session.add_log(f"Sending request to analysis service: {self.analysis.url}")

            result = self.analysis.submit(primary["path"], filename, options)
            session.set_response(result)
            if result.get("report") is not None:
                session.set_report(result["report"])
            session.add_log("Response processing completed")
        except Exception as exc:
            session.add_log(f"Error in background processing: {exc}", "ERROR")
            if job.is_final_attempt:
                session.add_log("Job failed permanently - cleaning up temporary files")
            else:
                session.add_log(
                    f"Job will be retried ({job.retries + 1}/{job.max_retries}) - keeping temporary files for retry"
                )
            session.flush_quietly()
            if job.is_final_attempt:
                self._remove_files(job.id, temp_paths)
            raise

        outcome = {"status": "Success", "report_id": job.id, "result": result}
        session.set_api_response(outcome)
        session.add_log("Job completed successfully - cleaning up temporary files")
        session.flush_quietly()
        self._remove_files(job.id, temp_paths)
        return outcome

    @staticmethod
    def _primary_file(files: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not files:
            raise InvalidSubmissionError("No PDF file provided")
        for item in files:
            if item.get("primary"):
                return item
        return files[0]

    @staticmethod
    def _remove_files(job_id: str, paths: List[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.error(f"[{job_id}] Error deleting temporary file {path}: {exc}")


def register_default_processors(manager: JobManager, analysis: AnalysisClient, sink: AuditSink) -> None:
    """Fill the job-type table so stored jobs can run without their enqueue-time closure."""
    for job_type, service in ORIGIN_SERVICES.items():
        manager.register_processor(job_type, SubmissionProcessor(analysis, sink, service))


def enqueue_submission(
    manager: JobManager,
    job_type: Union[JobType, str],
    user_id: str,
    files: List[Dict[str, Any]],
    options: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    notifier: Optional[PartnerNotifier] = None,
    notification_fields: Optional[Dict[str, Any]] = None,
    priority: Union[int, str, None] = None,
    api_request: Any = None,
) -> Job:
    """
    Accept a submission for background processing and return immediately.

    This is what route handlers call: it builds the payload, picks the request
    id (a fresh session id unless given) and wires the partner notification as
    the job's completion callback.

    Raises:
        InvalidSubmissionError: If no files are given
        DuplicateJobError: If ``request_id`` is already used
    """
    if not files:
        raise InvalidSubmissionError("No PDF file provided")

    job_type_value = job_type.value if isinstance(job_type, JobType) else str(job_type)
    job_id = request_id or generate_request_id()
    payload: Dict[str, Any] = {
        "user_id": user_id,
        "files": files,
        "options": options or {},
    }
    if api_request is not None:
        payload["api_request"] = api_request

    on_complete = completion_notifier(notifier, job_id, notification_fields) if notifier else None
    return manager.enqueue_job(job_id, job_type_value, payload, priority=priority, on_complete=on_complete)
