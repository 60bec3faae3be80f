"""
Per-execution processing session.

A ``ProcessingSession`` accumulates everything one run of a job produces - the
log, client and analysis-service request/response snapshots, input files and the
final report - and writes it to the audit sink in a single ``flush`` at the end
of the run, on the success path and on the error path alike. A retry rebuilds a
new session under the same id from the job payload.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import AuditFlushError
from .models import SessionFile
from .s3_service import AuditBlob, AuditSink
from .utils import file_extension, format_log_date, generate_request_id, md5_file

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")


def _json_blob(name: str, data: Any) -> AuditBlob:
    return AuditBlob(name=name, data=json.dumps(data, indent=2, default=str), content_type="application/json")


class ProcessingSession:
    """
    Accumulator for one job execution.

    Attributes:
        owner_id: User or partner account the submission belongs to
        session_id: Job id / request id (32-char hex when generated)
        origin: ``{"type": "direct" | "external", "service": name or None}``
        logs: Formatted ``[timestamp] [LEVEL] text`` lines, in order
        files: Input files captured for the audit trail
        report: Structured result stored under ``report/report.json``
    """

    def __init__(self, owner_id: str, session_id: Optional[str] = None, sink: Optional[AuditSink] = None) -> None:
        self.owner_id = owner_id
        self.session_id = session_id or generate_request_id()
        self.sink = sink
        self.origin: Dict[str, Optional[str]] = {"type": "direct", "service": None}
        self.logs: List[str] = []
        self.files: List[SessionFile] = []

        self.api_request: Any = None
        self.api_response: Any = None
        self.analysis_request: Any = None
        self.analysis_response: Any = None
        self.analysis_version: Optional[str] = None
        self.report: Any = None

        self.start_time = datetime.now(timezone.utc)
        self.end_time: Optional[datetime] = None
        self._duration_ms: Optional[int] = None
        self._flushed = False

        self.add_log("Session started")

    # Accumulators

    def add_log(self, entry: str, level: str = "INFO") -> None:
        """Append a timestamped entry. Never raises."""
        try:
            level_name = str(level).upper()
            timestamp = format_log_date(datetime.now(timezone.utc))
            self.logs.append(f"[{timestamp}] [{level_name}] {entry}")
        except Exception:  # noqa: BLE001
            logger.exception(f"Could not record session log entry for {self.session_id}")

    def set_origin(self, origin_type: str, service: Optional[str] = None) -> "ProcessingSession":
        self.origin = {"type": origin_type, "service": service}
        self.add_log(f"Origin set: {origin_type}{f' ({service})' if service else ''}")
        return self

    def set_api_request(self, request: Any) -> "ProcessingSession":
        self.api_request = request
        self.add_log("API request stored")
        return self

    def set_api_response(self, response: Any) -> "ProcessingSession":
        self.api_response = response
        self.add_log("API response stored")
        return self

    def set_request(self, request: Any) -> "ProcessingSession":
        """Snapshot of the request sent to the analysis service."""
        self.analysis_request = request
        self.add_log("Analysis request stored")
        return self

    def set_response(self, response: Any) -> "ProcessingSession":
        """Snapshot of the analysis service response."""
        self.analysis_response = response
        self.add_log("Analysis response stored")
        return self

    def set_analysis_version(self, version: Optional[str]) -> "ProcessingSession":
        self.analysis_version = version or None
        self.add_log(f"Analysis version set to: {version}")
        return self

    def add_file(
        self,
        path: Path | str,
        original_name: str,
        size: Optional[int] = None,
        mime_type: str = "application/pdf",
        origin: str = "api",
    ) -> "ProcessingSession":
        file_size = size if size is not None else Path(path).stat().st_size
        self.files.append(
            SessionFile(path=str(path), original_name=original_name, size=file_size, mime_type=mime_type, origin=origin)
        )
        self.add_log(f"Added file: {original_name} ({file_size} bytes, origin: {origin})")
        return self

    def set_report(self, report: Any) -> "ProcessingSession":
        self.report = report
        self.add_log("Report data stored")
        return self

    # Timing

    @property
    def duration_ms(self) -> int:
        """Wall-clock duration; fixed at flush time, live before that."""
        if self._duration_ms is not None:
            return self._duration_ms
        return int((datetime.now(timezone.utc) - self.start_time).total_seconds() * 1000)

    # Flush

    def build_batch(self) -> List[AuditBlob]:
        """Serialize the accumulated state into the blobs of one audit batch."""
        end_time = self.end_time or datetime.now(timezone.utc)
        blobs: List[AuditBlob] = []

        metadata = {
            "sessionId": self.session_id,
            "ownerId": self.owner_id,
            "startDate": format_log_date(self.start_time),
            "endDate": format_log_date(end_time),
            "duration": f"{self.duration_ms}ms",
            "origin": self.origin,
            "analysisVersion": self.analysis_version,
            "services": {"analysis": self.analysis_request is not None or self.analysis_response is not None},
        }
        blobs.append(_json_blob("process.json", metadata))
        blobs.append(AuditBlob(name="process.log", data="\n".join(self.logs), content_type="text/plain"))

        if self.api_request is not None:
            blobs.append(_json_blob("request.json", self.api_request))
        if self.api_response is not None:
            blobs.append(_json_blob("response.json", self.api_response))

        if self.analysis_request is not None or self.analysis_response is not None:
            blobs.append(_json_blob("analysis/metadata.json", {"version": self.analysis_version, "isActive": True}))
            if self.analysis_request is not None:
                blobs.append(_json_blob("analysis/request.json", self.analysis_request))
            if self.analysis_response is not None:
                blobs.append(_json_blob("analysis/response.json", self.analysis_response))

        if self.report is not None:
            blobs.append(_json_blob("report/report.json", self.report))

        if self.files:
            blobs.append(
                _json_blob(
                    "files.json",
                    [
                        {
                            "id": index,
                            "originalName": item.original_name,
                            "size": item.size,
                            "mimeType": item.mime_type,
                            "origin": item.origin,
                        }
                        for index, item in enumerate(self.files, start=1)
                    ],
                )
            )
            for index, item in enumerate(self.files, start=1):
                path = Path(item.path)
                blobs.append(
                    _json_blob(
                        f"files/file_{index}.metadata.json",
                        {
                            "originalName": item.original_name,
                            "size": item.size,
                            "md5": md5_file(path),
                            "mimeType": item.mime_type,
                            "origin": item.origin,
                        },
                    )
                )
                blobs.append(
                    AuditBlob(
                        name=f"files/file_{index}.{file_extension(item.original_name)}",
                        data=path,
                        content_type=item.mime_type,
                    )
                )
        return blobs

    def flush(self) -> str:
        """
        Write the whole session to the audit sink in one batch.

        Must be called once per execution, at the end of the run.

        Returns:
            The session id

        Raises:
            RuntimeError: If the session was already flushed or has no sink
            AuditFlushError: If building or storing the batch failed
        """
        if self._flushed:
            raise RuntimeError(f"Session {self.session_id} was already flushed")
        if self.sink is None:
            raise RuntimeError(f"Session {self.session_id} has no audit sink")
        self._flushed = True

        self.end_time = datetime.now(timezone.utc)
        self._duration_ms = int((self.end_time - self.start_time).total_seconds() * 1000)
        self.add_log(f"Session ended - Duration: {self._duration_ms}ms")

        try:
            blobs = self.build_batch()
            self.sink.put_batch(self.owner_id, self.session_id, blobs)
        except AuditFlushError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise AuditFlushError(f"Could not flush session {self.session_id}: {exc}") from exc
        return self.session_id

    def flush_quietly(self) -> Optional[str]:
        """
        Flush, logging instead of raising on failure.

        The audit trail is best effort: a failed flush never changes the
        outcome of the job that produced it.
        """
        try:
            return self.flush()
        except (AuditFlushError, RuntimeError) as exc:
            logger.error(f"Error saving processing session {self.session_id}: {exc}")
            return None
