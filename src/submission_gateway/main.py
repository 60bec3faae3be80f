from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from .analysis import AnalysisClient
from .configuration import load_settings
from .database import JobDatabase
from .errors import DuplicateJobError, InvalidJobStateError, InvalidSubmissionError, JobNotFoundError
from .job_manager import JobManager
from .models import JobList, JobStatus, JobStatusView, JobType, QueueStats, SubmissionAccepted
from .processors import enqueue_submission, register_default_processors
from .s3_service import build_audit_sink
from .utils import ensure_directory, generate_request_id, is_safe_identifier, sanitize_label, validate_pdf

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

settings = load_settings()
upload_root = ensure_directory(Path(settings.storage.upload_dir))

job_manager = JobManager(JobDatabase(Path(settings.storage.database_path)), settings=settings)
analysis_client = AnalysisClient.from_settings(settings)
register_default_processors(job_manager, analysis_client, build_audit_sink(settings))


@asynccontextmanager
async def lifespan(_: FastAPI):
    job_manager.start()
    try:
        yield
    finally:
        job_manager.stop()
        analysis_client.close()


app = FastAPI(title="Submission Gateway API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_job_manager() -> JobManager:
    return job_manager


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/queue/stats", response_model=QueueStats)
def queue_stats(manager: JobManager = Depends(get_job_manager)) -> QueueStats:
    return manager.stats()


@app.get("/jobs", response_model=JobList)
def list_jobs(
    status: Optional[JobStatus] = None,
    limit: int = 100,
    manager: JobManager = Depends(get_job_manager),
) -> JobList:
    return JobList(jobs=manager.list_jobs(status=status, limit=limit))


@app.get("/jobs/{job_id}/status", response_model=JobStatusView)
def job_status(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobStatusView:
    try:
        return manager.get_job_status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc


@app.post("/jobs/{job_id}/retry")
def retry_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    try:
        reset = manager.retry_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not reset:
        raise HTTPException(status_code=409, detail="Job changed status before it could be retried")
    return {"status": JobStatus.PENDING.value, "request_id": job_id}


@app.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    try:
        manager.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    if not manager.cancel_job(job_id):
        raise HTTPException(status_code=409, detail="Job cannot be cancelled")
    return {"status": "cancelled", "request_id": job_id}


def _sanitize_filename(filename: str) -> str:
    stem = sanitize_label(Path(filename).stem, fallback="document")
    return f"{stem}.pdf"


async def _store_upload(file: UploadFile, request_id: str) -> Path:
    upload_dir = ensure_directory(upload_root / request_id)
    # Unique per upload so a concurrent duplicate cannot overwrite the accepted file
    destination = upload_dir / f"{generate_request_id()[:12]}-{_sanitize_filename(file.filename or 'document.pdf')}"

    with destination.open("wb") as buffer:
        while chunk := await file.read(8 * 1024 * 1024):
            buffer.write(chunk)
    await file.close()
    return destination


@app.post("/submissions", response_model=SubmissionAccepted, status_code=202)
async def create_submission(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    options: str = Form("{}"),
    request_id: str = Form(""),
    manager: JobManager = Depends(get_job_manager),
) -> SubmissionAccepted:
    if not file.filename:
        raise HTTPException(status_code=400, detail="PDF file must have a filename")

    try:
        parsed_options: Dict[str, Any] = json.loads(options) if options else {}
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid options JSON: {exc}") from exc

    if request_id and not is_safe_identifier(request_id):
        raise HTTPException(status_code=400, detail="Invalid request id")
    job_id = request_id or generate_request_id()
    if manager.database.get_job(job_id) is not None:
        raise HTTPException(status_code=409, detail=f"Request {job_id} already exists")

    stored_path = await _store_upload(file, job_id)
    try:
        validate_pdf(stored_path, file.filename)
    except InvalidSubmissionError as exc:
        stored_path.unlink(missing_ok=True)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        job = enqueue_submission(
            manager,
            JobType.DIRECT_SUBMISSION,
            user_id=user_id,
            files=[
                {
                    "path": str(stored_path),
                    "original_name": file.filename,
                    "size": stored_path.stat().st_size,
                    "mime_type": file.content_type or "application/pdf",
                    "primary": True,
                }
            ],
            options=parsed_options,
            request_id=job_id,
            api_request={"user_id": user_id, "filename": file.filename, "options": parsed_options},
        )
    except DuplicateJobError as exc:
        stored_path.unlink(missing_ok=True)
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    return SubmissionAccepted(request_id=job.id)
