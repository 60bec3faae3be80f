"""
Pytest configuration and fixtures for Submission Gateway tests.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="gateway_test_")
os.environ["JOBS_DB_PATH"] = str(Path(_TEST_ROOT) / "jobs.db")
os.environ["UPLOAD_DIR"] = str(Path(_TEST_ROOT) / "uploads")
os.environ["AUDIT_LOCAL_DIR"] = str(Path(_TEST_ROOT) / "sessions")
os.environ["S3_BUCKET_NAME"] = ""

from submission_gateway.configuration import load_settings
from submission_gateway.database import JobDatabase
from submission_gateway.errors import AuditFlushError
from submission_gateway.job_manager import JobManager
from submission_gateway.main import app
from submission_gateway.s3_service import AuditBlob, AuditSink

PDF_CONTENT = b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
2 0 obj
<< /Type /Pages /Kids [3 0 R] /Count 1 >>
endobj
3 0 obj
<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>
endobj
trailer
<< /Size 4 /Root 1 0 R >>
%%EOF"""


class MemoryAuditSink(AuditSink):
    """Keeps every flushed batch in memory, keyed by (owner, session)."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.batches: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self.calls: List[Tuple[str, str]] = []

    def put_batch(self, owner_id: str, session_id: str, blobs: Sequence[AuditBlob]) -> None:
        self.calls.append((owner_id, session_id))
        if self.fail:
            raise AuditFlushError("audit storage unavailable")
        self.batches[(owner_id, session_id)] = {blob.name: blob.as_bytes() for blob in blobs}


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the shared test directory after all tests."""
    yield _TEST_ROOT
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def settings():
    """Settings with immediate retries and a short idle interval."""
    return load_settings(
        overrides={
            "queue": {
                "max_concurrent_jobs": 2,
                "max_retries": 3,
                "retry_delay_multiplier": 0,
                "processor_interval_ms": 50,
            }
        },
        environ={},
    )


@pytest.fixture
def database(tmp_path):
    db = JobDatabase(tmp_path / "jobs.db")
    yield db
    db.close()


@pytest.fixture
def manager(database, settings):
    """A job manager without worker threads; tests drive it with process_next_job()."""
    return JobManager(database, settings=settings)


@pytest.fixture
def memory_sink():
    return MemoryAuditSink()


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def sample_pdf(tmp_path):
    """Create a minimal valid PDF file for testing."""
    path = tmp_path / "paper.pdf"
    path.write_bytes(PDF_CONTENT)
    return path


@pytest.fixture
def failing_sink():
    return MemoryAuditSink(fail=True)
