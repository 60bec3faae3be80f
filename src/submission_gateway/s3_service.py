"""
Durable audit sinks for processing sessions.

A sink receives one batch of named blobs per session (metadata JSON, the log
text, request/response snapshots, raw input files) keyed by owner and session
id. Two implementations are provided:

- ``S3AuditSink`` uploads to ``s3://<bucket>/<folder>/<owner>/<session>/...``
- ``LocalAuditSink`` writes the same layout under a local directory, used when
  no bucket is configured (local development, tests)

The S3 bucket name is configured via ``audit.s3_bucket`` / ``S3_BUCKET_NAME``.
"""

from __future__ import annotations

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import AuditFlushError
from .utils import ensure_directory, safe_path_segment, sanitize_label

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditBlob:
    """One object of a session batch. ``data`` is raw content or a path to a file."""

    name: str
    data: Union[bytes, str, Path]
    content_type: str = "application/octet-stream"

    def as_bytes(self) -> bytes:
        if isinstance(self.data, Path):
            return self.data.read_bytes()
        if isinstance(self.data, str):
            return self.data.encode("utf-8")
        return self.data


class AuditSink(ABC):
    """Abstract interface for session audit storage (local or S3)."""

    @abstractmethod
    def put_batch(self, owner_id: str, session_id: str, blobs: Sequence[AuditBlob]) -> None:
        """Store every blob of one session; raise ``AuditFlushError`` on failure."""
        ...

    def location(self, owner_id: str, session_id: str) -> str:
        """Human-readable location of a session's batch."""
        return f"{owner_id}/{session_id}"


def _owner_segment(owner_id: str) -> str:
    return sanitize_label(str(owner_id), fallback="anonymous")


def _session_segment(session_id: str) -> str:
    return safe_path_segment(session_id, fallback="session")


class S3AuditSink(AuditSink):
    def __init__(
        self,
        bucket_name: str,
        folder: str = "",
        region: Optional[str] = None,
        client: Any = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.folder = folder.strip("/")
        self.region = region
        self._client = client

    def _get_s3_client(self):
        """
        Get or create the S3 client.

        Credentials are not probed here; credential errors surface during the
        actual upload.
        """
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region) if self.region else boto3.client("s3")
        return self._client

    def base_key(self, owner_id: str, session_id: str) -> str:
        parts = [self.folder, _owner_segment(owner_id), _session_segment(session_id)]
        return "/".join(part for part in parts if part)

    def location(self, owner_id: str, session_id: str) -> str:
        return f"s3://{self.bucket_name}/{self.base_key(owner_id, session_id)}/"

    def put_batch(self, owner_id: str, session_id: str, blobs: Sequence[AuditBlob]) -> None:
        client = self._get_s3_client()
        base = self.base_key(owner_id, session_id)
        try:
            for blob in blobs:
                key = f"{base}/{blob.name}"
                if isinstance(blob.data, Path):
                    client.upload_file(
                        str(blob.data),
                        self.bucket_name,
                        key,
                        ExtraArgs={"ContentType": blob.content_type},
                    )
                else:
                    client.put_object(
                        Bucket=self.bucket_name,
                        Key=key,
                        Body=blob.as_bytes(),
                        ContentType=blob.content_type,
                    )
        except (ClientError, BotoCoreError, OSError) as exc:
            logger.error(f"[S3] Batch upload failed for {session_id}: {exc}")
            raise AuditFlushError(f"S3 upload failed for session {session_id}: {exc}") from exc
        logger.info(f"[S3] Uploaded {len(blobs)} objects to {self.location(owner_id, session_id)}")


class LocalAuditSink(AuditSink):
    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def session_dir(self, owner_id: str, session_id: str) -> Path:
        return self.root / _owner_segment(owner_id) / _session_segment(session_id)

    def location(self, owner_id: str, session_id: str) -> str:
        return str(self.session_dir(owner_id, session_id))

    def put_batch(self, owner_id: str, session_id: str, blobs: Sequence[AuditBlob]) -> None:
        target = self.session_dir(owner_id, session_id)
        try:
            for blob in blobs:
                destination = target / blob.name
                ensure_directory(destination.parent)
                if isinstance(blob.data, Path):
                    shutil.copyfile(blob.data, destination)
                else:
                    destination.write_bytes(blob.as_bytes())
        except OSError as exc:
            raise AuditFlushError(f"Could not write session {session_id} to {target}: {exc}") from exc
        logger.info(f"Stored {len(blobs)} session objects in {target}")


def build_audit_sink(settings: DictConfig) -> AuditSink:
    """S3 when a bucket is configured, otherwise the local directory sink."""
    audit = settings.audit
    if audit.s3_bucket:
        return S3AuditSink(bucket_name=audit.s3_bucket, folder=audit.s3_folder or "")
    logger.warning("S3 bucket not configured, storing session audit trail locally")
    return LocalAuditSink(Path(audit.local_dir))
