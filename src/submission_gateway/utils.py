"""
Utility functions for file handling, identifiers and PDF validation.

This module provides helper functions for:
- Sanitizing user-provided strings for safe filesystem and object-key usage
- Ensuring directory creation
- Generating request ids and content checksums
- Validating uploaded PDF files by extension and signature
"""

from __future__ import annotations

import hashlib
import re
import secrets
from datetime import datetime
from pathlib import Path
from typing import Iterable

from .errors import InvalidSubmissionError

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")
SAFE_IDENTIFIER_PATTERN = re.compile(r"[a-zA-Z0-9._-]+")

PDF_VERSION_PATTERN = re.compile(rb"%PDF-(\d+\.\d+)")

_HASH_CHUNK_SIZE = 1024 * 1024


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Example:
        >>> sanitize_label("My Document!", "default-doc")
        "my-document"
        >>> sanitize_label("@#$", "default-doc")
        "default-doc"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def is_safe_identifier(value: str) -> bool:
    """True when a caller-supplied id can be used as a single path segment unchanged."""
    return bool(SAFE_IDENTIFIER_PATTERN.fullmatch(value)) and value not in {".", ".."}


def safe_path_segment(value: str, fallback: str) -> str:
    """Like ``sanitize_label`` but case-preserving, for ids that must stay recognisable."""
    cleaned = SANITIZE_PATTERN.sub("-", str(value)).strip(".")
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def generate_request_id() -> str:
    """Random 32-character hex token used as both session id and job id."""
    return secrets.token_hex(16)


def format_log_date(date: datetime) -> str:
    """Format a timestamp the way session logs print it: ``YYYY-MM-DD HH:MM:SS.mmm``."""
    return date.strftime("%Y-%m-%d %H:%M:%S.") + f"{date.microsecond // 1000:03d}"


def md5_file(path: Path | str) -> str:
    """MD5 hex digest of a file, read in chunks."""
    digest = hashlib.md5()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def file_extension(filename: str, default: str = "bin") -> str:
    """Extension without the dot, e.g. ``pdf`` for ``paper.PDF``."""
    suffix = Path(filename).suffix.lower().lstrip(".")
    return suffix or default


def allowed_pdf_extensions() -> Iterable[str]:
    return [".pdf"]


def validate_pdf(path: Path | str, filename: str) -> None:
    """
    Check that an uploaded file is really a PDF.

    The filename must end in ``.pdf`` and the content must start with the
    ``%PDF-`` signature followed by a version number.

    Raises:
        InvalidSubmissionError: With a human-readable reason
    """
    suffix = Path(filename).suffix.lower()
    if suffix not in allowed_pdf_extensions():
        raise InvalidSubmissionError(f'Invalid file extension: "{suffix}". Expected ".pdf"')

    try:
        with open(path, "rb") as handle:
            header = handle.read(10)
    except OSError as exc:
        raise InvalidSubmissionError(f"Could not read file: {exc}") from exc

    if not header:
        raise InvalidSubmissionError("File is empty")
    if len(header) < 5:
        raise InvalidSubmissionError("File is too small to be a valid PDF")
    if not header.startswith(b"%PDF-"):
        signature = header[:5].decode("ascii", errors="replace")
        raise InvalidSubmissionError(f'File does not appear to be a valid PDF (invalid file signature: "{signature}")')
    if not PDF_VERSION_PATTERN.match(header):
        raise InvalidSubmissionError("File has PDF signature but missing valid version number")
