"""Client for the downstream document analysis service."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from omegaconf import DictConfig

from .errors import AnalysisError

logger = logging.getLogger(__name__)


class AnalysisClient:
    """
    Submits one document to the analysis service and returns its JSON result.

    The service contract is treated as opaque: the PDF goes up as the ``file``
    part of a multipart POST, options as a JSON ``options`` field, and any 2xx
    JSON body is the result. Timeouts are enforced here, not by the queue.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 600,
        client: Optional[httpx.Client] = None,
        version: Optional[str] = None,
    ) -> None:
        self.url = url
        self.version = version or None
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=10.0))

    @classmethod
    def from_settings(cls, settings: DictConfig, client: Optional[httpx.Client] = None) -> "AnalysisClient":
        analysis = settings.analysis
        return cls(
            url=analysis.url,
            timeout_seconds=float(analysis.timeout_seconds),
            client=client,
            version=analysis.default_version or None,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def describe_request(self, filename: str, options: Dict[str, Any]) -> Dict[str, Any]:
        return {"url": self.url, "filename": filename, "version": self.version, "options": options}

    def submit(self, file_path: Path | str, filename: str, options: Dict[str, Any]) -> Dict[str, Any]:
        """
        Raises:
            AnalysisError: On transport errors, non-2xx responses or non-JSON bodies
        """
        data = {"options": json.dumps(options)}
        if self.version:
            data["version"] = self.version

        try:
            with open(file_path, "rb") as handle:
                response = self._client.post(
                    self.url,
                    files={"file": (filename, handle, "application/pdf")},
                    data=data,
                )
        except httpx.HTTPError as exc:
            raise AnalysisError(f"Analysis service request failed: {exc}") from exc

        if response.status_code >= 400:
            raise AnalysisError(f"Analysis service returned status {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise AnalysisError("Analysis service returned a non-JSON response") from exc

        logger.info(f"Analysis service processed {filename} with status {response.status_code}")
        return body if isinstance(body, dict) else {"data": body}
