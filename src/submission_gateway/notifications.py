"""
Outbound completion notifications for partner integrations.

Each partner registers a completion callback at enqueue time. The queue calls
it only after the job's terminal status is stored, so a partner that queries the
job right after receiving the notification sees the final state.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from omegaconf import DictConfig

from .models import JobType
from .registry import CompletionCallback

logger = logging.getLogger(__name__)

_URL_SETTINGS = {
    JobType.EM_SUBMISSION.value: "editorial_manager_url",
    JobType.SCHOLARONE_SUBMISSION.value: "scholarone_url",
    JobType.MAIL_SUBMISSION.value: "mail_url",
}


class PartnerNotifier:
    """
    Posts a JSON notification to one partner endpoint.

    ``url`` may contain ``{field}`` placeholders filled from the notification
    fields, e.g. ``https://em.example.org/{publication_code}/report-complete``.
    """

    def __init__(self, url: str, timeout_seconds: float = 30, client: Optional[httpx.Client] = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self.url.format(**payload)
        response = self._client.post(url, json=payload, headers={"Content-Type": "application/json"})
        response.raise_for_status()
        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        return {"status": response.status_code, "data": data}


def notifier_for(
    settings: DictConfig,
    job_type: str,
    client: Optional[httpx.Client] = None,
) -> Optional[PartnerNotifier]:
    """The configured notifier for a partner job type, or None when no URL is set."""
    key = _URL_SETTINGS.get(str(job_type))
    if key is None:
        return None
    url = settings.notifications[key]
    if not url:
        return None
    return PartnerNotifier(url, float(settings.notifications.timeout_seconds), client=client)


def build_notification_payload(
    report_id: str,
    fields: Dict[str, Any],
    error: Optional[BaseException],
) -> Dict[str, Any]:
    payload = {**fields, "report_id": report_id, "status": "Error" if error else "Success"}
    if error is not None:
        payload["error_message"] = str(error) or type(error).__name__
    return payload


def completion_notifier(
    notifier: PartnerNotifier,
    report_id: str,
    fields: Optional[Dict[str, Any]] = None,
) -> CompletionCallback:
    """
    Build an ``on_complete(error, result)`` callback reporting the outcome to a partner.

    Delivery failures are logged; the job outcome is already stored and is not
    affected by them.
    """
    base_fields = dict(fields or {})

    def on_complete(error: Optional[BaseException], result: Any) -> None:
        payload = build_notification_payload(report_id, base_fields, error)
        try:
            response = notifier.send(payload)
        except (httpx.HTTPError, KeyError) as exc:
            logger.error(f"Error sending report complete notification for {report_id}: {exc}")
            return
        logger.info(f"Report complete notification for {report_id} delivered ({response['status']})")

    return on_complete
