"""Broadcast channel for job status changes."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import List, Optional

from .models import JobStatus


@dataclass(frozen=True)
class StatusEvent:
    job_id: str
    status: JobStatus
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class StatusBroadcaster:
    """
    Fan-out of ``StatusEvent`` tuples to subscriber queues.

    Events are published only after the corresponding status is persisted, and
    in the order the publishing thread persisted them. Subscribers filter by
    job id themselves.
    """

    def __init__(self) -> None:
        self._subscribers: List[queue.Queue[StatusEvent]] = []
        self._lock = Lock()

    def subscribe(self) -> "queue.Queue[StatusEvent]":
        channel: queue.Queue[StatusEvent] = queue.Queue()
        with self._lock:
            self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: "queue.Queue[StatusEvent]") -> None:
        with self._lock:
            if channel in self._subscribers:
                self._subscribers.remove(channel)

    def publish(self, job_id: str, status: JobStatus, error_message: Optional[str] = None) -> None:
        event = StatusEvent(job_id=job_id, status=status, error_message=error_message)
        with self._lock:
            subscribers = list(self._subscribers)
        for channel in subscribers:
            channel.put(event)
