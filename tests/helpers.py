"""Test doubles and polling helpers shared across test modules."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from handoff.jobs.events import EventBus, WorkerEvent
from handoff.jobs.models import JobStatus, JobView
from handoff.jobs.store import JobStore


class RecordingSink:
    """Collects delivered notifications in memory."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def send_message(self, conversation_id: str, text: str) -> None:
        with self._lock:
            self.messages.append((conversation_id, text))

    @property
    def texts(self) -> list[str]:
        with self._lock:
            return [text for _, text in self.messages]


class FailingSink:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    def send_message(self, conversation_id: str, text: str) -> None:
        self.calls += 1
        raise self.error


class EventCollector:
    """Bus listener that keeps every event it sees."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        self.events: list[WorkerEvent] = []
        self._lock = threading.Lock()
        bus.subscribe(self._record)

    def _record(self, event: WorkerEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: type) -> list[Any]:
        self.bus.flush(timeout=5)
        with self._lock:
            return [event for event in self.events if isinstance(event, event_type)]


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def wait_for_status(
    job_store: JobStore,
    job_id: str,
    status: JobStatus,
    timeout: float = 5.0,
) -> JobView:
    reached = wait_until(
        lambda: (job := job_store.get_job(job_id)) is not None and job.status == status,
        timeout=timeout,
    )
    job = job_store.get_job(job_id)
    assert reached, f"job {job_id} did not reach {status.value}: {job}"
    return job


def make_job(**overrides: Any) -> JobView:
    now = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
    values: dict[str, Any] = {
        "job_id": "0123456789abcdef",
        "job_type": "droid_exec",
        "job_name": None,
        "status": JobStatus.RUNNING,
        "priority": 50,
        "payload": {},
        "result": None,
        "error_message": None,
        "attempts": 1,
        "max_attempts": 3,
        "retry_after": None,
        "timeout_seconds": 300,
        "conversation_id": "chat-1",
        "session_id": None,
        "agent": None,
        "user_identifier": None,
        "worker_id": "worker-1",
        "metadata": {},
        "created_at": now,
        "started_at": now,
        "completed_at": None,
        "updated_at": now,
    }
    values.update(overrides)
    return JobView(**values)
