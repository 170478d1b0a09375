"""Domain models for the background job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobLogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 50
    max_attempts: int = 3
    timeout_seconds: int = 300
    conversation_id: str | None = None
    session_id: str | None = None
    agent: str | None = None
    user_identifier: str | None = None
    job_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job snapshot for worker, notifier and CLI."""

    job_id: str
    job_type: str
    job_name: str | None
    status: JobStatus
    priority: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    error_message: str | None
    attempts: int
    max_attempts: int
    retry_after: datetime | None
    timeout_seconds: int
    conversation_id: str | None
    session_id: str | None
    agent: str | None
    user_identifier: str | None
    worker_id: str | None
    metadata: dict[str, Any]
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def short_id(self) -> str:
        return self.job_id[:8]


@dataclass(slots=True)
class JobLogView:
    """Job log entry for the audit trail."""

    log_id: int
    job_id: str
    level: JobLogLevel
    message: str
    created_at: datetime
    data: dict[str, Any] | None = None


@dataclass(slots=True)
class JobResult:
    """Outcome returned by a job handler."""

    success: bool
    result: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: int = 0


@dataclass(slots=True)
class JobProgressSnapshot:
    """Coarse progress view for a job, used by status queries."""

    job_id: str
    percent: int
    message: str
    started_at: datetime


@dataclass(slots=True)
class QueueStats:
    """Job counts by status over a creation-time window."""

    window_hours: int
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "window_hours": self.window_hours,
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }
