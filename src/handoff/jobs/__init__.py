"""Durable background job queue, worker and progress notifications."""

from handoff.jobs.errors import (
    ClaimConflictError,
    HandlerExecutionError,
    HandlerNotFoundError,
    JobsError,
    JobTimeoutError,
    StoreError,
    TransportError,
    ValidationError,
)
from handoff.jobs.models import (
    JobCreate,
    JobLogLevel,
    JobLogView,
    JobProgressSnapshot,
    JobResult,
    JobStatus,
    JobView,
    QueueStats,
)

__all__ = [
    "ClaimConflictError",
    "HandlerExecutionError",
    "HandlerNotFoundError",
    "JobCreate",
    "JobLogLevel",
    "JobLogView",
    "JobProgressSnapshot",
    "JobResult",
    "JobStatus",
    "JobTimeoutError",
    "JobView",
    "JobsError",
    "QueueStats",
    "StoreError",
    "TransportError",
    "ValidationError",
]
