"""Error taxonomy for the job subsystem."""

from __future__ import annotations


class JobsError(RuntimeError):
    """Base error with a retryability hint."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ValidationError(JobsError, ValueError):
    """Enqueue input rejected before anything is persisted."""


class ClaimConflictError(JobsError):
    """Another claimer won the race for the selected row."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} was claimed concurrently.", retryable=True)
        self.job_id = job_id


class HandlerNotFoundError(JobsError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"No handler registered for job type: {job_type}", retryable=False)
        self.job_type = job_type


class HandlerExecutionError(JobsError):
    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class JobTimeoutError(JobsError):
    def __init__(self, timeout_seconds: int) -> None:
        super().__init__(f"Job timed out after {timeout_seconds}s", retryable=True)
        self.timeout_seconds = timeout_seconds


class TransportError(JobsError):
    """Notification delivery failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class StoreError(JobsError):
    """Persistence round-trip failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)
