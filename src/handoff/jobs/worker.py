"""Concurrency-bounded worker that claims and executes queued jobs."""

from __future__ import annotations

import logging
import os
import signal
import socket
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from handoff.jobs.errors import (
    HandlerExecutionError,
    HandlerNotFoundError,
    JobsError,
    JobTimeoutError,
    StoreError,
)
from handoff.jobs.events import (
    EventBus,
    JobCompleted,
    JobFailed,
    JobProgress,
    JobStarted,
    WorkerStarted,
    WorkerStopped,
)
from handoff.jobs.models import (
    JobLogLevel,
    JobProgressSnapshot,
    JobResult,
    JobStatus,
    JobView,
)
from handoff.jobs.store import JobStore
from handoff.storage.common import utc_now

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "worker shutdown"

_STATUS_PROGRESS = {
    JobStatus.PENDING: (0, "Pending"),
    JobStatus.RUNNING: (25, "Processing..."),
    JobStatus.COMPLETED: (100, "Completed"),
    JobStatus.FAILED: (0, "Failed"),
}

Handler = Callable[[JobView, "JobContext"], JobResult]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    discarded: int = 0
    idle_polls: int = 0


@dataclass(slots=True)
class _Execution:
    job: JobView
    cancel_event: threading.Event
    started_at: datetime
    started_monotonic: float
    percent: int = 0
    message: str = "Starting"
    finalized: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)


class JobContext:
    """Handle given to a handler for cancellation, progress and audit logging."""

    def __init__(self, *, worker: JobWorker, execution: _Execution) -> None:
        self._worker = worker
        self._execution = execution

    @property
    def job(self) -> JobView:
        return self._execution.job

    @property
    def cancel_event(self) -> threading.Event:
        return self._execution.cancel_event

    def is_cancelled(self) -> bool:
        return self._execution.cancel_event.is_set()

    def report_progress(  # noqa: PLR0913
        self,
        percent: int,
        message: str,
        phase: str | None = None,
        *,
        agent: str | None = None,
        mission: str | None = None,
    ) -> None:
        self._worker._publish_progress(  # noqa: SLF001
            self._execution,
            percent=percent,
            message=message,
            phase=phase,
            agent=agent,
            mission=mission,
        )

    def log(
        self,
        level: JobLogLevel | str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        self._worker._append_log(self._execution.job.job_id, level, message, data)  # noqa: SLF001


class JobWorker:
    """Claims pending jobs on a fixed poll interval and runs each in its own thread.

    At most ``max_concurrent`` executions are active at once. Each execution has
    a cancel event; handlers are expected to check it at their blocking points.
    Outcomes are written with the claimed attempt number, so results arriving
    after a timeout or a shutdown are discarded by the store.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        bus: EventBus | None = None,
        worker_id: str | None = None,
        poll_interval_seconds: float = 5.0,
        max_concurrent: int = 3,
        job_types: tuple[str, ...] | list[str] = (),
        grace_seconds: float = 30.0,
        progress_interval_seconds: float = 30.0,
        stale_after_seconds: int = 0,
        verbose: bool = False,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.store = store
        self.bus = bus or EventBus()
        self.worker_id = worker_id or _default_worker_id()
        self.poll_interval_seconds = poll_interval_seconds
        self.max_concurrent = max_concurrent
        self.job_types = list(job_types)
        self.grace_seconds = grace_seconds
        self.progress_interval_seconds = progress_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.verbose = verbose

        self._handlers: dict[str, Handler] = {}
        self._active: dict[str, _Execution] = {}
        self._active_cond = threading.Condition()
        self._state_lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._poll_thread: threading.Thread | None = None
        self._summary = WorkerRunSummary()
        self._summary_lock = threading.Lock()
        self._consecutive_idle = 0

    def register_handler(self, job_type: str, handler: Handler) -> None:
        """Register (or replace) the handler for a job type."""

        self._handlers[job_type] = handler

    @property
    def handler_types(self) -> list[str]:
        return sorted(self._handlers)

    def start(self) -> None:
        """Start the poll loop; a no-op when already running."""

        with self._state_lock:
            if self._running:
                return
            self._running = True
            self._stop_event.clear()
            self._consecutive_idle = 0
            self._poll_thread = threading.Thread(
                target=self._poll_loop,
                name=f"job-worker-{self.worker_id}",
                daemon=True,
            )
        logger.info(
            "Worker %s started (max_concurrent=%s, poll_interval=%ss, types=%s)",
            self.worker_id,
            self.max_concurrent,
            self.poll_interval_seconds,
            ",".join(self.job_types) or "*",
        )
        self.bus.publish(WorkerStarted(worker_id=self.worker_id))
        self._poll_thread.start()

    def stop(self, grace_seconds: float | None = None) -> None:
        """Stop polling, wait for executions, then fail whatever is left.

        Returns within ``grace_seconds`` plus a bounded overhead. Executions
        still active after the grace period get their cancel event set and are
        recorded as permanent failures with reason ``worker shutdown``.
        """

        with self._state_lock:
            if not self._running:
                return
            self._running = False
            poll_thread = self._poll_thread
            self._poll_thread = None
        self._stop_event.set()
        if poll_thread is not None and poll_thread is not threading.current_thread():
            poll_thread.join(timeout=max(1.0, self.poll_interval_seconds))

        grace = self.grace_seconds if grace_seconds is None else grace_seconds
        with self._active_cond:
            drained = self._active_cond.wait_for(lambda: not self._active, timeout=grace)
            leftovers = [] if drained else list(self._active.values())

        for execution in leftovers:
            logger.warning(
                "Job %s still running after %ss grace period, abandoning",
                execution.job.job_id,
                grace,
            )
            execution.cancel_event.set()
            self._finalize(execution, error=JobsError(SHUTDOWN_REASON, retryable=False))
            self._release(execution)

        logger.info("Worker %s stopped", self.worker_id)
        self.bus.publish(WorkerStopped(worker_id=self.worker_id))

    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    def get_active_job_count(self) -> int:
        with self._active_cond:
            return len(self._active)

    def get_job_progress(self, job_id: str) -> JobProgressSnapshot | None:
        """Live progress for jobs running here, a status-derived estimate otherwise."""

        with self._active_cond:
            execution = self._active.get(job_id)
        if execution is not None:
            return JobProgressSnapshot(
                job_id=job_id,
                percent=execution.percent,
                message=execution.message,
                started_at=execution.started_at,
            )

        job = self.store.get_job(job_id)
        if job is None:
            return None
        percent, message = _STATUS_PROGRESS[job.status]
        return JobProgressSnapshot(
            job_id=job_id,
            percent=percent,
            message=message,
            started_at=job.started_at or job.created_at,
        )

    def update_progress(self, job_id: str, percent: int, message: str) -> bool:
        """Report progress for an active job from outside its handler."""

        with self._active_cond:
            execution = self._active.get(job_id)
        if execution is None:
            return False
        self._append_log(job_id, JobLogLevel.INFO, message, {"percent": percent})
        self._publish_progress(execution, percent=percent, message=message)
        return True

    def summary(self) -> WorkerRunSummary:
        with self._summary_lock:
            return WorkerRunSummary(
                processed=self._summary.processed,
                succeeded=self._summary.succeeded,
                failed=self._summary.failed,
                retried=self._summary.retried,
                timeouts=self._summary.timeouts,
                discarded=self._summary.discarded,
                idle_polls=self._summary.idle_polls,
            )

    def run_until_idle(self, *, max_idle_polls: int | None = 1) -> WorkerRunSummary:
        """Run in the foreground until the queue stays idle or a signal arrives.

        Args:
            max_idle_polls: Consecutive polls with nothing claimed and nothing
                running before exiting. ``None`` keeps running until SIGINT or
                SIGTERM.
        """

        interrupted = threading.Event()
        with self._signal_handlers(interrupted):
            self.start()
            try:
                while not interrupted.is_set() and self.is_running():
                    if max_idle_polls is not None:
                        with self._summary_lock:
                            idle = self._consecutive_idle
                        if idle >= max_idle_polls:
                            break
                    interrupted.wait(0.05)
            finally:
                self.stop()
        return self.summary()

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._tick()
            except StoreError as error:
                logger.warning("Worker %s poll failed: %s", self.worker_id, error)
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s poll crashed, continuing", self.worker_id)
            self._stop_event.wait(self.poll_interval_seconds)

    def _tick(self) -> None:
        self._check_external_cancellations()
        if self.stale_after_seconds > 0:
            self.store.timeout_stale_jobs(timedelta(seconds=self.stale_after_seconds))

        claimed = False
        if self.get_active_job_count() < self.max_concurrent and not self._stop_event.is_set():
            job = self.store.claim_next(self.worker_id, self.job_types or None)
            if job is not None:
                claimed = True
                self._launch(job)

        busy = claimed or self.get_active_job_count() > 0
        with self._summary_lock:
            if busy:
                self._consecutive_idle = 0
            else:
                self._consecutive_idle += 1
                self._summary.idle_polls += 1

    def _check_external_cancellations(self) -> None:
        with self._active_cond:
            executions = list(self._active.values())
        for execution in executions:
            if execution.cancel_event.is_set():
                continue
            current = self.store.get_job(execution.job.job_id)
            if (
                current is None
                or current.status != JobStatus.RUNNING
                or current.attempts != execution.job.attempts
            ):
                logger.info("Job %s no longer running in store, cancelling", execution.job.job_id)
                execution.cancel_event.set()

    def _launch(self, job: JobView) -> None:
        execution = _Execution(
            job=job,
            cancel_event=threading.Event(),
            started_at=job.started_at or utc_now(),
            started_monotonic=time.monotonic(),
        )
        with self._summary_lock:
            self._summary.processed += 1

        handler = self._handlers.get(job.job_type)
        if handler is None:
            logger.error("No handler for job %s type=%s", job.job_id, job.job_type)
            self.bus.publish(JobStarted(job=job))
            self._finalize(execution, error=HandlerNotFoundError(job.job_type))
            return

        with self._active_cond:
            stopping = self._stop_event.is_set()
            if not stopping:
                self._active[job.job_id] = execution
        if stopping:
            logger.warning("Job %s claimed while worker is stopping, failing it", job.job_id)
            self._finalize(execution, error=JobsError(SHUTDOWN_REASON, retryable=False))
            return
        logger.info(
            "Job %s started type=%s attempt=%s/%s",
            job.job_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
        )
        self._append_log(
            job.job_id,
            JobLogLevel.INFO,
            "Job started",
            {"worker_id": self.worker_id, "attempt": job.attempts},
        )
        self.bus.publish(JobStarted(job=job))
        threading.Thread(
            target=self._supervise,
            args=(execution, handler),
            name=f"job-{job.short_id}",
            daemon=True,
        ).start()

    def _supervise(self, execution: _Execution, handler: Handler) -> None:
        job = execution.job
        outcome: list[JobResult | BaseException] = []

        def _invoke() -> None:
            try:
                outcome.append(handler(job, JobContext(worker=self, execution=execution)))
            except Exception as error:  # noqa: BLE001
                logger.exception("Handler for job %s raised", job.job_id)
                outcome.append(error)

        runner = threading.Thread(target=_invoke, name=f"job-{job.short_id}-run", daemon=True)
        runner.start()
        try:
            timed_out = self._wait_for_runner(execution, runner)
            if timed_out:
                execution.cancel_event.set()
                with self._summary_lock:
                    self._summary.timeouts += 1
                logger.warning("Job %s timed out after %ss", job.job_id, job.timeout_seconds)
                self._finalize(execution, error=JobTimeoutError(job.timeout_seconds))
                return
            if not outcome:
                return
            self._finalize_outcome(execution, outcome[0])
        finally:
            self._release(execution)

    def _wait_for_runner(self, execution: _Execution, runner: threading.Thread) -> bool:
        timeout = execution.job.timeout_seconds
        deadline = execution.started_monotonic + timeout if timeout > 0 else None
        heartbeat = self.progress_interval_seconds if self.progress_interval_seconds > 0 else None
        while True:
            wait: float | None = heartbeat
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
                wait = remaining if wait is None else min(wait, remaining)
            runner.join(timeout=wait)
            if not runner.is_alive():
                return False
            if execution.finalized:
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return True
            elapsed = int(time.monotonic() - execution.started_monotonic)
            self._publish_progress(
                execution,
                percent=execution.percent,
                message=f"{execution.message} ({elapsed // 60}m {elapsed % 60}s elapsed)",
                heartbeat=True,
            )

    def _finalize_outcome(self, execution: _Execution, outcome: JobResult | BaseException) -> None:
        job = execution.job
        if isinstance(outcome, BaseException):
            message = str(outcome) or type(outcome).__name__
            self._finalize(execution, error=HandlerExecutionError(message))
            return
        if not isinstance(outcome, JobResult):
            self._finalize(
                execution,
                error=HandlerExecutionError(
                    f"Handler returned {type(outcome).__name__}, expected JobResult",
                ),
            )
            return
        if not outcome.duration_ms:
            outcome.duration_ms = int((time.monotonic() - execution.started_monotonic) * 1000)
        if outcome.success:
            self._finalize(execution, result=outcome)
            return
        logger.info("Job %s handler reported failure: %s", job.job_id, outcome.error)
        self._finalize(
            execution,
            error=HandlerExecutionError(outcome.error or "Handler reported failure"),
        )

    def _finalize(
        self,
        execution: _Execution,
        *,
        result: JobResult | None = None,
        error: JobsError | None = None,
    ) -> None:
        with execution.lock:
            if execution.finalized:
                return
            execution.finalized = True

        job = execution.job
        try:
            if error is None:
                payload = result.result if result is not None else None
                if not self.store.complete(job.job_id, payload, attempt=job.attempts):
                    self._discard(job, "completion")
                    return
                with self._summary_lock:
                    self._summary.succeeded += 1
                duration_ms = result.duration_ms if result is not None else 0
                logger.info("Job %s completed in %sms", job.job_id, duration_ms)
                self._append_log(job.job_id, JobLogLevel.INFO, "Job completed", payload)
                self.bus.publish(JobCompleted(job=job, result=payload, duration_ms=duration_ms))
                return

            updated = self.store.fail(
                job.job_id,
                str(error),
                error.retryable,
                attempt=job.attempts,
            )
            if updated is None:
                self._discard(job, "failure")
                return
            will_retry = updated.status == JobStatus.PENDING
            with self._summary_lock:
                if will_retry:
                    self._summary.retried += 1
                else:
                    self._summary.failed += 1
            self._append_log(
                job.job_id,
                JobLogLevel.WARN if will_retry else JobLogLevel.ERROR,
                str(error),
                {"will_retry": will_retry, "attempt": job.attempts},
            )
            self.bus.publish(JobFailed(job=job, error=str(error), will_retry=will_retry))
        except StoreError:
            logger.exception("Failed to record outcome for job %s", job.job_id)

    def _discard(self, job: JobView, kind: str) -> None:
        with self._summary_lock:
            self._summary.discarded += 1
        logger.warning(
            "Discarded stale %s for job %s attempt=%s",
            kind,
            job.job_id,
            job.attempts,
        )

    def _release(self, execution: _Execution) -> None:
        with self._active_cond:
            if self._active.get(execution.job.job_id) is execution:
                del self._active[execution.job.job_id]
            self._active_cond.notify_all()

    def _publish_progress(  # noqa: PLR0913
        self,
        execution: _Execution,
        *,
        percent: int,
        message: str,
        phase: str | None = None,
        agent: str | None = None,
        mission: str | None = None,
        heartbeat: bool = False,
    ) -> None:
        with execution.lock:
            if execution.finalized:
                return
            execution.percent = max(execution.percent, min(100, max(0, int(percent))))
            if not heartbeat:
                execution.message = message
            current = execution.percent
        if self.verbose:
            logger.info("Job %s progress %s%%: %s", execution.job.job_id, current, message)
        self.bus.publish(
            JobProgress(
                job=execution.job,
                percent=current,
                message=message,
                phase=phase,
                agent=agent,
                mission=mission,
            ),
        )

    def _append_log(
        self,
        job_id: str,
        level: JobLogLevel | str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        try:
            self.store.append_log(job_id, level, message, data)
        except Exception as error:  # noqa: BLE001
            logger.debug("Job log write failed for %s: %s", job_id, error)

    @contextmanager
    def _signal_handlers(self, interrupted: threading.Event) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Worker %s received %s, shutting down", self.worker_id, name)
            interrupted.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}"
