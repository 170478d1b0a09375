"""Controllers for job queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from handoff.config import Settings
from handoff.jobs.errors import ValidationError
from handoff.jobs.models import JobCreate, JobStatus, JobView
from handoff.jobs.sinks import NotificationSink
from handoff.jobs.store import JobStore
from handoff.runtime import HandoffRuntime


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    job_type: str
    prompt: str | None
    cwd: str | None
    payload_json: str | None
    priority: int
    max_attempts: int
    timeout_seconds: int
    conversation_id: str | None = None
    session_id: str | None = None
    agent: str | None = None
    mission: str | None = None
    job_name: str | None = None


@dataclass(slots=True)
class JobWorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_idle_polls: int = 1
    max_concurrent: int | None = None
    job_types: tuple[str, ...] = ()


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    conversation_id: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobLogsCommand:
    db_path: Path | None
    job_id: str
    limit: int | None = None


@dataclass(slots=True)
class JobStatsCommand:
    """CLI input for queue health stats."""

    db_path: Path | None
    hours: int
    output_format: str = "table"


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    job_id: str


class JobsCliController:
    """Coordinates queue, worker, and inspection CLI operations."""

    def __init__(self, *, sink: NotificationSink | None = None) -> None:
        self.sink = sink

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        payload = _build_payload(command)
        settings = Settings.from_env(db_path=command.db_path)
        runtime = HandoffRuntime.build(settings, sink=self.sink)
        try:
            job = runtime.hand_off(
                JobCreate(
                    job_type=command.job_type,
                    payload=payload,
                    priority=command.priority,
                    max_attempts=command.max_attempts,
                    timeout_seconds=command.timeout_seconds,
                    conversation_id=command.conversation_id,
                    session_id=command.session_id,
                    agent=command.agent,
                    job_name=command.job_name,
                ),
                mission=command.mission,
            )
        finally:
            runtime.close()
        return [
            f"Job enqueued: job_id={job.job_id} type={job.job_type} "
            f"status={job.status.value} priority={job.priority}",
        ]

    def run_worker(self, command: JobWorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        worker_settings = settings.worker
        if command.max_concurrent is not None:
            worker_settings = replace(worker_settings, max_concurrent=command.max_concurrent)
        if command.job_types:
            worker_settings = replace(worker_settings, job_types=command.job_types)
        settings = replace(settings, worker=worker_settings)

        runtime = HandoffRuntime.build(settings, sink=self.sink)
        try:
            summary = runtime.worker.run_until_idle(
                max_idle_polls=max(1, command.max_idle_polls) if command.once else None,
            )
            runtime.bus.flush(timeout=5.0)
        finally:
            runtime.close()

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"timeouts={summary.timeouts} discarded={summary.discarded} "
            f"idle_polls={summary.idle_polls}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            jobs = store.list_jobs(
                status=status_filter,
                conversation_id=command.conversation_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type} status={job.status.value} "
                f"priority={job.priority} attempts={job.attempts}/{job.max_attempts} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            job = store.get_job(command.job_id)
            logs = store.list_logs(command.job_id) if job is not None else []
        if job is None:
            return [f"Job not found: {command.job_id}"]

        return [
            f"Job: {job.job_id}",
            f"Type: {job.job_type}",
            f"Name: {job.job_name or '-'}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Timeout: {job.timeout_seconds or 'unbounded'}",
            f"Retry after: {_iso(job.retry_after)}",
            f"Conversation: {job.conversation_id or '-'}",
            f"Agent: {job.agent or '-'}",
            f"Worker: {job.worker_id or '-'}",
            f"Created: {_iso(job.created_at)}",
            f"Started: {_iso(job.started_at)}",
            f"Completed: {_iso(job.completed_at)}",
            f"Error: {job.error_message or '-'}",
            f"Result: {_result_preview(job)}",
            f"Logs: {len(logs)}",
        ]

    def job_logs(self, command: JobLogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            logs = store.list_logs(command.job_id, limit=command.limit)
        lines = [f"Logs for {command.job_id}: {len(logs)}"]
        for entry in logs:
            data = f" {json.dumps(entry.data, ensure_ascii=False)}" if entry.data else ""
            lines.append(
                f"  {entry.created_at.isoformat()} [{entry.level.value}] {entry.message}{data}",
            )
        return lines

    def stats(self, command: JobStatsCommand) -> list[str]:
        """Show queue health over a rolling window."""

        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            stats = store.get_queue_stats(command.hours)

        if command.output_format == "json":
            return [json.dumps(stats.to_dict(), indent=2)]
        return [
            f"Queue stats (window={stats.window_hours}h): "
            f"pending={stats.pending} running={stats.running} "
            f"completed={stats.completed} failed={stats.failed} total={stats.total}",
        ]

    def retry_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            job = store.retry(command.job_id)
        return [f"Job re-queued: {command.job_id} -> {job.job_id} attempts=0/{job.max_attempts}"]

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            store.cancel(command.job_id)
        return [f"Job canceled: {command.job_id}"]


def _build_payload(command: JobEnqueueCommand) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if command.payload_json:
        try:
            loaded = json.loads(command.payload_json)
        except json.JSONDecodeError as error:
            raise ValidationError(f"--payload is not valid JSON: {error.msg}") from error
        if not isinstance(loaded, dict):
            raise ValidationError("--payload must be a JSON object")
        payload.update(loaded)
    if command.prompt is not None:
        payload["prompt"] = command.prompt
    if command.cwd is not None:
        payload["cwd"] = command.cwd
    if command.mission is not None:
        payload["nova_mission"] = command.mission
    if command.agent is not None:
        payload["nova_agent"] = command.agent
    return payload


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.lower())
    except ValueError as error:
        raise ValidationError(f"Unsupported job status: {value!r}") from error


def _iso(value: Any) -> str:
    return value.isoformat() if value is not None else "-"


def _result_preview(job: JobView, max_chars: int = 200) -> str:
    if job.result is None:
        return "-"
    text = json.dumps(job.result, ensure_ascii=False)
    return text if len(text) <= max_chars else text[:max_chars] + "..."


@contextmanager
def _store(settings: Settings) -> Iterator[JobStore]:
    store = JobStore(
        settings.db_path,
        busy_timeout_ms=settings.worker.busy_timeout_ms,
        retry_base_seconds=settings.worker.retry_base_seconds,
        retry_max_seconds=settings.worker.retry_max_seconds,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
