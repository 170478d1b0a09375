"""Throttled, user-facing progress notifications for background jobs."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from handoff.jobs.events import (
    EventBus,
    JobCompleted,
    JobFailed,
    JobProgress,
    JobStarted,
    WorkerEvent,
)
from handoff.jobs.models import JobView
from handoff.jobs.sinks import NotificationSink

logger = logging.getLogger(__name__)

BAR_CELLS = 10
RECOVERY_HINT = "💡 Try breaking the task into smaller steps, or use /reset to start fresh."
RETRY_NOTE = "🔁 A retry has been scheduled automatically."


def progress_bar(percent: int) -> str:
    filled = max(0, min(BAR_CELLS, percent // 10))
    return "█" * filled + "░" * (BAR_CELLS - filled)


def format_duration(seconds: int) -> str:
    minutes, secs = divmod(max(0, seconds), 60)
    return f"{minutes}m {secs}s" if minutes > 0 else f"{secs}s"


def _job_line(job_id: str | None) -> str:
    return f"Job: `{job_id[:8]}`" if job_id else ""


def render_queued(job_id: str | None, mission: str | None) -> str:
    mission_block = f"📋 {mission}\n\n" if mission else ""
    return (
        "🔄 **Task Queued**\n\n"
        f"{mission_block}Your request is being processed in the background.\n"
        f"{_job_line(job_id)}\n\n"
        "💡 I'll notify you when it's complete."
    )


def render_started(job_id: str | None, agent: str | None, mission: str | None) -> str:
    agent_line = f"🤖 Agent: **{agent}**\n" if agent else ""
    mission_line = f"📋 {mission}\n" if mission else ""
    return (
        "⚡ **Processing Started**\n"
        f"{agent_line}{mission_line}{_job_line(job_id)}\n\n"
        "Working on your request..."
    )


def render_progress(  # noqa: PLR0913
    percent: int,
    message: str,
    *,
    show_bar: bool = True,
    phase: str | None = None,
    agent: str | None = None,
) -> str:
    bar = progress_bar(percent) if show_bar else ""
    agent_line = f"🤖 **{agent}**\n" if agent else ""
    phase_line = f"{phase}\n" if phase else ""
    return f"{agent_line}⏳ [{bar}] {percent}%\n{phase_line}{message}"


def render_completed(job_id: str | None, duration_seconds: int, agent: str | None) -> str:
    agent_line = f"🤖 {agent}\n" if agent else ""
    job_line = f"{_job_line(job_id)}\n" if job_id else ""
    return (
        "✅ **Task Complete**\n"
        f"{agent_line}{job_line}⏱️ Duration: {format_duration(duration_seconds)}"
    )


def render_failed(job_id: str | None, error: str, agent: str | None, *, will_retry: bool) -> str:
    agent_line = f"🤖 {agent}\n" if agent else ""
    job_line = f"{_job_line(job_id)}\n" if job_id else ""
    retry_line = f"\n\n{RETRY_NOTE}" if will_retry else ""
    return (
        "❌ **Task Failed**\n"
        f"{agent_line}{job_line}Error: {error}{retry_line}\n\n"
        f"{RECOVERY_HINT}"
    )


@dataclass(slots=True)
class _ProgressState:
    delivered_at: float
    percent: int


class ProgressNotifier:
    """Turns worker events into chat messages for the job's conversation.

    Progress is throttled per job: an update goes out when
    ``min_progress_interval_seconds`` passed since the last delivered one, or
    when the percent advanced by at least ``percent_threshold``. Delivery
    errors are logged and dropped.
    """

    def __init__(  # noqa: PLR0913
        self,
        sink: NotificationSink,
        *,
        min_progress_interval_seconds: float = 30.0,
        percent_threshold: int = 10,
        show_progress_bar: bool = True,
        show_job_id: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.min_progress_interval_seconds = min_progress_interval_seconds
        self.percent_threshold = percent_threshold
        self.show_progress_bar = show_progress_bar
        self.show_job_id = show_job_id
        self._clock = clock
        self._progress: dict[str, _ProgressState] = {}
        self._lock = threading.Lock()
        self._unsubscribe: Callable[[], None] | None = None

    def attach(self, bus: EventBus) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = bus.subscribe(self.handle_event)
        logger.debug("Progress notifier attached")

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle_event(self, event: WorkerEvent) -> None:
        if isinstance(event, JobStarted):
            self.on_job_started(event)
        elif isinstance(event, JobProgress):
            self.on_job_progress(event)
        elif isinstance(event, JobCompleted):
            self.on_job_completed(event)
        elif isinstance(event, JobFailed):
            self.on_job_failed(event)

    def notify_queued(
        self,
        conversation_id: str,
        job_id: str,
        job_type: str,
        mission: str | None = None,
    ) -> None:
        logger.debug("Job %s (%s) queued for %s", job_id, job_type, conversation_id)
        text = render_queued(self._shown_id(job_id), mission)
        self._send_safe(conversation_id, text)

    def on_job_started(self, event: JobStarted) -> None:
        job = event.job
        if not job.conversation_id:
            return
        text = render_started(
            self._shown_id(job.job_id),
            _agent_of(job),
            _payload_text(job.payload, "nova_mission", "novaMission"),
        )
        self._send_safe(job.conversation_id, text)

    def on_job_progress(self, event: JobProgress) -> None:
        job = event.job
        if not job.conversation_id:
            return
        now = self._clock()
        with self._lock:
            state = self._progress.get(job.job_id)
            if state is not None:
                recent = now - state.delivered_at < self.min_progress_interval_seconds
                small_step = event.percent - state.percent < self.percent_threshold
                if recent and small_step:
                    return
            self._progress[job.job_id] = _ProgressState(delivered_at=now, percent=event.percent)

        text = render_progress(
            event.percent,
            event.message,
            show_bar=self.show_progress_bar,
            phase=event.phase,
            agent=event.agent,
        )
        self._send_safe(job.conversation_id, text)

    def on_job_completed(self, event: JobCompleted) -> None:
        job = event.job
        self._forget(job.job_id)
        if not job.conversation_id:
            return
        message = (event.result or {}).get("message")
        if isinstance(message, str) and message:
            self._send_safe(job.conversation_id, message)
            return
        text = render_completed(
            self._shown_id(job.job_id),
            round(event.duration_ms / 1000),
            _agent_of(job),
        )
        self._send_safe(job.conversation_id, text)

    def on_job_failed(self, event: JobFailed) -> None:
        job = event.job
        self._forget(job.job_id)
        if not job.conversation_id:
            return
        text = render_failed(
            self._shown_id(job.job_id),
            event.error,
            _agent_of(job),
            will_retry=event.will_retry,
        )
        self._send_safe(job.conversation_id, text)

    def tracked_jobs(self) -> list[str]:
        with self._lock:
            return sorted(self._progress)

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._progress.pop(job_id, None)

    def _shown_id(self, job_id: str) -> str | None:
        return job_id if self.show_job_id else None

    def _send_safe(self, conversation_id: str, text: str) -> None:
        try:
            self.sink.send_message(conversation_id, text)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to deliver notification to %s: %s", conversation_id, error)


def _payload_text(payload: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _agent_of(job: JobView) -> str | None:
    return (
        job.agent
        or _payload_text(job.metadata, "nova_agent", "novaAgent")
        or _payload_text(job.payload, "nova_agent", "novaAgent")
    )
