"""Built-in job handlers."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from handoff.clients.base import AssistantClient, MessageChunk
from handoff.jobs.models import JobLogLevel, JobResult, JobView
from handoff.jobs.worker import JobContext, JobWorker

logger = logging.getLogger(__name__)

DROID_EXEC = "droid_exec"
NOVA_MISSION = "nova_mission"
ECHO = "echo"

MISSION_PREVIEW_CHARS = 50

ClientFactory = Callable[[Mapping[str, Any] | None], AssistantClient]


@dataclass(slots=True, frozen=True)
class Phase:
    label: str
    percent: int


STARTING = Phase("⚡ Starting", 5)

_PHASE_PATTERNS: tuple[tuple[re.Pattern[str], Phase], ...] = (
    (
        re.compile(r"🎯\s*PLANNING|planning|analyzing|understanding", re.IGNORECASE),
        Phase("🎯 Planning", 10),
    ),
    (
        re.compile(r"🔬\s*RESEARCH|researching|investigating|exploring", re.IGNORECASE),
        Phase("🔬 Researching", 20),
    ),
    (
        re.compile(r"🏗️\s*BUILD|building|creating|implementing|developing", re.IGNORECASE),
        Phase("🏗️ Building", 40),
    ),
    (re.compile(r"writing|coding|generating", re.IGNORECASE), Phase("✍️ Writing code", 50)),
    (re.compile(r"testing|test|verifying", re.IGNORECASE), Phase("🧪 Testing", 70)),
    (
        re.compile(r"✨\s*REVIEW|reviewing|checking|validating", re.IGNORECASE),
        Phase("✨ Reviewing", 80),
    ),
    (
        re.compile(r"✅\s*COMPLETE|complete|done|finished|success", re.IGNORECASE),
        Phase("✅ Completing", 95),
    ),
)


def infer_phase(text: str) -> Phase | None:
    """First phase whose keywords appear in the text."""

    for pattern, phase in _PHASE_PATTERNS:
        if pattern.search(text):
            return phase
    return None


class PhaseTracker:
    """Per-job phase state: percent never regresses, emits only on label change."""

    def __init__(self) -> None:
        self.phase = STARTING.label
        self.percent = STARTING.percent

    def observe(self, text: str) -> bool:
        """Feed one message; True when the phase label changed."""

        phase = infer_phase(text)
        if phase is None or phase.label == self.phase:
            return False
        self.phase = phase.label
        self.percent = max(self.percent, phase.percent)
        return True


def mission_preview(mission: str | None) -> str:
    if not mission:
        return "Processing task"
    if len(mission) > MISSION_PREVIEW_CHARS:
        return mission[:MISSION_PREVIEW_CHARS] + "..."
    return mission


def _payload_str(payload: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def make_ai_execution_handler(
    client_factory: ClientFactory,
) -> Callable[[JobView, JobContext], JobResult]:
    """Build the handler that runs a prompt through the assistant client."""

    def _handle(job: JobView, context: JobContext) -> JobResult:
        started = time.monotonic()

        def _elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        payload = job.payload
        prompt = _payload_str(payload, "prompt")
        cwd = _payload_str(payload, "cwd")
        if prompt is None or cwd is None:
            return JobResult(
                success=False,
                error="Missing required payload: prompt and cwd",
                duration_ms=_elapsed_ms(),
            )

        session_id = _payload_str(payload, "session_id", "sessionId") or job.session_id
        agent = _payload_str(payload, "nova_agent", "novaAgent") or job.agent or "Agent"
        mission = mission_preview(_payload_str(payload, "nova_mission", "novaMission"))
        options = payload.get("droid_options", payload.get("droidOptions"))
        client = client_factory(options if isinstance(options, Mapping) else None)

        context.log(
            JobLogLevel.INFO,
            "Starting assistant execution",
            {"prompt_length": len(prompt), "cwd": cwd, "agent": agent, "mission": mission},
        )

        tracker = PhaseTracker()

        def _emit() -> None:
            context.report_progress(
                tracker.percent,
                f"{tracker.phase}: {mission}",
                tracker.phase,
                agent=agent,
                mission=mission,
            )

        def _on_progress(elapsed_seconds: int, raw_message: str) -> None:
            if tracker.observe(raw_message):
                _emit()
            context.log(
                JobLogLevel.INFO,
                raw_message,
                {
                    "elapsed_seconds": elapsed_seconds,
                    "phase": tracker.phase,
                    "percent": tracker.percent,
                },
            )

        _emit()

        chunks: list[MessageChunk] = []
        result_session_id: str | None = None
        for chunk in client.send_query(
            prompt,
            cwd,
            session_id,
            cancel_event=context.cancel_event,
            timeout_seconds=job.timeout_seconds,
            on_progress=_on_progress,
        ):
            chunks.append(chunk)
            if chunk.type == "result" and chunk.session_id:
                result_session_id = chunk.session_id
            if chunk.type == "assistant" and chunk.content and tracker.observe(chunk.content):
                _emit()
            if context.is_cancelled():
                break

        if context.is_cancelled():
            return JobResult(success=False, error="Execution cancelled", duration_ms=_elapsed_ms())

        assistant_messages = [c.content for c in chunks if c.type == "assistant" and c.content]
        system_messages = [c.content for c in chunks if c.type == "system" and c.content]
        final_message = (
            assistant_messages[-1] if assistant_messages else "\n\n".join(system_messages)
        )
        has_error = any(_is_error_chunk(chunk) for chunk in chunks)
        if has_error and not final_message:
            return JobResult(
                success=False,
                error="Assistant execution failed - no valid response",
                duration_ms=_elapsed_ms(),
            )

        return JobResult(
            success=True,
            result={
                "message": final_message,
                "session_id": result_session_id,
                "chunks_count": len(chunks),
                "assistant_messages_count": len(assistant_messages),
            },
            duration_ms=_elapsed_ms(),
        )

    return _handle


def _is_error_chunk(chunk: MessageChunk) -> bool:
    content = chunk.content or ""
    return (
        chunk.type == "assistant"
        and "⚠️" in content
        and ("failed" in content or "error" in content)
    )


def echo_handler(job: JobView, context: JobContext) -> JobResult:
    """Return the payload unchanged; handy for smoke-testing a worker."""

    context.report_progress(100, "Echoed payload")
    return JobResult(success=True, result=dict(job.payload))


def register_default_handlers(worker: JobWorker, client_factory: ClientFactory) -> None:
    handler = make_ai_execution_handler(client_factory)
    worker.register_handler(DROID_EXEC, handler)
    worker.register_handler(NOVA_MISSION, handler)
    worker.register_handler(ECHO, echo_handler)
    logger.debug("Registered handlers: %s", ", ".join(worker.handler_types))
