from __future__ import annotations

import threading
from collections.abc import Iterator

import allure
import pytest

from handoff.clients.base import MessageChunk
from handoff.jobs.handlers import (
    DROID_EXEC,
    ECHO,
    NOVA_MISSION,
    PhaseTracker,
    echo_handler,
    infer_phase,
    make_ai_execution_handler,
    mission_preview,
    register_default_handlers,
)
from handoff.jobs.store import JobStore
from handoff.jobs.worker import JobWorker
from tests.helpers import make_job

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Handlers"),
]


class FakeContext:
    def __init__(self) -> None:
        self.cancel_event = threading.Event()
        self.progress: list[tuple[int, str, str | None, dict]] = []
        self.logs: list[tuple[str, str, dict | None]] = []

    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def report_progress(self, percent, message, phase=None, **extra) -> None:
        self.progress.append((percent, message, phase, extra))

    def log(self, level, message, data=None) -> None:
        self.logs.append((str(level), message, data))


class ScriptedClient:
    def __init__(self, chunks: list[MessageChunk], progress: list[str] | None = None) -> None:
        self.chunks = chunks
        self.progress = progress or []
        self.calls: list[dict] = []

    def send_query(
        self,
        prompt,
        cwd,
        session_id=None,
        *,
        cancel_event=None,
        timeout_seconds=None,
        on_progress=None,
    ) -> Iterator[MessageChunk]:
        self.calls.append(
            {
                "prompt": prompt,
                "cwd": cwd,
                "session_id": session_id,
                "cancel_event": cancel_event,
                "timeout_seconds": timeout_seconds,
            },
        )
        for index, message in enumerate(self.progress):
            if on_progress is not None:
                on_progress(index * 60, message)
        yield from self.chunks


@pytest.mark.parametrize(
    ("text", "label", "percent"),
    [
        ("Analyzing the repository layout", "🎯 Planning", 10),
        ("🔬 RESEARCH on the API", "🔬 Researching", 20),
        ("Implementing the parser", "🏗️ Building", 40),
        ("Generating migration", "✍️ Writing code", 50),
        ("Running test suite", "🧪 Testing", 70),
        ("Validating output", "✨ Reviewing", 80),
        ("All done", "✅ Completing", 95),
    ],
)
def test_infer_phase_matches_keywords(text: str, label: str, percent: int) -> None:
    phase = infer_phase(text)
    assert phase is not None
    assert phase.label == label
    assert phase.percent == percent


def test_infer_phase_first_match_wins_and_unknown_is_none() -> None:
    assert infer_phase("planning the testing strategy").label == "🎯 Planning"
    assert infer_phase("hmm") is None


def test_phase_tracker_never_regresses_and_reports_label_changes() -> None:
    tracker = PhaseTracker()
    assert (tracker.phase, tracker.percent) == ("⚡ Starting", 5)

    assert tracker.observe("building the thing") is True
    assert tracker.percent == 40
    assert tracker.observe("creating more files") is False
    assert tracker.observe("planning next step") is True
    assert tracker.phase == "🎯 Planning"
    assert tracker.percent == 40
    assert tracker.observe("nothing interesting") is False


def test_mission_preview_truncates_long_text() -> None:
    assert mission_preview(None) == "Processing task"
    assert mission_preview("short") == "short"
    assert mission_preview("x" * 60) == "x" * 50 + "..."


def test_ai_handler_runs_prompt_and_summarizes_chunks() -> None:
    client = ScriptedClient(
        [
            MessageChunk(type="result", session_id="sess-42"),
            MessageChunk(type="assistant", content="Implementing the change"),
            MessageChunk(type="assistant", content="Done, the fix is in."),
        ],
        progress=["Processing... (1m 0s elapsed)"],
    )
    overrides: list = []

    def _factory(options):
        overrides.append(options)
        return client

    handler = make_ai_execution_handler(_factory)
    job = make_job(
        timeout_seconds=120,
        session_id="prior-session",
        payload={
            "prompt": "fix it",
            "cwd": "/repo",
            "novaAgent": "Nova",
            "nova_mission": "Fix the bug",
            "droid_options": {"model": "m1"},
        },
    )
    context = FakeContext()

    result = handler(job, context)

    assert result.success is True
    assert result.result == {
        "message": "Done, the fix is in.",
        "session_id": "sess-42",
        "chunks_count": 3,
        "assistant_messages_count": 2,
    }
    assert overrides == [{"model": "m1"}]
    call = client.calls[0]
    assert call["prompt"] == "fix it"
    assert call["cwd"] == "/repo"
    assert call["session_id"] == "prior-session"
    assert call["timeout_seconds"] == 120
    assert call["cancel_event"] is context.cancel_event

    percents = [entry[0] for entry in context.progress]
    assert percents == [5, 40, 95]
    assert context.progress[0][1] == "⚡ Starting: Fix the bug"
    assert context.progress[1][2] == "🏗️ Building"
    assert context.progress[0][3] == {"agent": "Nova", "mission": "Fix the bug"}
    assert any(message == "Processing... (1m 0s elapsed)" for _, message, _ in context.logs)


def test_ai_handler_requires_prompt_and_cwd() -> None:
    handler = make_ai_execution_handler(lambda options: ScriptedClient([]))

    result = handler(make_job(payload={"prompt": "only prompt"}), FakeContext())

    assert result.success is False
    assert result.error == "Missing required payload: prompt and cwd"


def test_ai_handler_without_assistant_output_returns_empty_message() -> None:
    client = ScriptedClient([MessageChunk(type="result", session_id="s")])
    handler = make_ai_execution_handler(lambda options: client)

    result = handler(make_job(payload={"prompt": "p", "cwd": "/"}), FakeContext())

    assert result.success is True
    assert result.result["message"] == ""


def test_ai_handler_treats_droid_failure_text_as_final_message() -> None:
    failure = "⚠️ Droid exec failed (exit 1).\n\nbad request"
    client = ScriptedClient([MessageChunk(type="assistant", content=failure)])
    handler = make_ai_execution_handler(lambda options: client)

    result = handler(make_job(payload={"prompt": "p", "cwd": "/"}), FakeContext())

    assert result.success is True
    assert result.result["message"] == failure


def test_ai_handler_reports_cancellation() -> None:
    context = FakeContext()
    context.cancel_event.set()
    client = ScriptedClient([MessageChunk(type="system", content="Droid execution cancelled.")])
    handler = make_ai_execution_handler(lambda options: client)

    result = handler(make_job(payload={"prompt": "p", "cwd": "/"}), context)

    assert result.success is False
    assert result.error == "Execution cancelled"


def test_echo_handler_returns_payload() -> None:
    context = FakeContext()

    result = echo_handler(make_job(payload={"msg": "hi"}), context)

    assert result.success is True
    assert result.result == {"msg": "hi"}
    assert context.progress[0][0] == 100


def test_register_default_handlers(store: JobStore) -> None:
    worker = JobWorker(store=store)

    register_default_handlers(worker, lambda options: ScriptedClient([]))

    assert worker.handler_types == sorted([DROID_EXEC, ECHO, NOVA_MISSION])
