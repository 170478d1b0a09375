from __future__ import annotations

import allure
import pytest

from handoff.jobs.errors import TransportError
from handoff.jobs.events import EventBus, JobCompleted, JobFailed, JobProgress, JobStarted
from handoff.jobs.notifier import (
    RECOVERY_HINT,
    RETRY_NOTE,
    ProgressNotifier,
    format_duration,
    progress_bar,
    render_progress,
)
from tests.helpers import FailingSink, RecordingSink, make_job

pytestmark = [
    allure.epic("Notifications"),
    allure.feature("Progress Notifier"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def notifier(sink: RecordingSink, clock: FakeClock) -> ProgressNotifier:
    return ProgressNotifier(
        sink,
        min_progress_interval_seconds=30,
        percent_threshold=10,
        clock=clock,
    )


def test_progress_updates_are_throttled_by_time_and_percent(
    notifier: ProgressNotifier,
    sink: RecordingSink,
    clock: FakeClock,
) -> None:
    job = make_job()
    for percent in (10, 15, 18, 22, 30):
        notifier.on_job_progress(JobProgress(job=job, percent=percent, message="working"))
        clock.advance(1)

    assert len(sink.messages) == 2
    assert "10%" in sink.texts[0]
    assert "22%" in sink.texts[1]


def test_progress_update_goes_out_after_interval_elapses(
    notifier: ProgressNotifier,
    sink: RecordingSink,
    clock: FakeClock,
) -> None:
    job = make_job()
    notifier.on_job_progress(JobProgress(job=job, percent=40, message="building"))
    clock.advance(31)
    notifier.on_job_progress(JobProgress(job=job, percent=41, message="still building"))

    assert len(sink.messages) == 2
    assert sink.texts[1].endswith("still building")


def test_progress_message_includes_agent_phase_and_bar(
    notifier: ProgressNotifier,
    sink: RecordingSink,
) -> None:
    notifier.on_job_progress(
        JobProgress(
            job=make_job(),
            percent=40,
            message="🏗️ Building: Refactor login",
            phase="🏗️ Building",
            agent="Nova",
        ),
    )

    assert sink.messages == [
        (
            "chat-1",
            "🤖 **Nova**\n⏳ [████░░░░░░] 40%\n🏗️ Building\n🏗️ Building: Refactor login",
        ),
    ]


def test_jobs_without_conversation_are_silent(
    notifier: ProgressNotifier,
    sink: RecordingSink,
) -> None:
    job = make_job(conversation_id=None)

    notifier.on_job_started(JobStarted(job=job))
    notifier.on_job_progress(JobProgress(job=job, percent=50, message="half"))
    notifier.on_job_completed(JobCompleted(job=job, result={"message": "done"}))
    notifier.on_job_failed(JobFailed(job=job, error="boom", will_retry=False))

    assert sink.messages == []


def test_started_message_names_agent_and_mission(
    notifier: ProgressNotifier,
    sink: RecordingSink,
) -> None:
    job = make_job(agent="Nova", payload={"nova_mission": "Fix the flaky test"})

    notifier.on_job_started(JobStarted(job=job))

    text = sink.texts[0]
    assert text.startswith("⚡ **Processing Started**")
    assert "🤖 Agent: **Nova**" in text
    assert "📋 Fix the flaky test" in text
    assert "Job: `01234567`" in text


def test_completed_message_is_delivered_verbatim(
    notifier: ProgressNotifier,
    sink: RecordingSink,
) -> None:
    job = make_job()
    notifier.on_job_progress(JobProgress(job=job, percent=10, message="planning"))

    notifier.on_job_completed(
        JobCompleted(job=job, result={"message": "All tests pass."}, duration_ms=1500),
    )

    assert sink.texts[-1] == "All tests pass."
    assert notifier.tracked_jobs() == []


def test_completed_without_message_uses_template(
    notifier: ProgressNotifier,
    sink: RecordingSink,
) -> None:
    job = make_job(metadata={"nova_agent": "Nova"})

    notifier.on_job_completed(JobCompleted(job=job, result={"other": 1}, duration_ms=65_000))

    assert sink.texts == [
        "✅ **Task Complete**\n🤖 Nova\nJob: `01234567`\n⏱️ Duration: 1m 5s",
    ]


def test_failed_message_includes_retry_note_and_hint(
    notifier: ProgressNotifier,
    sink: RecordingSink,
    clock: FakeClock,
) -> None:
    job = make_job()
    notifier.on_job_progress(JobProgress(job=job, percent=10, message="planning"))

    notifier.on_job_failed(JobFailed(job=job, error="Job timed out after 300s", will_retry=True))
    notifier.on_job_failed(JobFailed(job=job, error="boom", will_retry=False))

    retrying, final = sink.texts[-2:]
    assert retrying.startswith("❌ **Task Failed**")
    assert "Error: Job timed out after 300s" in retrying
    assert RETRY_NOTE in retrying
    assert RETRY_NOTE not in final
    assert final.endswith(RECOVERY_HINT)
    assert notifier.tracked_jobs() == []


def test_throttle_state_resets_after_terminal_event(
    notifier: ProgressNotifier,
    sink: RecordingSink,
) -> None:
    job = make_job()
    notifier.on_job_progress(JobProgress(job=job, percent=50, message="half"))
    notifier.on_job_failed(JobFailed(job=job, error="boom", will_retry=True))

    notifier.on_job_progress(JobProgress(job=job, percent=5, message="second attempt"))

    assert sink.texts[-1].endswith("second attempt")


def test_sink_errors_are_swallowed(clock: FakeClock) -> None:
    failing = FailingSink(TransportError("telegram down"))
    notifier = ProgressNotifier(failing, clock=clock)
    job = make_job()

    notifier.on_job_started(JobStarted(job=job))
    notifier.on_job_progress(JobProgress(job=job, percent=10, message="planning"))
    notifier.on_job_completed(JobCompleted(job=job, result=None))

    assert failing.calls == 3


def test_notify_queued_respects_show_job_id(sink: RecordingSink, clock: FakeClock) -> None:
    hidden = ProgressNotifier(sink, show_job_id=False, clock=clock)
    shown = ProgressNotifier(sink, clock=clock)

    hidden.notify_queued("chat-9", "abcdef0123456789", "droid_exec", "Ship it")
    shown.notify_queued("chat-9", "abcdef0123456789", "droid_exec")

    first, second = sink.texts
    assert first.startswith("🔄 **Task Queued**")
    assert "📋 Ship it" in first
    assert "abcdef01" not in first
    assert "Job: `abcdef01`" in second


def test_attach_routes_bus_events(notifier: ProgressNotifier, sink: RecordingSink) -> None:
    bus = EventBus()
    notifier.attach(bus)
    job = make_job()

    bus.publish(JobStarted(job=job))
    bus.publish(JobCompleted(job=job, result={"message": "done"}))
    bus.flush(timeout=5)
    notifier.detach()
    bus.publish(JobStarted(job=job))
    bus.flush(timeout=5)
    bus.close()

    assert len(sink.messages) == 2
    assert sink.texts[-1] == "done"


def test_render_helpers() -> None:
    assert progress_bar(0) == "░" * 10
    assert progress_bar(55) == "█" * 5 + "░" * 5
    assert progress_bar(100) == "█" * 10
    assert format_duration(42) == "42s"
    assert format_duration(125) == "2m 5s"
    assert render_progress(30, "msg", show_bar=False) == "⏳ [] 30%\nmsg"
