"""Wiring of store, worker, notifier and conversation locks for one process."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, ParamSpec, TypeVar

from handoff.clients.base import AssistantClient
from handoff.clients.droid import DroidClient
from handoff.config import Settings
from handoff.jobs.events import EventBus
from handoff.jobs.handlers import register_default_handlers
from handoff.jobs.models import JobCreate, JobView
from handoff.jobs.notifier import ProgressNotifier
from handoff.jobs.sinks import ConsoleSink, NotificationSink, TelegramSink
from handoff.jobs.store import JobStore
from handoff.jobs.worker import JobWorker
from handoff.locks import ConversationLockManager

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

ClientFactory = Callable[[Mapping[str, Any] | None], AssistantClient]


@dataclass(slots=True)
class HandoffRuntime:
    """Explicitly constructed components sharing one event bus."""

    settings: Settings
    store: JobStore
    bus: EventBus
    worker: JobWorker
    notifier: ProgressNotifier
    locks: ConversationLockManager

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        sink: NotificationSink | None = None,
        client_factory: ClientFactory | None = None,
        worker_id: str | None = None,
    ) -> HandoffRuntime:
        settings.validate()
        store = JobStore(
            settings.db_path,
            busy_timeout_ms=settings.worker.busy_timeout_ms,
            retry_base_seconds=settings.worker.retry_base_seconds,
            retry_max_seconds=settings.worker.retry_max_seconds,
        )
        store.init_schema()
        bus = EventBus()
        worker = JobWorker(
            store=store,
            bus=bus,
            worker_id=worker_id,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            max_concurrent=settings.worker.max_concurrent,
            job_types=settings.worker.job_types,
            grace_seconds=settings.worker.grace_seconds,
            progress_interval_seconds=settings.worker.progress_interval_seconds,
            stale_after_seconds=settings.worker.stale_after_seconds,
            verbose=settings.worker.verbose,
        )
        register_default_handlers(worker, client_factory or default_client_factory(settings))

        notifier = ProgressNotifier(
            sink or default_sink(settings),
            min_progress_interval_seconds=settings.notifier.min_progress_interval_seconds,
            percent_threshold=settings.notifier.percent_threshold,
            show_progress_bar=settings.notifier.show_progress_bar,
            show_job_id=settings.notifier.show_job_id,
        )
        notifier.attach(bus)
        locks = ConversationLockManager(settings.locks.max_concurrent_conversations)
        return cls(
            settings=settings,
            store=store,
            bus=bus,
            worker=worker,
            notifier=notifier,
            locks=locks,
        )

    def handle_request(
        self,
        conversation_id: str,
        fn: Callable[P, R],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> R:
        """Run a synchronous request handler under the conversation lock."""

        return self.locks.acquire_and_run(conversation_id, fn, *args, **kwargs)

    def hand_off(self, job: JobCreate, *, mission: str | None = None) -> JobView:
        """Enqueue a background job and tell the conversation it is queued."""

        view = self.store.enqueue(job)
        if view.conversation_id:
            self.notifier.notify_queued(view.conversation_id, view.job_id, view.job_type, mission)
        return view

    def health(self, window_hours: int = 24) -> dict[str, Any]:
        return {
            "worker": {
                "worker_id": self.worker.worker_id,
                "running": self.worker.is_running(),
                "active_jobs": self.worker.get_active_job_count(),
            },
            "locks": self.locks.get_stats().to_dict(),
            "queue": self.store.get_queue_stats(window_hours).to_dict(),
        }

    def close(self) -> None:
        self.worker.stop()
        self.bus.close()
        self.notifier.detach()
        sink = self.notifier.sink
        if isinstance(sink, TelegramSink):
            sink.close()
        self.store.close()


def default_client_factory(settings: Settings) -> ClientFactory:
    base = DroidClient(settings.droid.to_options())

    def _factory(overrides: Mapping[str, Any] | None) -> AssistantClient:
        return base.with_overrides(overrides)

    return _factory


def default_sink(settings: Settings) -> NotificationSink:
    telegram = settings.telegram
    if telegram.enabled and telegram.bot_token:
        logger.info("Delivering notifications through Telegram")
        return TelegramSink(
            telegram.bot_token,
            api_base=telegram.api_base,
            timeout_seconds=telegram.timeout_seconds,
        )
    return ConsoleSink()
