"""Worker lifecycle events and an in-process publish/subscribe bus."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from handoff.jobs.models import JobView
from handoff.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class WorkerStarted:
    worker_id: str
    at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class WorkerStopped:
    worker_id: str
    at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class JobStarted:
    job: JobView
    at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class JobProgress:
    job: JobView
    percent: int
    message: str
    phase: str | None = None
    agent: str | None = None
    mission: str | None = None
    at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class JobCompleted:
    job: JobView
    result: dict[str, Any] | None
    duration_ms: int = 0
    at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class JobFailed:
    job: JobView
    error: str
    will_retry: bool
    at: datetime = field(default_factory=utc_now)


WorkerEvent = WorkerStarted | WorkerStopped | JobStarted | JobProgress | JobCompleted | JobFailed
EventListener = Callable[[WorkerEvent], None]

_STOP = object()


class EventBus:
    """Fire-and-forget event fan-out.

    ``publish`` never blocks on subscribers: events go through a queue and are
    delivered by one dispatcher thread, in publish order. A failing listener is
    logged and does not affect other listeners.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._listeners_lock = threading.Lock()
        self._queue: queue.Queue[object] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._state_lock = threading.Lock()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""

        with self._listeners_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: WorkerEvent) -> None:
        self._ensure_dispatcher()
        self._queue.put(event)

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every published event has been dispatched."""

        if timeout is None:
            self._queue.join()
            return True
        done = threading.Event()

        def _join() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_join, name="event-bus-flush", daemon=True).start()
        return done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        """Drain pending events and stop the dispatcher thread."""

        with self._state_lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout=timeout)

    def _ensure_dispatcher(self) -> None:
        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._dispatch_loop,
                name="event-bus",
                daemon=True,
            )
            self._thread.start()

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()

    def _deliver(self, event: WorkerEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event listener failed for %s", type(event).__name__)
