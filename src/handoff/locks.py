"""Per-conversation serialization for the synchronous request path."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


@dataclass(slots=True, frozen=True)
class LockStats:
    active: int
    max_concurrent: int
    queued_total: int

    def to_dict(self) -> dict[str, int]:
        return {
            "active": self.active,
            "max_concurrent": self.max_concurrent,
            "queued_total": self.queued_total,
        }


@dataclass(slots=True)
class _KeyState:
    held: bool = False
    waiters: deque[object] = field(default_factory=deque)


class ConversationLockManager:
    """Runs callables with exclusive, FIFO access per conversation key.

    At most ``max_concurrent`` distinct keys run at the same time; a key whose
    turn has come waits for a free slot behind keys that were ready earlier.
    State is process-local and is lost on restart.
    """

    def __init__(self, max_concurrent: int = 10) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self._cond = threading.Condition()
        self._keys: dict[str, _KeyState] = {}
        self._slot_queue: deque[object] = deque()
        self._active = 0
        self._queued = 0

    def acquire_and_run(
        self,
        key: str,
        fn: Callable[P, R],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> R:
        """Run ``fn`` once the key is free and a slot is available.

        The return value or exception of ``fn`` goes back to the caller; the
        lock is released either way.
        """

        self._acquire(key)
        try:
            return fn(*args, **kwargs)
        finally:
            self._release(key)

    def is_locked(self, key: str) -> bool:
        with self._cond:
            state = self._keys.get(key)
            return state is not None and state.held

    def get_stats(self) -> LockStats:
        with self._cond:
            return LockStats(
                active=self._active,
                max_concurrent=self.max_concurrent,
                queued_total=self._queued,
            )

    def _acquire(self, key: str) -> None:
        ticket = object()
        with self._cond:
            state = self._keys.setdefault(key, _KeyState())
            state.waiters.append(ticket)
            self._queued += 1
            deferred = False
            while not self._try_take(state, ticket):
                if not deferred:
                    deferred = True
                    logger.debug(
                        "Conversation %s waiting (active=%s/%s, queued=%s)",
                        key,
                        self._active,
                        self.max_concurrent,
                        self._queued,
                    )
                self._cond.wait()

            state.waiters.popleft()
            self._slot_queue.popleft()
            state.held = True
            self._active += 1
            self._queued -= 1

    def _try_take(self, state: _KeyState, ticket: object) -> bool:
        if state.held or state.waiters[0] is not ticket:
            return False
        if ticket not in self._slot_queue:
            self._slot_queue.append(ticket)
        return self._slot_queue[0] is ticket and self._active < self.max_concurrent

    def _release(self, key: str) -> None:
        with self._cond:
            state = self._keys[key]
            state.held = False
            self._active -= 1
            if not state.waiters:
                del self._keys[key]
            self._cond.notify_all()
