from __future__ import annotations

import threading
import time

import allure
import pytest

from handoff.locks import ConversationLockManager
from tests.helpers import wait_until

pytestmark = [
    allure.epic("Chat Runtime"),
    allure.feature("Conversation Locks"),
]


def test_same_key_runs_in_arrival_order_without_overlap() -> None:
    manager = ConversationLockManager(max_concurrent=4)
    order: list[int] = []
    overlap: list[bool] = []
    inside = threading.Event()

    def _work(index: int) -> int:
        if inside.is_set():
            overlap.append(True)
        inside.set()
        time.sleep(0.05)
        order.append(index)
        inside.clear()
        return index

    results: dict[int, int] = {}
    threads = []
    for index in range(4):
        thread = threading.Thread(
            target=lambda i=index: results.__setitem__(
                i,
                manager.acquire_and_run("chat-1", _work, i),
            ),
        )
        threads.append(thread)
        thread.start()
        time.sleep(0.01)
    for thread in threads:
        thread.join(timeout=5)

    assert order == [0, 1, 2, 3]
    assert overlap == []
    assert results == {0: 0, 1: 1, 2: 2, 3: 3}
    assert not manager.is_locked("chat-1")


def test_distinct_keys_run_concurrently_up_to_limit() -> None:
    manager = ConversationLockManager(max_concurrent=2)
    release = threading.Event()
    started: list[str] = []
    lock = threading.Lock()

    def _hold(key: str) -> None:
        with lock:
            started.append(key)
        release.wait(5)

    threads = [
        threading.Thread(target=manager.acquire_and_run, args=(key, _hold, key))
        for key in ("a", "b", "c")
    ]
    for thread in threads:
        thread.start()
        time.sleep(0.02)

    assert wait_until(lambda: manager.get_stats().active == 2)
    time.sleep(0.1)
    stats = manager.get_stats()
    assert stats.active == 2
    assert stats.queued_total == 1
    assert sorted(started) == ["a", "b"]
    assert manager.is_locked("a")
    assert not manager.is_locked("c")

    release.set()
    for thread in threads:
        thread.join(timeout=5)
    assert sorted(started) == ["a", "b", "c"]
    assert manager.get_stats().to_dict() == {"active": 0, "max_concurrent": 2, "queued_total": 0}


def test_error_propagates_and_releases_lock() -> None:
    manager = ConversationLockManager()

    def _boom() -> None:
        raise RuntimeError("handler failed")

    with pytest.raises(RuntimeError, match="handler failed"):
        manager.acquire_and_run("chat-1", _boom)

    assert not manager.is_locked("chat-1")
    assert manager.acquire_and_run("chat-1", lambda value: value * 2, 21) == 42


def test_keyword_arguments_are_forwarded() -> None:
    manager = ConversationLockManager()

    result = manager.acquire_and_run("chat-1", lambda *, name: f"hi {name}", name="bob")

    assert result == "hi bob"


def test_invalid_limit_is_rejected() -> None:
    with pytest.raises(ValueError, match="max_concurrent"):
        ConversationLockManager(max_concurrent=0)
