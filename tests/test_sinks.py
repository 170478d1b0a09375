from __future__ import annotations

import json

import allure
import httpx
import pytest

from handoff.jobs.errors import TransportError
from handoff.jobs.sinks import (
    TELEGRAM_CHUNK_LENGTH,
    ConsoleSink,
    TelegramSink,
    sanitize_text,
    split_message,
)

pytestmark = [
    allure.epic("Notifications"),
    allure.feature("Delivery"),
]


def test_telegram_sink_posts_plain_text_to_chat_part_of_conversation() -> None:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    with TelegramSink(
        "123:token",
        api_base="https://bot.example/",
        transport=httpx.MockTransport(_handler),
    ) as sink:
        sink.send_message("42:777", "✅ **Task Complete**\nJob: `abcdef01`")

    assert len(requests) == 1
    request = requests[0]
    assert str(request.url) == "https://bot.example/bot123:token/sendMessage"
    body = json.loads(request.content)
    assert body["chat_id"] == "42"
    assert body["text"] == "✅ Task Complete\nJob: abcdef01"
    assert "parse_mode" not in body


def test_telegram_sink_splits_long_messages_without_losing_text() -> None:
    texts: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        texts.append(json.loads(request.content)["text"])
        return httpx.Response(200, json={"ok": True})

    message = "line\n" * 2000
    with TelegramSink("123:token", transport=httpx.MockTransport(_handler)) as sink:
        sink.send_message("12345:678", message)

    assert len(texts) == 3
    assert all(len(text) <= TELEGRAM_CHUNK_LENGTH for text in texts)
    assert all(not text.startswith("\n") and not text.endswith("\n") for text in texts)
    assert "\n".join(texts) == message.strip()


def test_telegram_sink_rejects_non_numeric_chat_id() -> None:
    sink = TelegramSink("123:token", transport=httpx.MockTransport(lambda request: None))

    with pytest.raises(TransportError, match="Invalid Telegram chat id"):
        sink.send_message("chat-1", "hello")
    sink.close()


def test_split_message_hard_cuts_lines_longer_than_limit() -> None:
    assert split_message("") == []
    assert split_message("short") == ["short"]
    assert split_message("x" * 25, limit=10) == ["x" * 10, "x" * 10, "x" * 5]
    assert split_message("aaaa\nbbbb\ncc", limit=10) == ["aaaa\nbbbb", "cc"]


def test_sanitize_text_strips_inline_markdown() -> None:
    assert sanitize_text("*Note*: **bold**, _it_ and `code`") == "Note: bold, it and code"
    assert sanitize_text("keep snake_case_names\n\n\n\nend") == "keep snake_case_names\n\nend"
    assert sanitize_text("* bullet\n* bullet") == "* bullet\n* bullet"


def test_telegram_sink_raises_transport_error_on_api_error() -> None:
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            400,
            json={"ok": False, "description": "Bad Request: chat not found"},
        ),
    )
    sink = TelegramSink("123:token", transport=transport)

    with pytest.raises(TransportError, match="chat not found") as error:
        sink.send_message("42", "hello")

    assert error.value.retryable is True
    sink.close()


def test_telegram_sink_wraps_network_errors() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    sink = TelegramSink("123:token", transport=httpx.MockTransport(_handler))

    with pytest.raises(TransportError, match="ConnectError"):
        sink.send_message("42", "hello")
    sink.close()


def test_telegram_sink_requires_token() -> None:
    with pytest.raises(ValueError, match="bot_token"):
        TelegramSink("")


def test_console_sink_prefixes_conversation(capsys) -> None:
    ConsoleSink().send_message("chat-1", "hello")
    ConsoleSink(err=True).send_message("chat-2", "oops")

    captured = capsys.readouterr()
    assert captured.out == "[chat-1] hello\n"
    assert captured.err == "[chat-2] oops\n"
