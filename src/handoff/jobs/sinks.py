"""Delivery targets for job notifications."""

from __future__ import annotations

import logging
import re
from typing import Protocol

import click
import httpx

from handoff.jobs.errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TELEGRAM_API_BASE = "https://api.telegram.org"
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_RETRIES = 2
TELEGRAM_MESSAGE_LIMIT = 4096
TELEGRAM_CHUNK_LENGTH = TELEGRAM_MESSAGE_LIMIT - 100


class NotificationSink(Protocol):
    """Protocol implemented by chat transports."""

    def send_message(self, conversation_id: str, text: str) -> None:
        """Deliver one message to a conversation."""


class ConsoleSink:
    """Echo notifications to the terminal."""

    def __init__(self, *, err: bool = False) -> None:
        self.err = err

    def send_message(self, conversation_id: str, text: str) -> None:
        click.echo(f"[{conversation_id}] {text}", err=self.err)


class TelegramSink:
    """Bot API ``sendMessage`` over httpx, as plain text split into chunks.

    Conversation ids are ``chat_id`` or ``chat_id:user_id``; only the chat part is
    addressed.
    """

    def __init__(
        self,
        bot_token: str,
        *,
        api_base: str = DEFAULT_TELEGRAM_API_BASE,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not bot_token:
            raise ValueError("bot_token must be non-empty")
        self._url = f"{api_base.rstrip('/')}/bot{bot_token}/sendMessage"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def send_message(self, conversation_id: str, text: str) -> None:
        chat_id = parse_chat_id(conversation_id)
        for chunk in split_message(sanitize_text(text)):
            self._send_chunk(chat_id, chunk)

    def _send_chunk(self, chat_id: str, text: str) -> None:
        body = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        try:
            response = self._client.post(self._url, json=body)
        except httpx.TimeoutException as error:
            raise TransportError(
                f"Telegram sendMessage timed out for chat {chat_id}",
            ) from error
        except httpx.HTTPError as error:
            raise TransportError(f"Telegram sendMessage failed: {type(error).__name__}") from error

        if not response.is_success:
            description = _error_description(response)
            raise TransportError(
                f"Telegram sendMessage returned HTTP {response.status_code}: {description}",
            )
        logger.debug("Delivered %s chars to chat %s", len(text), chat_id)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TelegramSink:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _error_description(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("description", ""))
    return ""


_MARKDOWN_RULES = (
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
    (re.compile(r"(?<!\s)\*([^*\n]+)\*(?!\*)"), r"\1"),
    (re.compile(r"(?<!\w)_([^_\n]+)_(?!\w)"), r"\1"),
    (re.compile(r"`([^`\n]{1,30})`"), r"\1"),
    (re.compile(r"\n{3,}"), "\n\n"),
)


def parse_chat_id(conversation_id: str) -> str:
    chat_id = conversation_id.split(":", 1)[0].strip()
    if not re.fullmatch(r"-?\d+", chat_id):
        raise TransportError(
            f"Invalid Telegram chat id: {chat_id!r} (from conversation id {conversation_id!r})",
        )
    return chat_id


def sanitize_text(text: str) -> str:
    """Strip inline markdown that Telegram shows literally in plain-text mode."""

    for pattern, replacement in _MARKDOWN_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


def split_message(text: str, limit: int = TELEGRAM_CHUNK_LENGTH) -> list[str]:
    """Split into chunks of at most ``limit`` chars, preferring newline boundaries."""

    if not text:
        return []
    chunks: list[str] = []
    start = 0
    while start < len(text):
        hard_end = min(start + limit, len(text))
        if hard_end == len(text):
            end = hard_end
        else:
            newline = text.rfind("\n", start, hard_end)
            end = newline if newline > start else hard_end
        chunk = text[start:end]
        if chunk:
            chunks.append(chunk)
        start = end
        if start < len(text) and text[start] == "\n":
            start += 1
    return chunks
