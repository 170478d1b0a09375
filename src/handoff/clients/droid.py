"""Subprocess client for the ``droid exec`` CLI."""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import threading
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

from handoff.clients.base import MessageChunk, ProgressCallback

logger = logging.getLogger(__name__)

REASONING_EFFORTS = frozenset({"off", "none", "low", "medium", "high"})
AUTONOMY_LEVELS = frozenset({"normal", "low", "medium", "high"})

_BASE_TIMEOUT_SECONDS = 5 * 60
_TIMEOUT_STEP_SECONDS = 2 * 60
_TIMEOUT_STEP_CHARS = 5000
_POLL_SECONDS = 0.2

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bfk-[A-Za-z0-9_-]+\b"), "fk-***"),
    (re.compile(r"\bghp_[A-Za-z0-9]+\b"), "ghp_***"),
    (re.compile(r"\bsk-ant-oat01-[A-Za-z0-9_-]+\b"), "sk-ant-oat01-***"),
    (re.compile(r"\bsk-ant-(?!oat01-)[A-Za-z0-9_-]+\b"), "sk-ant-***"),
    (re.compile(r"\b\d{8,12}:[A-Za-z0-9_-]{20,}\b"), "<redacted:telegram_bot_token>"),
)

_AUTH_MARKERS = (
    "factory_api_key",
    "not authenticated",
    "unauthorized",
    "forbidden",
    "401",
    "api_key",
    "invalid key",
    "authentication",
)

AUTH_HELP = (
    "Auth required. Fix one of these:\n"
    "1) Run `droid` once as the service user and complete the browser login flow, or\n"
    "2) Set FACTORY_API_KEY in the service environment."
)


class DroidOutputError(ValueError):
    """stdout did not contain a parseable JSON result."""


@dataclass(slots=True, frozen=True)
class DroidOptions:
    """Command-line knobs for ``droid exec``."""

    bin: str = "droid"
    model: str | None = None
    reasoning_effort: str | None = None
    use_spec: bool = False
    spec_model: str | None = None
    spec_reasoning_effort: str | None = None
    auto: str | None = None
    max_timeout_seconds: float = 15 * 60
    progress_interval_seconds: float = 60.0

    def merged(self, overrides: Mapping[str, Any] | None) -> DroidOptions:
        """Return a copy with known, non-empty override keys applied."""

        if not overrides:
            return self
        known = {item.name for item in fields(self)}
        changes = {
            key: value
            for key, value in overrides.items()
            if key in known and key != "bin" and value is not None
        }
        if "reasoning_effort" in changes:
            changes["reasoning_effort"] = normalize_reasoning_effort(changes["reasoning_effort"])
        if "spec_reasoning_effort" in changes:
            changes["spec_reasoning_effort"] = normalize_reasoning_effort(
                changes["spec_reasoning_effort"],
            )
        if "auto" in changes:
            changes["auto"] = normalize_autonomy(changes["auto"])
        return replace(self, **changes)


class DroidClient:
    """Runs one ``droid exec -o json`` process per query and yields its output.

    The CLI prints a single JSON document when it exits, so the stream is
    short: an optional ``system`` chunk with stderr on failure, a ``result``
    chunk carrying the session id, then one ``assistant`` chunk with the
    answer or a user-facing error explanation.
    """

    def __init__(self, options: DroidOptions | None = None) -> None:
        self.options = options or DroidOptions()

    def with_overrides(self, overrides: Mapping[str, Any] | None) -> DroidClient:
        return DroidClient(self.options.merged(overrides))

    def build_args(self, prompt: str, cwd: str, session_id: str | None = None) -> list[str]:
        options = self.options
        args = [*shlex.split(options.bin), "exec", "-o", "json", "--cwd", cwd]
        if session_id:
            args += ["-s", session_id]
        if options.model:
            args += ["-m", options.model]
        if options.reasoning_effort:
            args += ["-r", options.reasoning_effort]
        if options.use_spec:
            args.append("--use-spec")
        if options.spec_model:
            args += ["--spec-model", options.spec_model]
        if options.spec_reasoning_effort:
            args += ["--spec-reasoning-effort", options.spec_reasoning_effort]
        if options.auto and options.auto != "normal":
            args += ["--auto", options.auto]
        args.append(prompt)
        return args

    def default_timeout_seconds(self, prompt: str) -> float:
        """Prompt-size based timeout, capped by ``max_timeout_seconds``."""

        steps = len(prompt) // _TIMEOUT_STEP_CHARS
        dynamic = _BASE_TIMEOUT_SECONDS + steps * _TIMEOUT_STEP_SECONDS
        return min(dynamic, self.options.max_timeout_seconds)

    def send_query(  # noqa: PLR0913
        self,
        prompt: str,
        cwd: str,
        session_id: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Iterator[MessageChunk]:
        """Run the prompt; ``timeout_seconds=0`` means no time limit."""

        args = self.build_args(prompt, cwd, session_id)
        timeout = (
            self.default_timeout_seconds(prompt) if timeout_seconds is None else timeout_seconds
        )
        logger.debug(
            "Starting droid exec (cwd=%s, resume=%s, prompt_chars=%s, timeout=%ss)",
            cwd,
            bool(session_id),
            len(prompt),
            timeout or "unbounded",
        )

        try:
            process = subprocess.Popen(  # noqa: S603
                args,
                env=os.environ.copy(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError:
            yield MessageChunk(type="assistant", content=not_found_help(self.options.bin))
            return
        except OSError as error:
            yield MessageChunk(type="assistant", content=f"Failed to start Droid CLI: {error}")
            return

        outcome = _wait_for_process(
            process,
            timeout_seconds=timeout,
            cancel_event=cancel_event,
            on_progress=on_progress,
            progress_interval_seconds=self.options.progress_interval_seconds,
        )
        logger.debug(
            "droid exec finished (exit=%s, duration=%.1fs, stdout=%s chars, stderr=%s chars)",
            outcome.exit_code,
            outcome.duration_seconds,
            len(outcome.stdout),
            len(outcome.stderr),
        )

        if outcome.cancelled:
            yield MessageChunk(type="system", content="Droid execution cancelled.")
            return
        if outcome.timed_out:
            yield MessageChunk(type="assistant", content=timeout_message(timeout))
            return

        yield from _interpret_output(
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
        )


@dataclass(slots=True)
class _ProcessOutcome:
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False
    cancelled: bool = False


def _wait_for_process(
    process: subprocess.Popen[str],
    *,
    timeout_seconds: float,
    cancel_event: threading.Event | None,
    on_progress: ProgressCallback | None,
    progress_interval_seconds: float,
) -> _ProcessOutcome:
    start = time.monotonic()
    deadline = start + timeout_seconds if timeout_seconds > 0 else None
    next_progress = start + progress_interval_seconds if progress_interval_seconds > 0 else None

    while True:
        try:
            stdout, stderr = process.communicate(timeout=_POLL_SECONDS)
        except subprocess.TimeoutExpired:
            now = time.monotonic()
            if cancel_event is not None and cancel_event.is_set():
                stdout, stderr = _terminate_process(process)
                return _ProcessOutcome(-1, stdout, stderr, now - start, cancelled=True)
            if deadline is not None and now >= deadline:
                stdout, stderr = _terminate_process(process)
                return _ProcessOutcome(124, stdout, stderr, now - start, timed_out=True)
            if on_progress is not None and next_progress is not None and now >= next_progress:
                elapsed = int(now - start)
                on_progress(elapsed, f"Processing... ({elapsed // 60}m {elapsed % 60}s elapsed)")
                next_progress = now + progress_interval_seconds
            continue
        return _ProcessOutcome(
            exit_code=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_seconds=time.monotonic() - start,
        )


def _terminate_process(process: subprocess.Popen[str]) -> tuple[str, str]:
    try:
        process.terminate()
    except OSError:
        return "", ""
    try:
        stdout, stderr = process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return "", ""
        stdout, stderr = process.communicate(timeout=2)
    return stdout or "", stderr or ""


def _interpret_output(*, exit_code: int, stdout: str, stderr: str) -> Iterator[MessageChunk]:
    if exit_code != 0 and stderr.strip():
        yield MessageChunk(type="system", content=safe_snippet(stderr, 4000))

    try:
        parsed = parse_droid_json_output(stdout)
    except DroidOutputError as error:
        snippet = safe_snippet(stdout, 1200)
        needs_auth = looks_like_auth_error(stderr, stdout) and not os.getenv("FACTORY_API_KEY")
        help_text = f"\n\n{AUTH_HELP}" if needs_auth else ""
        raw = f"\n\nRaw stdout (truncated):\n{snippet}" if snippet else ""
        yield MessageChunk(
            type="assistant",
            content=(
                f"Failed to parse Droid output (exit {exit_code}). {error}.\n"
                f"Ensure Droid supports 'droid exec -o json' and is authenticated.{help_text}{raw}"
            ),
        )
        return

    session_id = extract_session_id(parsed)
    message = extract_message(parsed)
    if session_id:
        yield MessageChunk(type="result", session_id=session_id)

    if is_error_result(parsed) or exit_code != 0:
        help_text = f"\n\n{AUTH_HELP}" if looks_like_auth_error(stderr, stdout) else ""
        body = f"\n\n{safe_snippet(message, 2500)}" if message else ""
        err_block = (
            f"\n\nStderr (truncated):\n{safe_snippet(stderr, 1200)}" if stderr.strip() else ""
        )
        yield MessageChunk(
            type="assistant",
            content=f"⚠️ Droid exec failed (exit {exit_code}).{help_text}{body}{err_block}",
        )
        return

    if message:
        yield MessageChunk(type="assistant", content=message)
        return

    help_text = f"\n\n{AUTH_HELP}" if looks_like_auth_error(stderr, stdout) else ""
    yield MessageChunk(
        type="assistant",
        content=f"Droid completed but returned no message.{help_text}",
    )


def parse_droid_json_output(stdout: str) -> dict[str, Any]:
    """Parse a single JSON object, JSONL (last object line) or noisy output."""

    text = stdout.strip()
    if not text:
        raise DroidOutputError("Empty stdout")

    try:
        return _as_object(json.loads(text))
    except json.JSONDecodeError:
        pass

    for line in reversed([item.strip() for item in text.splitlines() if item.strip()]):
        if line.startswith("{") and line.endswith("}"):
            try:
                return _as_object(json.loads(line))
            except json.JSONDecodeError:
                continue

    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        try:
            return _as_object(json.loads(text[start : end + 1]))
        except json.JSONDecodeError as error:
            raise DroidOutputError(f"Unparseable stdout: {error.msg}") from error
    raise DroidOutputError("Unparseable stdout")


def _as_object(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise DroidOutputError("JSON output is not an object")
    return value


def extract_session_id(root: Mapping[str, Any]) -> str | None:
    for key in ("sessionId", "session_id"):
        value = root.get(key)
        if isinstance(value, str) and value:
            return value
    session = root.get("session")
    if isinstance(session, Mapping):
        value = session.get("id")
        if isinstance(value, str) and value:
            return value
    return None


def extract_message(root: Mapping[str, Any]) -> str | None:
    for key in ("result", "message", "output", "text"):
        value = root.get(key)
        if isinstance(value, str) and value:
            return value
    response = root.get("response")
    if isinstance(response, Mapping):
        value = response.get("text")
        if isinstance(value, str) and value:
            return value
    return None


def is_error_result(root: Mapping[str, Any]) -> bool:
    subtype = root.get("subtype")
    return (
        root.get("is_error") is True
        or root.get("isError") is True
        or (isinstance(subtype, str) and "error" in subtype.lower())
    )


def redact_secrets(text: str) -> str:
    """Mask API keys and bot tokens before text reaches logs or chat."""

    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def safe_snippet(text: str, max_chars: int = 1800) -> str:
    stripped = text.strip()
    if not stripped:
        return ""
    redacted = redact_secrets(stripped)
    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars] + "\n... (truncated)"


def looks_like_auth_error(stderr: str, stdout: str) -> bool:
    haystack = f"{stderr}\n{stdout}".lower()
    return any(marker in haystack for marker in _AUTH_MARKERS)


def not_found_help(bin_name: str) -> str:
    return (
        f"Droid CLI not found: '{bin_name}'. Fix one of these:\n"
        "1) Install Droid CLI and ensure it is on PATH for the service user, or\n"
        "2) Set DROID_BIN to the absolute path (e.g. /usr/local/bin/droid)."
    )


def timeout_message(timeout_seconds: float) -> str:
    return (
        f"⚠️ Droid CLI timed out after {int(timeout_seconds)} seconds.\n\n"
        "Large prompts and multi-step tasks need more processing time.\n"
        "Try breaking the task into smaller steps, or use /reset to start a fresh session."
    )


def normalize_reasoning_effort(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if normalized in REASONING_EFFORTS else None


def normalize_autonomy(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if normalized in AUTONOMY_LEVELS else None
