"""Assistant client interface."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Literal, Protocol

ChunkType = Literal["assistant", "system", "result"]
ProgressCallback = Callable[[int, str], None]


@dataclass(slots=True, frozen=True)
class MessageChunk:
    """One typed piece of streamed assistant output."""

    type: ChunkType
    content: str | None = None
    session_id: str | None = None


class AssistantClient(Protocol):
    """Protocol implemented by AI execution clients."""

    def send_query(
        self,
        prompt: str,
        cwd: str,
        session_id: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Iterator[MessageChunk]:
        """Run the prompt and stream output chunks until the run ends."""
