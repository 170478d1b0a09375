"""AI execution clients used by background job handlers."""

from handoff.clients.base import AssistantClient, MessageChunk, ProgressCallback
from handoff.clients.droid import DroidClient, DroidOptions

__all__ = [
    "AssistantClient",
    "DroidClient",
    "DroidOptions",
    "MessageChunk",
    "ProgressCallback",
]
