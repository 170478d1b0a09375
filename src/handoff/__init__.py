"""Background job hand-off for chat-driven assistants."""

__version__ = "0.1.0"
