"""Exception types raised by the chat client core."""
from __future__ import annotations

from typing import Optional


class ChatClientError(Exception):
    """Base class for every error raised by this package."""


class ApiError(ChatClientError):
    """A call to the agent server failed.

    ``status`` is the HTTP status code when the server answered, ``None`` for
    transport failures (connection refused, timeouts, broken streams).
    """

    def __init__(self, message: str, *, status: Optional[int] = None, detail: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.detail = detail


class StreamTransportError(ApiError):
    """The streaming endpoint could not be opened or broke mid-stream."""


class AgentUnavailableError(ApiError):
    """The agent catalogue or the non-streaming endpoint failed."""


class MemoryStoreError(ApiError):
    """A thread/memory CRUD call failed."""


class MemoryNotInitializedError(MemoryStoreError):
    """The agent has no memory configured yet; callers treat this as empty."""


class ConversationBusyError(ChatClientError):
    """A stream is already in flight for this conversation."""


class NoAgentSelectedError(ChatClientError):
    """An operation needs an agent but none is selected."""
