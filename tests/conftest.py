"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_client.conversation import ConversationContext, ConversationManager  # noqa: E402
from chat_client.errors import AgentUnavailableError, MemoryStoreError, StreamTransportError  # noqa: E402
from chat_client.models import Agent, Thread  # noqa: E402
from chat_client.state import MemoryKeyValueStore  # noqa: E402


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Default config path shipped with the repo."""
    return project_root / "config" / "default.yaml"


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for client state during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    monkeypatch.delenv("AGENT_CHAT_CONFIG", raising=False)
    for var in list(os.environ):
        if var.startswith("AGENT_CHAT__"):
            monkeypatch.delenv(var, raising=False)
    yield


# -----------------------------------------------------------------------------
# Fake collaborators for the conversation manager
# -----------------------------------------------------------------------------
class FakeAgents:
    """Scripted agent endpoint.

    Each ``stream`` call consumes the next entry of ``replies`` (a list of raw
    chunks); ``fail_with`` makes the stream break after its chunks. Objects
    queued on ``pending`` are handed out first, as they are.
    """

    def __init__(self, agents: Optional[List[Agent]] = None, replies: Optional[List[List[str]]] = None) -> None:
        self.agents = agents if agents is not None else [Agent(id="weather", name="Weather")]
        self.replies: List[List[str]] = list(replies or [])
        self.fail_with: Optional[str] = None
        self.generate_reply: Any = None
        self.generate_error: Optional[str] = None
        self.list_error = False
        self.on_chunk: Optional[Callable[[int], None]] = None
        self.pending: List[Any] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.generate_calls: List[Dict[str, Any]] = []

    def list_agents(self) -> List[Agent]:
        if self.list_error:
            raise AgentUnavailableError("APIエラー: 503", status=503)
        return list(self.agents)

    def get_agent(self, agent_id: str) -> Dict[str, Any]:
        for a in self.agents:
            if a.id == agent_id:
                return {"name": a.name}
        raise AgentUnavailableError("APIエラー: 404", status=404)

    def stream(
        self, agent_id: str, messages: Sequence[Dict[str, str]], thread_id: Optional[str], resource_id: str
    ) -> Iterator[str]:
        self.stream_calls.append(
            {"agent_id": agent_id, "messages": list(messages), "thread_id": thread_id, "resource_id": resource_id}
        )
        if self.pending:
            return self.pending.pop(0)
        chunks = self.replies.pop(0) if self.replies else []
        fail_with = self.fail_with

        def gen() -> Iterator[str]:
            for i, chunk in enumerate(chunks):
                if self.on_chunk is not None:
                    self.on_chunk(i)
                yield chunk
            if fail_with:
                raise StreamTransportError(fail_with)

        return gen()

    def generate(
        self, agent_id: str, messages: Sequence[Dict[str, str]], thread_id: Optional[str], resource_id: str
    ) -> Any:
        self.generate_calls.append({"agent_id": agent_id, "messages": list(messages), "thread_id": thread_id})
        if self.generate_error:
            raise AgentUnavailableError(self.generate_error)
        return self.generate_reply


class StalledStream:
    """Yields its first chunk, then hangs until ``close`` is called."""

    def __init__(self, first: str, timeout: float = 5.0) -> None:
        self.first = first
        self.timeout = timeout
        self.started = threading.Event()
        self.released = threading.Event()

    def __iter__(self) -> Iterator[str]:
        yield self.first
        self.started.set()
        self.released.wait(self.timeout)

    def close(self) -> None:
        self.released.set()


class FakeMemory:
    """In-memory thread store recording every mutation."""

    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}
        self.histories: Dict[str, Any] = {}
        self.renames: List[tuple] = []
        self.deleted: List[str] = []
        self.create_error: Optional[str] = None
        self.list_error: Optional[str] = None
        self.delete_error: Optional[str] = None
        self.messages_error: Optional[Exception] = None
        self._seq = 0

    def add(self, title: str, agent_id: str = "weather", resource_id: str = "user_test") -> Thread:
        self._seq += 1
        tid = f"t{self._seq}"
        self.records[tid] = {"id": tid, "title": title, "resourceId": resource_id, "agentId": agent_id}
        return Thread.from_record(self.records[tid])

    def create_thread(self, agent_id: str, title: str, resource_id: str) -> Thread:
        if self.create_error:
            raise MemoryStoreError(self.create_error)
        return self.add(title, agent_id, resource_id)

    def list_threads(self, agent_id: str, resource_id: str) -> List[Thread]:
        if self.list_error:
            raise MemoryStoreError(self.list_error)
        return [
            Thread.from_record(r)
            for r in reversed(list(self.records.values()))
            if r["agentId"] == agent_id and r["resourceId"] == resource_id
        ]

    def get_messages(self, thread_id: str, agent_id: str, resource_id: str) -> Any:
        if self.messages_error is not None:
            raise self.messages_error
        return self.histories.get(thread_id, {"messages": []})

    def rename_thread(self, thread_id: str, agent_id: str, title: str, resource_id: str) -> Optional[Thread]:
        self.renames.append((thread_id, title))
        self.records[thread_id]["title"] = title
        return Thread.from_record(self.records[thread_id])

    def delete_thread(self, thread_id: str, agent_id: str) -> None:
        if self.delete_error:
            raise MemoryStoreError(self.delete_error)
        self.deleted.append(thread_id)
        self.records.pop(thread_id, None)


@pytest.fixture
def fake_agents() -> FakeAgents:
    return FakeAgents()


@pytest.fixture
def fake_memory() -> FakeMemory:
    return FakeMemory()


@pytest.fixture
def make_manager(fake_agents: FakeAgents, fake_memory: FakeMemory):
    """Build a manager over the fakes with a fixed resource id."""

    def _make(memory: Any = fake_memory, agent: Optional[Agent] = None, **kwargs: Any) -> ConversationManager:
        store = MemoryKeyValueStore({"resource_id": "user_test"})
        ctx = ConversationContext.start(store, agent)
        return ConversationManager(fake_agents, memory, ctx, **kwargs)

    return _make
