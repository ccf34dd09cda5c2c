"""Conversation manager: thread lifecycle, live turns and read models.

One :class:`ConversationManager` owns one open conversation. It is the only
writer of the message list, the thread cache and the current thread id; the
UI only reads snapshots through the ``subscribe_*`` callbacks.

Per conversation the manager moves through::

    NO_THREAD -> THREAD_CREATED -> STREAMING <-> IDLE

and back to ``NO_THREAD`` when the current thread is deleted. A conversation
without a thread (thread creation failed, or no memory store) is still fully
usable; it just is not persisted.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    TypeVar,
)

from .artifacts import artifact_for_message, extract_artifact
from .client import open_clients, parse_agents, response_text
from .errors import (
    ApiError,
    ConversationBusyError,
    MemoryNotInitializedError,
    NoAgentSelectedError,
)
from .interpreter import FrameInterpreter, StreamSession, default_matchers
from .models import (
    Agent,
    Artifact,
    ChatMessage,
    End,
    ErrorEvent,
    StreamEvent,
    TextDelta,
    Thread,
    snapshot,
)
from .normalizer import normalize_history
from .state import JsonFileStore, KeyValueStore, load_resource_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

# -----------------------------
# User-visible strings
# -----------------------------
DEFAULT_THREAD_TITLE = "新しい会話"
AGENT_THREAD_TITLE = "{name}との会話"
AGENT_NEW_THREAD_TITLE = "{name}との新しい会話"
EMPTY_REPLY_TITLE = "(空の応答)"
UNKNOWN_AGENT_NAME = "不明なエージェント"
TITLE_CHARS = 10
ELLIPSIS = "..."

GREETING = "{name}との新しい会話を開始しました。メッセージを入力してください。"
GREETING_NO_MEMORY = "{name}との新しい会話を開始しました（メモリなし）。メッセージを入力してください。"
NEW_CHAT_FAILED = "新しい会話の作成に失敗しました。"
NO_AGENT_SELECTED = "エラー: 会話を開始するエージェントが選択されていません。サイドバーからエージェントを選択してください。"
NO_AGENT_AVAILABLE = "エージェントが見つかりません。システム管理者に連絡してください。"
AGENT_INFO_MISSING = "エージェント情報が見つかりません。新しい会話を開始するか、サポートにお問い合わせください。"
HISTORY_FAILED = "スレッドメッセージの取得に失敗しました。新しいメッセージで会話を開始してください。"
MEMORY_NOT_INITIALIZED = "メモリが初期化されていません。履歴は空として扱います。"
STREAM_FAILED = "エラーが発生しました: {error}\n\n再度メッセージを送信してください。"
DELETE_FAILED = "スレッドの削除に失敗しました: {error}"


def clip_title(text: str) -> str:
    """First ten characters, with an ellipsis when something was cut."""
    return f"{text[:TITLE_CHARS]}{ELLIPSIS}" if len(text) > TITLE_CHARS else text


def temporary_title(user_text: str) -> str:
    return clip_title(user_text)


def reply_title(reply: str) -> str:
    return clip_title(reply.strip()) or EMPTY_REPLY_TITLE


# -----------------------------
# Collaborator contracts
# -----------------------------
class AgentEndpoint(Protocol):
    def list_agents(self) -> List[Agent]: ...

    def get_agent(self, agent_id: str) -> Dict[str, Any]: ...

    def stream(
        self, agent_id: str, messages: Sequence[Dict[str, str]], thread_id: Optional[str], resource_id: str
    ) -> Iterable[str]: ...

    def generate(
        self, agent_id: str, messages: Sequence[Dict[str, str]], thread_id: Optional[str], resource_id: str
    ) -> Any: ...


class MemoryStore(Protocol):
    def create_thread(self, agent_id: str, title: str, resource_id: str) -> Thread: ...

    def list_threads(self, agent_id: str, resource_id: str) -> List[Thread]: ...

    def get_messages(self, thread_id: str, agent_id: str, resource_id: str) -> Any: ...

    def rename_thread(self, thread_id: str, agent_id: str, title: str, resource_id: str) -> Optional[Thread]: ...

    def delete_thread(self, thread_id: str, agent_id: str) -> None: ...


# -----------------------------
# Small value types
# -----------------------------
class ConversationState(str, enum.Enum):
    NO_THREAD = "no_thread"
    THREAD_CREATED = "thread_created"
    STREAMING = "streaming"
    IDLE = "idle"


@dataclass(frozen=True)
class ConversationContext:
    """Who is talking to whom, and in which thread."""

    resource_id: str
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    thread_id: Optional[str] = None

    @classmethod
    def start(cls, store: KeyValueStore, agent: Optional[Agent] = None) -> "ConversationContext":
        ctx = cls(resource_id=load_resource_id(store))
        return ctx.with_agent(agent) if agent else ctx

    def with_agent(self, agent: Agent) -> "ConversationContext":
        return dataclasses.replace(self, agent_id=agent.id, agent_name=agent.name)

    def with_thread(self, thread_id: Optional[str]) -> "ConversationContext":
        return dataclasses.replace(self, thread_id=thread_id)


@dataclass
class HistoryLoad:
    thread_id: str
    messages: List[ChatMessage] = field(default_factory=list)
    warning: Optional[str] = None
    error: Optional[str] = None


class Observable(Generic[T]):
    """Minimal publish/subscribe cell for read models."""

    def __init__(self) -> None:
        self._subscribers: List[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, value: T) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(value)
            except Exception:  # a broken view must not break the conversation
                logger.exception("Read-model subscriber %r failed", callback)


class Draft:
    """The assistant message currently being streamed into.

    ``append_delta`` only touches the message at ``index`` while it is still
    the last message, is an assistant message, and the owner is streaming.
    """

    def __init__(self, messages: List[ChatMessage], index: int, is_streaming: Callable[[], bool]) -> None:
        self._messages = messages
        self.index = index
        self._is_streaming = is_streaming
        self.open = True

    @property
    def message(self) -> ChatMessage:
        return self._messages[self.index]

    @property
    def text(self) -> str:
        return self.message.content

    def _writable(self) -> bool:
        return (
            self.open
            and self._is_streaming()
            and self.index == len(self._messages) - 1
            and self._messages[self.index].role == "assistant"
        )

    def append_delta(self, text: str) -> bool:
        if not text or not self._writable():
            return False
        msg = self._messages[self.index]
        msg.content = msg.content + text
        return True

    def settle(self, text: str) -> bool:
        """Replace the streamed text with a complete reply (fallback path)."""
        if not self._writable():
            return False
        self._messages[self.index].content = text
        return True

    def close(self) -> None:
        self.open = False


# -----------------------------
# Manager
# -----------------------------
class ConversationManager:
    """Thread CRUD, streaming turns, auto-titling and artifact publication."""

    def __init__(
        self,
        agents: AgentEndpoint,
        memory: Optional[MemoryStore],
        context: ConversationContext,
        *,
        interpreter: Optional[FrameInterpreter] = None,
        extractor: Callable[[str], Optional[Artifact]] = extract_artifact,
        fallback_agents: Optional[Sequence[Agent]] = None,
    ) -> None:
        self.agents_api = agents
        self.memory = memory
        self.context = context
        self.interpreter = interpreter or FrameInterpreter()
        self.extract = extractor
        self.fallback_agents: List[Agent] = list(fallback_agents or [])

        self.messages: List[ChatMessage] = []
        self.threads: List[Thread] = []
        self.agents: List[Agent] = []
        self.artifact: Optional[Artifact] = None
        self.state = ConversationState.NO_THREAD if context.thread_id is None else ConversationState.IDLE
        self.stream_error: Optional[str] = None
        self.history_warning: Optional[str] = None

        self._turn_lock = threading.Lock()
        self._session: Optional[StreamSession] = None
        self._chunks: Optional[Iterable[str]] = None
        self._last_user_text: Optional[str] = None
        self._rename_guard = threading.Lock()
        self._rename_locks: Dict[str, threading.Lock] = {}
        self._renamed: Set[str] = set()

        self.on_messages: Observable[List[ChatMessage]] = Observable()
        self.on_artifact: Observable[Optional[Artifact]] = Observable()
        self.on_threads: Observable[List[Thread]] = Observable()

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], store: Optional[KeyValueStore] = None) -> "ConversationManager":
        """Wire HTTP clients, local state and stream options from a config dict."""
        client_cfg = cfg.get("client", {}) or {}
        stream_cfg = cfg.get("stream", {}) or {}
        agents, memory = open_clients(cfg)
        store = store or JsonFileStore(client_cfg.get("state_file", "data/client_state.json"))
        interpreter = FrameInterpreter(default_matchers(stream_cfg.get("text_tags")))
        return cls(
            agents,
            memory,
            ConversationContext.start(store),
            interpreter=interpreter,
            fallback_agents=parse_agents(client_cfg.get("fallback_agents") or []),
        )

    # --------- read models ----------
    @property
    def current_thread_id(self) -> Optional[str]:
        return self.context.thread_id

    @property
    def is_streaming(self) -> bool:
        return self.state is ConversationState.STREAMING

    def subscribe_messages(self, callback: Callable[[List[ChatMessage]], None]) -> Callable[[], None]:
        return self.on_messages.subscribe(callback)

    def subscribe_artifact(self, callback: Callable[[Optional[Artifact]], None]) -> Callable[[], None]:
        return self.on_artifact.subscribe(callback)

    def subscribe_threads(self, callback: Callable[[List[Thread]], None]) -> Callable[[], None]:
        return self.on_threads.subscribe(callback)

    def _publish_messages(self) -> None:
        self.on_messages.publish(snapshot(self.messages))

    def _publish_threads(self) -> None:
        self.on_threads.publish([t.model_copy() for t in self.threads])

    def _set_artifact(self, artifact: Optional[Artifact]) -> None:
        self.artifact = artifact
        self.on_artifact.publish(artifact)

    def _reset_messages(self, *system_lines: str) -> None:
        self.messages = [ChatMessage(role="system", content=line) for line in system_lines]
        self._publish_messages()

    def _append_system(self, text: str) -> None:
        self.messages.append(ChatMessage(role="system", content=text))
        self._publish_messages()

    def _find_thread(self, thread_id: str) -> Optional[Thread]:
        return next((t for t in self.threads if t.id == thread_id), None)

    def _acquire_turn(self) -> None:
        if not self._turn_lock.acquire(blocking=False):
            raise ConversationBusyError("A response is still streaming for this conversation")

    # --------- agents ----------
    def load_agents(self) -> List[Agent]:
        try:
            agents = self.agents_api.list_agents()
        except ApiError as e:
            logger.error("Loading agents failed: %s", e)
            agents = []
        if not agents and self.fallback_agents:
            logger.warning("No agents from server; offering %d fallback agent(s)", len(self.fallback_agents))
            agents = list(self.fallback_agents)
        self.agents = agents
        return agents

    def select_agent(self, agent: Agent) -> Optional[Thread]:
        """Switch agent and open a fresh thread for it (memory-less if that fails)."""
        self._acquire_turn()
        try:
            logger.info("Selected agent %s (%s)", agent.id, agent.name)
            self.context = self.context.with_agent(agent).with_thread(None)
            self.stream_error = None
            self.history_warning = None
            self._set_artifact(None)
            self.load_threads()
            thread = self._create_thread(AGENT_THREAD_TITLE.format(name=agent.name))
            if thread is not None:
                self.context = self.context.with_thread(thread.id)
                self.state = ConversationState.THREAD_CREATED
                self._reset_messages(GREETING.format(name=agent.name))
            else:
                self.state = ConversationState.NO_THREAD
                self._reset_messages(GREETING_NO_MEMORY.format(name=agent.name))
            return thread
        finally:
            self._turn_lock.release()

    def _ensure_agent(self) -> None:
        if self.context.agent_id:
            return
        agents = self.agents or self.load_agents()
        if not agents:
            self.stream_error = NO_AGENT_AVAILABLE
            raise NoAgentSelectedError(NO_AGENT_AVAILABLE)
        logger.info("No agent selected; defaulting to %s", agents[0].id)
        self.context = self.context.with_agent(agents[0])

    # --------- threads ----------
    def load_threads(self) -> List[Thread]:
        """Refresh the thread cache; on failure the previous cache is kept."""
        if self.memory is None or not self.context.agent_id:
            return self.threads
        try:
            threads = self.memory.list_threads(self.context.agent_id, self.context.resource_id)
        except ApiError as e:
            logger.error("Loading threads for %s failed: %s", self.context.agent_id, e)
            return self.threads
        self.threads = list(threads)
        self._publish_threads()
        return self.threads

    def _create_thread(self, title: str) -> Optional[Thread]:
        if self.memory is None or not self.context.agent_id:
            return None
        try:
            thread = self.memory.create_thread(self.context.agent_id, title, self.context.resource_id)
        except ApiError as e:
            logger.warning("Thread creation failed, continuing without memory: %s", e)
            return None
        logger.info("Created thread %s (%r)", thread.id, thread.title)
        self.load_threads()
        if self._find_thread(thread.id) is None:
            self.threads.insert(0, thread)
            self._publish_threads()
        return thread

    def start_new_chat(self) -> Optional[Thread]:
        self._acquire_turn()
        try:
            self.context = self.context.with_thread(None)
            self.state = ConversationState.NO_THREAD
            self.stream_error = None
            self.history_warning = None
            self._set_artifact(None)
            if not self.context.agent_id:
                logger.error("No agent selected to start a new chat")
                self._reset_messages(NO_AGENT_SELECTED)
                return None
            name = self.context.agent_name or self.context.agent_id
            thread = self._create_thread(AGENT_NEW_THREAD_TITLE.format(name=name))
            if thread is None:
                self._reset_messages(NEW_CHAT_FAILED)
                return None
            self.context = self.context.with_thread(thread.id)
            self.state = ConversationState.THREAD_CREATED
            self._reset_messages(GREETING.format(name=name))
            return thread
        finally:
            self._turn_lock.release()

    def _resolve_thread_agent(self, thread: Thread) -> Optional[str]:
        agent_id = thread.agent_id or self.context.agent_id
        if not agent_id:
            logger.warning("Thread %s has no agent id; falling back to the first agent", thread.id)
            agents = self.agents or self.load_agents()
            if not agents:
                return None
            agent_id = agents[0].id
        if agent_id != self.context.agent_id:
            name = thread.agent_name
            try:
                details = self.agents_api.get_agent(agent_id)
                name = name or details.get("name")
            except ApiError as e:
                logger.error("Fetching agent %s failed: %s", agent_id, e)
            self.context = self.context.with_agent(Agent(id=agent_id, name=name or UNKNOWN_AGENT_NAME))
        return agent_id

    def select_thread(self, thread_id: str) -> Optional[HistoryLoad]:
        """Load a thread's normalised history and make it current."""
        self._acquire_turn()
        try:
            if self.memory is None:
                return None
            thread = self._find_thread(thread_id)
            if thread is None:
                logger.error("Thread %s is not in the thread list", thread_id)
                return None

            agent_id = self._resolve_thread_agent(thread)
            if not agent_id:
                self._reset_messages(AGENT_INFO_MISSING)
                return HistoryLoad(thread_id=thread_id, error=AGENT_INFO_MISSING)

            warning: Optional[str] = None
            try:
                payload = self.memory.get_messages(thread_id, agent_id, self.context.resource_id)
                messages = normalize_history(payload)
            except MemoryNotInitializedError as e:
                logger.warning("Memory not initialized for thread %s: %s", thread_id, e)
                messages, warning = [], MEMORY_NOT_INITIALIZED
            except ApiError as e:
                logger.error("Loading messages for thread %s failed: %s", thread_id, e)
                self._append_system(HISTORY_FAILED)
                return HistoryLoad(thread_id=thread_id, error=str(e))

            self.messages = messages
            self.history_warning = warning
            self.stream_error = None
            self.context = self.context.with_thread(thread_id)
            self.state = ConversationState.IDLE
            self._set_artifact(None)
            self._publish_messages()
            return HistoryLoad(thread_id=thread_id, messages=snapshot(messages), warning=warning)
        finally:
            self._turn_lock.release()

    def delete_thread(self, thread_id: str) -> bool:
        if self.memory is None or not self.context.agent_id:
            return False
        if self.is_streaming and thread_id == self.context.thread_id:
            raise ConversationBusyError("Cannot delete the thread that is streaming")
        try:
            self.memory.delete_thread(thread_id, self.context.agent_id)
        except ApiError as e:
            logger.error("Deleting thread %s failed: %s", thread_id, e)
            self.stream_error = DELETE_FAILED.format(error=e)
            self._append_system(self.stream_error)
            return False
        logger.info("Deleted thread %s", thread_id)
        self.load_threads()
        if self._find_thread(thread_id) is not None:
            self.threads = [t for t in self.threads if t.id != thread_id]
            self._publish_threads()
        if self.context.thread_id == thread_id:
            self.context = self.context.with_thread(None)
            self.state = ConversationState.NO_THREAD
            self.messages = []
            self._set_artifact(None)
            self._publish_messages()
        return True

    # --------- turns ----------
    def send_message(self, text: str) -> Optional[ChatMessage]:
        """Run one user turn. Returns the final assistant message, if any."""
        text = (text or "").strip()
        if not text:
            return None
        self._acquire_turn()
        try:
            self._ensure_agent()
            return self._run_turn(text)
        finally:
            self._turn_lock.release()

    def retry(self) -> Optional[ChatMessage]:
        """Run the failed turn again in place of its first attempt."""
        text = self._last_user_text
        if not self.stream_error or not text:
            return None
        self._acquire_turn()
        try:
            self._ensure_agent()
            self._drop_failed_turn(text)
            return self._run_turn(text)
        finally:
            self._turn_lock.release()

    def _drop_failed_turn(self, text: str) -> None:
        """Remove the last user message and whatever followed it."""
        for i in range(len(self.messages) - 1, -1, -1):
            message = self.messages[i]
            if message.role != "user":
                continue
            if message.content == text:
                del self.messages[i:]
                self._publish_messages()
            return

    def cancel(self) -> bool:
        session = self._session
        if session is None:
            return False
        logger.info("Cancelling active stream")
        session.cancel()
        close = getattr(self._chunks, "close", None)
        if close is not None:
            try:
                close()
            except ValueError:
                # a generator mid-step cannot be closed; the read loop sees the flag
                logger.debug("Stream is mid-read; it stops at the next chunk")
        return True

    def _run_turn(self, text: str) -> Optional[ChatMessage]:
        self.stream_error = None
        self._last_user_text = text
        outgoing = [m.to_wire() for m in self.messages if m.role != "system"]
        outgoing.append({"role": "user", "content": text})

        self.messages.append(ChatMessage(role="user", content=text))
        self.messages.append(ChatMessage(role="assistant", content=""))
        draft = Draft(self.messages, len(self.messages) - 1, lambda: self.is_streaming)
        self._publish_messages()

        if self.context.thread_id is None:
            thread = self._create_thread(temporary_title(text))
            if thread is not None:
                self.context = self.context.with_thread(thread.id)

        self.state = ConversationState.STREAMING
        try:
            self._stream_into(draft, outgoing)
        finally:
            draft.close()
            self._session = None
            self._chunks = None
            self.state = ConversationState.IDLE
        if draft.index < len(self.messages) and self.messages[draft.index].role == "assistant":
            return self.messages[draft.index].model_copy()
        return None

    def _stream_into(self, draft: Draft, outgoing: List[Dict[str, str]]) -> None:
        ctx = self.context
        session = StreamSession(self.interpreter)
        self._session = session
        reader: Optional[Iterator[str]] = None
        events: List[StreamEvent] = []
        try:
            self._chunks = self.agents_api.stream(ctx.agent_id or "", outgoing, ctx.thread_id, ctx.resource_id)
            if session.cancelled and hasattr(self._chunks, "close"):
                self._chunks.close()
            reader = iter(self._chunks)
            for chunk in reader:
                if session.cancelled:
                    break
                self._apply_deltas(draft, session.feed(chunk))
            events = session.close()
        except ApiError as e:
            events = session.fail(str(e) or e.__class__.__name__)
        finally:
            for source in (reader, self._chunks):
                close = getattr(source, "close", None)
                if close is not None:
                    close()
            self._chunks = None

        for event in events:
            if isinstance(event, TextDelta):
                self._apply_deltas(draft, [event])
            elif isinstance(event, End):
                self._finalize(draft)
            elif isinstance(event, ErrorEvent):
                self._recover(draft, outgoing, event.message)

    def _apply_deltas(self, draft: Draft, events: List[StreamEvent]) -> None:
        changed = False
        for event in events:
            if isinstance(event, TextDelta):
                changed = draft.append_delta(event.text) or changed
        if changed:
            self._publish_messages()

    def _recover(self, draft: Draft, outgoing: List[Dict[str, str]], error: str) -> None:
        """Streaming failed: record the error and try the non-streaming endpoint."""
        logger.warning("Streaming failed (%s); trying non-streaming endpoint", error)
        self.stream_error = error
        ctx = self.context
        reply = ""
        try:
            reply = response_text(
                self.agents_api.generate(ctx.agent_id or "", outgoing, ctx.thread_id, ctx.resource_id)
            )
        except ApiError as e:
            logger.error("Fallback generate call also failed: %s", e)

        if reply and draft.settle(reply):
            logger.info("Fallback generate call succeeded")
            self.stream_error = None
            self._publish_messages()
            self._finalize(draft)
            return

        draft.close()
        if not draft.text and draft.index == len(self.messages) - 1:
            self.messages.pop()
        self._append_system(STREAM_FAILED.format(error=error))

    def _finalize(self, draft: Draft) -> None:
        draft.close()
        self._maybe_autoname()
        artifact = self.extract(draft.text)
        if artifact is not None:
            logger.info("Publishing %s artifact (%d chars)", artifact.type, len(artifact.content))
            self._set_artifact(artifact)

    # --------- auto-naming ----------
    def _placeholder_titles(self) -> Set[str]:
        titles = {DEFAULT_THREAD_TITLE}
        name = self.context.agent_name
        if name:
            titles.add(AGENT_THREAD_TITLE.format(name=name))
            titles.add(AGENT_NEW_THREAD_TITLE.format(name=name))
        return titles

    def _rename_lock(self, thread_id: str) -> threading.Lock:
        with self._rename_guard:
            return self._rename_locks.setdefault(thread_id, threading.Lock())

    def _maybe_autoname(self) -> None:
        """Give a placeholder-titled thread the start of its first reply, once."""
        thread_id = self.context.thread_id
        agent_id = self.context.agent_id
        if self.memory is None or not thread_id or not agent_id:
            return
        with self._rename_lock(thread_id):
            if thread_id in self._renamed:
                return
            thread = self._find_thread(thread_id)
            if thread is None or thread.title not in self._placeholder_titles():
                return
            first_reply = next((m for m in self.messages if m.role == "assistant"), None)
            if first_reply is None:
                return
            title = reply_title(first_reply.content)
            try:
                self.memory.rename_thread(thread_id, agent_id, title, self.context.resource_id)
            except ApiError as e:
                logger.error("Updating title of thread %s failed: %s", thread_id, e)
                return
            logger.info("Renamed thread %s to %r", thread_id, title)
            self._renamed.add(thread_id)
            thread.title = title
            self.load_threads()

    # --------- artifacts ----------
    def preview_artifact(self, index: int) -> Optional[Artifact]:
        try:
            message = self.messages[index]
        except IndexError:
            return None
        artifact = artifact_for_message(message)
        if artifact is not None:
            self._set_artifact(artifact)
        return artifact

    def close_artifact(self) -> None:
        self._set_artifact(None)
