"""HTTP clients for the agent server (agents, streaming, memory threads)."""
from __future__ import annotations

import json
import logging
import socket
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Type

import httpx

from .errors import (
    AgentUnavailableError,
    ApiError,
    MemoryNotInitializedError,
    MemoryStoreError,
    StreamTransportError,
)
from .models import Agent, Thread

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
UA = "AgentChatClient/0.1"
DEFAULT_BASE_URL = "http://localhost:4111"
TIMEOUT = httpx.Timeout(connect=5.0, read=60.0, write=10.0, pool=5.0)
MAX_RETRIES = 3
BASE_DELAY = 0.75  # initial backoff delay
NOT_INITIALIZED_MARKER = "not initialized"
UNNAMED_AGENT = "名前なし"


# -----------------------------------------------------------------------------
# Response helpers
# -----------------------------------------------------------------------------
def _detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(data, dict):
        for key in ("error", "message", "detail"):
            if data.get(key):
                return str(data[key])
    return json.dumps(data, ensure_ascii=False)[:500]


def is_not_initialized(detail: str) -> bool:
    return NOT_INITIALIZED_MARKER in (detail or "").lower()


def parse_agents(payload: Any) -> List[Agent]:
    """The catalogue is either a list or an ``{agentId: {...}}`` mapping."""
    entries: List[Dict[str, Any]] = []
    if isinstance(payload, list):
        entries = [e for e in payload if isinstance(e, dict)]
    elif isinstance(payload, dict):
        for agent_id, info in payload.items():
            info = info if isinstance(info, dict) else {}
            entries.append({"id": info.get("id") or agent_id, **{k: v for k, v in info.items() if k != "id"}})

    agents: List[Agent] = []
    for e in entries:
        if not e.get("id"):
            continue
        agents.append(
            Agent(
                id=str(e["id"]),
                name=str(e.get("name") or e.get("modelId") or UNNAMED_AGENT),
                description=str(e.get("instructions") or e.get("description") or ""),
            )
        )
    return agents


def response_text(response: Any) -> str:
    """Pull the reply text out of a non-streaming response."""
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        for key in ("text", "response", "content"):
            value = response.get(key)
            if value:
                return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    return ""


# -----------------------------------------------------------------------------
# Base client
# -----------------------------------------------------------------------------
class ApiClient:
    """Shared plumbing: base URL, timeouts, retrying GETs, error mapping."""

    error_cls: Type[ApiError] = ApiError

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        http: Optional[httpx.Client] = None,
        timeout: httpx.Timeout = TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff: float = BASE_DELAY,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, int(max_retries))
        self.backoff = float(backoff)
        self._owns_http = http is None
        self.http = http or httpx.Client(timeout=timeout, headers={"User-Agent": UA})

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _error(self, response: httpx.Response) -> ApiError:
        return self.error_cls(f"APIエラー: {response.status_code}", status=response.status_code, detail=_detail(response))

    def _check(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise self._error(response)

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET with linear backoff; 4xx answers are not retried."""
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                r = self.http.get(self._url(path), params=params)
                if r.status_code < 500:
                    self._check(r)
                    return r.json()
                last_exc = self._error(r)
            except httpx.HTTPError as e:
                last_exc = e
            except ValueError as e:
                raise self.error_cls(f"Invalid JSON from {path}: {e}") from e
            if attempt < self.max_retries:
                delay = self.backoff * attempt
                logger.warning("GET %s retry %d: %s (sleep %.2fs)", path, attempt, last_exc, delay)
                time.sleep(delay)

        logger.error("GET %s failed: %s", path, last_exc)
        if isinstance(last_exc, ApiError):
            raise last_exc
        raise self.error_cls(str(last_exc) or "request failed") from last_exc

    def _send_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Non-idempotent calls go out exactly once."""
        try:
            r = self.http.request(method, self._url(path), params=params, json=body)
        except httpx.HTTPError as e:
            raise self.error_cls(str(e) or e.__class__.__name__) from e
        self._check(r)
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError:
            return r.text


# -----------------------------------------------------------------------------
# Streaming response
# -----------------------------------------------------------------------------
class ChunkStream:
    """One POST response stream, iterated as raw text chunks.

    ``close`` may be called from another thread while a read is blocked: it
    shuts the socket down and closes the response, and iteration then ends
    quietly. Transport problems on an open stream surface as
    :class:`StreamTransportError`.
    """

    def __init__(self, http: httpx.Client, url: str, body: Dict[str, Any]) -> None:
        self.http = http
        self.url = url
        self.body = body
        self._lock = threading.Lock()
        self._response: Optional[httpx.Response] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[str]:
        if self._closed:
            return
        try:
            with self.http.stream("POST", self.url, json=self.body) as r:
                with self._lock:
                    if self._closed:
                        return
                    self._response = r
                try:
                    if r.status_code >= 400:
                        r.read()
                        raise StreamTransportError(
                            f"APIエラー: {r.status_code}", status=r.status_code, detail=_detail(r)
                        )
                    for chunk in r.iter_text():
                        if self._closed:
                            return
                        if chunk:
                            yield chunk
                finally:
                    # a finished response may already be back in the pool
                    with self._lock:
                        self._response = None
        except (httpx.HTTPError, httpx.StreamError, OSError) as e:
            if self._closed:
                logger.debug("Stream read ended by close: %s", e)
                return
            raise StreamTransportError(str(e) or e.__class__.__name__) from e

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            r = self._response
        if r is None:
            return
        network = r.extensions.get("network_stream")
        sock = network.get_extra_info("socket") if network is not None else None
        try:
            if sock is not None:
                sock.shutdown(socket.SHUT_RDWR)
            r.close()
        except (httpx.HTTPError, httpx.StreamError, OSError) as e:
            logger.debug("Closing stream response: %s", e)


# -----------------------------------------------------------------------------
# Agents
# -----------------------------------------------------------------------------
class AgentClient(ApiClient):
    """Agent catalogue plus the streaming and non-streaming chat endpoints."""

    error_cls = AgentUnavailableError

    def health(self) -> bool:
        """Probe the server root, then the agent list as a second chance."""
        for path in ("", "/api/agents"):
            try:
                r = self.http.get(self._url(path), timeout=5.0)
                if r.status_code == 200:
                    return True
            except httpx.HTTPError as e:
                logger.info("Health probe %s failed: %s", path or "/", e)
        return False

    def list_agents(self) -> List[Agent]:
        return parse_agents(self._get_json("/api/agents"))

    def get_agent(self, agent_id: str) -> Dict[str, Any]:
        data = self._get_json(f"/api/agents/{agent_id}")
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _chat_body(messages: Sequence[Dict[str, str]], thread_id: Optional[str], resource_id: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {"messages": list(messages), "resourceId": resource_id}
        if thread_id:
            body["threadId"] = thread_id
        return body

    def stream(
        self,
        agent_id: str,
        messages: Sequence[Dict[str, str]],
        thread_id: Optional[str],
        resource_id: str,
    ) -> "ChunkStream":
        """Open the response stream lazily; iterate it for raw text chunks."""
        url = self._url(f"/api/agents/{agent_id}/stream")
        return ChunkStream(self.http, url, self._chat_body(messages, thread_id, resource_id))

    def generate(
        self,
        agent_id: str,
        messages: Sequence[Dict[str, str]],
        thread_id: Optional[str],
        resource_id: str,
    ) -> Any:
        return self._send_json(
            "POST",
            f"/api/agents/{agent_id}/generate",
            body=self._chat_body(messages, thread_id, resource_id),
        )


# -----------------------------------------------------------------------------
# Memory threads
# -----------------------------------------------------------------------------
class MemoryClient(ApiClient):
    """Thread CRUD against the memory endpoints. Returns raw records."""

    error_cls = MemoryStoreError

    def _error(self, response: httpx.Response) -> ApiError:
        detail = _detail(response)
        if is_not_initialized(detail):
            return MemoryNotInitializedError(detail, status=response.status_code, detail=detail)
        return super()._error(response)

    @staticmethod
    def _reject_inline_error(data: Any) -> Any:
        # some deployments answer 200 with {"error": "..."}
        if isinstance(data, dict) and data.get("error") and "id" not in data:
            detail = str(data["error"])
            if is_not_initialized(detail):
                raise MemoryNotInitializedError(detail, detail=detail)
            raise MemoryStoreError(detail, detail=detail)
        return data

    def create_thread(self, agent_id: str, title: str, resource_id: str) -> Thread:
        data = self._send_json(
            "POST",
            "/api/memory/threads",
            params={"agentId": agent_id},
            body={"title": title, "resourceId": resource_id},
        )
        data = self._reject_inline_error(data)
        if not isinstance(data, dict) or not data.get("id"):
            raise MemoryStoreError("Thread creation returned no thread id")
        return Thread.from_record(data, agent_id=agent_id, resource_id=resource_id)

    def list_threads(self, agent_id: str, resource_id: str) -> List[Thread]:
        data = self._reject_inline_error(
            self._get_json("/api/memory/threads", params={"agentId": agent_id, "resourceid": resource_id})
        )
        if not isinstance(data, list):
            logger.warning("Thread list payload is not a list: %s", type(data).__name__)
            return []
        return [
            Thread.from_record(t, agent_id=agent_id, resource_id=resource_id)
            for t in data
            if isinstance(t, dict) and t.get("id")
        ]

    def get_messages(self, thread_id: str, agent_id: str, resource_id: str) -> Any:
        return self._reject_inline_error(
            self._get_json(
                f"/api/memory/threads/{thread_id}/messages",
                params={"agentId": agent_id, "resourceid": resource_id},
            )
        )

    def rename_thread(self, thread_id: str, agent_id: str, title: str, resource_id: str) -> Optional[Thread]:
        data = self._send_json(
            "PATCH",
            f"/api/memory/threads/{thread_id}",
            params={"agentId": agent_id},
            body={"title": title, "resourceId": resource_id},
        )
        data = self._reject_inline_error(data)
        if isinstance(data, dict) and data.get("id"):
            return Thread.from_record(data, agent_id=agent_id, resource_id=resource_id)
        return None

    def delete_thread(self, thread_id: str, agent_id: str) -> None:
        self._reject_inline_error(
            self._send_json("DELETE", f"/api/memory/threads/{thread_id}", params={"agentId": agent_id})
        )


def open_clients(cfg: Dict[str, Any]) -> Tuple[AgentClient, MemoryClient]:
    """Build both clients from the ``api`` config section, sharing one connection pool."""
    api = (cfg or {}).get("api", {}) if isinstance(cfg, dict) else {}
    timeout = httpx.Timeout(
        connect=float(api.get("connect_timeout", 5.0)),
        read=float(api.get("read_timeout", 60.0)),
        write=10.0,
        pool=5.0,
    )
    http = httpx.Client(timeout=timeout, headers={"User-Agent": UA})
    kwargs = dict(
        http=http,
        max_retries=int(api.get("max_retries", MAX_RETRIES)),
        backoff=float(api.get("backoff", BASE_DELAY)),
    )
    base_url = str(api.get("base_url") or DEFAULT_BASE_URL)
    return AgentClient(base_url, **kwargs), MemoryClient(base_url, **kwargs)
