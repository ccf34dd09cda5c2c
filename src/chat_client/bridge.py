"""FastAPI bridge exposing one ConversationManager to a local UI."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import __version__
from .config import load_config
from .conversation import ConversationManager
from .errors import ConversationBusyError, NoAgentSelectedError
from .models import ChatMessage

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class SelectAgentRequest(BaseModel):
    agent_id: str = Field(..., min_length=1, alias="agentId")

    model_config = {"populate_by_name": True}


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    reply: Optional[ChatMessage] = None
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


# -----------------------------
# Utilities
# -----------------------------
def _dump_messages(manager: ConversationManager) -> List[Dict[str, Any]]:
    return [m.model_dump(by_alias=True, exclude_none=True) for m in manager.messages]


def _dump_threads(manager: ConversationManager) -> List[Dict[str, Any]]:
    return [t.model_dump(by_alias=True, exclude_none=True) for t in manager.threads]


def _chat_response(manager: ConversationManager, reply: Optional[ChatMessage]) -> Dict[str, Any]:
    return ChatResponse(
        reply=reply,
        thread_id=manager.current_thread_id,
        error=manager.stream_error,
    ).model_dump(by_alias=True)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    manager: Optional[ConversationManager] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    # CORS
    cors_origins = cfg.get("bridge", {}).get("cors_origins", ["*"])

    manager = manager or ConversationManager.from_config(cfg)

    app = FastAPI(title="Agent Chat Bridge", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "resource_id": manager.context.resource_id,
            "agent_id": manager.context.agent_id,
            "thread_id": manager.current_thread_id,
            "state": manager.state.value,
        }

    # --------- agents ----------
    @app.get("/agents")
    def list_agents() -> List[Dict[str, Any]]:
        return [a.model_dump() for a in manager.load_agents()]

    @app.post("/agents/select")
    def select_agent(req: SelectAgentRequest) -> Dict[str, Any]:
        agents = manager.agents or manager.load_agents()
        agent = next((a for a in agents if a.id == req.agent_id), None)
        if agent is None:
            raise HTTPException(status_code=404, detail=f"Unknown agent: {req.agent_id}")
        try:
            thread = manager.select_agent(agent)
        except ConversationBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {
            "agent": agent.model_dump(),
            "threadId": thread.id if thread else None,
            "messages": _dump_messages(manager),
        }

    # --------- threads ----------
    @app.get("/threads")
    def list_threads() -> List[Dict[str, Any]]:
        manager.load_threads()
        return _dump_threads(manager)

    @app.post("/threads")
    def new_thread() -> Dict[str, Any]:
        try:
            thread = manager.start_new_chat()
        except ConversationBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"threadId": thread.id if thread else None, "messages": _dump_messages(manager)}

    @app.post("/threads/{thread_id}/select")
    def select_thread(thread_id: str) -> Dict[str, Any]:
        try:
            loaded = manager.select_thread(thread_id)
        except ConversationBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if loaded is None:
            raise HTTPException(status_code=404, detail=f"Unknown thread: {thread_id}")
        return {
            "threadId": loaded.thread_id,
            "messages": _dump_messages(manager),
            "warning": loaded.warning,
            "error": loaded.error,
        }

    @app.delete("/threads/{thread_id}")
    def delete_thread(thread_id: str) -> Dict[str, Any]:
        try:
            ok = manager.delete_thread(thread_id)
        except ConversationBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if not ok:
            raise HTTPException(status_code=502, detail=manager.stream_error or "Thread could not be deleted.")
        return {"deleted": thread_id, "threadId": manager.current_thread_id}

    # --------- messages & turns ----------
    @app.get("/messages")
    def get_messages() -> Dict[str, Any]:
        return {
            "threadId": manager.current_thread_id,
            "streaming": manager.is_streaming,
            "messages": _dump_messages(manager),
            "warning": manager.history_warning,
            "error": manager.stream_error,
        }

    @app.post("/chat")
    def chat(req: ChatRequest) -> Dict[str, Any]:
        msg = (req.message or "").strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        try:
            reply = manager.send_message(msg)
        except ConversationBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except NoAgentSelectedError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _chat_response(manager, reply)

    @app.post("/chat/retry")
    def retry() -> Dict[str, Any]:
        if not manager.stream_error:
            raise HTTPException(status_code=400, detail="Nothing to retry.")
        try:
            reply = manager.retry()
        except ConversationBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except NoAgentSelectedError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _chat_response(manager, reply)

    @app.post("/chat/cancel")
    def cancel() -> Dict[str, Any]:
        return {"cancelled": manager.cancel()}

    # --------- artifact ----------
    @app.get("/artifact")
    def get_artifact() -> Dict[str, Any]:
        return {"artifact": manager.artifact.to_dict() if manager.artifact else None}

    @app.delete("/artifact")
    def close_artifact() -> Dict[str, Any]:
        manager.close_artifact()
        return {"artifact": None}

    @app.post("/messages/{index}/preview")
    def preview(index: int) -> Dict[str, Any]:
        artifact = manager.preview_artifact(index)
        if artifact is None:
            raise HTTPException(status_code=404, detail="No previewable content in this message.")
        return {"artifact": artifact.to_dict()}

    return app
