"""Typed conversation model shared by the decoder, normalizer and manager."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]
ArtifactType = Literal["html", "markdown", "code"]

CONVERSATIONAL_ROLES = ("user", "assistant", "system")


# -----------------------------
# Wire-facing models
# -----------------------------
class ChatMessage(BaseModel):
    """One message of a conversation. ``content`` is always a flat string."""

    model_config = ConfigDict(populate_by_name=True)

    role: Role
    content: str = ""
    id: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    def to_wire(self) -> Dict[str, str]:
        """Shape sent to the agent endpoints (role + content only)."""
        return {"role": self.role, "content": self.content}


class Thread(BaseModel):
    """A persisted conversation scoped to an (agent, resource) pair."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    title: str = ""
    agent_id: Optional[str] = Field(default=None, alias="agentId")
    resource_id: Optional[str] = Field(default=None, alias="resourceId")
    agent_name: Optional[str] = Field(default=None, alias="agentName")
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    @classmethod
    def from_record(
        cls,
        record: Dict[str, Any],
        *,
        agent_id: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> "Thread":
        """Build a Thread from a raw memory-store record.

        The server does not echo the agent id back, so the caller supplies
        the scope it asked for. Timestamps may arrive as strings or numbers.
        """
        data = dict(record)
        data.setdefault("agentId", agent_id)
        if not data.get("resourceId"):
            data["resourceId"] = data.get("resourceid") or resource_id
        for key in ("createdAt", "updatedAt"):
            if data.get(key) is not None and not isinstance(data[key], str):
                data[key] = str(data[key])
        data["id"] = str(data.get("id") or "")
        data["title"] = str(data.get("title") or "")
        return cls.model_validate(data)


class Agent(BaseModel):
    id: str
    name: str
    description: str = ""


# -----------------------------
# Stream frames & events
# -----------------------------
@dataclass(frozen=True)
class StreamFrame:
    """One decoded ``tag:payload`` line of the wire stream."""

    tag: str
    raw_payload: str


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class End:
    pass


StreamEvent = Union[TextDelta, ErrorEvent, End]


# -----------------------------
# Artifacts
# -----------------------------
def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Artifact:
    """A renderable sub-document extracted from assistant text.

    ``created`` is informational and excluded from equality, so extracting
    the same text twice yields equal artifacts.
    """

    type: ArtifactType
    title: str
    content: str
    language: Optional[str] = None
    created: datetime = field(default_factory=_utc_now, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.type, "title": self.title, "content": self.content}
        if self.language is not None:
            d["language"] = self.language
        d["created"] = self.created.isoformat(timespec="seconds")
        return d


def snapshot(messages: List[ChatMessage]) -> List[ChatMessage]:
    """Detached copies handed to read-model subscribers."""
    return [m.model_copy() for m in messages]
