"""Canonicalise message records read back from the memory store.

Stored history comes back in whatever shape the agent framework persisted:
plain strings from older clients, ``{role, content}`` dicts where ``content``
is a string or a list of typed parts, legacy ``message``/``text`` fields, tool
results, and ``{messages: [...]}`` envelopes. Everything is folded into
:class:`~chat_client.models.ChatMessage` with a flat string ``content``.
A record that cannot be read yields a visible placeholder or is excluded;
it never raises, so one bad record cannot block a whole thread.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from .models import CONVERSATIONAL_ROLES, ChatMessage

logger = logging.getLogger(__name__)

TOOL_MARKERS = frozenset({"tool", "tool-result", "tool_result"})
PLACEHOLDER_CONTENT = "(表示できないメッセージ)"

_MISSING = object()


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _is_tool_record(record: Dict[str, Any]) -> bool:
    for key in ("role", "type"):
        value = record.get(key)
        if isinstance(value, str) and value.lower() in TOOL_MARKERS:
            return True
    return False


def _resolve_role(record: Dict[str, Any]) -> str:
    role = record.get("role")
    if isinstance(role, str) and role:
        return role.lower()
    return "user" if record.get("isUser") else "assistant"


def _text_from_parts(parts: List[Any]) -> Optional[str]:
    for part in parts:
        if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str):
            return part["text"]
    return None


def _content_of(record: Dict[str, Any]) -> Any:
    """Return the flattened content, ``None`` to exclude, or ``_MISSING``."""
    content = record.get("content")
    if isinstance(content, list) and content:
        return _text_from_parts(content)
    if isinstance(content, str):
        return content
    for key in ("message", "text"):
        value = record.get(key)
        if value is not None and value != "":
            return _stringify(value)
    return _MISSING


def normalize_message(record: Any) -> Optional[ChatMessage]:
    """Convert one raw record into a ChatMessage, or ``None`` to drop it."""
    if isinstance(record, ChatMessage):
        return record.model_copy()
    if isinstance(record, str):
        return ChatMessage(role="assistant", content=record)
    if not isinstance(record, dict):
        logger.debug("Skipping non-record history entry: %r", type(record).__name__)
        return None
    if _is_tool_record(record):
        return None

    role = _resolve_role(record)
    if role not in CONVERSATIONAL_ROLES:
        logger.debug("Skipping record with unknown role %r", role)
        return None

    content = _content_of(record)
    if content is None:
        logger.debug("Skipping record %r: content parts carry no text", record.get("id"))
        return None
    if content is _MISSING:
        logger.warning("Record %r has no readable content; using placeholder", record.get("id"))
        content = PLACEHOLDER_CONTENT

    msg_id = record.get("id") or record.get("_id")
    created = record.get("createdAt") or record.get("timestamp")
    return ChatMessage(
        role=role,  # type: ignore[arg-type]
        content=content,
        id=str(msg_id) if msg_id is not None else None,
        created_at=str(created) if created is not None else None,
    )


def _is_envelope(item: Any) -> bool:
    return isinstance(item, dict) and isinstance(item.get("messages"), list) and "role" not in item


def normalize_history(payload: Any) -> List[ChatMessage]:
    """Normalise a whole history payload.

    ``payload`` is a list of records or a ``{messages: [...]}`` envelope.
    Nested lists/envelopes inside the list are flattened one level.
    """
    if _is_envelope(payload):
        payload = payload["messages"]
    if not isinstance(payload, list):
        if payload is not None:
            logger.warning("Unexpected history payload type: %s", type(payload).__name__)
        return []

    out: List[ChatMessage] = []
    for item in payload:
        group: Iterable[Any]
        if isinstance(item, list):
            group = item
        elif _is_envelope(item):
            group = item["messages"]
        else:
            group = (item,)
        for record in group:
            msg = normalize_message(record)
            if msg is not None:
                out.append(msg)
    return out
