"""Map decoded frames to stream events.

The agent server has been seen speaking at least three incompatible line
shapes on the same endpoint:

    0:"Hello"                                  quoted text part
    data: {"text": "Hello"}                    server-sent-events style
    2:{"content": [{"type": "text", ...}]}     structured content part

Each shape is handled by one matcher. Matchers are tried in order and the
first one that claims a frame decides its events; a frame nobody claims is
dropped. A matcher that blows up on a frame only loses that frame.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Iterable, List, Optional, Sequence

from .decoder import FrameDecoder
from .models import End, ErrorEvent, StreamEvent, StreamFrame, TextDelta

logger = logging.getLogger(__name__)

SSE_TAG = "data"
SSE_DONE = "[DONE]"
SSE_TEXT_KEYS = ("text", "content", "delta")


# -----------------------------
# Matchers
# -----------------------------
class FrameMatcher:
    """One recognised frame shape.

    ``match`` returns ``None`` when the frame is not this matcher's shape so
    the next matcher gets a chance, and a (possibly empty) list of events when
    it is. An empty list means "mine, but nothing to emit".
    """

    name = "frame"

    def match(self, frame: StreamFrame) -> Optional[List[StreamEvent]]:
        raise NotImplementedError


class QuotedTextMatcher(FrameMatcher):
    """``<tag>:"..."``: the payload is a JSON string literal."""

    name = "quoted-text"

    def __init__(self, tags: Optional[Iterable[str]] = None) -> None:
        self.tags = frozenset(tags) if tags is not None else None

    def match(self, frame: StreamFrame) -> Optional[List[StreamEvent]]:
        if self.tags is not None and frame.tag not in self.tags:
            return None
        payload = frame.raw_payload.strip()
        if len(payload) < 2 or not (payload.startswith('"') and payload.endswith('"')):
            return None
        try:
            text = json.loads(payload)
        except ValueError:
            text = payload[1:-1].replace('\\"', '"')
        if not isinstance(text, str):
            return None
        return [TextDelta(text)] if text else []


class SseDataMatcher(FrameMatcher):
    """``data: {...}`` lines; unparsable payloads are swallowed, not fatal."""

    name = "sse-data"

    def match(self, frame: StreamFrame) -> Optional[List[StreamEvent]]:
        if frame.tag != SSE_TAG:
            return None
        payload = frame.raw_payload.strip()
        if not payload or payload == SSE_DONE:
            return []
        try:
            data = json.loads(payload)
        except ValueError:
            logger.debug("Dropping unparsable SSE payload: %.80r", payload)
            return []
        if not isinstance(data, dict):
            return []
        for key in SSE_TEXT_KEYS:
            value = data.get(key)
            if isinstance(value, str) and value:
                return [TextDelta(value)]
        return []


class StructuredContentMatcher(FrameMatcher):
    """Any other tag whose payload is a JSON object carrying a ``content`` list."""

    name = "structured-content"

    def match(self, frame: StreamFrame) -> Optional[List[StreamEvent]]:
        payload = frame.raw_payload.strip()
        if not payload or payload[0] not in "{[":
            return None
        try:
            data: Any = json.loads(payload)
        except ValueError:
            return None
        if not isinstance(data, dict) or not isinstance(data.get("content"), list):
            return []
        events: List[StreamEvent] = []
        for part in data["content"]:
            if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str):
                events.append(TextDelta(part["text"]))
        return events


def default_matchers(text_tags: Optional[Iterable[str]] = None) -> List[FrameMatcher]:
    return [QuotedTextMatcher(text_tags), SseDataMatcher(), StructuredContentMatcher()]


# -----------------------------
# Interpreter
# -----------------------------
class FrameInterpreter:
    """Classify frames with an ordered list of matchers."""

    def __init__(self, matchers: Optional[Sequence[FrameMatcher]] = None) -> None:
        self.matchers: List[FrameMatcher] = list(matchers) if matchers is not None else default_matchers()

    def interpret(self, frame: StreamFrame) -> List[StreamEvent]:
        for matcher in self.matchers:
            try:
                events = matcher.match(frame)
            except Exception as e:  # one bad frame must not end the stream
                logger.warning("Matcher %s failed on tag %r: %s", matcher.name, frame.tag, e)
                return []
            if events is not None:
                return events
        logger.debug("Dropping unrecognised frame tag=%r payload=%.80r", frame.tag, frame.raw_payload)
        return []

    def interpret_all(self, frames: Iterable[StreamFrame]) -> List[StreamEvent]:
        out: List[StreamEvent] = []
        for frame in frames:
            out.extend(self.interpret(frame))
        return out


# -----------------------------
# One stream = one session
# -----------------------------
class StreamSession:
    """Decoder + interpreter for a single response stream.

    ``feed`` handles in-band text; ``close`` and ``fail`` are the out-of-band
    channel that yields the terminal ``End`` / ``ErrorEvent``. After
    ``cancel`` every call returns nothing, and the pending partial line is
    thrown away rather than interpreted.
    """

    def __init__(self, interpreter: Optional[FrameInterpreter] = None) -> None:
        self.interpreter = interpreter or FrameInterpreter()
        self.decoder = FrameDecoder()
        self._cancelled = False
        self._finished = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: str) -> List[StreamEvent]:
        if self._cancelled or self._finished:
            return []
        return self.interpreter.interpret_all(self.decoder.feed(chunk))

    def close(self) -> List[StreamEvent]:
        if self._cancelled or self._finished:
            return []
        self._finished = True
        events = self.interpreter.interpret_all(self.decoder.flush())
        events.append(End())
        return events

    def fail(self, message: str) -> List[StreamEvent]:
        if self._cancelled or self._finished:
            return []
        self._finished = True
        self.decoder.reset()
        return [ErrorEvent(message)]

    def cancel(self) -> None:
        self._cancelled = True
        self.decoder.reset()


def decode_text(text: str, interpreter: Optional[FrameInterpreter] = None) -> List[str]:
    """Decode a complete stream body into its text deltas."""
    session = StreamSession(interpreter)
    events = session.feed(text) + session.close()
    return [e.text for e in events if isinstance(e, TextDelta)]
