"""Line framing for the agent stream.

The agent server writes one ``tag:payload`` record per line, but the
transport hands us text in arbitrary pieces: a chunk can end in the middle of
a tag, a payload or a multi-byte character sequence that was already decoded.
:class:`FrameDecoder` buffers the unterminated tail and only ever emits
complete lines.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from .models import StreamFrame

logger = logging.getLogger(__name__)


def parse_line(line: str) -> Optional[StreamFrame]:
    """Split a candidate line at its first ``:``; lines without one are dropped."""
    if line.endswith("\r"):
        line = line[:-1]
    tag, sep, payload = line.partition(":")
    if not sep:
        if line.strip():
            logger.debug("Dropping untagged stream line: %.80r", line)
        return None
    return StreamFrame(tag=tag.strip(), raw_payload=payload)


class FrameDecoder:
    """Stateful ``feed``/``flush`` decoder. Never raises on content."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def reset(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> List[StreamFrame]:
        if not chunk:
            return []
        parts = (self._buffer + chunk).split("\n")
        self._buffer = parts.pop()
        return self._frames(parts)

    def flush(self) -> List[StreamFrame]:
        """Emit whatever is left when the stream ends without a final newline."""
        tail, self._buffer = self._buffer, ""
        if not tail:
            return []
        return self._frames([tail])

    @staticmethod
    def _frames(lines: List[str]) -> List[StreamFrame]:
        out: List[StreamFrame] = []
        for line in lines:
            frame = parse_line(line)
            if frame is not None:
                out.append(frame)
        return out
