"""Detect and extract a renderable sub-document from assistant text.

Detection order (first match wins):

1. the whole message is Markdown (a heading and more than five lines);
2. fenced ``html`` blocks, else a message dense with HTML tags;
3. fenced ``markdown`` blocks, else an untagged block that looks like Markdown;
4. the first fenced code block of any language.

Known ambiguity: a Markdown answer that contains an ``html`` example block is
classified by rule 1 and previews as Markdown, not as the HTML example.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .models import Artifact, ChatMessage

HEADING_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
FENCE_RE = re.compile(r"```[ \t]*([\w+#.-]*)[ \t]*\r?\n(.*?)```", re.DOTALL)
HTML_OPEN_TAG_RE = re.compile(r"<([a-zA-Z][a-zA-Z0-9-]*)(?:\s[^<>]*)?/?>")
FENCE_LINE_RE = re.compile(r"^[ \t]*```[\w+#.-]*[ \t]*$", re.MULTILINE)
LEADING_MARKDOWN_FENCE_RE = re.compile(r"\A\s*```[ \t]*(?:markdown|md)[ \t]*\r?\n", re.IGNORECASE)
TRAILING_FENCE_RE = re.compile(r"\r?\n?[ \t]*```[ \t]*\s*\Z")

MIN_MARKDOWN_LINES = 6
MIN_HTML_TAGS = 5
MARKDOWN_MARKERS = ("#", "-", "*", "[")

HTML_LANGS = {"html", "htm"}
MARKDOWN_LANGS = {"markdown", "md"}

HTML_TITLE = "HTML プレビュー"
MARKDOWN_TITLE = "Markdown プレビュー"
CODE_TITLE = "コード"


@dataclass(frozen=True)
class FencedBlock:
    language: str
    content: str


def iter_fenced_blocks(text: str) -> Iterator[FencedBlock]:
    """Yield fenced blocks left to right; a closing fence is never reused as an opener."""
    for m in FENCE_RE.finditer(text or ""):
        yield FencedBlock(language=m.group(1).strip(), content=m.group(2).strip())


def strip_stray_fences(content: str) -> str:
    """Drop a leading ```` ```markdown ```` line and an unterminated trailing fence.

    Interior fences are left alone; the trailing one is only removed when the
    fence lines do not pair up.
    """
    if not content:
        return ""
    out = LEADING_MARKDOWN_FENCE_RE.sub("", content, count=1)
    if len(FENCE_LINE_RE.findall(out)) % 2 == 1 and TRAILING_FENCE_RE.search(out):
        out = TRAILING_FENCE_RE.sub("", out, count=1)
    return out


def _artifact(kind: str, content: str, language: Optional[str] = None) -> Artifact:
    if kind == "html":
        title = HTML_TITLE
    elif kind == "markdown":
        title = MARKDOWN_TITLE
    else:
        title = f"{language} {CODE_TITLE}" if language else CODE_TITLE
    return Artifact(type=kind, title=title, content=strip_stray_fences(content), language=language)  # type: ignore[arg-type]


# -----------------------------
# Individual rules
# -----------------------------
def is_whole_markdown(text: str) -> bool:
    return bool(HEADING_RE.search(text)) and len(text.split("\n")) >= MIN_MARKDOWN_LINES


def extract_html(text: str, blocks: List[FencedBlock]) -> Optional[str]:
    fenced = [b.content for b in blocks if b.language.lower() in HTML_LANGS]
    if fenced:
        return "\n\n".join(fenced)
    if len(HTML_OPEN_TAG_RE.findall(text)) >= MIN_HTML_TAGS:
        return text
    return None


def extract_markdown(blocks: List[FencedBlock]) -> Optional[str]:
    fenced = [b.content for b in blocks if b.language.lower() in MARKDOWN_LANGS]
    if fenced:
        return "\n\n".join(fenced)
    for b in blocks:
        if not b.language and any(marker in b.content for marker in MARKDOWN_MARKERS):
            return b.content
    return None


# -----------------------------
# Public API
# -----------------------------
def extract_artifact(text: Optional[str]) -> Optional[Artifact]:
    """Return the artifact embedded in ``text``, or ``None``. Pure function."""
    if not text or not text.strip():
        return None

    if is_whole_markdown(text):
        return _artifact("markdown", text)

    blocks = list(iter_fenced_blocks(text))

    html = extract_html(text, blocks)
    if html is not None:
        return _artifact("html", html)

    markdown = extract_markdown(blocks)
    if markdown is not None:
        return _artifact("markdown", markdown)

    if blocks:
        first = blocks[0]
        return _artifact("code", first.content, language=first.language)

    return None


def artifact_for_message(message: ChatMessage) -> Optional[Artifact]:
    """Retroactive preview for a message already in the history."""
    if message.role != "assistant":
        return None
    return extract_artifact(message.content)
