"""``faq_lookup``: keyword search over the knowledge base and policy docs.

Two kinds of chunks are searched:

* every leaf of ``cleaning.yml`` (``policies.cancellation``,
  ``company.serviceAreas`` ...), rendered as plain text;
* every heading section of the markdown files in ``kb/docs``.

The question is lower-cased and split on non-alphanumerics; tokens of
two characters or fewer are dropped.  A chunk scores one point per token
it contains, and the first chunk with the highest non-zero score wins.
Chunks are built once and cached; :func:`reload_faq_sources` drops the
cache after the knowledge base is reloaded.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel

from concierge.kb import get_knowledge_base
from concierge.kb.loader import DOCS_DIR
from concierge.services.metrics import metrics
from concierge.tools.contact import RequiredText
from concierge.tools.registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)

MAX_ANSWER_CHARS = 600

SourceType = Literal["kb", "doc"]


@dataclass(frozen=True)
class KnowledgeChunk:
    key: str
    text: str
    source_type: SourceType

    @property
    def lowercase(self) -> str:
        return self.text.lower()


class FaqArgs(BaseModel):
    question: RequiredText


class FaqAnswer(BaseModel):
    found: bool
    answer: str | None = None
    source_type: SourceType | None = None
    source_key: str | None = None


# ── Chunk building ───────────────────────────────────────────────────


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(_render(item) for item in value)
    if isinstance(value, dict):
        return "; ".join(f"{key}: {_render(inner)}" for key, inner in value.items())
    return str(value)


def _kb_chunks() -> list[KnowledgeChunk]:
    chunks: list[KnowledgeChunk] = []

    def walk(entry: Any, prefix: str) -> None:
        if isinstance(entry, dict):
            for key, value in entry.items():
                walk(value, f"{prefix}.{key}" if prefix else key)
            return
        text = _render(entry)
        if text.strip():
            chunks.append(KnowledgeChunk(key=prefix, text=text, source_type="kb"))

    walk(get_knowledge_base().model_dump(by_alias=True), "")
    return chunks


def _split_into_sections(content: str) -> list[tuple[str, str]]:
    """Split markdown into ``(heading, body)`` pairs on ``#`` headings."""
    parts = re.split(r"^#+\s+(.+?)\s*$", content, flags=re.MULTILINE)
    sections: list[tuple[str, str]] = []
    preamble = parts[0].strip()
    if preamble:
        sections.append(("", preamble))
    for i in range(1, len(parts), 2):
        heading = parts[i].strip()
        body = parts[i + 1].strip() if i + 1 < len(parts) else ""
        sections.append((heading, body))
    return sections


def _doc_chunks(docs_dir: Path = DOCS_DIR) -> list[KnowledgeChunk]:
    if not docs_dir.is_dir():
        return []
    chunks: list[KnowledgeChunk] = []
    for path in sorted(docs_dir.glob("*.md")):
        sections = _split_into_sections(path.read_text(encoding="utf-8"))
        for index, (heading, body) in enumerate(sections, start=1):
            text = f"{heading}\n{body}".strip()
            if not text:
                continue
            key = f"{path.name}#{index}" if len(sections) > 1 else path.name
            chunks.append(KnowledgeChunk(key=key, text=text, source_type="doc"))
    return chunks


_chunks: list[KnowledgeChunk] | None = None


def _get_chunks() -> list[KnowledgeChunk]:
    global _chunks
    if _chunks is None:
        _chunks = _kb_chunks() + _doc_chunks()
        logger.debug("FAQ index built with %d chunks", len(_chunks))
    return _chunks


def reload_faq_sources() -> None:
    global _chunks
    _chunks = None


# ── Lookup ───────────────────────────────────────────────────────────


def _truncate(answer: str) -> str:
    if len(answer) > MAX_ANSWER_CHARS:
        return answer[: MAX_ANSWER_CHARS - 3] + "..."
    return answer


def answer_faq(question: str) -> FaqAnswer:
    tokens = [t for t in re.split(r"[^a-z0-9]+", question.lower()) if len(t) > 2]
    if not tokens:
        return FaqAnswer(found=False)

    best: KnowledgeChunk | None = None
    best_score = 0
    for chunk in _get_chunks():
        text = chunk.lowercase
        score = sum(1 for token in tokens if token in text)
        if score > best_score:
            best, best_score = chunk, score

    if best is None:
        return FaqAnswer(found=False)
    return FaqAnswer(
        found=True,
        answer=_truncate(best.text),
        source_type=best.source_type,
        source_key=best.key,
    )


async def _execute(args: FaqArgs, context: ToolContext) -> dict:
    result = answer_faq(args.question)
    if result.found:
        metrics.record_funnel("deflection_success")
    return result.model_dump(exclude_none=True)


FAQ_TOOL = ToolSpec(
    name="faq_lookup",
    description=(
        "Answer policy or pricing questions using the cleaning knowledge base and "
        "approved docs. Respond with not_found when information is unavailable."
    ),
    args_model=FaqArgs,
    executor=_execute,
)
