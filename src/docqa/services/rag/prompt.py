from __future__ import annotations

from dataclasses import dataclass
import re

from docqa.services.chat_cache import CachedMessage
from docqa.services.rag.types import Citation, SearchHit

SYSTEM_PROMPT = (
    "You are a helpful assistant answering questions about the user's document. "
    "Answer using only the provided sources when possible. Cite every source you "
    "use with its marker, for example [S1]. If the sources are insufficient, say so "
    "briefly."
)
NO_CONTEXT_TEXT = "No relevant context found in the document."
SNIPPET_LENGTH = 150

_SOURCE_MARKER = re.compile(r"\[S(\d+)\]")


@dataclass(frozen=True)
class AssembledPrompt:
    messages: list[dict[str, str]]
    sources: list[SearchHit]
    history: list[CachedMessage]
    size: int


def _format_source(label: int, hit: SearchHit) -> str:
    return f"[S{label}] (page {hit.page})\n{hit.text}"


def _context_block(hits: list[SearchHit], *, document_scoped: bool) -> str | None:
    if hits:
        return "\n\n".join(_format_source(label, hit) for label, hit in enumerate(hits, start=1))
    if document_scoped:
        return NO_CONTEXT_TEXT
    return None


def _render(
    user_message: str,
    hits: list[SearchHit],
    history: list[CachedMessage],
    *,
    document_scoped: bool,
) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    messages.extend({"role": message.role, "content": message.content} for message in history)

    context = _context_block(hits, document_scoped=document_scoped)
    if context is None:
        content = user_message
    else:
        content = f"Sources:\n{context}\n\nQuestion: {user_message}"
    messages.append({"role": "user", "content": content})
    return messages


def _size(messages: list[dict[str, str]]) -> int:
    return sum(len(message["content"]) for message in messages)


def build_prompt(
    user_message: str,
    hits: list[SearchHit],
    history: list[CachedMessage],
    *,
    max_chars: int,
    document_scoped: bool,
) -> AssembledPrompt:
    """Assemble chat messages under a character budget.

    Over budget, whole history turns go first (oldest first), then sources
    (lowest similarity first). The new user message is never cut, so the
    result can still exceed ``max_chars`` when the message alone does.
    """
    kept_history = list(history)
    # drop from the lowest similarity, keep display order by rank
    kept_hits = sorted(hits, key=lambda hit: (-hit.similarity, hit.chunk_index))

    messages = _render(user_message, kept_hits, kept_history, document_scoped=document_scoped)
    while _size(messages) > max_chars and (kept_history or kept_hits):
        if kept_history:
            # a turn is a user message plus its reply
            del kept_history[:2]
        else:
            kept_hits.pop()
        messages = _render(user_message, kept_hits, kept_history, document_scoped=document_scoped)

    return AssembledPrompt(
        messages=messages,
        sources=kept_hits,
        history=kept_history,
        size=_size(messages),
    )


def _snippet(text: str) -> str:
    if len(text) <= SNIPPET_LENGTH:
        return text
    return text[:SNIPPET_LENGTH] + "..."


def to_citation(hit: SearchHit) -> Citation:
    return Citation(
        page=hit.page,
        snippet=_snippet(hit.text),
        chunk_index=hit.chunk_index,
        similarity=hit.similarity,
    )


def extract_citations(answer: str, sources: list[SearchHit]) -> list[Citation]:
    """Map ``[S<n>]`` markers in the answer back to the prompt's sources.

    Markers outside the source range are ignored. When the answer cites
    nothing, every source that went into the prompt is attached.
    """
    referenced: list[int] = []
    for match in _SOURCE_MARKER.finditer(answer):
        position = int(match.group(1)) - 1
        if 0 <= position < len(sources) and position not in referenced:
            referenced.append(position)

    if not referenced:
        return [to_citation(hit) for hit in sources]
    return [to_citation(sources[position]) for position in referenced]
