from __future__ import annotations

from docqa.services.rag.types import ChunkDraft, PageText


def _break_point(text: str, *, end: int, min_end: int) -> int:
    """Prefer a paragraph, then sentence, then word boundary before ``end``."""
    paragraph = text.rfind("\n\n", min_end, end)
    if paragraph != -1:
        return paragraph + 2

    for marker in (". ", "? ", "! ", ".\n"):
        sentence = text.rfind(marker, min_end, end)
        if sentence != -1:
            return sentence + len(marker)

    word = text.rfind(" ", min_end, end)
    if word != -1:
        return word + 1

    return end


def _chunk_text(text: str, *, chunk_size: int, chunk_overlap: int) -> list[tuple[int, int, str]]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if chunk_overlap < 0:
        raise ValueError("chunk_overlap must be >= 0")
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")

    spans: list[tuple[int, int, str]] = []
    cursor = 0
    text_length = len(text)

    while cursor < text_length:
        end = min(text_length, cursor + chunk_size)
        if end < text_length:
            # never break inside the overlap window, the cursor must advance
            end = _break_point(text, end=end, min_end=cursor + chunk_overlap + 1)

        chunk = text[cursor:end].strip()
        if chunk:
            spans.append((cursor, end, chunk))

        if end >= text_length:
            break
        cursor = end - chunk_overlap

    return spans


def chunk_pages(
    document_id: str,
    pages: list[PageText],
    *,
    chunk_size: int,
    chunk_overlap: int,
) -> list[ChunkDraft]:
    """Split every page into overlapping chunks with a document-wide sequence index.

    Chunks never span pages, so each one carries a single page number for
    citations. Empty pages contribute no chunks.
    """
    drafts: list[ChunkDraft] = []

    for page in pages:
        spans = _chunk_text(page.text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        for start, end, chunk_text in spans:
            drafts.append(
                ChunkDraft(
                    document_id=document_id,
                    page=page.page,
                    chunk_index=len(drafts),
                    text=chunk_text,
                    metadata={"start_char": start, "end_char": end},
                )
            )

    return drafts
