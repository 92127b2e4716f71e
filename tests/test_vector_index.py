from datetime import datetime, timezone

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.errors import NotFoundError, ValidationError
from docqa.models import DocumentRecord
from docqa.services.rag.types import ChunkDraft, EmbeddedChunk
from docqa.services.rag.vector_index import (
    VectorIndex,
    cosine_similarity,
    decode_embedding,
    encode_embedding,
)


def _add_document(engine: Engine, document_id: str, owner_id: str = "user-1") -> None:
    now = datetime.now(timezone.utc)
    with Session(engine) as session, session.begin():
        session.add(
            DocumentRecord(
                id=document_id,
                owner_id=owner_id,
                display_name=f"{document_id}.pdf",
                content_type="application/pdf",
                byte_size=10,
                uploaded_at=now,
                processing_status="completed",
                chunk_count=0,
                is_ready=True,
                updated_at=now,
            )
        )


def _chunk(
    document_id: str,
    chunk_index: int,
    embedding: list[float],
    *,
    page: int = 1,
    text: str | None = None,
) -> EmbeddedChunk:
    return EmbeddedChunk(
        draft=ChunkDraft(
            document_id=document_id,
            page=page,
            chunk_index=chunk_index,
            text=text or f"{document_id} chunk {chunk_index}",
        ),
        embedding=embedding,
    )


def test_embedding_blob_keeps_float32_values() -> None:
    blob = encode_embedding([0.25, -1.5, 3.0])

    assert len(blob) == 12
    assert decode_embedding(blob) == [0.25, -1.5, 3.0]


def test_cosine_similarity_handles_zero_vectors() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_search_never_returns_chunks_of_another_document(engine: Engine) -> None:
    _add_document(engine, "doc-a")
    _add_document(engine, "doc-b")
    index = VectorIndex(engine)

    index.index(_chunk("doc-a", 0, [1.0, 0.0]))
    index.index(_chunk("doc-b", 0, [1.0, 0.0]))
    index.index(_chunk("doc-b", 1, [0.9, 0.1]))

    hits = index.search("doc-a", [1.0, 0.0], top_k=10, similarity_threshold=0.0)

    assert [hit.document_id for hit in hits] == ["doc-a"]
    assert hits[0].chunk_id == "doc-a-00000"


def test_search_breaks_similarity_ties_by_chunk_index(engine: Engine) -> None:
    _add_document(engine, "doc-a")
    index = VectorIndex(engine)

    index.index(_chunk("doc-a", 5, [0.0, 1.0]))
    index.index(_chunk("doc-a", 3, [0.0, 1.0]))
    index.index(_chunk("doc-a", 1, [1.0, 0.0]))

    hits = index.search("doc-a", [0.0, 1.0], top_k=2, similarity_threshold=0.5)

    assert [hit.chunk_index for hit in hits] == [3, 5]
    assert hits[0].similarity == pytest.approx(1.0)


def test_search_returns_empty_list_when_nothing_meets_threshold(engine: Engine) -> None:
    _add_document(engine, "doc-a")
    index = VectorIndex(engine)
    index.index(_chunk("doc-a", 0, [1.0, 0.0]))

    assert index.search("doc-a", [0.0, 1.0], top_k=5, similarity_threshold=0.1) == []
    assert index.search("doc-a", [1.0, 0.0], top_k=0, similarity_threshold=0.0) == []


def test_search_limits_to_top_k_in_descending_similarity(engine: Engine) -> None:
    _add_document(engine, "doc-a")
    index = VectorIndex(engine)
    for chunk_index, embedding in enumerate([[1.0, 0.0], [0.6, 0.8], [0.8, 0.6], [0.0, 1.0]]):
        index.index(_chunk("doc-a", chunk_index, embedding))

    hits = index.search("doc-a", [1.0, 0.0], top_k=2, similarity_threshold=0.0)

    assert [hit.chunk_index for hit in hits] == [0, 2]
    assert hits[0].similarity >= hits[1].similarity


def test_index_rejects_unknown_document_duplicate_index_and_dimension_mismatch(
    engine: Engine,
) -> None:
    _add_document(engine, "doc-a")
    index = VectorIndex(engine)
    index.index(_chunk("doc-a", 0, [1.0, 0.0]))

    with pytest.raises(NotFoundError):
        index.index(_chunk("missing", 0, [1.0, 0.0]))

    with pytest.raises(ValidationError, match="already exists"):
        index.index(_chunk("doc-a", 0, [0.0, 1.0]))

    with pytest.raises(ValidationError, match="dimension mismatch"):
        index.index(_chunk("doc-a", 1, [1.0, 0.0, 0.0]))

    assert index.count("doc-a") == 1


def test_replace_chunks_swaps_the_whole_set(engine: Engine) -> None:
    _add_document(engine, "doc-a")
    index = VectorIndex(engine)
    index.index(_chunk("doc-a", 0, [1.0, 0.0], text="old text"))
    index.index(_chunk("doc-a", 1, [0.0, 1.0], text="old text"))

    with Session(engine) as session, session.begin():
        replaced = index.replace_chunks(
            session,
            "doc-a",
            [_chunk("doc-a", 0, [1.0, 1.0], text="new text", page=2)],
        )

    assert replaced == 1
    assert index.count("doc-a") == 1
    hits = index.search("doc-a", [1.0, 1.0], top_k=5, similarity_threshold=0.0)
    assert [(hit.text, hit.page) for hit in hits] == [("new text", 2)]


def test_replace_chunks_rolls_back_with_the_transaction(engine: Engine) -> None:
    _add_document(engine, "doc-a")
    index = VectorIndex(engine)
    index.index(_chunk("doc-a", 0, [1.0, 0.0], text="kept"))

    with pytest.raises(ValidationError):
        with Session(engine) as session, session.begin():
            index.replace_chunks(
                session,
                "doc-a",
                [_chunk("doc-a", 0, [1.0, 0.0]), _chunk("doc-a", 1, [1.0, 0.0, 0.0])],
            )

    hits = index.search("doc-a", [1.0, 0.0], top_k=5, similarity_threshold=0.0)
    assert [hit.text for hit in hits] == ["kept"]
