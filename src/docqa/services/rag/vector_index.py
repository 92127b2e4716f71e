from __future__ import annotations

from array import array
import logging
import math
from typing import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docqa.errors import NotFoundError, ValidationError
from docqa.models import ChunkRecord, DocumentRecord
from docqa.services.rag.types import EmbeddedChunk, SearchHit

logger = logging.getLogger(__name__)


def encode_embedding(values: Sequence[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _to_record(chunk: EmbeddedChunk) -> ChunkRecord:
    draft = chunk.draft
    return ChunkRecord(
        id=draft.chunk_id,
        document_id=draft.document_id,
        page=draft.page,
        chunk_index=draft.chunk_index,
        text=draft.text,
        embedding=encode_embedding(chunk.embedding),
        embedding_dim=len(chunk.embedding),
        metadata_json=draft.metadata or None,
    )


class VectorIndex:
    """Chunk embeddings stored as float32 blobs, searched per document.

    Every query is filtered on ``document_id`` in SQL before any scoring, so a
    result can never belong to another document.
    """

    def __init__(self, engine: Engine, *, dimensions: int | None = None) -> None:
        self._engine = engine
        self._dimensions = dimensions

    def expected_dimensions(self, session: Session) -> int | None:
        if self._dimensions is not None:
            return self._dimensions
        stored = session.scalar(select(ChunkRecord.embedding_dim).limit(1))
        return int(stored) if stored is not None else None

    def check_dimensions(self, session: Session, chunks: Sequence[EmbeddedChunk]) -> int | None:
        expected = self.expected_dimensions(session)
        for chunk in chunks:
            size = len(chunk.embedding)
            if size == 0:
                raise ValidationError(f"Empty embedding for chunk {chunk.draft.chunk_id}")
            if expected is None:
                expected = size
            elif size != expected:
                raise ValidationError(
                    f"Embedding dimension mismatch for chunk {chunk.draft.chunk_id}: "
                    f"expected {expected}, got {size}"
                )
        return expected

    def index(self, chunk: EmbeddedChunk) -> None:
        try:
            with Session(self._engine) as session, session.begin():
                if session.get(DocumentRecord, chunk.draft.document_id) is None:
                    raise NotFoundError(f"document not found: {chunk.draft.document_id}")
                self.check_dimensions(session, [chunk])
                session.add(_to_record(chunk))
        except IntegrityError as exc:
            raise ValidationError(
                f"chunk_index {chunk.draft.chunk_index} already exists for "
                f"document_id={chunk.draft.document_id}"
            ) from exc

    def replace_chunks(
        self,
        session: Session,
        document_id: str,
        chunks: Sequence[EmbeddedChunk],
    ) -> int:
        """Swap a document's chunk set inside the caller's transaction."""
        for chunk in chunks:
            if chunk.draft.document_id != document_id:
                raise ValidationError(
                    f"chunk {chunk.draft.chunk_id} does not belong to document_id={document_id}"
                )

        session.execute(delete(ChunkRecord).where(ChunkRecord.document_id == document_id))
        # other documents' chunks fix the dimension, this document's old set does not
        self.check_dimensions(session, chunks)
        session.add_all(_to_record(chunk) for chunk in chunks)
        session.flush()
        return len(chunks)

    def count(self, document_id: str) -> int:
        with Session(self._engine) as session:
            return int(
                session.scalar(
                    select(func.count())
                    .select_from(ChunkRecord)
                    .where(ChunkRecord.document_id == document_id)
                )
                or 0
            )

    def search(
        self,
        document_id: str,
        query_embedding: Sequence[float],
        *,
        top_k: int,
        similarity_threshold: float,
    ) -> list[SearchHit]:
        if top_k <= 0:
            return []

        with Session(self._engine) as session:
            rows = session.execute(
                select(
                    ChunkRecord.id,
                    ChunkRecord.document_id,
                    ChunkRecord.page,
                    ChunkRecord.chunk_index,
                    ChunkRecord.text,
                    ChunkRecord.embedding,
                    ChunkRecord.embedding_dim,
                ).where(ChunkRecord.document_id == document_id)
            ).all()

        hits: list[SearchHit] = []
        for chunk_id, chunk_document_id, page, chunk_index, text, blob, embedding_dim in rows:
            embedding = decode_embedding(blob)
            if len(embedding) != embedding_dim or len(embedding) != len(query_embedding):
                logger.warning(
                    "skipping chunk with mismatched embedding chunk_id=%s dim=%d query_dim=%d",
                    chunk_id,
                    len(embedding),
                    len(query_embedding),
                )
                continue

            similarity = cosine_similarity(query_embedding, embedding)
            if similarity < similarity_threshold:
                continue
            hits.append(
                SearchHit(
                    chunk_id=chunk_id,
                    document_id=chunk_document_id,
                    page=page,
                    chunk_index=chunk_index,
                    text=text,
                    similarity=similarity,
                )
            )

        hits.sort(key=lambda hit: (-hit.similarity, hit.chunk_index))
        return hits[:top_k]
