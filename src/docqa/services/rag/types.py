from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class PageText:
    page: int
    text: str


@dataclass(frozen=True)
class ChunkDraft:
    document_id: str
    page: int
    chunk_index: int
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return f"{self.document_id}-{self.chunk_index:05d}"


@dataclass(frozen=True)
class EmbeddedChunk:
    draft: ChunkDraft
    embedding: list[float]


@dataclass(frozen=True)
class SearchHit:
    chunk_id: str
    document_id: str
    page: int
    chunk_index: int
    text: str
    similarity: float


@dataclass(frozen=True)
class Citation:
    page: int
    snippet: str
    chunk_index: int
    similarity: float


@dataclass(frozen=True)
class IngestionSummary:
    document_id: str
    total_pages: int
    empty_pages: int
    chunk_count: int
    embedding_dim: int
    duration_ms: int
