from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

Identifier = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$"),
]


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chat_id: Identifier
    message: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=4000)]
    document_id: Identifier | None = None


class CitationResponse(BaseModel):
    page: int
    snippet: str
    chunk_index: int
    similarity_score: float


class ChatResponse(BaseModel):
    answer: str
    citations: list[CitationResponse]


class UploadResponse(BaseModel):
    document_id: str
    status: str


class StatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    processing_status: str = Field(alias="processingStatus")
    total_pages: int | None = Field(alias="totalPages")
    chunk_count: int = Field(alias="chunkCount")
    is_ready: bool = Field(alias="isReady")
    error: str | None = None


class SearchHitResponse(BaseModel):
    chunk_id: str
    chunk_index: int
    page: int
    similarity_score: float
    text: str


class MessageResponse(BaseModel):
    role: str
    content: str
    created_at: str
    citations: list[CitationResponse]
