from datetime import timezone
import logging
from pathlib import Path
from typing import Annotated, Any

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from docqa.config import get_settings
from docqa.db import get_engine
from docqa.errors import (
    ConcurrencyConflict,
    DocQAError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from docqa.llm import LLMClient, OpenAICompatibleChatClient
from docqa.logging_config import configure_logging
from docqa.models import DocumentRecord
from docqa.schemas import (
    ChatRequest,
    ChatResponse,
    CitationResponse,
    MessageResponse,
    SearchHitResponse,
    StatusResponse,
    UploadResponse,
)
from docqa.services.chat_cache import ChatContextCache, IdleSweeper
from docqa.services.message_store import SqlMessageStore
from docqa.services.object_store import LocalObjectStore, ObjectStore
from docqa.services.rag import AnswerComposer, IngestionPipeline, StatusTracker, VectorIndex
from docqa.services.rag.embedding_client import EmbeddingClient, OpenAICompatibleEmbeddingClient
from docqa.services.retry import retry_call

logger = logging.getLogger(__name__)

app = FastAPI(title="DocQA API", version="0.1.0")


def _score(value: float) -> float:
    return round(value, 4)


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    get_engine()
    app.state.chat_cache = ChatContextCache(
        max_chats=settings.chat_cache_max_chats,
        max_turns=settings.chat_cache_max_turns,
    )
    app.state.chat_cache_sweeper = IdleSweeper(
        app.state.chat_cache,
        interval_seconds=settings.chat_cache_sweep_seconds,
        max_idle_seconds=settings.chat_cache_idle_seconds,
    )
    app.state.chat_cache_sweeper.start()
    logger.info(
        "chat cache initialized max_chats=%d max_turns=%d idle_seconds=%s sweep_seconds=%s",
        settings.chat_cache_max_chats,
        settings.chat_cache_max_turns,
        settings.chat_cache_idle_seconds,
        settings.chat_cache_sweep_seconds,
    )


@app.on_event("shutdown")
def shutdown() -> None:
    sweeper = getattr(app.state, "chat_cache_sweeper", None)
    if sweeper is not None:
        sweeper.stop()
        logger.info("chat cache idle sweeper stopped")


@app.exception_handler(ValidationError)
def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConcurrencyConflict)
def handle_conflict(request: Request, exc: ConcurrencyConflict) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "existing_status": exc.existing_status},
    )


def get_owner_id(x_user_id: Annotated[str, Header(min_length=1, max_length=64)]) -> str:
    return x_user_id.strip()


def get_llm_client() -> LLMClient:
    settings = get_settings()
    return OpenAICompatibleChatClient(
        base_url=settings.llm_base_url,
        default_model=settings.llm_model,
        fallback_model=settings.llm_fallback_model,
        api_key=settings.llm_api_key,
        timeout_seconds=settings.upstream_timeout_seconds,
    )


def get_embedding_client() -> EmbeddingClient:
    settings = get_settings()
    return OpenAICompatibleEmbeddingClient(
        base_url=settings.embed_base_url,
        model=settings.embed_model,
        api_key=settings.llm_api_key,
        timeout_seconds=settings.upstream_timeout_seconds,
    )


def get_object_store() -> ObjectStore:
    return LocalObjectStore(Path(get_settings().object_store_dir))


def get_chat_cache(request: Request) -> ChatContextCache:
    return request.app.state.chat_cache


def get_vector_index() -> VectorIndex:
    return VectorIndex(get_engine(), dimensions=get_settings().rag_embedding_dim)


def get_status_tracker() -> StatusTracker:
    return StatusTracker(get_engine())


def get_message_store() -> SqlMessageStore:
    return SqlMessageStore(get_engine())


def get_ingestion_pipeline(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    vector_index: Annotated[VectorIndex, Depends(get_vector_index)],
    status_tracker: Annotated[StatusTracker, Depends(get_status_tracker)],
) -> IngestionPipeline:
    return IngestionPipeline(
        engine=get_engine(),
        settings=get_settings(),
        embedding_client=embedding_client,
        vector_index=vector_index,
        status_tracker=status_tracker,
    )


def get_answer_composer(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    vector_index: Annotated[VectorIndex, Depends(get_vector_index)],
    chat_cache: Annotated[ChatContextCache, Depends(get_chat_cache)],
    message_store: Annotated[SqlMessageStore, Depends(get_message_store)],
) -> AnswerComposer:
    return AnswerComposer(
        settings=get_settings(),
        embedding_client=embedding_client,
        llm_client=llm_client,
        vector_index=vector_index,
        chat_cache=chat_cache,
        message_store=message_store,
    )


def _owned_document(document_id: str, owner_id: str) -> DocumentRecord:
    with Session(get_engine()) as session:
        document = session.get(DocumentRecord, document_id)
    if document is None or document.owner_id != owner_id:
        raise NotFoundError(f"document not found: {document_id}")
    return document


def run_ingestion(
    pipeline: IngestionPipeline,
    object_store: ObjectStore,
    document_id: str,
    owner_id: str,
    content_type: str | None,
) -> None:
    try:
        raw_bytes = object_store.get(document_id)
        pipeline.ingest(document_id, raw_bytes, owner_id, content_type=content_type)
    except DocQAError as exc:
        # the outcome is recorded on the document; status polling reports it
        logger.warning(
            "background ingestion ended with error document_id=%s error=%r",
            document_id,
            exc,
        )


@app.get("/health")
def health(
    chat_cache: Annotated[ChatContextCache, Depends(get_chat_cache)],
) -> dict[str, Any]:
    return {"status": "ok", "chat_cache": chat_cache.stats()}


@app.post("/upload", status_code=202, response_model=UploadResponse)
async def upload(
    request: Request,
    background_tasks: BackgroundTasks,
    owner_id: Annotated[str, Depends(get_owner_id)],
    pipeline: Annotated[IngestionPipeline, Depends(get_ingestion_pipeline)],
    object_store: Annotated[ObjectStore, Depends(get_object_store)],
    filename: Annotated[str | None, Query(max_length=255)] = None,
) -> UploadResponse:
    max_upload_bytes = get_settings().max_upload_bytes
    declared_length = request.headers.get("content-length", "")
    if declared_length.isdigit() and int(declared_length) > max_upload_bytes:
        raise ValidationError(
            f"Uploaded document is too large: {declared_length} bytes (max {max_upload_bytes})"
        )

    raw_bytes = await request.body()
    content_type = request.headers.get("content-type")

    document = await run_in_threadpool(
        pipeline.register,
        owner_id=owner_id,
        display_name=filename or "document",
        raw_bytes=raw_bytes,
        content_type=content_type,
    )
    await run_in_threadpool(object_store.put, document.id, raw_bytes)
    background_tasks.add_task(
        run_ingestion,
        pipeline,
        object_store,
        document.id,
        owner_id,
        document.content_type,
    )

    return UploadResponse(document_id=document.id, status=document.processing_status)


@app.post("/documents/{document_id}/reprocess", status_code=202, response_model=UploadResponse)
def reprocess(
    document_id: str,
    background_tasks: BackgroundTasks,
    owner_id: Annotated[str, Depends(get_owner_id)],
    pipeline: Annotated[IngestionPipeline, Depends(get_ingestion_pipeline)],
    status_tracker: Annotated[StatusTracker, Depends(get_status_tracker)],
    object_store: Annotated[ObjectStore, Depends(get_object_store)],
) -> UploadResponse:
    document = _owned_document(document_id, owner_id)
    status_tracker.mark_queued(document_id)
    background_tasks.add_task(
        run_ingestion,
        pipeline,
        object_store,
        document_id,
        owner_id,
        document.content_type,
    )
    return UploadResponse(document_id=document_id, status="queued")


@app.get("/status/{document_id}", response_model=StatusResponse)
def get_status(
    document_id: str,
    owner_id: Annotated[str, Depends(get_owner_id)],
    status_tracker: Annotated[StatusTracker, Depends(get_status_tracker)],
) -> StatusResponse:
    _owned_document(document_id, owner_id)
    snapshot = status_tracker.get_status(document_id)
    return StatusResponse(
        processing_status=snapshot.status,
        total_pages=snapshot.total_pages,
        chunk_count=snapshot.chunk_count,
        is_ready=snapshot.is_ready,
        error=snapshot.error,
    )


@app.get("/documents/{document_id}/search", response_model=list[SearchHitResponse])
def search_document(
    document_id: str,
    owner_id: Annotated[str, Depends(get_owner_id)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    vector_index: Annotated[VectorIndex, Depends(get_vector_index)],
    q: Annotated[str, Query(min_length=1, max_length=1000)],
    k: Annotated[int, Query(ge=1, le=20)] = 5,
) -> list[SearchHitResponse]:
    if not q.strip():
        raise HTTPException(status_code=400, detail="q must not be empty")

    settings = get_settings()
    _owned_document(document_id, owner_id)

    try:
        query_embedding = retry_call(
            lambda: embedding_client.embed_texts([q.strip()])[0],
            label=f"embed search document_id={document_id}",
            max_attempts=settings.upstream_max_attempts,
            base_delay=settings.upstream_retry_base_seconds,
            max_delay=settings.upstream_retry_max_seconds,
        )
    except (UpstreamError, IndexError) as exc:
        raise HTTPException(status_code=502, detail=f"Embedding request failed: {exc}") from exc

    hits = vector_index.search(
        document_id,
        query_embedding,
        top_k=k,
        similarity_threshold=settings.rag_similarity_threshold,
    )
    return [
        SearchHitResponse(
            chunk_id=hit.chunk_id,
            chunk_index=hit.chunk_index,
            page=hit.page,
            similarity_score=_score(hit.similarity),
            text=hit.text,
        )
        for hit in hits
    ]


@app.post("/chat", response_model=ChatResponse)
def chat(
    request: ChatRequest,
    owner_id: Annotated[str, Depends(get_owner_id)],
    composer: Annotated[AnswerComposer, Depends(get_answer_composer)],
    message_store: Annotated[SqlMessageStore, Depends(get_message_store)],
) -> ChatResponse:
    if request.document_id is not None:
        _owned_document(request.document_id, owner_id)
    message_store.ensure_session(
        request.chat_id,
        owner_id=owner_id,
        document_id=request.document_id,
        first_message=request.message,
    )

    composed = composer.answer(
        request.chat_id,
        request.message,
        request.document_id,
        owner_id=owner_id,
    )
    return ChatResponse(
        answer=composed.text,
        citations=[
            CitationResponse(
                page=citation.page,
                snippet=citation.snippet,
                chunk_index=citation.chunk_index,
                similarity_score=_score(citation.similarity),
            )
            for citation in composed.citations
        ],
    )


def _stored_citation(raw: dict[str, Any]) -> CitationResponse:
    return CitationResponse(
        page=int(raw.get("page", 0)),
        snippet=str(raw.get("snippet", "")),
        chunk_index=int(raw.get("chunk_index", 0)),
        similarity_score=_score(float(raw.get("similarity", 0.0))),
    )


@app.get("/chat/{chat_id}/messages", response_model=list[MessageResponse])
def list_chat_messages(
    chat_id: str,
    owner_id: Annotated[str, Depends(get_owner_id)],
    message_store: Annotated[SqlMessageStore, Depends(get_message_store)],
) -> list[MessageResponse]:
    messages = message_store.list_messages(chat_id, owner_id=owner_id)
    return [
        MessageResponse(
            role=message.role,
            content=message.content,
            created_at=(
                message.created_at.replace(tzinfo=timezone.utc)
                if message.created_at.tzinfo is None
                else message.created_at
            ).isoformat(),
            citations=[
                _stored_citation(raw)
                for raw in (message.citations_json or [])
                if isinstance(raw, dict)
            ],
        )
        for message in messages
    ]


def run() -> None:
    import uvicorn

    uvicorn.run("docqa.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
