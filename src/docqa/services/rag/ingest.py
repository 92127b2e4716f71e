from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait, FIRST_EXCEPTION
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
import logging
from time import perf_counter
import uuid

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.config import Settings
from docqa.errors import (
    ConcurrencyConflict,
    NotFoundError,
    ProcessingError,
    UpstreamError,
    ValidationError,
)
from docqa.models import DocumentRecord
from docqa.services.rag.chunker import chunk_pages
from docqa.services.rag.embedding_client import EmbeddingClient
from docqa.services.rag.extractor import (
    SUPPORTED_CONTENT_TYPES,
    ContentTypeExtractor,
    sniff_content_type,
)
from docqa.services.rag.status import QUEUED, StatusTracker
from docqa.services.rag.types import ChunkDraft, EmbeddedChunk, IngestionSummary, PageText
from docqa.services.rag.vector_index import VectorIndex
from docqa.services.retry import retry_call

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Upload validation, extraction, chunking, embedding and the atomic commit.

    A run for one document is single-flight: the status claim is a
    conditional UPDATE, so a second request for a document already in
    ``processing`` fails with ``ConcurrencyConflict`` no matter which thread or
    process issued it. Chunks become visible to search only in the final
    transaction that also marks the document ``completed``.
    """

    def __init__(
        self,
        *,
        engine: Engine,
        settings: Settings,
        embedding_client: EmbeddingClient,
        vector_index: VectorIndex | None = None,
        status_tracker: StatusTracker | None = None,
        extractor: ContentTypeExtractor | None = None,
    ) -> None:
        if settings.rag_chunk_overlap >= settings.rag_chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")

        self._engine = engine
        self._settings = settings
        self._embedding_client = embedding_client
        self._vector_index = vector_index or VectorIndex(
            engine, dimensions=settings.rag_embedding_dim
        )
        self._status = status_tracker or StatusTracker(engine)
        self._extractor = extractor or ContentTypeExtractor()

    def validate_upload(self, raw_bytes: bytes, content_type: str | None) -> str:
        if not raw_bytes:
            raise ValidationError("Uploaded document is empty")
        if len(raw_bytes) > self._settings.max_upload_bytes:
            raise ValidationError(
                f"Uploaded document is too large: {len(raw_bytes)} bytes "
                f"(max {self._settings.max_upload_bytes})"
            )

        resolved = sniff_content_type(raw_bytes, content_type)
        if resolved not in SUPPORTED_CONTENT_TYPES:
            raise ValidationError(
                f"Unsupported content type: {resolved} (supported: {sorted(SUPPORTED_CONTENT_TYPES)})"
            )
        return resolved

    def register(
        self,
        *,
        owner_id: str,
        display_name: str,
        raw_bytes: bytes,
        content_type: str | None,
        document_id: str | None = None,
    ) -> DocumentRecord:
        resolved = self.validate_upload(raw_bytes, content_type)
        now = datetime.now(timezone.utc)
        document = DocumentRecord(
            id=document_id or uuid.uuid4().hex,
            owner_id=owner_id,
            display_name=display_name,
            content_type=resolved,
            byte_size=len(raw_bytes),
            uploaded_at=now,
            processing_status=QUEUED,
            chunk_count=0,
            is_ready=False,
            updated_at=now,
        )
        with Session(self._engine, expire_on_commit=False) as session, session.begin():
            session.add(document)

        logger.info(
            "document registered document_id=%s owner_id=%s bytes=%d content_type=%s",
            document.id,
            owner_id,
            len(raw_bytes),
            resolved,
        )
        return document

    def ingest(
        self,
        document_id: str,
        raw_bytes: bytes,
        owner_id: str,
        *,
        content_type: str | None = None,
    ) -> IngestionSummary:
        start = perf_counter()
        resolved = self.validate_upload(raw_bytes, content_type)
        self._ensure_document(document_id, owner_id, raw_bytes, resolved)
        self._status.claim(document_id)
        logger.info("ingestion started document_id=%s", document_id)

        pages: list[PageText] | None = None
        try:
            pages = self._extract(raw_bytes, resolved)
            drafts = chunk_pages(
                document_id,
                pages,
                chunk_size=self._settings.rag_chunk_size,
                chunk_overlap=self._settings.rag_chunk_overlap,
            )
            if not drafts:
                raise ProcessingError("No extractable text found in document")

            embedded = self._embed(drafts)
            with Session(self._engine) as session, session.begin():
                chunk_count = self._vector_index.replace_chunks(session, document_id, embedded)
                self._status.mark_completed(
                    session,
                    document_id,
                    total_pages=len(pages),
                    chunk_count=chunk_count,
                    byte_size=len(raw_bytes),
                    content_type=resolved,
                )
        except ConcurrencyConflict:
            raise
        except (ProcessingError, UpstreamError, ValidationError) as exc:
            self._status.mark_failed(
                document_id,
                error=str(exc),
                total_pages=len(pages) if pages is not None else None,
            )
            if isinstance(exc, ProcessingError):
                raise
            raise ProcessingError(str(exc)) from exc
        except Exception as exc:
            self._status.mark_failed(document_id, error=f"unexpected error: {exc!r}")
            raise ProcessingError(f"unexpected error: {exc!r}") from exc

        summary = IngestionSummary(
            document_id=document_id,
            total_pages=len(pages),
            empty_pages=sum(1 for page in pages if not page.text),
            chunk_count=chunk_count,
            embedding_dim=len(embedded[0].embedding),
            duration_ms=int((perf_counter() - start) * 1000),
        )
        logger.info(
            "ingestion completed document_id=%s pages=%d empty_pages=%d chunks=%d duration_ms=%d",
            document_id,
            summary.total_pages,
            summary.empty_pages,
            summary.chunk_count,
            summary.duration_ms,
        )
        return summary

    def _ensure_document(
        self,
        document_id: str,
        owner_id: str,
        raw_bytes: bytes,
        content_type: str,
    ) -> None:
        with Session(self._engine) as session, session.begin():
            document = session.get(DocumentRecord, document_id)
            if document is None:
                now = datetime.now(timezone.utc)
                session.add(
                    DocumentRecord(
                        id=document_id,
                        owner_id=owner_id,
                        display_name=document_id,
                        content_type=content_type,
                        byte_size=len(raw_bytes),
                        uploaded_at=now,
                        processing_status=QUEUED,
                        chunk_count=0,
                        is_ready=False,
                        updated_at=now,
                    )
                )
                return

            if document.owner_id != owner_id:
                raise NotFoundError(f"document not found: {document_id}")

    def _extract(self, raw_bytes: bytes, content_type: str) -> list[PageText]:
        extractor = self._extractor.for_content_type(content_type)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="docqa-extract")
        try:
            future = executor.submit(extractor.extract_pages, raw_bytes)
            try:
                pages = future.result(timeout=self._settings.rag_extract_timeout_seconds)
            except FutureTimeoutError as exc:
                future.cancel()
                raise ProcessingError(
                    f"text extraction timed out after {self._settings.rag_extract_timeout_seconds}s"
                ) from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if not pages:
            raise ProcessingError("Document has no pages")
        return pages

    def _embed_one(self, draft: ChunkDraft) -> EmbeddedChunk:
        settings = self._settings
        vectors = retry_call(
            lambda: self._embedding_client.embed_texts([draft.text]),
            label=f"embed chunk_id={draft.chunk_id}",
            max_attempts=settings.upstream_max_attempts,
            base_delay=settings.upstream_retry_base_seconds,
            max_delay=settings.upstream_retry_max_seconds,
        )
        if len(vectors) != 1:
            raise ProcessingError(
                f"embedding provider returned {len(vectors)} vectors for chunk {draft.chunk_id}"
            )
        return EmbeddedChunk(draft=draft, embedding=vectors[0])

    def _embed(self, drafts: list[ChunkDraft]) -> list[EmbeddedChunk]:
        settings = self._settings
        # each call may retry; bound the whole batch by the worst case per worker
        per_chunk_budget = settings.upstream_timeout_seconds * settings.upstream_max_attempts + (
            settings.upstream_retry_max_seconds * max(0, settings.upstream_max_attempts - 1)
        )
        rounds = -(-len(drafts) // settings.rag_embed_workers)
        deadline = per_chunk_budget * rounds

        executor = ThreadPoolExecutor(
            max_workers=settings.rag_embed_workers,
            thread_name_prefix="docqa-embed",
        )
        try:
            futures: list[Future[EmbeddedChunk]] = [
                executor.submit(self._embed_one, draft) for draft in drafts
            ]
            done, not_done = wait(futures, timeout=deadline, return_when=FIRST_EXCEPTION)
            for future in done:
                exc = future.exception()
                if exc is not None:
                    raise exc
            if not_done:
                raise ProcessingError(
                    f"embedding timed out: {len(not_done)} of {len(futures)} chunks pending"
                )
            return [future.result() for future in futures]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
