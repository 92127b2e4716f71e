from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.errors import ConcurrencyConflict, NotFoundError
from docqa.models import DocumentRecord

logger = logging.getLogger(__name__)

QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = (COMPLETED, FAILED)
IN_FLIGHT_STATUSES = (QUEUED, PROCESSING)


@dataclass(frozen=True)
class StatusSnapshot:
    document_id: str
    status: str
    total_pages: int | None
    chunk_count: int
    is_ready: bool
    error: str | None
    updated_at: datetime | None


class StatusTracker:
    """Reads and forward-only writes of a document's processing status.

    Reads are a single committed row lookup; they never wait on a pipeline
    run because runs only hold a transaction for their short status updates
    and the final chunk swap.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get_status(self, document_id: str) -> StatusSnapshot:
        with Session(self._engine) as session:
            document = session.get(DocumentRecord, document_id)
            if document is None:
                raise NotFoundError(f"document not found: {document_id}")
            return StatusSnapshot(
                document_id=document.id,
                status=document.processing_status,
                total_pages=document.total_pages,
                chunk_count=document.chunk_count,
                is_ready=document.is_ready,
                error=document.error,
                updated_at=document.updated_at,
            )

    def mark_queued(self, document_id: str) -> None:
        """Open a new run for a document that is in a terminal state."""
        self._transition(document_id, to_status=QUEUED, allowed_from=TERMINAL_STATUSES)

    def claim(self, document_id: str) -> None:
        """Move the document to ``processing``; only one claimant can win."""
        self._transition(
            document_id,
            to_status=PROCESSING,
            allowed_from=(QUEUED, *TERMINAL_STATUSES),
        )

    def mark_completed(
        self,
        session: Session,
        document_id: str,
        *,
        total_pages: int,
        chunk_count: int,
        byte_size: int | None = None,
        content_type: str | None = None,
    ) -> None:
        """Finish a run inside the transaction that swaps the chunk set."""
        now = datetime.now(timezone.utc)
        values: dict[str, object] = {
            "processing_status": COMPLETED,
            "total_pages": total_pages,
            "chunk_count": chunk_count,
            "is_ready": True,
            "error": None,
            "updated_at": now,
            "processed_at": now,
        }
        # metadata of the bytes that produced this chunk set
        if byte_size is not None:
            values["byte_size"] = byte_size
        if content_type is not None:
            values["content_type"] = content_type

        result = session.execute(
            update(DocumentRecord)
            .where(DocumentRecord.id == document_id)
            .where(DocumentRecord.processing_status == PROCESSING)
            .values(**values)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(document_id, self._current_status(session, document_id))

    def mark_failed(self, document_id: str, *, error: str, total_pages: int | None = None) -> None:
        values: dict[str, object] = {
            "processing_status": FAILED,
            "error": error,
            "updated_at": datetime.now(timezone.utc),
        }
        if total_pages is not None:
            values["total_pages"] = total_pages

        with Session(self._engine) as session, session.begin():
            session.execute(
                update(DocumentRecord)
                .where(DocumentRecord.id == document_id)
                .where(DocumentRecord.processing_status == PROCESSING)
                .values(**values)
            )
        logger.warning("ingestion failed document_id=%s error=%s", document_id, error)

    def _transition(
        self,
        document_id: str,
        *,
        to_status: str,
        allowed_from: tuple[str, ...],
    ) -> None:
        with Session(self._engine) as session, session.begin():
            result = session.execute(
                update(DocumentRecord)
                .where(DocumentRecord.id == document_id)
                .where(DocumentRecord.processing_status.in_(allowed_from))
                .values(processing_status=to_status, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount == 1:
                logger.info("status transition document_id=%s status=%s", document_id, to_status)
                return

            current = self._current_status(session, document_id)
        raise ConcurrencyConflict(document_id, current)

    @staticmethod
    def _current_status(session: Session, document_id: str) -> str:
        current = session.scalar(
            select(DocumentRecord.processing_status).where(DocumentRecord.id == document_id)
        )
        if current is None:
            raise NotFoundError(f"document not found: {document_id}")
        return current
