"""Error taxonomy shared by the ingestion, search and chat paths."""

from __future__ import annotations


class DocQAError(RuntimeError):
    pass


class ValidationError(DocQAError):
    """Bad upload (type/size/empty) or malformed request."""


class NotFoundError(DocQAError):
    """Unknown document or chat id, or one owned by someone else."""


class ProcessingError(DocQAError):
    """Extraction or embedding failure during ingestion.

    Always recorded on the document as a terminal ``failed`` status before
    it is raised.
    """


class UpstreamError(DocQAError):
    """Embedding/LLM provider failure or timeout.

    ``transient`` marks failures worth retrying (timeouts, connection errors,
    5xx responses); everything else is treated as permanent.
    """

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class ConcurrencyConflict(DocQAError):
    """An ingestion run for the same document is already in flight."""

    def __init__(self, document_id: str, existing_status: str) -> None:
        super().__init__(f"ingestion already {existing_status} for document_id={document_id}")
        self.document_id = document_id
        self.existing_status = existing_status
