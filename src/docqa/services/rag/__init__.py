from docqa.services.rag.composer import AnswerComposer, ComposedAnswer
from docqa.services.rag.ingest import IngestionPipeline
from docqa.services.rag.status import StatusSnapshot, StatusTracker
from docqa.services.rag.types import Citation, IngestionSummary, SearchHit
from docqa.services.rag.vector_index import VectorIndex

__all__ = [
    "AnswerComposer",
    "Citation",
    "ComposedAnswer",
    "IngestionPipeline",
    "IngestionSummary",
    "SearchHit",
    "StatusSnapshot",
    "StatusTracker",
    "VectorIndex",
]
