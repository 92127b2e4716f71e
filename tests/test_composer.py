from datetime import datetime, timezone

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.config import Settings
from docqa.errors import UpstreamError
from docqa.llm import ChatResult, LLMClientError
from docqa.models import DocumentRecord
from docqa.services.chat_cache import ChatContextCache
from docqa.services.message_store import SqlMessageStore
from docqa.services.rag.composer import FALLBACK_ANSWER, AnswerComposer
from docqa.services.rag.prompt import NO_CONTEXT_TEXT
from docqa.services.rag.types import ChunkDraft, EmbeddedChunk
from docqa.services.rag.vector_index import VectorIndex


class AxisEmbeddingClient:
    """Maps a query to a fixed axis: maintenance questions to x, everything else to y."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(texts)
        return [[1.0, 0.0] if "maintenance" in text.lower() else [0.0, 1.0] for text in texts]


class FailingEmbeddingClient:
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        raise UpstreamError("embedding timeout", transient=True)


class FakeLLMClient:
    def __init__(self, answer: str = "mocked answer") -> None:
        self.answer = answer
        self.calls: list[list[dict[str, str]]] = []

    def generate(self, messages: list[dict[str, str]]) -> ChatResult:
        self.calls.append(messages)
        return ChatResult(answer=self.answer, model="fake-model", used_fallback=False)


class FailingLLMClient:
    def __init__(self) -> None:
        self.calls = 0

    def generate(self, messages: list[dict[str, str]]) -> ChatResult:
        self.calls += 1
        raise LLMClientError("simulated failure", transient=True)


class SpyChatCache(ChatContextCache):
    def __init__(self) -> None:
        super().__init__(max_chats=10, max_turns=5)
        self.added: list[tuple[str, str, str]] = []

    def add_turn(self, chat_id: str, user_message: str, assistant_message: str):
        self.added.append((chat_id, user_message, assistant_message))
        return super().add_turn(chat_id, user_message, assistant_message)


@pytest.fixture
def indexed_document(engine: Engine) -> str:
    now = datetime.now(timezone.utc)
    with Session(engine) as session, session.begin():
        session.add(
            DocumentRecord(
                id="doc-1",
                owner_id="user-1",
                display_name="manual.pdf",
                content_type="application/pdf",
                byte_size=100,
                uploaded_at=now,
                processing_status="completed",
                chunk_count=2,
                is_ready=True,
                updated_at=now,
            )
        )

    index = VectorIndex(engine)
    index.index(
        EmbeddedChunk(
            draft=ChunkDraft(document_id="doc-1", page=2, chunk_index=0, text="Maintenance is weekly."),
            embedding=[1.0, 0.0],
        )
    )
    index.index(
        EmbeddedChunk(
            draft=ChunkDraft(document_id="doc-1", page=5, chunk_index=1, text="Lubricate bearings."),
            embedding=[1.0, 0.05],
        )
    )
    return "doc-1"


def _composer(
    engine: Engine,
    settings: Settings,
    *,
    llm_client: object,
    embedding_client: object | None = None,
    chat_cache: ChatContextCache | None = None,
) -> AnswerComposer:
    return AnswerComposer(
        settings=settings,
        embedding_client=embedding_client or AxisEmbeddingClient(),
        llm_client=llm_client,
        vector_index=VectorIndex(engine),
        chat_cache=chat_cache if chat_cache is not None else SpyChatCache(),
        message_store=SqlMessageStore(engine),
    )


def test_answer_maps_cited_markers_to_pages(
    engine: Engine,
    settings: Settings,
    indexed_document: str,
) -> None:
    llm = FakeLLMClient("Maintenance happens weekly [S2].")
    composer = _composer(engine, settings, llm_client=llm)

    composed = composer.answer("chat-1", "How often is maintenance?", indexed_document, owner_id="user-1")

    assert composed.text == "Maintenance happens weekly [S2]."
    assert composed.used_fallback is False
    assert composed.chunks_used == 2
    assert [(citation.page, citation.chunk_index) for citation in composed.citations] == [(5, 1)]
    assert 0.0 <= composed.citations[0].similarity <= 1.0
    assert "[S1] (page 2)\nMaintenance is weekly." in llm.calls[0][-1]["content"]


def test_no_chunks_above_threshold_still_answers(
    engine: Engine,
    settings: Settings,
    indexed_document: str,
) -> None:
    llm = FakeLLMClient("The document does not say.")
    composer = _composer(engine, settings, llm_client=llm)

    composed = composer.answer("chat-1", "Who wrote this?", indexed_document, owner_id="user-1")

    assert composed.text == "The document does not say."
    assert composed.citations == []
    assert composed.used_fallback is False
    assert NO_CONTEXT_TEXT in llm.calls[0][-1]["content"]


def test_llm_failure_returns_fallback_and_records_nothing(
    engine: Engine,
    settings: Settings,
    indexed_document: str,
) -> None:
    cache = SpyChatCache()
    llm = FailingLLMClient()
    composer = _composer(engine, settings, llm_client=llm, chat_cache=cache)
    store = SqlMessageStore(engine)
    store.ensure_session("chat-1", owner_id="user-1", document_id=indexed_document, first_message="hi")

    composed = composer.answer("chat-1", "How often is maintenance?", indexed_document, owner_id="user-1")

    assert composed.text == FALLBACK_ANSWER
    assert composed.used_fallback is True
    assert composed.citations == []
    assert llm.calls == settings.upstream_max_attempts
    assert cache.added == []
    assert cache.get_context("chat-1") is None
    assert store.recent_messages("chat-1", limit=10) == []


def test_embedding_failure_returns_fallback_without_calling_llm(
    engine: Engine,
    settings: Settings,
    indexed_document: str,
) -> None:
    llm = FakeLLMClient()
    composer = _composer(engine, settings, llm_client=llm, embedding_client=FailingEmbeddingClient())

    composed = composer.answer("chat-1", "How often is maintenance?", indexed_document, owner_id="user-1")

    assert composed.text == FALLBACK_ANSWER
    assert llm.calls == []


def test_turns_are_stored_then_replayed_as_history(
    engine: Engine,
    settings: Settings,
    indexed_document: str,
) -> None:
    cache = SpyChatCache()
    llm = FakeLLMClient("First answer.")
    composer = _composer(engine, settings, llm_client=llm, chat_cache=cache)

    composer.answer("chat-1", "How often is maintenance?", indexed_document, owner_id="user-1")
    llm.answer = "Second answer."
    composed = composer.answer("chat-1", "And the bearings?", indexed_document, owner_id="user-1")

    assert composed.history_messages == 2
    second_prompt = llm.calls[1]
    assert [message["content"] for message in second_prompt[1:3]] == [
        "How often is maintenance?",
        "First answer.",
    ]
    assert [turn[1] for turn in cache.added] == ["How often is maintenance?", "And the bearings?"]

    stored = SqlMessageStore(engine).recent_messages("chat-1", limit=10)
    assert [message.content for message in stored] == [
        "How often is maintenance?",
        "First answer.",
        "And the bearings?",
        "Second answer.",
    ]


def test_cache_miss_reloads_history_from_the_store(
    engine: Engine,
    settings: Settings,
    indexed_document: str,
) -> None:
    llm = FakeLLMClient("First answer.")
    _composer(engine, settings, llm_client=llm).answer(
        "chat-1", "How often is maintenance?", indexed_document, owner_id="user-1"
    )

    fresh_cache = SpyChatCache()
    composed = _composer(engine, settings, llm_client=llm, chat_cache=fresh_cache).answer(
        "chat-1", "Anything else?", indexed_document, owner_id="user-1"
    )

    assert composed.history_messages == 2
    context = fresh_cache.get_context("chat-1")
    assert context is not None
    assert context.turn_count == 2


def test_general_chat_skips_retrieval(engine: Engine, settings: Settings) -> None:
    embedder = AxisEmbeddingClient()
    llm = FakeLLMClient("Hello there.")
    composer = _composer(engine, settings, llm_client=llm, embedding_client=embedder)

    composed = composer.answer("chat-9", "Hello!", owner_id="user-1")

    assert composed.text == "Hello there."
    assert composed.citations == []
    assert embedder.calls == []
    assert llm.calls[0][-1] == {"role": "user", "content": "Hello!"}
