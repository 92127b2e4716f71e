from __future__ import annotations

from dataclasses import dataclass
import logging

from docqa.config import Settings
from docqa.errors import UpstreamError
from docqa.llm import LLMClient
from docqa.services.chat_cache import CachedMessage, ChatContextCache
from docqa.services.message_store import MessageStore
from docqa.services.rag.embedding_client import EmbeddingClient
from docqa.services.rag.prompt import build_prompt, extract_citations
from docqa.services.rag.types import Citation, SearchHit
from docqa.services.rag.vector_index import VectorIndex
from docqa.services.retry import retry_call

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = (
    "I'm sorry, I couldn't generate an answer right now. Please try asking again in a moment."
)


@dataclass(frozen=True)
class ComposedAnswer:
    text: str
    citations: list[Citation]
    chunks_used: int
    history_messages: int
    used_fallback: bool
    model: str | None = None


class AnswerComposer:
    def __init__(
        self,
        *,
        settings: Settings,
        embedding_client: EmbeddingClient,
        llm_client: LLMClient,
        vector_index: VectorIndex,
        chat_cache: ChatContextCache,
        message_store: MessageStore | None = None,
    ) -> None:
        self._settings = settings
        self._embedding_client = embedding_client
        self._llm_client = llm_client
        self._vector_index = vector_index
        self._chat_cache = chat_cache
        self._message_store = message_store

    def answer(
        self,
        chat_id: str,
        user_message: str,
        document_id: str | None = None,
        *,
        owner_id: str | None = None,
    ) -> ComposedAnswer:
        settings = self._settings

        try:
            hits = self._retrieve(user_message, document_id)
        except UpstreamError as exc:
            logger.warning("query embedding failed chat_id=%s error=%r", chat_id, exc)
            return self._fallback()

        history = self._history(chat_id)
        prompt = build_prompt(
            user_message,
            hits,
            history,
            max_chars=settings.rag_max_prompt_chars,
            document_scoped=document_id is not None,
        )
        logger.info(
            "prompt assembled chat_id=%s sources=%d/%d history=%d/%d chars=%d",
            chat_id,
            len(prompt.sources),
            len(hits),
            len(prompt.history),
            len(history),
            prompt.size,
        )

        try:
            result = retry_call(
                lambda: self._llm_client.generate(prompt.messages),
                label=f"llm chat_id={chat_id}",
                max_attempts=settings.upstream_max_attempts,
                base_delay=settings.upstream_retry_base_seconds,
                max_delay=settings.upstream_retry_max_seconds,
            )
        except UpstreamError as exc:
            logger.warning("llm call failed chat_id=%s error=%r", chat_id, exc)
            return self._fallback()

        citations = extract_citations(result.answer, prompt.sources)
        self._record_turn(
            chat_id,
            owner_id=owner_id,
            document_id=document_id,
            user_message=user_message,
            answer=result.answer,
            citations=citations,
        )

        return ComposedAnswer(
            text=result.answer,
            citations=citations,
            chunks_used=len(prompt.sources),
            history_messages=len(prompt.history),
            used_fallback=False,
            model=result.model,
        )

    def _retrieve(self, user_message: str, document_id: str | None) -> list[SearchHit]:
        if document_id is None:
            return []

        settings = self._settings
        vectors = retry_call(
            lambda: self._embedding_client.embed_texts([user_message]),
            label=f"embed query document_id={document_id}",
            max_attempts=settings.upstream_max_attempts,
            base_delay=settings.upstream_retry_base_seconds,
            max_delay=settings.upstream_retry_max_seconds,
        )
        if not vectors:
            raise UpstreamError("embedding provider returned no query vector", transient=False)

        return self._vector_index.search(
            document_id,
            vectors[0],
            top_k=settings.rag_top_k,
            similarity_threshold=settings.rag_similarity_threshold,
        )

    def _history(self, chat_id: str) -> list[CachedMessage]:
        context = self._chat_cache.get_context(chat_id)
        if context is not None:
            return list(context.messages)

        if self._message_store is None:
            return []

        messages = self._message_store.recent_messages(
            chat_id,
            limit=self._settings.chat_cache_max_turns * 2,
        )
        if messages:
            context = self._chat_cache.prime(chat_id, messages)
            return list(context.messages)
        return []

    def _record_turn(
        self,
        chat_id: str,
        *,
        owner_id: str | None,
        document_id: str | None,
        user_message: str,
        answer: str,
        citations: list[Citation],
    ) -> None:
        # the store first: the cache must never hold a turn the store lacks
        if self._message_store is not None:
            self._message_store.append_turn(
                chat_id,
                owner_id=owner_id,
                document_id=document_id,
                user_message=user_message,
                assistant_message=answer,
                citations=[
                    {
                        "page": citation.page,
                        "snippet": citation.snippet,
                        "chunk_index": citation.chunk_index,
                        "similarity": citation.similarity,
                    }
                    for citation in citations
                ],
            )
        self._chat_cache.add_turn(chat_id, user_message, answer)

    @staticmethod
    def _fallback() -> ComposedAnswer:
        return ComposedAnswer(
            text=FALLBACK_ANSWER,
            citations=[],
            chunks_used=0,
            history_messages=0,
            used_fallback=True,
        )
