from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.errors import NotFoundError
from docqa.models import ChatSessionRecord, MessageRecord
from docqa.services.chat_cache import ASSISTANT, USER, CachedMessage

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50


class MessageStore(Protocol):
    def recent_messages(self, chat_id: str, *, limit: int) -> list[CachedMessage]: ...

    def append_turn(
        self,
        chat_id: str,
        *,
        owner_id: str | None,
        document_id: str | None,
        user_message: str,
        assistant_message: str,
        citations: list[dict[str, Any]],
    ) -> None: ...


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlMessageStore:
    """Durable conversation history; the source of truth behind the chat cache."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def ensure_session(
        self,
        chat_id: str,
        *,
        owner_id: str,
        document_id: str | None,
        first_message: str,
    ) -> ChatSessionRecord:
        with Session(self._engine, expire_on_commit=False) as session, session.begin():
            chat_session = session.get(ChatSessionRecord, chat_id)
            if chat_session is not None:
                if chat_session.owner_id != owner_id:
                    raise NotFoundError(f"chat not found: {chat_id}")
                return chat_session

            now = datetime.now(timezone.utc)
            title = first_message[:TITLE_LENGTH] + ("..." if len(first_message) > TITLE_LENGTH else "")
            chat_session = ChatSessionRecord(
                id=chat_id,
                owner_id=owner_id,
                document_id=document_id,
                title=title[: TITLE_LENGTH + 3],
                created_at=now,
                updated_at=now,
            )
            session.add(chat_session)
        logger.info("chat session created chat_id=%s owner_id=%s", chat_id, owner_id)
        return chat_session

    def recent_messages(self, chat_id: str, *, limit: int) -> list[CachedMessage]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(MessageRecord)
                .where(MessageRecord.session_id == chat_id)
                .order_by(MessageRecord.created_at.desc(), MessageRecord.id.desc())
                .limit(limit)
            ).all()

        return [
            CachedMessage(role=row.role, content=row.content, timestamp=_as_utc(row.created_at))
            for row in reversed(rows)
        ]

    def list_messages(self, chat_id: str, *, owner_id: str) -> list[MessageRecord]:
        with Session(self._engine) as session:
            chat_session = session.get(ChatSessionRecord, chat_id)
            if chat_session is None or chat_session.owner_id != owner_id:
                raise NotFoundError(f"chat not found: {chat_id}")
            return list(
                session.scalars(
                    select(MessageRecord)
                    .where(MessageRecord.session_id == chat_id)
                    .order_by(MessageRecord.created_at.asc(), MessageRecord.id.asc())
                ).all()
            )

    def append_turn(
        self,
        chat_id: str,
        *,
        owner_id: str | None,
        document_id: str | None,
        user_message: str,
        assistant_message: str,
        citations: list[dict[str, Any]],
    ) -> None:
        if owner_id is not None:
            self.ensure_session(
                chat_id,
                owner_id=owner_id,
                document_id=document_id,
                first_message=user_message,
            )

        with Session(self._engine) as session, session.begin():
            chat_session = session.get(ChatSessionRecord, chat_id)
            if chat_session is None:
                raise NotFoundError(f"chat not found: {chat_id}")

            now = datetime.now(timezone.utc)
            last = session.scalar(
                select(MessageRecord.created_at)
                .where(MessageRecord.session_id == chat_id)
                .order_by(MessageRecord.created_at.desc())
                .limit(1)
            )
            if last is not None and _as_utc(last) > now:
                now = _as_utc(last)

            session.add_all(
                [
                    MessageRecord(
                        session_id=chat_id,
                        role=USER,
                        content=user_message,
                        citations_json=[],
                        created_at=now,
                    ),
                    MessageRecord(
                        session_id=chat_id,
                        role=ASSISTANT,
                        content=assistant_message,
                        citations_json=citations,
                        created_at=now,
                    ),
                ]
            )
            chat_session.updated_at = now
