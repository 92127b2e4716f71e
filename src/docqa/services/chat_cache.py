"""Bounded in-memory cache of recent conversation turns per chat.

The cache only saves a round trip to the message store when assembling a
prompt; every message it holds was written to the store first, so losing an
entry (eviction, restart) costs latency, never data.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from time import monotonic
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

USER = "user"
ASSISTANT = "assistant"


@dataclass(frozen=True)
class CachedMessage:
    role: str
    content: str
    timestamp: datetime


@dataclass(frozen=True)
class ChatContext:
    chat_id: str
    messages: tuple[CachedMessage, ...]

    @property
    def turn_count(self) -> int:
        return len(self.messages) // 2

    def as_prompt_messages(self) -> list[dict[str, str]]:
        return [{"role": message.role, "content": message.content} for message in self.messages]


@dataclass
class _Entry:
    chat_id: str
    messages: list[CachedMessage] = field(default_factory=list)
    last_access: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def snapshot(self) -> ChatContext:
        return ChatContext(chat_id=self.chat_id, messages=tuple(self.messages))


class ChatContextCache:
    """LRU map of chat id to the last ``max_turns`` user/assistant pairs.

    Each entry has its own lock, so two writers on one chat are serialized
    while different chats never wait on each other. ``_index_lock`` only
    guards the recency ordering of the map itself and is never held while an
    entry's messages are being changed.
    """

    def __init__(
        self,
        *,
        max_chats: int,
        max_turns: int,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if max_chats <= 0:
            raise ValueError("max_chats must be > 0")
        if max_turns <= 0:
            raise ValueError("max_turns must be > 0")

        self._max_chats = max_chats
        self._max_messages = max_turns * 2
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._index_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get_context(self, chat_id: str) -> ChatContext | None:
        with self._index_lock:
            entry = self._entries.get(chat_id)
            if entry is None:
                self._misses += 1
                return None
            self._entries.move_to_end(chat_id)
            entry.last_access = self._clock()
            self._hits += 1

        with entry.lock:
            return entry.snapshot()

    def add_turn(self, chat_id: str, user_message: str, assistant_message: str) -> ChatContext:
        while True:
            entry = self._touch(chat_id)
            now = datetime.now(timezone.utc)

            with entry.lock:
                if not self._is_current(chat_id, entry):
                    # evicted between lookup and lock; write to the live entry
                    continue
                if entry.messages and entry.messages[-1].timestamp > now:
                    now = entry.messages[-1].timestamp
                entry.messages.append(CachedMessage(role=USER, content=user_message, timestamp=now))
                entry.messages.append(
                    CachedMessage(role=ASSISTANT, content=assistant_message, timestamp=now)
                )
                self._trim(entry)
                return entry.snapshot()

    def prime(self, chat_id: str, messages: Iterable[CachedMessage]) -> ChatContext:
        """Seed an entry after a miss; an existing entry is left as it is."""
        seed = list(messages)
        while True:
            entry = self._touch(chat_id)
            with entry.lock:
                if not self._is_current(chat_id, entry):
                    continue
                if not entry.messages:
                    entry.messages.extend(seed)
                    self._trim(entry)
                return entry.snapshot()

    def discard(self, chat_id: str) -> bool:
        with self._index_lock:
            return self._entries.pop(chat_id, None) is not None

    def clear(self) -> int:
        with self._index_lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("chat cache cleared entries=%d", count)
        return count

    def evict_idle(self, max_idle_seconds: float) -> int:
        threshold = self._clock() - max_idle_seconds
        with self._index_lock:
            idle = [
                chat_id
                for chat_id, entry in self._entries.items()
                if entry.last_access < threshold
            ]
            for chat_id in idle:
                del self._entries[chat_id]
            self._evictions += len(idle)

        if idle:
            logger.info("chat cache evicted idle entries=%d", len(idle))
        return len(idle)

    def stats(self) -> dict[str, int]:
        with self._index_lock:
            return {
                "entries": len(self._entries),
                "max_chats": self._max_chats,
                "max_messages_per_chat": self._max_messages,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def __len__(self) -> int:
        with self._index_lock:
            return len(self._entries)

    def __contains__(self, chat_id: object) -> bool:
        with self._index_lock:
            return chat_id in self._entries

    def _touch(self, chat_id: str) -> _Entry:
        """Return the entry for ``chat_id``, creating it and evicting LRU if needed."""
        with self._index_lock:
            entry = self._entries.get(chat_id)
            if entry is None:
                entry = _Entry(chat_id=chat_id)
                self._entries[chat_id] = entry
                while len(self._entries) > self._max_chats:
                    evicted_id, _ = self._entries.popitem(last=False)
                    self._evictions += 1
                    logger.debug("chat cache evicted chat_id=%s", evicted_id)
            else:
                self._entries.move_to_end(chat_id)
            entry.last_access = self._clock()
            return entry

    def _is_current(self, chat_id: str, entry: _Entry) -> bool:
        with self._index_lock:
            return self._entries.get(chat_id) is entry

    def _trim(self, entry: _Entry) -> None:
        excess = len(entry.messages) - self._max_messages
        if excess > 0:
            del entry.messages[:excess]


class IdleSweeper:
    """Daemon thread that drops chats idle for longer than ``max_idle_seconds``."""

    def __init__(
        self,
        cache: ChatContextCache,
        *,
        interval_seconds: float,
        max_idle_seconds: float,
    ) -> None:
        self._cache = cache
        self._interval_seconds = interval_seconds
        self._max_idle_seconds = max_idle_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop,
            name="chat-cache-idle-sweeper",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            self._cache.evict_idle(self._max_idle_seconds)
