from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

from cachetools import TTLCache


class ChatMode(str, Enum):
    NORMAL = "normal"
    AWAITING_INGREDIENTS = "awaiting_ingredients"
    AWAITING_PHOTOS = "awaiting_photos"
    AWAITING_SUGGESTION = "awaiting_suggestion"


@dataclass(frozen=True)
class ChatSession:
    mode: ChatMode = ChatMode.NORMAL
    data: dict[str, str] = field(default_factory=dict)
    touched: float = 0.0


class ChatSessionManager:
    """
    Per-chat UI mode and scratch data with a sliding idle window.
    Backed by an in-memory TTL cache (ephemeral on restarts). Writes refresh
    the window, reads do not; a session idle for longer than the window reads
    as Normal and is evicted.
    """

    def __init__(
        self,
        *,
        idle_seconds: float = 600,
        maxsize: int = 10_000,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._idle_seconds = idle_seconds
        self._timer = timer
        # The cache only bounds memory; idle expiry is checked on access.
        self._cache: TTLCache[str, ChatSession] = TTLCache(
            maxsize=maxsize, ttl=idle_seconds * 2, timer=timer
        )
        self._lock = threading.Lock()

    @staticmethod
    def session_key(channel_id: str, user_id: str) -> str:
        return f"{channel_id}:{user_id}"

    def get_mode(self, chat_id: str) -> ChatMode:
        return self._read(chat_id).mode

    def set_mode(self, chat_id: str, mode: ChatMode) -> None:
        with self._lock:
            current = self._current(chat_id)
            self._store(chat_id, replace(current, mode=mode))

    def get_data(self, chat_id: str, key: str) -> str | None:
        return self._read(chat_id).data.get(key)

    def set_data(self, chat_id: str, key: str, value: str) -> None:
        with self._lock:
            current = self._current(chat_id)
            self._store(chat_id, replace(current, data={**current.data, key: value}))

    def clear_data(self, chat_id: str, key: str | None = None) -> None:
        """Drop one scratch key, or all of them when ``key`` is None."""
        with self._lock:
            current = self._current(chat_id)
            data = {} if key is None else {
                k: v for k, v in current.data.items() if k != key
            }
            self._store(chat_id, replace(current, data=data))

    def clear(self, chat_id: str) -> bool:
        with self._lock:
            return self._cache.pop(chat_id, None) is not None

    def __contains__(self, chat_id: object) -> bool:
        with self._lock:
            self._evict_idle()
            return chat_id in self._cache

    def __len__(self) -> int:
        with self._lock:
            self._evict_idle()
            return len(self._cache)

    def _read(self, chat_id: str) -> ChatSession:
        with self._lock:
            return self._current(chat_id)

    def _current(self, chat_id: str) -> ChatSession:
        self._evict_idle()
        return self._cache.get(chat_id) or ChatSession()

    def _store(self, chat_id: str, session: ChatSession) -> None:
        self._cache[chat_id] = replace(session, touched=self._timer())

    def _evict_idle(self) -> None:
        self._cache.expire()
        now = self._timer()
        for chat_id in list(self._cache):
            session = self._cache.get(chat_id)
            if session is not None and now - session.touched > self._idle_seconds:
                self._cache.pop(chat_id, None)


__all__ = ["ChatMode", "ChatSession", "ChatSessionManager"]
