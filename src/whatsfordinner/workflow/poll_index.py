from __future__ import annotations

import logging
from typing import Optional

from whatsfordinner.storage.kv_store import KeyValueStore
from whatsfordinner.workflow.errors import NotFoundError
from whatsfordinner.workflow.repository import poll_index_key

logger = logging.getLogger(__name__)


class PollChannelIndex:
    """Persisted ``poll_channel:<poll_id>`` -> channel id lookup.

    Best effort: entries may be missing or stale, callers verify a hit and
    fall back to a scan (see ``VoteEngine.resolve_channel_for_poll``).
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def lookup(self, poll_id: str) -> Optional[str]:
        try:
            return await self._store.get(poll_index_key(poll_id))
        except NotFoundError:
            return None

    async def record(self, poll_id: str, channel_id: str) -> None:
        await self._store.set(poll_index_key(poll_id), channel_id)


__all__ = ["PollChannelIndex"]
