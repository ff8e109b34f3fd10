from __future__ import annotations

import logging
from typing import Callable, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from whatsfordinner.storage.kv_store import KeyValueStore
from whatsfordinner.workflow.errors import (
    NotFoundError,
    StoreError,
    VersionConflictError,
)
from whatsfordinner.workflow.models import ChannelWorkflowState, DinnerRecord, VoteState

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

CHANNEL_PREFIX = "channel:"
VOTE_PREFIX = "vote:"
DINNER_PREFIX = "dinner:"
POLL_INDEX_PREFIX = "poll_channel:"
FRIDGE_PREFIX = "fridge:"
SUGGESTION_PREFIX = "suggestion:"


def channel_key(channel_id: str) -> str:
    return f"{CHANNEL_PREFIX}{channel_id}"


def vote_key(channel_id: str, poll_id: str) -> str:
    return f"{VOTE_PREFIX}{channel_id}:{poll_id}"


def dinner_key(channel_id: str, unix_seconds: int) -> str:
    return f"{DINNER_PREFIX}{channel_id}:{unix_seconds}"


def poll_index_key(poll_id: str) -> str:
    return f"{POLL_INDEX_PREFIX}{poll_id}"


def fridge_key(channel_id: str) -> str:
    return f"{FRIDGE_PREFIX}{channel_id}"


def suggestion_key(channel_id: str, unix_nanos: int) -> str:
    return f"{SUGGESTION_PREFIX}{channel_id}:{unix_nanos}"


class WorkflowRepository:
    """Typed access to the JSON records kept in a :class:`KeyValueStore`.

    ``mutate`` is a read-modify-write loop guarded by the store's per-key
    version: the callback works on a fresh copy each attempt and the write only
    lands if nobody else wrote the key in between. Exceptions raised by the
    callback abort the loop without writing.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        default_cuisines: Optional[list[str]] = None,
        max_attempts: int = 5,
    ) -> None:
        self._store = store
        self._default_cuisines = list(default_cuisines or [])
        self._max_attempts = max(1, max_attempts)

    @property
    def store(self) -> KeyValueStore:
        return self._store

    async def load(self, key: str, model: Type[ModelT]) -> ModelT:
        record, _ = await self._load_versioned(key, model)
        return record

    async def insert(self, key: str, record: BaseModel) -> None:
        """Write a brand new key; fails with VersionConflictError if it exists."""
        await self._store.set(key, record.model_dump_json(), expected_version=0)

    async def save(self, key: str, record: BaseModel) -> None:
        await self._store.set(key, record.model_dump_json())

    async def mutate(
        self,
        key: str,
        model: Type[ModelT],
        fn: Callable[[ModelT], None],
        *,
        create: Optional[Callable[[], ModelT]] = None,
    ) -> ModelT:
        last_conflict: Optional[VersionConflictError] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                record, version = await self._load_versioned(key, model)
            except NotFoundError:
                if create is None:
                    raise
                record, version = create(), 0
            fn(record)
            try:
                await self._store.set(
                    key, record.model_dump_json(), expected_version=version
                )
                return record
            except VersionConflictError as exc:
                last_conflict = exc
                logger.debug(
                    "Version conflict on %s (attempt %s/%s)",
                    key,
                    attempt,
                    self._max_attempts,
                )
        assert last_conflict is not None
        raise last_conflict

    async def list_keys(self, prefix: str) -> list[str]:
        return await self._store.list_keys_with_prefix(prefix)

    # Channels -----------------------------------------------------------

    async def get_channel(self, channel_id: str) -> ChannelWorkflowState:
        return await self.load(channel_key(channel_id), ChannelWorkflowState)

    async def ensure_channel(self, channel_id: str) -> ChannelWorkflowState:
        """Return the channel record, creating a default one on first use."""
        try:
            return await self.get_channel(channel_id)
        except NotFoundError:
            pass
        state = self._new_channel(channel_id)
        try:
            await self.insert(channel_key(channel_id), state)
        except VersionConflictError:
            return await self.get_channel(channel_id)
        logger.info("Registered channel %s", channel_id)
        return state

    async def update_channel(
        self, channel_id: str, fn: Callable[[ChannelWorkflowState], None]
    ) -> ChannelWorkflowState:
        return await self.mutate(
            channel_key(channel_id),
            ChannelWorkflowState,
            fn,
            create=lambda: self._new_channel(channel_id),
        )

    async def list_channel_ids(self) -> list[str]:
        keys = await self.list_keys(CHANNEL_PREFIX)
        return [key[len(CHANNEL_PREFIX) :] for key in keys]

    # Votes --------------------------------------------------------------

    async def get_vote(self, channel_id: str, poll_id: str) -> VoteState:
        return await self.load(vote_key(channel_id, poll_id), VoteState)

    async def update_vote(
        self, channel_id: str, poll_id: str, fn: Callable[[VoteState], None]
    ) -> VoteState:
        return await self.mutate(vote_key(channel_id, poll_id), VoteState, fn)

    async def list_poll_ids(self, channel_id: str) -> list[str]:
        prefix = f"{VOTE_PREFIX}{channel_id}:"
        return [key[len(prefix) :] for key in await self.list_keys(prefix)]

    async def list_votes(self, channel_id: str) -> list[VoteState]:
        votes: list[VoteState] = []
        for poll_id in await self.list_poll_ids(channel_id):
            try:
                votes.append(await self.get_vote(channel_id, poll_id))
            except NotFoundError:
                continue
        return votes

    # Dinners ------------------------------------------------------------

    async def get_dinner(self, dinner_id: str) -> DinnerRecord:
        return await self.load(dinner_id, DinnerRecord)

    async def update_dinner(
        self, dinner_id: str, fn: Callable[[DinnerRecord], None]
    ) -> DinnerRecord:
        return await self.mutate(dinner_id, DinnerRecord, fn)

    async def list_dinners(self, channel_id: str) -> list[DinnerRecord]:
        dinners: list[DinnerRecord] = []
        for key in await self.list_keys(f"{DINNER_PREFIX}{channel_id}:"):
            try:
                dinners.append(await self.get_dinner(key))
            except NotFoundError:
                continue
        return dinners

    # Internals ----------------------------------------------------------

    def _new_channel(self, channel_id: str) -> ChannelWorkflowState:
        return ChannelWorkflowState(
            channel_id=channel_id, cuisines=list(self._default_cuisines)
        )

    async def _load_versioned(
        self, key: str, model: Type[ModelT]
    ) -> tuple[ModelT, int]:
        entry = await self._store.get_versioned(key)
        try:
            return model.model_validate_json(entry.value), entry.version
        except ValidationError as exc:
            raise StoreError(f"corrupt record at {key}: {exc}") from exc


__all__ = [
    "WorkflowRepository",
    "channel_key",
    "dinner_key",
    "fridge_key",
    "poll_index_key",
    "suggestion_key",
    "vote_key",
]
