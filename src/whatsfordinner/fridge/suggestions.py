from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from whatsfordinner.workflow.errors import NotFoundError
from whatsfordinner.workflow.models import Dish, SuggestedDish, utcnow
from whatsfordinner.workflow.repository import (
    SUGGESTION_PREFIX,
    WorkflowRepository,
    suggestion_key,
)

logger = logging.getLogger(__name__)


class SuggestionStore:
    """Household dish proposals waiting to be merged into the next poll."""

    def __init__(
        self,
        repository: WorkflowRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._clock = clock

    async def add_suggestion(
        self, channel_id: str, user_id: str, dish: Dish
    ) -> SuggestedDish:
        now = self._clock()
        nanos = int(now.timestamp() * 1_000_000_000)
        key = suggestion_key(channel_id, nanos)
        suggestion = SuggestedDish(
            suggestion_id=key,
            channel_id=channel_id,
            user_id=user_id,
            dish=dish,
            created_at=now,
        )
        await self._repo.insert(key, suggestion)
        logger.info("User %s suggested %s in %s", user_id, dish.name, channel_id)
        return suggestion

    async def list_suggestions(self, channel_id: str) -> list[SuggestedDish]:
        result: list[SuggestedDish] = []
        for key in await self._repo.list_keys(f"{SUGGESTION_PREFIX}{channel_id}:"):
            try:
                result.append(await self._repo.load(key, SuggestedDish))
            except NotFoundError:
                continue
        return sorted(result, key=lambda item: item.created_at)

    async def unused_suggestions(self, channel_id: str) -> list[SuggestedDish]:
        return [s for s in await self.list_suggestions(channel_id) if not s.used]

    async def mark_used(self, suggestion_id: str) -> SuggestedDish:
        def apply(suggestion: SuggestedDish) -> None:
            suggestion.used = True

        return await self._repo.mutate(suggestion_id, SuggestedDish, apply)


__all__ = ["SuggestionStore"]
