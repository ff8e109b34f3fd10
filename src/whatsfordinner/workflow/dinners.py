from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from whatsfordinner.workflow.errors import (
    InvalidInputError,
    NotFoundError,
    PreconditionFailedError,
    VersionConflictError,
)
from whatsfordinner.workflow.models import (
    ChannelWorkflowState,
    DinnerRecord,
    Dish,
    utcnow,
)
from whatsfordinner.workflow.repository import WorkflowRepository, dinner_key

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


class DinnerLifecycle:
    """Create, finish, rate and close out one cooked meal per channel."""

    def __init__(
        self,
        repository: WorkflowRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._clock = clock

    async def create_dinner(
        self,
        channel_id: str,
        dish: Dish,
        cook: str,
        *,
        poll_id: Optional[str] = None,
    ) -> DinnerRecord:
        channel = await self._repo.ensure_channel(channel_id)
        if channel.current_dinner_id:
            raise PreconditionFailedError(
                f"channel {channel_id} already has an active dinner"
            )

        now = self._clock()
        dinner_id = dinner_key(channel_id, int(now.timestamp()))
        dinner = DinnerRecord(
            dinner_id=dinner_id,
            channel_id=channel_id,
            dish=dish,
            cook=cook,
            poll_id=poll_id,
            started_at=now,
        )
        try:
            await self._repo.insert(dinner_id, dinner)
        except VersionConflictError as exc:
            raise PreconditionFailedError(f"dinner {dinner_id} already exists") from exc

        def publish(state: ChannelWorkflowState) -> None:
            if state.current_dinner_id and state.current_dinner_id != dinner_id:
                raise PreconditionFailedError(
                    f"channel {channel_id} already has an active dinner"
                )
            state.current_dinner_id = dinner_id
            state.cook_request_poll_id = None
            state.volunteer_wait_since = None
            state.last_activity = now

        await self._repo.update_channel(channel_id, publish)
        logger.info(
            "Dinner %s started in channel %s: %s cooked by %s",
            dinner_id,
            channel_id,
            dish.name,
            cook,
        )
        return dinner

    async def get_active_dinner(self, channel_id: str) -> Optional[DinnerRecord]:
        channel = await self._repo.ensure_channel(channel_id)
        if not channel.current_dinner_id:
            return None
        return await self._repo.get_dinner(channel.current_dinner_id)

    async def finish_dinner(self, channel_id: str) -> DinnerRecord:
        channel = await self._repo.ensure_channel(channel_id)
        dinner_id = channel.current_dinner_id
        if not dinner_id:
            raise NotFoundError(f"no active dinner in channel {channel_id}")

        now = self._clock()

        def finish(dinner: DinnerRecord) -> None:
            if dinner.finished_at is None:
                dinner.finished_at = now

        dinner = await self._repo.update_dinner(dinner_id, finish)

        def release(state: ChannelWorkflowState) -> None:
            if state.current_dinner_id == dinner_id:
                state.current_dinner_id = None
            state.last_activity = now

        await self._repo.update_channel(channel_id, release)
        logger.info("Dinner %s finished in channel %s", dinner_id, channel_id)
        return dinner

    async def rate_dinner(
        self, dinner_id: str, user_id: str, rating: int
    ) -> DinnerRecord:
        if isinstance(rating, bool) or not isinstance(rating, int):
            raise InvalidInputError(f"rating must be an integer, got {rating!r}")
        if not MIN_RATING <= rating <= MAX_RATING:
            raise InvalidInputError(
                f"rating must be between {MIN_RATING} and {MAX_RATING}, got {rating}"
            )

        def apply(dinner: DinnerRecord) -> None:
            dinner.ratings[user_id] = rating
            dinner.average_rating = sum(dinner.ratings.values()) / len(dinner.ratings)

        return await self._repo.update_dinner(dinner_id, apply)

    async def record_used_ingredients(
        self, dinner_id: str, ingredients: Iterable[str]
    ) -> DinnerRecord:
        used = [item for item in ingredients if item.strip()]

        def apply(dinner: DinnerRecord) -> None:
            if dinner.used_ingredients is not None:
                raise PreconditionFailedError(
                    f"used ingredients already recorded for dinner {dinner_id}"
                )
            dinner.used_ingredients = used

        return await self._repo.update_dinner(dinner_id, apply)


__all__ = ["DinnerLifecycle", "MAX_RATING", "MIN_RATING"]
