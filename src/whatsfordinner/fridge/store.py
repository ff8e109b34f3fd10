from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from whatsfordinner.fridge.ingredients import normalize_ingredient, split_quantity
from whatsfordinner.workflow.errors import NotFoundError
from whatsfordinner.workflow.models import Fridge, FridgeIngredient, utcnow
from whatsfordinner.workflow.repository import WorkflowRepository, fridge_key

logger = logging.getLogger(__name__)


class FridgeStore:
    """Per-channel ingredient inventory stored under ``fridge:<channel_id>``."""

    def __init__(
        self,
        repository: WorkflowRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._clock = clock

    async def get_fridge(self, channel_id: str) -> Fridge:
        try:
            return await self._repo.load(fridge_key(channel_id), Fridge)
        except NotFoundError:
            return Fridge(channel_id=channel_id)

    async def list_ingredients(self, channel_id: str) -> list[FridgeIngredient]:
        fridge = await self.get_fridge(channel_id)
        return sorted(fridge.ingredients.values(), key=lambda item: item.name.lower())

    async def ingredient_names(self, channel_id: str) -> list[str]:
        return [item.name for item in await self.list_ingredients(channel_id)]

    async def add_ingredients(
        self, channel_id: str, ingredients: Iterable[str]
    ) -> list[FridgeIngredient]:
        """Add or refresh items; ``"milk (1 l)"`` stores quantity ``"1 l"``."""
        now = self._clock()
        added: list[FridgeIngredient] = []
        for raw in ingredients:
            name, quantity = split_quantity(raw)
            if name:
                added.append(FridgeIngredient(name=name, quantity=quantity, added_at=now))

        def apply(fridge: Fridge) -> None:
            for item in added:
                fridge.ingredients[normalize_ingredient(item.name)] = item

        if added:
            await self._mutate(channel_id, apply)
            logger.info("Added %d ingredients to fridge %s", len(added), channel_id)
        return added

    async def remove_ingredients(
        self, channel_id: str, ingredients: Iterable[str]
    ) -> list[str]:
        wanted = {normalize_ingredient(item) for item in ingredients}
        wanted.discard("")
        removed: list[str] = []

        def apply(fridge: Fridge) -> None:
            removed.clear()
            for key in list(fridge.ingredients):
                if key in wanted:
                    removed.append(fridge.ingredients.pop(key).name)

        if wanted:
            await self._mutate(channel_id, apply)
            logger.info(
                "Removed %d ingredients from fridge %s", len(removed), channel_id
            )
        return removed

    async def reset(self, channel_id: str) -> None:
        await self._repo.save(fridge_key(channel_id), Fridge(channel_id=channel_id))
        logger.info("Reset fridge %s", channel_id)

    async def _mutate(self, channel_id: str, fn: Callable[[Fridge], None]) -> Fridge:
        return await self._repo.mutate(
            fridge_key(channel_id),
            Fridge,
            fn,
            create=lambda: Fridge(channel_id=channel_id),
        )


__all__ = ["FridgeStore"]
