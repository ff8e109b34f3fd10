"""Narrow interfaces the workflow consumes from Slack and the language model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

from whatsfordinner.workflow.models import Dish


@dataclass(frozen=True)
class SentMessage:
    channel_id: str
    message_ref: str


@dataclass(frozen=True)
class PollRef:
    poll_id: str
    message_ref: str


class ChatTransport(Protocol):
    async def send_message(
        self,
        channel_id: str,
        text: str,
        *,
        blocks: Optional[list[dict[str, Any]]] = None,
    ) -> SentMessage:
        ...

    async def edit_message(
        self,
        channel_id: str,
        message_ref: str,
        text: str,
        *,
        blocks: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        ...

    async def create_poll(
        self, channel_id: str, question: str, options: Sequence[str]
    ) -> PollRef:
        ...

    async def answer_callback(self, channel_id: str, user_id: str, text: str) -> None:
        ...

    async def get_member_count(self, channel_id: str) -> int:
        ...


class DinnerLLM(Protocol):
    async def suggest_dinner_options(
        self, ingredients: Sequence[str], cuisines: Sequence[str], count: int
    ) -> list[Dish]:
        ...

    async def get_dish_info(self, name: str, cuisine: Optional[str] = None) -> Dish:
        ...

    async def parse_ingredients_from_text(self, text: str) -> list[str]:
        ...

    async def extract_ingredients_from_image(self, image_url: str) -> list[str]:
        ...

    async def compose_message(
        self, intent: str, context: Mapping[str, Any], *, fallback: str
    ) -> str:
        ...


__all__ = ["ChatTransport", "DinnerLLM", "PollRef", "SentMessage"]
