from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Optional, Sequence

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, RateLimitError
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from whatsfordinner.core.diag import with_timeout
from whatsfordinner.core.logging_config import record_error
from whatsfordinner.llm import prompts
from whatsfordinner.workflow.errors import CollaboratorError
from whatsfordinner.workflow.models import Dish

logger = logging.getLogger(__name__)

_STRING_LIST = TypeAdapter(list[str])
_CODE_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?|\n?```\s*$")


class _DishPayload(BaseModel):
    name: str
    cuisine: str = ""
    description: str = ""
    ingredients_needed: list[str] = Field(default_factory=list)
    instructions: str = ""

    @field_validator("instructions", mode="before")
    @classmethod
    def _join_steps(cls, value: Any) -> str:
        if isinstance(value, list):
            return "\n".join(
                f"{idx}. {str(step).strip()}" for idx, step in enumerate(value, start=1)
            )
        return value or ""

    def to_dish(self) -> Dish:
        return Dish(
            name=self.name.strip(),
            cuisine=self.cuisine.strip(),
            description=self.description.strip(),
            ingredients=[item.strip() for item in self.ingredients_needed if item.strip()],
            instructions=self.instructions.strip(),
        )


_DISH_LIST = TypeAdapter(list[_DishPayload])


def clean_json_response(content: str) -> str:
    """Strip markdown code fences the model sometimes wraps JSON in."""
    text = (content or "").strip()
    if text.startswith("```"):
        text = _CODE_FENCE_RE.sub("", text).strip()
    return text


def extract_list_leniently(content: str) -> list[str]:
    """Best-effort ingredient list from text that is not valid JSON."""
    items: list[str] = []
    for part in re.split(r'[,\n"\[\]\t]', content or ""):
        item = part.strip().lstrip("-*• ").strip()
        if item and len(item) <= 60 and item.lower() not in {"json", "```"}:
            items.append(item)
    return items


def _log_retry(retry_state) -> None:
    logger.warning(
        "OpenAI call failed (%s); retrying (attempt %s)",
        type(retry_state.outcome.exception()).__name__,
        retry_state.attempt_number,
    )


@retry(
    retry=retry_if_exception_type((APIConnectionError, APITimeoutError, RateLimitError)),
    stop=stop_after_attempt(3),
    wait=wait_random_exponential(0.5, max=4),
    before_sleep=_log_retry,
    reraise=True,
)
async def _create_completion(client: AsyncOpenAI, **kwargs: Any) -> Any:
    return await client.chat.completions.create(**kwargs)


class OpenAIDinnerClient:
    """Dish suggestions, recipe lookup and ingredient parsing via OpenAI chat."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout_s: float = 30.0,
        short_timeout_s: float = 15.0,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._model = model
        self._timeout_s = timeout_s
        self._short_timeout_s = min(short_timeout_s, timeout_s)

    async def suggest_dinner_options(
        self, ingredients: Sequence[str], cuisines: Sequence[str], count: int
    ) -> list[Dish]:
        logger.info(
            "Requesting %d dinner suggestions (%d ingredients, %d cuisines)",
            count,
            len(ingredients),
            len(cuisines),
        )
        content = await self._complete(
            "suggest_dinner_options",
            [
                {"role": "system", "content": prompts.SUGGEST_SYSTEM},
                {
                    "role": "user",
                    "content": prompts.suggest_dinner_prompt(ingredients, cuisines, count),
                },
            ],
            temperature=0.7,
            timeout_s=self._timeout_s,
        )
        try:
            payload = _DISH_LIST.validate_json(clean_json_response(content))
        except ValidationError as exc:
            raise CollaboratorError("suggest_dinner_options", exc) from exc
        dishes = [item.to_dish() for item in payload if item.name.strip()]
        return dishes[:count]

    async def get_dish_info(self, name: str, cuisine: Optional[str] = None) -> Dish:
        logger.info("Requesting dish info for %s (cuisine=%s)", name, cuisine or "any")
        content = await self._complete(
            "get_dish_info",
            [
                {"role": "system", "content": prompts.DISH_INFO_SYSTEM},
                {"role": "user", "content": prompts.dish_info_prompt(name, cuisine)},
            ],
            temperature=0.3,
            timeout_s=self._timeout_s,
        )
        try:
            payload = _DishPayload.model_validate_json(clean_json_response(content))
        except ValidationError as exc:
            raise CollaboratorError("get_dish_info", exc) from exc
        return payload.to_dish()

    async def parse_ingredients_from_text(self, text: str) -> list[str]:
        content = await self._complete(
            "parse_ingredients_from_text",
            [{"role": "user", "content": prompts.parse_ingredients_prompt(text)}],
            temperature=0.2,
            timeout_s=self._short_timeout_s,
        )
        try:
            items = _STRING_LIST.validate_json(clean_json_response(content))
        except ValidationError as exc:
            raise CollaboratorError("parse_ingredients_from_text", exc) from exc
        return [item.strip() for item in items if item.strip()]

    async def extract_ingredients_from_image(self, image_url: str) -> list[str]:
        content = await self._complete(
            "extract_ingredients_from_image",
            [
                {"role": "system", "content": prompts.VISION_SYSTEM},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompts.VISION_USER},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                },
            ],
            temperature=0.2,
            timeout_s=self._timeout_s,
        )
        cleaned = clean_json_response(content)
        try:
            items = _STRING_LIST.validate_json(cleaned)
        except ValidationError as exc:
            items = extract_list_leniently(cleaned)
            if not items:
                raise CollaboratorError("extract_ingredients_from_image", exc) from exc
            logger.info("Extracted %d ingredients with the lenient parser", len(items))
        return [item.strip() for item in items if item.strip()]

    async def compose_message(
        self, intent: str, context: Mapping[str, Any], *, fallback: str
    ) -> str:
        """Friendly chat text for ``intent``; ``fallback`` on any failure."""
        try:
            content = await self._complete(
                f"compose_message:{intent}",
                [{"role": "user", "content": prompts.chat_message_prompt(intent, context)}],
                temperature=0.7,
                timeout_s=self._short_timeout_s,
            )
        except CollaboratorError:
            logger.warning("Falling back to static text for intent %s", intent)
            return fallback
        return content.strip() or fallback

    async def _complete(
        self,
        label: str,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        timeout_s: float,
    ) -> str:
        try:
            resp = await with_timeout(
                f"openai:{label}",
                _create_completion(
                    self._client,
                    model=self._model,
                    messages=messages,
                    temperature=temperature,
                ),
                timeout_s=timeout_s,
            )
        except Exception as exc:
            record_error(component="llm", error_type=type(exc).__name__)
            raise CollaboratorError(label, exc) from exc
        if not resp.choices:
            raise CollaboratorError(label, ValueError("no choices in response"))
        return resp.choices[0].message.content or ""


__all__ = [
    "OpenAIDinnerClient",
    "clean_json_response",
    "extract_list_leniently",
]
