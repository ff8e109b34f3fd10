import json
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError

from whatsfordinner.llm.client import (
    OpenAIDinnerClient,
    clean_json_response,
    extract_list_leniently,
)
from whatsfordinner.workflow.errors import CollaboratorError


class FakeCompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=reply))]
        )


def _client(*replies):
    completions = FakeCompletions(replies)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIDinnerClient(fake, model="test-model"), completions


def test_clean_json_response_strips_code_fences():
    assert clean_json_response('```json\n["eggs"]\n```') == '["eggs"]'
    assert clean_json_response('  ["eggs"] ') == '["eggs"]'


def test_extract_list_leniently_splits_loose_text():
    assert extract_list_leniently("- eggs\n- milk, butter") == ["eggs", "milk", "butter"]


@pytest.mark.asyncio
async def test_suggest_dinner_options_parses_fenced_json():
    payload = [
        {
            "name": "Borscht",
            "cuisine": "Russian",
            "description": "Beet soup",
            "ingredients_needed": ["beets", "cabbage"],
        },
        {"name": "Pasta", "cuisine": "Italian"},
        {"name": "Omelette"},
    ]
    llm, completions = _client(f"```json\n{json.dumps(payload)}\n```")

    dishes = await llm.suggest_dinner_options(["beets"], ["Russian"], 2)

    assert [d.name for d in dishes] == ["Borscht", "Pasta"]
    assert dishes[0].ingredients == ["beets", "cabbage"]
    assert completions.calls[0]["model"] == "test-model"
    assert "suggest 2 dinner options" in completions.calls[0]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_suggest_dinner_options_rejects_garbage():
    llm, _ = _client("I think you should cook soup")

    with pytest.raises(CollaboratorError):
        await llm.suggest_dinner_options([], [], 3)


@pytest.mark.asyncio
async def test_get_dish_info_joins_instruction_steps():
    llm, completions = _client(
        json.dumps(
            {
                "name": "Pelmeni",
                "cuisine": "Russian",
                "ingredients_needed": ["flour", "beef"],
                "instructions": ["Make dough", "Fill and boil"],
                "description": "Dumplings",
            }
        )
    )

    dish = await llm.get_dish_info("Pelmeni", "Russian")

    assert dish.instructions == "1. Make dough\n2. Fill and boil"
    assert dish.ingredients == ["flour", "beef"]
    assert "from Russian cuisine" in completions.calls[0]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_parse_ingredients_from_text():
    llm, _ = _client('["eggs", " milk ", ""]')

    assert await llm.parse_ingredients_from_text("eggs and milk") == ["eggs", "milk"]


@pytest.mark.asyncio
async def test_image_extraction_sends_image_and_falls_back_to_lenient_parse():
    llm, completions = _client("eggs, milk\ncheese")

    items = await llm.extract_ingredients_from_image("data:image/png;base64,AAA")

    assert items == ["eggs", "milk", "cheese"]
    content = completions.calls[0]["messages"][1]["content"]
    assert content[1]["image_url"]["url"] == "data:image/png;base64,AAA"


@pytest.mark.asyncio
async def test_compose_message_falls_back_on_failure():
    llm, _ = _client(ValueError("nope"))

    text = await llm.compose_message("cook_confirmation", {"cook": "U1"}, fallback="hi")

    assert text == "hi"


@pytest.mark.asyncio
async def test_compose_message_uses_model_text():
    llm, _ = _client("  Who wants to cook? ")

    assert await llm.compose_message("x", {}, fallback="fb") == "Who wants to cook?"


@pytest.mark.asyncio
async def test_connection_errors_are_retried():
    error = APIConnectionError(request=httpx.Request("POST", "https://api.example"))
    llm, completions = _client(error, '["eggs"]')

    assert await llm.parse_ingredients_from_text("eggs") == ["eggs"]
    assert len(completions.calls) == 2


@pytest.mark.asyncio
async def test_non_retryable_errors_surface_as_collaborator_error():
    llm, completions = _client(RuntimeError("bad key"))

    with pytest.raises(CollaboratorError) as excinfo:
        await llm.get_dish_info("Soup")

    assert excinfo.value.operation == "get_dish_info"
    assert len(completions.calls) == 1
