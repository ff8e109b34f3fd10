from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from whatsfordinner.fridge.store import FridgeStore
from whatsfordinner.fridge.suggestions import SuggestionStore
from whatsfordinner.storage.kv_store import SqlAlchemyKeyValueStore, ensure_kv_schema
from whatsfordinner.workflow.collaborators import PollRef, SentMessage
from whatsfordinner.workflow.dinners import DinnerLifecycle
from whatsfordinner.workflow.errors import CollaboratorError
from whatsfordinner.workflow.models import Dish
from whatsfordinner.workflow.orchestrator import DinnerWorkflow
from whatsfordinner.workflow.poll_index import PollChannelIndex
from whatsfordinner.workflow.repository import WorkflowRepository
from whatsfordinner.workflow.votes import VoteEngine


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class DummyTransport:
    def __init__(self, member_count: int = 3):
        self.member_count = member_count
        self.sent: list[dict[str, Any]] = []
        self.edits: list[dict[str, Any]] = []
        self.polls: list[dict[str, Any]] = []
        self.ephemeral: list[dict[str, Any]] = []
        self.fail_member_count = False
        self._ts = 0

    def _next_ts(self) -> str:
        self._ts += 1
        return f"1700000000.{self._ts:06d}"

    async def send_message(self, channel_id, text, *, blocks=None):
        self.sent.append({"channel": channel_id, "text": text, "blocks": blocks})
        return SentMessage(channel_id=channel_id, message_ref=self._next_ts())

    async def edit_message(self, channel_id, message_ref, text, *, blocks=None):
        self.edits.append(
            {"channel": channel_id, "ts": message_ref, "text": text, "blocks": blocks}
        )

    async def create_poll(self, channel_id, question, options):
        poll_id = f"poll-{len(self.polls) + 1}"
        self.polls.append(
            {"channel": channel_id, "question": question, "options": list(options)}
        )
        return PollRef(poll_id=poll_id, message_ref=self._next_ts())

    async def answer_callback(self, channel_id, user_id, text):
        self.ephemeral.append({"channel": channel_id, "user": user_id, "text": text})

    async def get_member_count(self, channel_id):
        if self.fail_member_count:
            raise CollaboratorError("conversations_info", RuntimeError("boom"))
        return self.member_count

    def texts(self) -> list[str]:
        return [msg["text"] for msg in self.sent]


class FakeLLM:
    def __init__(self):
        self.dishes = [
            Dish(name="Borscht", cuisine="Russian", ingredients=["beets", "cabbage"]),
            Dish(name="Pasta", cuisine="Italian", ingredients=["pasta", "tomatoes"]),
            Dish(name="Omelette", cuisine="European", ingredients=["eggs"]),
        ]
        self.dish_info: dict[str, Dish] = {}
        self.parsed: list[str] = []
        self.image_items: list[str] = []
        self.fail_suggestions = False
        self.fail_dish_info = False
        self.suggest_calls: list[dict[str, Any]] = []

    async def suggest_dinner_options(self, ingredients, cuisines, count):
        self.suggest_calls.append(
            {"ingredients": list(ingredients), "cuisines": list(cuisines), "count": count}
        )
        if self.fail_suggestions:
            raise CollaboratorError("suggest_dinner_options", RuntimeError("down"))
        return list(self.dishes[:count])

    async def get_dish_info(self, name, cuisine: Optional[str] = None):
        if self.fail_dish_info:
            raise CollaboratorError("get_dish_info", RuntimeError("down"))
        return self.dish_info.get(name) or Dish(
            name=name,
            cuisine=cuisine or "",
            ingredients=["eggs"],
            instructions="1. Cook it.",
        )

    async def parse_ingredients_from_text(self, text):
        return list(self.parsed)

    async def extract_ingredients_from_image(self, image_url):
        return list(self.image_items)

    async def compose_message(self, intent, context, *, fallback):
        return fallback


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 15, 1, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def kv_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'kv.db'}")
    await ensure_kv_schema(engine)
    yield SqlAlchemyKeyValueStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
def repository(kv_store):
    return WorkflowRepository(kv_store, default_cuisines=["Italian", "Russian"])


@pytest.fixture
def vote_engine(repository, kv_store, clock):
    return VoteEngine(repository, PollChannelIndex(kv_store), clock=clock)


@pytest.fixture
def dinners(repository, clock):
    return DinnerLifecycle(repository, clock=clock)


@pytest.fixture
def transport():
    return DummyTransport()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def workflow(repository, vote_engine, dinners, transport, llm, clock):
    return DinnerWorkflow(
        repository=repository,
        votes=vote_engine,
        dinners=dinners,
        fridge=FridgeStore(repository, clock=clock),
        suggestions=SuggestionStore(repository, clock=clock),
        transport=transport,
        llm=llm,
        clock=clock,
    )
