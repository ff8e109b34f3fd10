from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from slack_sdk.web.async_client import AsyncWebClient
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from whatsfordinner.core.config import Settings, settings
from whatsfordinner.fridge.store import FridgeStore
from whatsfordinner.fridge.suggestions import SuggestionStore
from whatsfordinner.llm.client import OpenAIDinnerClient
from whatsfordinner.slack_bot.transport import SlackChatTransport
from whatsfordinner.storage.kv_store import SqlAlchemyKeyValueStore, ensure_kv_schema
from whatsfordinner.workflow.dinners import DinnerLifecycle
from whatsfordinner.workflow.orchestrator import DinnerWorkflow
from whatsfordinner.workflow.poll_index import PollChannelIndex
from whatsfordinner.workflow.repository import WorkflowRepository
from whatsfordinner.workflow.scheduler import WorkflowScheduler
from whatsfordinner.workflow.session_state import ChatSessionManager
from whatsfordinner.workflow.votes import VoteEngine

logger = logging.getLogger(__name__)


@dataclass
class DinnerRuntime:
    settings: Settings
    engine: AsyncEngine
    repository: WorkflowRepository
    workflow: DinnerWorkflow
    sessions: ChatSessionManager
    llm: OpenAIDinnerClient
    transport: SlackChatTransport
    scheduler: AsyncIOScheduler
    workflow_scheduler: WorkflowScheduler


_runtime: DinnerRuntime | None = None
_runtime_lock = asyncio.Lock()


def _coerce_async_database_url(database_url: str) -> str:
    if database_url.startswith("sqlite+aiosqlite://"):
        return database_url
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def _ensure_sqlite_directory(async_url: str) -> None:
    url = make_url(async_url)
    if not url.drivername.startswith("sqlite") or not url.database:
        return
    if url.database == ":memory:":
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


async def build_runtime(
    cfg: Settings = settings, *, slack_client: Optional[AsyncWebClient] = None
) -> DinnerRuntime:
    async_url = _coerce_async_database_url(cfg.database_url)
    _ensure_sqlite_directory(async_url)
    engine = create_async_engine(async_url)
    await ensure_kv_schema(engine)
    sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    store = SqlAlchemyKeyValueStore(sessionmaker)
    repository = WorkflowRepository(store, default_cuisines=cfg.cuisine_list)
    poll_index = PollChannelIndex(store)

    llm = OpenAIDinnerClient(
        api_key=cfg.openai_api_key,
        base_url=cfg.openai_base_url,
        model=cfg.openai_model,
        timeout_s=cfg.llm_timeout_seconds,
        short_timeout_s=cfg.transport_timeout_seconds,
    )
    transport = SlackChatTransport(
        slack_client or AsyncWebClient(token=cfg.slack_bot_token),
        timeout_s=cfg.transport_timeout_seconds,
    )
    workflow = DinnerWorkflow(
        repository=repository,
        votes=VoteEngine(repository, poll_index),
        dinners=DinnerLifecycle(repository),
        fridge=FridgeStore(repository),
        suggestions=SuggestionStore(repository),
        transport=transport,
        llm=llm,
        quorum_fraction=cfg.quorum_fraction,
        default_member_count=cfg.default_member_count,
        suggestion_count=cfg.suggestion_count,
        volunteer_grace_minutes=cfg.volunteer_grace_minutes,
    )

    tz = ZoneInfo(cfg.scheduler_timezone)
    scheduler = AsyncIOScheduler(timezone=tz)
    workflow_scheduler = WorkflowScheduler(
        scheduler,
        repository=repository,
        workflow=workflow,
        tz=tz,
        start_hour=cfg.daily_start_hour,
        end_hour=cfg.daily_end_hour,
        window_minutes=cfg.window_slack_minutes,
        tick_seconds=cfg.tick_seconds,
    )
    return DinnerRuntime(
        settings=cfg,
        engine=engine,
        repository=repository,
        workflow=workflow,
        sessions=ChatSessionManager(idle_seconds=cfg.session_idle_minutes * 60),
        llm=llm,
        transport=transport,
        scheduler=scheduler,
        workflow_scheduler=workflow_scheduler,
    )


async def initialize_runtime(
    *, slack_client: Optional[AsyncWebClient] = None
) -> DinnerRuntime:
    """Build the runtime and start the scheduler, reusing the singleton instance."""
    global _runtime
    if _runtime:
        return _runtime

    async with _runtime_lock:
        if _runtime:
            return _runtime
        runtime = await build_runtime(settings, slack_client=slack_client)
        runtime.workflow_scheduler.start()
        _runtime = runtime
        logger.info("Dinner runtime initialized")
        return _runtime


async def shutdown_runtime() -> None:
    """Stop the scheduler and release the database engine."""
    global _runtime
    async with _runtime_lock:
        runtime = _runtime
        if runtime is None:
            return
        _runtime = None

    runtime.workflow_scheduler.stop()
    if runtime.scheduler.running:
        runtime.scheduler.shutdown(wait=False)
    await runtime.engine.dispose()
    logger.info("Dinner runtime shut down")


__all__ = [
    "DinnerRuntime",
    "build_runtime",
    "initialize_runtime",
    "shutdown_runtime",
]
