import asyncio
import logging
from typing import Awaitable, Callable

from aiohttp import web
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_bolt.context.context import BoltContext

from ..core.config import settings
from ..core.logging_config import configure_logging
from ..core.runtime import initialize_runtime, shutdown_runtime
from .files import SlackFileFetcher
from .handlers import DinnerCommands, register_handlers

logger = logging.getLogger(__name__)


async def build_app() -> AsyncApp:
    app = AsyncApp(
        token=settings.slack_bot_token, signing_secret=settings.slack_signing_secret
    )
    runtime = await initialize_runtime(slack_client=app.client)

    @app.use
    async def log_everything(
        logger: logging.Logger,
        body: dict,
        context: BoltContext,
        next: Callable[[], Awaitable[None]],
    ) -> None:
        ev = body.get("event", {})
        logger.info(
            "INBOUND type=%s event=%s channel=%s text=%s",
            body.get("type"),
            ev.get("type"),
            ev.get("channel"),
            (ev.get("text") or "")[:120],
        )
        await next()

    commands = DinnerCommands(
        workflow=runtime.workflow,
        repository=runtime.repository,
        sessions=runtime.sessions,
        llm=runtime.llm,
        transport=runtime.transport,
        files=SlackFileFetcher(
            settings.slack_bot_token, timeout_s=settings.transport_timeout_seconds
        ),
    )
    register_handlers(app, commands)
    return app


async def _serve_http(app: AsyncApp) -> None:
    runner = web.AppRunner(app.web_app(path="/slack/events"))
    await runner.setup()
    site = web.TCPSite(runner, port=settings.slack_port)
    await site.start()
    logger.info("Listening for Slack events on port %s", settings.slack_port)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


async def start() -> None:
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
        metrics_port=settings.metrics_port,
    )
    app = await build_app()
    try:
        if settings.slack_socket_mode and settings.slack_app_token:
            handler = AsyncSocketModeHandler(app, settings.slack_app_token)
            await handler.start_async()
        else:
            # Fallback to HTTP server
            await _serve_http(app)
    finally:
        await shutdown_runtime()


def main() -> None:
    asyncio.run(start())


if __name__ == "__main__":
    main()
