from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from whatsfordinner.core.logging_config import observe_tick_duration, record_error
from whatsfordinner.workflow.models import utcnow
from whatsfordinner.workflow.orchestrator import DinnerWorkflow
from whatsfordinner.workflow.repository import WorkflowRepository

logger = logging.getLogger(__name__)


class WorkflowScheduler:
    """Three one-minute ticks over every channel: starter, closer, watchdog.

    A failing channel is logged and skipped; the next tick is the retry.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        *,
        repository: WorkflowRepository,
        workflow: DinnerWorkflow,
        tz: tzinfo = timezone.utc,
        start_hour: int = 15,
        end_hour: int = 21,
        window_minutes: int = 5,
        tick_seconds: int = 60,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._scheduler = scheduler
        self._repo = repository
        self._workflow = workflow
        self._tz = tz
        self._start_hour = start_hour
        self._end_hour = end_hour
        self._window_minutes = window_minutes
        self._tick_seconds = tick_seconds
        self._now = now

    def start(self) -> None:
        for job_id, func in (
            ("dinner_workflow:daily_starter", self.run_daily_starter),
            ("dinner_workflow:daily_closer", self.run_daily_closer),
            ("dinner_workflow:volunteer_watchdog", self.check_volunteer_timeouts),
        ):
            self._scheduler.add_job(
                func,
                trigger="interval",
                seconds=self._tick_seconds,
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info("Dinner workflow scheduler started (tz=%s)", self._tz)

    def stop(self) -> None:
        for job_id in (
            "dinner_workflow:daily_starter",
            "dinner_workflow:daily_closer",
            "dinner_workflow:volunteer_watchdog",
        ):
            if self._scheduler.get_job(job_id) is not None:
                self._scheduler.remove_job(job_id)
        logger.info("Dinner workflow scheduler stopped")

    def in_window(self, hour: int, now: datetime | None = None) -> bool:
        local = (now or self._now()).astimezone(self._tz)
        return local.hour == hour and local.minute < self._window_minutes

    async def run_daily_starter(self, now: datetime | None = None) -> int:
        """Open a poll in every channel that has not started a workflow today."""
        now = now or self._now()
        if not self.in_window(self._start_hour, now):
            return 0
        started = 0
        tick_started = time.perf_counter()
        for channel_id in await self._repo.list_channel_ids():
            try:
                await self._workflow.release_stale_vote(channel_id)
                if await self.has_started_today(channel_id, now):
                    continue
                logger.info("Starting dinner workflow for channel %s", channel_id)
                if await self._workflow.start_workflow(channel_id) is not None:
                    started += 1
            except Exception as exc:
                record_error(component="scheduler.starter", error_type=type(exc).__name__)
                logger.exception("Daily starter failed for channel %s", channel_id)
        observe_tick_duration(
            task="daily_starter", duration_s=time.perf_counter() - tick_started
        )
        return started

    async def run_daily_closer(self, now: datetime | None = None) -> int:
        """Force every unfinished vote, cook request or dinner to end."""
        now = now or self._now()
        if not self.in_window(self._end_hour, now):
            return 0
        closed = 0
        tick_started = time.perf_counter()
        for channel_id in await self._repo.list_channel_ids():
            try:
                channel = await self._repo.get_channel(channel_id)
                if channel.is_idle:
                    continue
                logger.info("Stopping unfinished dinner workflow for channel %s", channel_id)
                if await self._workflow.close_workflow(channel_id):
                    closed += 1
            except Exception as exc:
                record_error(component="scheduler.closer", error_type=type(exc).__name__)
                logger.exception("Daily closer failed for channel %s", channel_id)
        observe_tick_duration(
            task="daily_closer", duration_s=time.perf_counter() - tick_started
        )
        return closed

    async def check_volunteer_timeouts(self, now: datetime | None = None) -> int:
        """Restart polls whose winner has waited too long for a cook."""
        now = now or self._now()
        restarted = 0
        tick_started = time.perf_counter()
        for channel_id in await self._repo.list_channel_ids():
            try:
                if await self._workflow.check_volunteer_timeout(channel_id, now):
                    restarted += 1
            except Exception as exc:
                record_error(component="scheduler.watchdog", error_type=type(exc).__name__)
                logger.exception("Volunteer watchdog failed for channel %s", channel_id)
        observe_tick_duration(
            task="volunteer_watchdog", duration_s=time.perf_counter() - tick_started
        )
        return restarted

    async def has_started_today(self, channel_id: str, now: datetime) -> bool:
        channel = await self._repo.get_channel(channel_id)
        if not channel.is_idle:
            return True
        local = now.astimezone(self._tz)
        day_start = local.replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + timedelta(days=1)
        for vote in await self._repo.list_votes(channel_id):
            if day_start <= vote.started_at.astimezone(self._tz) < day_end:
                return True
        for dinner in await self._repo.list_dinners(channel_id):
            if day_start <= dinner.started_at.astimezone(self._tz) < day_end:
                return True
        return False


__all__ = ["WorkflowScheduler"]
