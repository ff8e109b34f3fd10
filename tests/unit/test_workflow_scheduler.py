from datetime import datetime, timezone

import pytest

from whatsfordinner.workflow import orchestrator
from whatsfordinner.workflow.errors import StoreError
from whatsfordinner.workflow.models import Dish, WorkflowPhase
from whatsfordinner.workflow.scheduler import WorkflowScheduler


class FakeAPScheduler:
    def __init__(self):
        self.jobs: dict[str, dict] = {}
        self.running = False

    def add_job(self, func, **kwargs):
        self.jobs[kwargs["id"]] = {"func": func, **kwargs}

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def remove_job(self, job_id):
        self.jobs.pop(job_id)

    def start(self):
        self.running = True


def _at(hour, minute=0, day=2):
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(repository, workflow, clock):
    return WorkflowScheduler(
        FakeAPScheduler(),
        repository=repository,
        workflow=workflow,
        tz=timezone.utc,
        now=clock,
    )


async def _stock(workflow, channel):
    await workflow.fridge.add_ingredients(channel, ["beets", "eggs"])


def test_start_registers_three_interval_jobs(scheduler):
    scheduler.start()

    jobs = scheduler._scheduler.jobs
    assert set(jobs) == {
        "dinner_workflow:daily_starter",
        "dinner_workflow:daily_closer",
        "dinner_workflow:volunteer_watchdog",
    }
    assert all(job["trigger"] == "interval" and job["seconds"] == 60 for job in jobs.values())
    assert scheduler._scheduler.running

    scheduler.stop()
    assert scheduler._scheduler.jobs == {}


def test_in_window_uses_local_hour_and_slack(repository, workflow):
    sched = WorkflowScheduler(
        FakeAPScheduler(), repository=repository, workflow=workflow, window_minutes=5
    )

    assert sched.in_window(15, _at(15, 0))
    assert sched.in_window(15, _at(15, 4))
    assert not sched.in_window(15, _at(15, 5))
    assert not sched.in_window(15, _at(14, 59))


@pytest.mark.asyncio
async def test_starter_does_nothing_outside_window(scheduler, workflow, repository, transport):
    await repository.ensure_channel("C1")
    await _stock(workflow, "C1")

    assert await scheduler.run_daily_starter(_at(14, 0)) == 0
    assert transport.polls == []


@pytest.mark.asyncio
async def test_starter_opens_polls_once_per_day(scheduler, workflow, repository, transport):
    await repository.ensure_channel("C1")
    await repository.ensure_channel("C2")
    await _stock(workflow, "C1")

    assert await scheduler.run_daily_starter(_at(15, 1)) == 1
    assert [p["channel"] for p in transport.polls] == ["C1"]
    assert orchestrator.MSG_EMPTY_FRIDGE in [
        m["text"] for m in transport.sent if m["channel"] == "C2"
    ]

    assert await scheduler.run_daily_starter(_at(15, 2)) == 0
    assert len(transport.polls) == 1


@pytest.mark.asyncio
async def test_has_started_today_sees_finished_dinners(
    scheduler, dinners, repository, clock
):
    await repository.ensure_channel("C1")
    assert not await scheduler.has_started_today("C1", clock.now)

    await dinners.create_dinner("C1", Dish(name="Soup"), "U1")
    await dinners.finish_dinner("C1")

    assert await scheduler.has_started_today("C1", clock.now)
    assert not await scheduler.has_started_today("C1", _at(15, 1, day=3))


@pytest.mark.asyncio
async def test_closer_ends_open_votes_in_window(scheduler, workflow, repository, transport):
    await _stock(workflow, "C1")
    await workflow.start_workflow("C1")
    await repository.ensure_channel("C2")

    assert await scheduler.run_daily_closer(_at(20, 59)) == 0
    assert await scheduler.run_daily_closer(_at(21, 2)) == 1

    assert (await repository.get_channel("C1")).is_idle
    assert orchestrator.MSG_LATE_NO_VOTES in transport.texts()


@pytest.mark.asyncio
async def test_watchdog_restarts_after_grace_period(
    scheduler, workflow, repository, transport, clock
):
    """Borscht wins, nobody volunteers, and 15 minutes later a new poll opens."""
    await _stock(workflow, "C1")
    vote = await workflow.start_workflow("C1")
    assert vote.options[0] == "Borscht"
    await workflow.handle_ballot(vote.poll_id, "U1", 0)
    await workflow.handle_ballot(vote.poll_id, "U2", 0)
    channel = await repository.get_channel("C1")
    assert channel.phase is WorkflowPhase.COOK_REQUEST

    assert await scheduler.check_volunteer_timeouts(clock.now) == 0
    assert await scheduler.check_volunteer_timeouts(clock.advance(minutes=10)) == 0
    assert len(transport.polls) == 1

    assert await scheduler.check_volunteer_timeouts(clock.advance(minutes=5)) == 1

    assert len(transport.polls) == 2
    channel = await repository.get_channel("C1")
    assert channel.cook_request_poll_id is None
    assert channel.current_poll_id not in (None, vote.poll_id)
    assert orchestrator.MSG_NO_VOLUNTEER_RESTART.format(minutes=15) in transport.texts()


@pytest.mark.asyncio
async def test_watchdog_stops_tracking_once_someone_volunteers(
    scheduler, workflow, repository, transport, clock
):
    await _stock(workflow, "C1")
    vote = await workflow.start_workflow("C1")
    await workflow.handle_ballot(vote.poll_id, "U1", 0)
    await workflow.handle_ballot(vote.poll_id, "U2", 0)
    await scheduler.check_volunteer_timeouts(clock.now)

    await workflow.handle_volunteer("C1", vote.poll_id, "U1")

    assert await scheduler.check_volunteer_timeouts(clock.advance(minutes=30)) == 0
    assert len(transport.polls) == 1


@pytest.mark.asyncio
async def test_failing_channel_is_skipped(scheduler, workflow, repository, monkeypatch, clock):
    await repository.ensure_channel("C1")
    await repository.ensure_channel("C2")
    seen = []
    original = workflow.check_volunteer_timeout

    async def flaky(channel_id, now=None):
        seen.append(channel_id)
        if channel_id == "C1":
            raise StoreError("disk on fire")
        return await original(channel_id, now)

    monkeypatch.setattr(workflow, "check_volunteer_timeout", flaky)

    assert await scheduler.check_volunteer_timeouts(clock.now) == 0
    assert seen == ["C1", "C2"]


@pytest.mark.asyncio
async def test_starter_recovers_channel_stuck_on_ended_vote(
    scheduler, workflow, repository, transport
):
    await _stock(workflow, "C1")
    vote = await workflow.start_workflow("C1")

    def close(stored):
        stored.ended_at = stored.started_at

    await repository.update_vote("C1", vote.poll_id, close)

    assert await scheduler.run_daily_starter(_at(15, 1, day=3)) == 1
    assert (await repository.get_channel("C1")).current_poll_id == "poll-2"
