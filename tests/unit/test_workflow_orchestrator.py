import asyncio

import pytest

from whatsfordinner.slack_bot import ui
from whatsfordinner.workflow import orchestrator
from whatsfordinner.workflow.errors import (
    CollaboratorError,
    InvalidInputError,
    NotFoundError,
    PreconditionFailedError,
)
from whatsfordinner.workflow.models import Dish, WorkflowPhase


async def _stock(workflow, channel="C1"):
    await workflow.fridge.add_ingredients(channel, ["beets", "eggs (6)", "pasta"])


async def _vote_borscht(workflow):
    """Open a poll and let two of three members pick Borscht."""
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")
    await workflow.handle_ballot(vote.poll_id, "U1", 0)
    outcome = await workflow.handle_ballot(vote.poll_id, "U2", 0)
    assert outcome.closed
    return vote


@pytest.mark.asyncio
async def test_start_refuses_empty_fridge(workflow, transport, repository):
    vote = await workflow.start_workflow("C1")

    assert vote is None
    assert transport.polls == []
    assert orchestrator.MSG_EMPTY_FRIDGE in transport.texts()
    assert (await repository.get_channel("C1")).is_idle


@pytest.mark.asyncio
async def test_start_opens_poll_from_llm_suggestions(workflow, transport, llm, repository):
    await _stock(workflow)

    vote = await workflow.start_workflow("C1")

    assert vote.options == ["Borscht", "Pasta", "Omelette"]
    assert vote.dishes["Borscht"].cuisine == "Russian"
    assert transport.polls[0]["question"] == orchestrator.POLL_QUESTION
    assert llm.suggest_calls[0]["cuisines"] == ["Italian", "Russian"]
    assert sorted(llm.suggest_calls[0]["ingredients"]) == ["beets", "eggs", "pasta"]
    assert (await repository.get_channel("C1")).phase is WorkflowPhase.VOTING
    assert transport.texts()[0] == orchestrator.MSG_DINNER_TIME
    assert transport.texts()[-1] == orchestrator.MSG_VOTE_PROMPT


@pytest.mark.asyncio
async def test_start_while_busy_is_rejected(workflow):
    await _stock(workflow)
    await workflow.start_workflow("C1")

    with pytest.raises(PreconditionFailedError):
        await workflow.start_workflow("C1")


@pytest.mark.asyncio
async def test_user_suggestions_lead_the_poll(workflow, llm, clock):
    await workflow.suggestions.add_suggestion("C1", "U9", Dish(name="Lasagna"))
    clock.advance(seconds=1)
    await workflow.suggestions.add_suggestion("C1", "U8", Dish(name="pasta"))

    vote = await workflow.start_workflow("C1")

    assert vote.options[:2] == ["Lasagna", "pasta"]
    # "Pasta" from the model collides with the user's "pasta".
    assert vote.options[2:] == ["Borscht"]
    assert llm.suggest_calls[0]["count"] == 2
    assert await workflow.suggestions.unused_suggestions("C1") == []


@pytest.mark.asyncio
async def test_llm_failure_with_user_suggestions_still_polls(workflow, llm):
    llm.fail_suggestions = True
    await workflow.suggestions.add_suggestion("C1", "U9", Dish(name="Lasagna"))

    vote = await workflow.start_workflow("C1")

    assert vote.options == ["Lasagna"]


@pytest.mark.asyncio
async def test_llm_failure_without_user_suggestions_propagates(workflow, llm, repository):
    llm.fail_suggestions = True
    await _stock(workflow)

    with pytest.raises(CollaboratorError):
        await workflow.start_workflow("C1")

    assert (await repository.get_channel("C1")).is_idle


@pytest.mark.asyncio
async def test_ballots_close_poll_at_quorum(workflow, transport, repository):
    transport.member_count = 4
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")

    first = await workflow.handle_ballot(vote.poll_id, "U1", 0)
    assert not first.closed
    assert first.quorum.threshold == 3

    second = await workflow.handle_ballot(vote.poll_id, "U2", 1)
    assert not second.closed
    assert first.channel_id == "C1"

    third = await workflow.handle_ballot(vote.poll_id, "U3", 0)
    assert third.closed
    assert third.vote.winning_option == "Borscht"

    channel = await repository.get_channel("C1")
    assert channel.phase is WorkflowPhase.COOK_REQUEST
    assert channel.cook_request_poll_id == vote.poll_id
    assert channel.member_count == 4

    cook_request = transport.sent[-1]
    assert cook_request["blocks"][1]["elements"][0]["action_id"] == ui.WFD_VOLUNTEER_ACTION_ID
    assert cook_request["blocks"][1]["elements"][0]["value"] == vote.poll_id
    assert "(closed)" in transport.edits[-1]["blocks"][0]["text"]["text"]


@pytest.mark.asyncio
async def test_second_ballot_from_same_user_does_not_reach_quorum(workflow):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")

    await workflow.handle_ballot(vote.poll_id, "U1", 0)
    outcome = await workflow.handle_ballot(vote.poll_id, "U1", 1)

    assert not outcome.closed
    assert outcome.vote.votes == {"U1": "Pasta"}


@pytest.mark.asyncio
async def test_ballot_with_bad_index_is_rejected(workflow):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")

    with pytest.raises(InvalidInputError):
        await workflow.handle_ballot(vote.poll_id, "U1", 7)


@pytest.mark.asyncio
async def test_member_count_failure_uses_default(workflow, transport):
    transport.fail_member_count = True
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")

    outcome = await workflow.handle_ballot(vote.poll_id, "U1", 0)

    assert outcome.quorum.threshold == 2


@pytest.mark.asyncio
async def test_volunteer_starts_dinner_with_instructions(workflow, transport, llm, repository):
    llm.dish_info["Borscht"] = Dish(
        name="Borscht",
        cuisine="Russian",
        ingredients=["beets", "cabbage"],
        instructions="1. Boil beets.",
    )
    vote = await _vote_borscht(workflow)

    dinner = await workflow.handle_volunteer("C1", vote.poll_id, "U1")

    assert dinner.cook == "U1"
    assert dinner.dish.ingredients == ["beets", "cabbage"]
    channel = await repository.get_channel("C1")
    assert channel.phase is WorkflowPhase.COOKING
    assert channel.cook_request_poll_id is None

    instructions = transport.sent[-1]
    assert "Cooking Instructions for Borscht" in instructions["text"]
    assert "• cabbage" in instructions["text"].split("*Missing from the fridge:*")[1]
    assert instructions["blocks"][1]["elements"][0]["value"] == dinner.dinner_id


@pytest.mark.asyncio
async def test_volunteer_without_dish_info_still_starts_dinner(workflow, transport, llm):
    llm.fail_dish_info = True
    vote = await _vote_borscht(workflow)

    dinner = await workflow.handle_volunteer("C1", vote.poll_id, "U2")

    assert dinner.dish.name == "Borscht"
    assert "you're on your own" in transport.sent[-1]["text"]


@pytest.mark.asyncio
async def test_non_winner_voter_cannot_volunteer(workflow):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")
    await workflow.handle_ballot(vote.poll_id, "U1", 0)
    await workflow.handle_ballot(vote.poll_id, "U2", 0)

    with pytest.raises(PreconditionFailedError):
        await workflow.handle_volunteer("C1", vote.poll_id, "U3")


@pytest.mark.asyncio
async def test_volunteer_for_stale_poll_is_rejected(workflow):
    vote = await _vote_borscht(workflow)
    await workflow.handle_volunteer("C1", vote.poll_id, "U1")

    with pytest.raises(PreconditionFailedError):
        await workflow.handle_volunteer("C1", vote.poll_id, "U2")


@pytest.mark.asyncio
async def test_only_cook_can_mark_dinner_ready(workflow, transport, repository):
    vote = await _vote_borscht(workflow)
    dinner = await workflow.handle_volunteer("C1", vote.poll_id, "U1")

    with pytest.raises(PreconditionFailedError):
        await workflow.handle_dinner_ready("C1", dinner.dinner_id, "U2")

    finished = await workflow.handle_dinner_ready("C1", dinner.dinner_id, "U1")

    assert finished.is_finished
    assert (await repository.get_channel("C1")).is_idle
    rating_buttons = transport.sent[-1]["blocks"][1]["elements"]
    assert [b["value"] for b in rating_buttons][-1] == ui.encode_rating(dinner.dinner_id, 5)

    with pytest.raises(NotFoundError):
        await workflow.handle_dinner_ready("C1", dinner.dinner_id, "U1")


@pytest.mark.asyncio
async def test_first_rating_offers_fridge_update(workflow, transport):
    vote = await _vote_borscht(workflow)
    dinner = await workflow.handle_volunteer("C1", vote.poll_id, "U1")
    await workflow.handle_dinner_ready("C1", dinner.dinner_id, "U1")

    rated = await workflow.handle_rating("C1", dinner.dinner_id, "U2", 5)
    offers = [m for m in transport.sent if m["text"] == orchestrator.MSG_FRIDGE_OFFER]
    assert len(offers) == 1
    assert rated.average_rating == 5

    rated = await workflow.handle_rating("C1", dinner.dinner_id, "U3", 4)
    offers = [m for m in transport.sent if m["text"] == orchestrator.MSG_FRIDGE_OFFER]
    assert len(offers) == 1
    assert rated.average_rating == pytest.approx(4.5)


@pytest.mark.asyncio
async def test_fridge_update_removes_used_ingredients(workflow, llm, repository):
    llm.dish_info["Borscht"] = Dish(name="Borscht", ingredients=["beets", "eggs"])
    vote = await _vote_borscht(workflow)
    dinner = await workflow.handle_volunteer("C1", vote.poll_id, "U1")

    removed = await workflow.handle_fridge_update("C1", dinner.dinner_id, apply=True)

    assert sorted(removed) == ["beets", "eggs"]
    assert await workflow.fridge.ingredient_names("C1") == ["pasta"]
    stored = await repository.get_dinner(dinner.dinner_id)
    assert stored.used_ingredients == ["beets", "eggs"]


@pytest.mark.asyncio
async def test_fridge_keep_leaves_fridge_alone(workflow, repository):
    vote = await _vote_borscht(workflow)
    dinner = await workflow.handle_volunteer("C1", vote.poll_id, "U1")

    removed = await workflow.handle_fridge_update("C1", dinner.dinner_id, apply=False)

    assert removed == []
    assert len(await workflow.fridge.ingredient_names("C1")) == 3
    assert (await repository.get_dinner(dinner.dinner_id)).used_ingredients == []


@pytest.mark.asyncio
async def test_close_open_vote_announces_winner(workflow, transport, repository):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")
    await workflow.handle_ballot(vote.poll_id, "U1", 1)

    assert await workflow.close_workflow("C1") is True

    assert orchestrator.MSG_LATE_POLL_CLOSED in transport.texts()
    assert orchestrator.MSG_LATE_WINNER.format(dish="Pasta") in transport.texts()
    assert (await repository.get_channel("C1")).is_idle


@pytest.mark.asyncio
async def test_close_open_vote_without_ballots(workflow, transport, repository):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")

    assert await workflow.close_workflow("C1") is True

    assert orchestrator.MSG_LATE_NO_VOTES in transport.texts()
    stored = await repository.get_vote("C1", vote.poll_id)
    assert stored.is_ended and stored.winning_option is None


@pytest.mark.asyncio
async def test_close_pending_cook_request(workflow, transport, repository):
    await _vote_borscht(workflow)

    assert await workflow.close_workflow("C1") is True

    assert orchestrator.MSG_LATE_NO_COOK.format(dish="Borscht") in transport.texts()
    assert (await repository.get_channel("C1")).is_idle


@pytest.mark.asyncio
async def test_close_active_dinner(workflow, transport, repository):
    vote = await _vote_borscht(workflow)
    dinner = await workflow.handle_volunteer("C1", vote.poll_id, "U1")

    assert await workflow.close_workflow("C1") is True

    assert orchestrator.MSG_LATE_DINNER_FINISHED in transport.texts()
    assert (await repository.get_dinner(dinner.dinner_id)).is_finished


@pytest.mark.asyncio
async def test_close_idle_channel_is_noop(workflow, transport):
    assert await workflow.close_workflow("C1") is False
    assert transport.sent == []


@pytest.mark.asyncio
async def test_volunteer_timeout_tracks_then_restarts(workflow, transport, repository, clock):
    await _vote_borscht(workflow)

    assert await workflow.check_volunteer_timeout("C1", clock.now) is False
    assert (await repository.get_channel("C1")).volunteer_wait_since == clock.now

    assert await workflow.check_volunteer_timeout("C1", clock.advance(minutes=14)) is False
    assert len(transport.polls) == 1

    assert await workflow.check_volunteer_timeout("C1", clock.advance(minutes=1)) is True
    assert len(transport.polls) == 2
    channel = await repository.get_channel("C1")
    assert channel.phase is WorkflowPhase.VOTING
    assert channel.current_poll_id == "poll-2"
    assert channel.volunteer_wait_since is None


@pytest.mark.asyncio
async def test_volunteer_timeout_ignores_other_phases(workflow, clock):
    await _stock(workflow)
    await workflow.start_workflow("C1")

    assert await workflow.check_volunteer_timeout("C1", clock.advance(hours=2)) is False


async def _end_vote_without_channel_write(repository, poll_id):
    """Leave the channel pointing at a vote whose own record is already ended."""

    def close(vote):
        vote.ended_at = vote.started_at

    await repository.update_vote("C1", poll_id, close)


@pytest.mark.asyncio
async def test_close_releases_channel_stuck_on_ended_vote(workflow, repository):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")
    await _end_vote_without_channel_write(repository, vote.poll_id)
    assert (await repository.get_channel("C1")).phase is WorkflowPhase.VOTING

    assert await workflow.close_workflow("C1") is True

    channel = await repository.get_channel("C1")
    assert channel.is_idle
    assert channel.cook_request_poll_id is None


@pytest.mark.asyncio
async def test_start_recovers_channel_stuck_on_ended_vote(workflow, repository):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")
    await _end_vote_without_channel_write(repository, vote.poll_id)

    restarted = await workflow.start_workflow("C1")

    assert restarted.poll_id == "poll-2"
    assert (await repository.get_channel("C1")).current_poll_id == "poll-2"


@pytest.mark.asyncio
async def test_release_stale_vote_leaves_open_votes_alone(workflow, repository):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")

    assert await workflow.release_stale_vote("C1") is False
    assert (await repository.get_channel("C1")).current_poll_id == vote.poll_id

    await _end_vote_without_channel_write(repository, vote.poll_id)
    assert await workflow.release_stale_vote("C1") is True
    assert (await repository.get_channel("C1")).is_idle


@pytest.mark.asyncio
async def test_fridge_update_is_recorded_once(workflow, llm, repository):
    llm.dish_info["Borscht"] = Dish(name="Borscht", ingredients=["beets"])
    vote = await _vote_borscht(workflow)
    dinner = await workflow.handle_volunteer("C1", vote.poll_id, "U1")
    await workflow.handle_fridge_update("C1", dinner.dinner_id, apply=True)

    with pytest.raises(PreconditionFailedError):
        await workflow.handle_fridge_update("C1", dinner.dinner_id, apply=False)
    with pytest.raises(PreconditionFailedError):
        await workflow.handle_fridge_update("C1", dinner.dinner_id, apply=True)

    assert (await repository.get_dinner(dinner.dinner_id)).used_ingredients == ["beets"]
    assert sorted(await workflow.fridge.ingredient_names("C1")) == ["eggs", "pasta"]


@pytest.mark.asyncio
async def test_concurrent_ballots_are_serialised_per_channel(workflow, transport, repository):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")

    outcomes = await asyncio.gather(
        workflow.handle_ballot(vote.poll_id, "U1", 0),
        workflow.handle_ballot(vote.poll_id, "U2", 0),
        return_exceptions=True,
    )

    assert not [o for o in outcomes if isinstance(o, Exception)]
    assert sorted(o.closed for o in outcomes) == [False, True]
    stored = await repository.get_vote("C1", vote.poll_id)
    assert stored.votes == {"U1": "Borscht", "U2": "Borscht"}
    assert stored.winning_option == "Borscht"
    closed = orchestrator.MSG_POLL_CLOSED.format(dish="Borscht")
    assert transport.texts().count(closed) == 1
    assert (await repository.get_channel("C1")).cook_request_poll_id == vote.poll_id


@pytest.mark.asyncio
async def test_late_ballot_and_watchdog_do_not_interleave(workflow, repository, clock):
    await _stock(workflow)
    vote = await workflow.start_workflow("C1")
    await workflow.handle_ballot(vote.poll_id, "U1", 0)

    outcome, restarted = await asyncio.gather(
        workflow.handle_ballot(vote.poll_id, "U2", 0),
        workflow.check_volunteer_timeout("C1", clock.now),
    )

    assert outcome.closed
    assert restarted is False
    stored = await repository.get_vote("C1", vote.poll_id)
    assert stored.ballot_count == 2
    assert stored.cook_volunteers == []
