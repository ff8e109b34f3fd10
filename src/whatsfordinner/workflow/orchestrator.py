"""Channel-level dinner workflow: polls, cooks, dinners and ratings.

Every transition on a channel runs under that channel's ``asyncio.Lock`` so
scheduler ticks and Slack callbacks are serialised per channel. Store writes
are additionally version-checked by the repository.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from whatsfordinner.core.logging_config import record_transition
from whatsfordinner.fridge.ingredients import compare_ingredients
from whatsfordinner.fridge.store import FridgeStore
from whatsfordinner.fridge.suggestions import SuggestionStore
from whatsfordinner.slack_bot import ui
from whatsfordinner.workflow.collaborators import ChatTransport, DinnerLLM
from whatsfordinner.workflow.dinners import DinnerLifecycle
from whatsfordinner.workflow.errors import (
    CollaboratorError,
    InvalidInputError,
    NotFoundError,
    PreconditionFailedError,
    WorkflowError,
)
from whatsfordinner.workflow.models import (
    ChannelWorkflowState,
    DinnerRecord,
    Dish,
    SuggestedDish,
    VoteState,
    WorkflowPhase,
    utcnow,
)
from whatsfordinner.workflow.repository import WorkflowRepository
from whatsfordinner.workflow.votes import QuorumResult, VoteEngine, compute_tally

logger = logging.getLogger(__name__)

POLL_QUESTION = "What should we cook tonight?"
MSG_DINNER_TIME = "🕒 It's dinner time! Let me suggest some options based on your fridge..."
MSG_EMPTY_FRIDGE = (
    "😢 Your fridge is empty! Please add some ingredients with /sync_fridge or "
    "/add_photo before I can suggest dinner options."
)
MSG_NO_SUGGESTIONS = (
    "😢 Sorry, I couldn't come up with dinner suggestions right now. Please try "
    "again later or use the /dinner command manually."
)
MSG_POLL_FAILED = (
    "😢 Sorry, I couldn't create a poll for dinner options. Please try again later "
    "or use the /dinner command manually."
)
MSG_VOTE_PROMPT = (
    "🗳 Please vote for your preferred dinner option! The poll will close "
    "automatically when 2/3 of the channel members have voted."
)
MSG_POLL_CLOSED = "🎉 The poll has closed! The winning dish is *{dish}*."
MSG_COOK_REQUEST = "Who wants to cook *{dish}* tonight? Press the button below to volunteer!"
MSG_COOK_CONFIRMED = "👨‍🍳 Great! <@{cook}> is the chef tonight."
MSG_NO_INSTRUCTIONS = (
    "😢 Sorry, I couldn't find cooking instructions for {dish}. <@{cook}>, you're on "
    "your own for this one!"
)
MSG_LATE_POLL_CLOSED = "⏰ It's getting late! The dinner poll has been closed automatically."
MSG_LATE_WINNER = "🏆 The winning dish is *{dish}*."
MSG_LATE_NO_VOTES = "😢 Nobody voted for dinner today."
MSG_LATE_NO_COOK = "⏰ It's getting late! Nobody volunteered to cook *{dish}* today."
MSG_LATE_DINNER_FINISHED = (
    "⏰ It's getting late! The dinner has been marked as finished automatically."
)
MSG_NO_VOLUNTEER_RESTART = (
    "⏰ {minutes} minutes have passed and nobody volunteered to cook. Let's try "
    "again with a new poll!"
)
MSG_DINNER_READY = (
    "🍽️ *Dinner is ready!* <@{cook}> has prepared {dish}. Enjoy your meal!\n"
    "How was it? Rate tonight's dinner:"
)
MSG_FRIDGE_OFFER = (
    "Would you like to update your fridge by removing the ingredients used for "
    "this dinner?"
)


@dataclass(frozen=True)
class BallotOutcome:
    channel_id: str
    vote: VoteState
    quorum: QuorumResult
    closed: bool


def format_cooking_instructions(dish: Dish, missing: list[str]) -> str:
    lines = [f"🍳 *Cooking Instructions for {dish.name}*", ""]
    if dish.ingredients:
        lines.append("*Ingredients:*")
        lines.extend(f"• {item}" for item in dish.ingredients)
        lines.append("")
    if missing:
        lines.append("*Missing from the fridge:*")
        lines.extend(f"• {item}" for item in missing)
        lines.append("")
    if dish.instructions:
        lines.append("*Instructions:*")
        lines.append(dish.instructions)
    return "\n".join(lines).strip()


class DinnerWorkflow:
    """Drives one channel through Idle, Voting, CookRequest and Cooking."""

    def __init__(
        self,
        *,
        repository: WorkflowRepository,
        votes: VoteEngine,
        dinners: DinnerLifecycle,
        fridge: FridgeStore,
        suggestions: SuggestionStore,
        transport: ChatTransport,
        llm: DinnerLLM,
        quorum_fraction: float = 2 / 3,
        default_member_count: int = 3,
        suggestion_count: int = 4,
        volunteer_grace_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self.votes = votes
        self.dinners = dinners
        self.fridge = fridge
        self.suggestions = suggestions
        self._transport = transport
        self._llm = llm
        self._quorum_fraction = quorum_fraction
        self._default_member_count = default_member_count
        self._suggestion_count = suggestion_count
        self._volunteer_grace_minutes = volunteer_grace_minutes
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, channel_id: str) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        return lock

    # Starting -----------------------------------------------------------

    async def start_workflow(self, channel_id: str) -> Optional[VoteState]:
        """Suggest dishes and open a poll; ``None`` when nothing could be proposed."""
        async with self.lock_for(channel_id):
            return await self._start_locked(channel_id)

    async def _start_locked(self, channel_id: str) -> Optional[VoteState]:
        channel = await self._repo.ensure_channel(channel_id)
        if channel.current_poll_id and await self._release_if_stale(
            channel_id, channel.current_poll_id
        ):
            channel = await self._repo.ensure_channel(channel_id)
        if not channel.is_idle:
            raise PreconditionFailedError(
                f"channel {channel_id} is busy ({channel.phase.value})"
            )

        await self._transport.send_message(channel_id, MSG_DINNER_TIME)
        user_suggestions = await self.suggestions.unused_suggestions(channel_id)
        ingredients = await self.fridge.ingredient_names(channel_id)
        if not ingredients and not user_suggestions:
            await self._transport.send_message(channel_id, MSG_EMPTY_FRIDGE)
            logger.info("Not starting workflow in %s: fridge is empty", channel_id)
            return None

        dishes = await self._collect_dishes(channel, ingredients, user_suggestions)
        if not dishes:
            await self._transport.send_message(channel_id, MSG_NO_SUGGESTIONS)
            return None

        await self._transport.send_message(
            channel_id, self._suggestions_text(dishes, user_suggestions)
        )
        options = [dish.name for dish in dishes]
        try:
            poll = await self._transport.create_poll(channel_id, POLL_QUESTION, options)
        except CollaboratorError:
            await self._safe_send(channel_id, MSG_POLL_FAILED)
            raise

        vote = await self.votes.create_vote(
            channel_id,
            poll.poll_id,
            poll.message_ref,
            options,
            question=POLL_QUESTION,
            dishes={dish.name: dish for dish in dishes},
        )
        for suggestion in user_suggestions:
            if suggestion.dish.name in vote.dishes:
                await self.suggestions.mark_used(suggestion.suggestion_id)
        await self._safe_send(channel_id, MSG_VOTE_PROMPT)
        record_transition("voting_started")
        return vote

    async def _collect_dishes(
        self,
        channel: ChannelWorkflowState,
        ingredients: list[str],
        user_suggestions: list[SuggestedDish],
    ) -> list[Dish]:
        """User proposals first, then LLM dishes, de-duplicated by name."""
        if user_suggestions:
            ai_count = max(2, self._suggestion_count - len(user_suggestions))
        else:
            ai_count = self._suggestion_count
        ai_dishes: list[Dish] = []
        try:
            ai_dishes = await self._llm.suggest_dinner_options(
                ingredients, channel.cuisines, ai_count
            )
        except CollaboratorError:
            if not user_suggestions:
                raise
            logger.warning(
                "LLM suggestions failed for %s; polling user suggestions only",
                channel.channel_id,
            )

        seen: set[str] = set()
        dishes: list[Dish] = []
        for dish in [s.dish for s in user_suggestions] + ai_dishes:
            name = dish.name.strip()
            if not name or name.lower() in seen:
                continue
            seen.add(name.lower())
            dishes.append(dish if dish.name == name else dish.model_copy(update={"name": name}))
        return dishes[: ui.MAX_POLL_OPTIONS]

    @staticmethod
    def _suggestions_text(
        dishes: list[Dish], user_suggestions: list[SuggestedDish]
    ) -> str:
        suggested_by = {s.dish.name.lower(): s.user_id for s in user_suggestions}
        lines = ["🍲 Here are some dinner suggestions based on your ingredients:", ""]
        for dish in dishes:
            header = f"🍴 *{dish.name}*"
            if dish.cuisine:
                header += f" ({dish.cuisine})"
            lines.append(header)
            if dish.description:
                lines.append(dish.description)
            user_id = suggested_by.get(dish.name.lower())
            if user_id:
                lines.append(f"_Suggested by <@{user_id}>_")
            lines.append("")
        return "\n".join(lines).strip()

    # Voting -------------------------------------------------------------

    async def handle_ballot(
        self, poll_id: str, user_id: str, option_index: int
    ) -> BallotOutcome:
        channel_id = await self.votes.resolve_channel_for_poll(poll_id)
        async with self.lock_for(channel_id):
            vote = await self.votes.get_vote(channel_id, poll_id)
            if not 0 <= option_index < len(vote.options):
                raise InvalidInputError(f"invalid option index: {option_index}")
            vote = await self.votes.record_vote(
                channel_id, poll_id, user_id, vote.options[option_index]
            )
            member_count = await self._refresh_member_count(channel_id)
            quorum = await self.votes.check_quorum(
                channel_id, poll_id, member_count, self._quorum_fraction
            )
            logger.info(
                "Ballot %s/%s in poll %s (channel %s)",
                quorum.ballots,
                quorum.threshold,
                poll_id,
                channel_id,
            )
            if not quorum.reached:
                await self._refresh_poll_message(vote, closed=False)
                return BallotOutcome(channel_id, vote, quorum, closed=False)

            vote = await self.votes.end_vote(
                channel_id, poll_id, quorum.winner, request_cook=True
            )
            record_transition("cook_requested")
            await self._refresh_poll_message(vote, closed=True)
            await self._announce_cook_request(channel_id, vote)
            return BallotOutcome(channel_id, vote, quorum, closed=True)

    async def _refresh_member_count(self, channel_id: str) -> int:
        channel = await self._repo.ensure_channel(channel_id)
        try:
            count = await self._transport.get_member_count(channel_id)
        except CollaboratorError:
            logger.warning(
                "Member count lookup failed for %s; using %s",
                channel_id,
                channel.member_count or self._default_member_count,
            )
            return channel.member_count or self._default_member_count
        if count <= 0:
            return channel.member_count or self._default_member_count
        if count != channel.member_count:

            def apply(state: ChannelWorkflowState) -> None:
                state.member_count = count

            await self._repo.update_channel(channel_id, apply)
        return count

    async def _refresh_poll_message(self, vote: VoteState, *, closed: bool) -> None:
        if not vote.message_ref:
            return
        tally = compute_tally(vote)
        try:
            await self._transport.edit_message(
                vote.channel_id,
                vote.message_ref,
                vote.question or POLL_QUESTION,
                blocks=ui.poll_status_blocks(
                    question=vote.question or POLL_QUESTION,
                    counts=tally.counts,
                    poll_id=vote.poll_id,
                    closed=closed,
                    winner=vote.winning_option if closed else None,
                ),
            )
        except CollaboratorError:
            logger.exception("Failed to refresh poll message %s", vote.poll_id)

    async def _announce_cook_request(self, channel_id: str, vote: VoteState) -> None:
        dish = vote.winning_option or ""
        await self._transport.send_message(channel_id, MSG_POLL_CLOSED.format(dish=dish))
        text = await self._llm.compose_message(
            "cook_volunteer_request",
            {"dish": dish},
            fallback=MSG_COOK_REQUEST.format(dish=dish),
        )
        await self._transport.send_message(
            channel_id, text, blocks=ui.volunteer_blocks(text=text, poll_id=vote.poll_id)
        )

    # Cooking ------------------------------------------------------------

    async def handle_volunteer(
        self, channel_id: str, poll_id: str, user_id: str
    ) -> DinnerRecord:
        async with self.lock_for(channel_id):
            channel = await self._repo.ensure_channel(channel_id)
            if channel.cook_request_poll_id != poll_id:
                raise PreconditionFailedError(
                    f"poll {poll_id} is no longer waiting for a cook"
                )
            await self.votes.add_cook_volunteer(channel_id, poll_id, user_id)
            vote = await self.votes.select_cook(channel_id, poll_id, user_id)
            winner = vote.winning_option or ""
            await self._safe_send(
                channel_id,
                await self._llm.compose_message(
                    "cook_confirmation",
                    {"cook": f"<@{user_id}>", "dish": winner},
                    fallback=MSG_COOK_CONFIRMED.format(cook=user_id),
                ),
            )

            dish = vote.dish_for(winner)
            try:
                info = await self._llm.get_dish_info(winner, dish.cuisine or None)
                dish = Dish(
                    name=winner,
                    cuisine=info.cuisine or dish.cuisine,
                    description=info.description or dish.description,
                    ingredients=info.ingredients or dish.ingredients,
                    instructions=info.instructions,
                )
                have_instructions = True
            except CollaboratorError:
                logger.warning("No dish info for %s in %s", winner, channel_id)
                have_instructions = False

            dinner = await self.dinners.create_dinner(
                channel_id, dish, user_id, poll_id=poll_id
            )
            record_transition("cooking_started")

            if have_instructions:
                missing = compare_ingredients(
                    dish.ingredients, await self.fridge.ingredient_names(channel_id)
                )
                text = format_cooking_instructions(dish, missing)
            else:
                text = MSG_NO_INSTRUCTIONS.format(dish=winner, cook=user_id)
            await self._safe_send(
                channel_id,
                text,
                blocks=ui.dinner_ready_blocks(text=text, dinner_id=dinner.dinner_id),
            )
            return dinner

    async def handle_dinner_ready(
        self, channel_id: str, dinner_id: str, user_id: str
    ) -> DinnerRecord:
        async with self.lock_for(channel_id):
            channel = await self._repo.ensure_channel(channel_id)
            if channel.current_dinner_id != dinner_id:
                raise NotFoundError(f"dinner {dinner_id} is not active")
            dinner = await self._repo.get_dinner(dinner_id)
            if dinner.cook != user_id:
                raise PreconditionFailedError("only the cook can mark dinner as ready")
            dinner = await self.dinners.finish_dinner(channel_id)
            record_transition("dinner_finished")
            text = MSG_DINNER_READY.format(cook=dinner.cook, dish=dinner.dish.name)
            await self._safe_send(
                channel_id,
                text,
                blocks=ui.rating_blocks(text=text, dinner_id=dinner.dinner_id),
            )
            return dinner

    # Rating -------------------------------------------------------------

    async def handle_rating(
        self, channel_id: str, dinner_id: str, user_id: str, rating: int
    ) -> DinnerRecord:
        async with self.lock_for(channel_id):
            dinner = await self.dinners.rate_dinner(dinner_id, user_id, rating)
            logger.info(
                "Dinner %s rated %s by %s (average %.2f)",
                dinner_id,
                rating,
                user_id,
                dinner.average_rating,
            )
            if (
                len(dinner.ratings) == 1
                and dinner.used_ingredients is None
                and dinner.dish.ingredients
            ):
                await self._safe_send(
                    channel_id,
                    MSG_FRIDGE_OFFER,
                    blocks=ui.fridge_update_blocks(
                        text=MSG_FRIDGE_OFFER, dinner_id=dinner_id
                    ),
                )
            return dinner

    async def handle_fridge_update(
        self, channel_id: str, dinner_id: str, *, apply: bool
    ) -> list[str]:
        """Remove the dinner's ingredients from the fridge when ``apply``."""
        async with self.lock_for(channel_id):
            dinner = await self._repo.get_dinner(dinner_id)
            if dinner.used_ingredients is not None:
                raise PreconditionFailedError(
                    "the fridge was already updated for this dinner"
                )
            if not apply:
                await self.dinners.record_used_ingredients(dinner_id, [])
                return []
            removed = await self.fridge.remove_ingredients(
                channel_id, dinner.dish.ingredients
            )
            await self.dinners.record_used_ingredients(dinner_id, dinner.dish.ingredients)
            return removed

    # Scheduler entry points ---------------------------------------------

    async def close_workflow(self, channel_id: str) -> bool:
        """Force the channel back to idle at the end of the day."""
        async with self.lock_for(channel_id):
            channel = await self._repo.ensure_channel(channel_id)
            acted = False

            if channel.current_poll_id and await self._release_if_stale(
                channel_id, channel.current_poll_id
            ):
                acted = True
            elif channel.current_poll_id:
                poll_id = channel.current_poll_id
                try:
                    tally = await self.votes.tally(channel_id, poll_id)
                    winner, total = tally.winner, tally.total
                except WorkflowError:
                    logger.exception("Tally failed for poll %s", poll_id)
                    winner, total = None, 0
                vote = await self.votes.end_vote(
                    channel_id, poll_id, winner, request_cook=False
                )
                await self._refresh_poll_message(vote, closed=True)
                await self._transport.send_message(channel_id, MSG_LATE_POLL_CLOSED)
                if total > 0 and winner:
                    await self._transport.send_message(
                        channel_id, MSG_LATE_WINNER.format(dish=winner)
                    )
                else:
                    await self._transport.send_message(channel_id, MSG_LATE_NO_VOTES)
                acted = True

            if channel.cook_request_poll_id:
                poll_id = channel.cook_request_poll_id
                dish = ""
                try:
                    dish = (await self.votes.get_vote(channel_id, poll_id)).winning_option or ""
                except NotFoundError:
                    logger.warning("Cook request poll %s is missing", poll_id)
                await self._clear_cook_request(channel_id, poll_id)
                await self._transport.send_message(
                    channel_id, MSG_LATE_NO_COOK.format(dish=dish or "dinner")
                )
                acted = True

            if channel.current_dinner_id:
                await self.dinners.finish_dinner(channel_id)
                await self._transport.send_message(channel_id, MSG_LATE_DINNER_FINISHED)
                acted = True

            if acted:
                record_transition("force_closed")
                logger.info("Closed unfinished workflow in channel %s", channel_id)
            return acted

    async def check_volunteer_timeout(
        self, channel_id: str, now: Optional[datetime] = None
    ) -> bool:
        """Track the cook-request wait; restart the poll once the grace period is over."""
        now = now or self._clock()
        async with self.lock_for(channel_id):
            channel = await self._repo.ensure_channel(channel_id)
            if channel.phase is not WorkflowPhase.COOK_REQUEST:
                return False
            poll_id = channel.cook_request_poll_id
            vote = await self.votes.get_vote(channel_id, poll_id)
            if vote.cook_volunteers or not vote.winning_option:
                if channel.volunteer_wait_since is not None:
                    await self._set_wait_since(channel_id, None)
                return False

            if channel.volunteer_wait_since is None:
                await self._set_wait_since(channel_id, now)
                logger.info(
                    "Waiting for cook volunteers for poll %s in channel %s",
                    poll_id,
                    channel_id,
                )
                return False

            waited = now - channel.volunteer_wait_since
            if waited.total_seconds() < self._volunteer_grace_minutes * 60:
                return False

            logger.info(
                "No cook volunteers after %s minutes for poll %s in channel %s",
                self._volunteer_grace_minutes,
                poll_id,
                channel_id,
            )
            await self._transport.send_message(
                channel_id,
                MSG_NO_VOLUNTEER_RESTART.format(minutes=self._volunteer_grace_minutes),
            )
            await self._clear_cook_request(channel_id, poll_id)
            record_transition("restarted")
            await self._start_locked(channel_id)
            return True

    async def release_stale_vote(self, channel_id: str) -> bool:
        """Unpoint the channel from a vote that is already ended or gone."""
        async with self.lock_for(channel_id):
            channel = await self._repo.ensure_channel(channel_id)
            if not channel.current_poll_id:
                return False
            return await self._release_if_stale(channel_id, channel.current_poll_id)

    async def _release_if_stale(self, channel_id: str, poll_id: str) -> bool:
        try:
            vote = await self.votes.get_vote(channel_id, poll_id)
        except NotFoundError:
            vote = None
        if vote is not None and not vote.is_ended:
            return False
        logger.warning(
            "Channel %s still pointed at closed poll %s; releasing it",
            channel_id,
            poll_id,
        )
        await self.votes.release_vote(channel_id, poll_id)
        return True

    async def _clear_cook_request(self, channel_id: str, poll_id: str) -> None:
        now = self._clock()

        def apply(state: ChannelWorkflowState) -> None:
            if state.cook_request_poll_id == poll_id:
                state.cook_request_poll_id = None
            state.volunteer_wait_since = None
            state.last_activity = now

        await self._repo.update_channel(channel_id, apply)

    async def _set_wait_since(self, channel_id: str, value: Optional[datetime]) -> None:
        def apply(state: ChannelWorkflowState) -> None:
            state.volunteer_wait_since = value

        await self._repo.update_channel(channel_id, apply)

    async def _safe_send(self, channel_id: str, text: str, **kwargs) -> None:
        try:
            await self._transport.send_message(channel_id, text, **kwargs)
        except CollaboratorError:
            logger.exception("Failed to send message to %s", channel_id)


__all__ = ["BallotOutcome", "DinnerWorkflow", "POLL_QUESTION", "format_cooking_instructions"]
