from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional

from whatsfordinner.workflow.errors import (
    InvalidInputError,
    NotFoundError,
    PreconditionFailedError,
)
from whatsfordinner.workflow.models import (
    ChannelWorkflowState,
    Dish,
    VoteState,
    utcnow,
)
from whatsfordinner.workflow.poll_index import PollChannelIndex
from whatsfordinner.workflow.repository import (
    VOTE_PREFIX,
    WorkflowRepository,
    vote_key,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TallyResult:
    counts: dict[str, int]
    winner: Optional[str]
    total: int


@dataclass(frozen=True)
class QuorumResult:
    reached: bool
    winner: Optional[str]
    threshold: int
    ballots: int


def compute_tally(vote: VoteState) -> TallyResult:
    """Count ballots per option in declared order.

    The winner has the strictly greatest count; ties go to the option listed
    first. No ballots means no winner.
    """
    counts = {option: 0 for option in vote.options}
    for choice in vote.votes.values():
        if choice in counts:
            counts[choice] += 1
    winner: Optional[str] = None
    best = 0
    for option, count in counts.items():
        if count > best:
            winner, best = option, count
    return TallyResult(counts=counts, winner=winner, total=sum(counts.values()))


def quorum_threshold(member_count: int, fraction: float) -> int:
    # Epsilon keeps 3 * (2/3) at 2 instead of ceil(2.0000000000000004) == 3.
    return max(1, math.ceil(member_count * fraction - 1e-9))


class VoteEngine:
    """Poll lifecycle for one channel at a time.

    Votes are written before the channel pointer that publishes them, so a
    crash in between leaves an unreferenced vote that scans treat as history.
    Ending runs the other way round: a channel can be left pointing at an
    ended vote, which ``release_vote`` clears.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        poll_index: PollChannelIndex,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._index = poll_index
        self._clock = clock

    async def create_vote(
        self,
        channel_id: str,
        poll_id: str,
        message_ref: Optional[str],
        options: Iterable[str],
        *,
        question: str = "",
        dishes: Optional[Mapping[str, Dish]] = None,
    ) -> VoteState:
        option_list = list(options)
        if not option_list:
            raise InvalidInputError("a vote needs at least one option")
        if len(set(option_list)) != len(option_list):
            raise InvalidInputError("vote options must be unique")

        channel = await self._repo.ensure_channel(channel_id)
        if channel.current_poll_id:
            raise PreconditionFailedError(
                f"channel {channel_id} already has an open vote ({channel.current_poll_id})"
            )

        now = self._clock()
        vote = VoteState(
            channel_id=channel_id,
            poll_id=poll_id,
            message_ref=message_ref,
            question=question,
            options=option_list,
            dishes=dict(dishes or {}),
            started_at=now,
        )
        await self._repo.insert(vote_key(channel_id, poll_id), vote)
        await self._index.record(poll_id, channel_id)

        def publish(state: ChannelWorkflowState) -> None:
            if state.current_poll_id and state.current_poll_id != poll_id:
                raise PreconditionFailedError(
                    f"channel {channel_id} already has an open vote ({state.current_poll_id})"
                )
            state.current_poll_id = poll_id
            state.cook_request_poll_id = None
            state.volunteer_wait_since = None
            state.last_activity = now

        await self._repo.update_channel(channel_id, publish)
        logger.info(
            "Created vote %s in channel %s with %d options",
            poll_id,
            channel_id,
            len(option_list),
        )
        return vote

    async def get_vote(self, channel_id: str, poll_id: str) -> VoteState:
        return await self._repo.get_vote(channel_id, poll_id)

    async def record_vote(
        self, channel_id: str, poll_id: str, user_id: str, option: str
    ) -> VoteState:
        def apply(vote: VoteState) -> None:
            if vote.is_ended:
                raise PreconditionFailedError(f"vote {poll_id} has already ended")
            if option not in vote.options:
                raise InvalidInputError(f"invalid option: {option!r}")
            vote.votes[user_id] = option

        return await self._repo.update_vote(channel_id, poll_id, apply)

    async def tally(self, channel_id: str, poll_id: str) -> TallyResult:
        return compute_tally(await self._repo.get_vote(channel_id, poll_id))

    async def check_quorum(
        self,
        channel_id: str,
        poll_id: str,
        member_count: int,
        threshold_fraction: float,
    ) -> QuorumResult:
        vote = await self._repo.get_vote(channel_id, poll_id)
        threshold = quorum_threshold(member_count, threshold_fraction)
        if vote.is_ended:
            return QuorumResult(
                reached=False, winner=None, threshold=threshold, ballots=vote.ballot_count
            )
        if vote.ballot_count < threshold:
            return QuorumResult(
                reached=False, winner=None, threshold=threshold, ballots=vote.ballot_count
            )
        return QuorumResult(
            reached=True,
            winner=compute_tally(vote).winner,
            threshold=threshold,
            ballots=vote.ballot_count,
        )

    async def end_vote(
        self,
        channel_id: str,
        poll_id: str,
        winner: Optional[str],
        *,
        request_cook: bool = True,
    ) -> VoteState:
        """Close the vote and unpublish it from the channel.

        With ``request_cook`` and a winner the channel moves to waiting for a
        cook volunteer; otherwise it drops back to idle.
        """
        now = self._clock()

        def close(vote: VoteState) -> None:
            if vote.is_ended:
                raise PreconditionFailedError(f"vote {poll_id} has already ended")
            if winner is not None and winner not in vote.options:
                raise InvalidInputError(f"invalid option: {winner!r}")
            vote.ended_at = now
            vote.winning_option = winner

        vote = await self._repo.update_vote(channel_id, poll_id, close)
        await self.release_vote(
            channel_id, poll_id, request_cook=request_cook and winner is not None
        )
        logger.info(
            "Ended vote %s in channel %s (winner=%s)", poll_id, channel_id, winner
        )
        return vote

    async def release_vote(
        self, channel_id: str, poll_id: str, *, request_cook: bool = False
    ) -> None:
        """Drop the channel's pointer to ``poll_id`` without touching the vote.

        With ``request_cook`` the poll becomes the channel's pending cook
        request instead. Also repairs a channel left pointing at a vote that
        was ended by a write whose channel update never landed.
        """
        now = self._clock()

        def unpublish(state: ChannelWorkflowState) -> None:
            if state.current_poll_id == poll_id:
                state.current_poll_id = None
            if request_cook:
                state.cook_request_poll_id = poll_id
            elif state.cook_request_poll_id == poll_id:
                state.cook_request_poll_id = None
            state.volunteer_wait_since = None
            state.last_activity = now

        await self._repo.update_channel(channel_id, unpublish)

    async def add_cook_volunteer(
        self, channel_id: str, poll_id: str, user_id: str
    ) -> VoteState:
        def apply(vote: VoteState) -> None:
            if not vote.is_ended:
                raise PreconditionFailedError(f"vote {poll_id} is still open")
            if vote.votes and vote.votes.get(user_id) != vote.winning_option:
                raise PreconditionFailedError("did not vote for winning dish")
            if user_id not in vote.cook_volunteers:
                vote.cook_volunteers.append(user_id)

        return await self._repo.update_vote(channel_id, poll_id, apply)

    async def select_cook(
        self, channel_id: str, poll_id: str, user_id: str
    ) -> VoteState:
        def apply(vote: VoteState) -> None:
            if user_id not in vote.cook_volunteers:
                raise PreconditionFailedError("not a volunteer")
            if vote.selected_cook and vote.selected_cook != user_id:
                raise PreconditionFailedError(
                    f"cook already selected: {vote.selected_cook}"
                )
            vote.selected_cook = user_id

        return await self._repo.update_vote(channel_id, poll_id, apply)

    async def add_option(
        self,
        channel_id: str,
        poll_id: str,
        option: str,
        *,
        dish: Optional[Dish] = None,
    ) -> VoteState:
        def apply(vote: VoteState) -> None:
            if vote.is_ended:
                raise PreconditionFailedError(f"vote {poll_id} has already ended")
            if option in vote.options:
                raise InvalidInputError(f"option already exists: {option!r}")
            vote.options.append(option)
            if dish is not None:
                vote.dishes[option] = dish

        return await self._repo.update_vote(channel_id, poll_id, apply)

    async def resolve_channel_for_poll(self, poll_id: str) -> str:
        """Find the channel that owns ``poll_id``.

        The persisted index is checked first and verified against the stored
        vote. On a miss every stored vote key is scanned; a hit rewrites the
        index entry.
        """
        cached = await self._index.lookup(poll_id)
        if cached is not None:
            try:
                await self._repo.get_vote(cached, poll_id)
                return cached
            except NotFoundError:
                logger.warning(
                    "Stale poll index entry %s -> %s; rescanning", poll_id, cached
                )

        suffix = f":{poll_id}"
        for key in await self._repo.list_keys(VOTE_PREFIX):
            if not key.endswith(suffix):
                continue
            channel_id = key[len(VOTE_PREFIX) : -len(suffix)]
            if not channel_id:
                continue
            await self._index.record(poll_id, channel_id)
            logger.info("Healed poll index %s -> %s", poll_id, channel_id)
            return channel_id
        raise NotFoundError(f"no channel found for poll {poll_id}")


__all__ = [
    "QuorumResult",
    "TallyResult",
    "VoteEngine",
    "compute_tally",
    "quorum_threshold",
]
