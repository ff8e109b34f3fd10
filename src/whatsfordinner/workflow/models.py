"""Durable workflow records.

Every record is stored as JSON under a namespaced key (see
:mod:`whatsfordinner.workflow.repository`). Datetimes are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Dish(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    cuisine: str = ""
    description: str = ""
    ingredients: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("ingredients", "ingredients_needed"),
    )
    instructions: str = ""


class WorkflowPhase(str, Enum):
    IDLE = "idle"
    VOTING = "voting"
    COOK_REQUEST = "cook_request"
    COOKING = "cooking"


class VoteState(BaseModel):
    """One poll instance.

    ``votes`` maps a user id to the option name they last picked. After
    ``ended_at`` is set only ``cook_volunteers`` and ``selected_cook`` change.
    """

    channel_id: str
    poll_id: str
    message_ref: Optional[str] = None
    question: str = ""
    options: list[str]
    dishes: dict[str, Dish] = Field(default_factory=dict)
    votes: dict[str, str] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    winning_option: Optional[str] = None
    cook_volunteers: list[str] = Field(default_factory=list)
    selected_cook: Optional[str] = None

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None

    @property
    def ballot_count(self) -> int:
        return len(self.votes)

    def dish_for(self, option: str) -> Dish:
        return self.dishes.get(option) or Dish(name=option)


class DinnerRecord(BaseModel):
    dinner_id: str
    channel_id: str
    dish: Dish
    cook: str
    poll_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    ratings: dict[str, int] = Field(default_factory=dict)
    average_rating: float = 0.0
    used_ingredients: Optional[list[str]] = None

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None


class ChannelWorkflowState(BaseModel):
    """Per-channel snapshot holding references to the active vote and dinner."""

    channel_id: str
    cuisines: list[str] = Field(default_factory=list)
    member_count: int = 0
    current_poll_id: Optional[str] = None
    cook_request_poll_id: Optional[str] = None
    current_dinner_id: Optional[str] = None
    volunteer_wait_since: Optional[datetime] = None
    last_activity: datetime = Field(default_factory=utcnow)

    @property
    def phase(self) -> WorkflowPhase:
        if self.current_dinner_id:
            return WorkflowPhase.COOKING
        if self.current_poll_id:
            return WorkflowPhase.VOTING
        if self.cook_request_poll_id:
            return WorkflowPhase.COOK_REQUEST
        return WorkflowPhase.IDLE

    @property
    def is_idle(self) -> bool:
        return self.phase is WorkflowPhase.IDLE


class FridgeIngredient(BaseModel):
    name: str
    quantity: str = ""
    added_at: datetime = Field(default_factory=utcnow)


class Fridge(BaseModel):
    channel_id: str
    ingredients: dict[str, FridgeIngredient] = Field(default_factory=dict)


class SuggestedDish(BaseModel):
    suggestion_id: str
    channel_id: str
    user_id: str
    dish: Dish
    created_at: datetime = Field(default_factory=utcnow)
    used: bool = False


__all__ = [
    "ChannelWorkflowState",
    "DinnerRecord",
    "Dish",
    "Fridge",
    "FridgeIngredient",
    "SuggestedDish",
    "VoteState",
    "WorkflowPhase",
    "utcnow",
]
