"""Block Kit builders and action ids for the dinner workflow messages."""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional, Sequence

from pydantic import BaseModel, ValidationError

WFD_BALLOT_ACTION_PREFIX = "wfd_ballot_"
WFD_BALLOT_ACTION_RE = re.compile(r"^wfd_ballot_\d+$")
WFD_VOLUNTEER_ACTION_ID = "wfd_volunteer"
WFD_DINNER_READY_ACTION_ID = "wfd_dinner_ready"
WFD_RATE_ACTION_PREFIX = "wfd_rate_"
WFD_RATE_ACTION_RE = re.compile(r"^wfd_rate_[1-5]$")
WFD_UPDATE_FRIDGE_ACTION_ID = "wfd_update_fridge"
WFD_KEEP_FRIDGE_ACTION_ID = "wfd_keep_fridge"
WFD_DONE_ADDING_ACTION_ID = "wfd_done_adding"
WFD_ADD_MORE_ACTION_ID = "wfd_add_more"
WFD_DONE_PHOTOS_ACTION_ID = "wfd_done_photos"
WFD_CANCEL_ACTION_ID = "wfd_cancel"

# Slack allows at most 25 elements per actions block; keep polls readable.
MAX_POLL_OPTIONS = 10


class ActionPayload(BaseModel):
    """Normalized Slack button action payload."""

    action_id: str
    value: str
    channel_id: str
    message_ts: str
    user_id: str

    @classmethod
    def from_action_body(cls, body: dict[str, Any]) -> "ActionPayload | None":
        """Extract typed payload fields from a Slack action body."""
        actions = body.get("actions") or []
        action = actions[0] if isinstance(actions, list) and actions else {}
        if not isinstance(action, dict):
            return None
        channel_id = (body.get("channel") or {}).get("id") or (
            (body.get("container") or {}).get("channel_id") or ""
        )
        message_ts = (body.get("message") or {}).get("ts") or (
            (body.get("container") or {}).get("message_ts") or ""
        )
        user_id = (body.get("user") or {}).get("id") or ""
        if not (channel_id and user_id):
            return None
        try:
            return cls.model_validate(
                {
                    "action_id": str(action.get("action_id") or ""),
                    "value": str(action.get("value") or ""),
                    "channel_id": str(channel_id),
                    "message_ts": str(message_ts),
                    "user_id": str(user_id),
                }
            )
        except ValidationError:
            return None


def encode_ballot(poll_id: str, option_index: int) -> str:
    return f"{poll_id}:{option_index}"


def decode_ballot(value: str) -> Optional[tuple[str, int]]:
    poll_id, sep, index = (value or "").rpartition(":")
    if not (sep and poll_id and index.isdigit()):
        return None
    return poll_id, int(index)


def encode_rating(dinner_id: str, rating: int) -> str:
    return f"{dinner_id}|{rating}"


def decode_rating(value: str) -> Optional[tuple[str, int]]:
    dinner_id, sep, rating = (value or "").rpartition("|")
    if not (sep and dinner_id and rating.isdigit()):
        return None
    return dinner_id, int(rating)


def text_section(text: str) -> dict[str, Any]:
    return {
        "type": "section",
        "text": {"type": "mrkdwn", "text": text or "(no text)"},
    }


def _button(
    *, action_id: str, text: str, value: str, style: str | None = None
) -> dict[str, Any]:
    button: dict[str, Any] = {
        "type": "button",
        "action_id": action_id,
        "text": {"type": "plain_text", "text": text[:75], "emoji": True},
        "value": value,
    }
    if style:
        button["style"] = style
    return button


def poll_blocks(
    *, question: str, options: Sequence[str], poll_id: str
) -> list[dict[str, Any]]:
    return [
        text_section(f"*{question}*"),
        {
            "type": "actions",
            "block_id": f"wfd_poll_{poll_id}",
            "elements": [
                _button(
                    action_id=f"{WFD_BALLOT_ACTION_PREFIX}{idx}",
                    text=option,
                    value=encode_ballot(poll_id, idx),
                )
                for idx, option in enumerate(options[:MAX_POLL_OPTIONS])
            ],
        },
    ]


def poll_status_blocks(
    *,
    question: str,
    counts: Mapping[str, int],
    poll_id: str,
    closed: bool,
    winner: Optional[str] = None,
) -> list[dict[str, Any]]:
    """Poll message with live counts; buttons are dropped once closed."""
    lines = [f"• {option}: {count}" for option, count in counts.items()]
    summary = "\n".join(lines) or "No options"
    if closed:
        footer = f"🏆 *{winner}*" if winner else "Closed without a winner."
        return [text_section(f"*{question}* (closed)\n{summary}\n{footer}")]
    blocks = poll_blocks(question=question, options=list(counts), poll_id=poll_id)
    blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": summary}]})
    return blocks


def volunteer_blocks(*, text: str, poll_id: str) -> list[dict[str, Any]]:
    return [
        text_section(text),
        {
            "type": "actions",
            "elements": [
                _button(
                    action_id=WFD_VOLUNTEER_ACTION_ID,
                    text="I'll cook!",
                    value=poll_id,
                    style="primary",
                )
            ],
        },
    ]


def dinner_ready_blocks(*, text: str, dinner_id: str) -> list[dict[str, Any]]:
    return [
        text_section(text),
        {
            "type": "actions",
            "elements": [
                _button(
                    action_id=WFD_DINNER_READY_ACTION_ID,
                    text="🍽️ Dinner is ready!",
                    value=dinner_id,
                    style="primary",
                )
            ],
        },
    ]


def rating_blocks(*, text: str, dinner_id: str) -> list[dict[str, Any]]:
    return [
        text_section(text),
        {
            "type": "actions",
            "elements": [
                _button(
                    action_id=f"{WFD_RATE_ACTION_PREFIX}{rating}",
                    text="⭐" * rating,
                    value=encode_rating(dinner_id, rating),
                )
                for rating in range(1, 6)
            ],
        },
    ]


def fridge_update_blocks(*, text: str, dinner_id: str) -> list[dict[str, Any]]:
    return [
        text_section(text),
        {
            "type": "actions",
            "elements": [
                _button(
                    action_id=WFD_UPDATE_FRIDGE_ACTION_ID,
                    text="Yes, update fridge",
                    value=dinner_id,
                    style="primary",
                ),
                _button(
                    action_id=WFD_KEEP_FRIDGE_ACTION_ID,
                    text="No, keep as is",
                    value=dinner_id,
                ),
            ],
        },
    ]


def adding_ingredients_blocks(*, text: str) -> list[dict[str, Any]]:
    return [
        text_section(text),
        {
            "type": "actions",
            "elements": [
                _button(
                    action_id=WFD_DONE_ADDING_ACTION_ID,
                    text="Done adding",
                    value="done",
                    style="primary",
                ),
                _button(action_id=WFD_ADD_MORE_ACTION_ID, text="Add more", value="more"),
                _button(action_id=WFD_CANCEL_ACTION_ID, text="Cancel", value="cancel"),
            ],
        },
    ]


def adding_photos_blocks(*, text: str) -> list[dict[str, Any]]:
    return [
        text_section(text),
        {
            "type": "actions",
            "elements": [
                _button(
                    action_id=WFD_DONE_PHOTOS_ACTION_ID,
                    text="Done adding photos",
                    value="done",
                    style="primary",
                ),
                _button(action_id=WFD_CANCEL_ACTION_ID, text="Cancel", value="cancel"),
            ],
        },
    ]


__all__ = [
    "ActionPayload",
    "MAX_POLL_OPTIONS",
    "WFD_ADD_MORE_ACTION_ID",
    "WFD_BALLOT_ACTION_PREFIX",
    "WFD_BALLOT_ACTION_RE",
    "WFD_CANCEL_ACTION_ID",
    "WFD_DINNER_READY_ACTION_ID",
    "WFD_DONE_ADDING_ACTION_ID",
    "WFD_DONE_PHOTOS_ACTION_ID",
    "WFD_KEEP_FRIDGE_ACTION_ID",
    "WFD_RATE_ACTION_PREFIX",
    "WFD_RATE_ACTION_RE",
    "WFD_UPDATE_FRIDGE_ACTION_ID",
    "WFD_VOLUNTEER_ACTION_ID",
    "adding_ingredients_blocks",
    "adding_photos_blocks",
    "decode_ballot",
    "decode_rating",
    "dinner_ready_blocks",
    "encode_ballot",
    "encode_rating",
    "fridge_update_blocks",
    "poll_blocks",
    "poll_status_blocks",
    "rating_blocks",
    "text_section",
    "volunteer_blocks",
]
