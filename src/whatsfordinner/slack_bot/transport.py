from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, Optional, Sequence

from slack_sdk.web.async_client import AsyncWebClient

from whatsfordinner.core.diag import with_timeout
from whatsfordinner.core.logging_config import record_error
from whatsfordinner.slack_bot.ui import MAX_POLL_OPTIONS, poll_blocks
from whatsfordinner.workflow.collaborators import PollRef, SentMessage
from whatsfordinner.workflow.errors import CollaboratorError, InvalidInputError

logger = logging.getLogger(__name__)


def _new_poll_id() -> str:
    return uuid.uuid4().hex[:16]


class SlackChatTransport:
    """Chat transport over the Slack Web API.

    A poll is a Block Kit message with one button per option; the generated
    poll id travels in every button value so ballots can be routed back.
    """

    def __init__(
        self,
        client: AsyncWebClient,
        *,
        timeout_s: float = 15.0,
        poll_id_factory: Callable[[], str] = _new_poll_id,
    ) -> None:
        self._client = client
        self._timeout_s = timeout_s
        self._poll_id_factory = poll_id_factory

    async def send_message(
        self,
        channel_id: str,
        text: str,
        *,
        blocks: Optional[list[dict[str, Any]]] = None,
    ) -> SentMessage:
        payload: dict[str, Any] = {"channel": channel_id, "text": text}
        if blocks:
            payload["blocks"] = blocks
        resp = await self._call("chat_postMessage", self._client.chat_postMessage(**payload))
        return SentMessage(
            channel_id=str(resp.get("channel") or channel_id),
            message_ref=str(resp.get("ts") or ""),
        )

    async def edit_message(
        self,
        channel_id: str,
        message_ref: str,
        text: str,
        *,
        blocks: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        payload: dict[str, Any] = {"channel": channel_id, "ts": message_ref, "text": text}
        # An empty list removes the previous buttons.
        payload["blocks"] = blocks if blocks is not None else []
        await self._call("chat_update", self._client.chat_update(**payload))

    async def create_poll(
        self, channel_id: str, question: str, options: Sequence[str]
    ) -> PollRef:
        if not options:
            raise InvalidInputError("a poll needs at least one option")
        if len(options) > MAX_POLL_OPTIONS:
            raise InvalidInputError(f"a poll supports at most {MAX_POLL_OPTIONS} options")
        poll_id = self._poll_id_factory()
        sent = await self.send_message(
            channel_id,
            question,
            blocks=poll_blocks(question=question, options=options, poll_id=poll_id),
        )
        logger.info("Created poll %s in channel %s", poll_id, channel_id)
        return PollRef(poll_id=poll_id, message_ref=sent.message_ref)

    async def answer_callback(self, channel_id: str, user_id: str, text: str) -> None:
        await self._call(
            "chat_postEphemeral",
            self._client.chat_postEphemeral(channel=channel_id, user=user_id, text=text),
        )

    async def get_member_count(self, channel_id: str) -> int:
        """Human members of the channel; the bot itself is not counted."""
        resp = await self._call(
            "conversations_info",
            self._client.conversations_info(channel=channel_id, include_num_members=True),
        )
        channel = resp.get("channel") or {}
        num_members = channel.get("num_members")
        if num_members is None:
            raise CollaboratorError(
                "conversations_info", ValueError("num_members missing from response")
            )
        return max(0, int(num_members) - 1)

    async def _call(self, method: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await with_timeout(f"slack:{method}", awaitable, timeout_s=self._timeout_s)
        except Exception as exc:
            record_error(component="slack", error_type=type(exc).__name__)
            raise CollaboratorError(method, exc) from exc


__all__ = ["SlackChatTransport"]
