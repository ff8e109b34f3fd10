from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from slack_bolt.async_app import AsyncApp

from whatsfordinner.core.config import parse_cuisines
from whatsfordinner.core.logging_config import record_error
from whatsfordinner.fridge.ingredients import compare_ingredients
from whatsfordinner.slack_bot import ui
from whatsfordinner.slack_bot.files import SlackFileFetcher, is_image_file
from whatsfordinner.workflow.collaborators import ChatTransport, DinnerLLM
from whatsfordinner.workflow.errors import (
    CollaboratorError,
    InvalidInputError,
    NotFoundError,
    PreconditionFailedError,
    WorkflowError,
)
from whatsfordinner.workflow.models import ChannelWorkflowState, FridgeIngredient
from whatsfordinner.workflow.orchestrator import DinnerWorkflow
from whatsfordinner.workflow.repository import WorkflowRepository
from whatsfordinner.workflow.session_state import ChatMode, ChatSessionManager

logger = logging.getLogger(__name__)

MSG_GENERIC_APOLOGY = "😢 Sorry, something went wrong. Please try again later."
MSG_EMPTY_FRIDGE = (
    "Your fridge is empty! Add ingredients with /sync_fridge or by sending a photo "
    "with /add_photo."
)
MSG_SYNC_STARTED = (
    "🧹 Fridge reset! Now, please send me a list of ingredients you have. You can "
    "send multiple messages, and I'll add all the ingredients to your fridge."
)
MSG_ADD_USAGE = (
    "🍎 Please provide a list of ingredients to add to your fridge. For example: "
    "/add eggs, milk, bread"
)
MSG_PHOTO_PROMPT = (
    "📸 Send me photos of your fridge or pantry and I'll add what I can see. "
    "Press *Done adding photos* when you're finished."
)
MSG_SUGGEST_PROMPT = (
    "🍴 You can suggest a dish for dinner! Send me the dish name, or use the "
    "command like this: /suggest Lasagna"
)
MSG_READY_FOR_DINNER = "You can now use /dinner to get dinner suggestions based on your ingredients!"


@dataclass(frozen=True)
class Reply:
    text: str
    blocks: Optional[list[dict[str, Any]]] = None
    public: bool = False


def friendly_error(exc: BaseException) -> str:
    """User-facing apology for a failed interaction."""
    if isinstance(exc, PreconditionFailedError):
        return f"🙅 Sorry, that's not possible right now: {exc}."
    if isinstance(exc, NotFoundError):
        return "🤷 I couldn't find that anymore. It may have already finished."
    if isinstance(exc, InvalidInputError):
        return f"⚠️ {exc}"
    if isinstance(exc, CollaboratorError):
        return "😢 Sorry, I couldn't reach my helpers right now. Please try again later."
    return MSG_GENERIC_APOLOGY


def format_fridge(ingredients: Sequence[FridgeIngredient]) -> str:
    if not ingredients:
        return MSG_EMPTY_FRIDGE
    lines = ["🧊 Here's what's in your fridge:", ""]
    for item in ingredients:
        if item.quantity:
            lines.append(f"• {item.name} ({item.quantity})")
        else:
            lines.append(f"• {item.name}")
    return "\n".join(lines)


def strip_bot_mention(text: str, bot_user_id: str | None) -> str:
    if not bot_user_id:
        return text
    return re.sub(rf"<@{bot_user_id}>\s*", "", text).strip()


class DinnerCommands:
    """Slash commands, buttons and mode-routed messages for one workspace."""

    def __init__(
        self,
        *,
        workflow: DinnerWorkflow,
        repository: WorkflowRepository,
        sessions: ChatSessionManager,
        llm: DinnerLLM,
        transport: ChatTransport,
        files: Optional[SlackFileFetcher] = None,
    ) -> None:
        self._workflow = workflow
        self._repo = repository
        self._sessions = sessions
        self._llm = llm
        self.transport = transport
        self._files = files

    async def register_channel(self, channel_id: Optional[str]) -> None:
        if not channel_id:
            return
        await self._repo.ensure_channel(channel_id)
        logger.info("Registered channel %s", channel_id)

    # --- Slash commands ---

    async def dinner(self, channel_id: str, user_id: str) -> Reply:
        await self._repo.ensure_channel(channel_id)
        try:
            vote = await self._workflow.start_workflow(channel_id)
        except PreconditionFailedError:
            return Reply("🍽️ A dinner plan is already in progress in this channel.")
        if vote is None:
            return Reply("No poll was started. Add ingredients or suggest a dish first.")
        return Reply(f"🗳 Poll started with {len(vote.options)} options.")

    async def show_fridge(self, channel_id: str) -> Reply:
        ingredients = await self._workflow.fridge.list_ingredients(channel_id)
        return Reply(format_fridge(ingredients), public=True)

    async def sync_fridge(self, channel_id: str, user_id: str) -> Reply:
        await self._workflow.fridge.reset(channel_id)
        key = ChatSessionManager.session_key(channel_id, user_id)
        self._sessions.set_mode(key, ChatMode.AWAITING_INGREDIENTS)
        return Reply(
            MSG_SYNC_STARTED,
            blocks=ui.adding_ingredients_blocks(text=MSG_SYNC_STARTED),
            public=True,
        )

    async def add(self, channel_id: str, user_id: str, text: str) -> Reply:
        if not text.strip():
            return Reply(MSG_ADD_USAGE)
        added = await self._add_from_text(channel_id, text)
        if not added:
            return Reply(
                "I couldn't find any ingredients in your message. Please try again "
                "with a list of ingredients."
            )
        return Reply(
            f"✅ Added {len(added)} ingredients to your fridge: {', '.join(added)}",
            public=True,
        )

    async def add_photo(self, channel_id: str, user_id: str) -> Reply:
        key = ChatSessionManager.session_key(channel_id, user_id)
        self._sessions.set_mode(key, ChatMode.AWAITING_PHOTOS)
        return Reply(MSG_PHOTO_PROMPT, blocks=ui.adding_photos_blocks(text=MSG_PHOTO_PROMPT))

    async def suggest(self, channel_id: str, user_id: str, text: str) -> Reply:
        dish_name = text.strip()
        if not dish_name:
            key = ChatSessionManager.session_key(channel_id, user_id)
            self._sessions.set_mode(key, ChatMode.AWAITING_SUGGESTION)
            return Reply(MSG_SUGGEST_PROMPT)
        return await self._store_suggestion(channel_id, user_id, dish_name)

    async def cuisines(self, channel_id: str, text: str) -> Reply:
        wanted = parse_cuisines(text)
        if not wanted:
            channel = await self._repo.ensure_channel(channel_id)
            current = ", ".join(channel.cuisines) or "any"
            return Reply(
                f"🌍 Preferred cuisines: {current}\nChange them with `/cuisines Italian, Thai`."
            )

        def apply(state: ChannelWorkflowState) -> None:
            state.cuisines = wanted

        await self._repo.update_channel(channel_id, apply)
        return Reply(f"🌍 Preferred cuisines set to: {', '.join(wanted)}", public=True)

    # --- Buttons ---

    async def ballot(self, payload: ui.ActionPayload) -> None:
        decoded = ui.decode_ballot(payload.value)
        if decoded is None:
            raise InvalidInputError("malformed ballot")
        poll_id, option_index = decoded
        outcome = await self._workflow.handle_ballot(poll_id, payload.user_id, option_index)
        choice = outcome.vote.votes.get(payload.user_id, "")
        await self.transport.answer_callback(
            outcome.channel_id, payload.user_id, f"🗳 Your vote for *{choice}* was recorded."
        )

    async def volunteer(self, payload: ui.ActionPayload) -> None:
        poll_id = payload.value
        dinner = await self._workflow.handle_volunteer(
            payload.channel_id, poll_id, payload.user_id
        )
        if payload.message_ts:
            await self.transport.edit_message(
                payload.channel_id,
                payload.message_ts,
                f"<@{payload.user_id}> has volunteered to cook {dinner.dish.name} tonight!",
                blocks=[
                    ui.text_section(
                        f"<@{payload.user_id}> has volunteered to cook *{dinner.dish.name}* tonight!"
                    )
                ],
            )

    async def dinner_ready(self, payload: ui.ActionPayload) -> None:
        dinner = await self._workflow.handle_dinner_ready(
            payload.channel_id, payload.value, payload.user_id
        )
        if payload.message_ts:
            text = f"✅ {dinner.dish.name} was served by <@{dinner.cook}>."
            await self.transport.edit_message(
                payload.channel_id, payload.message_ts, text, blocks=[ui.text_section(text)]
            )

    async def rate(self, payload: ui.ActionPayload) -> None:
        decoded = ui.decode_rating(payload.value)
        if decoded is None:
            raise InvalidInputError("malformed rating")
        dinner_id, rating = decoded
        await self._workflow.handle_rating(
            payload.channel_id, dinner_id, payload.user_id, rating
        )
        await self.transport.answer_callback(
            payload.channel_id, payload.user_id, f"Thanks for rating {rating} stars!"
        )

    async def fridge_update(self, payload: ui.ActionPayload, *, apply: bool) -> None:
        removed = await self._workflow.handle_fridge_update(
            payload.channel_id, payload.value, apply=apply
        )
        if apply:
            text = (
                "✅ Your fridge has been updated by removing the ingredients used for "
                f"this dinner ({len(removed)} removed)."
            )
        else:
            text = "👍 Keeping the fridge as is."
        if payload.message_ts:
            await self.transport.edit_message(
                payload.channel_id, payload.message_ts, text, blocks=[ui.text_section(text)]
            )
        if apply:
            ingredients = await self._workflow.fridge.list_ingredients(payload.channel_id)
            await self.transport.send_message(payload.channel_id, format_fridge(ingredients))

    async def finish_adding(self, payload: ui.ActionPayload) -> None:
        key = ChatSessionManager.session_key(payload.channel_id, payload.user_id)
        self._sessions.clear(key)
        ingredients = await self._workflow.fridge.list_ingredients(payload.channel_id)
        if not ingredients:
            text = "Your fridge is still empty. Try adding ingredients with text or better photos."
        else:
            text = f"{format_fridge(ingredients)}\n\n{MSG_READY_FOR_DINNER}"
        await self.transport.send_message(payload.channel_id, text)

    async def add_more(self, payload: ui.ActionPayload) -> None:
        key = ChatSessionManager.session_key(payload.channel_id, payload.user_id)
        self._sessions.set_mode(key, ChatMode.AWAITING_INGREDIENTS)
        await self.transport.answer_callback(
            payload.channel_id, payload.user_id, "🍎 Send me more ingredients."
        )

    async def cancel(self, payload: ui.ActionPayload) -> None:
        key = ChatSessionManager.session_key(payload.channel_id, payload.user_id)
        self._sessions.clear(key)
        await self.transport.answer_callback(
            payload.channel_id, payload.user_id, "👌 Cancelled."
        )

    # --- Messages routed by chat mode ---

    async def handle_message(
        self,
        channel_id: str,
        user_id: str,
        text: str,
        files: Sequence[Mapping[str, Any]] = (),
    ) -> Optional[Reply]:
        key = ChatSessionManager.session_key(channel_id, user_id)
        mode = self._sessions.get_mode(key)
        images = [f for f in files if is_image_file(f)]

        if mode is ChatMode.AWAITING_INGREDIENTS:
            self._sessions.set_mode(key, mode)
            if images:
                added = await self._add_from_images(channel_id, images)
            else:
                added = await self._add_from_text(channel_id, text)
            if not added:
                return Reply(
                    "I couldn't find any ingredients in your message. Please try again "
                    "with a list of ingredients."
                )
            msg = f"✅ Added {len(added)} ingredients to your fridge: {', '.join(added)}"
            return Reply(msg, blocks=ui.adding_ingredients_blocks(text=msg))

        if mode is ChatMode.AWAITING_PHOTOS:
            if not images:
                return Reply("📸 Please send a photo, or press *Done adding photos*.")
            self._sessions.set_mode(key, mode)
            added = await self._add_from_images(channel_id, images)
            if not added:
                return Reply(
                    "I couldn't identify any ingredients in your photo. Please try "
                    "again with a clearer photo."
                )
            msg = f"✅ I found {len(added)} ingredients in your photo: {', '.join(added)}"
            return Reply(msg, blocks=ui.adding_photos_blocks(text=msg))

        if mode is ChatMode.AWAITING_SUGGESTION:
            if not text.strip():
                return Reply(MSG_SUGGEST_PROMPT)
            self._sessions.clear(key)
            return await self._store_suggestion(channel_id, user_id, text.strip())

        if images:
            return Reply(
                "I see you sent a photo! If you want me to extract ingredients from it, "
                "please use the /add_photo command."
            )
        return None

    # --- Internals ---

    async def _add_from_text(self, channel_id: str, text: str) -> list[str]:
        names = await self._llm.parse_ingredients_from_text(text)
        added = await self._workflow.fridge.add_ingredients(channel_id, names)
        return [item.name for item in added]

    async def _add_from_images(
        self, channel_id: str, images: Sequence[Mapping[str, Any]]
    ) -> list[str]:
        if self._files is None:
            raise PreconditionFailedError("photo uploads are not configured")
        names: list[str] = []
        for image in images:
            data_url = await self._files.fetch_data_url(image)
            names.extend(await self._llm.extract_ingredients_from_image(data_url))
        added = await self._workflow.fridge.add_ingredients(channel_id, names)
        return [item.name for item in added]

    async def _store_suggestion(
        self, channel_id: str, user_id: str, dish_name: str
    ) -> Reply:
        await self._repo.ensure_channel(channel_id)
        dish = await self._llm.get_dish_info(dish_name)
        if not dish.name:
            dish = dish.model_copy(update={"name": dish_name})
        await self._workflow.suggestions.add_suggestion(channel_id, user_id, dish)
        fridge_names = await self._workflow.fridge.ingredient_names(channel_id)
        missing = compare_ingredients(dish.ingredients, fridge_names)

        lines = [f"✅ Thanks for suggesting *{dish.name}* ({dish.cuisine or 'unknown'} cuisine)!"]
        if dish.description:
            lines += ["", dish.description]
        if dish.ingredients and not missing:
            lines += ["", "👍 You have all the ingredients in your fridge!"]
        elif missing:
            lines += ["", "🛒 Missing from your fridge:"]
            lines += [f"• {item}" for item in missing]
        lines += ["", "It will be included in the next dinner poll."]
        return Reply("\n".join(lines), public=True)


async def _run_guarded(
    label: str,
    fn: Callable[[], Awaitable[None]],
    *,
    on_error: Callable[[str], Awaitable[None]],
) -> None:
    try:
        await fn()
    except WorkflowError as exc:
        record_error(component=f"slack.{label}", error_type=type(exc).__name__)
        logger.warning("%s failed: %s", label, exc)
        await on_error(friendly_error(exc))
    except Exception as exc:
        record_error(component=f"slack.{label}", error_type=type(exc).__name__)
        logger.exception("%s failed unexpectedly", label)
        await on_error(MSG_GENERIC_APOLOGY)


def register_handlers(app: AsyncApp, commands: DinnerCommands) -> None:
    """
    Registers:
      - /dinner /fridge /sync_fridge /add /add_photo /suggest /cuisines
      - poll ballots, volunteer, dinner ready, ratings, fridge update buttons
      - ingredient/photo session buttons (done, add more, cancel)
      - message handler routed by the user's chat mode
    """

    # --- Slash Commands ---

    def _command(name: str, run: Callable[[dict[str, Any]], Awaitable[Reply]]) -> None:
        @app.command(name)
        async def _handler(ack, body, respond):
            await ack()

            async def reply(text: str) -> None:
                await respond(text=text, response_type="ephemeral")

            async def execute() -> None:
                result = await run(body)
                payload: dict[str, Any] = {
                    "text": result.text,
                    "response_type": "in_channel" if result.public else "ephemeral",
                }
                if result.blocks:
                    payload["blocks"] = result.blocks
                await respond(**payload)

            await _run_guarded(name.lstrip("/"), execute, on_error=reply)

    _command("/dinner", lambda b: commands.dinner(b["channel_id"], b["user_id"]))
    _command("/fridge", lambda b: commands.show_fridge(b["channel_id"]))
    _command("/sync_fridge", lambda b: commands.sync_fridge(b["channel_id"], b["user_id"]))
    _command(
        "/add", lambda b: commands.add(b["channel_id"], b["user_id"], b.get("text") or "")
    )
    _command("/add_photo", lambda b: commands.add_photo(b["channel_id"], b["user_id"]))
    _command(
        "/suggest",
        lambda b: commands.suggest(b["channel_id"], b["user_id"], b.get("text") or ""),
    )
    _command("/cuisines", lambda b: commands.cuisines(b["channel_id"], b.get("text") or ""))

    # --- Buttons ---

    def _action(
        matcher: Any, label: str, run: Callable[[ui.ActionPayload], Awaitable[None]]
    ) -> None:
        @app.action(matcher)
        async def _handler(ack, body):
            await ack()
            payload = ui.ActionPayload.from_action_body(body)
            if payload is None:
                logger.warning("Ignoring malformed %s action", label)
                return

            async def reply(text: str) -> None:
                try:
                    await commands.transport.answer_callback(
                        payload.channel_id, payload.user_id, text
                    )
                except CollaboratorError:
                    logger.exception("Could not deliver apology for %s", label)

            await _run_guarded(label, lambda: run(payload), on_error=reply)

    _action(ui.WFD_BALLOT_ACTION_RE, "ballot", commands.ballot)
    _action(ui.WFD_VOLUNTEER_ACTION_ID, "volunteer", commands.volunteer)
    _action(ui.WFD_DINNER_READY_ACTION_ID, "dinner_ready", commands.dinner_ready)
    _action(ui.WFD_RATE_ACTION_RE, "rate", commands.rate)
    _action(
        ui.WFD_UPDATE_FRIDGE_ACTION_ID,
        "update_fridge",
        lambda p: commands.fridge_update(p, apply=True),
    )
    _action(
        ui.WFD_KEEP_FRIDGE_ACTION_ID,
        "keep_fridge",
        lambda p: commands.fridge_update(p, apply=False),
    )
    _action(ui.WFD_DONE_ADDING_ACTION_ID, "done_adding", commands.finish_adding)
    _action(ui.WFD_DONE_PHOTOS_ACTION_ID, "done_photos", commands.finish_adding)
    _action(ui.WFD_ADD_MORE_ACTION_ID, "add_more", commands.add_more)
    _action(ui.WFD_CANCEL_ACTION_ID, "cancel", commands.cancel)

    # --- Messages ---

    @app.event("message")
    async def on_message(body, say, context):
        ev = body.get("event", {})
        if ev.get("bot_id") or ev.get("subtype") not in (None, "file_share"):
            return
        channel_id = ev.get("channel")
        user_id = ev.get("user")
        if not (channel_id and user_id):
            return
        text = strip_bot_mention(ev.get("text") or "", context.get("bot_user_id"))

        async def reply(msg: str) -> None:
            await say(text=msg)

        async def execute() -> None:
            result = await commands.handle_message(
                channel_id, user_id, text, ev.get("files") or []
            )
            if result is None:
                return
            if result.blocks:
                await say(text=result.text, blocks=result.blocks)
            else:
                await say(text=result.text)

        await _run_guarded("message", execute, on_error=reply)

    @app.event("member_joined_channel")
    async def on_member_joined(body, context):
        ev = body.get("event", {})
        if ev.get("user") and ev.get("user") == context.get("bot_user_id"):
            await commands.register_channel(ev.get("channel"))

    @app.event("app_mention")
    async def on_mention(body, say):
        ev = body.get("event", {})
        await commands.register_channel(ev.get("channel"))
        await say(
            text="👋 I'll help you plan dinner here. Try /dinner, /fridge, /add or /suggest."
        )

    @app.error
    async def on_error(error, body, logger):
        logger.exception("BOLT ERROR: %s\nBODY=%s", error, body)


__all__ = [
    "DinnerCommands",
    "Reply",
    "format_fridge",
    "friendly_error",
    "register_handlers",
    "strip_bot_mention",
]
