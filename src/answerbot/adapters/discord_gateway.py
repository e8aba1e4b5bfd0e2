from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from typing import Any

import discord

from answerbot.config import AppEnv, parse_admin_user_ids
from answerbot.services.classifier import InboundEvent, strip_mentions
from answerbot.services.commands import CommandContext, CommandService
from answerbot.services.delivery import (
    FEEDBACK_ACTION,
    PROMOTE_ACTION,
    PostedMessage,
    ReplyAction,
)
from answerbot.services.errors import DeliveryError
from answerbot.services.generator import HistoryTurn
from answerbot.services.orchestrator import FEEDBACK_CATEGORIES, FeedbackSubmission, Orchestrator

ACTION_VIEW_TIMEOUT_SEC = 24 * 60 * 60
THREAD_NAME_MAX_LEN = 90
DEFAULT_THREAD_NAME = "answerbot reply"
PROMOTED_MESSAGE = "Reply posted publicly in the thread."
PROMOTE_EXPIRED_MESSAGE = "This reply can no longer be promoted."
FEEDBACK_THANKS_MESSAGE = "Thanks for the feedback!"

_USER_MESSAGE_TYPES = {discord.MessageType.default, discord.MessageType.reply}

ActionHandler = Callable[[discord.Interaction, ReplyAction], Awaitable[None]]


class ReplyActionView(discord.ui.View):
    def __init__(self, actions: list[ReplyAction], handler: ActionHandler):
        super().__init__(timeout=ACTION_VIEW_TIMEOUT_SEC)
        for action in actions:
            button: discord.ui.Button[ReplyActionView] = discord.ui.Button(
                label=action.label,
                style=discord.ButtonStyle.primary,
            )
            button.callback = _bind_action(handler, action)
            self.add_item(button)


def _bind_action(handler: ActionHandler, action: ReplyAction):
    async def callback(interaction: discord.Interaction) -> None:
        await handler(interaction, action)

    return callback


class FeedbackModal(discord.ui.Modal, title="Response Feedback"):
    category: discord.ui.TextInput[FeedbackModal] = discord.ui.TextInput(
        label="Category",
        placeholder=", ".join(FEEDBACK_CATEGORIES),
        max_length=32,
    )
    details: discord.ui.TextInput[FeedbackModal] = discord.ui.TextInput(
        label="Details",
        style=discord.TextStyle.paragraph,
        required=False,
        max_length=1000,
    )

    def __init__(
        self,
        channel_id: str,
        message_id: str,
        on_submit_feedback: Callable[[FeedbackSubmission], Awaitable[bool]],
    ):
        super().__init__()
        self.channel_id = channel_id
        self.message_id = message_id
        self.on_submit_feedback = on_submit_feedback

    async def on_submit(self, interaction: discord.Interaction) -> None:
        await interaction.response.send_message(FEEDBACK_THANKS_MESSAGE, ephemeral=True)
        await self.on_submit_feedback(
            FeedbackSubmission(
                channel_id=self.channel_id,
                message_id=self.message_id,
                user_id=str(interaction.user.id),
                category=normalize_feedback_category(str(self.category.value or "")),
                details=str(self.details.value or "").strip() or None,
            )
        )


class DiscordChatPlatform:
    """Chat-platform operations over a discord.py client.

    Discord failures surface as DeliveryError so callers can tell them apart
    from generation backend failures.
    """

    def __init__(self, client: discord.Client, logger: Any, action_handler: ActionHandler | None = None):
        self.client = client
        self.logger = logger
        self.action_handler = action_handler
        self.bot_user_id: str | None = None

    async def post_public_reply(
        self, channel_id: str, thread_root: str | None, text: str
    ) -> PostedMessage:
        try:
            if thread_root is None:
                target = await self.resolve_channel(channel_id)
            else:
                target = await self._thread(channel_id, thread_root)
            sent = await target.send(text, allowed_mentions=discord.AllowedMentions.none())
        except Exception as exc:
            raise DeliveryError("post_public_reply", exc) from exc
        return PostedMessage(channel_id=str(sent.channel.id), message_id=str(sent.id))

    async def post_private_reply(
        self,
        channel_id: str,
        user_id: str,
        text: str,
        actions: list[ReplyAction] | None = None,
    ) -> PostedMessage:
        try:
            user = self.client.get_user(int(user_id)) or await self.client.fetch_user(int(user_id))
            if actions and self.action_handler is not None:
                sent = await user.send(text, view=ReplyActionView(actions, self.action_handler))
            else:
                sent = await user.send(text)
        except Exception as exc:
            raise DeliveryError("post_private_reply", exc) from exc
        return PostedMessage(channel_id=str(sent.channel.id), message_id=str(sent.id))

    async def update_message(self, channel_id: str, message_id: str, text: str) -> None:
        try:
            channel = await self.resolve_channel(channel_id)
            await channel.get_partial_message(int(message_id)).edit(content=text)
        except Exception as exc:
            raise DeliveryError("update_message", exc) from exc

    async def read_thread_history(
        self, channel_id: str, thread_root: str, exclude_id: str, limit: int
    ) -> list[HistoryTurn]:
        try:
            thread = await self.resolve_channel(thread_root)
            messages = [m async for m in thread.history(limit=limit + 1)]
            root = await self._starter_message(channel_id, thread)
        except Exception as exc:
            raise DeliveryError("read_thread_history", exc) from exc
        return history_turns(reversed(messages), exclude_id, self.bot_user_id, limit, root=root)

    async def resolve_bot_identity(self) -> str:
        user = self.client.user
        if user is None:
            raise DeliveryError("resolve_bot_identity")
        self.bot_user_id = str(user.id)
        return self.bot_user_id

    async def resolve_channel(self, channel_id: str) -> Any:
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
        return channel

    async def _starter_message(self, channel_id: str, thread: Any) -> Any:
        # The thread's own history only carries an empty system entry for the root question.
        starter = getattr(thread, "starter_message", None)
        if starter is not None:
            return starter
        parent = await self.resolve_channel(channel_id)
        try:
            return await parent.fetch_message(int(thread.id))
        except discord.NotFound:
            return None

    async def _thread(self, channel_id: str, thread_root: str) -> Any:
        # A thread started from a message shares that message's id.
        existing = self.client.get_channel(int(thread_root))
        if existing is not None and is_thread_channel(existing):
            return existing
        try:
            fetched = await self.client.fetch_channel(int(thread_root))
            if is_thread_channel(fetched):
                return fetched
        except discord.NotFound:
            pass
        channel = await self.resolve_channel(channel_id)
        message = await channel.fetch_message(int(thread_root))
        return await message.create_thread(
            name=build_thread_name(str(message.content or ""), self.bot_user_id),
            auto_archive_duration=60,
        )


class DiscordGateway:
    def __init__(self, env: AppEnv, logger: Any, client: discord.Client | None = None):
        self.env = env
        self.logger = logger
        self.orchestrator: Orchestrator | None = None
        self.commands: CommandService | None = None
        self._admin_user_ids = parse_admin_user_ids(env.ADMIN_USER_IDS)

        intents = discord.Intents.default()
        intents.message_content = True
        intents.messages = True
        intents.guilds = True
        intents.dm_messages = True
        intents.reactions = True

        self.client = client or discord.Client(intents=intents)
        self.platform = DiscordChatPlatform(self.client, logger, action_handler=self.handle_action)
        self.client.event(self.on_ready)
        self.client.event(self.on_message)
        self.client.event(self.on_raw_reaction_add)

    def attach(self, orchestrator: Orchestrator, commands: CommandService) -> None:
        self.orchestrator = orchestrator
        self.commands = commands

    async def start(self) -> None:
        if not self.env.DISCORD_BOT_TOKEN:
            self.logger.warning("DISCORD_BOT_TOKEN is not set. Discord gateway disabled.")
            return
        await self.client.start(self.env.DISCORD_BOT_TOKEN)

    async def stop(self) -> None:
        if not self.client.is_closed():
            await self.client.close()

    async def on_ready(self) -> None:
        bot_user_id = await self.platform.resolve_bot_identity()
        if self.orchestrator is not None:
            self.orchestrator.classifier.set_bot_user_id(bot_user_id)
        self.logger.info("Discord client ready.", user=str(self.client.user), bot_user_id=bot_user_id)

    async def on_message(self, message: discord.Message) -> None:
        await self.handle_message(message)

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        await self.handle_reaction(payload)

    async def handle_message(self, message: Any) -> None:
        if self.orchestrator is None or self.commands is None:
            return
        if getattr(message.author, "bot", False):
            return
        args = self.commands.parse(str(getattr(message, "content", "") or ""))
        if args is not None:
            await self._handle_command(message, args)
            return
        if getattr(message, "guild", None) is None:
            return
        self.orchestrator.submit(message_to_event(message))

    async def handle_reaction(self, payload: Any) -> None:
        if self.orchestrator is None:
            return
        author_id = getattr(payload, "message_author_id", None)
        if author_id is None:
            author_id = await self._fetch_author_id(payload)
        self.orchestrator.submit(
            InboundEvent(
                kind="reaction",
                channel_id=str(payload.channel_id),
                user_id=str(payload.user_id),
                message_id=str(payload.message_id),
                reaction=str(payload.emoji),
                item_author_id=str(author_id) if author_id is not None else None,
            )
        )

    async def handle_action(self, interaction: Any, action: ReplyAction) -> None:
        if self.orchestrator is None:
            return
        try:
            if action.action_id == FEEDBACK_ACTION:
                # A modal has to be the first response to the interaction.
                await interaction.response.send_modal(
                    FeedbackModal(
                        channel_id=action.payload.get("channel_id", ""),
                        message_id=action.payload.get("message_id", ""),
                        on_submit_feedback=self.orchestrator.submit_feedback,
                    )
                )
                return
            if action.action_id == PROMOTE_ACTION:
                await interaction.response.defer()
                promoted = await self.orchestrator.promote(
                    action.payload.get("promotion_id", ""), str(interaction.user.id)
                )
                if promoted and getattr(interaction, "message", None) is not None:
                    await interaction.message.edit(view=None)
                await interaction.followup.send(
                    PROMOTED_MESSAGE if promoted else PROMOTE_EXPIRED_MESSAGE
                )
                return
            self.logger.warning("Unknown reply action.", action_id=action.action_id)
        except discord.DiscordException as exc:
            self.logger.warning(
                "Failed to handle reply action.",
                action_id=action.action_id,
                error=str(exc),
            )

    async def _handle_command(self, message: Any, args: str) -> None:
        assert self.commands is not None
        channel_id, _ = resolve_channel_ids(message.channel)
        user_id = str(message.author.id)
        ctx = CommandContext(
            user_id=user_id,
            channel_id=channel_id,
            args=args,
            original_text=args,
            is_admin=self._is_admin(message.author),
        )
        result = self.commands.dispatch(ctx)
        try:
            await message.author.send(result.text)
        except discord.DiscordException as exc:
            self.logger.warning(
                "Failed to send command reply by DM; replying in channel.",
                user_id=user_id,
                error=str(exc),
            )
            await message.reply(result.text)

    def _is_admin(self, author: Any) -> bool:
        if str(getattr(author, "id", "")) in self._admin_user_ids:
            return True
        permissions = getattr(author, "guild_permissions", None)
        return bool(getattr(permissions, "administrator", False))

    async def _fetch_author_id(self, payload: Any) -> int | None:
        try:
            channel = await self.platform.resolve_channel(str(payload.channel_id))
            message = await channel.fetch_message(int(payload.message_id))
        except (discord.DiscordException, ValueError) as exc:
            self.logger.warning(
                "Failed to fetch reacted message.",
                channel_id=str(payload.channel_id),
                message_id=str(payload.message_id),
                error=str(exc),
            )
            return None
        return message.author.id


def message_to_event(message: Any) -> InboundEvent:
    channel_id, thread_root = resolve_channel_ids(message.channel)
    message_type = getattr(message, "type", discord.MessageType.default)
    created_at = getattr(message, "created_at", None)
    return InboundEvent(
        kind="message",
        channel_id=channel_id,
        user_id=str(message.author.id),
        text=str(getattr(message, "content", "") or ""),
        timestamp=created_at.timestamp() if created_at is not None else 0.0,
        message_id=str(message.id),
        thread_root=thread_root,
        is_from_bot=bool(getattr(message.author, "bot", False)),
        subtype=None if message_type in _USER_MESSAGE_TYPES else str(message_type.name),
    )


def resolve_channel_ids(channel: Any) -> tuple[str, str | None]:
    """Return (channel id, thread root). Thread messages report their parent channel."""
    if is_thread_channel(channel) and getattr(channel, "parent_id", None) is not None:
        return str(channel.parent_id), str(channel.id)
    return str(channel.id), None


def history_turns(
    messages: Any,
    exclude_id: str,
    bot_user_id: str | None,
    limit: int,
    root: Any = None,
) -> list[HistoryTurn]:
    """Map thread messages to turns, oldest first, keeping at most `limit`.

    `root` is the message the thread was started from. It always leads the
    result so follow-ups keep the question that opened the thread.
    """
    if limit <= 0:
        return []
    root_id = str(root.id) if root is not None else None
    turns: list[HistoryTurn] = []
    for message in messages:
        if str(message.id) in (exclude_id, root_id):
            continue
        turn = _history_turn(message, bot_user_id)
        if turn is not None:
            turns.append(turn)
    head = _history_turn(root, bot_user_id) if root is not None and root_id != exclude_id else None
    if head is None:
        return turns[-limit:]
    return [head] + (turns[-(limit - 1):] if limit > 1 else [])


def _history_turn(message: Any, bot_user_id: str | None) -> HistoryTurn | None:
    text = strip_mentions(str(message.content or ""), bot_user_id)
    if not text:
        return None
    is_bot = bot_user_id is not None and str(message.author.id) == bot_user_id
    return HistoryTurn(role="assistant" if is_bot else "user", text=text)


def build_thread_name(content: str, bot_user_id: str | None = None) -> str:
    text = re.sub(r"\s+", " ", strip_mentions(content, bot_user_id)).strip()
    if not text:
        return DEFAULT_THREAD_NAME
    if len(text) <= THREAD_NAME_MAX_LEN:
        return text
    return text[: THREAD_NAME_MAX_LEN - 3].rstrip() + "..."


def normalize_feedback_category(raw: str) -> str:
    text = re.sub(r"[\s-]+", "_", raw.strip().lower())
    if text in FEEDBACK_CATEGORIES:
        return text
    for key, label in FEEDBACK_CATEGORIES.items():
        if text == re.sub(r"[\s-]+", "_", label.lower()):
            return key
    return "other"


def is_thread_channel(channel: Any) -> bool:
    if isinstance(channel, discord.Thread):
        return True
    channel_type = getattr(channel, "type", None)
    thread_types = {
        discord.ChannelType.public_thread,
        discord.ChannelType.private_thread,
        discord.ChannelType.news_thread,
    }
    return channel_type in thread_types
