from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .preferences import ChannelPreference, PreferenceStore

MAX_COOLDOWN_MINUTES = 24 * 60
ADMIN_REQUIRED_MESSAGE = "You must be an admin to use this command."

_COOLDOWN_PATTERN = re.compile(r"^cooldown\s+(\d+)$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class CommandContext:
    user_id: str
    channel_id: str
    args: str
    original_text: str = ""
    is_admin: bool = False


@dataclass(frozen=True, slots=True)
class CommandResult:
    text: str
    changed: bool = False


Handler = Callable[[CommandContext], CommandResult]


class CommandService:
    """Text commands over the preference store.

    Every handler returns a reply meant only for the caller.
    """

    def __init__(
        self,
        preferences: PreferenceStore,
        default_cooldown_seconds: int,
        logger: Any,
        command_prefix: str = "!answerbot",
    ):
        self.preferences = preferences
        self.default_cooldown_seconds = default_cooldown_seconds
        self.logger = logger
        self.prefix = command_prefix
        self._handlers: dict[str, Handler] = {
            "": self.help,
            "help": self.help,
            "about": self.help,
            "silence": self.silence,
            "unsilence": self.unsilence,
            "cooldown": self.cooldown,
            "subscribe": admin_only(self.subscribe),
            "leave": admin_only(self.leave),
            "channels": admin_only(self.channels),
            "addvector": admin_only(self.add_vector),
            "dropvector": admin_only(self.drop_vector),
            "listvector": admin_only(self.list_vector),
        }

    def parse(self, content: str) -> str | None:
        """Return the argument string when `content` is a command, else None."""
        text = (content or "").strip()
        if not text.lower().startswith(self.prefix.lower()):
            return None
        rest = text[len(self.prefix) :]
        if rest and not rest[0].isspace():
            return None
        return rest.strip()

    def dispatch(self, ctx: CommandContext) -> CommandResult:
        name = ctx.args.split()[0].lower() if ctx.args.strip() else ""
        handler = self._handlers.get(name)
        if handler is None:
            return CommandResult(
                f"Unknown command: `{ctx.original_text or ctx.args}`\n\n"
                f"Type `{self.prefix} help` to see available commands."
            )
        return handler(ctx)

    def help(self, ctx: CommandContext) -> CommandResult:
        pref = self.preferences.get_user(ctx.user_id)
        silenced = "Yes" if pref.silenced else "No"
        if pref.custom_cooldown_seconds is not None:
            cooldown = f"{pref.custom_cooldown_seconds // 60} minutes"
        else:
            cooldown = f"Default ({self.default_cooldown_seconds // 60} minutes)"
        p = self.prefix
        lines = [
            "I monitor specific channels and help answer questions.",
            "",
            "**How I respond:**",
            "- **Mention me** and I reply publicly in a thread",
            "- **Reply in that thread** and I keep following the conversation without another mention",
            "- **Ask a question in the channel** and I may reply privately by direct message",
            "",
            "**Commands:**",
            f"- `{p} help` shows this message",
            f"- `{p} silence` pauses private (ambient) replies",
            f"- `{p} unsilence` allows private (ambient) replies",
            f"- `{p} cooldown <minutes>` sets your cooldown (0-{MAX_COOLDOWN_MINUTES} minutes)",
            "",
            "**Your current settings:**",
            f"- Silenced: {silenced}",
            f"- Cooldown: {cooldown}",
        ]
        if ctx.is_admin:
            lines += [
                "",
                "**Admin commands:**",
                f"- `{p} subscribe` adds this channel",
                f"- `{p} leave` removes this channel",
                f"- `{p} channels` lists configured channels",
                f"- `{p} addvector <id>` connects an OpenAI vector store to this channel",
                f"- `{p} dropvector` removes the vector store from this channel",
                f"- `{p} listvector` shows every vector store binding",
            ]
        return CommandResult("\n".join(lines))

    def silence(self, ctx: CommandContext) -> CommandResult:
        self.preferences.update("user", ctx.user_id, {"silenced": True})
        self.logger.info("User silenced ambient replies.", user_id=ctx.user_id, channel_id=ctx.channel_id)
        return CommandResult(
            "You won't receive ambient replies anymore. "
            f"Use `{self.prefix} unsilence` to resume. (Mentions still work!)",
            changed=True,
        )

    def unsilence(self, ctx: CommandContext) -> CommandResult:
        self.preferences.update("user", ctx.user_id, {"silenced": False})
        self.logger.info("User enabled ambient replies.", user_id=ctx.user_id, channel_id=ctx.channel_id)
        return CommandResult(
            "You'll now receive ambient replies when you ask questions.", changed=True
        )

    def cooldown(self, ctx: CommandContext) -> CommandResult:
        matched = _COOLDOWN_PATTERN.match(" ".join(ctx.args.split()))
        if not matched:
            return CommandResult(
                f"Invalid cooldown format. Use a number like: `{self.prefix} cooldown 10` (for 10 minutes)."
            )
        minutes = int(matched.group(1))
        if minutes > MAX_COOLDOWN_MINUTES:
            return CommandResult(
                f"Cooldown must be between 0 and {MAX_COOLDOWN_MINUTES} minutes (24 hours). "
                f"You provided: {minutes} minutes."
            )
        self.preferences.update("user", ctx.user_id, {"custom_cooldown_seconds": minutes * 60})
        self.logger.info("User set custom cooldown.", user_id=ctx.user_id, minutes=minutes)
        unit = "minute" if minutes == 1 else "minutes"
        return CommandResult(f"Your cooldown has been set to {minutes} {unit}.", changed=True)

    def subscribe(self, ctx: CommandContext) -> CommandResult:
        if self.preferences.get_channel(ctx.channel_id).subscribed:
            return CommandResult(f"Channel <#{ctx.channel_id}> is already configured.")
        self.preferences.update("channel", ctx.channel_id, {"subscribed": True})
        self.logger.info("Channel subscribed.", channel_id=ctx.channel_id, admin_id=ctx.user_id)
        return CommandResult(
            f"Channel <#{ctx.channel_id}> subscribed successfully! "
            f"Use `{self.prefix} addvector <vector_id>` to connect an OpenAI vector store.",
            changed=True,
        )

    def leave(self, ctx: CommandContext) -> CommandResult:
        if not self.preferences.get_channel(ctx.channel_id).subscribed:
            return CommandResult("This channel is not configured.")
        self.preferences.delete("channel", ctx.channel_id)
        self.logger.info("Channel removed.", channel_id=ctx.channel_id, admin_id=ctx.user_id)
        return CommandResult(f"Channel <#{ctx.channel_id}> has been removed.", changed=True)

    def channels(self, ctx: CommandContext) -> CommandResult:
        subscribed = [
            pref for pref in self._channel_prefs().values() if pref.subscribed
        ]
        if not subscribed:
            return CommandResult(f"No channels configured yet. Use `{self.prefix} subscribe` to add one.")
        entries = []
        for pref in sorted(subscribed, key=lambda p: p.channel_id):
            corpus = f"Vector: `{pref.corpus_id}`" if pref.corpus_id else "_No vector store_"
            entries.append(f"• <#{pref.channel_id}> (`{pref.channel_id}`)\n  {corpus}")
        return CommandResult("**Configured Channels:**\n\n" + "\n\n".join(entries))

    def add_vector(self, ctx: CommandContext) -> CommandResult:
        parts = (ctx.original_text or ctx.args).split()
        corpus_id = parts[-1] if len(parts) >= 2 else ""
        if not is_valid_corpus_id(corpus_id):
            return CommandResult(f"Invalid vector store ID. Usage: `{self.prefix} addvector vs_xxxxx`")
        self.preferences.update("channel", ctx.channel_id, {"corpus_id": corpus_id})
        self.logger.info(
            "Vector store bound to channel.",
            channel_id=ctx.channel_id,
            corpus_id=corpus_id,
            admin_id=ctx.user_id,
        )
        return CommandResult(
            f"Vector store `{corpus_id}` configured for <#{ctx.channel_id}>.", changed=True
        )

    def drop_vector(self, ctx: CommandContext) -> CommandResult:
        if not self.preferences.get_channel(ctx.channel_id).corpus_id:
            return CommandResult(f"No vector store configured for <#{ctx.channel_id}>.")
        self.preferences.update("channel", ctx.channel_id, {"corpus_id": None})
        self.logger.info("Vector store removed from channel.", channel_id=ctx.channel_id, admin_id=ctx.user_id)
        return CommandResult(f"Vector store removed from <#{ctx.channel_id}>.", changed=True)

    def list_vector(self, ctx: CommandContext) -> CommandResult:
        bound = [pref for pref in self._channel_prefs().values() if pref.corpus_id]
        if not bound:
            return CommandResult("No vector stores configured for any channel.")
        lines = [
            f"• <#{pref.channel_id}> (`{pref.channel_id}`): `{pref.corpus_id}`"
            for pref in sorted(bound, key=lambda p: p.channel_id)
        ]
        return CommandResult("**Vector Store Configuration:**\n\n" + "\n".join(lines))

    def _channel_prefs(self) -> dict[str, ChannelPreference]:
        return {
            item_id: pref
            for item_id, pref in self.preferences.all("channel").items()
            if isinstance(pref, ChannelPreference)
        }


def admin_only(handler: Handler) -> Handler:
    def guarded(ctx: CommandContext) -> CommandResult:
        if not ctx.is_admin:
            return CommandResult(ADMIN_REQUIRED_MESSAGE)
        return handler(ctx)

    return guarded


def is_valid_corpus_id(value: str) -> bool:
    return bool(re.fullmatch(r"vs_[A-Za-z0-9_-]+", value or ""))
