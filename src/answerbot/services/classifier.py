from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from .active_threads import ActiveConversationTracker
from .cooldown import CooldownEngine
from .preferences import PreferenceStore

EventKind = Literal["message", "reaction", "other"]

QUESTION_STARTERS = frozenset(
    {
        "who",
        "what",
        "where",
        "when",
        "why",
        "how",
        "which",
        "can",
        "could",
        "would",
        "should",
        "is",
        "are",
        "does",
        "do",
    }
)

HELP_PHRASES = (
    "help",
    "explain",
    "tell me",
    "show me",
    "how do",
    "what is",
    "where can",
)

TextPredicate = Callable[[str], bool]


@dataclass(frozen=True, slots=True)
class InboundEvent:
    kind: EventKind
    channel_id: str
    user_id: str
    text: str = ""
    timestamp: float = 0.0
    message_id: str = ""
    thread_root: str | None = None
    is_from_bot: bool = False
    subtype: str | None = None
    reaction: str | None = None
    item_author_id: str | None = None


class Classification(str, Enum):
    IGNORE = "ignore"
    FEEDBACK_PROMPT = "feedback_prompt"
    DIRECT_REPLY = "direct_reply"
    AMBIENT_REPLY = "ambient_reply"


@dataclass(frozen=True, slots=True)
class ClassifiedEvent:
    classification: Classification
    reason: str
    reply_thread_root: str | None = None


def looks_like_question(text: str) -> bool:
    lower = (text or "").lower().strip()
    if not lower:
        return False
    if lower.endswith("?"):
        return True
    first_word = lower.split()[0]
    if first_word in QUESTION_STARTERS:
        return True
    return any(phrase in lower for phrase in HELP_PHRASES)


def mention_pattern(bot_user_id: str) -> re.Pattern[str]:
    return re.compile(rf"<@!?{re.escape(bot_user_id)}>")


def strip_mentions(text: str, bot_user_id: str | None = None) -> str:
    if bot_user_id:
        text = mention_pattern(bot_user_id).sub("", text)
    else:
        text = re.sub(r"<@!?\d+>", "", text)
    return re.sub(r"[ \t]+", " ", text).strip()


class EventClassifier:
    """Maps one inbound event to a terminal decision. Reads state, never writes it."""

    def __init__(
        self,
        preferences: PreferenceStore,
        cooldown: CooldownEngine,
        active_threads: ActiveConversationTracker,
        feedback_emoji: str,
        bot_user_id: str | None = None,
        is_question: TextPredicate = looks_like_question,
    ):
        self.preferences = preferences
        self.cooldown = cooldown
        self.active_threads = active_threads
        self.feedback_emoji = feedback_emoji
        self.bot_user_id = bot_user_id
        self.is_question = is_question

    def set_bot_user_id(self, bot_user_id: str) -> None:
        self.bot_user_id = bot_user_id

    def is_direct_address(self, text: str) -> bool:
        if not self.bot_user_id:
            return False
        return bool(mention_pattern(self.bot_user_id).search(text or ""))

    async def classify(self, event: InboundEvent) -> ClassifiedEvent:
        if event.is_from_bot or event.subtype:
            return _ignore("bot_or_system_message")
        if self.bot_user_id and event.user_id == self.bot_user_id:
            return _ignore("own_event")

        if event.kind == "reaction":
            return self._classify_reaction(event)
        if event.kind != "message":
            return _ignore("unsupported_event_kind")

        if self.is_direct_address(event.text):
            return ClassifiedEvent(
                Classification.DIRECT_REPLY,
                "direct_address",
                reply_thread_root=event.thread_root or event.message_id,
            )

        if event.thread_root:
            if await self.active_threads.is_active(event.channel_id, event.thread_root):
                return ClassifiedEvent(
                    Classification.DIRECT_REPLY,
                    "active_thread_follow_up",
                    reply_thread_root=event.thread_root,
                )
            return _ignore("inactive_thread")

        channel = self.preferences.get_channel(event.channel_id)
        if not channel.subscribed:
            return _ignore("channel_not_subscribed")
        if not self.is_question(event.text):
            return _ignore("not_a_question")
        if not self.cooldown.allowed(event.channel_id, event.user_id):
            return _ignore("cooldown")
        if self.preferences.get_user(event.user_id).silenced:
            return _ignore("user_opted_out")
        return ClassifiedEvent(Classification.AMBIENT_REPLY, "ambient_question")

    def _classify_reaction(self, event: InboundEvent) -> ClassifiedEvent:
        if not self.bot_user_id or event.item_author_id != self.bot_user_id:
            return _ignore("reaction_not_on_bot_message")
        if normalize_reaction(event.reaction) != normalize_reaction(self.feedback_emoji):
            return _ignore("reaction_not_feedback_trigger")
        return ClassifiedEvent(Classification.FEEDBACK_PROMPT, "feedback_reaction")


def normalize_reaction(raw: str | None) -> str:
    # ":name:" / ":name::skin-tone-2:" forms collapse to the bare name.
    text = str(raw or "").strip().strip(":")
    return text.split(":", 1)[0]


def _ignore(reason: str) -> ClassifiedEvent:
    return ClassifiedEvent(Classification.IGNORE, reason)
