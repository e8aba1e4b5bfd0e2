from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol

from .generator import GenerationOutcome, HistoryTurn, OutcomeStatus

NOT_CONFIGURED_MESSAGE = "Sorry, I'm not configured for this channel yet."
NOT_TRAINED_MESSAGE = "Sorry, I'm not trained for this channel yet."
THINKING_MESSAGE = "_Thinking..._"
TRUNCATED_MESSAGE = (
    "I was unable to answer due to complexity. Please try to rephrase your question."
)
EMPTY_MESSAGE = (
    "Sorry, I'm not able to answer that question. It may be outside the scope of "
    "what I've been trained on in this channel."
)
UNEXPECTED_MESSAGE = "Sorry, I encountered an unexpected issue processing your request."
ERROR_MESSAGE = "Sorry, I encountered an error processing your request."
FEEDBACK_PROMPT_MESSAGE = "Would you like to provide feedback on this response?"

PRIVATE_PREFIX = "_Only visible to you:_\n\n"

PROMOTE_ACTION = "promote_to_public"
FEEDBACK_ACTION = "give_feedback"

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"[.!?][\"')\]]*\s+|\n")
_WHITESPACE = re.compile(r"\s+")

# Sentence breaks before this share of the limit are skipped.
MIN_BREAK_RATIO = 0.5


@dataclass(frozen=True, slots=True)
class PostedMessage:
    channel_id: str
    message_id: str


@dataclass(frozen=True, slots=True)
class ReplyAction:
    action_id: str
    label: str
    payload: dict[str, str] = field(default_factory=dict)


class ChatPlatform(Protocol):
    async def post_public_reply(
        self, channel_id: str, thread_root: str | None, text: str
    ) -> PostedMessage: ...

    async def post_private_reply(
        self,
        channel_id: str,
        user_id: str,
        text: str,
        actions: list[ReplyAction] | None = None,
    ) -> PostedMessage: ...

    async def update_message(self, channel_id: str, message_id: str, text: str) -> None: ...

    async def read_thread_history(
        self, channel_id: str, thread_root: str, exclude_id: str, limit: int
    ) -> list[HistoryTurn]: ...

    async def resolve_bot_identity(self) -> str: ...


def split_reply(text: str, limit: int) -> list[str]:
    """Split `text` into segments of at most `limit` characters.

    Segments concatenate back to `text` exactly. Cuts prefer a paragraph or
    sentence boundary, then whitespace, and only cut inside a word when a single
    word is longer than the limit.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    segments: list[str] = []
    rest = text
    while len(rest) > limit:
        cut = find_break(rest, limit)
        segments.append(rest[:cut])
        rest = rest[cut:]
    if rest or not segments:
        segments.append(rest)
    return segments


def find_break(text: str, limit: int) -> int:
    window = text[: limit + 1]
    floor = int(limit * MIN_BREAK_RATIO)

    best = 0
    for pattern in (_PARAGRAPH_BREAK, _SENTENCE_BREAK):
        for match in pattern.finditer(window):
            end = min(match.end(), limit)
            if end > best:
                best = end
        if best >= floor:
            return best

    for match in _WHITESPACE.finditer(window):
        end = min(match.end(), limit)
        if end > best:
            best = end
    return best if best > 0 else limit


class DeliveryFormatter:
    """Turns a generation outcome into the message texts to post."""

    def __init__(self, segment_limit: int, command_prefix: str = "!answerbot"):
        self.segment_limit = segment_limit
        self.private_footer = (
            f"\n\n_Type `{command_prefix} help` for more information._\n"
            "_If this response is helpful, use the promote button so everyone can benefit._"
        )

    def direct_text(self, outcome: GenerationOutcome) -> str:
        if outcome.status == OutcomeStatus.OK and outcome.usable_text:
            return outcome.text or ""
        if outcome.status == OutcomeStatus.TRUNCATED:
            return TRUNCATED_MESSAGE
        if outcome.status == OutcomeStatus.EMPTY:
            return EMPTY_MESSAGE
        if outcome.error_detail.get("type") == "unexpected_status":
            return UNEXPECTED_MESSAGE
        return ERROR_MESSAGE

    def public_segments(self, text: str) -> list[str]:
        return split_labelled(text, self.segment_limit)

    def private_segments(self, text: str) -> list[str]:
        overhead = len(PRIVATE_PREFIX) + len(self.private_footer)
        parts = split_labelled(text, self.segment_limit - overhead)
        parts[0] = PRIVATE_PREFIX + parts[0]
        parts[-1] = parts[-1] + self.private_footer
        return parts


def continuation_label(index: int, total: int) -> str:
    return f"_Continued (part {index}/{total}):_\n\n"


def label_continuations(parts: list[str]) -> list[str]:
    total = len(parts)
    if total == 1:
        return list(parts)
    labelled = [parts[0]]
    for index, part in enumerate(parts[1:], start=2):
        labelled.append(continuation_label(index, total) + part)
    return labelled


def split_labelled(text: str, limit: int) -> list[str]:
    """Split `text` so every labelled segment, label included, fits in `limit`.

    The label width depends on the number of parts, so the split is retried
    with a wider reserve whenever the part count gains a digit.
    """
    if len(text) <= limit:
        return [text]
    digits = 1
    while True:
        widest = 10**digits - 1
        reserve = len(continuation_label(widest, widest))
        parts = split_reply(text, max(1, limit - reserve))
        if len(parts) <= widest:
            return label_continuations(parts)
        digits += 1
