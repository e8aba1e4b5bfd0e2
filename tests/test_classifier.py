from pathlib import Path

import pytest

from answerbot.services.active_threads import ActiveConversationTracker
from answerbot.services.classifier import (
    Classification,
    EventClassifier,
    InboundEvent,
    looks_like_question,
    normalize_reaction,
    strip_mentions,
)
from answerbot.services.cooldown import CooldownEngine
from answerbot.services.preferences import FilePreferencePersistence, PreferenceStore
from answerbot.services.state_store import InMemoryStateStore

BOT_ID = "999"


class FakeClock:
    def __init__(self, start: float = 10_000.0):
        self.value = start

    def now(self) -> float:
        return self.value

    def advance(self, step: float) -> None:
        self.value += step


class FakeLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, *_args, **_kwargs):
        return None


class SpyCooldown(CooldownEngine):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = 0

    def allowed(self, channel_id: str, user_id: str) -> bool:
        self.calls += 1
        return super().allowed(channel_id, user_id)


def _build(tmp_path: Path, clock: FakeClock, ambient: bool = True):
    logger = FakeLogger()
    prefs = PreferenceStore(
        FilePreferencePersistence(tmp_path),
        logger,
        ambient_enabled=ambient,
        clock=clock.now,
    )
    cooldown = SpyCooldown(prefs, 60, logger, clock=clock.now)
    tracker = ActiveConversationTracker(
        InMemoryStateStore(clock=clock.now), logger, ttl_seconds=7200, clock=clock.now
    )
    classifier = EventClassifier(prefs, cooldown, tracker, feedback_emoji="👎", bot_user_id=BOT_ID)
    return classifier, prefs, cooldown, tracker


def _message(text: str, **kwargs) -> InboundEvent:
    defaults = {"channel_id": "c1", "user_id": "u1", "message_id": "m1"}
    defaults.update(kwargs)
    return InboundEvent(kind="message", text=text, **defaults)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("what is a vector store?", True),
        ("Where do I find the runbook", True),
        ("anyone can explain the deploy flow", True),
        ("is prod down", True),
        ("thanks all", False),
        ("", False),
        ("lunch at noon", False),
    ],
)
def test_looks_like_question(text: str, expected: bool):
    assert looks_like_question(text) is expected


def test_strip_mentions():
    assert strip_mentions(f"<@{BOT_ID}> hello  there", BOT_ID) == "hello there"
    assert strip_mentions(f"<@!{BOT_ID}>hi <@123>", BOT_ID) == "hi <@123>"
    assert strip_mentions("<@123> hi <@!456>") == "hi"


def test_normalize_reaction():
    assert normalize_reaction(":thumbsdown::skin-tone-2:") == "thumbsdown"
    assert normalize_reaction("👎") == "👎"


async def test_bot_and_system_messages_are_ignored(tmp_path: Path):
    classifier, *_ = _build(tmp_path, FakeClock())
    bot_msg = _message(f"<@{BOT_ID}> hi", is_from_bot=True)
    edit = _message(f"<@{BOT_ID}> hi", subtype="thread_created")
    own = _message("what is this?", user_id=BOT_ID)

    for event in (bot_msg, edit, own):
        assert (await classifier.classify(event)).classification == Classification.IGNORE


async def test_direct_address_bypasses_cooldown_and_subscription(tmp_path: Path):
    classifier, _, cooldown, _ = _build(tmp_path, FakeClock())
    result = await classifier.classify(_message(f"<@{BOT_ID}> deploy steps", message_id="m9"))

    assert result.classification == Classification.DIRECT_REPLY
    assert result.reply_thread_root == "m9"
    assert cooldown.calls == 0


async def test_direct_address_inside_thread_replies_in_that_thread(tmp_path: Path):
    classifier, *_ = _build(tmp_path, FakeClock())
    result = await classifier.classify(_message(f"<@!{BOT_ID}> more?", thread_root="t1"))
    assert result.classification == Classification.DIRECT_REPLY
    assert result.reply_thread_root == "t1"


async def test_active_thread_follow_up_then_expiry(tmp_path: Path):
    clock = FakeClock()
    classifier, _, cooldown, tracker = _build(tmp_path, clock)
    await tracker.mark_active("c1", "t1")
    follow_up = _message("and for staging", thread_root="t1", message_id="m2")

    clock.advance(30 * 60)
    result = await classifier.classify(follow_up)
    assert result.classification == Classification.DIRECT_REPLY
    assert result.reason == "active_thread_follow_up"

    clock.advance(3 * 60 * 60)
    assert (await classifier.classify(follow_up)).classification == Classification.IGNORE
    assert cooldown.calls == 0


async def test_unsubscribed_channel_question_is_ignored(tmp_path: Path):
    classifier, *_ = _build(tmp_path, FakeClock())
    result = await classifier.classify(_message("what is X?"))
    assert result.classification == Classification.IGNORE
    assert result.reason == "channel_not_subscribed"


async def test_ambient_question_respects_question_shape_cooldown_and_opt_out(tmp_path: Path):
    clock = FakeClock()
    classifier, prefs, cooldown, _ = _build(tmp_path, clock)
    prefs.update("channel", "c1", {"subscribed": True, "corpus_id": "vs_1"})

    assert (await classifier.classify(_message("nice weather"))).reason == "not_a_question"

    question = _message("how do I reset my token?")
    assert (await classifier.classify(question)).classification == Classification.AMBIENT_REPLY

    cooldown.record_response("c1", "u1")
    clock.advance(10)
    assert (await classifier.classify(question)).reason == "cooldown"

    clock.advance(60)
    prefs.update("user", "u1", {"silenced": True})
    assert (await classifier.classify(question)).reason == "user_opted_out"


async def test_classification_is_idempotent(tmp_path: Path):
    classifier, prefs, *_ = _build(tmp_path, FakeClock())
    prefs.update("channel", "c1", {"subscribed": True, "corpus_id": "vs_1"})
    event = _message("where are the docs?")

    first = await classifier.classify(event)
    second = await classifier.classify(event)
    assert first == second


async def test_feedback_reaction_only_on_bot_messages(tmp_path: Path):
    classifier, *_ = _build(tmp_path, FakeClock())
    on_bot = InboundEvent(
        kind="reaction", channel_id="c1", user_id="u1", message_id="m5",
        reaction="👎", item_author_id=BOT_ID,
    )
    on_user = InboundEvent(
        kind="reaction", channel_id="c1", user_id="u1", message_id="m5",
        reaction="👎", item_author_id="u2",
    )
    other_emoji = InboundEvent(
        kind="reaction", channel_id="c1", user_id="u1", message_id="m5",
        reaction="🎉", item_author_id=BOT_ID,
    )

    assert (await classifier.classify(on_bot)).classification == Classification.FEEDBACK_PROMPT
    assert (await classifier.classify(on_user)).classification == Classification.IGNORE
    assert (await classifier.classify(other_emoji)).classification == Classification.IGNORE


async def test_cooldown_zero_always_allows(tmp_path: Path):
    clock = FakeClock()
    _, prefs, cooldown, _ = _build(tmp_path, clock)
    prefs.update("user", "u1", {"custom_cooldown_seconds": 0})
    cooldown.record_response("c1", "u1")
    assert cooldown.allowed("c1", "u1")
    assert cooldown.allowed("c2", "u1")


async def test_custom_cooldown_overrides_default(tmp_path: Path):
    clock = FakeClock()
    _, prefs, cooldown, _ = _build(tmp_path, clock)
    prefs.update("user", "u1", {"custom_cooldown_seconds": 600})
    cooldown.record_response("c1", "u1")

    clock.advance(300)
    assert not cooldown.allowed("c1", "u1")
    clock.advance(300)
    assert cooldown.allowed("c1", "u1")
