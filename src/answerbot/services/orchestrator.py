from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from answerbot.config import OrchestratorOptions

from .active_threads import ActiveConversationTracker
from .classifier import Classification, ClassifiedEvent, EventClassifier, InboundEvent, strip_mentions
from .cooldown import CooldownEngine
from .delivery import (
    ERROR_MESSAGE,
    FEEDBACK_ACTION,
    FEEDBACK_PROMPT_MESSAGE,
    NOT_CONFIGURED_MESSAGE,
    NOT_TRAINED_MESSAGE,
    PROMOTE_ACTION,
    THINKING_MESSAGE,
    ChatPlatform,
    DeliveryFormatter,
    PostedMessage,
    ReplyAction,
)
from .errors import ConfigurationError, DeliveryError
from .generator import GenerationOutcome, HistoryTurn, OutcomeStatus, ResponseGenerator
from .logger import DELIVERY_FAILURE
from .preferences import ChannelPreference, PreferenceStore
from .suppression import ConfidenceFilter

MAX_PENDING_PROMOTIONS = 500

FEEDBACK_CATEGORIES: dict[str, str] = {
    "inaccurate": "Inaccurate",
    "incomplete": "Incomplete",
    "outdated_docs": "Outdated docs",
    "off_topic": "Off-topic",
    "other": "Other",
}


class ReplyState(TypedDict, total=False):
    event: InboundEvent
    stage: str
    decision: ClassifiedEvent
    thread_root: str
    corpus_id: str
    config_error: str
    placeholder: PostedMessage | None
    aborted: bool
    history: list[HistoryTurn]
    outcome: GenerationOutcome
    suppressed: str
    delivered: bool


@dataclass(frozen=True, slots=True)
class PendingPromotion:
    promotion_id: str
    channel_id: str
    thread_root: str
    user_id: str
    text: str


@dataclass(frozen=True, slots=True)
class FeedbackSubmission:
    channel_id: str
    message_id: str
    user_id: str
    category: str
    details: str | None = None


class Orchestrator:
    """Per-event decide, generate, filter and deliver pipeline.

    `submit` only schedules work, so the inbound side is acknowledged before any
    backend call. Every scheduled task ends in a delivered reply, a silent drop,
    or a logged error.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        classifier: EventClassifier,
        generator: ResponseGenerator,
        preferences: PreferenceStore,
        cooldown: CooldownEngine,
        active_threads: ActiveConversationTracker,
        logger: Any,
        options: OrchestratorOptions | None = None,
        confidence_filter: ConfidenceFilter | None = None,
    ):
        self.platform = platform
        self.classifier = classifier
        self.generator = generator
        self.preferences = preferences
        self.cooldown = cooldown
        self.active_threads = active_threads
        self.logger = logger
        self.options = options or OrchestratorOptions()
        self.confidence_filter = confidence_filter or ConfidenceFilter()
        self.formatter = DeliveryFormatter(
            self.options.segment_limit, command_prefix=self.options.command_prefix
        )
        self._tasks: set[asyncio.Task[ReplyState]] = set()
        self._promotions: OrderedDict[str, PendingPromotion] = OrderedDict()
        self._graph = self._build_graph()

    def submit(self, event: InboundEvent) -> asyncio.Task[ReplyState]:
        task = asyncio.create_task(self.process(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        pending = list(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def process(self, event: InboundEvent) -> ReplyState:
        state: ReplyState = {"event": event, "stage": "accepted"}
        try:
            async for snapshot in self._graph.astream(state, stream_mode="values"):
                state = snapshot
            return state
        except Exception as exc:
            self.logger.error(
                "Event processing failed.",
                channel_id=event.channel_id,
                user_id=event.user_id,
                message_id=event.message_id,
                error=str(exc),
                exc_info=True,
            )
            await self._recover(state)
            return {**state, "stage": "failed", "delivered": False}

    async def _recover(self, state: ReplyState) -> None:
        # A direct reply on a ready channel always ends in an answer or an error message.
        if "corpus_id" not in state or "delivered" in state or not _is_direct(state):
            return
        event = state["event"]
        await self._send_fallback(event.channel_id, state["thread_root"], state.get("placeholder"))

    def _build_graph(self) -> Any:
        graph = StateGraph(ReplyState)

        graph.add_node("classify", self._classify)
        graph.add_node("feedback_prompt", self._feedback_prompt)
        graph.add_node("resolve_channel", self._resolve_channel)
        graph.add_node("report_configuration", self._report_configuration)
        graph.add_node("post_placeholder", self._post_placeholder)
        graph.add_node("load_history", self._load_history)
        graph.add_node("generate", self._generate)
        graph.add_node("deliver_direct", self._deliver_direct)
        graph.add_node("filter_ambient", self._filter_ambient)
        graph.add_node("deliver_ambient", self._deliver_ambient)

        graph.add_edge(START, "classify")
        graph.add_conditional_edges("classify", _after_classify)
        graph.add_edge("feedback_prompt", END)
        graph.add_conditional_edges("resolve_channel", _after_resolve_channel)
        graph.add_edge("report_configuration", END)
        graph.add_conditional_edges(
            "post_placeholder",
            lambda s: END if s.get("aborted") else "load_history",
        )
        graph.add_edge("load_history", "generate")
        graph.add_conditional_edges(
            "generate",
            lambda s: "deliver_direct" if _is_direct(s) else "filter_ambient",
        )
        graph.add_edge("deliver_direct", END)
        graph.add_conditional_edges(
            "filter_ambient",
            lambda s: END if s.get("suppressed") else "deliver_ambient",
        )
        graph.add_edge("deliver_ambient", END)

        return graph.compile()

    async def _classify(self, state: ReplyState) -> ReplyState:
        event = state["event"]
        decision = await self.classifier.classify(event)
        self.logger.debug(
            "Event classified.",
            channel_id=event.channel_id,
            user_id=event.user_id,
            message_id=event.message_id,
            classification=decision.classification.value,
            reason=decision.reason,
        )
        return {
            "stage": "classified",
            "decision": decision,
            "thread_root": decision.reply_thread_root or event.message_id,
        }

    async def _feedback_prompt(self, state: ReplyState) -> ReplyState:
        event = state["event"]
        self.logger.info(
            "Feedback reaction received.",
            channel_id=event.channel_id,
            message_id=event.message_id,
            user_id=event.user_id,
        )
        action = ReplyAction(
            FEEDBACK_ACTION,
            "Give Feedback",
            {"channel_id": event.channel_id, "message_id": event.message_id},
        )
        try:
            await self.platform.post_private_reply(
                event.channel_id, event.user_id, FEEDBACK_PROMPT_MESSAGE, [action]
            )
        except DeliveryError as exc:
            self._log_delivery_failure("Failed to post feedback prompt.", event, exc)
            return {"stage": "feedback_prompt", "delivered": False}
        return {"stage": "feedback_prompt", "delivered": True}

    async def _resolve_channel(self, state: ReplyState) -> ReplyState:
        event = state["event"]
        channel = self.preferences.get_channel(event.channel_id)
        try:
            corpus_id = require_corpus(channel)
        except ConfigurationError as exc:
            self.logger.info(
                "Channel is not ready for replies.",
                channel_id=event.channel_id,
                reason=exc.reason,
                classification=state["decision"].classification.value,
            )
            return {"stage": "resolve_channel", "config_error": exc.reason}
        return {"stage": "resolve_channel", "corpus_id": corpus_id}

    async def _report_configuration(self, state: ReplyState) -> ReplyState:
        event = state["event"]
        text = (
            NOT_CONFIGURED_MESSAGE
            if state.get("config_error") == "not_subscribed"
            else NOT_TRAINED_MESSAGE
        )
        try:
            await self.platform.post_public_reply(event.channel_id, state["thread_root"], text)
        except DeliveryError as exc:
            self._log_delivery_failure("Failed to post configuration notice.", event, exc)
            return {"stage": "report_configuration", "delivered": False}
        return {"stage": "report_configuration", "delivered": True}

    async def _post_placeholder(self, state: ReplyState) -> ReplyState:
        if not self.options.thinking_message_enabled:
            return {"stage": "post_placeholder", "placeholder": None}
        event = state["event"]
        try:
            placeholder = await self.platform.post_public_reply(
                event.channel_id, state["thread_root"], THINKING_MESSAGE
            )
        except DeliveryError as exc:
            self._log_delivery_failure("Failed to post thinking message.", event, exc)
            await self._send_fallback(event.channel_id, state["thread_root"])
            return {"stage": "post_placeholder", "aborted": True, "delivered": False}
        return {"stage": "post_placeholder", "placeholder": placeholder}

    async def _load_history(self, state: ReplyState) -> ReplyState:
        event = state["event"]
        limit = self.options.thread_context_messages
        if not _is_direct(state) or not event.thread_root or limit <= 0:
            return {"stage": "load_history", "history": []}
        try:
            history = await self.platform.read_thread_history(
                event.channel_id, event.thread_root, event.message_id, limit
            )
        except DeliveryError as exc:
            self.logger.warning(
                "Failed to read thread history; answering without it.",
                channel_id=event.channel_id,
                thread_root=event.thread_root,
                failure_source=DELIVERY_FAILURE,
                error=str(exc),
            )
            history = []
        return {"stage": "load_history", "history": history[-limit:]}

    async def _generate(self, state: ReplyState) -> ReplyState:
        event = state["event"]
        text = strip_mentions(event.text, self.classifier.bot_user_id)
        outcome = await self.generator.generate(
            text, state["corpus_id"], state.get("history") or []
        )
        return {"stage": "generate", "outcome": outcome}

    async def _deliver_direct(self, state: ReplyState) -> ReplyState:
        event = state["event"]
        outcome = state["outcome"]
        thread_root = state["thread_root"]
        placeholder = state.get("placeholder")
        segments = self.formatter.public_segments(self.formatter.direct_text(outcome))
        delivered = 0
        try:
            remaining = segments
            if placeholder is not None:
                await self.platform.update_message(
                    placeholder.channel_id, placeholder.message_id, segments[0]
                )
                delivered = 1
                remaining = segments[1:]
            for segment in remaining:
                await self.platform.post_public_reply(event.channel_id, thread_root, segment)
                delivered += 1
        except Exception as exc:
            self._log_delivery_failure(
                "Failed to deliver public reply.",
                event,
                exc,
                delivered=delivered,
                segments=len(segments),
            )
            # Once part of the reply is out, the placeholder holds real text and stays.
            await self._send_fallback(
                event.channel_id, thread_root, placeholder if delivered == 0 else None
            )
            return {"stage": "deliver_direct", "delivered": False}

        if outcome.status == OutcomeStatus.OK:
            await self.active_threads.mark_active(event.channel_id, thread_root)
        self.logger.info(
            "Public reply delivered.",
            channel_id=event.channel_id,
            thread_root=thread_root,
            user_id=event.user_id,
            status=outcome.status.value,
            segments=len(segments),
        )
        return {"stage": "deliver_direct", "delivered": True}

    async def _filter_ambient(self, state: ReplyState) -> ReplyState:
        event = state["event"]
        reason = self.confidence_filter.suppression_reason(state["outcome"])
        if reason is None:
            return {"stage": "filter_ambient"}
        self.logger.info(
            "Ambient reply suppressed.",
            channel_id=event.channel_id,
            user_id=event.user_id,
            message_id=event.message_id,
            reason=reason,
        )
        return {"stage": "filter_ambient", "suppressed": reason, "delivered": False}

    async def _deliver_ambient(self, state: ReplyState) -> ReplyState:
        event = state["event"]
        text = state["outcome"].text or ""
        promotion = self._remember_promotion(
            event.channel_id, state["thread_root"], event.user_id, text
        )
        segments = self.formatter.private_segments(text)
        actions = [
            ReplyAction(
                PROMOTE_ACTION,
                "Promote to public thread",
                {"promotion_id": promotion.promotion_id},
            )
        ]
        try:
            for index, segment in enumerate(segments):
                await self.platform.post_private_reply(
                    event.channel_id,
                    event.user_id,
                    segment,
                    actions if index == 0 else None,
                )
        except DeliveryError as exc:
            self._promotions.pop(promotion.promotion_id, None)
            self._log_delivery_failure("Failed to deliver private reply.", event, exc)
            return {"stage": "deliver_ambient", "delivered": False}

        self.cooldown.record_response(event.channel_id, event.user_id)
        self.logger.info(
            "Private reply delivered.",
            channel_id=event.channel_id,
            user_id=event.user_id,
            message_id=event.message_id,
            segments=len(segments),
        )
        return {"stage": "deliver_ambient", "delivered": True}

    async def promote(self, promotion_id: str, user_id: str) -> bool:
        promotion = self._promotions.get(promotion_id)
        if promotion is None:
            self.logger.info("Promotion not found or expired.", promotion_id=promotion_id)
            return False
        if promotion.user_id != user_id:
            self.logger.warning(
                "Promotion requested by a different user.",
                promotion_id=promotion_id,
                user_id=user_id,
            )
            return False
        try:
            for segment in self.formatter.public_segments(promotion.text):
                await self.platform.post_public_reply(
                    promotion.channel_id, promotion.thread_root, segment
                )
        except DeliveryError as exc:
            self.logger.error(
                "Failed to promote private reply.",
                channel_id=promotion.channel_id,
                thread_root=promotion.thread_root,
                failure_source=DELIVERY_FAILURE,
                operation=exc.operation,
                error=str(exc),
            )
            return False
        self._promotions.pop(promotion_id, None)
        await self.active_threads.mark_active(promotion.channel_id, promotion.thread_root)
        self.logger.info(
            "Private reply promoted.",
            channel_id=promotion.channel_id,
            thread_root=promotion.thread_root,
            user_id=user_id,
        )
        return True

    async def submit_feedback(self, submission: FeedbackSubmission) -> bool:
        self.logger.info(
            "Feedback submitted.",
            channel_id=submission.channel_id,
            message_id=submission.message_id,
            user_id=submission.user_id,
            category=submission.category,
        )
        if not self.options.feedback_channel_id:
            return False
        try:
            await self.platform.post_public_reply(
                self.options.feedback_channel_id, None, format_feedback(submission)
            )
        except DeliveryError as exc:
            self.logger.error(
                "Failed to forward feedback.",
                feedback_channel_id=self.options.feedback_channel_id,
                failure_source=DELIVERY_FAILURE,
                operation=exc.operation,
                error=str(exc),
            )
            return False
        return True

    def _remember_promotion(
        self, channel_id: str, thread_root: str, user_id: str, text: str
    ) -> PendingPromotion:
        promotion = PendingPromotion(
            promotion_id=uuid.uuid4().hex,
            channel_id=channel_id,
            thread_root=thread_root,
            user_id=user_id,
            text=text,
        )
        self._promotions[promotion.promotion_id] = promotion
        while len(self._promotions) > MAX_PENDING_PROMOTIONS:
            self._promotions.popitem(last=False)
        return promotion

    async def _send_fallback(
        self,
        channel_id: str,
        thread_root: str,
        placeholder: PostedMessage | None = None,
    ) -> bool:
        # One retry, then the event is dropped.
        for attempt in (1, 2):
            try:
                if placeholder is not None and attempt == 1:
                    await self.platform.update_message(
                        placeholder.channel_id, placeholder.message_id, ERROR_MESSAGE
                    )
                else:
                    await self.platform.post_public_reply(channel_id, thread_root, ERROR_MESSAGE)
                return True
            except Exception as exc:
                self.logger.warning(
                    "Failed to deliver error message.",
                    channel_id=channel_id,
                    thread_root=thread_root,
                    attempt=attempt,
                    failure_source=DELIVERY_FAILURE,
                    operation=getattr(exc, "operation", None),
                    error=str(exc),
                )
        self.logger.error(
            "Dropping reply after failed error message.",
            channel_id=channel_id,
            thread_root=thread_root,
            failure_source=DELIVERY_FAILURE,
        )
        return False

    def _log_delivery_failure(
        self, message: str, event: InboundEvent, exc: Exception, **extra: Any
    ) -> None:
        self.logger.error(
            message,
            channel_id=event.channel_id,
            user_id=event.user_id,
            message_id=event.message_id,
            failure_source=DELIVERY_FAILURE,
            operation=getattr(exc, "operation", None),
            error=str(exc),
            **extra,
        )


def require_corpus(channel: ChannelPreference) -> str:
    if not channel.subscribed:
        raise ConfigurationError("not_subscribed", channel.channel_id)
    if not channel.corpus_id:
        raise ConfigurationError("no_corpus", channel.channel_id)
    return channel.corpus_id


def format_feedback(submission: FeedbackSubmission) -> str:
    label = FEEDBACK_CATEGORIES.get(submission.category, submission.category)
    return "\n".join(
        [
            "📋 **Response Feedback Received**",
            "",
            f"**From:** <@{submission.user_id}>",
            f"**Channel:** <#{submission.channel_id}>",
            f"**Message:** `{submission.message_id}`",
            f"**Category:** {label}",
            f"**Details:** {submission.details or 'No additional details'}",
        ]
    )


def _is_direct(state: ReplyState) -> bool:
    return state["decision"].classification == Classification.DIRECT_REPLY


def _after_classify(state: ReplyState) -> str:
    classification = state["decision"].classification
    if classification == Classification.FEEDBACK_PROMPT:
        return "feedback_prompt"
    if classification in (Classification.DIRECT_REPLY, Classification.AMBIENT_REPLY):
        return "resolve_channel"
    return END


def _after_resolve_channel(state: ReplyState) -> str:
    if state.get("config_error"):
        # Ambient replies on an unready channel stay silent.
        return "report_configuration" if _is_direct(state) else END
    return "post_placeholder" if _is_direct(state) else "load_history"
