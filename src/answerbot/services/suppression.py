from __future__ import annotations

from collections.abc import Callable, Iterable

from .generator import GenerationOutcome, OutcomeStatus

DECLINE_PHRASES = (
    "not been trained",
    "not trained",
    "outside the scope",
    "outside of the scope",
    "don't have information",
    "do not have information",
    "no relevant documentation",
    "not covered by the documentation",
    "cannot answer",
    "can't answer",
    "unable to answer",
    "not able to answer",
)

DeclinePredicate = Callable[[str], bool]


def looks_like_decline(text: str, phrases: Iterable[str] = DECLINE_PHRASES) -> bool:
    # Substring heuristic over model output; false positives and negatives are expected.
    lower = (text or "").lower().replace("’", "'")
    return any(phrase in lower for phrase in phrases)


class ConfidenceFilter:
    """Decides whether an unsolicited reply is worth posting."""

    def __init__(self, is_decline: DeclinePredicate = looks_like_decline):
        self.is_decline = is_decline

    def suppression_reason(self, outcome: GenerationOutcome) -> str | None:
        if outcome.status == OutcomeStatus.BACKEND_ERROR:
            return "backend_error"
        if not outcome.usable_text:
            return outcome.status.value if outcome.status != OutcomeStatus.OK else "empty"
        if self.is_decline(outcome.usable_text):
            return "decline_phrase"
        return None

    def should_suppress(self, outcome: GenerationOutcome) -> bool:
        return self.suppression_reason(outcome) is not None
