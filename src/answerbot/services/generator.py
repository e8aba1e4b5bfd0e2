from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol

from .errors import GenerationBackendError
from .logger import BACKEND_FAILURE

DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant for this team's chat workspace. Answer using only the "
    "documentation available through file search. If the documentation does not cover "
    "the question, say that you have not been trained on this topic. Keep answers short "
    "and format them for chat."
)


@dataclass(frozen=True, slots=True)
class HistoryTurn:
    role: Literal["user", "assistant"]
    text: str


class OutcomeStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"
    TRUNCATED = "truncated"
    BACKEND_ERROR = "backend_error"


@dataclass(frozen=True, slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True, slots=True)
class GenerationOutcome:
    status: OutcomeStatus
    text: str | None = None
    usage: TokenUsage | None = None
    error_detail: dict[str, Any] = field(default_factory=dict)
    response_id: str | None = None

    @property
    def usable_text(self) -> str:
        return (self.text or "").strip()


class GenerationBackend(Protocol):
    async def generate(
        self,
        instructions: str,
        history: list[HistoryTurn],
        user_text: str,
        corpus_id: str,
        max_output_tokens: int,
    ) -> Any: ...


class ResponseGenerator:
    """One backend attempt per call; every result is folded into a GenerationOutcome."""

    def __init__(
        self,
        backend: GenerationBackend,
        logger: Any,
        instructions: str = DEFAULT_INSTRUCTIONS,
        max_output_tokens: int = 4000,
        history_limit: int = 10,
        timeout_s: float = 30.0,
    ):
        self.backend = backend
        self.logger = logger
        self.instructions = instructions
        self.max_output_tokens = max_output_tokens
        self.history_limit = max(0, history_limit)
        self.timeout_s = timeout_s

    async def generate(
        self,
        text: str,
        corpus_id: str,
        history: list[HistoryTurn] | None = None,
    ) -> GenerationOutcome:
        turns = list(history or [])
        turns = turns[-self.history_limit :] if self.history_limit else []
        try:
            raw = await asyncio.wait_for(
                self.backend.generate(
                    instructions=self.instructions,
                    history=turns,
                    user_text=text,
                    corpus_id=corpus_id,
                    max_output_tokens=self.max_output_tokens,
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            return self._backend_error({"type": "timeout", "timeout_s": self.timeout_s})
        except GenerationBackendError as exc:
            return self._backend_error({"message": str(exc), **exc.detail})
        except Exception as exc:
            return self._backend_error(summarize_backend_error(exc))

        outcome = interpret_backend_response(raw)
        self.logger.info(
            "Generation finished.",
            status=outcome.status.value,
            response_id=outcome.response_id,
            input_tokens=outcome.usage.input_tokens if outcome.usage else None,
            output_tokens=outcome.usage.output_tokens if outcome.usage else None,
            history_turns=len(turns),
        )
        return outcome

    def _backend_error(self, detail: dict[str, Any]) -> GenerationOutcome:
        self.logger.error(
            "Generation backend call failed.",
            failure_source=BACKEND_FAILURE,
            **{f"backend_{k}": v for k, v in detail.items()},
        )
        return GenerationOutcome(status=OutcomeStatus.BACKEND_ERROR, error_detail=detail)


def interpret_backend_response(raw: Any) -> GenerationOutcome:
    text = response_text(raw)
    status = str(_field(raw, "status") or "")
    incomplete = _field(raw, "incomplete_details")
    incomplete_reason = str(_field(incomplete, "reason") or "") if incomplete is not None else ""
    usage = _usage(_field(raw, "usage"))
    response_id = _field(raw, "id")
    response_id = str(response_id) if response_id else None

    if text.strip():
        return GenerationOutcome(OutcomeStatus.OK, text=text, usage=usage, response_id=response_id)
    if status == "incomplete" and incomplete_reason in {"max_output_tokens", ""}:
        return GenerationOutcome(
            OutcomeStatus.TRUNCATED,
            usage=usage,
            response_id=response_id,
            error_detail={"status": status, "incomplete_reason": incomplete_reason or None},
        )
    if status == "completed":
        return GenerationOutcome(OutcomeStatus.EMPTY, usage=usage, response_id=response_id)

    error = _field(raw, "error")
    detail: dict[str, Any] = {"type": "unexpected_status", "status": status or None}
    if incomplete_reason:
        detail["incomplete_reason"] = incomplete_reason
    if error is not None:
        detail["code"] = _field(error, "code")
        detail["message"] = _field(error, "message")
    return GenerationOutcome(
        OutcomeStatus.BACKEND_ERROR,
        usage=usage,
        response_id=response_id,
        error_detail=detail,
    )


def response_text(raw: Any) -> str:
    out = _field(raw, "output_text")
    if isinstance(out, str):
        return out
    chunks: list[str] = []
    for item in _field(raw, "output") or []:
        for part in _field(item, "content") or []:
            text = _field(part, "text")
            if isinstance(text, str) and text:
                chunks.append(text)
    return "\n".join(chunks)


def summarize_backend_error(exc: BaseException) -> dict[str, Any]:
    detail: dict[str, Any] = {
        "type": type(exc).__name__,
        "message": (str(exc) or "unknown_error")[:500],
    }
    for attr in ("status_code", "code", "request_id"):
        value = getattr(exc, attr, None)
        if value is not None:
            detail[attr] = value
    return detail


def _usage(raw: Any) -> TokenUsage | None:
    if raw is None:
        return None
    try:
        return TokenUsage(
            input_tokens=int(_field(raw, "input_tokens") or 0),
            output_tokens=int(_field(raw, "output_tokens") or 0),
        )
    except (TypeError, ValueError):
        return None


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)
