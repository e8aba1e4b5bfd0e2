from __future__ import annotations

from typing import Any


class AnswerBotError(RuntimeError):
    pass


class ConfigurationError(AnswerBotError):
    """Channel is not subscribed or has no corpus bound."""

    def __init__(self, reason: str, channel_id: str):
        super().__init__(f"{reason}: {channel_id}")
        self.reason = reason
        self.channel_id = channel_id


class GenerationBackendError(AnswerBotError):
    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = dict(detail or {})


class DeliveryError(AnswerBotError):
    def __init__(self, operation: str, cause: BaseException | None = None):
        message = f"{operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class PersistenceError(AnswerBotError):
    pass
