from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from .preferences import PreferenceStore


class CooldownEngine:
    """Per-(channel, user) throttle for unsolicited replies.

    Last-response timestamps live on the user's preference record, so the
    throttle survives restarts wherever the preference store does.
    """

    def __init__(
        self,
        preferences: PreferenceStore,
        default_cooldown_seconds: int,
        logger: Any,
        clock: Callable[[], float] | None = None,
    ):
        self.preferences = preferences
        self.default_cooldown_seconds = max(0, int(default_cooldown_seconds))
        self.logger = logger
        self.clock = clock or time.time

    def allowed(self, channel_id: str, user_id: str) -> bool:
        pref = self.preferences.get_user(user_id)
        last = pref.last_response_at.get(channel_id)
        if last is None:
            return True
        threshold = self.threshold_for(pref.custom_cooldown_seconds)
        if threshold == 0:
            return True
        elapsed = float(self.clock()) - last
        allowed = elapsed >= threshold
        self.logger.debug(
            "Cooldown check.",
            channel_id=channel_id,
            user_id=user_id,
            elapsed_s=round(elapsed, 3),
            threshold_s=threshold,
            allowed=allowed,
        )
        return allowed

    def record_response(self, channel_id: str, user_id: str) -> None:
        self.preferences.record_response(user_id, channel_id, float(self.clock()))

    def threshold_for(self, custom_cooldown_seconds: int | None) -> int:
        if custom_cooldown_seconds is None:
            return self.default_cooldown_seconds
        return max(0, int(custom_cooldown_seconds))
