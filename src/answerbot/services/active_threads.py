from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

from .state_store import StateStore, build_key

ACTIVE_THREAD_TTL_SECONDS = 2 * 60 * 60


class ActiveConversationTracker:
    """Threads the assistant recently replied in.

    A live record is the only signal that an unaddressed follow-up inside a
    thread should be answered. Checks fail closed; marks fail open.
    """

    def __init__(
        self,
        store: StateStore,
        logger: Any,
        ttl_seconds: int = ACTIVE_THREAD_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
    ):
        self.store = store
        self.logger = logger
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.clock = clock or time.time

    async def is_active(self, channel_id: str, thread_root: str) -> bool:
        key = thread_key(channel_id, thread_root)
        try:
            raw = await self.store.get(key)
        except Exception as exc:
            self.logger.error(
                "Active-thread check failed; treating thread as inactive.",
                channel_id=channel_id,
                thread_root=thread_root,
                error=str(exc),
            )
            return False
        if raw is None:
            return False
        try:
            last_activity = float(raw)
        except ValueError:
            self.logger.error(
                "Unreadable active-thread record; treating thread as inactive.",
                channel_id=channel_id,
                thread_root=thread_root,
                value=raw,
            )
            return False
        # A shared store expires keys itself; this guards stores that only sweep.
        return float(self.clock()) - last_activity <= self.ttl_seconds

    async def mark_active(self, channel_id: str, thread_root: str) -> bool:
        key = thread_key(channel_id, thread_root)
        try:
            await self.store.set(key, str(float(self.clock())), ttl_seconds=self.ttl_seconds)
        except Exception as exc:
            self.logger.error(
                "Failed to mark thread active.",
                channel_id=channel_id,
                thread_root=thread_root,
                error=str(exc),
            )
            return False
        self.logger.debug(
            "Marked thread active.",
            channel_id=channel_id,
            thread_root=thread_root,
            ttl_s=self.ttl_seconds,
        )
        return True

    async def forget(self, channel_id: str, thread_root: str) -> bool:
        try:
            return await self.store.delete(thread_key(channel_id, thread_root))
        except Exception as exc:
            self.logger.error(
                "Failed to forget active thread.",
                channel_id=channel_id,
                thread_root=thread_root,
                error=str(exc),
            )
            return False

    async def run_sweeper(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                removed = await self.store.sweep()
            except Exception as exc:
                self.logger.warning("Active-thread sweep failed.", error=str(exc))
                continue
            if removed:
                self.logger.debug("Swept expired active threads.", removed=removed)


def thread_key(channel_id: str, thread_root: str) -> str:
    return build_key("thread", channel_id, thread_root)
