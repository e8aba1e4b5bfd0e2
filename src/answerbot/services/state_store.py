from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as redis


class StateStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def sweep(self) -> int: ...


@dataclass(slots=True)
class _Entry:
    value: str
    expires_at: float | None


class InMemoryStateStore:
    """Single-process store; expired keys are hidden on read and removed by `sweep`."""

    def __init__(self, clock: Callable[[], float] | None = None):
        self.clock = clock or time.time
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> str | None:
        now = float(self.clock())
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at is not None and now > entry.expires_at:
                self._entries.pop(key, None)
                return None
            return entry.value

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = float(self.clock()) + max(0, int(ttl_seconds))
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def sweep(self) -> int:
        now = float(self.clock())
        with self._lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if entry.expires_at is not None and now > entry.expires_at
            ]
            for key in stale:
                self._entries.pop(key, None)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisStateStore:
    """Shared store; Redis expires keys natively so `sweep` has nothing to do."""

    def __init__(self, client: Any, key_prefix: str = ""):
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "") -> RedisStateStore:
        return cls(redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> str | None:
        value = await self.client.get(self._key(key))
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="ignore")
        return str(value)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        if ttl_seconds is None:
            await self.client.set(self._key(key), value)
            return
        await self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._key(key)))

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        await self.client.aclose()


def build_key(*parts: str) -> str:
    return ":".join(str(p) for p in parts)
