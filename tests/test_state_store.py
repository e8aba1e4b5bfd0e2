from answerbot.services.active_threads import ActiveConversationTracker, thread_key
from answerbot.services.state_store import InMemoryStateStore, RedisStateStore, build_key


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.value = start

    def now(self) -> float:
        return self.value

    def advance(self, step: float) -> None:
        self.value += step


class FakeLogger:
    def __init__(self):
        self.errors: list[str] = []

    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, message: str, **_kwargs):
        self.errors.append(message)


class FakeRedis:
    def __init__(self):
        self.values: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.closed = False

    async def get(self, key: str):
        return self.values.get(key)

    async def set(self, key: str, value: str, ex: int | None = None):
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = ex

    async def delete(self, key: str):
        return 1 if self.values.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


class BrokenStore:
    async def get(self, key: str):
        raise ConnectionError("store unreachable")

    async def set(self, key: str, value: str, ttl_seconds: int | None = None):
        raise ConnectionError("store unreachable")

    async def delete(self, key: str):
        raise ConnectionError("store unreachable")

    async def sweep(self):
        return 0


async def test_in_memory_store_hides_and_sweeps_expired_keys():
    clock = FakeClock()
    store = InMemoryStateStore(clock=clock.now)
    await store.set("a", "1", ttl_seconds=10)
    await store.set("b", "2")

    clock.advance(9)
    assert await store.get("a") == "1"

    clock.advance(1)
    assert await store.get("a") == "1"

    clock.advance(1)
    assert await store.get("a") is None
    await store.set("c", "3", ttl_seconds=5)
    clock.advance(5)
    assert await store.sweep() == 0
    clock.advance(1)
    assert await store.sweep() == 1
    assert len(store) == 1
    assert await store.get("b") == "2"


async def test_in_memory_store_delete_reports_existence():
    store = InMemoryStateStore()
    await store.set("k", "v")
    assert await store.delete("k") is True
    assert await store.delete("k") is False


async def test_redis_store_prefixes_keys_and_sets_native_expiry():
    client = FakeRedis()
    store = RedisStateStore(client, key_prefix="answerbot:")
    await store.set("thread:c1:t1", "5.0", ttl_seconds=7200)

    assert client.values == {"answerbot:thread:c1:t1": "5.0"}
    assert client.expiry == {"answerbot:thread:c1:t1": 7200}
    assert await store.get("thread:c1:t1") == "5.0"
    assert await store.sweep() == 0
    assert await store.delete("thread:c1:t1") is True

    await store.close()
    assert client.closed


def test_build_key():
    assert build_key("thread", "c1", "t1") == "thread:c1:t1"
    assert thread_key("c1", "t1") == "thread:c1:t1"


async def test_active_thread_expires_after_ttl():
    clock = FakeClock()
    store = InMemoryStateStore(clock=clock.now)
    tracker = ActiveConversationTracker(store, FakeLogger(), ttl_seconds=7200, clock=clock.now)

    assert not await tracker.is_active("c1", "t1")
    assert await tracker.mark_active("c1", "t1")

    clock.advance(30 * 60)
    assert await tracker.is_active("c1", "t1")

    clock.advance(3 * 60 * 60)
    assert not await tracker.is_active("c1", "t1")


async def test_active_thread_check_guards_stores_without_native_expiry():
    clock = FakeClock()
    store = InMemoryStateStore(clock=clock.now)
    tracker = ActiveConversationTracker(store, FakeLogger(), ttl_seconds=60, clock=clock.now)

    # Recorded without a TTL, so only the tracker's own age check can expire it.
    await store.set(thread_key("c1", "t1"), str(clock.now()))
    clock.advance(61)
    assert not await tracker.is_active("c1", "t1")


async def test_active_thread_mark_refreshes_activity():
    clock = FakeClock()
    store = InMemoryStateStore(clock=clock.now)
    tracker = ActiveConversationTracker(store, FakeLogger(), ttl_seconds=100, clock=clock.now)

    await tracker.mark_active("c1", "t1")
    clock.advance(80)
    await tracker.mark_active("c1", "t1")
    clock.advance(80)
    assert await tracker.is_active("c1", "t1")


async def test_active_thread_check_fails_closed_and_mark_fails_open():
    logger = FakeLogger()
    tracker = ActiveConversationTracker(BrokenStore(), logger)

    assert await tracker.is_active("c1", "t1") is False
    assert await tracker.mark_active("c1", "t1") is False
    assert await tracker.forget("c1", "t1") is False
    assert len(logger.errors) == 3


async def test_store_and_tracker_agree_at_exactly_the_ttl():
    clock = FakeClock()
    store = InMemoryStateStore(clock=clock.now)
    tracker = ActiveConversationTracker(store, FakeLogger(), ttl_seconds=100, clock=clock.now)
    await tracker.mark_active("c1", "t1")

    clock.advance(100)
    assert await tracker.is_active("c1", "t1")
    assert await store.sweep() == 0

    clock.advance(0.5)
    assert not await tracker.is_active("c1", "t1")


async def test_unreadable_activity_record_is_treated_as_inactive():
    clock = FakeClock()
    logger = FakeLogger()
    store = InMemoryStateStore(clock=clock.now)
    tracker = ActiveConversationTracker(store, logger, ttl_seconds=100, clock=clock.now)
    await store.set(thread_key("c1", "t1"), "not-a-timestamp", ttl_seconds=100)

    assert await tracker.is_active("c1", "t1") is False
    assert logger.errors == ["Unreadable active-thread record; treating thread as inactive."]
