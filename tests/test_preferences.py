import json
import os
from pathlib import Path

import pytest

from answerbot.services.errors import PersistenceError
from answerbot.services.preferences import (
    ChannelPreference,
    FilePreferencePersistence,
    PreferenceStore,
    UserPreference,
)


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.value = start

    def now(self) -> float:
        return self.value

    def advance(self, step: float) -> None:
        self.value += step


class FakeLogger:
    def __init__(self):
        self.errors: list[str] = []
        self.infos: list[str] = []

    def debug(self, *_args, **_kwargs):
        return None

    def info(self, message: str, **_kwargs):
        self.infos.append(message)

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, message: str, **_kwargs):
        self.errors.append(message)


class FailingWritePersistence(FilePreferencePersistence):
    def write(self, key: str, data: bytes) -> None:
        raise PersistenceError("disk full")


def _store(tmp_path: Path, clock: FakeClock | None = None, **kwargs) -> PreferenceStore:
    clock = clock or FakeClock()
    return PreferenceStore(
        FilePreferencePersistence(tmp_path),
        FakeLogger(),
        check_interval_ms=kwargs.pop("check_interval_ms", 5000),
        clock=clock.now,
        **kwargs,
    )


def test_user_default_is_silenced_unless_ambient_mode(tmp_path: Path):
    store = _store(tmp_path / "a")
    assert store.get_user("u1").silenced is True

    ambient = _store(tmp_path / "b", ambient_enabled=True)
    pref = ambient.get_user("u1")
    assert isinstance(pref, UserPreference)
    assert pref.silenced is False
    assert pref.custom_cooldown_seconds is None
    assert pref.last_response_at == {}


def test_channel_default_is_unsubscribed_and_not_stored(tmp_path: Path):
    store = _store(tmp_path)
    pref = store.get_channel("c1")
    assert pref == ChannelPreference(channel_id="c1")
    assert store.all("channel") == {}


def test_update_persists_document(tmp_path: Path):
    store = _store(tmp_path)
    store.update("channel", "c1", {"subscribed": True, "corpus_id": "vs_abc"})
    store.update("user", "u1", {"silenced": False, "custom_cooldown_seconds": 60})

    channels = json.loads((tmp_path / "channels.json").read_text(encoding="utf-8"))
    assert channels["channels"]["c1"]["subscribed"] is True
    assert channels["channels"]["c1"]["corpus_id"] == "vs_abc"
    users = json.loads((tmp_path / "users.json").read_text(encoding="utf-8"))
    assert users["users"]["u1"]["custom_cooldown_seconds"] == 60

    reloaded = _store(tmp_path)
    assert reloaded.get_channel("c1").corpus_id == "vs_abc"
    assert reloaded.get_user("u1").silenced is False


def test_update_rejects_unknown_fields(tmp_path: Path):
    store = _store(tmp_path)
    with pytest.raises(KeyError):
        store.update("user", "u1", {"favourite_colour": "blue"})


def test_external_edit_is_picked_up_after_check_interval(tmp_path: Path):
    clock = FakeClock()
    store = _store(tmp_path, clock=clock)
    store.update("channel", "c1", {"subscribed": True})

    path = tmp_path / "channels.json"
    path.write_text(
        json.dumps({"channels": {"c1": {"subscribed": True, "corpus_id": "vs_new"}}}),
        encoding="utf-8",
    )
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

    clock.advance(1)
    assert store.get_channel("c1").corpus_id is None

    clock.advance(5)
    assert store.get_channel("c1").corpus_id == "vs_new"


def test_corrupt_document_is_backed_up_and_defaults_are_served(tmp_path: Path):
    tmp_path.mkdir(parents=True, exist_ok=True)
    (tmp_path / "users.json").write_text("{not json", encoding="utf-8")
    logger = FakeLogger()
    store = PreferenceStore(
        FilePreferencePersistence(tmp_path, wall_clock=lambda: 1700000000.0),
        logger,
        clock=FakeClock().now,
    )

    pref = store.get_user("u1")
    assert pref.silenced is True
    assert "Failed to load preference document." in logger.errors
    assert (tmp_path / "users.json.backup.1700000000000").read_text(encoding="utf-8") == "{not json"


def test_write_failure_keeps_in_memory_value(tmp_path: Path):
    logger = FakeLogger()
    store = PreferenceStore(FailingWritePersistence(tmp_path), logger, clock=FakeClock().now)

    pref = store.update("user", "u1", {"silenced": False})
    assert pref.silenced is False
    assert store.get_user("u1").silenced is False
    assert any("continuing with in-memory cache" in e for e in logger.errors)


def test_record_response_and_delete(tmp_path: Path):
    store = _store(tmp_path)
    store.record_response("u1", "c1", 123.5)
    assert store.get_user("u1").last_response_at == {"c1": 123.5}

    store.update("channel", "c1", {"subscribed": True})
    assert store.delete("channel", "c1") is True
    assert store.delete("channel", "c1") is False
    assert store.get_channel("c1").subscribed is False
