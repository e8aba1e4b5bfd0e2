from __future__ import annotations

import copy
import json
import os
import re
import shutil
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Protocol

from .errors import PersistenceError

PreferenceKind = Literal["user", "channel"]

_DOCUMENT_KEYS: dict[str, str] = {"user": "users", "channel": "channels"}


@dataclass(slots=True)
class UserPreference:
    user_id: str
    silenced: bool
    custom_cooldown_seconds: int | None = None
    last_response_at: dict[str, float] = field(default_factory=dict)
    updated_at: str = ""


@dataclass(slots=True)
class ChannelPreference:
    channel_id: str
    subscribed: bool = False
    corpus_id: str | None = None
    updated_at: str = ""


Preference = UserPreference | ChannelPreference


class PreferencePersistence(Protocol):
    def read(self, key: str) -> bytes | None: ...

    def write(self, key: str, data: bytes) -> None: ...

    def last_modified(self, key: str) -> float | None: ...

    def backup(self, key: str) -> str | None: ...


class FilePreferencePersistence:
    def __init__(self, base_dir: str | Path, wall_clock: Callable[[], float] | None = None):
        self.base_dir = Path(base_dir)
        self.wall_clock = wall_clock or time.time

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^a-zA-Z0-9._-]", "_", key)
        return self.base_dir / f"{safe}.json"

    def read(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"failed to read {path}: {exc}") from exc

    def write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("wb") as tmp_file:
                tmp_file.write(data)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            raise PersistenceError(f"failed to write {path}: {exc}") from exc
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    def last_modified(self, key: str) -> float | None:
        try:
            return float(self._path(key).stat().st_mtime_ns)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"failed to stat {key}: {exc}") from exc

    def backup(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        target = path.with_name(f"{path.name}.backup.{int(self.wall_clock() * 1000)}")
        try:
            shutil.copyfile(path, target)
        except OSError as exc:
            raise PersistenceError(f"failed to back up {path}: {exc}") from exc
        return str(target)


@dataclass(slots=True)
class _Document:
    key: str
    data: dict[str, dict[str, Any]] | None = None
    last_modified: float | None = None
    last_check_at: float | None = None


class PreferenceStore:
    """Cached per-user and per-channel settings over a key/value persistence.

    Reads are served from memory. The backing document is re-read only when a
    throttled modification check sees a new timestamp. Read and write failures
    are logged and degrade to defaults or to the in-memory copy; they never
    propagate to callers.
    """

    def __init__(
        self,
        persistence: PreferencePersistence,
        logger: Any,
        ambient_enabled: bool = False,
        check_interval_ms: int = 5000,
        clock: Callable[[], float] | None = None,
    ):
        self.persistence = persistence
        self.logger = logger
        self.ambient_enabled = ambient_enabled
        self.check_interval_s = max(check_interval_ms, 0) / 1000.0
        self.clock = clock or time.monotonic
        self._lock = threading.RLock()
        self._documents = {
            kind: _Document(key=doc_key) for kind, doc_key in _DOCUMENT_KEYS.items()
        }

    def get(self, kind: PreferenceKind, item_id: str) -> Preference:
        with self._lock:
            records = self._load(kind)
            raw = records.get(item_id)
            if raw is None:
                if kind == "channel":
                    return ChannelPreference(channel_id=item_id)
                raw = self._default_record(kind)
                records[item_id] = raw
            return self._to_preference(kind, item_id, raw)

    def update(
        self, kind: PreferenceKind, item_id: str, changes: dict[str, Any]
    ) -> Preference:
        allowed = _mutable_fields(kind)
        unknown = sorted(set(changes) - allowed)
        if unknown:
            raise KeyError(f"unknown {kind} preference fields: {', '.join(unknown)}")
        with self._lock:
            records = self._load(kind)
            current = dict(records.get(item_id) or self._default_record(kind))
            current.update(copy.deepcopy(changes))
            current["updated_at"] = now_iso()
            records[item_id] = current
            self._save(kind)
            return self._to_preference(kind, item_id, current)

    def delete(self, kind: PreferenceKind, item_id: str) -> bool:
        with self._lock:
            records = self._load(kind)
            existed = records.pop(item_id, None) is not None
            self._save(kind)
            return existed

    def all(self, kind: PreferenceKind) -> dict[str, Preference]:
        with self._lock:
            records = self._load(kind)
            return {
                item_id: self._to_preference(kind, item_id, raw)
                for item_id, raw in records.items()
            }

    def get_user(self, user_id: str) -> UserPreference:
        pref = self.get("user", user_id)
        assert isinstance(pref, UserPreference)
        return pref

    def get_channel(self, channel_id: str) -> ChannelPreference:
        pref = self.get("channel", channel_id)
        assert isinstance(pref, ChannelPreference)
        return pref

    def record_response(self, user_id: str, channel_id: str, timestamp: float) -> None:
        with self._lock:
            records = self._load("user")
            current = dict(records.get(user_id) or self._default_record("user"))
            times = dict(current.get("last_response_at") or {})
            times[channel_id] = float(timestamp)
            current["last_response_at"] = times
            current["updated_at"] = now_iso()
            records[user_id] = current
            self._save("user")

    def _default_record(self, kind: str) -> dict[str, Any]:
        if kind == "user":
            return {
                "silenced": not self.ambient_enabled,
                "custom_cooldown_seconds": None,
                "last_response_at": {},
                "updated_at": now_iso(),
            }
        return {"subscribed": False, "corpus_id": None, "updated_at": now_iso()}

    def _load(self, kind: str) -> dict[str, dict[str, Any]]:
        doc = self._documents[kind]
        now = float(self.clock())
        due = (
            doc.data is None
            or doc.last_check_at is None
            or now - doc.last_check_at >= self.check_interval_s
        )
        if not due:
            assert doc.data is not None
            return doc.data

        doc.last_check_at = now
        modified: float | None = None
        try:
            modified = self.persistence.last_modified(doc.key)
            if modified is None:
                if doc.data is None:
                    doc.data = {}
                    self._save(kind)
                    self.logger.info("Created preference document.", document=doc.key)
            elif doc.data is None or modified != doc.last_modified:
                doc.data = _parse_document(self.persistence.read(doc.key), doc.key)
                doc.last_modified = modified
                self.logger.info("Loaded preference document.", document=doc.key)
        except (PersistenceError, ValueError) as exc:
            self.logger.error(
                "Failed to load preference document.",
                document=doc.key,
                error=str(exc),
            )
            self._backup_corrupted(doc.key)
            # Remember the broken version so it is not backed up again on every check.
            doc.last_modified = modified
            if doc.data is None:
                doc.data = {}
        assert doc.data is not None
        return doc.data

    def _backup_corrupted(self, key: str) -> None:
        try:
            target = self.persistence.backup(key)
        except PersistenceError as exc:
            self.logger.error("Failed to back up preference document.", document=key, error=str(exc))
            return
        if target:
            self.logger.info("Backed up corrupted preference document.", document=key, backup=target)

    def _save(self, kind: str) -> None:
        doc = self._documents[kind]
        payload = {doc.key: doc.data or {}}
        data = (json.dumps(payload, ensure_ascii=False, indent=2) + "\n").encode("utf-8")
        try:
            self.persistence.write(doc.key, data)
            doc.last_modified = self.persistence.last_modified(doc.key)
        except PersistenceError as exc:
            self.logger.error(
                "Failed to save preference document; continuing with in-memory cache.",
                document=doc.key,
                error=str(exc),
            )

    def _to_preference(self, kind: str, item_id: str, raw: dict[str, Any]) -> Preference:
        if kind == "user":
            return UserPreference(
                user_id=item_id,
                silenced=bool(raw.get("silenced", not self.ambient_enabled)),
                custom_cooldown_seconds=_optional_int(raw.get("custom_cooldown_seconds")),
                last_response_at=_timestamps(raw.get("last_response_at")),
                updated_at=str(raw.get("updated_at") or ""),
            )
        corpus_id = str(raw.get("corpus_id") or "").strip()
        return ChannelPreference(
            channel_id=item_id,
            subscribed=raw.get("subscribed") is True,
            corpus_id=corpus_id or None,
            updated_at=str(raw.get("updated_at") or ""),
        )


def _mutable_fields(kind: str) -> set[str]:
    cls = UserPreference if kind == "user" else ChannelPreference
    return {f.name for f in fields(cls)} - {"user_id", "channel_id", "updated_at"}


def _parse_document(raw: bytes | None, key: str) -> dict[str, dict[str, Any]]:
    if raw is None:
        return {}
    parsed = json.loads(raw.decode("utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError(f"preference document {key} is not an object")
    records = parsed.get(key, {})
    if not isinstance(records, dict):
        raise ValueError(f"preference document {key} has a malformed '{key}' section")
    return {str(k): dict(v) for k, v in records.items() if isinstance(v, dict)}


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return None


def _timestamps(value: Any) -> dict[str, float]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, float] = {}
    for channel_id, ts in value.items():
        try:
            out[str(channel_id)] = float(ts)
        except (TypeError, ValueError):
            continue
    return out


def now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
