"""
Key/value backends for chat state.

Both backends store JSON documents and emit storage-change events: every
watcher is told which key changed, except the watcher whose ``origin`` made
the write (a writer never hears about its own changes).

- SqlKeyValueStore: rows in ``kv_entries``; events are delivered in-process.
- RedisKeyValueStore: plain string keys; events travel over Redis pub/sub so
  other worker processes see them too.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from models import KvEntry


logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]

CHANGES_CHANNEL = os.getenv("KV_CHANGES_CHANNEL", "campus:kv:changes")


class KeyValueStore(ABC):
    """
    Base for the backends.

    ``write_lock`` is shared by every read-modify-write caller on this backend
    in the process. Callers holding it write with ``notify=False`` and call
    ``notify()`` once they have released it, so change listeners never run
    inside someone else's critical section.
    """

    def __init__(self) -> None:
        self._watchers: Dict[int, Tuple[Optional[str], ChangeListener]] = {}
        self._watch_lock = threading.Lock()
        self._next_token = 0
        self.write_lock = threading.RLock()

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, *, origin: Optional[str] = None, notify: bool = True) -> None:
        ...

    @abstractmethod
    def delete(self, key: str, *, origin: Optional[str] = None, notify: bool = True) -> None:
        ...

    @abstractmethod
    def notify(self, key: str, *, origin: Optional[str] = None) -> None:
        """Announce a change to ``key`` to every watcher except ``origin``."""

    def watch(self, callback: ChangeListener, *, origin: Optional[str] = None) -> Callable[[], None]:
        with self._watch_lock:
            token = self._next_token
            self._next_token += 1
            self._watchers[token] = (origin, callback)

        def unwatch() -> None:
            with self._watch_lock:
                self._watchers.pop(token, None)

        return unwatch

    def close(self) -> None:
        with self._watch_lock:
            self._watchers.clear()

    def _emit(self, key: str, origin: Optional[str]) -> None:
        with self._watch_lock:
            targets = [cb for (o, cb) in self._watchers.values() if origin is None or o != origin]
        for cb in targets:
            try:
                cb(key)
            except Exception:
                logger.exception("Storage change listener failed for key %s", key)


class SqlKeyValueStore(KeyValueStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        super().__init__()
        self._session_factory = session_factory

    def get(self, key: str, default: Any = None) -> Any:
        with self._session_factory() as db:
            row = db.get(KvEntry, key)
            if row is None:
                return default
            return json.loads(row.value)

    def _upsert(self, key: str, doc: str) -> None:
        with self._session_factory() as db:
            row = db.get(KvEntry, key)
            if row is None:
                row = KvEntry(key=key, value=doc)
                db.add(row)
            else:
                row.value = doc
            row.updated_at = datetime.utcnow()
            db.commit()

    def set(self, key: str, value: Any, *, origin: Optional[str] = None, notify: bool = True) -> None:
        doc = json.dumps(value)
        try:
            self._upsert(key, doc)
        except IntegrityError:
            # Another writer inserted the row first; the retry updates it.
            self._upsert(key, doc)
        if notify:
            self.notify(key, origin=origin)

    def delete(self, key: str, *, origin: Optional[str] = None, notify: bool = True) -> None:
        with self._session_factory() as db:
            deleted = db.query(KvEntry).filter(KvEntry.key == key).delete()
            db.commit()
        if deleted and notify:
            self.notify(key, origin=origin)

    def notify(self, key: str, *, origin: Optional[str] = None) -> None:
        self._emit(key, origin)


class RedisKeyValueStore(KeyValueStore):
    def __init__(self, client: redis.Redis, *, prefix: str = "campus:") -> None:
        super().__init__()
        self._r = client
        self._prefix = prefix
        self._listener = None
        self._listener_lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._r.get(self._k(key))
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any, *, origin: Optional[str] = None, notify: bool = True) -> None:
        self._r.set(self._k(key), json.dumps(value))
        if notify:
            self.notify(key, origin=origin)

    def delete(self, key: str, *, origin: Optional[str] = None, notify: bool = True) -> None:
        if self._r.delete(self._k(key)) and notify:
            self.notify(key, origin=origin)

    def notify(self, key: str, *, origin: Optional[str] = None) -> None:
        self._publish(key, origin)

    def watch(self, callback: ChangeListener, *, origin: Optional[str] = None) -> Callable[[], None]:
        unwatch = super().watch(callback, origin=origin)
        self._ensure_listener()
        return unwatch

    def close(self) -> None:
        super().close()
        with self._listener_lock:
            if self._listener is not None:
                self._listener.stop()
                self._listener = None

    def _publish(self, key: str, origin: Optional[str]) -> None:
        # Local watchers are reached through our own subscription as well.
        self._r.publish(CHANGES_CHANNEL, json.dumps({"key": key, "origin": origin}))

    def _ensure_listener(self) -> None:
        with self._listener_lock:
            if self._listener is not None:
                return
            pubsub = self._r.pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(**{CHANGES_CHANNEL: self._on_message})
            self._listener = pubsub.run_in_thread(sleep_time=0.5, daemon=True)

    def _on_message(self, message: Dict[str, Any]) -> None:
        try:
            event = json.loads(message.get("data") or "{}")
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed storage event: %r", message)
            return
        key = event.get("key")
        if key:
            self._emit(str(key), event.get("origin"))


def build_kv_store(session_factory: sessionmaker) -> KeyValueStore:
    """Redis when REDIS_URL is set; otherwise the SQL table."""
    url = os.getenv("REDIS_URL")
    if url:
        logger.info("Chat storage backed by Redis")
        return RedisKeyValueStore.from_url(url)
    return SqlKeyValueStore(session_factory)
