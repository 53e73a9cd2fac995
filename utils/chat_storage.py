"""
Ordered chat logs per (scope, region) with change subscriptions.

Each storage instance plays the part of one browser tab: it persists through
a shared key/value backend and re-notifies its own subscribers when another
instance (or another process) writes a key they follow.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from utils.chat_types import ChatMessage
from utils.kv_store import KeyValueStore


logger = logging.getLogger(__name__)

CHAT_MAX_MESSAGES = int(os.getenv("CHAT_MAX_MESSAGES", "500"))
PRESENCE_WINDOW = timedelta(minutes=2)
PRESENCE_THROTTLE = timedelta(seconds=30)

Subscriber = Callable[[List[ChatMessage]], None]
Mutator = Callable[[ChatMessage], ChatMessage]


def _suffix(scope: str, region: Optional[str]) -> str:
    region = (region or "").strip()
    return f"{scope}:{region}" if region else scope


def chat_key(scope: str, region: Optional[str] = None) -> str:
    return f"chat:{_suffix(scope, region)}"


def presence_key(scope: str, region: Optional[str] = None) -> str:
    return f"presence:{_suffix(scope, region)}"


class ChatStorage:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        max_messages: int = CHAT_MAX_MESSAGES,
        now: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._kv = kv
        self._max_messages = max(1, max_messages)
        self._now = now
        self._origin = uuid.uuid4().hex
        # Shared with every other storage on the same backend.
        self._lock = kv.write_lock
        self._subs_lock = threading.Lock()
        self._subscribers: Dict[str, Dict[int, Subscriber]] = defaultdict(dict)
        self._next_token = 0
        self._dirty: Set[str] = set()
        self._delivering: Set[str] = set()
        self._unwatch = kv.watch(self._on_storage_change, origin=self._origin)

    def close(self) -> None:
        self._unwatch()
        with self._subs_lock:
            self._subscribers.clear()

    # -- persistence -------------------------------------------------------

    def _load(self, key: str) -> List[ChatMessage]:
        return [ChatMessage.model_validate(d) for d in (self._kv.get(key) or [])]

    def _save(self, key: str, messages: List[ChatMessage]) -> None:
        # Listeners are told in _changed(), after the write lock is released.
        self._kv.set(key, [m.model_dump(mode="json") for m in messages], origin=self._origin, notify=False)

    def _changed(self, key: str) -> None:
        self._kv.notify(key, origin=self._origin)
        self._notify(key)

    # -- messages ----------------------------------------------------------

    def get_messages(self, scope: str, region: Optional[str] = None) -> List[ChatMessage]:
        return self._load(chat_key(scope, region))

    def add_message(self, scope: str, message: ChatMessage, region: Optional[str] = None) -> None:
        key = chat_key(scope, region)
        with self._lock:
            messages = self._load(key)
            messages.append(message)
            if len(messages) > self._max_messages:
                messages = messages[-self._max_messages:]
            self._save(key, messages)
        self._changed(key)

    def update_message(
        self,
        scope: str,
        message_id: str,
        mutator: Mutator,
        region: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        """Replace one message with ``mutator(message)``; returns the stored result.

        Load, transform and save happen under the backend's write lock so
        concurrent updates in this process cannot overwrite each other.
        """
        key = chat_key(scope, region)
        with self._lock:
            messages = self._load(key)
            for i, current in enumerate(messages):
                if current.id == message_id:
                    break
            else:
                return None
            updated = mutator(current)
            if updated == current:
                return current
            messages[i] = updated
            self._save(key, messages)
        self._changed(key)
        return updated

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, scope: str, callback: Subscriber, region: Optional[str] = None) -> Callable[[], None]:
        key = chat_key(scope, region)
        with self._subs_lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[key][token] = callback

        def unsubscribe() -> None:
            with self._subs_lock:
                subs = self._subscribers.get(key)
                if subs is None:
                    return
                subs.pop(token, None)
                if not subs:
                    self._subscribers.pop(key, None)

        return unsubscribe

    def subscriber_count(self, scope: str, region: Optional[str] = None) -> int:
        with self._subs_lock:
            return len(self._subscribers.get(chat_key(scope, region), {}))

    def _notify(self, key: str) -> None:
        """
        Deliver the current list for ``key`` to its subscribers.

        Deliveries for one key never overlap: a change that arrives while
        another thread (or a subscriber callback) is delivering only marks the
        key dirty, and the running delivery reloads and goes round again. The
        last list every subscriber receives is therefore the stored one.
        """
        with self._subs_lock:
            if not self._subscribers.get(key):
                return
            self._dirty.add(key)
            if key in self._delivering:
                return
            self._delivering.add(key)
        try:
            while True:
                with self._subs_lock:
                    if key not in self._dirty:
                        self._delivering.discard(key)
                        return
                    self._dirty.discard(key)
                    callbacks = list(self._subscribers.get(key, {}).values())
                messages = self._load(key)
                for cb in callbacks:
                    try:
                        cb(list(messages))
                    except Exception:
                        logger.exception("Chat subscriber failed for %s", key)
        except BaseException:
            with self._subs_lock:
                self._delivering.discard(key)
            raise

    def _on_storage_change(self, key: str) -> None:
        if key.startswith("chat:"):
            self._notify(key)

    # -- presence ----------------------------------------------------------

    def touch_presence(self, scope: str, user_id: str, region: Optional[str] = None) -> None:
        key = presence_key(scope, region)
        now = self._now()
        with self._lock:
            seen: Dict[str, str] = dict(self._kv.get(key) or {})
            last = seen.get(user_id)
            if last and now - datetime.fromisoformat(last) < PRESENCE_THROTTLE:
                return
            seen[user_id] = now.isoformat()
            seen = {
                uid: ts for uid, ts in seen.items()
                if now - datetime.fromisoformat(ts) <= PRESENCE_WINDOW
            }
            self._kv.set(key, seen, origin=self._origin, notify=False)

    def get_online_count(self, scope: str, region: Optional[str] = None) -> int:
        """Users seen in this chat during the last two minutes (best effort)."""
        seen = self._kv.get(presence_key(scope, region)) or {}
        now = self._now()
        return sum(1 for ts in seen.values() if now - datetime.fromisoformat(ts) <= PRESENCE_WINDOW)
