from __future__ import annotations

import logging
import math
import secrets
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from errors import ValidationError
from utils.chat_storage import ChatStorage
from utils.chat_types import MEDIA_KINDS, ChatMessage, MessageKind, PollData, SlowModeSettings, UserType
from utils.kv_store import KeyValueStore


logger = logging.getLogger(__name__)

SLOW_MODE_MIN_SECONDS = 5
SLOW_MODE_MAX_SECONDS = 60


def slow_mode_key(scope: str) -> str:
    return f"slowmode:{scope}"


class SlowModeStore:
    """Per-scope slow-mode settings, shared by every session on the backend."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def get(self, scope: str) -> SlowModeSettings:
        data = self._kv.get(slow_mode_key(scope))
        if not data:
            return SlowModeSettings()
        return SlowModeSettings.model_validate(data)

    def save(self, scope: str, settings: SlowModeSettings) -> None:
        self._kv.set(slow_mode_key(scope), settings.model_dump(mode="json"))

    def configure(
        self,
        scope: str,
        *,
        enabled: Optional[bool] = None,
        interval_seconds: Optional[int] = None,
    ) -> SlowModeSettings:
        if interval_seconds is not None and not (
            SLOW_MODE_MIN_SECONDS <= interval_seconds <= SLOW_MODE_MAX_SECONDS
        ):
            raise ValidationError(
                f"Slow mode interval must be between {SLOW_MODE_MIN_SECONDS} and {SLOW_MODE_MAX_SECONDS} seconds"
            )
        with self._lock:
            settings = self.get(scope)
            update = {}
            if enabled is not None:
                update["enabled"] = bool(enabled)
            if interval_seconds is not None:
                update["interval_seconds"] = int(interval_seconds)
            settings = settings.model_copy(update=update)
            self.save(scope, settings)
        logger.info("Slow mode for %s: enabled=%s interval=%ss", scope, settings.enabled, settings.interval_seconds)
        return settings


class ChatSession:
    """One user's view of one chat: sending, slow mode and poll votes."""

    def __init__(
        self,
        storage: ChatStorage,
        slow_modes: SlowModeStore,
        *,
        user_id: str,
        user_name: str,
        user_type: UserType,
        scope: str,
        region: Optional[str] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.storage = storage
        self.slow_modes = slow_modes
        self.user_id = str(user_id)
        self.user_name = user_name
        self.user_type = UserType(user_type)
        self.scope = scope
        self.region = region
        self._now = now

    def _elapsed(self, settings: SlowModeSettings) -> Optional[float]:
        last = settings.last_message_time.get(self.user_id)
        if last is None:
            return None
        return (self._now() - last).total_seconds()

    def can_send(self, settings: Optional[SlowModeSettings] = None) -> bool:
        settings = settings or self.slow_modes.get(self.scope)
        if not settings.enabled:
            return True
        elapsed = self._elapsed(settings)
        return elapsed is None or elapsed >= settings.interval_seconds

    def slow_mode_remaining(self) -> int:
        settings = self.slow_modes.get(self.scope)
        if not settings.enabled:
            return 0
        elapsed = self._elapsed(settings)
        if elapsed is None:
            return 0
        return max(0, math.ceil(settings.interval_seconds - elapsed))

    def slow_mode(self) -> SlowModeSettings:
        return self.slow_modes.get(self.scope)

    def set_slow_mode(
        self,
        *,
        enabled: Optional[bool] = None,
        interval_seconds: Optional[int] = None,
    ) -> SlowModeSettings:
        return self.slow_modes.configure(self.scope, enabled=enabled, interval_seconds=interval_seconds)

    def _new_id(self, now: datetime) -> str:
        return f"{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"

    def send(
        self,
        text: str,
        kind: MessageKind = MessageKind.text,
        media_url: Optional[str] = None,
        poll_data: Optional[PollData] = None,
    ) -> Optional[ChatMessage]:
        """Post a message; returns None (without raising) while slow mode blocks the user."""
        kind = MessageKind(kind)
        text = (text or "").strip()
        media_url = (media_url or "").strip() or None
        if kind == MessageKind.text and not text:
            raise ValidationError("Message required")
        if kind in MEDIA_KINDS and not media_url:
            raise ValidationError("Media URL required")
        if kind == MessageKind.poll:
            if poll_data is None or not poll_data.question or len(poll_data.options) < 2:
                raise ValidationError("A poll needs a question and at least two options")

        with self.slow_modes.locked():
            settings = self.slow_modes.get(self.scope)
            if not self.can_send(settings):
                logger.debug("Slow mode blocked %s in %s", self.user_id, self.scope)
                return None

            now = self._now()
            message = ChatMessage(
                id=self._new_id(now),
                user_id=self.user_id,
                user_name=self.user_name,
                user_type=self.user_type,
                text=text,
                timestamp=now,
                kind=kind,
                media_url=media_url,
                poll_data=poll_data if kind == MessageKind.poll else None,
                region=self.region,
            )
            self.storage.add_message(self.scope, message, self.region)

            if settings.enabled:
                settings.last_message_time[self.user_id] = now
                self.slow_modes.save(self.scope, settings)

        self.storage.touch_presence(self.scope, self.user_id, self.region)
        return message

    def vote_poll(self, message_id: str, option_id: str) -> Optional[ChatMessage]:
        user_id = self.user_id

        def apply_vote(msg: ChatMessage) -> ChatMessage:
            if msg.poll_data is None:
                return msg
            poll = msg.poll_data.with_vote(user_id, option_id)
            if poll is msg.poll_data:
                return msg
            return msg.model_copy(update={"poll_data": poll})

        return self.storage.update_message(self.scope, message_id, apply_vote, self.region)

    def messages(self) -> List[ChatMessage]:
        return self.storage.get_messages(self.scope, self.region)

    def online_count(self) -> int:
        return self.storage.get_online_count(self.scope, self.region)

    def touch(self) -> None:
        self.storage.touch_presence(self.scope, self.user_id, self.region)
