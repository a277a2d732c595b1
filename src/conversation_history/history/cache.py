from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from conversation_history.history.models import ConversationMessage, SessionMetadata

DEFAULT_TTL_SECONDS = 300.0


@dataclass
class CacheEntry:
    expires_at: float
    value: Any = None


@dataclass(frozen=True)
class CacheStats:
    message_entries: int
    metadata_entries: int
    total_sessions: int


def is_expired(entry: CacheEntry, now: float) -> bool:
    return now >= entry.expires_at


@dataclass
class MessageCache:
    """TTL-bounded cache of parsed messages and metadata, keyed by session id.

    Message lists and metadata expire independently: writing one never extends
    the lifetime of the other. Expired entries are dropped the next time they
    are touched.
    """

    ttl_seconds: float = DEFAULT_TTL_SECONDS
    clock: Callable[[], float] = time.monotonic
    _messages: dict[str, CacheEntry] = field(default_factory=dict, init=False, repr=False)
    _metadata: dict[str, CacheEntry] = field(default_factory=dict, init=False, repr=False)

    def is_valid(self, session_id: str) -> bool:
        return self._live(self._messages, session_id) is not None

    def get(self, session_id: str) -> list[ConversationMessage] | None:
        entry = self._live(self._messages, session_id)
        if entry is None:
            return None
        return list(entry.value)

    def set(self, session_id: str, messages: list[ConversationMessage]) -> None:
        self._messages[session_id] = CacheEntry(self._deadline(), list(messages))

    def append(self, session_id: str, message: ConversationMessage) -> bool:
        entry = self._live(self._messages, session_id)
        if entry is None:
            return False
        entry.value.append(message)
        entry.expires_at = self._deadline()
        return True

    def get_metadata(self, session_id: str) -> SessionMetadata | None:
        entry = self._live(self._metadata, session_id)
        return None if entry is None else entry.value

    def set_metadata(self, session_id: str, metadata: SessionMetadata) -> None:
        self._metadata[session_id] = CacheEntry(self._deadline(), metadata)

    def invalidate(self, session_id: str) -> None:
        self._messages.pop(session_id, None)
        self._metadata.pop(session_id, None)

    def invalidate_all(self) -> None:
        self._messages.clear()
        self._metadata.clear()

    def stats(self) -> CacheStats:
        now = self.clock()
        messages = {k for k, e in self._messages.items() if not is_expired(e, now)}
        metadata = {k for k, e in self._metadata.items() if not is_expired(e, now)}
        return CacheStats(
            message_entries=len(messages),
            metadata_entries=len(metadata),
            total_sessions=len(messages | metadata),
        )

    def _deadline(self) -> float:
        return self.clock() + self.ttl_seconds

    def _live(self, slots: dict[str, CacheEntry], session_id: str) -> CacheEntry | None:
        entry = slots.get(session_id)
        if entry is None:
            return None
        if is_expired(entry, self.clock()):
            del slots[session_id]
            return None
        return entry
