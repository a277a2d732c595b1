from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import Any, TypeVar
from uuid import uuid4

from loguru import logger

from conversation_history.app_config import HistoryConfig
from conversation_history.history.cache import CacheStats, MessageCache
from conversation_history.history.errors import SessionNotFoundError
from conversation_history.history.models import (
    MESSAGE_TYPES,
    SUMMARY_MARKER,
    ConversationMessage,
    MessageBody,
    SessionMetadata,
    content_text,
    is_summary_message,
    parse_timestamp,
    utc_now,
)
from conversation_history.history.store import SessionStore, default_title

T = TypeVar("T")


class ConversationHistoryManager:
    """Sole writer for session logs: owns message construction, appends and metadata bookkeeping.

    Every operation takes an explicit ``session_id``. Appends to one session are
    serialized by a per-session lock so the read-modify-write on metadata.json
    cannot interleave; different sessions proceed in parallel.
    """

    def __init__(
        self,
        config: HistoryConfig | None = None,
        *,
        store: SessionStore | None = None,
        cache: MessageCache | None = None,
    ):
        self._config = config or HistoryConfig()
        self._store = store or SessionStore(
            self._config.resolved_history_dir(),
            cwd=self._config.default_cwd,
            version=self._config.version,
            user_type=self._config.user_type,
        )
        self._cache = cache or MessageCache(ttl_seconds=self._config.cache_ttl_seconds)
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def config(self) -> HistoryConfig:
        return self._config

    @property
    def store(self) -> SessionStore:
        return self._store

    # --- construction ---------------------------------------------------

    def create_message(
        self,
        type: str,
        content: Any,
        parent_uuid: str | None = None,
        session_id: str = "",
        *,
        extra: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        if not session_id:
            raise ValueError("session_id is required to create a message")
        if type not in MESSAGE_TYPES:
            raise ValueError(f"Unsupported message type: {type!r}")
        return ConversationMessage(
            uuid=str(uuid4()),
            parent_uuid=parent_uuid,
            session_id=session_id,
            type=type,
            message=MessageBody(role=type, content=content, extra=dict(extra or {})),
            timestamp=utc_now(),
            cwd=self._config.default_cwd,
            is_sidechain=False,
            user_type=self._config.user_type,
            version=self._config.version,
        )

    def create_summary_message(
        self,
        session_id: str,
        summary_text: str,
        parent_uuid: str | None = None,
    ) -> ConversationMessage:
        return self.create_message(
            "assistant",
            f"{SUMMARY_MARKER}\n{summary_text.strip()}",
            parent_uuid,
            session_id,
        )

    # --- sessions -------------------------------------------------------

    async def create_session(self, title: str | None = None) -> str:
        session_id = await self._store.create_session(title)
        self._cache.set(session_id, [])
        self._cache.set_metadata(session_id, await self._store.read_metadata(session_id))
        logger.info(f"Created session {session_id}")
        return session_id

    async def list_sessions(self) -> list[SessionMetadata]:
        sessions = await self._store.list_sessions()
        for metadata in sessions:
            self._cache.set_metadata(metadata.session_id, metadata)
        return sessions

    async def get_metadata(self, session_id: str) -> SessionMetadata:
        cached = self._cache.get_metadata(session_id)
        if cached is not None:
            return cached
        metadata = await self._store.read_metadata(session_id)
        self._cache.set_metadata(session_id, metadata)
        return metadata

    async def delete_session(self, session_id: str) -> None:
        try:
            await self._store.delete_session(session_id)
        finally:
            self._cache.invalidate(session_id)
            self._locks.pop(session_id, None)
        logger.info(f"Deleted session {session_id}")

    async def update_session_title(self, session_id: str, title: str) -> SessionMetadata:
        async with self._lock_for(session_id):
            return await self._update_metadata(
                session_id,
                {"title": title.strip(), "updated": utc_now()},
            )

    # --- messages -------------------------------------------------------

    async def load_session(self, session_id: str) -> list[ConversationMessage]:
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached
        messages = await self._store.load_session(session_id)
        self._cache.set(session_id, messages)
        return list(messages)

    async def get_messages(self, session_id: str) -> list[ConversationMessage]:
        return await self.load_session(session_id)

    async def save_session(self, session_id: str, messages: list[ConversationMessage]) -> None:
        async with self._lock_for(session_id):
            try:
                await self._store.save_session(session_id, messages)
                now = utc_now()
                try:
                    previous = await self._store.read_metadata(session_id)
                except SessionNotFoundError:
                    previous = SessionMetadata(
                        session_id=session_id,
                        title=default_title(now),
                        created=now,
                        updated=now,
                        cwd=self._config.default_cwd,
                        version=self._config.version,
                        user_type=self._config.user_type,
                    )
                metadata = previous.merged(
                    {"updated": now, "messageCount": len(messages), **_summary_pointer(messages)}
                )
                await self._store.write_metadata(metadata)
            except Exception:
                self._cache.invalidate(session_id)
                raise
            self._cache.set(session_id, messages)
            self._cache.set_metadata(session_id, metadata)

    async def add_message(self, session_id: str, message: ConversationMessage) -> None:
        async with self._lock_for(session_id):
            await self._append_locked(session_id, message)

    async def add_message_with_deduplication(self, session_id: str, message: ConversationMessage) -> bool:
        """Append ``message`` unless it repeats a stored one.

        A message is a duplicate when its uuid is already stored, or when a stored
        message has the same type and content and a timestamp within the dedup
        window. Returns whether the message was persisted.
        """
        async with self._lock_for(session_id):
            existing = await self.load_session(session_id)
            return await self._append_unless_duplicate(session_id, existing, message)

    async def append_linked(
        self,
        session_id: str,
        build: Callable[[str | None], ConversationMessage],
    ) -> ConversationMessage | None:
        """Build a message parented on the current tail and append it with dedup.

        The tail lookup and the append happen under the session lock, so
        concurrent callers always extend a single linear chain. Returns the
        persisted message, or None when it was dropped as a duplicate.
        """
        async with self._lock_for(session_id):
            existing = await self.load_session(session_id)
            message = build(existing[-1].uuid if existing else None)
            if await self._append_unless_duplicate(session_id, existing, message):
                return message
            return None

    async def append_linked_suffix(
        self,
        session_id: str,
        items: Sequence[T],
        build: Callable[[T, str | None], ConversationMessage],
    ) -> list[ConversationMessage]:
        """Persist the items past the stored message count as one linked run.

        ``items`` is a full ordered history; the first ``len(stored)`` entries
        are taken as already persisted. Each new item is parented on the last
        message actually written, so a dropped duplicate leaves no gap.
        """
        async with self._lock_for(session_id):
            existing = await self.load_session(session_id)
            last_uuid = existing[-1].uuid if existing else None
            persisted: list[ConversationMessage] = []
            for item in items[len(existing):]:
                message = build(item, last_uuid)
                if await self._append_unless_duplicate(session_id, existing, message):
                    existing.append(message)
                    persisted.append(message)
                    last_uuid = message.uuid
            return persisted

    def build_session_summary(self, metadata: SessionMetadata, messages: list[ConversationMessage]) -> dict:
        user_count = 0
        assistant_count = 0
        last_user_preview = ""
        last_assistant_preview = ""
        for message in messages:
            if message.type == "user":
                user_count += 1
                last_user_preview = _preview(message.content)
            elif message.type == "assistant":
                assistant_count += 1
                last_assistant_preview = _preview(message.content)

        return {
            "session_id": metadata.session_id,
            "title": metadata.title,
            "created": metadata.created,
            "updated": metadata.updated,
            "message_count": len(messages),
            "user_message_count": user_count,
            "assistant_message_count": assistant_count,
            "has_summary": metadata.has_summary,
            "last_user_preview": last_user_preview,
            "last_assistant_preview": last_assistant_preview,
        }

    # --- cache control --------------------------------------------------

    def clear_cache(self, session_id: str | None = None) -> None:
        if session_id:
            self._cache.invalidate(session_id)
        else:
            self._cache.invalidate_all()

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()

    # --- internals ------------------------------------------------------

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _append_locked(self, session_id: str, message: ConversationMessage) -> None:
        try:
            await self._store.append_message(session_id, message)
            self._cache.append(session_id, message)

            previous = await self._store.read_metadata(session_id)
            now = utc_now()
            updates: dict[str, Any] = {
                "updated": now,
                "messageCount": previous.message_count + 1,
            }
            if is_summary_message(message):
                updates.update(
                    {
                        "hasSummary": True,
                        "lastSummaryUuid": message.uuid,
                        "lastSummaryTime": message.timestamp or now,
                        "lastSummaryIndex": previous.message_count,
                    }
                )
                logger.info(f"Recorded summary {message.uuid} for session {session_id}")
            metadata = previous.merged(updates)
            await self._store.write_metadata(metadata)
            self._cache.set_metadata(session_id, metadata)
        except Exception:
            self._cache.invalidate(session_id)
            raise

    async def _append_unless_duplicate(
        self,
        session_id: str,
        existing: list[ConversationMessage],
        message: ConversationMessage,
    ) -> bool:
        duplicate = self._find_duplicate(existing, message)
        if duplicate is not None:
            preview = " ".join(content_text(message.content).split())[:50]
            logger.warning(
                f"Skipping duplicate {message.type} message in session {session_id} "
                f"(matches {duplicate.uuid}): {preview}"
            )
            return False
        await self._append_locked(session_id, message)
        return True

    async def _update_metadata(self, session_id: str, updates: dict[str, Any]) -> SessionMetadata:
        try:
            metadata = await self._store.update_metadata(session_id, updates)
        except Exception:
            self._cache.invalidate(session_id)
            raise
        self._cache.set_metadata(session_id, metadata)
        return metadata

    def _find_duplicate(
        self,
        existing: list[ConversationMessage],
        message: ConversationMessage,
    ) -> ConversationMessage | None:
        window = self._config.dedup_window_seconds
        incoming_time = parse_timestamp(message.timestamp)
        for candidate in existing:
            if candidate.uuid == message.uuid:
                return candidate
            if candidate.type != message.type or candidate.content != message.content:
                continue
            candidate_time = parse_timestamp(candidate.timestamp)
            if incoming_time is None or candidate_time is None:
                continue
            if abs((candidate_time - incoming_time).total_seconds()) < window:
                return candidate
        return None


def _summary_pointer(messages: list[ConversationMessage]) -> dict[str, Any]:
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if is_summary_message(message):
            return {
                "hasSummary": True,
                "lastSummaryUuid": message.uuid,
                "lastSummaryTime": message.timestamp,
                "lastSummaryIndex": index,
            }
    return {
        "hasSummary": False,
        "lastSummaryUuid": None,
        "lastSummaryTime": None,
        "lastSummaryIndex": None,
    }


def _preview(content: Any, max_chars: int = 140) -> str:
    text = " ".join(content_text(content).split())
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."
