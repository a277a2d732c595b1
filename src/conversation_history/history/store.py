from __future__ import annotations

import asyncio
import json
import shutil
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiofiles
import aiofiles.os
from loguru import logger

from conversation_history.history.errors import SessionNotFoundError
from conversation_history.history.models import ConversationMessage, SessionMetadata, parse_timestamp, utc_now

METADATA_FILE = "metadata.json"
MESSAGES_FILE = "messages.jsonl"


def default_title(iso_timestamp: str) -> str:
    return f"Session {iso_timestamp[:16].replace('T', ' ')}"


class SessionStore:
    """On-disk layout: one directory per session holding metadata.json and messages.jsonl."""

    def __init__(self, root: str | Path, *, cwd: str, version: str = "1.0.0", user_type: str = "external"):
        self._root = Path(root)
        self._cwd = cwd
        self._version = version
        self._user_type = user_type

    @property
    def root(self) -> Path:
        return self._root

    def session_dir(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self._root / session_id

    def messages_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / MESSAGES_FILE

    def metadata_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / METADATA_FILE

    async def session_exists(self, session_id: str) -> bool:
        return await aiofiles.os.path.isdir(self.session_dir(session_id))

    async def create_session(self, title: str | None = None) -> str:
        session_id = str(uuid4())
        now = utc_now()
        metadata = SessionMetadata(
            session_id=session_id,
            title=(title or "").strip() or default_title(now),
            created=now,
            updated=now,
            message_count=0,
            cwd=self._cwd,
            version=self._version,
            user_type=self._user_type,
        )
        session_dir = self.session_dir(session_id)
        await aiofiles.os.makedirs(session_dir, exist_ok=True)
        await self.write_metadata(metadata)
        async with aiofiles.open(session_dir / MESSAGES_FILE, "w", encoding="utf-8") as f:
            await f.write("")
        logger.debug(f"Created session {session_id} in {session_dir}")
        return session_id

    async def load_session(self, session_id: str) -> list[ConversationMessage]:
        return [message async for message in self.iter_messages(session_id)]

    async def iter_messages(self, session_id: str) -> AsyncIterator[ConversationMessage]:
        """Stream parsed messages in log order, skipping lines that fail to parse."""
        if not await self.session_exists(session_id):
            raise SessionNotFoundError(session_id)
        path = self.messages_path(session_id)
        if not await aiofiles.os.path.exists(path):
            return

        async with aiofiles.open(path, encoding="utf-8") as f:
            line_num = 0
            async for line in f:
                line_num += 1
                line = line.strip()
                if not line:
                    continue
                try:
                    message = ConversationMessage.from_line(line)
                except (json.JSONDecodeError, ValueError, TypeError) as ex:
                    logger.warning(f"Skipping malformed message line {line_num} in {path}: {ex}")
                    continue
                yield message

    async def save_session(self, session_id: str, messages: list[ConversationMessage]) -> None:
        session_dir = self.session_dir(session_id)
        await aiofiles.os.makedirs(session_dir, exist_ok=True)
        content = "".join(message.to_line() + "\n" for message in messages)
        await self._write_atomic(session_dir / MESSAGES_FILE, content)

    async def append_message(self, session_id: str, message: ConversationMessage) -> None:
        if not await self.session_exists(session_id):
            raise SessionNotFoundError(session_id)
        async with aiofiles.open(self.messages_path(session_id), "a", encoding="utf-8") as f:
            await f.write(message.to_line() + "\n")

    async def delete_session(self, session_id: str) -> None:
        session_dir = self.session_dir(session_id)
        if not await aiofiles.os.path.isdir(session_dir):
            return
        await asyncio.to_thread(shutil.rmtree, session_dir)
        logger.debug(f"Deleted session {session_id}")

    async def list_sessions(self) -> list[SessionMetadata]:
        if not await aiofiles.os.path.isdir(self._root):
            return []

        sessions: list[SessionMetadata] = []
        for name in sorted(await aiofiles.os.listdir(self._root)):
            if not await aiofiles.os.path.isdir(self._root / name):
                continue
            try:
                sessions.append(await self.read_metadata(name))
            except (OSError, ValueError, SessionNotFoundError) as ex:
                logger.warning(f"Failed to read session metadata for {name}: {ex}")
        sessions.sort(key=_updated_sort_key, reverse=True)
        return sessions

    async def read_metadata(self, session_id: str) -> SessionMetadata:
        path = self.metadata_path(session_id)
        if not await self.session_exists(session_id) or not await aiofiles.os.path.exists(path):
            raise SessionNotFoundError(session_id)
        async with aiofiles.open(path, encoding="utf-8") as f:
            raw = await f.read()
        return SessionMetadata.from_dict(json.loads(raw))

    async def write_metadata(self, metadata: SessionMetadata) -> None:
        session_dir = self.session_dir(metadata.session_id)
        await aiofiles.os.makedirs(session_dir, exist_ok=True)
        await self._write_atomic(session_dir / METADATA_FILE, metadata.to_json())

    async def update_metadata(self, session_id: str, updates: dict[str, Any]) -> SessionMetadata:
        metadata = (await self.read_metadata(session_id)).merged(updates)
        await self.write_metadata(metadata)
        return metadata

    async def _write_atomic(self, path: Path, content: str) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(content)
            await aiofiles.os.replace(tmp_path, path)
        except BaseException:
            if await aiofiles.os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)
            raise


def _updated_sort_key(metadata: SessionMetadata) -> float:
    parsed = parse_timestamp(metadata.updated) or parse_timestamp(metadata.created)
    return parsed.timestamp() if parsed is not None else 0.0
