from __future__ import annotations

from datetime import UTC, datetime, timedelta

from loguru import logger

from conversation_history.history.manager import ConversationHistoryManager
from conversation_history.history.models import parse_timestamp


async def prune_sessions(
    history: ConversationHistoryManager,
    *,
    max_sessions: int,
    retention_days: int,
) -> list[str]:
    """Delete sessions idle past the retention window, then the oldest beyond ``max_sessions``."""
    cutoff = datetime.now(UTC) - timedelta(days=max(1, retention_days))
    sessions = await history.list_sessions()

    expired: list[str] = []
    kept: list[str] = []
    for metadata in sessions:
        updated = parse_timestamp(metadata.updated)
        if updated is not None and updated < cutoff:
            expired.append(metadata.session_id)
        else:
            kept.append(metadata.session_id)

    # list_sessions is newest first
    overflow = kept[max_sessions:] if max_sessions > 0 else []

    deleted: list[str] = []
    for session_id in expired + overflow:
        await history.delete_session(session_id)
        deleted.append(session_id)

    if deleted:
        logger.info(f"Pruned {len(deleted)} sessions (expired={len(expired)}, overflow={len(overflow)})")
    return deleted
