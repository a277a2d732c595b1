from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from loguru import logger

from conversation_history.history.manager import ConversationHistoryManager
from conversation_history.history.models import ConversationMessage

_ROLE_TO_TYPE = {
    "human": "user",
    "user": "user",
    "ai": "assistant",
    "assistant": "assistant",
    "system": "system",
    "tool": "user",
    "function": "user",
}

# Carried through verbatim; never interpreted here.
_PASSTHROUGH_FIELDS = (
    "tool_calls",
    "tool_call_id",
    "name",
    "model",
    "usage",
    "usage_metadata",
    "response_metadata",
    "additional_kwargs",
)


def _turn_field(turn: Any, key: str) -> Any:
    if isinstance(turn, dict):
        return turn.get(key)
    return getattr(turn, key, None)


def turn_type(turn: Any) -> str:
    role = _turn_field(turn, "role") or _turn_field(turn, "type")
    if not isinstance(role, str):
        raise ValueError(f"Turn has no role: {turn!r}")
    msg_type = _ROLE_TO_TYPE.get(role.strip().lower())
    if msg_type is None:
        raise ValueError(f"Unsupported turn role: {role!r}")
    return msg_type


class CheckpointAdapter:
    """Persists an externally produced, ordered turn list into the parent-linked log."""

    def __init__(self, history: ConversationHistoryManager):
        self._history = history

    @property
    def history(self) -> ConversationHistoryManager:
        return self._history

    async def save_message(
        self,
        session_id: str,
        type: str,
        content: Any,
        *,
        extra: dict[str, Any] | None = None,
    ) -> ConversationMessage | None:
        return await self._history.append_linked(
            session_id,
            lambda parent_uuid: self._history.create_message(
                type, content, parent_uuid, session_id, extra=extra
            ),
        )

    async def save_complete_conversation(
        self,
        session_id: str,
        turns: Sequence[Any],
    ) -> list[ConversationMessage]:
        turns = list(turns)
        persisted = await self._history.append_linked_suffix(
            session_id,
            turns,
            lambda turn, parent_uuid: self.message_from_turn(turn, parent_uuid, session_id),
        )
        logger.debug(
            f"Persisted {len(persisted)} messages for session {session_id} from {len(turns)} turns"
        )
        return persisted

    def message_from_turn(
        self,
        turn: Any,
        parent_uuid: str | None,
        session_id: str,
    ) -> ConversationMessage:
        content = _turn_field(turn, "content")
        extra: dict[str, Any] = {}
        for key in _PASSTHROUGH_FIELDS:
            value = _turn_field(turn, key)
            if value is None or value == {} or value == []:
                continue
            extra[key] = value
        return self._history.create_message(
            turn_type(turn),
            "" if content is None else content,
            parent_uuid,
            session_id,
            extra=extra,
        )
