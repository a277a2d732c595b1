from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

MessageType = Literal["user", "assistant", "system"]

MESSAGE_TYPES: tuple[str, ...] = ("user", "assistant", "system")

SUMMARY_MARKER = "[CONTEXT SUMMARY]"

_MESSAGE_KEYS = (
    "parentUuid",
    "isSidechain",
    "userType",
    "cwd",
    "sessionId",
    "version",
    "type",
    "message",
    "uuid",
    "timestamp",
)

_METADATA_KEYS = (
    "sessionId",
    "title",
    "created",
    "updated",
    "messageCount",
    "cwd",
    "version",
    "userType",
    "hasSummary",
    "lastSummaryUuid",
    "lastSummaryTime",
    "lastSummaryIndex",
)


def utc_now() -> str:
    """Current UTC time in the ``YYYY-MM-DDTHH:MM:SS.mmmZ`` shape used on disk."""
    return format_timestamp(datetime.now(UTC))


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def dumps_line(data: dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


# --- payload views ---------------------------------------------------------


@dataclass(frozen=True)
class TextPayload:
    text: str
    kind: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolCall:
    name: str
    args: Any
    id: str | None = None


@dataclass(frozen=True)
class ToolCallPayload:
    calls: tuple[ToolCall, ...]
    text: str = ""
    kind: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True)
class ToolResultPayload:
    tool_call_id: str
    name: str | None
    result: Any
    kind: Literal["tool_result"] = "tool_result"


@dataclass(frozen=True)
class OpaquePayload:
    content: Any
    fields: dict[str, Any]
    kind: Literal["opaque"] = "opaque"


Payload = TextPayload | ToolCallPayload | ToolResultPayload | OpaquePayload


def _parse_tool_call(raw: Any) -> ToolCall:
    if not isinstance(raw, dict):
        return ToolCall(name="", args=raw)
    function = raw.get("function")
    if isinstance(function, dict):
        # OpenAI wire shape: {"id", "type": "function", "function": {"name", "arguments"}}
        return ToolCall(name=str(function.get("name", "")), args=function.get("arguments"), id=raw.get("id"))
    args = raw.get("args", raw.get("input", raw.get("arguments")))
    return ToolCall(name=str(raw.get("name", "")), args=args, id=raw.get("id"))


# --- message ---------------------------------------------------------------


@dataclass
class MessageBody:
    role: str
    content: Any
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return content_text(self.content)

    @property
    def payload(self) -> Payload:
        tool_calls = self.extra.get("tool_calls")
        if isinstance(tool_calls, list) and tool_calls:
            return ToolCallPayload(
                calls=tuple(_parse_tool_call(c) for c in tool_calls),
                text=self.text,
            )
        tool_call_id = self.extra.get("tool_call_id")
        if isinstance(tool_call_id, str) and tool_call_id:
            return ToolResultPayload(
                tool_call_id=tool_call_id,
                name=self.extra.get("name"),
                result=self.content,
            )
        if isinstance(self.content, str) and not self.extra:
            return TextPayload(self.content)
        return OpaquePayload(content=self.content, fields=dict(self.extra))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        for key, value in self.extra.items():
            if key not in data:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageBody:
        if not isinstance(data, dict):
            raise ValueError("message body must be an object")
        if "role" not in data or "content" not in data:
            raise ValueError("message body requires role and content")
        extra = {k: v for k, v in data.items() if k not in ("role", "content")}
        return cls(role=str(data["role"]), content=data["content"], extra=extra)


@dataclass
class ConversationMessage:
    uuid: str
    parent_uuid: str | None
    session_id: str
    type: MessageType
    message: MessageBody
    timestamp: str
    cwd: str
    is_sidechain: bool = False
    user_type: str = "external"
    version: str = "1.0.0"
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> Any:
        return self.message.content

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "parentUuid": self.parent_uuid,
            "isSidechain": self.is_sidechain,
            "userType": self.user_type,
            "cwd": self.cwd,
            "sessionId": self.session_id,
            "version": self.version,
            "type": self.type,
            "message": self.message.to_dict(),
            "uuid": self.uuid,
            "timestamp": self.timestamp,
        }
        for key, value in self.extra.items():
            if key not in data:
                data[key] = value
        return data

    def to_line(self) -> str:
        return dumps_line(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMessage:
        if not isinstance(data, dict):
            raise ValueError("message line must be a JSON object")
        msg_type = data.get("type")
        if msg_type not in MESSAGE_TYPES:
            raise ValueError(f"unsupported message type: {msg_type!r}")
        uuid = data.get("uuid")
        if not isinstance(uuid, str) or not uuid:
            raise ValueError("message is missing uuid")
        return cls(
            uuid=uuid,
            parent_uuid=data.get("parentUuid"),
            session_id=str(data.get("sessionId", "")),
            type=msg_type,
            message=MessageBody.from_dict(data.get("message")),
            timestamp=str(data.get("timestamp", "")),
            cwd=str(data.get("cwd", "")),
            is_sidechain=bool(data.get("isSidechain", False)),
            user_type=str(data.get("userType", "external")),
            version=str(data.get("version", "")),
            extra={k: v for k, v in data.items() if k not in _MESSAGE_KEYS},
        )

    @classmethod
    def from_line(cls, line: str) -> ConversationMessage:
        return cls.from_dict(json.loads(line))


# --- metadata --------------------------------------------------------------


@dataclass
class SessionMetadata:
    session_id: str
    title: str
    created: str
    updated: str
    message_count: int = 0
    cwd: str = ""
    version: str = "1.0.0"
    user_type: str = "external"
    has_summary: bool = False
    last_summary_uuid: str | None = None
    last_summary_time: str | None = None
    last_summary_index: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "title": self.title,
            "created": self.created,
            "updated": self.updated,
            "messageCount": self.message_count,
            "cwd": self.cwd,
            "version": self.version,
            "userType": self.user_type,
            "hasSummary": self.has_summary,
            "lastSummaryUuid": self.last_summary_uuid,
            "lastSummaryTime": self.last_summary_time,
            "lastSummaryIndex": self.last_summary_index,
        }
        for key, value in self.extra.items():
            if key not in data:
                data[key] = value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    def merged(self, updates: dict[str, Any]) -> SessionMetadata:
        """Return a copy with camelCase ``updates`` applied on top."""
        data = self.to_dict()
        data.update(updates)
        return SessionMetadata.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetadata:
        if not isinstance(data, dict):
            raise ValueError("metadata must be a JSON object")
        session_id = data.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("metadata is missing sessionId")
        last_index = data.get("lastSummaryIndex")
        return cls(
            session_id=session_id,
            title=str(data.get("title", "")),
            created=str(data.get("created", "")),
            updated=str(data.get("updated", data.get("created", ""))),
            message_count=int(data.get("messageCount") or 0),
            cwd=str(data.get("cwd", "")),
            version=str(data.get("version", "")),
            user_type=str(data.get("userType", "external")),
            has_summary=bool(data.get("hasSummary", False)),
            last_summary_uuid=data.get("lastSummaryUuid"),
            last_summary_time=data.get("lastSummaryTime"),
            last_summary_index=int(last_index) if last_index is not None else None,
            extra={k: v for k, v in data.items() if k not in _METADATA_KEYS},
        )


# --- helpers ---------------------------------------------------------------


def content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "\n".join(p for p in parts if p)
    if content is None:
        return ""
    return str(content)


def is_summary_message(message: ConversationMessage) -> bool:
    if message.type != "assistant":
        return False
    return message.message.text.lstrip().startswith(SUMMARY_MARKER)


def mark_as_summary(message: ConversationMessage) -> ConversationMessage:
    if is_summary_message(message):
        return message
    text = message.message.text
    body = replace(
        message.message,
        role="assistant",
        content=f"{SUMMARY_MARKER}\n{text}",
    )
    return replace(message, type="assistant", message=body)
