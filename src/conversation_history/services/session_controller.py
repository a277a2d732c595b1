from __future__ import annotations

from conversation_history.history.models import (
    ConversationMessage,
    SessionMetadata,
    ToolCallPayload,
    ToolResultPayload,
    content_text,
)


class SessionController:
    def __init__(self, *, line_prefix: str = "", short_id_len: int = 8, preview_chars: int = 100):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len
        self._preview_chars = preview_chars

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def format_session_list_entry(self, session: SessionMetadata) -> str:
        summary_flag = " summary" if session.has_summary else ""
        return (
            f"{self._line_prefix}{session.title} [{self.short_id(session.session_id)}] "
            f"(id={session.session_id}, messages={session.message_count}{summary_flag}, "
            f"created={session.created}, updated={session.updated})"
        )

    def format_resumed_summary_lines(self, summary: dict) -> list[str]:
        lines = [f"{self._line_prefix}Session summary: {summary['title']}"]
        lines.append(
            f"{self._line_prefix}- Created: {summary['created']} | "
            f"Updated: {summary['updated']}"
        )
        lines.append(
            f"{self._line_prefix}- Messages: {summary['message_count']} "
            f"(user={summary['user_message_count']}, assistant={summary['assistant_message_count']})"
        )
        if summary.get("has_summary"):
            lines.append(f"{self._line_prefix}- Context summary: yes")
        last_user = summary.get("last_user_preview", "")
        if last_user:
            lines.append(f"{self._line_prefix}- Last user: {last_user}")
        last_assistant = summary.get("last_assistant_preview", "")
        if last_assistant:
            lines.append(f"{self._line_prefix}- Last assistant: {last_assistant}")
        return lines

    def format_message_line(self, message: ConversationMessage) -> str:
        text = " ".join(content_text(message.content).split())
        if len(text) > self._preview_chars:
            text = text[: self._preview_chars - 3] + "..."
        payload = message.message.payload
        if isinstance(payload, ToolCallPayload):
            names = ", ".join(call.name for call in payload.calls if call.name)
            label = f"tool calls: {len(payload.calls)}"
            if names:
                label += f" ({names})"
            text = f"{text} [{label}]".strip()
        elif isinstance(payload, ToolResultPayload):
            text = f"[tool result {self.short_id(payload.tool_call_id)}] {text}".strip()
        return f"{self._line_prefix}[{self.short_id(message.uuid)}] {message.type}: {text}"
