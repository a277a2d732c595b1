import json
from typing import Any

from loguru import logger

from conversation_history.history.manager import ConversationHistoryManager
from conversation_history.history.models import ConversationMessage, ToolCallPayload, ToolResultPayload
from conversation_history.provider import SummaryProvider


def estimate_tokens(messages: list[ConversationMessage]) -> int:
    total_chars = 0
    for msg in messages:
        total_chars += _content_chars(msg.content)
        payload = msg.message.payload
        if isinstance(payload, ToolCallPayload):
            for call in payload.calls:
                total_chars += len(call.name) + len(json.dumps(call.args, ensure_ascii=False, default=str))
    return total_chars // 4


def _content_chars(content: Any) -> int:
    if isinstance(content, str):
        return len(content)
    if not isinstance(content, list):
        return 0 if content is None else len(json.dumps(content, ensure_ascii=False))

    total = 0
    for block in content:
        if isinstance(block, str):
            total += len(block)
        elif isinstance(block, dict):
            block_type = block.get("type", "")
            if block_type == "text":
                total += len(block.get("text", ""))
            elif block_type == "tool_use":
                total += len(block.get("name", ""))
                total += len(json.dumps(block.get("input", {})))
            elif block_type == "tool_result":
                total += _content_chars(block.get("content", ""))
    return total


def format_for_summarization(messages: list[ConversationMessage]) -> str:
    parts = []
    for msg in messages:
        role = msg.message.role or msg.type
        content = msg.content
        block_texts: list[str] = []

        if isinstance(content, str):
            block_texts.append(content)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, str):
                    block_texts.append(block)
                elif isinstance(block, dict):
                    block_type = block.get("type", "")
                    if block_type == "text":
                        block_texts.append(block.get("text", ""))
                    elif block_type == "tool_use":
                        block_texts.append(_format_tool_call(block.get("name", ""), block.get("input", {})))
                    elif block_type == "tool_result":
                        tool_id = block.get("tool_use_id", "")
                        block_texts.append(f"[Tool result ({tool_id})]: {_preview_text(_flatten(block.get('content', '')))}")

        payload = msg.message.payload
        if isinstance(payload, ToolCallPayload):
            for call in payload.calls:
                block_texts.append(_format_tool_call(call.name, {} if call.args is None else call.args))
        elif isinstance(payload, ToolResultPayload) and isinstance(payload.result, str):
            block_texts = [f"[Tool result ({payload.tool_call_id})]: {_preview_text(payload.result)}"]

        parts.append(f"[{role}]: " + "\n".join(t for t in block_texts if t))

    return "\n\n".join(parts)


def _format_tool_call(name: str, args: Any) -> str:
    inp = args if isinstance(args, str) else json.dumps(args, indent=None)
    if len(inp) > 200:
        inp = inp[:200] + "..."
    return f"[Tool call: {name}({inp})]"


def _flatten(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            sub.get("text", "")
            for sub in content
            if isinstance(sub, dict) and sub.get("type") == "text"
        )
    return str(content)


def _preview_text(text: str) -> str:
    if len(text) <= 700:
        return text
    return text[:500] + "\n[...truncated...]\n" + text[-200:]


_SUMMARIZE_PROMPT = """\
Summarize the following conversation history between a user and an AI assistant.
The summary replaces this history when the session is resumed, so preserve precisely:
- The original user request and any specific criteria or instructions
- All decisions made and their reasoning
- Key data points, URLs, file paths, and identifiers that may be needed later
- Current task status and next steps

Do NOT include raw tool output; just note what was retrieved and key findings.

Format as a concise narrative summary.

---
CONVERSATION HISTORY:

"""


class SummarizeCompressor:
    """Async ``compress`` callback: turns a window of messages into one summary message."""

    def __init__(
        self,
        provider: SummaryProvider,
        model: str,
        history: ConversationHistoryManager,
        *,
        max_tokens: int = 4096,
        max_input_chars: int = 100_000,
    ):
        self._provider = provider
        self._model = model
        self._history = history
        self._max_tokens = max_tokens
        self._max_input_chars = max_input_chars

    async def __call__(self, messages: list[ConversationMessage]) -> ConversationMessage:
        if not messages:
            raise ValueError("Cannot summarize an empty message window")

        formatted = format_for_summarization(messages)
        if len(formatted) > self._max_input_chars:
            half = self._max_input_chars // 2
            formatted = (
                formatted[:half]
                + "\n\n[...middle of conversation omitted for brevity...]\n\n"
                + formatted[-half:]
            )

        logger.debug(f"Summarizing {len(messages)} messages, input_chars={len(formatted):,}")
        summary = await self._provider.create_message(
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=0,
            messages=[{"role": "user", "content": _SUMMARIZE_PROMPT + formatted}],
        )
        if not summary.strip():
            raise ValueError("Summarizer returned an empty summary")

        last = messages[-1]
        logger.info(f"Summarized {len(messages)} messages into ~{len(summary) // 4:,} tokens")
        return self._history.create_summary_message(
            last.session_id,
            f"{summary.strip()}\n[END CONTEXT SUMMARY]",
            parent_uuid=last.uuid,
        )
