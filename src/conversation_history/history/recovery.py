from __future__ import annotations

import dataclasses
import math
from collections.abc import Awaitable, Callable

from loguru import logger

from conversation_history.history.manager import ConversationHistoryManager
from conversation_history.history.models import ConversationMessage, is_summary_message, mark_as_summary

TokenEstimator = Callable[[list[ConversationMessage]], int | float]
Compressor = Callable[[list[ConversationMessage]], Awaitable[ConversationMessage]]


def find_last_summary_index(messages: list[ConversationMessage]) -> int:
    for index in range(len(messages) - 1, -1, -1):
        if is_summary_message(messages[index]):
            return index
    return -1


class ContextRecoveryEngine:
    """Builds a bounded resume window from a session log.

    Each call is a one-shot computation: find the most recent summary, check the
    window against the token budget, and compress or trim when it does not fit.
    """

    def __init__(
        self,
        history: ConversationHistoryManager,
        *,
        compression_threshold: float = 0.8,
        fallback_budget_ratio: float = 0.8,
    ):
        self._history = history
        self._compression_threshold = compression_threshold
        self._fallback_budget_ratio = fallback_budget_ratio

    async def load_session_with_context_optimization(
        self,
        session_id: str,
        token_limit: int,
        estimate_tokens: TokenEstimator,
        compress: Compressor | None = None,
    ) -> list[ConversationMessage]:
        log = await self._history.load_session(session_id)
        summary_index = find_last_summary_index(log)
        candidate = log[summary_index:] if summary_index >= 0 else log
        if not candidate:
            return []

        cost = estimate_tokens(candidate)
        budget = token_limit * self._compression_threshold
        if cost <= budget:
            return candidate

        if compress is None:
            logger.info(
                f"Resume window for {session_id} is ~{cost:,} tokens (budget {budget:,.0f}) "
                "but no compressor is configured"
            )
            return candidate

        logger.info(
            f"Compressing resume window for {session_id}: ~{cost:,} tokens over budget {budget:,.0f}"
            f" ({len(candidate)} messages)"
        )
        try:
            summary = await compress(candidate)
        except Exception as ex:
            window = self._sliding_window(candidate, token_limit, cost)
            logger.warning(
                f"Compression failed for session {session_id}: {ex}. "
                f"Falling back to the last {len(window)} of {len(candidate)} messages."
            )
            return window

        summary = self._prepare_summary(summary, session_id, log[-1])
        await self._history.add_message(session_id, summary)
        return [summary]

    async def load_session_from_summary_point(self, session_id: str) -> list[ConversationMessage]:
        metadata = await self._history.get_metadata(session_id)
        if not metadata.has_summary or not metadata.last_summary_uuid:
            return await self._history.load_session(session_id)

        target = metadata.last_summary_uuid
        window: list[ConversationMessage] = []
        found = False
        async for message in self._history.store.iter_messages(session_id):
            if not found:
                if message.uuid != target:
                    continue
                found = True
            window.append(message)

        if found:
            return window

        logger.warning(
            f"Summary {target} recorded for session {session_id} was not found in the log; "
            "falling back to a full scan"
        )
        self._history.clear_cache(session_id)
        log = await self._history.load_session(session_id)
        summary_index = find_last_summary_index(log)
        return log[summary_index:] if summary_index >= 0 else log

    def _sliding_window(
        self,
        candidate: list[ConversationMessage],
        token_limit: int,
        cost: int | float,
    ) -> list[ConversationMessage]:
        avg_tokens = cost / len(candidate)
        if avg_tokens <= 0:
            return candidate
        keep = math.floor(token_limit * self._fallback_budget_ratio / avg_tokens)
        keep = max(1, min(keep, len(candidate)))
        return candidate[-keep:]

    def _prepare_summary(
        self,
        summary: ConversationMessage,
        session_id: str,
        last: ConversationMessage,
    ) -> ConversationMessage:
        if not is_summary_message(summary):
            summary = mark_as_summary(summary)
        if summary.parent_uuid is None:
            summary = dataclasses.replace(summary, parent_uuid=last.uuid)
        if summary.session_id != session_id:
            summary = dataclasses.replace(summary, session_id=session_id)
        return summary
