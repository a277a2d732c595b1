from __future__ import annotations

from dataclasses import dataclass

from conversation_history.app_config import HistoryConfig, RuntimeEnv
from conversation_history.compaction import SummarizeCompressor
from conversation_history.history import CheckpointAdapter, ContextRecoveryEngine, ConversationHistoryManager
from conversation_history.logging_config import setup_logging
from conversation_history.provider import create_provider


@dataclass
class HistoryRuntime:
    history: ConversationHistoryManager
    recovery: ContextRecoveryEngine
    checkpoints: CheckpointAdapter
    compressor: SummarizeCompressor | None
    log_descriptions: list[str]


def bootstrap_runtime(config: HistoryConfig, env: RuntimeEnv) -> HistoryRuntime:
    log_descriptions = setup_logging(level=config.log_level, consumers=config.log_consumers)

    history = ConversationHistoryManager(config)
    recovery = ContextRecoveryEngine(
        history,
        compression_threshold=config.compression_threshold,
        fallback_budget_ratio=config.fallback_budget_ratio,
    )

    compressor: SummarizeCompressor | None = None
    if config.summarize_on_resume and env.provider_api_key:
        compressor = SummarizeCompressor(
            provider=create_provider(config.summary_provider, env.provider_api_key),
            model=config.summary_model,
            history=history,
        )

    return HistoryRuntime(
        history=history,
        recovery=recovery,
        checkpoints=CheckpointAdapter(history),
        compressor=compressor,
        log_descriptions=log_descriptions,
    )
