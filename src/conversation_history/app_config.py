from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class HistoryConfig:
    history_dir: str = ".conversations"
    version: str = "1.0.0"
    user_type: str = "external"
    default_cwd: str = field(default_factory=os.getcwd)
    cache_ttl_seconds: float = 300.0
    dedup_window_seconds: float = 5.0
    compression_threshold: float = 0.8
    fallback_budget_ratio: float = 0.8
    token_limit: int = 100_000
    summary_provider: str = "anthropic"
    summary_model: str = "claude-sonnet-4-5-20250929"
    summarize_on_resume: bool = False
    max_sessions: int = 200
    retention_days: int = 30
    log_level: str = "INFO"
    log_consumers: list | None = None

    def resolved_history_dir(self) -> Path:
        path = Path(self.history_dir)
        if not path.is_absolute():
            path = Path(self.default_cwd) / path
        return path


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _ratio(value: object, default: float) -> float:
    ratio = float(value) if value is not None else default
    if not 0 < ratio <= 1:
        raise ValueError(f"Ratio must be in (0, 1]: {ratio}")
    return ratio


def parse_history_config(config: dict) -> HistoryConfig:
    return HistoryConfig(
        history_dir=str(config.get("HistoryDir", ".conversations")),
        version=str(config.get("Version", "1.0.0")),
        user_type=str(config.get("UserType", "external")).strip().lower(),
        default_cwd=str(config.get("DefaultCwd") or os.getcwd()),
        cache_ttl_seconds=float(config.get("CacheTtlSeconds", 300)),
        dedup_window_seconds=float(config.get("DedupWindowSeconds", 5)),
        compression_threshold=_ratio(config.get("CompressionThreshold"), 0.8),
        fallback_budget_ratio=_ratio(config.get("FallbackBudgetRatio"), 0.8),
        token_limit=int(config.get("TokenLimit", 100_000)),
        summary_provider=str(config.get("SummaryProvider", "anthropic")).strip().lower(),
        summary_model=str(config.get("SummaryModel", "claude-sonnet-4-5-20250929")),
        summarize_on_resume=_to_bool(config.get("SummarizeOnResume", False), default=False),
        max_sessions=int(config.get("MaxSessions", 200)),
        retention_days=int(config.get("RetentionDays", 30)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str = "anthropic") -> RuntimeEnv:
    if provider_name != "anthropic":
        raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic'")
    provider_env_var = "ANTHROPIC_API_KEY"
    return RuntimeEnv(
        provider_api_key=os.environ.get(provider_env_var, ""),
        provider_env_var=provider_env_var,
    )
