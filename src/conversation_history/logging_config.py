import sys
from pathlib import Path
from typing import Any, Protocol, TextIO, runtime_checkable

from loguru import logger

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def __init__(self, stream: str = "stderr", colorize: bool | None = None):
        if stream not in ("stderr", "stdout"):
            raise ValueError(f"Unsupported console stream: {stream!r}")
        self._stream = stream
        self._colorize = colorize

    def _sink(self) -> TextIO:
        return sys.stdout if self._stream == "stdout" else sys.stderr

    def register(self, level: str) -> int:
        return logger.add(self._sink(), level=level, format=_CONSOLE_FORMAT, colorize=self._colorize)

    def describe(self, level: str) -> str:
        return f"console ({self._stream}, {level})"


class FileLogConsumer:
    """Rotating log file; ``serialize`` writes one JSON record per line instead of text."""

    def __init__(
        self,
        path: str = "history.log",
        rotation: str = "10 MB",
        retention: int = 3,
        serialize: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            encoding="utf-8",
        )

    def describe(self, level: str) -> str:
        kind = "json" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS: list[dict[str, Any]] = [
    {"type": "console", "level": "WARNING"},
    {"type": "file", "path": "history.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's sinks with the configured consumers.

    Each consumer entry is ``{"type": ..., "level": ..., **options}``; a missing
    level falls back to ``level``. Returns a description per registered sink.
    """
    logger.remove()

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        options = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = str(config.get("level", level)).upper()
        consumer = cls(**options)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
