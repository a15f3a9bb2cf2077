"""Log sinks for applications embedding the pipeline.

The package disables its own loguru output on import, as a library should.
``setup_logging`` re-enables it and registers the configured sinks.
"""

import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

PACKAGE_LOGGER_NAME = "rollout_stream"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def __init__(self, colorize: bool | None = None):
        self._colorize = colorize

    def register(self, level: str) -> int:
        return logger.add(
            sys.stderr,
            level=level,
            colorize=self._colorize,
            format=(
                "<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
            ),
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = "logs/rollout_stream.log",
        rotation: str = "10 MB",
        retention: int = 3,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level}, rotation={self._rotation})"


class JsonlLogConsumer:
    """One serialized JSON record per line, for feeding back into log tooling."""

    def __init__(self, path: str = "logs/rollout_stream.jsonl", rotation: str = "10 MB"):
        self._path = path
        self._rotation = rotation

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(self._path, level=level, serialize=True, rotation=self._rotation, enqueue=True)

    def describe(self, level: str) -> str:
        return f"jsonl ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "jsonl": JsonlLogConsumer,
}


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all loguru sinks with the configured consumers and enable package logs.

    Returns a description of each registered consumer.
    """
    logger.remove()
    logger.enable(PACKAGE_LOGGER_NAME)

    descriptions: list[str] = []
    for config in consumers if consumers is not None else [{"type": "console"}]:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        sink_level = config.get("level", level)
        consumer = cls(**{k: v for k, v in config.items() if k not in ("type", "level")})
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions


def session_logger(session_id: str, **extra: Any):
    """A logger bound to one session, so interleaved tails can be told apart."""
    return logger.bind(session_id=session_id, **extra)
