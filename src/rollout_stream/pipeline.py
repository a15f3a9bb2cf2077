from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC
from pathlib import Path

from rollout_stream.app_config import AppConfig
from rollout_stream.events.models import SessionEvent
from rollout_stream.events.parser import JsonlEventParser
from rollout_stream.logging_config import session_logger
from rollout_stream.sessions.locator import SessionLocator
from rollout_stream.tailing.tailer import JsonlTailer, StreamPosition


class SessionLogPipeline:
    """Locator, tailer and parser wired together for one sessions root."""

    def __init__(
        self,
        sessions_root: str | Path,
        locator: SessionLocator | None = None,
        tailer: JsonlTailer | None = None,
        parser: JsonlEventParser | None = None,
        start_timeout_seconds: float = 30.0,
    ):
        self.sessions_root = Path(sessions_root)
        self.locator = locator or SessionLocator()
        self.tailer = tailer or JsonlTailer()
        self.parser = parser or JsonlEventParser()
        self.start_timeout_seconds = start_timeout_seconds

    @classmethod
    def from_config(cls, config: AppConfig) -> SessionLogPipeline:
        return cls(
            sessions_root=config.sessions_root,
            locator=SessionLocator(poll_interval_seconds=config.locator_poll_interval_seconds),
            tailer=JsonlTailer(poll_interval_seconds=config.tail_poll_interval_seconds),
            start_timeout_seconds=config.start_timeout_seconds,
        )

    async def stream_events(
        self, path: str | Path, position: StreamPosition | None = None
    ) -> AsyncIterator[SessionEvent]:
        """Typed events of one log file. In after-timestamp mode, earlier events are dropped."""
        position = position or StreamPosition.default()
        after = position.after_timestamp if position.from_byte_offset is None else None
        if after is not None and after.tzinfo is None:
            after = after.replace(tzinfo=UTC)

        lines = self.tailer.tail(path, position)
        try:
            async for event in self.parser.parse(lines):
                if after is not None and event.timestamp <= after:
                    continue
                yield event
        finally:
            await lines.aclose()

    async def stream_session(
        self,
        session_id: str,
        position: StreamPosition | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[SessionEvent]:
        """Wait for the log of ``session_id`` to appear, then stream its events."""
        log = session_logger(session_id)
        path = await self.locator.wait_for_session_log(
            session_id, self.sessions_root, timeout or self.start_timeout_seconds
        )
        log.debug(f"Streaming session log {path}")

        count = 0
        try:
            async for event in self.stream_events(path, position):
                count += 1
                yield event
        finally:
            log.debug(f"Stopped streaming {path} after {count} events")
