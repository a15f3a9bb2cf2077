"""Polling tailer for append-only JSONL files written by another process."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from loguru import logger

from rollout_stream.app_config import MIN_TAIL_POLL_INTERVAL_SECONDS
from rollout_stream.errors import SessionAccessDeniedError, SessionNotFoundError

_BOM = b"\xef\xbb\xbf"
_READ_CHUNK = 64 * 1024


@dataclass(frozen=True)
class StreamPosition:
    """Where a tail starts and whether it keeps following the file.

    Precedence: ``from_byte_offset``, then ``after_timestamp``, then
    ``from_beginning``. Timestamp filtering is applied by the event pipeline;
    the tailer itself reads from the start in that mode.
    """

    from_beginning: bool = True
    after_timestamp: datetime | None = None
    from_byte_offset: int | None = None
    follow: bool = True

    def __post_init__(self):
        if self.from_byte_offset is not None and self.from_byte_offset < 0:
            raise ValueError(f"from_byte_offset must be non-negative, got {self.from_byte_offset}")

    @classmethod
    def default(cls) -> StreamPosition:
        return cls()

    @classmethod
    def from_timestamp(cls, timestamp: datetime, follow: bool = True) -> StreamPosition:
        return cls(from_beginning=False, after_timestamp=timestamp, follow=follow)

    @classmethod
    def from_offset(cls, offset: int, follow: bool = True) -> StreamPosition:
        return cls(from_beginning=False, from_byte_offset=offset, follow=follow)

    @classmethod
    def at_end(cls, follow: bool = True) -> StreamPosition:
        return cls(from_beginning=False, follow=follow)


@dataclass(frozen=True)
class TailedLine:
    text: str
    offset: int
    end_offset: int


class JsonlTailer:
    """Yields lines of a growing file, resuming from a :class:`StreamPosition`.

    Each ``tail`` call owns its file handle and buffer; concurrent tails of the
    same file are independent.
    """

    def __init__(self, poll_interval_seconds: float = 0.2):
        if poll_interval_seconds < MIN_TAIL_POLL_INTERVAL_SECONDS:
            raise ValueError(
                f"poll_interval_seconds must be at least {MIN_TAIL_POLL_INTERVAL_SECONDS}s "
                f"(got {poll_interval_seconds})"
            )
        self.poll_interval_seconds = poll_interval_seconds

    async def tail(self, path: str | Path, position: StreamPosition | None = None) -> AsyncIterator[str]:
        async for line in self.tail_lines(path, position):
            yield line.text

    async def tail_lines(
        self, path: str | Path, position: StreamPosition | None = None
    ) -> AsyncIterator[TailedLine]:
        position = position or StreamPosition.default()
        path = Path(path)
        handle = self._open(path)
        try:
            offset = self._start_offset(handle, position)
            handle.seek(offset)
            # Bytes after the last newline, and the file offset they start at.
            fragment = b""
            fragment_offset = offset
            logger.debug(f"Tailing {path} from offset {offset} (follow={position.follow})")

            while True:
                chunk = handle.read(_READ_CHUNK)
                if chunk:
                    if not fragment:
                        fragment_offset = offset
                    data = fragment + chunk
                    offset += len(chunk)
                    start = 0
                    while (newline := data.find(b"\n", start)) != -1:
                        line_offset = fragment_offset + start
                        line = self._decode(data[start:newline], line_offset == 0)
                        start = newline + 1
                        if line.strip():
                            yield TailedLine(line, line_offset, fragment_offset + start)
                    fragment = data[start:]
                    fragment_offset += start
                    continue

                if not position.follow:
                    if fragment:
                        line = self._decode(fragment, fragment_offset == 0)
                        if line.strip():
                            yield TailedLine(line, fragment_offset, offset)
                    return

                size = os.fstat(handle.fileno()).st_size
                if size < offset:
                    logger.warning(f"{path} shrank from {offset} to {size} bytes; restarting from the beginning")
                    handle.seek(0)
                    offset = 0
                    fragment = b""
                    fragment_offset = 0
                elif size == offset:
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            handle.close()
            logger.debug(f"Closed tail of {path}")

    @staticmethod
    def _open(path: Path):
        try:
            return open(path, "rb")
        except FileNotFoundError as ex:
            raise SessionNotFoundError(f"Session log not found: {path}") from ex
        except PermissionError as ex:
            raise SessionAccessDeniedError(f"Cannot open session log {path}: {ex}") from ex

    @staticmethod
    def _start_offset(handle, position: StreamPosition) -> int:
        if position.from_byte_offset is not None:
            return position.from_byte_offset
        if position.after_timestamp is not None or position.from_beginning:
            return 0
        return os.fstat(handle.fileno()).st_size

    @staticmethod
    def _decode(raw: bytes, strip_bom: bool) -> str:
        if strip_bom and raw.startswith(_BOM):
            raw = raw[len(_BOM):]
        return raw.decode("utf-8", errors="replace").rstrip("\r")
