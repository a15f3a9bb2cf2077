"""Finds session rollout files under the sessions root."""

from __future__ import annotations

import asyncio
import glob
import json
import re
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, wait_fixed

from rollout_stream.errors import (
    OperationTimeoutError,
    SessionAccessDeniedError,
    SessionNotFoundError,
    SessionsRootNotFoundError,
)
from rollout_stream.events.parser import parse_timestamp
from rollout_stream.sessions.models import SessionFilter, SessionInfo
from rollout_stream.sessions.patterns import (
    SESSION_FILE_PATTERN,
    file_creation_time,
    is_session_file_name,
    session_id_from_file_name,
)

# session_meta is the first record; don't scan whole transcripts looking for it.
_HEAD_LINE_LIMIT = 64


def _is_missing_session_file(ex: BaseException) -> bool:
    return isinstance(ex, SessionNotFoundError) and not isinstance(ex, SessionsRootNotFoundError)


def _on_retry(retry_state):
    logger.trace(f"Session log not found yet (attempt {retry_state.attempt_number}), polling again")


class SessionLocator:
    def __init__(
        self,
        poll_interval_seconds: float = 0.1,
        file_pattern: re.Pattern[str] = SESSION_FILE_PATTERN,
    ):
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        self.poll_interval_seconds = poll_interval_seconds
        self._file_pattern = file_pattern

    # -- lookup by id --

    def find_session_log(self, session_id: str, sessions_root: str | Path) -> Path:
        """Return the rollout file whose name ends in ``-<session_id>.jsonl``.

        When several files match, the first in sorted path order wins.
        """
        if not session_id or not session_id.strip():
            raise ValueError("session_id must be a non-empty string")
        root = self._require_root(sessions_root)

        matches = sorted(p for p in root.rglob(f"*-{glob.escape(session_id)}.jsonl") if p.is_file())
        if not matches:
            raise SessionNotFoundError(f"No session log for id {session_id!r} under {root}")
        if len(matches) > 1:
            logger.warning(
                f"Found {len(matches)} session logs for id {session_id!r}; using {matches[0]}"
            )
        return self.validate_log_file(matches[0])

    async def wait_for_session_log(
        self, session_id: str, sessions_root: str | Path, timeout: float
    ) -> Path:
        """Poll ``find_session_log`` until the file appears. Only a missing file is retried."""
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        try:
            async with asyncio.timeout(timeout):
                async for attempt in AsyncRetrying(
                    retry=retry_if_exception(_is_missing_session_file),
                    wait=wait_fixed(self.poll_interval_seconds),
                    before_sleep=_on_retry,
                    reraise=True,
                ):
                    with attempt:
                        return await asyncio.to_thread(self.find_session_log, session_id, sessions_root)
        except TimeoutError as ex:
            raise OperationTimeoutError(
                f"Session log for id {session_id!r} did not appear within {timeout}s"
            ) from ex

    # -- waiting for a fresh session --

    def snapshot_session_files(self, sessions_root: str | Path) -> set[Path]:
        return set(self._session_files(self._require_root(sessions_root)))

    async def wait_for_new_session_file(
        self,
        sessions_root: str | Path,
        start_time: datetime,
        timeout: float,
        existing: set[Path] | None = None,
    ) -> Path:
        """Wait for a session file that did not exist before and was created at or after ``start_time``.

        ``existing`` is the snapshot taken before the producer was launched. When
        omitted it is taken now, which is only safe if the producer has not
        started writing yet.
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=UTC)
        root = self._require_root(sessions_root)
        snapshot = existing
        if snapshot is None:
            snapshot = await asyncio.to_thread(self.snapshot_session_files, root)
        logger.debug(f"Waiting for new session file under {root} ({len(snapshot)} existing)")

        try:
            async with asyncio.timeout(timeout):
                while True:
                    found = await asyncio.to_thread(self._earliest_new_file, root, snapshot, start_time)
                    if found is not None:
                        logger.debug(f"New session file: {found}")
                        return found
                    await asyncio.sleep(self.poll_interval_seconds)
        except TimeoutError as ex:
            raise OperationTimeoutError(
                f"No new session file appeared under {root} within {timeout}s"
            ) from ex

    def _earliest_new_file(self, root: Path, snapshot: set[Path], start_time: datetime) -> Path | None:
        candidates: list[tuple[datetime, Path]] = []
        for path in self._session_files(root):
            if path in snapshot:
                continue
            try:
                created = file_creation_time(path)
            except OSError as ex:
                logger.debug(f"Cannot stat {path}: {ex}")
                continue
            if created >= start_time:
                candidates.append((created, path))
        return min(candidates)[1] if candidates else None

    # -- validation --

    @staticmethod
    def validate_log_file(path: str | Path) -> Path:
        path = Path(path)
        if not path.is_file():
            raise SessionNotFoundError(f"Session log not found: {path}")
        try:
            with open(path, "rb"):
                pass
        except PermissionError as ex:
            raise SessionAccessDeniedError(f"Cannot read session log {path}: {ex}") from ex
        except FileNotFoundError as ex:
            raise SessionNotFoundError(f"Session log not found: {path}") from ex
        return path

    # -- listing --

    async def list_sessions(
        self, sessions_root: str | Path, session_filter: SessionFilter | None = None
    ) -> AsyncIterator[SessionInfo]:
        root = self._require_root(sessions_root)

        for path in await asyncio.to_thread(self._session_files, root):
            await asyncio.sleep(0)
            try:
                created = file_creation_time(path)
            except OSError as ex:
                logger.warning(f"Cannot stat session file {path}, skipping: {ex}")
                continue

            if session_filter is not None and session_filter.excludes_created_at(created):
                logger.trace(f"Skipping {path}: created outside the requested range")
                continue

            try:
                info = self._read_session_info(path, created)
            except (OSError, ValueError) as ex:
                logger.warning(f"Error reading session info from {path}, skipping: {ex}")
                continue
            if info is None:
                logger.trace(f"No session id found for {path}, skipping")
                continue

            if session_filter is not None and not session_filter.matches(info):
                continue
            yield info

    def _read_session_info(self, path: Path, created: datetime) -> SessionInfo | None:
        session_id = cwd = model = None
        created_at = None

        with open(path, encoding="utf-8-sig", errors="replace") as f:
            for line_number, line in enumerate(f):
                if line_number >= _HEAD_LINE_LIMIT:
                    break
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.trace(f"Unparsable line {line_number + 1} in {path}")
                    continue
                if not isinstance(record, dict) or record.get("type") != "session_meta":
                    continue

                created_at = parse_timestamp(record.get("timestamp"))
                payload = record.get("payload")
                if isinstance(payload, dict):
                    if isinstance(payload.get("id"), str) and payload["id"].strip():
                        session_id = payload["id"]
                    if isinstance(payload.get("cwd"), str):
                        cwd = payload["cwd"]
                    if isinstance(payload.get("model"), str) and payload["model"].strip():
                        model = payload["model"]
                break

        session_id = session_id or session_id_from_file_name(path)
        if session_id is None:
            return None
        return SessionInfo(
            id=session_id,
            log_path=path,
            created_at=created_at or created,
            working_directory=cwd,
            model=model,
        )

    # -- helpers --

    def _session_files(self, root: Path) -> list[Path]:
        return sorted(
            p for p in root.rglob("*") if is_session_file_name(p.name, self._file_pattern) and p.is_file()
        )

    @staticmethod
    def _require_root(sessions_root: str | Path) -> Path:
        root = Path(sessions_root)
        if not root.is_dir():
            raise SessionsRootNotFoundError(f"Sessions root not found: {root}")
        return root
