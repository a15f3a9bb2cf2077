"""File-name conventions of session rollouts.

``<root>/<yyyy>/<mm>/<dd>/rollout-<timestamp>-<id>.jsonl``
"""

from __future__ import annotations

import os
import re
from datetime import UTC, datetime
from pathlib import Path

SESSION_FILE_PATTERN = re.compile(
    r"^(rollout-.*\.jsonl|.*-[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\.jsonl)$",
    re.IGNORECASE,
)

_TRAILING_UUID = re.compile(
    r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$",
    re.IGNORECASE,
)


def is_session_file_name(name: str, pattern: re.Pattern[str] = SESSION_FILE_PATTERN) -> bool:
    return pattern.match(name) is not None


def session_id_from_file_name(path: str | Path) -> str | None:
    """Id embedded in a rollout file name: a trailing UUID, else the text after the last ``-``."""
    stem = Path(path).name
    if stem.lower().endswith(".jsonl"):
        stem = stem[: -len(".jsonl")]
    match = _TRAILING_UUID.search(stem)
    if match:
        return match.group(1)
    _, sep, tail = stem.rpartition("-")
    if sep and tail.strip():
        return tail
    return None


def file_creation_time(path: str | Path) -> datetime:
    """Creation time in UTC; falls back to ``st_ctime`` where birth time is unavailable."""
    stat = os.stat(path)
    created = getattr(stat, "st_birthtime", None)
    if created is None:
        created = stat.st_ctime
    return datetime.fromtimestamp(created, UTC)
