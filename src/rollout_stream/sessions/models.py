from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


@dataclass(frozen=True)
class SessionInfo:
    """A discovered session log and the metadata read from its head."""

    id: str
    log_path: Path
    created_at: datetime
    working_directory: str | None = None
    model: str | None = None

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("Session id must be a non-empty string")


@dataclass(frozen=True)
class SessionFilter:
    """Predicates applied while listing sessions. Unset fields match anything."""

    from_date: datetime | None = None
    to_date: datetime | None = None
    working_directory: str | None = None
    model: str | None = None
    session_id_pattern: str | None = None

    def __post_init__(self):
        # Creation times are aware UTC; naive bounds are read as UTC.
        for name in ("from_date", "to_date"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=UTC))
        if self.from_date is not None and self.to_date is not None and self.to_date < self.from_date:
            raise ValueError("to_date must not be earlier than from_date")

    @classmethod
    def for_date_range(cls, from_date: datetime | None = None, to_date: datetime | None = None) -> SessionFilter:
        return cls(from_date=from_date, to_date=to_date)

    @classmethod
    def for_working_directory(cls, working_directory: str) -> SessionFilter:
        return cls(working_directory=working_directory)

    @classmethod
    def for_model(cls, model: str) -> SessionFilter:
        return cls(model=model)

    @classmethod
    def for_session_id_pattern(cls, pattern: str) -> SessionFilter:
        return cls(session_id_pattern=pattern)

    def excludes_created_at(self, created_at: datetime) -> bool:
        if self.from_date is not None and created_at < self.from_date:
            return True
        return self.to_date is not None and created_at > self.to_date

    def matches(self, session: SessionInfo) -> bool:
        if self.excludes_created_at(session.created_at):
            return False
        if self.working_directory and not _equals_ignore_case(session.working_directory, self.working_directory):
            return False
        if self.model and not _equals_ignore_case(session.model, self.model):
            return False
        if self.session_id_pattern and not wildcard_match(session.id, self.session_id_pattern):
            return False
        return True


def _equals_ignore_case(value: str | None, expected: str) -> bool:
    return value is not None and value.casefold() == expected.casefold()


def wildcard_match(value: str, pattern: str) -> bool:
    """Case-insensitive match where ``*`` is any run of characters and ``?`` any one."""
    regex = "".join(".*" if ch == "*" else "." if ch == "?" else re.escape(ch) for ch in pattern)
    return re.fullmatch(regex, value, re.IGNORECASE | re.DOTALL) is not None
