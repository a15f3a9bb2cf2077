from rollout_stream.sessions.locator import SessionLocator
from rollout_stream.sessions.models import SessionFilter, SessionInfo, wildcard_match
from rollout_stream.sessions.patterns import (
    SESSION_FILE_PATTERN,
    file_creation_time,
    is_session_file_name,
    session_id_from_file_name,
)

__all__ = [
    "SESSION_FILE_PATTERN",
    "SessionFilter",
    "SessionInfo",
    "SessionLocator",
    "file_creation_time",
    "is_session_file_name",
    "session_id_from_file_name",
    "wildcard_match",
]
