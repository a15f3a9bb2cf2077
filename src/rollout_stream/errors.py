from __future__ import annotations

from typing import Any


class RolloutStreamError(Exception):
    """Base class for errors raised by the session log pipeline."""


class SessionNotFoundError(RolloutStreamError, FileNotFoundError):
    pass


class SessionsRootNotFoundError(SessionNotFoundError):
    pass


class SessionAccessDeniedError(RolloutStreamError, PermissionError):
    pass


class OperationTimeoutError(RolloutStreamError, TimeoutError):
    pass


class ProtocolFaultError(RolloutStreamError):
    """The message channel saw a line it could not frame; the connection is unusable."""


class ConnectionClosedError(RolloutStreamError):
    pass


class RemoteError(RolloutStreamError):
    def __init__(self, error: Any):
        super().__init__(f"{error.code}: {error.message}")
        self.error = error
