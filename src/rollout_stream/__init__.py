from loguru import logger

from rollout_stream.errors import (
    ConnectionClosedError,
    OperationTimeoutError,
    ProtocolFaultError,
    RemoteError,
    RolloutStreamError,
    SessionAccessDeniedError,
    SessionNotFoundError,
    SessionsRootNotFoundError,
)

logger.disable("rollout_stream")

__all__ = [
    "ConnectionClosedError",
    "OperationTimeoutError",
    "ProtocolFaultError",
    "RemoteError",
    "RolloutStreamError",
    "SessionAccessDeniedError",
    "SessionNotFoundError",
    "SessionsRootNotFoundError",
]
