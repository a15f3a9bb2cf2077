from rollout_stream.rpc.broadcast import Broadcast, Subscription
from rollout_stream.rpc.connection import JsonRpcConnection, ServerRequestHandler
from rollout_stream.rpc.messages import (
    HANDLER_FAILED,
    METHOD_NOT_SUPPORTED,
    JsonRpcError,
    JsonRpcMessage,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    decode_message,
    encode_message,
)

__all__ = [
    "HANDLER_FAILED",
    "METHOD_NOT_SUPPORTED",
    "Broadcast",
    "JsonRpcConnection",
    "JsonRpcError",
    "JsonRpcMessage",
    "JsonRpcNotification",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "ServerRequestHandler",
    "Subscription",
    "decode_message",
    "encode_message",
]
