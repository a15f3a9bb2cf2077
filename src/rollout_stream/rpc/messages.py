"""Newline-delimited JSON-RPC style messages exchanged with the agent process."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from rollout_stream.errors import ProtocolFaultError

JSONRPC_VERSION = "2.0"

METHOD_NOT_SUPPORTED = -32601
HANDLER_FAILED = -32000


@dataclass(frozen=True)
class JsonRpcError:
    code: int
    message: str
    data: Any = None

    @classmethod
    def from_obj(cls, obj: Any) -> JsonRpcError:
        if not isinstance(obj, dict):
            return cls(code=0, message=str(obj))
        code = obj.get("code")
        message = obj.get("message")
        return cls(
            code=code if isinstance(code, int) and not isinstance(code, bool) else 0,
            message=message if isinstance(message, str) else "",
            data=obj.get("data"),
        )

    def to_obj(self) -> dict:
        obj: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            obj["data"] = self.data
        return obj


@dataclass(frozen=True)
class JsonRpcRequest:
    id: int | str
    method: str
    params: Any = None


@dataclass(frozen=True)
class JsonRpcResponse:
    id: int | str
    result: Any = None
    error: JsonRpcError | None = None
    has_result: bool = False


@dataclass(frozen=True)
class JsonRpcNotification:
    method: str
    params: Any = None


JsonRpcMessage = JsonRpcRequest | JsonRpcResponse | JsonRpcNotification


def to_wire(message: JsonRpcMessage, include_jsonrpc_header: bool = False) -> dict:
    obj: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION} if include_jsonrpc_header else {}
    match message:
        case JsonRpcRequest(id=request_id, method=method, params=params):
            obj["id"] = request_id
            obj["method"] = method
            if params is not None:
                obj["params"] = params
        case JsonRpcNotification(method=method, params=params):
            obj["method"] = method
            if params is not None:
                obj["params"] = params
        case JsonRpcResponse(id=request_id, error=error) if error is not None:
            obj["id"] = request_id
            obj["error"] = error.to_obj()
        case JsonRpcResponse(id=request_id, result=result):
            obj["id"] = request_id
            obj["result"] = result
    return obj


def encode_message(message: JsonRpcMessage, include_jsonrpc_header: bool = False) -> bytes:
    """One JSON object terminated by a newline."""
    text = json.dumps(to_wire(message, include_jsonrpc_header), ensure_ascii=False, separators=(",", ":"))
    return (text + "\n").encode("utf-8")


def decode_message(line: str) -> JsonRpcMessage:
    """Classify one inbound line by shape.

    ``id`` with ``method`` is a server request, ``id`` alone a response and
    ``method`` alone a notification. Anything else cannot be framed and raises
    :class:`ProtocolFaultError`.
    """
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as ex:
        raise ProtocolFaultError(f"Malformed JSON on message channel: {ex.msg}") from ex
    except RecursionError as ex:
        raise ProtocolFaultError("JSON on message channel is nested too deeply to decode") from ex
    if not isinstance(obj, dict):
        raise ProtocolFaultError(f"Expected a JSON object on message channel, got {type(obj).__name__}")

    request_id = obj.get("id")
    has_id = request_id is not None
    has_method = "method" in obj

    if has_id and (isinstance(request_id, bool) or not isinstance(request_id, (int, str))):
        raise ProtocolFaultError(f"Invalid message id: {request_id!r}")
    if has_method and not isinstance(obj["method"], str):
        raise ProtocolFaultError(f"Invalid method: {obj['method']!r}")

    if has_id and has_method:
        return JsonRpcRequest(id=request_id, method=obj["method"], params=obj.get("params"))
    if has_method:
        return JsonRpcNotification(method=obj["method"], params=obj.get("params"))
    if has_id:
        error = obj.get("error")
        return JsonRpcResponse(
            id=request_id,
            result=obj.get("result"),
            error=JsonRpcError.from_obj(error) if error is not None else None,
            has_result="result" in obj,
        )
    raise ProtocolFaultError(f"Unclassifiable message (no id or method): {line[:200]}")
