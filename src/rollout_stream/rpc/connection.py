"""JSON-RPC style connection over a pair of byte streams.

One background task reads the inbound stream and is the only reader of it.
Responses complete pending calls, server requests go to a single handler and
notifications are broadcast to every subscription.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections.abc import Callable
from typing import Any, Protocol

from loguru import logger

from rollout_stream.errors import (
    ConnectionClosedError,
    OperationTimeoutError,
    ProtocolFaultError,
    RemoteError,
    RolloutStreamError,
)
from rollout_stream.rpc.broadcast import Broadcast, Subscription
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

# Handlers may be sync or async; the result becomes the reply's "result".
ServerRequestHandler = Callable[[JsonRpcRequest], Any]


class LineReader(Protocol):
    async def readline(self) -> bytes | str: ...


class LineWriter(Protocol):
    def write(self, data: bytes) -> Any: ...
    async def drain(self) -> None: ...


class JsonRpcConnection:
    def __init__(
        self,
        reader: LineReader,
        writer: LineWriter,
        *,
        include_jsonrpc_header: bool = False,
        notification_buffer_capacity: int = 256,
        server_request_handler: ServerRequestHandler | None = None,
    ):
        self._reader = reader
        self._writer = writer
        self._include_header = include_jsonrpc_header
        self._server_request_handler = server_request_handler
        self._notifications: Broadcast[JsonRpcNotification] = Broadcast(notification_buffer_capacity)

        self._ids = itertools.count(1)
        self._pending: dict[int | str, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._read_task: asyncio.Task | None = None
        self._handler_tasks: set[asyncio.Task] = set()
        self._closed_error: RolloutStreamError | None = None
        self._closing = False

    @property
    def is_closed(self) -> bool:
        return self._closed_error is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def set_server_request_handler(self, handler: ServerRequestHandler | None) -> None:
        self._server_request_handler = handler

    async def start(self) -> None:
        if self._read_task is not None:
            return
        self._read_task = asyncio.create_task(self._read_loop(), name="jsonrpc-read-loop")
        logger.debug("Message channel started")

    async def __aenter__(self) -> JsonRpcConnection:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -- outbound --

    async def send_request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Send a request and wait for its result.

        Raises RemoteError if the peer answers with an error object.
        """
        self._raise_if_closed()
        if self._read_task is None:
            raise RuntimeError("Connection not started")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        # Any outcome retires the id: response, fault, caller cancellation or timeout.
        future.add_done_callback(lambda _: self._pending.pop(request_id, None))

        try:
            await self._send(JsonRpcRequest(id=request_id, method=method, params=params))
        except BaseException:
            future.cancel()
            raise

        if timeout is None:
            return await future
        try:
            async with asyncio.timeout(timeout):
                return await future
        except TimeoutError as ex:
            raise OperationTimeoutError(f"No response to {method!r} (id={request_id}) within {timeout}s") from ex

    async def send_notification(self, method: str, params: Any = None) -> None:
        self._raise_if_closed()
        await self._send(JsonRpcNotification(method=method, params=params))

    def notifications(self) -> Subscription[JsonRpcNotification]:
        """A new subscription to server notifications, starting from now."""
        return self._notifications.subscribe()

    async def _send(self, message: JsonRpcMessage) -> None:
        data = encode_message(message, self._include_header)
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as ex:
                raise ConnectionClosedError(f"Failed to write to message channel: {ex}") from ex
        logger.trace(f"Sent {data[:200]!r}")

    # -- inbound --

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    self._shutdown(ConnectionClosedError("Message channel closed by peer"))
                    return
                text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
                text = text.strip()
                if text:
                    self._dispatch(decode_message(text))
        except ProtocolFaultError as ex:
            logger.error(f"Protocol fault on message channel: {ex}")
            self._shutdown(ex)
        except (OSError, ValueError) as ex:
            logger.error(f"Message channel read failed: {ex}")
            self._shutdown(ConnectionClosedError(f"Message channel read failed: {ex}"))
        except Exception as ex:
            logger.exception(f"Unexpected failure in message channel read loop: {ex}")
            self._shutdown(ProtocolFaultError(f"Message channel read loop failed: {ex!r}"))

    def _dispatch(self, message: JsonRpcMessage) -> None:
        match message:
            case JsonRpcResponse():
                self._complete(message)
            case JsonRpcRequest():
                task = asyncio.create_task(self._answer(message), name=f"jsonrpc-server-request-{message.id}")
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
            case JsonRpcNotification():
                logger.trace(f"Notification {message.method}")
                self._notifications.publish(message)

    def _complete(self, response: JsonRpcResponse) -> None:
        future = self._pending.get(response.id)
        if future is None or future.done():
            logger.warning(f"Dropping response for unknown request id {response.id!r}")
            return
        if response.error is not None:
            future.set_exception(RemoteError(response.error))
        elif response.has_result:
            future.set_result(response.result)
        else:
            future.set_exception(ProtocolFaultError(f"Response {response.id!r} has neither result nor error"))

    async def _answer(self, request: JsonRpcRequest) -> None:
        handler = self._server_request_handler
        if handler is None:
            reply = JsonRpcResponse(
                id=request.id,
                error=JsonRpcError(METHOD_NOT_SUPPORTED, f"Method not supported: {request.method}"),
            )
        else:
            try:
                result = handler(request)
                if inspect.isawaitable(result):
                    result = await result
                reply = JsonRpcResponse(id=request.id, result=result, has_result=True)
            except RemoteError as ex:
                reply = JsonRpcResponse(id=request.id, error=ex.error)
            except Exception as ex:
                logger.warning(f"Server request handler failed for {request.method}: {ex}")
                reply = JsonRpcResponse(
                    id=request.id, error=JsonRpcError(HANDLER_FAILED, str(ex) or type(ex).__name__)
                )

        try:
            await self._send(reply)
        except ConnectionClosedError as ex:
            logger.debug(f"Could not answer server request {request.id!r}: {ex}")

    # -- shutdown --

    def _raise_if_closed(self) -> None:
        if self._closed_error is not None:
            raise type(self._closed_error)(str(self._closed_error)) from self._closed_error

    def _shutdown(self, error: RolloutStreamError) -> None:
        if self._closed_error is not None:
            return
        self._closed_error = error
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
        # A clean close ends subscriptions; a fault is raised to them.
        self._notifications.close(error if isinstance(error, ProtocolFaultError) else None)
        for task in list(self._handler_tasks):
            task.cancel()
        logger.debug(f"Message channel closed: {error}")

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            await asyncio.gather(self._read_task, return_exceptions=True)
        self._shutdown(ConnectionClosedError("Message channel closed"))
        tasks = [task for task in self._handler_tasks if task is not asyncio.current_task()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
