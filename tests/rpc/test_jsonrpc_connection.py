import asyncio
import json
import unittest

from rollout_stream.errors import (
    ConnectionClosedError,
    OperationTimeoutError,
    ProtocolFaultError,
    RemoteError,
)
from rollout_stream.rpc import (
    JsonRpcConnection,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    decode_message,
    encode_message,
)
from tests.base import LogCaptureMixin


class _RecordingWriter:
    def __init__(self):
        self.lines: list[dict] = []
        self._written = asyncio.Event()

    def write(self, data: bytes) -> None:
        for raw in data.decode("utf-8").splitlines():
            self.lines.append(json.loads(raw))
        self._written.set()

    async def drain(self) -> None:
        return None

    async def wait_for(self, count: int) -> list[dict]:
        async with asyncio.timeout(2):
            while len(self.lines) < count:
                self._written.clear()
                await self._written.wait()
        return self.lines


def _feed(reader: asyncio.StreamReader, obj) -> None:
    text = obj if isinstance(obj, str) else json.dumps(obj)
    reader.feed_data((text + "\n").encode("utf-8"))


class _ScriptedReader:
    """Hands out queued lines; a queued exception is raised from readline."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()

    async def readline(self) -> bytes:
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        return item


class MessageCodecTests(unittest.TestCase):
    def test_classifies_by_shape(self) -> None:
        self.assertIsInstance(decode_message('{"id":1,"method":"approve","params":{}}'), JsonRpcRequest)
        self.assertIsInstance(decode_message('{"method":"turn/started"}'), JsonRpcNotification)
        response = decode_message('{"id":"1","error":{"code":-1,"message":"bad"}}')
        self.assertIsInstance(response, JsonRpcResponse)
        self.assertEqual(-1, response.error.code)

    def test_unframeable_lines_are_protocol_faults(self) -> None:
        for line in ("{oops", "[]", '{"result":1}', '{"method":5}', '{"id":true,"result":1}'):
            with self.subTest(line=line):
                with self.assertRaises(ProtocolFaultError):
                    decode_message(line)

    def test_deeply_nested_json_is_a_protocol_fault(self) -> None:
        with self.assertRaises(ProtocolFaultError):
            decode_message('{"id":1,"result":' + "[" * 1_000_000 + "]" * 1_000_000 + "}")

    def test_encode_optional_header(self) -> None:
        request = JsonRpcRequest(id=3, method="ping")
        self.assertEqual({"id": 3, "method": "ping"}, json.loads(encode_message(request)))
        self.assertEqual("2.0", json.loads(encode_message(request, include_jsonrpc_header=True))["jsonrpc"])
        self.assertTrue(encode_message(request).endswith(b"\n"))


class JsonRpcConnectionTests(LogCaptureMixin, unittest.TestCase):
    def setUp(self) -> None:
        self.start_log_capture()

    def test_response_resolves_matching_request_and_unknown_id_is_dropped(self) -> None:
        async def scenario() -> None:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer) as conn:
                call = asyncio.create_task(conn.send_request("thread/start", {"x": 1}))
                sent = (await writer.wait_for(1))[0]
                self.assertEqual("thread/start", sent["method"])
                self.assertNotIn("jsonrpc", sent)

                _feed(reader, {"id": 99, "result": {"ok": False}})
                await asyncio.sleep(0.05)
                self.assertFalse(call.done())

                _feed(reader, {"id": sent["id"], "result": {"ok": True}})
                self.assertEqual({"ok": True}, await asyncio.wait_for(call, 2))
                self.assertEqual(0, conn.pending_count)

        asyncio.run(scenario())
        self.assertTrue(any("unknown request id 99" in m for m in self.warning_messages()))

    def test_ids_increment_and_header_is_included(self) -> None:
        async def scenario() -> list[dict]:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer, include_jsonrpc_header=True) as conn:
                first = asyncio.create_task(conn.send_request("a"))
                second = asyncio.create_task(conn.send_request("b"))
                lines = await writer.wait_for(2)
                for line in lines:
                    _feed(reader, {"jsonrpc": "2.0", "id": line["id"], "result": line["method"]})
                self.assertEqual(["a", "b"], [await first, await second])
                return lines

        lines = asyncio.run(scenario())
        self.assertEqual([1, 2], [line["id"] for line in lines])
        self.assertTrue(all(line["jsonrpc"] == "2.0" for line in lines))

    def test_error_response_raises_remote_error(self) -> None:
        async def scenario() -> None:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer) as conn:
                call = asyncio.create_task(conn.send_request("bad"))
                sent = (await writer.wait_for(1))[0]
                _feed(reader, {"id": sent["id"], "error": {"code": -32602, "message": "invalid params"}})
                with self.assertRaises(RemoteError) as ctx:
                    await call
                self.assertEqual(-32602, ctx.exception.error.code)

        asyncio.run(scenario())

    def test_response_without_result_or_error_fails_only_that_call(self) -> None:
        async def scenario() -> None:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer) as conn:
                broken = asyncio.create_task(conn.send_request("a"))
                healthy = asyncio.create_task(conn.send_request("b"))
                first, second = await writer.wait_for(2)
                _feed(reader, {"id": first["id"]})
                with self.assertRaises(ProtocolFaultError):
                    await broken
                _feed(reader, {"id": second["id"], "result": None})
                self.assertIsNone(await healthy)
                self.assertFalse(conn.is_closed)

        asyncio.run(scenario())

    def test_timeout_retires_request_id(self) -> None:
        async def scenario() -> None:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer) as conn:
                with self.assertRaises(OperationTimeoutError):
                    await conn.send_request("slow", timeout=0.05)
                self.assertEqual(0, conn.pending_count)

        asyncio.run(scenario())

    def test_malformed_line_faults_pending_calls_and_subscriptions(self) -> None:
        async def scenario() -> None:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            conn = JsonRpcConnection(reader, writer)
            await conn.start()
            subscription = conn.notifications()
            call = asyncio.create_task(conn.send_request("a"))
            await writer.wait_for(1)

            _feed(reader, "{this is not json")

            with self.assertRaises(ProtocolFaultError):
                await asyncio.wait_for(call, 2)
            with self.assertRaises(ProtocolFaultError):
                await anext(subscription)
            with self.assertRaises(ProtocolFaultError):
                await conn.send_request("b")
            self.assertTrue(conn.is_closed)
            await conn.close()

        asyncio.run(scenario())

    def test_string_id_does_not_complete_integer_request(self) -> None:
        async def scenario() -> None:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer) as conn:
                call = asyncio.create_task(conn.send_request("a"))
                sent = (await writer.wait_for(1))[0]

                _feed(reader, {"id": str(sent["id"]), "result": "wrong"})
                await asyncio.sleep(0.05)
                self.assertFalse(call.done())

                _feed(reader, {"id": sent["id"], "result": "right"})
                self.assertEqual("right", await asyncio.wait_for(call, 2))

        asyncio.run(scenario())
        self.assertTrue(any("unknown request id '1'" in m for m in self.warning_messages()))

    def test_deeply_nested_line_faults_pending_calls(self) -> None:
        async def scenario() -> None:
            reader = _ScriptedReader()
            writer = _RecordingWriter()
            conn = JsonRpcConnection(reader, writer)
            await conn.start()
            call = asyncio.create_task(conn.send_request("a"))
            await writer.wait_for(1)

            nested = '{"id":1,"result":' + "[" * 1_000_000 + "]" * 1_000_000 + "}\n"
            reader.queue.put_nowait(nested.encode("utf-8"))

            with self.assertRaises(ProtocolFaultError):
                await asyncio.wait_for(call, 2)
            self.assertTrue(conn.is_closed)
            await conn.close()

        asyncio.run(scenario())

    def test_unexpected_read_failure_fails_pending_calls(self) -> None:
        async def scenario() -> None:
            reader = _ScriptedReader()
            writer = _RecordingWriter()
            conn = JsonRpcConnection(reader, writer)
            await conn.start()
            subscription = conn.notifications()
            call = asyncio.create_task(conn.send_request("a"))
            await writer.wait_for(1)

            reader.queue.put_nowait(RuntimeError("reader exploded"))

            with self.assertRaises(ProtocolFaultError):
                await asyncio.wait_for(call, 2)
            with self.assertRaises(ProtocolFaultError):
                await anext(subscription)
            with self.assertRaises(ProtocolFaultError):
                await conn.send_request("b")
            self.assertEqual(0, conn.pending_count)
            await conn.close()

        asyncio.run(scenario())

    def test_end_of_stream_closes_connection(self) -> None:
        async def scenario() -> None:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer) as conn:
                subscription = conn.notifications()
                call = asyncio.create_task(conn.send_request("a"))
                await writer.wait_for(1)
                reader.feed_eof()

                with self.assertRaises(ConnectionClosedError):
                    await asyncio.wait_for(call, 2)
                self.assertEqual([], [n async for n in subscription])

        asyncio.run(scenario())

    def test_close_fails_pending_calls_and_is_idempotent(self) -> None:
        async def scenario() -> None:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            conn = JsonRpcConnection(reader, writer)
            await conn.start()
            call = asyncio.create_task(conn.send_request("a"))
            await writer.wait_for(1)

            await conn.close()
            await conn.close()

            with self.assertRaises(ConnectionClosedError):
                await call
            with self.assertRaises(ConnectionClosedError):
                await conn.send_notification("late")

        asyncio.run(scenario())

    def test_notifications_fan_out_and_drop_oldest(self) -> None:
        async def scenario() -> None:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer, notification_buffer_capacity=2) as conn:
                slow = conn.notifications()
                fast = conn.notifications()
                for n in range(4):
                    _feed(reader, {"method": "progress", "params": {"n": n}})
                await asyncio.sleep(0.05)

                self.assertEqual([2, 3], [(await anext(slow)).params["n"] for _ in range(2)])
                self.assertEqual(2, slow.dropped)
                self.assertEqual(2, (await anext(fast)).params["n"])

        asyncio.run(scenario())

    def test_server_request_default_reply_is_method_not_supported(self) -> None:
        async def scenario() -> dict:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer):
                _feed(reader, {"id": 7, "method": "applyPatchApproval", "params": {}})
                return (await writer.wait_for(1))[0]

        reply = asyncio.run(scenario())
        self.assertEqual(7, reply["id"])
        self.assertEqual(-32601, reply["error"]["code"])

    def test_server_request_handler_result_and_failure(self) -> None:
        async def handler(request: JsonRpcRequest):
            if request.method == "explode":
                raise RuntimeError("boom")
            return {"decision": "approved", "echo": request.params}

        async def scenario() -> list[dict]:
            reader = asyncio.StreamReader()
            writer = _RecordingWriter()
            async with JsonRpcConnection(reader, writer, server_request_handler=handler):
                _feed(reader, {"id": "s1", "method": "execCommandApproval", "params": {"cmd": "ls"}})
                _feed(reader, {"id": "s2", "method": "explode"})
                return await writer.wait_for(2)

        replies = {reply["id"]: reply for reply in asyncio.run(scenario())}
        self.assertEqual({"decision": "approved", "echo": {"cmd": "ls"}}, replies["s1"]["result"])
        self.assertEqual(-32000, replies["s2"]["error"]["code"])
        self.assertEqual("boom", replies["s2"]["error"]["message"])


if __name__ == "__main__":
    unittest.main()
