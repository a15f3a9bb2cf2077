import asyncio
import unittest
from datetime import UTC, datetime

from rollout_stream.errors import SessionNotFoundError
from rollout_stream.tailing import JsonlTailer, StreamPosition
from tests.base import ArtifactDirTestCase, LogCaptureMixin


async def _take(agen, count: int, timeout: float = 3.0) -> list:
    items = []
    async with asyncio.timeout(timeout):
        async for item in agen:
            items.append(item)
            if len(items) == count:
                break
    await agen.aclose()
    return items


class StreamPositionTests(unittest.TestCase):
    def test_defaults_and_factories(self) -> None:
        self.assertEqual(StreamPosition(from_beginning=True, follow=True), StreamPosition.default())
        ts = datetime(2025, 1, 1, tzinfo=UTC)
        self.assertEqual(ts, StreamPosition.from_timestamp(ts).after_timestamp)
        self.assertEqual(5, StreamPosition.from_offset(5, follow=False).from_byte_offset)
        self.assertFalse(StreamPosition.at_end().from_beginning)

    def test_negative_offset_rejected(self) -> None:
        with self.assertRaises(ValueError):
            StreamPosition.from_offset(-1)

    def test_poll_interval_minimum(self) -> None:
        with self.assertRaises(ValueError):
            JsonlTailer(poll_interval_seconds=0.01)


class JsonlTailerTests(LogCaptureMixin, ArtifactDirTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.start_log_capture()
        self.path = self._tmp_dir / "rollout.jsonl"
        self.tailer = JsonlTailer(poll_interval_seconds=0.05)

    def _read_all(self, position: StreamPosition) -> list[str]:
        async def scenario() -> list[str]:
            return [line async for line in self.tailer.tail(self.path, position)]

        return asyncio.run(scenario())

    def test_missing_file_raises_not_found(self) -> None:
        with self.assertRaises(SessionNotFoundError):
            self._read_all(StreamPosition(follow=False))

    def test_reads_complete_file_without_follow(self) -> None:
        self.path.write_bytes(b'\xef\xbb\xbf{"a":1}\n\n  \n{"b":2}\r\n{"c":3}')

        lines = self._read_all(StreamPosition(follow=False))

        self.assertEqual(['{"a":1}', '{"b":2}', '{"c":3}'], lines)

    def test_invalid_utf8_is_replaced(self) -> None:
        self.path.write_bytes(b'{"a":"\xff"}\n')
        self.assertEqual(['{"a":"�"}'], self._read_all(StreamPosition(follow=False)))

    def test_offsets_allow_idempotent_resume(self) -> None:
        self.path.write_text('{"n":1}\n{"n":2}\n{"n":3}\n', encoding="utf-8")

        async def scenario() -> list:
            return [line async for line in self.tailer.tail_lines(self.path, StreamPosition(follow=False))]

        tailed = asyncio.run(scenario())
        resume_at = tailed[0].end_offset
        self.assertEqual(tailed[1].offset, resume_at)

        first = self._read_all(StreamPosition.from_offset(resume_at, follow=False))
        second = self._read_all(StreamPosition.from_offset(resume_at, follow=False))

        self.assertEqual(['{"n":2}', '{"n":3}'], first)
        self.assertEqual(first, second)

    def test_at_end_skips_existing_content(self) -> None:
        self.path.write_text('{"old":true}\n', encoding="utf-8")
        self.assertEqual([], self._read_all(StreamPosition.at_end(follow=False)))

    def test_after_timestamp_reads_from_start(self) -> None:
        self.path.write_text('{"n":1}\n', encoding="utf-8")
        position = StreamPosition.from_timestamp(datetime(2030, 1, 1, tzinfo=UTC), follow=False)
        self.assertEqual(['{"n":1}'], self._read_all(position))

    def test_follow_yields_appended_lines_and_holds_back_fragments(self) -> None:
        self.path.write_text('{"n":1}\n', encoding="utf-8")

        async def writer() -> None:
            await asyncio.sleep(0.1)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write('{"n":2}\n{"n":')
                f.flush()
                await asyncio.sleep(0.15)
                f.write('3}\n')

        async def scenario() -> list[str]:
            write_task = asyncio.create_task(writer())
            lines = await _take(self.tailer.tail(self.path), 3)
            await write_task
            return lines

        self.assertEqual(['{"n":1}', '{"n":2}', '{"n":3}'], asyncio.run(scenario()))

    def test_truncation_restarts_from_beginning(self) -> None:
        self.path.write_text('{"n":1}\n{"n":2}\n', encoding="utf-8")

        async def writer() -> None:
            await asyncio.sleep(0.15)
            self.path.write_text('{"new":1}\n', encoding="utf-8")

        async def scenario() -> list[str]:
            write_task = asyncio.create_task(writer())
            lines = await _take(self.tailer.tail(self.path), 3)
            await write_task
            return lines

        self.assertEqual(['{"n":1}', '{"n":2}', '{"new":1}'], asyncio.run(scenario()))
        self.assertTrue(any("shrank" in message for message in self.warning_messages()))

    def test_cancellation_interrupts_poll_sleep(self) -> None:
        self.path.write_text("", encoding="utf-8")
        tailer = JsonlTailer(poll_interval_seconds=30)

        async def consume() -> None:
            async for _ in tailer.tail(self.path):
                pass

        async def scenario() -> float:
            task = asyncio.create_task(consume())
            await asyncio.sleep(0.05)
            loop = asyncio.get_running_loop()
            started = loop.time()
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task
            return loop.time() - started

        self.assertLess(asyncio.run(scenario()), 1.0)


if __name__ == "__main__":
    unittest.main()
