"""Tests for coalescing of streaming message updates."""
import asyncio

import pytest

from services.exceptions import MessageNotFound
from services.streaming import UpdateCoalescer


class RecordingWriter:
    def __init__(self, fail_times=0):
        self.writes = []
        self.fail_times = fail_times

    async def __call__(self, message_id, updates):
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("database is locked")
        self.writes.append((message_id, dict(updates)))


class TestUpdateCoalescer:
    async def test_updates_are_merged(self):
        writer = RecordingWriter()
        coalescer = UpdateCoalescer(writer, interval=60)

        coalescer.push("m1", {"content": "He"})
        coalescer.push("m1", {"content": "Hello", "reasoning": "thinking"})
        coalescer.push("m2", {"content": "Other"})
        await coalescer.aclose()

        assert writer.writes == [
            ("m1", {"content": "Hello", "reasoning": "thinking"}),
            ("m2", {"content": "Other"}),
        ]

    async def test_one_write_per_interval(self):
        writer = RecordingWriter()
        coalescer = UpdateCoalescer(writer, interval=0.05)

        for i in range(20):
            coalescer.push("m1", {"content": "x" * i})
        assert writer.writes == []

        await asyncio.sleep(0.2)

        assert writer.writes == [("m1", {"content": "x" * 19})]
        assert not coalescer.has_pending
        await coalescer.aclose()

    async def test_push_after_flush_schedules_again(self):
        writer = RecordingWriter()
        coalescer = UpdateCoalescer(writer, interval=0.01)

        coalescer.push("m1", {"content": "a"})
        await asyncio.sleep(0.1)
        coalescer.push("m1", {"content": "ab"})
        await asyncio.sleep(0.1)

        assert [w[1]["content"] for w in writer.writes] == ["a", "ab"]
        await coalescer.aclose()

    async def test_aclose_writes_pending_without_waiting(self):
        writer = RecordingWriter()
        coalescer = UpdateCoalescer(writer, interval=60)

        coalescer.push("m1", {"content": "final"})
        await asyncio.wait_for(coalescer.aclose(), timeout=1)

        assert writer.writes == [("m1", {"content": "final"})]

    async def test_failed_flush_keeps_updates(self):
        writer = RecordingWriter(fail_times=1)
        coalescer = UpdateCoalescer(writer, interval=60)

        coalescer.push("m1", {"content": "partial"})
        with pytest.raises(RuntimeError):
            await coalescer.flush()
        assert coalescer.has_pending

        coalescer.push("m1", {"reasoning": "newer"})
        await coalescer.aclose()

        assert writer.writes == [("m1", {"content": "partial", "reasoning": "newer"})]

    async def test_discard(self):
        writer = RecordingWriter()
        coalescer = UpdateCoalescer(writer, interval=60)

        coalescer.push("m1", {"content": "gone"})
        coalescer.discard(["m1"])
        await coalescer.aclose()

        assert writer.writes == []
        assert not coalescer.has_pending


class MissingTargetWriter(RecordingWriter):
    def __init__(self, missing):
        super().__init__()
        self.missing = set(missing)

    async def __call__(self, message_id, updates):
        if message_id in self.missing:
            raise MessageNotFound(message_id)
        await super().__call__(message_id, updates)


class TestFailureRecovery:
    async def test_updates_for_a_deleted_message_are_dropped(self):
        writer = MissingTargetWriter(missing=["gone"])
        coalescer = UpdateCoalescer(writer, interval=60, discard_on=(MessageNotFound,))

        coalescer.push("gone", {"content": "orphan"})
        coalescer.push("m2", {"content": "kept"})
        await coalescer.flush()

        assert writer.writes == [("m2", {"content": "kept"})]
        assert not coalescer.has_pending

        # Later flushes are unaffected
        coalescer.push("m3", {"content": "next"})
        await coalescer.aclose()
        assert writer.writes[-1] == ("m3", {"content": "next"})

    async def test_other_errors_are_not_discarded(self):
        writer = RecordingWriter(fail_times=1)
        coalescer = UpdateCoalescer(writer, interval=60, discard_on=(MessageNotFound,))

        coalescer.push("m1", {"content": "partial"})
        with pytest.raises(RuntimeError):
            await coalescer.flush()

        assert coalescer.has_pending
        await coalescer.aclose()

    async def test_background_flush_retries_after_transient_failure(self):
        writer = RecordingWriter(fail_times=1)
        coalescer = UpdateCoalescer(writer, interval=0.01)

        coalescer.push("m1", {"content": "final"})
        await asyncio.sleep(0.3)

        assert writer.writes == [("m1", {"content": "final"})]
        assert not coalescer.has_pending
        await coalescer.aclose()

    async def test_push_during_background_flush_is_written(self):
        gate = asyncio.Event()
        writes = []

        async def slow_writer(message_id, updates):
            writes.append(dict(updates))
            if len(writes) == 1:
                await gate.wait()

        coalescer = UpdateCoalescer(slow_writer, interval=0.01)
        coalescer.push("m1", {"content": "a"})
        await asyncio.sleep(0.05)

        coalescer.push("m1", {"content": "ab"})
        gate.set()
        await asyncio.sleep(0.1)

        assert [w["content"] for w in writes] == ["a", "ab"]
        await coalescer.aclose()
