"""
Replay Buffer Unit Tests
========================

Tests for the per-query replay log including:
- Message id validation
- Append/read ordering and offsets
- Deletion
- TTL eviction of abandoned buffers
"""

import os
import time
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from sandbox_relay.services.replay_buffer import (
    ReplayBuffer,
    buffer_path,
    read_buffer_lines,
    sweep_stale_buffers,
    validate_msg_id,
)


class TestMsgIdValidation:
    """Tests for message id validation."""

    @pytest.mark.unit
    @pytest.mark.parametrize("msg_id", ["abc", "msg-123", "a_b-C9", "x" * 128])
    def test_valid_ids(self, msg_id):
        assert validate_msg_id(msg_id) is True

    @pytest.mark.unit
    @pytest.mark.parametrize("msg_id", ["", "../etc/passwd", "a/b", "a.b", "x" * 129, "id with space"])
    def test_invalid_ids(self, msg_id):
        assert validate_msg_id(msg_id) is False

    @pytest.mark.unit
    def test_buffer_rejects_invalid_id(self, buffer_dir):
        with pytest.raises(ValueError):
            ReplayBuffer(buffer_dir, "../escape")

    @pytest.mark.unit
    def test_buffer_path_naming(self, buffer_dir):
        assert buffer_path(buffer_dir, "m1") == buffer_dir / "vf-stream-m1.jsonl"


class TestReplayBuffer:
    """Tests for appending and reading buffered lines."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lines_read_back_in_append_order(self, buffer_dir):
        buffer = ReplayBuffer(buffer_dir, "m1")
        for i in range(5):
            await buffer.append(f'{{"n": {i}}}')

        lines = await buffer.read_lines()

        assert lines == [f'{{"n": {i}}}' for i in range(5)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_read_from_offset(self, buffer_dir):
        buffer = ReplayBuffer(buffer_dir, "m1")
        for line in ["a", "b", "c"]:
            await buffer.append(line)

        assert await buffer.read_lines(offset=1) == ["b", "c"]
        assert await buffer.read_lines(offset=10) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unicode_line_separators_stay_inside_line(self, buffer_dir):
        buffer = ReplayBuffer(buffer_dir, "m1")
        line = '{"type": "text", "text": "a\u2028b\u2029c\x85d\x0ce"}'
        await buffer.append(line)
        await buffer.append('{"n": 2}')

        lines = await buffer.read_lines()

        assert lines == [line, '{"n": 2}']
        assert await buffer.read_lines(offset=1) == ['{"n": 2}']

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_carriage_return_preserved(self, buffer_dir):
        buffer = ReplayBuffer(buffer_dir, "m1")
        await buffer.append("progress\r50%")

        assert await buffer.read_lines() == ["progress\r50%"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_buffer_reads_empty(self, buffer_dir):
        buffer = ReplayBuffer(buffer_dir, "never-written")

        assert await buffer.exists() is False
        assert await buffer.read_lines() == []
        assert await read_buffer_lines(buffer.path) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delete(self, buffer_dir):
        buffer = ReplayBuffer(buffer_dir, "m1")
        await buffer.append("line")

        assert await buffer.delete() is True
        assert await buffer.exists() is False
        assert await buffer.delete() is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_append_failure_does_not_raise(self, tmp_path):
        buffer = ReplayBuffer(tmp_path / "does-not-exist", "m1")

        await buffer.append("line")

        assert await buffer.exists() is False


class TestSweepStaleBuffers:
    """Tests for TTL eviction of retained buffers."""

    def _write(self, path: Path, age: float) -> None:
        path.write_text("line\n")
        stamp = time.time() - age
        os.utime(path, (stamp, stamp))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_evicts_only_old_buffers(self, buffer_dir):
        old = buffer_path(buffer_dir, "old")
        fresh = buffer_path(buffer_dir, "fresh")
        self._write(old, age=7200)
        self._write(fresh, age=10)

        removed = await sweep_stale_buffers(buffer_dir, ttl=3600)

        assert removed == ["vf-stream-old.jsonl"]
        assert not old.exists()
        assert fresh.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keeps_active_buffer(self, buffer_dir):
        active = buffer_path(buffer_dir, "active")
        self._write(active, age=7200)

        removed = await sweep_stale_buffers(buffer_dir, ttl=3600, keep=active)

        assert removed == []
        assert active.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ignores_unrelated_files(self, buffer_dir):
        other = buffer_dir / "vf-auto-context.md"
        self._write(other, age=7200)

        assert await sweep_stale_buffers(buffer_dir, ttl=1) == []
        assert other.exists()
