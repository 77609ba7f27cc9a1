# tests/unit/test_buffer.py

import pytest

from bulk_transfer.buffer import ChunkBuffer, RolloverPolicy


class TestChunkBuffer:
    def test_append_tracks_size_and_count(self):
        buffer = ChunkBuffer()
        buffer.append(b'{"id":"1"}\n')
        buffer.append(b'{"id":"2"}\n')

        assert buffer.size == 22
        assert buffer.record_count == 2
        assert not buffer.is_empty()

    def test_drain_returns_bytes_in_order_and_resets(self):
        buffer = ChunkBuffer()
        buffer.append(b"a\n")
        buffer.append(b"b\n")

        data, count = buffer.drain()

        assert data == b"a\nb\n"
        assert count == 2
        assert buffer.is_empty()
        assert buffer.size == 0

    def test_buffer_is_reusable_after_drain(self):
        buffer = ChunkBuffer()
        buffer.append(b"a\n")
        buffer.drain()
        buffer.append(b"c\n")

        assert buffer.drain() == (b"c\n", 1)

    def test_spills_past_threshold_without_losing_data(self):
        buffer = ChunkBuffer(spool_threshold=8)
        lines = [b"0123456789\n" for _ in range(5)]
        for line in lines:
            buffer.append(line)

        data, count = buffer.drain()

        assert data == b"".join(lines)
        assert count == 5

    def test_clear_discards_contents(self):
        buffer = ChunkBuffer()
        buffer.append(b"a\n")
        buffer.clear()

        assert buffer.drain() == (b"", 0)


class TestRolloverPolicy:
    @pytest.fixture
    def policy(self):
        return RolloverPolicy(part_flush_bytes=10, object_max_bytes=30, object_max_resources=3)

    def test_should_flush_part_at_threshold(self, policy):
        buffer = ChunkBuffer()
        buffer.append(b"123456789")
        assert not policy.should_flush_part(buffer)

        buffer.append(b"0")
        assert policy.should_flush_part(buffer)

    @pytest.mark.parametrize(
        "object_bytes, object_resources, expected",
        [
            (0, 0, False),
            (29, 2, False),
            (30, 1, True),
            (5, 3, True),
        ],
    )
    def test_should_roll_object(self, policy, object_bytes, object_resources, expected):
        assert policy.should_roll_object(object_bytes, object_resources) is expected

    def test_would_overflow_only_for_non_empty_objects(self, policy):
        assert policy.would_overflow(25, 2, 10)
        assert not policy.would_overflow(20, 2, 10)
        # A single oversized record still gets an object of its own.
        assert not policy.would_overflow(0, 0, 100)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"part_flush_bytes": 0},
            {"object_max_bytes": -1},
            {"object_max_resources": 0},
        ],
    )
    def test_rejects_non_positive_limits(self, kwargs):
        with pytest.raises(ValueError):
            RolloverPolicy(**kwargs)
