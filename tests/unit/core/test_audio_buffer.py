# SPDX-License-Identifier: Apache-2.0
"""
Unit tests for AudioBuffer.

Tests chunk accumulation, segment boundaries, and thread safety.
"""

import threading

import pytest

from core.realtime.audio_buffer import AudioBuffer, Segment
from engines.audio.capture import AudioChunk


def _chunk(sequence, frames=4, channels=2):
    return AudioChunk(
        sequence=sequence,
        data=b"\x01\x00" * frames * channels,
        channels=channels,
        sample_rate=16000,
    )


class TestAudioBuffer:
    """Test suite for AudioBuffer class."""

    @pytest.fixture
    def buffer(self):
        """Create a stereo AudioBuffer."""
        return AudioBuffer(sample_rate=16000, channels=2)

    # Initialization Tests
    def test_init_default_params(self):
        buffer = AudioBuffer()

        assert buffer.sample_rate == 16000
        assert buffer.channels == 2
        assert buffer.is_empty()
        assert buffer.get_frame_count() == 0

    # Append Tests
    def test_append_multiple_chunks(self, buffer):
        buffer.append(_chunk(1))
        buffer.append(_chunk(2, frames=6))

        assert buffer.get_chunk_count() == 2
        assert buffer.get_frame_count() == 10
        assert [c.sequence for c in buffer.get_chunks()] == [1, 2]
        assert buffer.get_pcm_chunks()[1] == b"\x01\x00" * 12

    def test_append_rejects_non_increasing_sequence(self, buffer):
        buffer.append(_chunk(5))

        with pytest.raises(ValueError):
            buffer.append(_chunk(5))
        with pytest.raises(ValueError):
            buffer.append(_chunk(3))

        assert buffer.get_chunk_count() == 1

    def test_append_allows_sequence_gaps(self, buffer):
        buffer.append(_chunk(1))
        buffer.append(_chunk(4))

        assert buffer.get_chunk_count() == 2

    def test_append_rejects_channel_mismatch(self, buffer):
        with pytest.raises(ValueError):
            buffer.append(_chunk(1, channels=1))

    def test_get_chunks_returns_copy(self, buffer):
        buffer.append(_chunk(1))

        chunks = buffer.get_chunks()
        chunks.clear()

        assert buffer.get_chunk_count() == 1

    # Segment Tests
    def test_take_segment_moves_boundary(self, buffer):
        buffer.append(_chunk(1))
        buffer.append(_chunk(2))

        first = buffer.take_segment()
        buffer.append(_chunk(3))
        second = buffer.take_segment()

        assert [c.sequence for c in first] == [1, 2]
        assert [c.sequence for c in second] == [3]
        # The full session audio is untouched
        assert buffer.get_chunk_count() == 3
        assert buffer.get_pending_segment_size() == 0

    def test_take_segment_when_empty(self, buffer):
        assert buffer.take_segment() == []

    def test_segment_to_dict(self):
        segment = Segment(
            segment_id=1700000000000,
            index=0,
            source_language="cs",
            target_language="en",
            first_sequence=1,
            last_sequence=9,
            frame_count=9216,
            path="/tmp/a.wav",
        )

        data = segment.to_dict()

        assert data["segment_id"] == 1700000000000
        assert data["last_sequence"] == 9
        assert data["path"] == "/tmp/a.wav"

    # Stats Tests
    def test_get_duration(self):
        buffer = AudioBuffer(sample_rate=8, channels=1)
        buffer.append(_chunk(1, frames=4, channels=1))
        buffer.append(_chunk(2, frames=8, channels=1))

        assert buffer.get_duration() == pytest.approx(1.5)

    def test_get_stats(self, buffer):
        buffer.append(_chunk(1))
        buffer.append(_chunk(2))
        buffer.take_segment()
        buffer.append(_chunk(3))

        stats = buffer.get_stats()

        assert stats["chunk_count"] == 3
        assert stats["frame_count"] == 12
        assert stats["pending_segment_chunks"] == 1
        assert stats["last_sequence"] == 3
        assert stats["memory_usage_bytes"] == 3 * 16

    def test_clear(self, buffer):
        buffer.append(_chunk(1))
        buffer.take_segment()

        buffer.clear()

        assert buffer.is_empty()
        assert buffer.get_frame_count() == 0
        # Sequence tracking restarts after a clear
        buffer.append(_chunk(1))
        assert buffer.get_pending_segment_size() == 1

    # Thread Safety Tests
    def test_concurrent_reads_during_append(self, buffer):
        errors = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                try:
                    buffer.get_stats()
                    buffer.get_pcm_chunks()
                except Exception as exc:  # noqa: BLE001
                    errors.append(exc)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for thread in threads:
            thread.start()

        for sequence in range(1, 501):
            buffer.append(_chunk(sequence))

        stop.set()
        for thread in threads:
            thread.join()

        assert errors == []
        assert buffer.get_chunk_count() == 500
