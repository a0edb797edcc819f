# SPDX-License-Identifier: Apache-2.0
"""Unit tests for AudioCapture and input source fallback."""

import threading
import time
from unittest.mock import Mock

import numpy as np
import pytest

from conftest import FakePyAudio, install_fake_pyaudio
from engines.audio.capture import AudioCapture, AudioChunk, InputSourceCandidate
from utils.error_handler import DeviceUnavailableError

STEREO = InputSourceCandidate(name="stereo", channels=2)
MONO = InputSourceCandidate(name="mono", channels=1)


def _build_capture_for_stop() -> AudioCapture:
    capture = AudioCapture.__new__(AudioCapture)
    capture.is_capturing = True
    capture.is_paused = False
    capture.stream = Mock()
    capture.active_source = STEREO
    capture.capture_thread = Mock()
    capture.frames_read = 0
    capture._stream_lock = threading.Lock()
    return capture


def test_stop_capture_joins_thread_before_closing_stream():
    capture = _build_capture_for_stop()

    order = []
    capture.stream.stop_stream.side_effect = lambda: order.append("stop_stream")
    capture.stream.close.side_effect = lambda: order.append("close")
    capture.capture_thread.join.side_effect = lambda timeout: order.append("join")
    capture.capture_thread.is_alive.return_value = False

    capture.stop_capture()

    assert order == ["join", "stop_stream", "close"]
    assert capture.is_capturing is False
    assert capture.stream is None
    assert capture.capture_thread is None


def test_stop_capture_handles_non_terminating_capture_thread():
    capture = _build_capture_for_stop()
    thread = capture.capture_thread
    thread.is_alive.return_value = True

    capture.stop_capture()

    thread.join.assert_called_once()
    thread.is_alive.assert_called_once()
    assert capture.capture_thread is None


def test_open_input_falls_back_to_next_candidate():
    capture = AudioCapture()
    fake = install_fake_pyaudio(capture, FakePyAudio(failing_channels={2}))

    source = capture.open_input([STEREO, MONO])

    assert source is MONO
    assert capture.channels == 1
    assert capture.active_source is MONO
    assert len(fake.opened) == 1
    capture.close()
    assert fake.terminated is True


def test_open_input_raises_when_all_candidates_fail():
    capture = AudioCapture()
    install_fake_pyaudio(capture, FakePyAudio(failing_channels={1, 2}))

    with pytest.raises(DeviceUnavailableError) as exc_info:
        capture.open_input([STEREO, MONO])

    assert exc_info.value.attempted == ["stereo", "mono"]
    assert capture.stream is None


def test_open_input_without_backend_raises_device_unavailable():
    capture = AudioCapture()
    capture._pyaudio_error = ImportError("PyAudio is not installed")

    with pytest.raises(DeviceUnavailableError):
        capture.open_input([STEREO])


def test_named_device_candidate_resolves_index():
    capture = AudioCapture()
    fake = install_fake_pyaudio(capture)
    opened = []
    original_open = fake.open
    fake.open = lambda **kwargs: opened.append(kwargs) or original_open(**kwargs)

    candidate = InputSourceCandidate(name="builtin", channels=2, device_name="built-in")
    capture.open_input([candidate])

    assert opened[0]["input_device_index"] == 0
    capture.close()


def test_named_device_candidate_missing_falls_back():
    capture = AudioCapture()
    install_fake_pyaudio(capture)

    missing = InputSourceCandidate(name="usb", channels=2, device_name="USB Interface")
    source = capture.open_input([missing, MONO])

    assert source is MONO
    capture.close()


def test_capture_produces_strictly_increasing_sequences():
    capture = AudioCapture(chunk_size=64)
    install_fake_pyaudio(capture)
    capture.open_input([STEREO])

    chunks = []
    capture.start_capture(chunks.append)
    deadline = time.monotonic() + 2.0
    while len(chunks) < 10 and time.monotonic() < deadline:
        time.sleep(0.005)
    capture.stop_capture()

    sequences = [chunk.sequence for chunk in chunks]
    assert sequences == list(range(1, len(chunks) + 1))
    assert capture.frames_read == sum(chunk.frame_count for chunk in chunks)


def test_read_error_is_treated_as_empty_read():
    capture = AudioCapture(chunk_size=32)
    fake = install_fake_pyaudio(capture)
    capture.open_input([STEREO])
    fake.opened[0].fail_next_read = True

    chunks = []
    capture.start_capture(chunks.append)
    deadline = time.monotonic() + 2.0
    while len(chunks) < 3 and time.monotonic() < deadline:
        time.sleep(0.005)
    capture.stop_capture()

    assert len(chunks) >= 3
    assert chunks[0].sequence == 1


def test_pause_stops_reads_until_resume():
    capture = AudioCapture(chunk_size=32)
    fake = install_fake_pyaudio(capture)
    capture.open_input([STEREO])
    stream = fake.opened[0]

    capture.start_capture(lambda chunk: None)
    time.sleep(0.02)
    capture.pause_capture()
    reads_at_pause = stream.read_calls
    time.sleep(0.05)

    assert stream.read_calls == reads_at_pause
    assert stream.active is False

    capture.resume_capture()
    time.sleep(0.02)
    capture.stop_capture()

    assert stream.read_calls > reads_at_pause
    assert stream.closed is True


def test_start_capture_requires_open_input():
    capture = AudioCapture()

    with pytest.raises(RuntimeError):
        capture.start_capture(lambda chunk: None)


def test_chunk_channel_levels():
    samples = np.array([[16384, -8192], [-16384, 8192]], dtype="<i2")
    chunk = AudioChunk(sequence=1, data=samples.tobytes(), channels=2, sample_rate=16000)

    left, right = chunk.channel_levels()

    assert chunk.frame_count == 2
    assert left == pytest.approx(16384 / 32767.0)
    assert right == pytest.approx(8192 / 32767.0)


def test_mono_chunk_reports_same_level_on_both_sides():
    data = np.full(8, -32768, dtype="<i2").tobytes()
    chunk = AudioChunk(sequence=1, data=data, channels=1, sample_rate=16000)

    assert chunk.channel_levels() == (1.0, 1.0)


def test_empty_chunk_is_silent():
    chunk = AudioChunk(sequence=1, data=b"", channels=2, sample_rate=16000)

    assert chunk.channel_levels() == (0.0, 0.0)
