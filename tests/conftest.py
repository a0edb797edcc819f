# SPDX-License-Identifier: Apache-2.0
"""
Pytest configuration and shared fakes for VoxRelay tests.

The audio backend and the WebSocket transport are replaced by in-process
fakes so sessions can run without a microphone or a server.
"""

import asyncio
import json
import struct
import sys
import threading
import time
import types
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


class FakeInputStream:
    """Blocking input stream that yields numbered 16-bit frames."""

    def __init__(self, channels: int, frames_per_buffer: int, read_delay: float = 0.001):
        self.channels = channels
        self.frames_per_buffer = frames_per_buffer
        self.read_delay = read_delay
        self.frames_returned = 0
        self.read_calls = 0
        self.active = True
        self.closed = False
        self.fail_next_read = False
        self.lock = threading.Lock()

    def read(self, num_frames, exception_on_overflow=True):  # noqa: ARG002
        if self.closed:
            raise OSError("Stream closed")
        time.sleep(self.read_delay)
        with self.lock:
            self.read_calls += 1
            if self.fail_next_read:
                self.fail_next_read = False
                raise OSError("Input overflowed")
            start = self.frames_returned
            self.frames_returned += num_frames
        values = []
        for frame in range(start, start + num_frames):
            values.extend([frame % 32000] * self.channels)
        return struct.pack(f"<{len(values)}h", *values)

    def stop_stream(self):
        self.active = False

    def start_stream(self):
        self.active = True

    def close(self):
        self.closed = True


class FakePyAudio:
    """Stand-in for ``pyaudio.PyAudio`` with configurable failing channel counts."""

    def __init__(self, failing_channels=(), devices=None):
        self.failing_channels = set(failing_channels)
        self.devices = devices or [
            {"name": "Built-in Microphone", "maxInputChannels": 2, "defaultSampleRate": 16000},
            {"name": "Speakers", "maxInputChannels": 0, "defaultSampleRate": 48000},
        ]
        self.opened = []
        self.terminated = False

    def open(self, **kwargs):
        channels = kwargs["channels"]
        if channels in self.failing_channels:
            raise OSError(f"Invalid number of channels: {channels}")
        stream = FakeInputStream(channels, kwargs["frames_per_buffer"])
        self.opened.append(stream)
        return stream

    def get_device_count(self):
        return len(self.devices)

    def get_device_info_by_index(self, index):
        return self.devices[index]

    def terminate(self):
        self.terminated = True


def install_fake_pyaudio(capture, fake_pyaudio=None):
    """Attach fake PyAudio objects to an ``AudioCapture`` instance."""
    fake_pyaudio = fake_pyaudio or FakePyAudio()
    capture._pyaudio_module = types.SimpleNamespace(paInt16=8, PyAudio=lambda: fake_pyaudio)
    capture.pyaudio = fake_pyaudio
    return fake_pyaudio


class FakeTransport:
    """In-memory duplex transport with the interface the client expects."""

    def __init__(self):
        self.sent = []
        self.close_calls = []
        self.fail_send = False
        self._incoming = asyncio.Queue()

    async def send(self, payload):
        if self.fail_send:
            raise ConnectionResetError("Connection reset by peer")
        self.sent.append(payload)

    async def close(self, code=1000, reason=""):
        self.close_calls.append((code, reason))
        self._incoming.put_nowait(None)

    def push(self, message):
        """Deliver a frame to the client; dicts are JSON encoded."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def push_error(self, exc):
        self._incoming.put_nowait(exc)

    def sent_messages(self):
        return [json.loads(payload) for payload in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """Connector that fails for configured endpoints and records attempts."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.attempts = []
        self.transports = {}

    async def __call__(self, url):
        self.attempts.append(url)
        endpoint = url.split("?", 1)[0]
        if endpoint in self.failing:
            raise ConnectionRefusedError(f"Connection refused: {endpoint}")
        transport = FakeTransport()
        self.transports[endpoint] = transport
        return transport


async def wait_until(predicate, timeout=2.0, interval=0.005):
    """Poll ``predicate`` on the event loop until it returns truthy."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_connector():
    return FakeConnector()
