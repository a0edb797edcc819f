# SPDX-License-Identifier: Apache-2.0
#
# Copyright (c) 2025 VoxRelay Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Audio capture module implemented with PyAudio."""

import importlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from config.constants import (
    CAPTURE_IDLE_SLEEP_SECONDS,
    CAPTURE_THREAD_JOIN_TIMEOUT_SECONDS,
    PCM_MAX_AMPLITUDE,
    PCM_SAMPLE_WIDTH_BYTES,
)
from utils.error_handler import DeviceUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioChunk:
    """One device read of interleaved 16-bit little-endian PCM."""

    sequence: int
    data: bytes
    channels: int
    sample_rate: int
    captured_at: float = field(default_factory=time.time)

    @property
    def frame_count(self) -> int:
        return len(self.data) // (PCM_SAMPLE_WIDTH_BYTES * self.channels)

    def samples(self) -> np.ndarray:
        """Return a read-only ``(frames, channels)`` int16 view of the chunk."""
        usable = self.frame_count * PCM_SAMPLE_WIDTH_BYTES * self.channels
        view = np.frombuffer(self.data[:usable], dtype="<i2")
        return view.reshape(-1, self.channels)

    def channel_levels(self) -> Tuple[float, float]:
        """Return the mean absolute amplitude of (left, right) in ``[0, 1]``.

        Mono chunks report the same level for both sides.
        """
        if self.frame_count == 0:
            return 0.0, 0.0

        levels = np.abs(self.samples().astype(np.int32)).mean(axis=0) / PCM_MAX_AMPLITUDE
        levels = np.minimum(levels, 1.0)
        if self.channels == 1:
            level = float(levels[0])
            return level, level
        return float(levels[0]), float(levels[1])


@dataclass(frozen=True)
class InputSourceCandidate:
    """An input source that may or may not be available on this machine.

    ``device_name`` selects the first input device whose name contains the
    given text; ``device_index`` selects a device directly; neither selects
    the system default input.
    """

    name: str
    channels: int = 2
    device_index: Optional[int] = None
    device_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InputSourceCandidate":
        return cls(
            name=str(data["name"]),
            channels=int(data.get("channels", 2)),
            device_index=data.get("device_index"),
            device_name=data.get("device_name"),
        )

    def resolve_device_index(self, pyaudio_instance) -> Optional[int]:
        """Return the PyAudio device index this candidate refers to."""
        if self.device_index is not None:
            return self.device_index
        if not self.device_name:
            return None

        wanted = self.device_name.lower()
        for index in range(pyaudio_instance.get_device_count()):
            info = pyaudio_instance.get_device_info_by_index(index)
            if info.get("maxInputChannels", 0) <= 0:
                continue
            if wanted in str(info.get("name", "")).lower():
                return index

        raise DeviceUnavailableError(
            f"No input device matching '{self.device_name}'", attempted=[self.name]
        )

    def try_open(self, pyaudio_instance, pyaudio_module, sample_rate: int, chunk_size: int):
        """Open a blocking input stream for this source.

        Raises:
            DeviceUnavailableError: The source cannot be opened.
        """
        try:
            device_index = self.resolve_device_index(pyaudio_instance)
            return pyaudio_instance.open(
                format=pyaudio_module.paInt16,
                channels=self.channels,
                rate=sample_rate,
                input=True,
                input_device_index=device_index,
                frames_per_buffer=chunk_size,
                stream_callback=None,  # Use blocking mode.
            )
        except DeviceUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001 - PortAudio raises OSError or ValueError
            raise DeviceUnavailableError(
                f"Input source '{self.name}' failed to open: {exc}", attempted=[self.name]
            ) from exc


class AudioCapture:
    """Exclusive owner of the audio input device and its capture thread."""

    def __init__(self, sample_rate: int = 16000, chunk_size: int = 1024):
        """Initialize the capture interface.

        PyAudio is imported and instantiated lazily so the optional dependency
        is only required when microphone capture is enabled.

        Args:
            sample_rate: Sampling rate in Hz. Defaults to 16 kHz.
            chunk_size: Number of frames per device read. Defaults to 1024
                frames (64 ms at 16 kHz).
        """
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.channels = 0

        self.pyaudio = None
        self.stream = None
        self.active_source: Optional[InputSourceCandidate] = None
        self.is_capturing = False
        self.is_paused = False
        self.capture_thread: Optional[threading.Thread] = None

        # Held for the duration of each read so pause/stop never race a read.
        self._stream_lock = threading.Lock()
        self._sequence = 0
        self.frames_read = 0

        self._pyaudio_module = None
        self._pyaudio_error: Optional[Exception] = None

        logger.info(
            "Audio capture configured: sample_rate=%s, chunk_size=%s. "
            "PyAudio instance will be created on first use.",
            sample_rate,
            chunk_size,
        )

    def _ensure_module_available(self):
        """Ensure that the PyAudio module can be imported."""
        if self._pyaudio_module is not None:
            return self._pyaudio_module

        try:
            self._pyaudio_module = importlib.import_module("pyaudio")
            return self._pyaudio_module
        except ImportError as exc:
            self._pyaudio_error = exc
            logger.warning(
                "PyAudio module not found; microphone capture is disabled until installation."
            )
            raise ImportError(
                "PyAudio is not installed. Please install it with: pip install pyaudio"
            ) from exc

    def _ensure_pyaudio_instance(self):
        """Create the PyAudio instance on demand."""
        if self.pyaudio is not None:
            return self.pyaudio

        if self._pyaudio_error is not None:
            raise self._pyaudio_error

        try:
            pyaudio_module = self._ensure_module_available()
            self.pyaudio = pyaudio_module.PyAudio()
            logger.info("PyAudio initialized successfully")
        except Exception as exc:  # noqa: BLE001
            self._pyaudio_error = exc
            logger.error("Failed to initialize PyAudio: %s", exc)
            raise

        return self.pyaudio

    def get_input_devices(self) -> List[Dict]:
        """Return a list of available audio input devices.

        Returns:
            List[Dict]: Each entry contains the device ``index``, ``name``,
            ``max_input_channels``, and ``default_sample_rate``.
        """
        try:
            pyaudio_instance = self._ensure_pyaudio_instance()
        except ImportError:
            logger.warning("PyAudio not installed; audio input listing unavailable")
            return []
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to access audio input devices: %s", exc)
            return []

        devices = []
        device_count = pyaudio_instance.get_device_count()

        for i in range(device_count):
            try:
                device_info = pyaudio_instance.get_device_info_by_index(i)

                if device_info.get("maxInputChannels", 0) > 0:
                    devices.append(
                        {
                            "index": i,
                            "name": device_info.get("name", "Unknown"),
                            "max_input_channels": device_info.get("maxInputChannels", 0),
                            "default_sample_rate": device_info.get("defaultSampleRate", 0),
                        }
                    )
            except Exception as e:  # noqa: BLE001
                logger.warning(f"Failed to get info for device {i}: {e}")

        logger.info(f"Found {len(devices)} input devices")
        return devices

    def open_input(self, candidates: Sequence[InputSourceCandidate]) -> InputSourceCandidate:
        """Open the first input source candidate that succeeds.

        Candidates are probed in order; each failure is logged and the next
        candidate is tried.

        Returns:
            The candidate whose stream is now open.

        Raises:
            DeviceUnavailableError: Every candidate failed, or PyAudio is
                unavailable.
        """
        if self.stream is not None:
            raise RuntimeError("An input stream is already open")

        attempted = [candidate.name for candidate in candidates]
        if not candidates:
            raise DeviceUnavailableError("No input sources configured")

        try:
            pyaudio_instance = self._ensure_pyaudio_instance()
            pyaudio_module = self._ensure_module_available()
        except Exception as exc:  # noqa: BLE001
            raise DeviceUnavailableError(
                f"Audio backend unavailable: {exc}", attempted=attempted
            ) from exc

        for candidate in candidates:
            try:
                stream = candidate.try_open(
                    pyaudio_instance, pyaudio_module, self.sample_rate, self.chunk_size
                )
            except DeviceUnavailableError as exc:
                logger.warning("%s; trying next input source", exc)
                continue

            self.stream = stream
            self.channels = candidate.channels
            self.active_source = candidate
            logger.info(
                "Input source '%s' opened (channels=%s, rate=%s)",
                candidate.name,
                candidate.channels,
                self.sample_rate,
            )
            return candidate

        logger.error("All input sources failed: %s", attempted)
        raise DeviceUnavailableError(attempted=attempted)

    def start_capture(self, callback: Callable[[AudioChunk], None]):
        """Start the capture thread on the stream opened by :meth:`open_input`.

        Args:
            callback: Invoked on the capture thread with each ``AudioChunk``,
                in read order.
        """
        if self.is_capturing:
            logger.warning("Audio capture is already running")
            return
        if self.stream is None:
            raise RuntimeError("open_input() must succeed before start_capture()")

        self._sequence = 0
        self.frames_read = 0
        self.is_paused = False
        self.is_capturing = True

        self.capture_thread = threading.Thread(
            target=self._capture_loop, args=(callback,), name="AudioCapture", daemon=True
        )
        self.capture_thread.start()

        logger.info(
            "Audio capture started (source=%s)",
            self.active_source.name if self.active_source else "unknown",
        )

    def _read_chunk(self) -> Optional[AudioChunk]:
        """Perform one blocking device read. Caller holds ``_stream_lock``."""
        try:
            audio_data = self.stream.read(self.chunk_size, exception_on_overflow=False)
        except Exception as e:  # noqa: BLE001 - treated as a zero-length read
            logger.error(f"Error in capture loop: {e}")
            return None

        if not audio_data:
            return None

        self._sequence += 1
        chunk = AudioChunk(
            sequence=self._sequence,
            data=bytes(audio_data),
            channels=self.channels,
            sample_rate=self.sample_rate,
        )
        self.frames_read += chunk.frame_count
        return chunk

    def _capture_loop(self, callback: Callable[[AudioChunk], None]):
        """Capture loop executed on the background thread."""
        logger.info("Audio capture loop started")

        while self.is_capturing:
            chunk = None
            if self.is_paused:
                time.sleep(CAPTURE_IDLE_SLEEP_SECONDS)
                continue

            with self._stream_lock:
                if self.is_capturing and not self.is_paused and self.stream is not None:
                    chunk = self._read_chunk()
                    if chunk is not None:
                        try:
                            callback(chunk)
                        except Exception as e:  # noqa: BLE001
                            logger.error(f"Audio chunk callback failed: {e}", exc_info=True)

            if chunk is None:
                time.sleep(CAPTURE_IDLE_SLEEP_SECONDS)

        logger.info("Audio capture loop stopped")

    def pause_capture(self):
        """Stop device reads without ending the capture thread.

        Blocks until any in-flight read has been delivered to the callback.
        """
        if not self.is_capturing or self.is_paused:
            return

        # Set before taking the lock so the loop does not start another read
        self.is_paused = True
        with self._stream_lock:
            if self.stream is not None:
                try:
                    self.stream.stop_stream()
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Failed to stop stream on pause: %s", exc)

        logger.info("Audio capture paused")

    def resume_capture(self):
        """Restart device reads after :meth:`pause_capture`."""
        if not self.is_capturing or not self.is_paused:
            return

        with self._stream_lock:
            if self.stream is not None:
                self.stream.start_stream()
            self.is_paused = False

        logger.info("Audio capture resumed")

    def stop_capture(self):
        """Stop the capture loop and release stream resources.

        The capture thread is joined before the stream is closed, so every
        read that completed has been passed to the callback when this returns.
        """
        if not self.is_capturing:
            logger.warning("Audio capture is not running")
            self._close_stream()
            return

        logger.info("Stopping audio capture...")
        self.is_capturing = False

        thread = self.capture_thread
        if thread is not None:
            thread.join(timeout=CAPTURE_THREAD_JOIN_TIMEOUT_SECONDS)
            if thread.is_alive():
                logger.warning(
                    "Capture thread did not exit within %ss", CAPTURE_THREAD_JOIN_TIMEOUT_SECONDS
                )
        self.capture_thread = None

        with self._stream_lock:
            self._close_stream()

        logger.info("Audio capture stopped (%d frames read)", self.frames_read)

    def _close_stream(self):
        stream, self.stream = self.stream, None
        self.active_source = None
        self.is_paused = False
        if stream is None:
            return
        try:
            stream.stop_stream()
        except Exception as exc:  # noqa: BLE001
            logger.debug("stop_stream failed during close: %s", exc)
        try:
            stream.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to close input stream: %s", exc)

    def close(self):
        """Close the capture interface and release resources."""
        logger.info("Closing audio capture...")

        if self.is_capturing:
            self.stop_capture()
        else:
            self._close_stream()

        if self.pyaudio:
            self.pyaudio.terminate()
            self.pyaudio = None

        logger.info("Audio capture closed")

    def __enter__(self):
        """Context manager entry hook."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit hook."""
        self.close()
