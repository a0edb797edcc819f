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
"""PCM WAV container serialization.

Produces the canonical 44-byte RIFF/WAVE header followed by the raw
interleaved 16-bit samples. Output is byte-for-byte reproducible for a given
sample sequence and channel configuration.
"""

import io
import logging
import os
from pathlib import Path
from typing import Iterable, Union

import soundfile as sf

from config.constants import PCM_SAMPLE_WIDTH_BYTES
from utils.error_handler import SerializationError

logger = logging.getLogger(__name__)


class WavContainerWriter:
    """Serialize interleaved PCM buffers into a WAV byte stream."""

    HEADER_SIZE = 44
    SAMPLE_WIDTH = PCM_SAMPLE_WIDTH_BYTES

    def __init__(self, channels: int = 1, sample_rate: int = 16000):
        """Configure the container format.

        Args:
            channels: Interleaved channel count (1 or 2).
            sample_rate: Sampling rate in Hz.
        """
        if channels not in (1, 2):
            raise ValueError(f"Unsupported channel count: {channels}")
        if sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {sample_rate}")

        self.channels = channels
        self.sample_rate = sample_rate

    @property
    def block_align(self) -> int:
        return self.channels * self.SAMPLE_WIDTH

    @property
    def byte_rate(self) -> int:
        return self.sample_rate * self.block_align

    def _write_container(self, fileobj, chunks: Iterable[bytes]) -> int:
        """Write header and payload to ``fileobj`` and return the payload size."""
        data_size = 0
        with sf.SoundFile(
            fileobj,
            mode="w",
            samplerate=int(self.sample_rate),
            channels=self.channels,
            format="WAV",
            subtype="PCM_16",
        ) as writer:
            for chunk in chunks:
                if not chunk:
                    continue
                if len(chunk) % self.block_align:
                    raise ValueError(
                        f"PCM buffer of {len(chunk)} bytes is not a multiple of "
                        f"the {self.block_align}-byte frame size"
                    )
                # Header sizes are patched when the writer closes
                writer.buffer_write(chunk, dtype="int16")
                data_size += len(chunk)
        return data_size

    def to_bytes(self, chunks: Iterable[bytes]) -> bytes:
        """Return the complete WAV container for ``chunks`` as bytes."""
        buffer = io.BytesIO()
        self._write_container(buffer, chunks)
        return buffer.getvalue()

    def write(self, path: Union[str, Path], chunks: Iterable[bytes]) -> Path:
        """Write a complete WAV file, replacing any existing file at ``path``.

        The container is written to a sibling ``.part`` file first and moved
        into place once complete, so a failed write never leaves a truncated
        file under the final name.

        Raises:
            SerializationError: The file could not be written.
        """
        target = Path(path)
        temp_path = target.with_name(target.name + ".part")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "wb") as handle:
                data_size = self._write_container(handle, chunks)
            os.replace(temp_path, target)
        except ValueError:
            self._discard_partial(temp_path)
            raise
        except (OSError, RuntimeError) as exc:
            # soundfile reports libsndfile failures as RuntimeError subclasses
            logger.error("Failed to write WAV file %s: %s", target, exc)
            self._discard_partial(temp_path)
            raise SerializationError(f"Failed to write WAV file: {exc}", path=str(target)) from exc

        logger.info(
            "WAV written: %s (%d bytes of audio, %d channel(s), %d Hz)",
            target,
            data_size,
            self.channels,
            self.sample_rate,
        )
        return target

    @staticmethod
    def _discard_partial(temp_path: Path) -> None:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.debug("Could not remove partial WAV %s: %s", temp_path, exc)
