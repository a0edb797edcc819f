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
"""
Session archiver for persisting recordings, segments, and session metadata.
"""

import asyncio
import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from engines.audio.wav_writer import WavContainerWriter
from utils.error_handler import SerializationError

logger = logging.getLogger(__name__)


@dataclass
class RecordingMetadata:
    """Saved record of one finished session."""

    id: str
    name: str
    audio_path: str = ""
    duration_ms: int = 0
    original_text: str = ""
    translated_text: str = ""
    source_language: str = ""
    target_language: str = ""
    user_id: str = ""
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    segment_paths: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RecordingMetadata":
        valid_keys = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in valid_keys})


class SessionArchiver:
    """Handles the persistence of recording session artifacts (audio, segments, text)."""

    def __init__(self, config):
        """
        Initialize the session archiver.

        Args:
            config: ``RealtimeConfig`` providing the output directories.
        """
        self.config = config
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ArchiverWorker")

    def _run_in_executor(self, func, *args):
        """Helper to run synchronous IO tasks in a thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._executor, func, *args)

    async def write_recording(
        self, session_id: str, chunks: Iterable[bytes], channels: int, sample_rate: int
    ) -> Path:
        """
        Write the full session audio.

        Raises:
            SerializationError: The WAV file could not be written.
        """
        path = self.config.recordings_dir / f"{session_id}.wav"
        return await self._run_in_executor(
            self._write_wav_sync, path, list(chunks), channels, sample_rate
        )

    async def write_segment(
        self,
        session_id: str,
        segment_id: int,
        chunks: Iterable[bytes],
        channels: int,
        sample_rate: int,
    ) -> Path:
        """Write one segment to its own WAV file."""
        path = self.config.segments_dir / f"{session_id}_segment_{segment_id}.wav"
        return await self._run_in_executor(
            self._write_wav_sync, path, list(chunks), channels, sample_rate
        )

    def _write_wav_sync(
        self, path: Path, chunks: List[bytes], channels: int, sample_rate: int
    ) -> Path:
        writer = WavContainerWriter(channels=channels, sample_rate=sample_rate)
        return writer.write(path, chunks)

    async def save_metadata(self, metadata: RecordingMetadata) -> Path:
        """Persist ``metadata`` as JSON beside the session WAV."""
        path = self.config.recordings_dir / f"{metadata.id}.json"
        content = json.dumps(metadata.to_dict(), ensure_ascii=False, indent=2)
        return await self._run_in_executor(self._write_text_sync, path, content)

    async def save_text(self, session_id: str, kind: str, text: str) -> Optional[Path]:
        """
        Persist transcript or translation text.

        Args:
            kind: ``"transcript"`` or ``"translation"``.

        Returns:
            The written path, or ``None`` when ``text`` is empty.
        """
        if not text:
            return None

        if kind == "transcript":
            directory = self.config.transcripts_dir
        elif kind == "translation":
            directory = self.config.translations_dir
        else:
            raise ValueError(f"Unknown text kind: {kind}")

        path = directory / f"{session_id}.txt"
        return await self._run_in_executor(self._write_text_sync, path, text)

    def _write_text_sync(self, path: Path, content: str) -> Path:
        tmp_path = path.with_name(path.name + ".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(content, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            self._cleanup_file(tmp_path)
            raise SerializationError(f"Failed to write {path}: {exc}", path=str(path)) from exc

        logger.info("Saved: %s", path)
        return path

    async def discard(self, paths: Iterable[Optional[str]]) -> int:
        """Delete previously written session files; returns how many were removed."""
        targets = [Path(p) for p in paths if p]
        return await self._run_in_executor(self._discard_sync, targets)

    def _discard_sync(self, paths: List[Path]) -> int:
        removed = 0
        for path in paths:
            if self._cleanup_file(path):
                removed += 1
        logger.info("Discarded %d session file(s)", removed)
        return removed

    def list_recordings(self) -> List[RecordingMetadata]:
        """Load saved session metadata, newest first. Unreadable files are skipped."""
        directory = self.config.recordings_dir
        if not directory.exists():
            return []

        recordings = []
        for path in directory.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                recordings.append(RecordingMetadata.from_dict(data))
            except (OSError, ValueError, TypeError) as exc:
                logger.warning("Skipping unreadable metadata %s: %s", path, exc)

        recordings.sort(key=lambda item: item.created_at, reverse=True)
        return recordings

    @staticmethod
    def _cleanup_file(path: Path) -> bool:
        try:
            os.unlink(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Failed to delete %s: %s", path, exc)
            return False

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
