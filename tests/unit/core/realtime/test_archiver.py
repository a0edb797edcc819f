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
Unit tests for SessionArchiver.
"""

import json
from unittest.mock import patch

import pytest
import soundfile as sf

from core.realtime.archiver import RecordingMetadata, SessionArchiver
from core.realtime.config import RealtimeConfig
from utils.error_handler import SerializationError


class TestSessionArchiver:
    @pytest.fixture
    def config(self, tmp_path):
        return RealtimeConfig(base_recording_dir=tmp_path)

    @pytest.fixture
    def archiver(self, config):
        archiver = SessionArchiver(config)
        yield archiver
        archiver.shutdown()

    @pytest.mark.asyncio
    async def test_write_recording(self, archiver, tmp_path):
        """Full session audio lands in the recordings directory."""
        chunks = [b"\x01\x00\x02\x00" * 50, b"\x03\x00\x04\x00" * 50]

        path = await archiver.write_recording("rec-1", chunks, channels=2, sample_rate=16000)

        assert path == tmp_path / "Recordings" / "rec-1.wav"
        info = sf.info(str(path))
        assert info.frames == 100
        assert info.channels == 2

    @pytest.mark.asyncio
    async def test_write_segment(self, archiver, tmp_path):
        path = await archiver.write_segment("rec-1", 1700000000000, [b"\x00\x00" * 10], 1, 16000)

        assert path == tmp_path / "Segments" / "rec-1_segment_1700000000000.wav"
        assert sf.info(str(path)).frames == 10

    @pytest.mark.asyncio
    async def test_write_failure_raises_serialization_error(self, archiver):
        with patch("engines.audio.wav_writer.os.replace", side_effect=OSError("read-only")):
            with pytest.raises(SerializationError):
                await archiver.write_recording("rec-1", [b"\x00\x00"], 1, 16000)

    @pytest.mark.asyncio
    async def test_save_text(self, archiver, tmp_path):
        """Transcript and translation go to separate directories."""
        transcript = await archiver.save_text("rec-1", "transcript", "Ahoj")
        translation = await archiver.save_text("rec-1", "translation", "Hello")

        assert transcript.read_text(encoding="utf-8") == "Ahoj"
        assert translation.read_text(encoding="utf-8") == "Hello"
        assert transcript.parent == tmp_path / "Transcripts"
        assert translation.parent == tmp_path / "Translations"

    @pytest.mark.asyncio
    async def test_save_text_empty(self, archiver):
        assert await archiver.save_text("rec-1", "transcript", "") is None

    @pytest.mark.asyncio
    async def test_save_text_unknown_kind(self, archiver):
        with pytest.raises(ValueError):
            await archiver.save_text("rec-1", "markers", "x")

    @pytest.mark.asyncio
    async def test_save_metadata_roundtrip(self, archiver, tmp_path):
        metadata = RecordingMetadata(
            id="rec-1",
            name="Standup",
            audio_path=str(tmp_path / "Recordings" / "rec-1.wav"),
            duration_ms=61000,
            original_text="Ahoj",
            translated_text="Hello",
            source_language="cs",
            target_language="en",
            user_id="user-1",
            segment_paths=["a.wav"],
        )

        path = await archiver.save_metadata(metadata)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["duration_ms"] == 61000
        assert data["segment_paths"] == ["a.wav"]
        assert archiver.list_recordings() == [metadata]

    @pytest.mark.asyncio
    async def test_list_recordings_skips_unreadable_files(self, archiver, tmp_path):
        recordings = tmp_path / "Recordings"
        recordings.mkdir()
        (recordings / "broken.json").write_text("{not json", encoding="utf-8")
        (recordings / "old.json").write_text(
            json.dumps({"id": "old", "name": "Old", "created_at": "2024-01-01T00:00:00"}),
            encoding="utf-8",
        )
        (recordings / "new.json").write_text(
            json.dumps({"id": "new", "name": "New", "created_at": "2025-01-01T00:00:00", "extra": 1}),
            encoding="utf-8",
        )

        assert [item.id for item in archiver.list_recordings()] == ["new", "old"]

    def test_list_recordings_without_directory(self, archiver):
        assert archiver.list_recordings() == []

    @pytest.mark.asyncio
    async def test_discard(self, archiver, tmp_path):
        existing = tmp_path / "a.wav"
        existing.write_bytes(b"x")

        removed = await archiver.discard([str(existing), None, str(tmp_path / "missing.wav")])

        assert removed == 1
        assert not existing.exists()
