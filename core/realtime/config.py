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
Configuration for real-time recording sessions.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List

from config.constants import (
    DEFAULT_CHUNK_SIZE_FRAMES,
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    DEFAULT_END_FLUSH_TIMEOUT_SECONDS,
    DEFAULT_SAMPLE_RATE_HZ,
    DEFAULT_SEND_QUEUE_SIZE,
    DEFAULT_SOURCE_LANGUAGE,
    DEFAULT_TARGET_LANGUAGE,
    ELAPSED_TICK_INTERVAL_SECONDS,
)


def _default_input_sources() -> List[Dict[str, Any]]:
    return [
        {"name": "default-stereo", "channels": 2},
        {"name": "default-mono", "channels": 1},
    ]


@dataclass(frozen=True)
class ProviderConfig:
    """Transcription and LLM provider selection forwarded to the server."""

    llm_provider: str = "ollama"
    llm_api_key: str = ""
    transcription_provider: str = "local"
    transcription_api_key: str = ""

    @classmethod
    def from_dict(cls, config_dict: dict) -> "ProviderConfig":
        valid_keys = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config_dict.items() if k in valid_keys})

    def __repr__(self) -> str:
        # API keys stay out of reprs and logs
        return (
            f"ProviderConfig(llm_provider={self.llm_provider!r}, "
            f"transcription_provider={self.transcription_provider!r})"
        )


@dataclass
class RealtimeConfig:
    """Configuration settings for real-time recording sessions."""

    # Audio Settings
    sample_rate: int = DEFAULT_SAMPLE_RATE_HZ
    chunk_size: int = DEFAULT_CHUNK_SIZE_FRAMES
    input_sources: List[Dict[str, Any]] = field(default_factory=_default_input_sources)

    # Streaming Settings
    servers: List[str] = field(default_factory=list)
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS
    send_queue_size: int = DEFAULT_SEND_QUEUE_SIZE
    # end_flush_timeout: time stop() waits for end_recording to leave the send queue.
    end_flush_timeout: float = DEFAULT_END_FLUSH_TIMEOUT_SECONDS

    # Session Settings
    user_id: str = ""
    source_language: str = DEFAULT_SOURCE_LANGUAGE
    target_language: str = DEFAULT_TARGET_LANGUAGE
    elapsed_tick_interval: float = ELAPSED_TICK_INTERVAL_SECONDS
    diarization: Dict[str, Any] = field(default_factory=dict)

    # Default Paths
    base_recording_dir: Path = field(default_factory=lambda: Path.home() / "Documents" / "VoxRelay")

    @classmethod
    def from_dict(cls, config_dict: dict) -> "RealtimeConfig":
        """Create a RealtimeConfig instance from a dictionary."""
        valid_keys = {f.name for f in fields(cls)}
        filtered_args = {k: v for k, v in config_dict.items() if k in valid_keys}

        if "base_recording_dir" in filtered_args:
            filtered_args["base_recording_dir"] = Path(filtered_args["base_recording_dir"])

        return cls(**filtered_args)

    @classmethod
    def from_app_config(cls, config_manager) -> "RealtimeConfig":
        """Build the session configuration from a ``ConfigManager``."""
        values: Dict[str, Any] = {}
        values.update(config_manager.get("realtime", {}))
        values.update(config_manager.get("streaming", {}))
        values["diarization"] = dict(config_manager.get("diarization", {}))

        session = config_manager.get("session", {})
        for key in ("user_id", "source_language", "target_language"):
            if session.get(key):
                values[key] = session[key]

        base_dir = config_manager.get("storage.base_dir")
        if base_dir:
            values["base_recording_dir"] = Path(base_dir).expanduser()

        return cls.from_dict(values)

    @property
    def recordings_dir(self) -> Path:
        return self.base_recording_dir / "Recordings"

    @property
    def segments_dir(self) -> Path:
        return self.base_recording_dir / "Segments"

    @property
    def transcripts_dir(self) -> Path:
        return self.base_recording_dir / "Transcripts"

    @property
    def translations_dir(self) -> Path:
        return self.base_recording_dir / "Translations"
