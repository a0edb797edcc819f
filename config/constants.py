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
Application-wide constants for VoxRelay.

This module contains constants used across multiple modules to avoid
hardcoded values throughout the codebase.
"""

# ============================================================================
# Application Constants
# ============================================================================

LOG_SEPARATOR_LENGTH = 60  # characters for "=" * 60

# ============================================================================
# Audio Capture Constants
# ============================================================================

DEFAULT_SAMPLE_RATE_HZ = 16000
DEFAULT_CHUNK_SIZE_FRAMES = 1024  # 64 ms at 16 kHz
PCM_SAMPLE_WIDTH_BYTES = 2  # 16-bit
PCM_MAX_AMPLITUDE = 32767.0  # For int16 to [0, 1] level conversion

# Seconds the capture thread sleeps between polls while paused or after a failed read
CAPTURE_IDLE_SLEEP_SECONDS = 0.01
CAPTURE_THREAD_JOIN_TIMEOUT_SECONDS = 2.0

# ============================================================================
# Speaker Diarization Defaults
# ============================================================================

DIARIZATION_WINDOW_SIZE = 10
DIARIZATION_SILENCE_THRESHOLD = 0.02
DIARIZATION_DOMINANCE_RATIO = 1.5
DIARIZATION_COOLDOWN_SECONDS = 2.0

# ============================================================================
# Streaming Protocol Constants
# ============================================================================

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_SEND_QUEUE_SIZE = 512
DEFAULT_END_FLUSH_TIMEOUT_SECONDS = 1.0
WS_PING_INTERVAL_SECONDS = 30
WS_PING_TIMEOUT_SECONDS = 30
WS_CLOSE_TIMEOUT_SECONDS = 10
WS_NORMAL_CLOSURE = 1000
WS_INTERNAL_ERROR = 1011

# ============================================================================
# Session Constants
# ============================================================================

ELAPSED_TICK_INTERVAL_SECONDS = 0.1
DEFAULT_SOURCE_LANGUAGE = "cs"
DEFAULT_TARGET_LANGUAGE = "en"
DEFAULT_RECORDING_NAME_FORMAT = "Recording %Y-%m-%d %H:%M"

# Providers accepted by the translation server
LLM_PROVIDERS = ("ollama", "openai", "anthropic", "groq")
TRANSCRIPTION_PROVIDERS = ("local", "openai_whisper", "deepgram", "assemblyai")

# ============================================================================
# Logging Constants
# ============================================================================

ROOT_LOGGER_NAME = "voxrelay"
LOG_FILE_NAME = "voxrelay.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_FILE_BACKUP_COUNT = 5
DEFAULT_LOG_LINES_TO_READ = 100
