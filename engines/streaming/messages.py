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
"""JSON message types exchanged with the translation server.

Every logical message is one JSON object with a ``type`` field. Client
messages are built as plain dictionaries; server messages are parsed into
:class:`ServerMessage`.
"""

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from utils.error_handler import ParseError

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    """Server to client message types."""

    TRANSCRIPTION = "transcription"
    TRANSLATION = "translation"
    TTS_AUDIO = "tts_audio"
    ERROR = "error"
    INFO = "info"


class CommandKind(str, Enum):
    """Client to server control messages."""

    PAUSE = "pause"
    RESUME = "resume"
    LANGUAGE_SWAP = "language_swap"
    END_RECORDING = "end_recording"
    TTS = "tts"


@dataclass(frozen=True)
class ServerMessage:
    kind: MessageKind
    data: Any = None
    error: Optional[str] = None
    recording_id: Optional[str] = None

    @property
    def text(self) -> str:
        """Payload as text; empty when the payload is not a string."""
        if isinstance(self.data, str):
            return self.data
        return ""

    def audio_bytes(self) -> bytes:
        """Decode a base64 ``tts_audio`` payload.

        Raises:
            ParseError: The payload is not valid base64 text.
        """
        if not isinstance(self.data, str):
            raise ParseError("tts_audio payload is not a string", raw=self.data)
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ParseError(f"tts_audio payload is not valid base64: {exc}") from exc

    @classmethod
    def info(cls, text: str) -> "ServerMessage":
        return cls(kind=MessageKind.INFO, data=text)

    @classmethod
    def failure(cls, error: str) -> "ServerMessage":
        return cls(kind=MessageKind.ERROR, error=error)


@dataclass(frozen=True)
class SessionParams:
    """Values sent in the configuration handshake."""

    user_id: str
    recording_id: str
    source_language: str
    target_language: str
    llm_provider: str = "ollama"
    llm_api_key: str = ""
    transcription_provider: str = "local"
    transcription_api_key: str = ""

    def to_config_message(self, timestamp_ms: Optional[int] = None) -> Dict[str, Any]:
        return {
            "type": "config",
            "user_id": self.user_id,
            "recording_id": self.recording_id,
            "source_language": self.source_language,
            "target_language": self.target_language,
            "llm_provider": self.llm_provider,
            "llm_api_key": self.llm_api_key,
            "transcription_provider": self.transcription_provider,
            "transcription_api_key": self.transcription_api_key,
            "timestamp": timestamp_ms if timestamp_ms is not None else current_timestamp_ms(),
        }


def current_timestamp_ms() -> int:
    return int(time.time() * 1000)


def encode_message(message: Dict[str, Any]) -> str:
    return json.dumps(message, ensure_ascii=False, separators=(",", ":"))


def build_audio_message(
    pcm: bytes, recording_id: str, timestamp_ms: Optional[int] = None
) -> Dict[str, Any]:
    return {
        "type": "audio",
        "data": base64.b64encode(pcm).decode("ascii"),
        "recording_id": recording_id,
        "timestamp": timestamp_ms if timestamp_ms is not None else current_timestamp_ms(),
    }


def build_command(
    kind: CommandKind, recording_id: str, user_id: str, **extra: Any
) -> Dict[str, Any]:
    """Build a control message; ``extra`` fields are merged after the common ones."""
    message = {"type": CommandKind(kind).value, "recording_id": recording_id, "user_id": user_id}
    message.update(extra)
    return message


def build_tts_request(text: str, voice: str, recording_id: str) -> Dict[str, Any]:
    return {"type": CommandKind.TTS.value, "text": text, "voice": voice, "recording_id": recording_id}


def build_endpoint_url(endpoint: str, user_id: str, recording_id: str) -> str:
    """Append ``user_id`` and ``recording_id`` query parameters to ``endpoint``."""
    parts = urlsplit(endpoint)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in ("user_id", "recording_id")
    ]
    query.extend([("user_id", user_id), ("recording_id", recording_id)])
    return urlunsplit(parts._replace(query=urlencode(query)))


def parse_server_message(raw: Any) -> Optional[ServerMessage]:
    """Parse one frame received from the server.

    Returns:
        The parsed message, or ``None`` for an unrecognized ``type``.

    Raises:
        ParseError: The frame is not a JSON object with a string ``type``.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"Binary frame is not UTF-8: {exc}", raw=raw) from exc

    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"Malformed JSON: {exc}", raw=raw) from exc

    if not isinstance(payload, dict):
        raise ParseError("Message is not a JSON object", raw=raw)

    kind_value = payload.get("type")
    if not isinstance(kind_value, str):
        raise ParseError("Message has no 'type' field", raw=raw)

    try:
        kind = MessageKind(kind_value)
    except ValueError:
        logger.warning("Ignoring unknown message type: %s", kind_value)
        return None

    data = payload.get("data")
    if data is None:
        # Older servers send text results under "text"
        data = payload.get("text")

    error = payload.get("error")
    if error is not None and not isinstance(error, str):
        error = str(error)

    return ServerMessage(
        kind=kind,
        data=data,
        error=error,
        recording_id=payload.get("recording_id"),
    )
