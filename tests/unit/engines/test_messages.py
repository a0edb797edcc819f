# SPDX-License-Identifier: Apache-2.0
"""Unit tests for the streaming message codec."""

import base64
import json
from urllib.parse import parse_qs, urlsplit

import pytest

from engines.streaming.messages import (
    CommandKind,
    MessageKind,
    SessionParams,
    build_audio_message,
    build_command,
    build_endpoint_url,
    build_tts_request,
    encode_message,
    parse_server_message,
)
from utils.error_handler import ParseError


def _params(**overrides):
    values = dict(
        user_id="user-1",
        recording_id="rec-1",
        source_language="cs",
        target_language="en",
        llm_provider="openai",
        llm_api_key="sk-test",
        transcription_provider="local",
        transcription_api_key="",
    )
    values.update(overrides)
    return SessionParams(**values)


def test_config_message_fields():
    message = _params().to_config_message(timestamp_ms=1700000000000)

    assert message == {
        "type": "config",
        "user_id": "user-1",
        "recording_id": "rec-1",
        "source_language": "cs",
        "target_language": "en",
        "llm_provider": "openai",
        "llm_api_key": "sk-test",
        "transcription_provider": "local",
        "transcription_api_key": "",
        "timestamp": 1700000000000,
    }


def test_audio_message_base64_encodes_pcm():
    pcm = bytes(range(16))

    message = build_audio_message(pcm, "rec-1", timestamp_ms=42)

    assert message["type"] == "audio"
    assert message["recording_id"] == "rec-1"
    assert message["timestamp"] == 42
    assert base64.b64decode(message["data"]) == pcm


def test_language_swap_command_layout():
    message = build_command(
        CommandKind.LANGUAGE_SWAP,
        "rec-1",
        "user-1",
        source_language="en",
        target_language="cs",
        segment_id=1700000000123,
    )

    assert message == {
        "type": "language_swap",
        "recording_id": "rec-1",
        "user_id": "user-1",
        "source_language": "en",
        "target_language": "cs",
        "segment_id": 1700000000123,
    }


def test_end_recording_and_tts_layout():
    end = build_command(CommandKind.END_RECORDING, "rec-1", "user-1", name="Recording")
    tts = build_tts_request("Hello", "en", "rec-1")

    assert end == {"type": "end_recording", "recording_id": "rec-1", "user_id": "user-1", "name": "Recording"}
    assert tts == {"type": "tts", "text": "Hello", "voice": "en", "recording_id": "rec-1"}


def test_encode_message_keeps_unicode():
    encoded = encode_message({"type": "tts", "text": "Dobrý den"})

    assert "Dobrý den" in encoded
    assert json.loads(encoded)["text"] == "Dobrý den"


def test_endpoint_url_appends_session_query():
    url = build_endpoint_url("ws://100.90.154.98:8765/stream?token=a&user_id=old", "u 1", "r1")

    parts = urlsplit(url)
    query = parse_qs(parts.query)
    assert parts.netloc == "100.90.154.98:8765"
    assert parts.path == "/stream"
    assert query == {"token": ["a"], "user_id": ["u 1"], "recording_id": ["r1"]}


@pytest.mark.parametrize("kind", list(MessageKind))
def test_parse_known_kinds(kind):
    raw = json.dumps({"type": kind.value, "data": "payload", "recording_id": "rec-1"})

    message = parse_server_message(raw)

    assert message.kind is kind
    assert message.data == "payload"
    assert message.recording_id == "rec-1"


def test_parse_error_message_and_bytes_frame():
    raw = json.dumps({"type": "error", "error": "Model not loaded"}).encode("utf-8")

    message = parse_server_message(raw)

    assert message.kind is MessageKind.ERROR
    assert message.error == "Model not loaded"


def test_parse_text_field_fallback():
    message = parse_server_message('{"type": "transcription", "text": "ahoj"}')

    assert message.text == "ahoj"


def test_unknown_type_is_ignored(caplog):
    caplog.set_level("WARNING")

    assert parse_server_message('{"type": "progress", "data": 5}') is None
    assert "Ignoring unknown message type" in caplog.text


@pytest.mark.parametrize(
    "raw",
    ["not json", "[1, 2]", '{"data": "x"}', '{"type": 5}', b"\xff\xfe"],
)
def test_malformed_frames_raise_parse_error(raw):
    with pytest.raises(ParseError):
        parse_server_message(raw)


def test_tts_audio_bytes():
    payload = base64.b64encode(b"RIFFdata").decode("ascii")
    message = parse_server_message(json.dumps({"type": "tts_audio", "data": payload}))

    assert message.audio_bytes() == b"RIFFdata"


def test_tts_audio_invalid_base64():
    message = parse_server_message('{"type": "tts_audio", "data": "***"}')

    with pytest.raises(ParseError):
        message.audio_bytes()
