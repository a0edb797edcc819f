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
"""Recording session controller.

This module implements the lifecycle of one live-translation recording:
capturing audio, classifying the active speaker, streaming chunks to the
translation server, and persisting the session audio and text.
"""

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config.constants import DEFAULT_RECORDING_NAME_FORMAT
from core.realtime.archiver import RecordingMetadata
from core.realtime.audio_buffer import AudioBuffer, Segment
from core.realtime.config import ProviderConfig, RealtimeConfig
from core.realtime.diarizer import DiarizerSettings, SpeakerDiarizer, SpeakerMode
from core.realtime.observable import StateCell, StateView
from engines.audio.capture import AudioChunk, InputSourceCandidate
from engines.streaming.client import ConnectionState
from engines.streaming.messages import (
    CommandKind,
    MessageKind,
    ServerMessage,
    SessionParams,
    current_timestamp_ms,
)
from utils.error_handler import (
    DeviceUnavailableError,
    ErrorHandler,
    ParseError,
    SerializationError,
)

logger = logging.getLogger(__name__)


class RecordingState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"


@dataclass
class Session:
    """One recording attempt, owned by :class:`SessionController`."""

    session_id: str
    source_language: str
    target_language: str
    provider: ProviderConfig
    started_at: float
    created_at: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    total_paused: float = 0.0
    paused_at: Optional[float] = None
    duration: float = 0.0
    recording_path: Optional[str] = None
    segments: List[Segment] = field(default_factory=list)


class SessionController:
    """Drive the full lifecycle of a recording session.

    State machine: ``IDLE -> RECORDING <-> PAUSED -> IDLE``. All public
    coroutines run on the asyncio loop; the per-chunk path runs on the capture
    thread and never waits on the network.
    """

    def __init__(
        self,
        audio_capture,
        protocol_client,
        archiver,
        config: Optional[RealtimeConfig] = None,
        diarizer: Optional[SpeakerDiarizer] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the session controller.

        Args:
            audio_capture: ``AudioCapture`` instance; exclusively owned while a
                session is active.
            protocol_client: ``StreamingProtocolClient`` used to relay audio.
            archiver: ``SessionArchiver`` that persists session artifacts.
            config: Session configuration; defaults to ``RealtimeConfig()``.
            diarizer: Speaker classifier; built from ``config.diarization``
                when omitted.
            clock: Monotonic time source used for elapsed-time accounting.
        """
        self.audio_capture = audio_capture
        self.client = protocol_client
        self.archiver = archiver
        self.config = config or RealtimeConfig()
        self._clock = clock

        # Observable state; the controller holds the only writable references.
        self._recording_state = StateCell("recording_state", RecordingState.IDLE)
        self._elapsed_ms = StateCell("elapsed_ms", 0)
        self._amplitude = StateCell("amplitude", 0.0)
        self._transcription = StateCell("transcription", "")
        self._translation = StateCell("translation", "")
        self._connection_state = StateCell("connection_state", ConnectionState.DISCONNECTED)
        self._speaker_mode = StateCell("speaker_mode", SpeakerMode.SELF)
        self._tts_audio = StateCell("tts_audio", None)
        self._status_message = StateCell("status_message", "")

        if diarizer is None:
            diarizer = SpeakerDiarizer(DiarizerSettings.from_dict(self.config.diarization))
        self.diarizer = diarizer
        self.diarizer.on_mode_change = self._speaker_mode.set
        self._speaker_mode.set(self.diarizer.mode)

        self.client.add_state_listener(self._on_connection_state)
        self.client.add_message_listener(self._handle_server_message)

        self.session: Optional[Session] = None
        self.audio_buffer: Optional[AudioBuffer] = None

        self._ticker_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._last_segment_id = 0

        logger.info("SessionController initialized")

    # Read-only state for presentation collaborators

    @property
    def state(self) -> RecordingState:
        return self._recording_state.value

    @property
    def recording_state(self) -> StateView:
        return self._recording_state.read_only()

    @property
    def elapsed_ms(self) -> StateView:
        return self._elapsed_ms.read_only()

    @property
    def amplitude(self) -> StateView:
        return self._amplitude.read_only()

    @property
    def transcription(self) -> StateView:
        return self._transcription.read_only()

    @property
    def translation(self) -> StateView:
        return self._translation.read_only()

    @property
    def connection_state(self) -> StateView:
        return self._connection_state.read_only()

    @property
    def speaker_mode(self) -> StateView:
        return self._speaker_mode.read_only()

    @property
    def tts_audio(self) -> StateView:
        return self._tts_audio.read_only()

    @property
    def status_message(self) -> StateView:
        return self._status_message.read_only()

    async def start(
        self,
        session_id: Optional[str] = None,
        source_language: Optional[str] = None,
        target_language: Optional[str] = None,
        provider_config: Optional[ProviderConfig] = None,
    ) -> bool:
        """Open the audio device and begin a new session.

        The server connection is launched as a background task; capture does
        not wait for it.

        Returns:
            ``False`` when a session is already active.

        Raises:
            DeviceUnavailableError: No input source could be opened. The
                controller stays IDLE and ``start`` may be retried.
        """
        if self.state is not RecordingState.IDLE:
            logger.warning("Session already active (%s); start ignored", self.state.value)
            return False

        if self.session is not None:
            logger.warning(
                "Unsaved session %s dropped by new start; its files are kept",
                self.session.session_id,
            )
            self.session = None

        candidates = [InputSourceCandidate.from_dict(item) for item in self.config.input_sources]
        try:
            source = self.audio_capture.open_input(candidates)
        except DeviceUnavailableError as exc:
            error_info = ErrorHandler.handle_error(exc, {"operation": "start"})
            self._status_message.set(error_info["user_message"])
            raise

        loop = asyncio.get_running_loop()
        session_id = session_id or uuid.uuid4().hex
        source_language = source_language or self.config.source_language
        target_language = target_language or self.config.target_language
        provider_config = provider_config or ProviderConfig()

        self.audio_buffer = AudioBuffer(
            sample_rate=self.audio_capture.sample_rate, channels=source.channels
        )
        self.diarizer.reset()
        self._reset_session_cells()

        self.session = Session(
            session_id=session_id,
            source_language=source_language,
            target_language=target_language,
            provider=provider_config,
            started_at=self._clock(),
        )

        try:
            self.audio_capture.start_capture(self._on_audio_chunk)
        except Exception:
            logger.error("Failed to start capture; rolling back session start", exc_info=True)
            await self._rollback_failed_start()
            raise

        self._recording_state.set(RecordingState.RECORDING)
        self._ticker_task = loop.create_task(self._tick_elapsed())

        params = SessionParams(
            user_id=self.config.user_id,
            recording_id=session_id,
            source_language=source_language,
            target_language=target_language,
            llm_provider=provider_config.llm_provider,
            llm_api_key=provider_config.llm_api_key,
            transcription_provider=provider_config.transcription_provider,
            transcription_api_key=provider_config.transcription_api_key,
        )
        self._connect_task = loop.create_task(self.client.connect(self.config.servers, params))

        logger.info(
            "Session %s started (%s -> %s, source=%s, channels=%d)",
            session_id,
            source_language,
            target_language,
            source.name,
            source.channels,
        )
        return True

    def _on_audio_chunk(self, chunk: AudioChunk) -> None:
        """Per-chunk hot path, executed on the capture thread."""
        buffer = self.audio_buffer
        if buffer is None:
            return

        left, right = chunk.channel_levels()
        buffer.append(chunk)
        self.diarizer.process(left, right)
        self.client.send_audio_chunk(chunk)
        self._amplitude.set(max(left, right))

    async def pause(self) -> bool:
        """Stop device reads; buffered audio and elapsed time are preserved."""
        if self.state is not RecordingState.RECORDING:
            logger.debug("pause() ignored in state %s", self.state.value)
            return False

        self.session.paused_at = self._clock()
        await asyncio.get_running_loop().run_in_executor(None, self.audio_capture.pause_capture)

        self._recording_state.set(RecordingState.PAUSED)
        self._amplitude.set(0.0)
        self.client.send_command(CommandKind.PAUSE)
        logger.info("Session %s paused", self.session.session_id)
        return True

    async def resume(self) -> bool:
        """Restart device reads after :meth:`pause`."""
        if self.state is not RecordingState.PAUSED:
            logger.debug("resume() ignored in state %s", self.state.value)
            return False

        await asyncio.get_running_loop().run_in_executor(None, self.audio_capture.resume_capture)
        session = self.session
        session.total_paused += self._clock() - session.paused_at
        session.paused_at = None

        self._recording_state.set(RecordingState.RECORDING)
        self.client.send_command(CommandKind.RESUME)
        logger.info("Session %s resumed", session.session_id)
        return True

    async def stop(self) -> Dict[str, Any]:
        """Stop capture, persist the session audio and return to IDLE.

        The capture thread is joined before the device is released, so the
        written WAV holds exactly the samples read from the device. The
        buffered session is kept until :meth:`save_session` or
        :meth:`discard_session`.

        Returns:
            Summary of the finished session; empty when no session was active.
        """
        if self.state is RecordingState.IDLE:
            logger.warning("No active session to stop")
            return {}

        session = self.session
        buffer = self.audio_buffer
        session.duration = self._elapsed_at(self._clock())
        session.end_time = datetime.now()

        await asyncio.get_running_loop().run_in_executor(None, self.audio_capture.stop_capture)
        await self._cancel_task(self._ticker_task)
        self._ticker_task = None
        self._elapsed_ms.set(int(session.duration * 1000))
        self._amplitude.set(0.0)

        self.client.send_command(
            CommandKind.END_RECORDING,
            {"name": session.end_time.strftime(DEFAULT_RECORDING_NAME_FORMAT)},
        )

        # A trailing segment only exists once a language swap split the session
        if session.segments:
            await self._close_segment()

        if buffer.is_empty():
            logger.warning("No audio data to save")
            self._status_message.set("No audio data to save")
        else:
            try:
                path = await self.archiver.write_recording(
                    session.session_id,
                    buffer.get_pcm_chunks(),
                    buffer.channels,
                    buffer.sample_rate,
                )
                session.recording_path = str(path)
            except SerializationError as exc:
                self._report_storage_error(exc, "write_recording")

        connect_task, self._connect_task = self._connect_task, None
        await self._cancel_task(connect_task)
        await self.client.disconnect(flush_timeout=self.config.end_flush_timeout)

        self._recording_state.set(RecordingState.IDLE)

        result = {
            "session_id": session.session_id,
            "duration": session.duration,
            "start_time": session.created_at.isoformat(),
            "end_time": session.end_time.isoformat(),
            "recording_path": session.recording_path,
            "segment_paths": [segment.path for segment in session.segments if segment.path],
            "chunk_count": buffer.get_chunk_count(),
            "frame_count": buffer.get_frame_count(),
            "transcript": self._transcription.value,
            "translation": self._translation.value,
        }
        logger.info(
            "Session %s stopped: %.2fs, %d frames",
            session.session_id,
            session.duration,
            result["frame_count"],
        )
        return result

    async def notify_language_swap(
        self, new_source: str, new_target: str
    ) -> Optional[Segment]:
        """Close the current segment and continue with swapped languages.

        Returns:
            The segment that was closed, or ``None`` when no session is active.
        """
        if self.state is RecordingState.IDLE:
            logger.warning("Language swap ignored; no active session")
            return None

        segment = await self._close_segment()
        session = self.session
        session.source_language = new_source
        session.target_language = new_target

        self.client.send_command(
            CommandKind.LANGUAGE_SWAP,
            {
                "source_language": new_source,
                "target_language": new_target,
                "segment_id": str(segment.segment_id),
            },
        )
        logger.info("Languages swapped to %s -> %s", new_source, new_target)
        return segment

    def set_speaker_mode(self, mode: SpeakerMode) -> None:
        """Manually override the speaker mode until audio evidence switches it."""
        self.diarizer.set_mode(SpeakerMode(mode))

    def request_tts(self, text: str) -> bool:
        """Ask the server to speak ``text`` in the current target language."""
        text = (text or "").strip()
        if not text:
            return False

        if self.session is not None:
            voice = self.session.target_language
        else:
            voice = self.config.target_language
        return self.client.request_tts(text, voice)

    def clear_tts_audio(self) -> None:
        self._tts_audio.set(None)

    async def save_session(self, name: Optional[str] = None) -> Optional[RecordingMetadata]:
        """Persist metadata and text of the finished session, then release it.

        An active session is stopped first.

        Raises:
            SerializationError: Metadata or text could not be written; the
                session is kept so saving can be retried.
        """
        if self.state is not RecordingState.IDLE:
            await self.stop()

        session = self.session
        if session is None:
            logger.warning("No session to save")
            return None

        created = session.created_at
        metadata = RecordingMetadata(
            id=session.session_id,
            name=name or created.strftime(DEFAULT_RECORDING_NAME_FORMAT),
            audio_path=session.recording_path or "",
            duration_ms=int(session.duration * 1000),
            original_text=self._transcription.value,
            translated_text=self._translation.value,
            source_language=session.source_language,
            target_language=session.target_language,
            user_id=self.config.user_id,
            created_at=created.isoformat(),
            segment_paths=[segment.path for segment in session.segments if segment.path],
        )

        try:
            await self.archiver.save_text(session.session_id, "transcript", metadata.original_text)
            await self.archiver.save_text(
                session.session_id, "translation", metadata.translated_text
            )
            await self.archiver.save_metadata(metadata)
        except SerializationError as exc:
            self._report_storage_error(exc, "save_session")
            raise

        self._release_session()
        logger.info("Session %s saved as '%s'", metadata.id, metadata.name)
        return metadata

    async def discard_session(self) -> bool:
        """Delete the files written for the last session and release it."""
        if self.state is not RecordingState.IDLE:
            await self.stop()

        session = self.session
        if session is None:
            return False

        paths = [session.recording_path] + [segment.path for segment in session.segments]
        await self.archiver.discard(paths)
        self._release_session()
        logger.info("Session %s discarded", session.session_id)
        return True

    def get_elapsed_seconds(self) -> float:
        if self.session is None:
            return 0.0
        if self.state is RecordingState.IDLE:
            return self.session.duration
        return self._elapsed_at(self._clock())

    def get_session_status(self) -> Dict[str, Any]:
        session = self.session
        buffer = self.audio_buffer
        return {
            "state": self.state.value,
            "session_id": session.session_id if session else None,
            "elapsed_seconds": self.get_elapsed_seconds(),
            "source_language": session.source_language if session else None,
            "target_language": session.target_language if session else None,
            "connection_state": self._connection_state.value.value,
            "endpoint": self.client.current_endpoint,
            "speaker_mode": self._speaker_mode.value.value,
            "segment_count": len(session.segments) if session else 0,
            "buffer": buffer.get_stats() if buffer else None,
        }

    def _elapsed_at(self, now: float) -> float:
        session = self.session
        paused = session.total_paused
        if session.paused_at is not None:
            paused += now - session.paused_at
        return max(0.0, now - session.started_at - paused)

    async def _tick_elapsed(self) -> None:
        while True:
            self._elapsed_ms.set(int(self._elapsed_at(self._clock()) * 1000))
            await asyncio.sleep(self.config.elapsed_tick_interval)

    async def _close_segment(self) -> Segment:
        """Cut the buffer at the current position and write the closed segment."""
        session = self.session
        buffer = self.audio_buffer
        chunks = buffer.take_segment()
        segment_id = self._next_segment_id()

        path = None
        if chunks:
            try:
                written = await self.archiver.write_segment(
                    session.session_id,
                    segment_id,
                    [chunk.data for chunk in chunks],
                    buffer.channels,
                    buffer.sample_rate,
                )
                path = str(written)
            except SerializationError as exc:
                self._report_storage_error(exc, "write_segment")

        segment = Segment(
            segment_id=segment_id,
            index=len(session.segments),
            source_language=session.source_language,
            target_language=session.target_language,
            first_sequence=chunks[0].sequence if chunks else None,
            last_sequence=chunks[-1].sequence if chunks else None,
            frame_count=sum(chunk.frame_count for chunk in chunks),
            path=path,
        )
        session.segments.append(segment)
        logger.info(
            "Segment %d closed (%d chunks, %s -> %s)",
            segment.index,
            len(chunks),
            segment.source_language,
            segment.target_language,
        )
        return segment

    def _next_segment_id(self) -> int:
        self._last_segment_id = max(current_timestamp_ms(), self._last_segment_id + 1)
        return self._last_segment_id

    def _on_connection_state(self, state: ConnectionState, endpoint: Optional[str]) -> None:
        self._connection_state.set(state)

    def _handle_server_message(self, message: ServerMessage) -> None:
        kind = message.kind
        if kind is MessageKind.TRANSCRIPTION:
            self._append_text(self._transcription, message.text)
        elif kind is MessageKind.TRANSLATION:
            self._append_text(self._translation, message.text)
        elif kind is MessageKind.TTS_AUDIO:
            try:
                self._tts_audio.set(message.audio_bytes())
            except ParseError as exc:
                logger.warning("Dropping TTS audio: %s", exc)
        elif kind is MessageKind.ERROR:
            text = message.error or message.text or "Unknown server error"
            logger.error("Server error: %s", text)
            self._status_message.set(text)
        elif kind is MessageKind.INFO:
            logger.info("Server info: %s", message.text)
            self._status_message.set(message.text)

    @staticmethod
    def _append_text(cell: StateCell, text: str) -> None:
        text = text.strip()
        if not text:
            return
        current = cell.value
        cell.set(f"{current} {text}" if current else text)

    def _report_storage_error(self, exc: SerializationError, operation: str) -> None:
        error_info = ErrorHandler.handle_error(exc, {"operation": operation})
        self._status_message.set(error_info["user_message"])

    def _reset_session_cells(self) -> None:
        self._elapsed_ms.set(0)
        self._amplitude.set(0.0)
        self._transcription.set("")
        self._translation.set("")
        self._tts_audio.set(None)
        self._status_message.set("")

    def _release_session(self) -> None:
        self.session = None
        self.audio_buffer = None

    async def _rollback_failed_start(self) -> None:
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, self.audio_capture.stop_capture
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to release audio device during rollback: %s", exc)
        self._release_session()
        self._recording_state.set(RecordingState.IDLE)

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
