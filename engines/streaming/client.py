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
"""Streaming protocol client.

Maintains one WebSocket connection to the first reachable endpoint of an
ordered candidate list, sends the configuration handshake, streams audio and
control messages through a single FIFO send queue, and fans received server
messages out to listeners.
"""

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import websockets
from websockets.exceptions import WebSocketException

from config.constants import (
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    DEFAULT_SEND_QUEUE_SIZE,
    WS_CLOSE_TIMEOUT_SECONDS,
    WS_INTERNAL_ERROR,
    WS_NORMAL_CLOSURE,
    WS_PING_INTERVAL_SECONDS,
    WS_PING_TIMEOUT_SECONDS,
)
from engines.audio.capture import AudioChunk
from engines.streaming.messages import (
    CommandKind,
    ServerMessage,
    SessionParams,
    build_audio_message,
    build_command,
    build_endpoint_url,
    build_tts_request,
    encode_message,
    parse_server_message,
)
from utils.error_handler import CandidatesExhaustedError, ParseError, TransportError
from utils.network_error_handler import diagnose_endpoints, get_network_error_message

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


_ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.ERROR},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
        ConnectionState.ERROR,
    },
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED, ConnectionState.ERROR},
    ConnectionState.ERROR: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}

Connector = Callable[[str], Awaitable[Any]]
StateListener = Callable[[ConnectionState, Optional[str]], None]
MessageListener = Callable[[ServerMessage], None]


async def open_websocket(url: str):
    """Default connector: open a WebSocket connection to ``url``."""
    return await websockets.connect(
        url,
        max_size=None,
        compression=None,
        ping_interval=WS_PING_INTERVAL_SECONDS,
        ping_timeout=WS_PING_TIMEOUT_SECONDS,
        close_timeout=WS_CLOSE_TIMEOUT_SECONDS,
    )


class StreamingProtocolClient:
    """Connection to the translation server with ordered endpoint failover.

    Failover happens only while connecting. A failure on an established
    connection moves the client to ``ERROR``; a new :meth:`connect` call is
    needed to recover.
    """

    def __init__(
        self,
        connector: Optional[Connector] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        send_queue_size: int = DEFAULT_SEND_QUEUE_SIZE,
    ):
        """
        Args:
            connector: Coroutine function that opens a transport for a URL.
                The transport must provide ``send(str)``, ``close(code,
                reason)`` and async iteration over received frames. Defaults
                to :func:`open_websocket`.
            connect_timeout: Seconds allowed for each candidate to connect
                and accept the configuration handshake.
            send_queue_size: Maximum number of queued outgoing messages;
                messages beyond it are dropped.
        """
        self._connector = connector or open_websocket
        self.connect_timeout = connect_timeout
        self.send_queue_size = send_queue_size

        self._state = ConnectionState.DISCONNECTED
        self.current_endpoint: Optional[str] = None
        self.last_error: Optional[TransportError] = None

        self._state_listeners: List[StateListener] = []
        self._message_listeners: List[MessageListener] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._transport = None
        self._send_queue: Optional[asyncio.Queue] = None
        self._sender_task: Optional[asyncio.Task] = None
        self._receiver_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None

        self._params: Optional[SessionParams] = None
        self._candidates: List[str] = []
        self._cursor = 0
        self._connecting = False
        self._closing = False

        self.sent_messages = 0
        self.dropped_messages = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_state_listener(self, callback: StateListener) -> Callable[[], None]:
        """Register ``callback(state, endpoint)``; returns a function that removes it."""
        self._state_listeners.append(callback)
        return lambda: self._remove(self._state_listeners, callback)

    def add_message_listener(self, callback: MessageListener) -> Callable[[], None]:
        """Register ``callback(message)``; returns a function that removes it."""
        self._message_listeners.append(callback)
        return lambda: self._remove(self._message_listeners, callback)

    @staticmethod
    def _remove(listeners: list, callback) -> None:
        if callback in listeners:
            listeners.remove(callback)

    async def connect(self, candidates: Sequence[str], params: SessionParams) -> bool:
        """Connect to the first candidate that accepts the handshake.

        Each candidate is tried at most once, in order. An ``info`` message is
        emitted for every failover; when all candidates fail the state becomes
        ``ERROR`` and a synthetic ``error`` message is emitted.

        Returns:
            ``True`` when connected.
        """
        if self._connecting:
            logger.warning("Connect already in progress")
            return False

        self._connecting = True
        try:
            self._loop = asyncio.get_running_loop()

            if self._transport is not None or self._state is ConnectionState.CONNECTED:
                await self._release_transport(WS_NORMAL_CLOSURE, "Reconnecting")
                self._set_state(ConnectionState.DISCONNECTED)

            self._closing = False
            self._params = params
            self._candidates = list(candidates)
            self._cursor = 0
            self.last_error = None

            while self._cursor < len(self._candidates):
                if self._closing:
                    logger.info("Connect aborted by disconnect()")
                    self._set_state(ConnectionState.DISCONNECTED)
                    return False

                endpoint = self._candidates[self._cursor]
                self._set_state(ConnectionState.CONNECTING, endpoint)

                try:
                    transport = await self._open(endpoint, params)
                except TRANSPORT_ERRORS as exc:
                    message, _ = get_network_error_message(exc)
                    self.last_error = TransportError(f"{message}: {exc}", endpoint=endpoint)
                    logger.warning("Connection to %s failed: %s", endpoint, exc)
                    self._cursor += 1
                    if self._cursor < len(self._candidates):
                        backup = self._candidates[self._cursor]
                        self._emit(
                            ServerMessage.info(
                                f"Server {endpoint} unavailable, trying backup server {backup}"
                            )
                        )
                    continue

                if self._closing:
                    await self._close_quietly(transport, WS_NORMAL_CLOSURE, "User disconnected")
                    self._set_state(ConnectionState.DISCONNECTED)
                    return False

                self._attach(transport)
                self._set_state(ConnectionState.CONNECTED, endpoint)
                return True

            if self._closing:
                return False

            exhausted = CandidatesExhaustedError(self._candidates, self.last_error)
            self.last_error = exhausted
            self._set_state(ConnectionState.ERROR)

            text = str(exhausted)
            hint = diagnose_endpoints(self._candidates)
            if hint:
                text = f"{text}. {hint}"
            logger.error(text)
            self._emit(ServerMessage.failure(text))
            return False
        finally:
            self._connecting = False

    async def _open(self, endpoint: str, params: SessionParams):
        """Open ``endpoint`` and send the configuration handshake."""
        url = build_endpoint_url(endpoint, params.user_id, params.recording_id)
        transport = await asyncio.wait_for(self._connector(url), timeout=self.connect_timeout)

        try:
            await asyncio.wait_for(
                transport.send(encode_message(params.to_config_message())),
                timeout=self.connect_timeout,
            )
        except TRANSPORT_ERRORS:
            await self._close_quietly(transport, WS_INTERNAL_ERROR, "Handshake failed")
            raise
        except asyncio.CancelledError:
            await self._close_quietly(transport, WS_NORMAL_CLOSURE, "Connect cancelled")
            raise

        logger.info(
            "Connected to %s (recording_id=%s, %s -> %s)",
            endpoint,
            params.recording_id,
            params.source_language,
            params.target_language,
        )
        return transport

    def _attach(self, transport) -> None:
        self._transport = transport
        self._send_queue = asyncio.Queue(maxsize=self.send_queue_size)
        self._sender_task = self._loop.create_task(self._send_loop(transport, self._send_queue))
        self._receiver_task = self._loop.create_task(self._receive_loop(transport))

    async def disconnect(self, flush_timeout: float = 0.0) -> None:
        """Close the connection and move to ``DISCONNECTED``. Idempotent.

        Args:
            flush_timeout: Seconds to wait for queued messages to be sent
                before closing. Messages still queued afterwards are dropped.
        """
        if self._state is ConnectionState.DISCONNECTED and self._transport is None:
            return

        self._closing = True
        queue = self._send_queue
        if flush_timeout > 0 and self._state is ConnectionState.CONNECTED and queue is not None:
            # Let puts scheduled by _enqueue land in the queue first
            await asyncio.sleep(0)
            try:
                await asyncio.wait_for(queue.join(), timeout=flush_timeout)
            except asyncio.TimeoutError:
                logger.warning("Send queue not drained before disconnect; %d dropped", queue.qsize())

        await self._release_transport(WS_NORMAL_CLOSURE, "User disconnected")
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected")

    def send_audio_chunk(self, chunk: AudioChunk) -> bool:
        """Queue a chunk for transmission. Safe to call from any thread.

        Returns:
            ``False`` when not connected; the chunk is not sent.
        """
        params = self._params
        if self._state is not ConnectionState.CONNECTED or params is None:
            return False
        return self._enqueue(encode_message(build_audio_message(chunk.data, params.recording_id)))

    def send_command(self, kind: CommandKind, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Queue a control message behind any audio already queued.

        Returns:
            ``False`` when not connected; the command is not sent.
        """
        kind = CommandKind(kind)
        params = self._params
        if self._state is not ConnectionState.CONNECTED or params is None:
            logger.debug("Not connected; %s command not sent", kind.value)
            return False

        payload = payload or {}
        if kind is CommandKind.TTS:
            message = build_tts_request(
                text=payload.get("text", ""),
                voice=payload.get("voice", ""),
                recording_id=params.recording_id,
            )
        else:
            message = build_command(kind, params.recording_id, params.user_id, **payload)

        logger.info("Sending %s command", kind.value)
        return self._enqueue(encode_message(message))

    def request_tts(self, text: str, voice: str) -> bool:
        return self.send_command(CommandKind.TTS, {"text": text, "voice": voice})

    def _enqueue(self, payload: str) -> bool:
        loop, queue = self._loop, self._send_queue
        if loop is None or queue is None or loop.is_closed():
            return False
        try:
            loop.call_soon_threadsafe(self._put_nowait, queue, payload)
        except RuntimeError:
            # Loop closed between the check and the call
            return False
        return True

    def _put_nowait(self, queue: asyncio.Queue, payload: str) -> None:
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped_messages += 1
            if self.dropped_messages % 50 == 1:
                logger.warning(
                    "Send queue full; %d messages dropped so far", self.dropped_messages
                )

    async def _send_loop(self, transport, queue: asyncio.Queue) -> None:
        while True:
            payload = await queue.get()
            try:
                await transport.send(payload)
                self.sent_messages += 1
            except TRANSPORT_ERRORS as exc:
                self._on_transport_failure(transport, exc)
                return
            finally:
                queue.task_done()

    async def _receive_loop(self, transport) -> None:
        try:
            async for raw in transport:
                self._handle_frame(raw)
        except TRANSPORT_ERRORS as exc:
            self._on_transport_failure(transport, exc)
            return

        if self._closing or self._transport is not transport:
            return

        logger.info("Server closed the connection")
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_release(WS_NORMAL_CLOSURE, "Server closed")

    def _handle_frame(self, raw) -> None:
        try:
            message = parse_server_message(raw)
        except ParseError as exc:
            logger.warning("Dropping malformed server message: %s", exc)
            return

        if message is not None:
            self._emit(message)

    def _on_transport_failure(self, transport, exc: BaseException) -> None:
        if self._closing or self._transport is not transport:
            logger.debug("Transport error after close: %s", exc)
            return
        if self._state is not ConnectionState.CONNECTED:
            return

        message, suggestion = get_network_error_message(exc)
        self.last_error = TransportError(
            f"{message}: {exc}", endpoint=self.current_endpoint, transient=False
        )
        logger.error("Transport failure on %s: %s", self.current_endpoint, exc)
        self._set_state(ConnectionState.ERROR, self.current_endpoint)
        self._emit(ServerMessage.failure(f"{message}. {suggestion}"))
        self._schedule_release(WS_INTERNAL_ERROR, "Transport failure")

    def _schedule_release(self, code: int, reason: str) -> None:
        self._cleanup_task = self._loop.create_task(self._release_transport(code, reason))

    async def _release_transport(self, code: int, reason: str) -> None:
        transport, self._transport = self._transport, None
        queue, self._send_queue = self._send_queue, None
        tasks = [task for task in (self._sender_task, self._receiver_task) if task is not None]
        self._sender_task = self._receiver_task = None

        current = asyncio.current_task()
        pending = [task for task in tasks if task is not current]
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if queue is not None and not queue.empty():
            logger.debug("Discarding %d queued messages", queue.qsize())

        if transport is not None:
            await self._close_quietly(transport, code, reason)

    @staticmethod
    async def _close_quietly(transport, code: int, reason: str) -> None:
        try:
            await asyncio.wait_for(
                transport.close(code=code, reason=reason), timeout=WS_CLOSE_TIMEOUT_SECONDS
            )
        except TRANSPORT_ERRORS as exc:
            logger.debug("Error while closing transport: %s", exc)

    def _set_state(self, state: ConnectionState, endpoint: Optional[str] = None) -> None:
        if state is self._state and endpoint == self.current_endpoint:
            return
        if state is not self._state and state not in _ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal connection transition {self._state.value} -> {state.value}")

        self._state = state
        self.current_endpoint = endpoint
        logger.info(
            "Connection state: %s%s", state.value, f" ({endpoint})" if endpoint else ""
        )

        for callback in list(self._state_listeners):
            try:
                callback(state, endpoint)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Connection state listener failed: %s", exc)

    def _emit(self, message: ServerMessage) -> None:
        for callback in list(self._message_listeners):
            try:
                callback(message)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Server message listener failed: %s", exc)
