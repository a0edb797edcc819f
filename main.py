#!/usr/bin/env python3
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
VoxRelay - Live speech translation recorder

Main entry point for the command line client.
"""

import argparse
import asyncio
import signal
import sys
import traceback

from config.__version__ import get_display_version
from config.app_config import ConfigManager
from config.constants import LOG_SEPARATOR_LENGTH
from utils.error_handler import DeviceUnavailableError, ErrorHandler
from utils.logger import get_log_file_path, get_recent_logs, setup_logging
from utils.network_error_handler import (
    check_endpoint_reachable,
    diagnose_endpoints,
    get_overlay_interfaces,
)

# Global logger for exception hook
_logger = None


def exception_hook(exctype, value, tb):
    """
    Global exception handler for uncaught exceptions.

    Args:
        exctype: Exception type
        value: Exception value
        tb: Traceback object
    """
    error_msg = "".join(traceback.format_exception(exctype, value, tb))

    if _logger:
        _logger.critical(
            f"Uncaught exception: {exctype.__name__}: {value}",
            exc_info=(exctype, value, tb),
        )
    else:
        # Fallback if logger not initialized
        print(f"CRITICAL ERROR: {error_msg}", file=sys.stderr)


class ConsolePresenter:
    """Prints session state changes to the terminal."""

    def __init__(self, controller, stream=None):
        self.controller = controller
        self.stream = stream or sys.stdout
        self._printed = {"transcription": "", "translation": ""}
        self._unsubscribers = []

    def attach(self):
        controller = self.controller
        self._unsubscribers = [
            controller.recording_state.subscribe(
                lambda state: self._print(f"[state] {state.value}")
            ),
            controller.connection_state.subscribe(
                lambda state: self._print(f"[connection] {state.value}")
            ),
            controller.speaker_mode.subscribe(
                lambda mode: self._print(f"[speaker] {mode.value}")
            ),
            controller.status_message.subscribe(
                lambda text: text and self._print(f"[status] {text}")
            ),
            controller.transcription.subscribe(
                lambda text: self._print_delta("transcription", text)
            ),
            controller.translation.subscribe(
                lambda text: self._print_delta("translation", text)
            ),
        ]

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _print_delta(self, kind: str, text: str):
        previous = self._printed[kind]
        self._printed[kind] = text
        if text.startswith(previous):
            delta = text[len(previous):].strip()
        else:
            delta = text
        if delta:
            self._print(f"[{kind}] {delta}")

    def _print(self, line: str):
        print(line, file=self.stream, flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voxrelay", description="VoxRelay live translation recorder")
    parser.add_argument("--version", action="version", version=get_display_version())
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="File log level (default depends on VOXRELAY_ENV)",
    )
    subparsers = parser.add_subparsers(dest="command")

    record = subparsers.add_parser("record", help="Record and translate a session")
    record.add_argument(
        "--server",
        action="append",
        dest="servers",
        metavar="URL",
        help="Server candidate URL; repeat to give fallbacks in priority order",
    )
    record.add_argument("--source", help="Source language code (e.g. cs)")
    record.add_argument("--target", help="Target language code (e.g. en)")
    record.add_argument(
        "--duration", type=float, help="Stop automatically after this many seconds"
    )
    record.add_argument("--name", help="Name for the saved recording")
    record.add_argument(
        "--list-devices", action="store_true", help="List audio input devices and exit"
    )

    check = subparsers.add_parser("check", help="Check that the configured servers are reachable")
    check.add_argument("--server", action="append", dest="servers", metavar="URL")
    check.add_argument("--timeout", type=float, default=3.0, help="TCP connect timeout in seconds")

    subparsers.add_parser("recordings", help="List saved recordings")

    logs = subparsers.add_parser("logs", help="Show the most recent log lines")
    logs.add_argument("--lines", type=int, help="Number of lines to show")
    return parser


def list_devices(audio_capture) -> int:
    devices = audio_capture.get_input_devices()
    if not devices:
        print("No audio input devices found")
        return 1
    for device in devices:
        print(f"{device['index']:>3}  {device['name']}  ({device['max_input_channels']} ch)")
    return 0


def check_servers(args, config_manager) -> int:
    """Probe each server candidate and explain overlay-network outages."""
    servers = args.servers or config_manager.get("streaming.servers", [])
    if not servers:
        print("No servers configured")
        return 1

    reachable = 0
    for url in servers:
        ok = check_endpoint_reachable(url, timeout=args.timeout)
        if ok:
            reachable += 1
        print(f"{'ok  ' if ok else 'FAIL'}  {url}")

    interfaces = get_overlay_interfaces()
    for entry in interfaces:
        print(f"tailnet interface {entry['interface']}: {entry['address']}")

    if not reachable:
        hint = diagnose_endpoints(servers)
        if hint:
            print(hint)
        return 1
    return 0


def list_recordings(config_manager) -> int:
    from core.realtime.archiver import SessionArchiver
    from core.realtime.config import RealtimeConfig

    archiver = SessionArchiver(RealtimeConfig.from_app_config(config_manager))
    try:
        recordings = archiver.list_recordings()
    finally:
        archiver.shutdown()

    if not recordings:
        print("No saved recordings")
        return 0
    for item in recordings:
        print(
            f"{item.created_at[:19]}  {item.name}  "
            f"({item.duration_ms / 1000:.1f}s, {item.source_language}->{item.target_language})"
        )
    return 0


def show_logs(args) -> int:
    lines = get_recent_logs(args.lines)
    if not lines:
        print(f"No log file at {get_log_file_path()}")
        return 0
    sys.stdout.writelines(lines)
    return 0


async def run_session(args, config_manager, logger) -> int:
    """Run one recording session until Ctrl+C or ``--duration`` elapses."""
    from core.realtime.archiver import SessionArchiver
    from core.realtime.config import ProviderConfig, RealtimeConfig
    from core.realtime.recorder import SessionController
    from engines.audio.capture import AudioCapture
    from engines.streaming.client import StreamingProtocolClient

    config = RealtimeConfig.from_app_config(config_manager)
    if args.servers:
        config.servers = list(args.servers)

    audio_capture = AudioCapture(sample_rate=config.sample_rate, chunk_size=config.chunk_size)
    if args.list_devices:
        try:
            return list_devices(audio_capture)
        finally:
            audio_capture.close()

    client = StreamingProtocolClient(
        connect_timeout=config.connect_timeout, send_queue_size=config.send_queue_size
    )
    archiver = SessionArchiver(config)
    controller = SessionController(audio_capture, client, archiver, config)
    presenter = ConsolePresenter(controller)
    presenter.attach()

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    signal_installed = True
    try:
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
    except NotImplementedError:
        # Signal handlers are unavailable on Windows event loops
        signal_installed = False

    try:
        try:
            await controller.start(
                source_language=args.source,
                target_language=args.target,
                provider_config=ProviderConfig.from_dict(config_manager.get("session", {})),
            )
        except DeviceUnavailableError as exc:
            error_info = ErrorHandler.handle_error(exc, {"operation": "start"})
            print(ErrorHandler.format_user_message(error_info), file=sys.stderr)
            return 1

        print("Recording... press Ctrl+C to stop", flush=True)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=args.duration)
        except asyncio.TimeoutError:
            logger.info("Recording duration of %ss reached", args.duration)

        result = await controller.stop()
        metadata = await controller.save_session(args.name)
        if metadata is not None:
            print(
                f"Saved '{metadata.name}' ({result.get('duration', 0.0):.1f}s): "
                f"{metadata.audio_path or 'no audio'}"
            )
        return 0
    finally:
        if signal_installed:
            loop.remove_signal_handler(signal.SIGINT)
        presenter.detach()
        audio_capture.close()
        archiver.shutdown()


def main(argv=None):
    """Application entry point."""
    global _logger

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    try:
        logger = setup_logging(level=args.log_level)
        _logger = logger

        logger.info("=" * LOG_SEPARATOR_LENGTH)
        logger.info("VoxRelay %s starting", get_display_version())
        logger.info("=" * LOG_SEPARATOR_LENGTH)

        sys.excepthook = exception_hook

        if args.command == "logs":
            return show_logs(args)

        config_manager = ConfigManager()
        if args.command == "check":
            return check_servers(args, config_manager)
        if args.command == "recordings":
            return list_recordings(config_manager)

        user_id = config_manager.ensure_user_id()
        logger.info("Configuration loaded (user_id=%s)", user_id)

        exit_code = asyncio.run(run_session(args, config_manager, logger))
        logger.info("VoxRelay exiting with code %s", exit_code)
        return exit_code

    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
