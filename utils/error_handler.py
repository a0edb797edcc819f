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
Unified error handling.

Defines the VoxRelay exception taxonomy and converts exceptions into
user-facing messages and suggestions for presentation collaborators.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error categories"""

    DEVICE = "device"
    NETWORK = "network"
    PROTOCOL = "protocol"
    STORAGE = "storage"
    VALIDATION = "validation"
    UNKNOWN = "unknown"

    def get_display_name(self) -> str:
        display_names = {
            ErrorCategory.DEVICE: "Audio Device",
            ErrorCategory.NETWORK: "Network",
            ErrorCategory.PROTOCOL: "Protocol",
            ErrorCategory.STORAGE: "Storage",
            ErrorCategory.VALIDATION: "Validation",
            ErrorCategory.UNKNOWN: "Unknown",
        }
        return display_names.get(self, "Unknown")


class VoxRelayError(Exception):
    """Base class for VoxRelay errors."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.category = category


class DeviceUnavailableError(VoxRelayError):
    """No audio input source could be opened."""

    def __init__(self, message: Optional[str] = None, attempted: Optional[Sequence[str]] = None):
        self.attempted: List[str] = list(attempted or [])
        if message is None:
            if self.attempted:
                message = "No audio input source could be opened (tried: {})".format(
                    ", ".join(self.attempted)
                )
            else:
                message = "No audio input source could be opened"
        super().__init__(message, ErrorCategory.DEVICE)


class TransportError(VoxRelayError):
    """Connection to a streaming endpoint failed.

    ``transient`` failures are recovered by advancing to the next endpoint
    candidate; terminal failures are surfaced as connection state.
    """

    def __init__(
        self,
        message: Optional[str] = None,
        endpoint: Optional[str] = None,
        transient: bool = True,
    ):
        if message is None:
            message = "Network connection failed"
        super().__init__(message, ErrorCategory.NETWORK)
        self.endpoint = endpoint
        self.transient = transient


class CandidatesExhaustedError(TransportError):
    """Every endpoint candidate failed during a single connect attempt."""

    def __init__(self, endpoints: Sequence[str], last_error: Optional[BaseException] = None):
        self.endpoints = list(endpoints)
        self.last_error = last_error
        if self.endpoints:
            message = f"All servers unavailable ({len(self.endpoints)} tried)"
        else:
            message = "No servers configured"
        super().__init__(message, transient=False)


class ParseError(VoxRelayError):
    """A server message could not be decoded."""

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message, ErrorCategory.PROTOCOL)
        self.raw = raw


class SerializationError(VoxRelayError):
    """Audio or session metadata could not be written to disk."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, ErrorCategory.STORAGE)
        self.path = path


class ErrorHandler:
    """Unified error handler"""

    @staticmethod
    def handle_error(error: Exception, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Convert an exception into a presentation-friendly description.

        Args:
            error: Exception instance
            context: Optional error context

        Returns:
            Dictionary with the keys ``user_message``, ``technical_details``,
            ``suggested_action``, ``retry_possible`` and ``category``.
        """
        context = context or {}

        logger.error(
            f"Error occurred: {type(error).__name__}: {str(error)}",
            exc_info=True,
            extra={"context": context},
        )

        if isinstance(error, VoxRelayError):
            return {
                "user_message": str(error),
                "technical_details": ErrorHandler._technical_details(error),
                "suggested_action": ErrorHandler._get_suggested_action(error, context),
                "retry_possible": ErrorHandler._is_retryable_error(error),
                "category": error.category.value,
            }

        elif isinstance(error, FileNotFoundError):
            return {
                "user_message": "File not found",
                "technical_details": str(error),
                "suggested_action": "Check that the recordings directory exists",
                "retry_possible": False,
                "category": ErrorCategory.STORAGE.value,
            }

        elif isinstance(error, OSError) and "space" in str(error).lower():
            return {
                "user_message": "Not enough disk space",
                "technical_details": str(error),
                "suggested_action": "Free up disk space and try again",
                "retry_possible": True,
                "category": ErrorCategory.STORAGE.value,
            }

        elif isinstance(error, ValueError):
            return {
                "user_message": "Invalid value",
                "technical_details": str(error),
                "suggested_action": "Check the configuration values",
                "retry_possible": False,
                "category": ErrorCategory.VALIDATION.value,
            }

        elif isinstance(error, TimeoutError):
            return {
                "user_message": "Operation timed out",
                "technical_details": str(error),
                "suggested_action": "Check the network connection or try again later",
                "retry_possible": True,
                "category": ErrorCategory.NETWORK.value,
            }

        else:
            return {
                "user_message": "An unexpected error occurred",
                "technical_details": f"{type(error).__name__}: {str(error)}",
                "suggested_action": "See the log file for details",
                "retry_possible": False,
                "category": ErrorCategory.UNKNOWN.value,
            }

    @staticmethod
    def format_user_message(error_info: Dict[str, Any], include_action: bool = True) -> str:
        """
        Format an error description for display.

        Args:
            error_info: Dictionary returned by ``handle_error``
            include_action: Whether to append the suggested action

        Returns:
            Formatted message
        """
        message = error_info["user_message"]

        if include_action and error_info.get("suggested_action"):
            message += f"\n\n{error_info['suggested_action']}"

        return message

    @staticmethod
    def _technical_details(error: VoxRelayError) -> str:
        if isinstance(error, DeviceUnavailableError) and error.attempted:
            return f"{error} [attempted={error.attempted}]"
        if isinstance(error, CandidatesExhaustedError) and error.last_error is not None:
            return f"{error} [last_error={error.last_error!r}]"
        if isinstance(error, TransportError) and error.endpoint:
            return f"{error} [endpoint={error.endpoint}]"
        if isinstance(error, SerializationError) and error.path:
            return f"{error} [path={error.path}]"
        return str(error)

    @staticmethod
    def _get_suggested_action(
        error: VoxRelayError, context: Optional[Dict[str, Any]] = None
    ) -> str:
        if isinstance(error, DeviceUnavailableError):
            return "Check that a microphone is connected and not used by another application"
        elif isinstance(error, CandidatesExhaustedError):
            hint = (context or {}).get("network_hint")
            if hint:
                return hint
            return "Check that the translation server is running and reachable"
        elif isinstance(error, TransportError):
            return "Check the network connection and try again"
        elif isinstance(error, ParseError):
            return "The server sent an unexpected message; check server and client versions"
        elif isinstance(error, SerializationError):
            return "Check disk space and write permissions for the recordings directory"
        else:
            return "See the log file for details"

    @staticmethod
    def _is_retryable_error(error: VoxRelayError) -> bool:
        if isinstance(error, TransportError):
            return error.transient
        return isinstance(error, (DeviceUnavailableError, SerializationError))
