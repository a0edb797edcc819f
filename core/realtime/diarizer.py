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
"""Two-channel speaker attribution.

The left channel carries the near microphone (the device owner), the right
channel the far microphone (the other party). A bounded window of per-chunk
levels is averaged; whichever side dominates by ``dominance_ratio`` wins,
subject to a cooldown between applied switches.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, fields
from enum import Enum
from typing import Callable, Optional

from config.constants import (
    DIARIZATION_COOLDOWN_SECONDS,
    DIARIZATION_DOMINANCE_RATIO,
    DIARIZATION_SILENCE_THRESHOLD,
    DIARIZATION_WINDOW_SIZE,
)

logger = logging.getLogger(__name__)


class SpeakerMode(str, Enum):
    """Who is currently speaking."""

    SELF = "self"
    EXTERNAL = "external"


@dataclass(frozen=True)
class DiarizerSettings:
    """Tuning values for :class:`SpeakerDiarizer`.

    The defaults were tuned for a single handset microphone pair and are not
    expected to transfer to other devices unchanged.
    """

    window_size: int = DIARIZATION_WINDOW_SIZE
    silence_threshold: float = DIARIZATION_SILENCE_THRESHOLD
    dominance_ratio: float = DIARIZATION_DOMINANCE_RATIO
    cooldown_seconds: float = DIARIZATION_COOLDOWN_SECONDS

    def __post_init__(self):
        if self.window_size < 1:
            raise ValueError("window_size must be at least 1")
        if self.dominance_ratio < 1.0:
            raise ValueError("dominance_ratio must be >= 1.0")
        if self.silence_threshold < 0 or self.cooldown_seconds < 0:
            raise ValueError("silence_threshold and cooldown_seconds must be non-negative")

    @classmethod
    def from_dict(cls, config_dict: dict) -> "DiarizerSettings":
        valid_keys = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config_dict.items() if k in valid_keys})


@dataclass(frozen=True)
class SpeakerState:
    """Snapshot of the diarizer."""

    mode: SpeakerMode
    average_left: float
    average_right: float
    history_length: int
    last_switch_at: Optional[float]


class SpeakerDiarizer:
    """Classify each chunk as SELF or EXTERNAL speech from channel levels.

    ``process`` runs on the capture thread for every chunk and is the only
    automatic writer of the mode; ``set_mode`` applies a manual override.
    """

    def __init__(
        self,
        settings: Optional[DiarizerSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        initial_mode: SpeakerMode = SpeakerMode.SELF,
        on_mode_change: Optional[Callable[[SpeakerMode], None]] = None,
    ):
        """
        Args:
            settings: Tuning values; defaults to :class:`DiarizerSettings`.
            clock: Monotonic time source in seconds.
            initial_mode: Mode reported before any evidence.
            on_mode_change: Invoked with the new mode after every applied
                switch, automatic or manual.
        """
        self.settings = settings or DiarizerSettings()
        self._clock = clock
        self._initial_mode = initial_mode
        self.on_mode_change = on_mode_change

        self._mode = initial_mode
        self._left = deque(maxlen=self.settings.window_size)
        self._right = deque(maxlen=self.settings.window_size)
        self._last_switch_at: Optional[float] = None
        # process() runs on the capture thread, set_mode() on the event loop
        self._lock = threading.Lock()

    @property
    def mode(self) -> SpeakerMode:
        return self._mode

    def reset(self) -> None:
        """Clear history and return to the initial mode, e.g. for a new session."""
        with self._lock:
            self._left.clear()
            self._right.clear()
            self._last_switch_at = None
            changed = self._apply(self._initial_mode, None)
        if changed:
            self._notify(self._initial_mode)

    def process(self, left: float, right: float) -> SpeakerMode:
        """Feed one chunk's channel levels and return the resulting mode."""
        with self._lock:
            mode, changed = self._process_locked(left, right)
        if changed:
            self._notify(mode)
        return mode

    def _process_locked(self, left: float, right: float):
        self._left.append(left)
        self._right.append(right)

        if len(self._left) < self.settings.window_size:
            return self._mode, False

        now = self._clock()
        if (
            self._last_switch_at is not None
            and now - self._last_switch_at < self.settings.cooldown_seconds
        ):
            return self._mode, False

        candidate = self._classify()
        if candidate is self._mode:
            return self._mode, False

        logger.debug(
            "Speaker mode changed to %s (L=%.4f, R=%.4f)",
            candidate.value,
            self._average(self._left),
            self._average(self._right),
        )
        return candidate, self._apply(candidate, now)

    def set_mode(self, mode: SpeakerMode) -> None:
        """Manually override the mode; restarts the cooldown window."""
        mode = SpeakerMode(mode)
        logger.info("Speaker mode set manually to %s", mode.value)
        with self._lock:
            self._apply(mode, self._clock())
        self._notify(mode)

    def get_state(self) -> SpeakerState:
        with self._lock:
            return SpeakerState(
                mode=self._mode,
                average_left=self._average(self._left),
                average_right=self._average(self._right),
                history_length=len(self._left),
                last_switch_at=self._last_switch_at,
            )

    def _classify(self) -> SpeakerMode:
        avg_left = self._average(self._left)
        avg_right = self._average(self._right)
        threshold = self.settings.silence_threshold
        ratio = self.settings.dominance_ratio

        if avg_left < threshold and avg_right < threshold:
            return self._mode
        if avg_left > avg_right * ratio:
            return SpeakerMode.SELF
        if avg_right > avg_left * ratio:
            return SpeakerMode.EXTERNAL
        return self._mode

    def _apply(self, mode: SpeakerMode, switched_at: Optional[float]) -> bool:
        """Store ``mode``; returns True when it differs from the previous one."""
        changed = mode is not self._mode
        self._mode = mode
        if switched_at is not None:
            self._last_switch_at = switched_at
        return changed

    def _notify(self, mode: SpeakerMode) -> None:
        if self.on_mode_change is None:
            return
        try:
            self.on_mode_change(mode)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Speaker mode callback failed: %s", exc)

    @staticmethod
    def _average(values) -> float:
        if not values:
            return 0.0
        return sum(values) / len(values)
