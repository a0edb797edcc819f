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
Real-time recording session module

Provides live recording with speaker classification and server-side
transcription and translation.
"""

from core.realtime.recorder import RecordingState, SessionController
from core.realtime.audio_buffer import AudioBuffer
from core.realtime.diarizer import SpeakerDiarizer, SpeakerMode

__all__ = [
    'RecordingState',
    'SessionController',
    'AudioBuffer',
    'SpeakerDiarizer',
    'SpeakerMode'
]
