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
音频累积缓冲区模块

保存整个会话采集到的音频块，并维护分段边界（语言切换时截取分段）。
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from engines.audio.capture import AudioChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Segment:
    """已写出的音频分段"""

    segment_id: int
    index: int
    source_language: str
    target_language: str
    first_sequence: Optional[int]
    last_sequence: Optional[int]
    frame_count: int
    path: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "segment_id": self.segment_id,
            "index": self.index,
            "source_language": self.source_language,
            "target_language": self.target_language,
            "first_sequence": self.first_sequence,
            "last_sequence": self.last_sequence,
            "frame_count": self.frame_count,
            "path": self.path,
        }


class AudioBuffer:
    """会话音频累积缓冲区

    采集线程是唯一的写入者；会话停止或分段边界时才读取。
    """

    def __init__(self, sample_rate: int = 16000, channels: int = 2):
        """
        初始化音频缓冲区

        Args:
            sample_rate: 采样率（Hz）
            channels: 交错声道数
        """
        self.sample_rate = sample_rate
        self.channels = channels

        self._chunks: List[AudioChunk] = []
        # 当前分段在 _chunks 中的起始位置
        self._segment_start = 0
        self._frame_count = 0
        self._last_sequence = 0

        # 线程锁，确保线程安全
        self.lock = threading.Lock()

        logger.info(f"Audio buffer initialized: sample_rate={sample_rate}Hz, channels={channels}")

    def append(self, chunk: AudioChunk):
        """
        添加音频块

        Args:
            chunk: 音频块，序号必须严格递增

        Raises:
            ValueError: 序号未递增或声道数不匹配
        """
        if chunk.channels != self.channels:
            raise ValueError(
                f"Chunk has {chunk.channels} channel(s), buffer expects {self.channels}"
            )

        with self.lock:
            if chunk.sequence <= self._last_sequence:
                raise ValueError(
                    f"Chunk sequence {chunk.sequence} is not after {self._last_sequence}"
                )
            self._chunks.append(chunk)
            self._last_sequence = chunk.sequence
            self._frame_count += chunk.frame_count

    def get_chunks(self) -> List[AudioChunk]:
        """
        获取所有音频块（副本列表）

        Returns:
            List[AudioChunk]: 按采集顺序排列的音频块
        """
        with self.lock:
            return list(self._chunks)

    def get_pcm_chunks(self) -> List[bytes]:
        """获取所有音频块的原始 PCM 数据"""
        with self.lock:
            return [chunk.data for chunk in self._chunks]

    def take_segment(self) -> List[AudioChunk]:
        """
        截取当前分段并开始新分段

        整体会话音频保持不变，只移动分段边界。

        Returns:
            List[AudioChunk]: 自上一个边界以来的音频块
        """
        with self.lock:
            segment = self._chunks[self._segment_start:]
            self._segment_start = len(self._chunks)
            return segment

    def get_pending_segment_size(self) -> int:
        """获取当前分段的音频块数量"""
        with self.lock:
            return len(self._chunks) - self._segment_start

    def clear(self):
        """清空缓冲区"""
        with self.lock:
            self._chunks = []
            self._segment_start = 0
            self._frame_count = 0
            self._last_sequence = 0
            logger.info("Audio buffer cleared")

    def get_duration(self) -> float:
        """
        获取缓冲区中音频的总时长

        Returns:
            float: 时长（秒）
        """
        with self.lock:
            return self._frame_count / self.sample_rate

    def get_frame_count(self) -> int:
        """获取缓冲区中的帧数（每帧包含所有声道的一个样本）"""
        with self.lock:
            return self._frame_count

    def get_chunk_count(self) -> int:
        with self.lock:
            return len(self._chunks)

    def is_empty(self) -> bool:
        """检查缓冲区是否为空"""
        with self.lock:
            return not self._chunks

    def get_stats(self) -> dict:
        """
        获取缓冲区统计信息

        Returns:
            dict: 统计信息
        """
        with self.lock:
            return {
                "chunk_count": len(self._chunks),
                "frame_count": self._frame_count,
                "duration_seconds": self._frame_count / self.sample_rate,
                "pending_segment_chunks": len(self._chunks) - self._segment_start,
                "last_sequence": self._last_sequence,
                "memory_usage_bytes": sum(len(chunk.data) for chunk in self._chunks),
            }
