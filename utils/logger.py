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
日志系统配置

提供集中式日志设置，支持文件轮转和控制台输出。
"""

import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from config.app_config import get_app_dir
from config.constants import (
    DEFAULT_LOG_LINES_TO_READ,
    LOG_FILE_BACKUP_COUNT,
    LOG_FILE_MAX_BYTES,
    LOG_FILE_NAME,
    ROOT_LOGGER_NAME,
)

# 日志级别映射
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class SensitiveDataFilter(logging.Filter):
    """
    过滤敏感数据的日志过滤器

    防止 API Key、Token 等敏感信息被记录到日志中。
    配置握手消息携带服务商 API Key，因此同时处理 JSON 形式的字段。
    """

    # 敏感关键词列表
    SENSITIVE_KEYWORDS = [
        "api_key",
        "api-key",
        "apikey",
        "token",
        "password",
        "secret",
        "authorization",
        "bearer",
    ]

    # (模式, 替换)
    PATTERNS = [
        (r"(\"[a-z_]*api_key\"\s*:\s*\")[^\"]*(\")", r"\1***\2"),
        (r"('[a-z_]*api_key'\s*:\s*')[^']*(')", r"\1***\2"),
        (r"(api[_-]?key\s*[=:]\s*)[^\s,\)\"']+", r"\1***"),
        (r"(token\s*[=:]\s*)[^\s,\)]+", r"\1***"),
        (r"(password\s*[=:]\s*)[^\s,\)]+", r"\1***"),
        (r"(secret\s*[=:]\s*)[^\s,\)]+", r"\1***"),
        (r"(bearer\s+)[^\s,\)]+", r"\1***"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """
        过滤日志记录

        Args:
            record: 日志记录对象

        Returns:
            是否允许记录该日志
        """
        message = record.getMessage()
        lowered = message.lower()

        for keyword in self.SENSITIVE_KEYWORDS:
            if keyword in lowered:
                # 参数已合并进消息，清空 args 避免二次格式化
                record.msg = self.mask_sensitive_data(message)
                record.args = ()
                break

        return True

    @classmethod
    def mask_sensitive_data(cls, message: str) -> str:
        """
        遮蔽敏感数据

        Args:
            message: 原始消息

        Returns:
            遮蔽后的消息
        """
        masked = message
        for pattern, replacement in cls.PATTERNS:
            masked = re.sub(pattern, replacement, masked, flags=re.IGNORECASE)

        return masked


def setup_logging(
    log_dir: str = None, level: str = None, console_output: bool = True
) -> logging.Logger:
    """
    设置应用日志系统

    配置文件轮转处理器和控制台处理器。

    Args:
        log_dir: 日志文件目录，默认为 ~/.voxrelay/logs
        level: 日志级别，默认根据环境变量 VOXRELAY_ENV 决定
               (development: DEBUG, production: INFO)
        console_output: 是否输出到控制台，默认 True

    Returns:
        配置好的应用根日志器
    """
    if log_dir is None:
        log_dir = get_app_dir() / "logs"
    else:
        log_dir = Path(log_dir)

    log_dir.mkdir(parents=True, exist_ok=True)

    if level is None:
        env = os.environ.get("VOXRELAY_ENV", "production").lower()
        level = "DEBUG" if env == "development" else "INFO"

    log_level = LOG_LEVELS.get(level.upper(), logging.INFO)

    # 应用根日志器；各包的模块日志器通过 propagate 汇总到 root
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in list(root_logger.handlers):
        if getattr(handler, "_voxrelay_handler", False):
            root_logger.removeHandler(handler)

    sensitive_filter = SensitiveDataFilter()

    # 文件处理器 - 详细日志，带轮转
    log_file = log_dir / LOG_FILE_NAME
    file_handler = RotatingFileHandler(
        log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUP_COUNT, encoding="utf-8"
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    file_handler.setFormatter(file_formatter)
    file_handler.addFilter(sensitive_filter)
    file_handler._voxrelay_handler = True
    root_logger.addHandler(file_handler)

    # 控制台处理器 - 简化日志
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING if log_level > logging.DEBUG else logging.DEBUG)
        console_formatter = logging.Formatter("%(levelname)s: %(message)s")
        console_handler.setFormatter(console_formatter)
        console_handler.addFilter(sensitive_filter)
        console_handler._voxrelay_handler = True
        root_logger.addHandler(console_handler)

    logger.info("Logging initialized")
    logger.debug(f"Log file: {log_file}")
    logger.debug(f"Log level: {level}")

    return logger


def get_log_file_path() -> Path:
    """
    获取当前日志文件路径

    Returns:
        日志文件路径
    """
    for handler in logging.getLogger().handlers:
        if isinstance(handler, RotatingFileHandler):
            return Path(handler.baseFilename)

    return get_app_dir() / "logs" / LOG_FILE_NAME


def get_recent_logs(lines: int = None) -> list:
    """
    获取最近的日志行

    Args:
        lines: 要读取的行数，默认使用 DEFAULT_LOG_LINES_TO_READ

    Returns:
        日志行列表
    """
    if lines is None:
        lines = DEFAULT_LOG_LINES_TO_READ
    log_file = get_log_file_path()

    if not log_file.exists():
        return []

    try:
        with open(log_file, "r", encoding="utf-8") as f:
            all_lines = f.readlines()
            return all_lines[-lines:]
    except OSError as e:
        return [f"Error reading log file: {e}"]
