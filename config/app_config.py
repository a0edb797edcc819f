"""
Configuration management for VoxRelay.

Handles loading, validation, and saving of application configuration.
"""

import copy
import json
import logging
import os
import uuid
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict

from config.constants import LLM_PROVIDERS, TRANSCRIPTION_PROVIDERS

APP_DIR_NAME = ".voxrelay"


def get_app_dir() -> Path:
    """Return the root directory for VoxRelay user data."""
    return Path.home() / APP_DIR_NAME


logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_default_config_version() -> str:
    """Return the application version defined in the default config."""
    default_config_path = Path(__file__).parent / "default_config.json"

    try:
        with open(default_config_path, "r", encoding="utf-8") as config_file:
            data = json.load(config_file)
    except FileNotFoundError:
        logger.error("Default configuration file not found: %s", default_config_path)
        return "0.0.0"
    except json.JSONDecodeError as exc:
        logger.error(
            "Invalid JSON in default configuration file %s: %s",
            default_config_path,
            exc
        )
        return "0.0.0"

    version = data.get("version")
    if isinstance(version, str) and version.strip():
        return version.strip()

    logger.warning(
        "Default configuration missing valid 'version'; falling back to 0.0.0"
    )
    return "0.0.0"


class ConfigManager:
    """Manages application configuration with validation and persistence."""

    def __init__(self, user_config_dir: Path = None):
        """Initialize the configuration manager.

        Args:
            user_config_dir: Directory holding ``app_config.json``. Defaults
                to :func:`get_app_dir`.
        """
        self.default_config_path = (
            Path(__file__).parent / "default_config.json"
        )
        self.user_config_dir = Path(user_config_dir) if user_config_dir else get_app_dir()
        self.user_config_path = self.user_config_dir / "app_config.json"
        self._config: Dict[str, Any] = {}
        self._default_config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from user config or default config."""
        try:
            logger.info(
                f"Loading default configuration from "
                f"{self.default_config_path}"
            )
            with open(self.default_config_path, 'r', encoding='utf-8') as f:
                self._default_config = json.load(f)

            user_config: Dict[str, Any] = {}
            if self.user_config_path.exists():
                logger.info(
                    f"Loading user configuration from "
                    f"{self.user_config_path}"
                )
                with open(self.user_config_path, 'r', encoding='utf-8') as f:
                    user_config = json.load(f)

            self._config = self._deep_merge(self._default_config, user_config)

            self._validate_config()
            logger.info("Configuration loaded and validated successfully")

        except FileNotFoundError as e:
            logger.error(f"Configuration file not found: {e}")
            raise
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in configuration file: {e}")
            raise

    def _validate_config(self) -> None:
        """Validate required configuration fields and types."""
        required_fields = {
            "version": str,
            "realtime": dict,
            "streaming": dict,
            "diarization": dict,
            "session": dict,
            "storage": dict,
        }

        for field, expected_type in required_fields.items():
            if field not in self._config:
                raise ValueError(
                    f"Missing required configuration field: {field}"
                )
            if not isinstance(self._config[field], expected_type):
                raise TypeError(
                    f"Configuration field '{field}' must be of type "
                    f"{expected_type.__name__}, got "
                    f"{type(self._config[field]).__name__}"
                )

        self._validate_realtime_config()
        self._validate_streaming_config()
        self._validate_diarization_config()
        self._validate_session_config()

    def _validate_realtime_config(self) -> None:
        """Validate audio capture configuration."""
        realtime = self._config["realtime"]

        sample_rate = realtime.get("sample_rate")
        if not isinstance(sample_rate, int) or sample_rate <= 0:
            raise ValueError("realtime.sample_rate must be a positive integer")

        chunk_size = realtime.get("chunk_size")
        if not isinstance(chunk_size, int) or chunk_size <= 0:
            raise ValueError("realtime.chunk_size must be a positive integer")

        sources = realtime.get("input_sources", [])
        if not isinstance(sources, list) or not sources:
            raise ValueError("realtime.input_sources must be a non-empty list")
        for source in sources:
            if not isinstance(source, dict) or "name" not in source:
                raise ValueError("Each realtime.input_sources entry needs a 'name'")
            if source.get("channels", 2) not in (1, 2):
                raise ValueError("realtime.input_sources channels must be 1 or 2")

    def _validate_streaming_config(self) -> None:
        """Validate streaming endpoint configuration."""
        streaming = self._config["streaming"]

        servers = streaming.get("servers")
        if not isinstance(servers, list) or not servers:
            raise ValueError("streaming.servers must be a non-empty list")
        for server in servers:
            if not isinstance(server, str) or not server.startswith(("ws://", "wss://")):
                raise ValueError(
                    f"streaming.servers entries must be ws:// or wss:// URLs, got {server!r}"
                )

        timeout = streaming.get("connect_timeout", 0)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("streaming.connect_timeout must be a positive number")

    def _validate_diarization_config(self) -> None:
        """Validate speaker diarization tuning values."""
        diarization = self._config["diarization"]

        window = diarization.get("window_size")
        if not isinstance(window, int) or window < 1:
            raise ValueError("diarization.window_size must be a positive integer")

        for key in ("silence_threshold", "cooldown_seconds"):
            value = diarization.get(key)
            if not isinstance(value, (int, float)) or value < 0:
                raise ValueError(f"diarization.{key} must be a non-negative number")

        ratio = diarization.get("dominance_ratio")
        if not isinstance(ratio, (int, float)) or ratio < 1.0:
            raise ValueError("diarization.dominance_ratio must be a number >= 1.0")

    def _validate_session_config(self) -> None:
        """Validate provider selection forwarded to the server."""
        session = self._config["session"]

        if session.get("llm_provider") not in LLM_PROVIDERS:
            raise ValueError(
                f"session.llm_provider must be one of {', '.join(LLM_PROVIDERS)}"
            )
        if session.get("transcription_provider") not in TRANSCRIPTION_PROVIDERS:
            raise ValueError(
                "session.transcription_provider must be one of "
                f"{', '.join(TRANSCRIPTION_PROVIDERS)}"
            )

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by key.

        Supports nested keys using dot notation (e.g., "streaming.servers").

        Args:
            key: Configuration key (supports dot notation)
            default: Default value if key is not found

        Returns:
            Configuration value or default
        """
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value by key.

        Supports nested keys using dot notation (e.g., "session.user_id").

        Args:
            key: Configuration key (supports dot notation)
            value: Value to set
        """
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def ensure_user_id(self) -> str:
        """Return the persistent user id, generating and saving one on first use."""
        user_id = self.get("session.user_id")
        if isinstance(user_id, str) and user_id:
            return user_id

        user_id = str(uuid.uuid4())
        self.set("session.user_id", user_id)
        self.save()
        logger.info("Generated new user id")
        return user_id

    def save(self) -> None:
        """Save the current configuration to the user config file."""
        try:
            self.user_config_dir.mkdir(parents=True, exist_ok=True)

            self._validate_config()

            # Provider API keys live in this file; restrict it before the swap
            temp_path = self.user_config_path.with_suffix(".json.part")
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(self._config, f, indent=2, ensure_ascii=False)
            try:
                os.chmod(temp_path, 0o600)
            except OSError as e:
                logger.warning(f"Could not set file permissions: {e}")
            os.replace(temp_path, self.user_config_path)

            logger.info(f"Configuration saved to {self.user_config_path}")

        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Error saving configuration: {e}")
            raise

    def get_all(self) -> Dict[str, Any]:
        """
        Get the entire configuration dictionary.

        Returns:
            Complete configuration dictionary
        """
        return self._clone_value(self._config)

    def get_defaults(self) -> Mapping[str, Any]:
        """Return an immutable view of the default configuration."""
        return self._deep_freeze(self._default_config)

    @classmethod
    def _deep_merge(cls, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge two dictionaries without mutating inputs."""
        result: Dict[str, Any] = {}

        for key, base_value in base.items():
            if key in override:
                override_value = override[key]
                if isinstance(base_value, dict) and isinstance(override_value, dict):
                    result[key] = cls._deep_merge(base_value, override_value)
                else:
                    result[key] = cls._clone_value(override_value)
            else:
                result[key] = cls._clone_value(base_value)

        for key, override_value in override.items():
            if key not in base:
                result[key] = cls._clone_value(override_value)

        return result

    @classmethod
    def _clone_value(cls, value: Any) -> Any:
        """Return a deep copy of supported container types."""
        if isinstance(value, dict):
            return {k: cls._clone_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [cls._clone_value(v) for v in value]
        return copy.deepcopy(value)

    @classmethod
    def _deep_freeze(cls, value: Any) -> Any:
        """Create an immutable representation of nested configuration data."""
        if isinstance(value, dict):
            frozen = {k: cls._deep_freeze(v) for k, v in value.items()}
            return MappingProxyType(frozen)
        if isinstance(value, list):
            return tuple(cls._deep_freeze(v) for v in value)
        return value
