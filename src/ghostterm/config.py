"""
GhostTerm - Configuration Management

This module handles loading and merging configuration from an optional
TOML file and environment variables. Configuration is read-only: GhostTerm
never writes a file, so there is no save path.

Author: orpheus497
Version: 0.3.0
"""

import copy
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import (
    CONFIG_DIR,
    CONFIG_FILENAME,
    CONNECTION_TIMEOUT,
    DEFAULT_BIND_HOST,
    DEFAULT_DISPLAY_NAME,
    DEFAULT_PORT,
    ENV_PREFIX,
    HEARTBEAT_INTERVAL,
    LIVENESS_TIMEOUT,
    MAX_RETAINED_MESSAGES,
    PEER_EVICT_AFTER,
    RATE_LIMIT_FRAMES_BURST,
    RATE_LIMIT_FRAMES_PER_SECOND,
    SEND_TIMEOUT,
)
from .errors import ConfigError, ErrorCode

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "network": {
        "bind_host": DEFAULT_BIND_HOST,
        "port": DEFAULT_PORT,
        "connect_timeout": CONNECTION_TIMEOUT,
        "send_timeout": SEND_TIMEOUT,
    },
    "presence": {
        "heartbeat_interval": HEARTBEAT_INTERVAL,
        "liveness_timeout": LIVENESS_TIMEOUT,
        "evict_after": PEER_EVICT_AFTER,
    },
    "limits": {
        "max_retained_messages": MAX_RETAINED_MESSAGES,
        "frames_per_second": RATE_LIMIT_FRAMES_PER_SECOND,
        "frames_burst": RATE_LIMIT_FRAMES_BURST,
    },
    "ui": {
        "display_name": DEFAULT_DISPLAY_NAME,
        "copy_ticket": True,
    },
    "logging": {
        "level": "INFO",
    },
}


class Config:
    """Configuration manager for GhostTerm.

    Loads configuration from a TOML file when one exists, merges it with
    the defaults and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            config_path = Path(CONFIG_DIR).expanduser() / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigError: If the file exists but cannot be read or parsed
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e
            except OSError as e:
                raise ConfigError(
                    ErrorCode.E701_CONFIG_LOAD_FAILED,
                    f"Failed to read configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: GHOSTTERM_SECTION_KEY
        For example: GHOSTTERM_PRESENCE_LIVENESS_TIMEOUT=20

        Args:
            config: Base configuration dictionary

        Returns:
            Configuration with environment overrides applied
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)

                if env_value is not None:
                    original_type = type(settings[key])
                    try:
                        if original_type == bool:
                            result[section][key] = env_value.lower() in ("true", "1", "yes")
                        elif original_type == int:
                            result[section][key] = int(env_value)
                        elif original_type == float:
                            result[section][key] = float(env_value)
                        else:
                            result[section][key] = env_value
                    except ValueError:
                        # Keep original value if conversion fails
                        pass

        return result

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.data.get(section, {}).get(key, default)
