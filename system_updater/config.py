"""
Configuration management for System Updater.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .constants import (
    CONFIG_DIR_PERMISSIONS, CONFIG_FILE_PERMISSIONS,
    DEFAULT_PROBE_TIMEOUT, DEFAULT_ACTION_TIMEOUT, DEFAULT_HISTORY_RETENTION_DAYS,
    MAX_CONFIG_SIZE, MAX_PROBE_TIMEOUT, get_default_config_path
)
from .exceptions import ConfigurationError
from .models import AppConfig, ConfirmationPolicy
from .utils.logger import get_logger
from .utils.validators import validate_config_value

logger = get_logger(__name__)

# Expected type of every known key
CONFIG_SCHEMA: Dict[str, type] = {
    "targets_dirs": list,
    "disabled_targets": list,
    "confirmation_policy": str,
    "probe_timeout": int,
    "action_timeout": int,
    "github_token": str,
    "verify_after_update": bool,
    "bulk_precheck": bool,
    "history_enabled": bool,
    "history_retention_days": int,
    "debug_mode": bool,
    "verbose_logging": bool,
}


def parse_config_value(key: str, raw: str) -> Any:
    """
    Convert a command-line string into the type a config key expects.

    Args:
        key: Configuration key
        raw: Value as typed by the user

    Returns:
        Converted value

    Raises:
        ConfigurationError: If the key is unknown or the value does not convert
    """
    if key not in CONFIG_SCHEMA:
        raise ConfigurationError(f"Unknown configuration key: {key}")
    expected = CONFIG_SCHEMA[key]
    if expected is bool:
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ConfigurationError(f"Expected a boolean for {key}, got {raw!r}")
    if expected is int:
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"Expected an integer for {key}, got {raw!r}")
    if expected is list:
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


class Config:
    """Manages configuration for System Updater."""

    def __init__(self, config_file: Optional[str] = None) -> None:
        """
        Initialize configuration.

        Args:
            config_file: Path to configuration file
        """
        self._batch_mode = False
        self.config_file = config_file or str(get_default_config_path())
        self._app_config = self._load_config()
        self.config = self._app_config.to_dict()

    def _load_config(self) -> AppConfig:
        """
        Load configuration from file, falling back to defaults on any problem.

        Returns:
            AppConfig instance
        """
        try:
            if os.path.exists(self.config_file):
                file_size = os.path.getsize(self.config_file)
                if file_size > MAX_CONFIG_SIZE:
                    raise ValueError(f"Config file too large: {file_size} bytes")

                with open(self.config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)

                if not isinstance(data, dict):
                    raise ValueError("Configuration must be a JSON object")

                unknown = sorted(set(data) - set(CONFIG_SCHEMA))
                if unknown:
                    logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")
                data = {k: v for k, v in data.items() if k in CONFIG_SCHEMA}

                logger.debug(f"Loaded configuration from {self.config_file}")
                return AppConfig.from_dict(data)

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in config file {self.config_file}: {e}")
        except PermissionError as e:
            logger.error(f"Permission denied reading config file {self.config_file}: {e}")
        except OSError as e:
            logger.error(f"Error reading config file {self.config_file}: {e}")
        except ValueError as e:
            logger.error(f"Config file validation error: {e}")
        else:
            return AppConfig()

        logger.info("Using default configuration")
        return AppConfig()

    def save_config(self) -> None:
        """
        Save current configuration to file.

        Raises:
            ConfigurationError: If saving fails
        """
        if self._batch_mode:
            return

        try:
            config_dir = Path(self.config_file).parent
            config_dir.mkdir(parents=True, exist_ok=True)
            try:
                os.chmod(config_dir, CONFIG_DIR_PERMISSIONS)
            except OSError as e:
                logger.warning(f"Failed to set permissions on config directory: {e}")

            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)

            # The file may hold a GitHub token
            try:
                os.chmod(self.config_file, CONFIG_FILE_PERMISSIONS)
            except OSError as e:
                logger.warning(f"Failed to set permissions on config file: {e}")

            logger.info(f"Saved configuration to {self.config_file}")

        except PermissionError as e:
            raise ConfigurationError(f"Permission denied saving config: {e}", self.config_file)
        except OSError as e:
            raise ConfigurationError(f"Failed to save config: {e}", self.config_file)

    def init_config(self) -> bool:
        """
        Initialize configuration file with defaults.

        Returns:
            True if a new file was written
        """
        if os.path.exists(self.config_file):
            logger.info(f"Configuration file already exists: {self.config_file}")
            return False
        self.save_config()
        logger.info(f"Created configuration file: {self.config_file}")
        return True

    def get(self, key: str, default: Optional[Any] = None) -> Optional[Any]:
        """
        Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value
        """
        return self.config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """
        Set and persist a configuration value.

        Args:
            key: Configuration key
            value: Configuration value

        Raises:
            ConfigurationError: If the key is unknown or the value has the wrong type
        """
        if key not in CONFIG_SCHEMA:
            raise ConfigurationError(f"Unknown configuration key: {key}")
        if value is not None and not validate_config_value(key, value, CONFIG_SCHEMA[key]):
            raise ConfigurationError(f"Invalid value for {key}: {value!r}")
        if key == "confirmation_policy":
            try:
                ConfirmationPolicy.from_string(value)
            except ValueError as e:
                raise ConfigurationError(str(e))
        self.config[key] = value
        self._app_config = AppConfig.from_dict(self.config)
        self.save_config()

    @contextmanager
    def batch_update(self) -> Iterator[None]:
        """Context manager for batch updates without intermediate saves."""
        self._batch_mode = True
        try:
            yield
        finally:
            self._batch_mode = False
            self.save_config()

    def get_all_settings(self) -> Dict[str, Any]:
        """Get all settings as a dictionary."""
        return self.config.copy()

    def get_targets_dirs(self) -> List[str]:
        """Get extra descriptor directories, in load order."""
        dirs = self.config.get("targets_dirs", [])
        if isinstance(dirs, list) and all(isinstance(d, str) for d in dirs):
            return [os.path.expanduser(d) for d in dirs]
        logger.warning("Invalid targets_dirs configuration, using empty list")
        return []

    def get_disabled_targets(self) -> List[str]:
        """Get ids of targets disabled by the user."""
        disabled = self.config.get("disabled_targets", [])
        if isinstance(disabled, list):
            return [str(d) for d in disabled]
        logger.warning("Invalid disabled_targets configuration, using empty list")
        return []

    def get_confirmation_policy(self) -> ConfirmationPolicy:
        """Get the default confirmation policy."""
        value = self.config.get("confirmation_policy", "prompt")
        try:
            return ConfirmationPolicy.from_string(str(value))
        except ValueError:
            logger.warning(f"Invalid confirmation_policy {value}, using prompt")
            return ConfirmationPolicy.ALWAYS_PROMPT

    def get_probe_timeout(self) -> int:
        """Get the per-probe network timeout in seconds."""
        value = self.config.get("probe_timeout", DEFAULT_PROBE_TIMEOUT)
        if not validate_config_value("probe_timeout", value, int, min_value=1):
            logger.warning(f"Invalid probe_timeout {value}, using default {DEFAULT_PROBE_TIMEOUT}")
            return DEFAULT_PROBE_TIMEOUT
        if value > MAX_PROBE_TIMEOUT:
            logger.warning(f"probe_timeout {value} exceeds limit ({MAX_PROBE_TIMEOUT}), capping")
            return MAX_PROBE_TIMEOUT
        return value

    def get_action_timeout(self) -> int:
        """Get the timeout for a single update action in seconds."""
        value = self.config.get("action_timeout", DEFAULT_ACTION_TIMEOUT)
        if validate_config_value("action_timeout", value, int, min_value=1):
            return value
        logger.warning(f"Invalid action_timeout {value}, using default {DEFAULT_ACTION_TIMEOUT}")
        return DEFAULT_ACTION_TIMEOUT

    def get_github_token(self) -> Optional[str]:
        """Get the GitHub API token from config or the GITHUB_TOKEN variable."""
        token = self.config.get("github_token")
        if isinstance(token, str) and token.strip():
            return token.strip()
        env_token = os.environ.get("GITHUB_TOKEN", "").strip()
        return env_token or None

    def get_bool(self, key: str, default: bool) -> bool:
        """Get a boolean setting, falling back to the default on a bad value."""
        value = self.config.get(key, default)
        if isinstance(value, bool):
            return value
        logger.warning(f"Invalid {key} {value!r}, using default {default}")
        return default

    def get_history_retention_days(self) -> int:
        """Get the number of days action history is kept."""
        value = self.config.get("history_retention_days", DEFAULT_HISTORY_RETENTION_DAYS)
        if validate_config_value("history_retention_days", value, int, min_value=1, max_value=3650):
            return value
        logger.warning(f"Invalid history_retention_days {value}, using default {DEFAULT_HISTORY_RETENTION_DAYS}")
        return DEFAULT_HISTORY_RETENTION_DAYS
