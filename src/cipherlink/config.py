"""
Cipherlink - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Author: orpheus497
Version: 1.0.0
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_CURVE,
    DEFAULT_DATA_DIR,
    DEFAULT_ONE_TIME_PREKEYS,
    MAX_ONE_TIME_PREKEYS,
    PROOF_TIMEOUT,
    RATCHET_MAX_SKIP,
    RATCHET_MAX_SKIPPED_KEYS,
    RATCHET_ROTATION_THRESHOLD,
    RATCHET_SKIPPED_KEY_TTL,
    SIGNED_PREKEY_LIFETIME,
    SUPPORTED_CURVES,
)
from .errors import ConfigError, ErrorCode

ENV_PREFIX = "CIPHERLINK"

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "ratchet": {
        "max_skip": RATCHET_MAX_SKIP,
        "max_skipped_keys": RATCHET_MAX_SKIPPED_KEYS,
        "skipped_key_ttl": RATCHET_SKIPPED_KEY_TTL,
        "rotation_threshold": RATCHET_ROTATION_THRESHOLD,
    },
    "prekeys": {
        "one_time_count": DEFAULT_ONE_TIME_PREKEYS,
        "max_one_time_keys": MAX_ONE_TIME_PREKEYS,
        "signed_prekey_lifetime": SIGNED_PREKEY_LIFETIME,
    },
    "proofs": {
        "enabled": True,
        "timeout": PROOF_TIMEOUT,
        "verify": False,
    },
    "crypto": {
        "curve": DEFAULT_CURVE,
    },
    "logging": {
        "level": "INFO",
        "console_logging": True,
        "file_logging": False,
        "log_file": "",
    },
}


class Config:
    """Configuration manager for Cipherlink.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides.

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
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()
        self.validate()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Raises:
            ConfigError: If configuration loading or parsing fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
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

        Environment variables follow the pattern: CIPHERLINK_SECTION_KEY
        For example: CIPHERLINK_RATCHET_MAX_SKIP=500

        Raises:
            ConfigError: If a value cannot be converted to the setting's type
        """
        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key, current in settings.items():
                env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)
                if env_value is None:
                    continue

                try:
                    if isinstance(current, bool):
                        settings[key] = env_value.lower() in ("true", "1", "yes")
                    elif isinstance(current, int):
                        settings[key] = int(env_value)
                    elif isinstance(current, float):
                        settings[key] = float(env_value)
                    else:
                        settings[key] = env_value
                except ValueError as e:
                    raise ConfigError(
                        ErrorCode.E703_INVALID_CONFIG,
                        f"Invalid value for {env_var}: {env_value!r}",
                        {"variable": env_var, "value": env_value},
                    ) from e

        return config

    def validate(self) -> None:
        """Check values the session core cannot work with.

        Raises:
            ConfigError: If a setting is out of range
        """
        ratchet = self.data["ratchet"]
        for key in ("max_skip", "max_skipped_keys"):
            if ratchet[key] < 1:
                raise ConfigError(
                    ErrorCode.E703_INVALID_CONFIG,
                    f"ratchet.{key} must be at least 1",
                    {"section": "ratchet", "key": key, "value": ratchet[key]},
                )
        if ratchet["rotation_threshold"] < 0:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "ratchet.rotation_threshold must not be negative (0 disables rotation)",
                {"value": ratchet["rotation_threshold"]},
            )

        curve = str(self.data["crypto"]["curve"]).lower()
        if curve not in SUPPORTED_CURVES:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Unsupported curve: {curve}",
                {"supported": list(SUPPORTED_CURVES)},
            )

        if self.data["proofs"]["timeout"] <= 0:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "proofs.timeout must be positive",
                {"value": self.data["proofs"]["timeout"]},
            )

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

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                self._write_toml(f, self.data)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML format."""
        for section, settings in data.items():
            if isinstance(settings, dict):
                file.write(f"[{section}]\n")
                for key, value in settings.items():
                    if isinstance(value, bool):
                        file.write(f"{key} = {str(value).lower()}\n")
                    elif isinstance(value, (int, float)):
                        file.write(f"{key} = {value}\n")
                    elif isinstance(value, str):
                        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                        file.write(f'{key} = "{escaped}"\n')
                file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file.

        Raises:
            ConfigError: If file creation fails
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                f.write("# Cipherlink Configuration File\n")
                f.write("# Generated example configuration\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e
