"""
Cipherlink - Utility functions.

Created by orpheus497
Version: 1.0.0

Provides logging setup, encoding helpers and key-material hygiene helpers.
"""

import base64
import binascii
import logging
import logging.handlers
from pathlib import Path
from typing import Optional, Union

from .constants import (
    DEFAULT_DATA_DIR,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
)

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "cipherlink"


def setup_logging(config=None, log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    Configure the package logger from the [logging] config section.

    Installs a console handler and, when file logging is enabled, a
    size-rotated file handler. Calling it again replaces the handlers
    installed by a previous call.

    Args:
        config: Config instance (optional, defaults apply without one)
        log_file: Override for the log file path

    Returns:
        The configured package logger
    """
    def setting(key, default):
        return config.get("logging", key, default) if config is not None else default

    level_name = str(setting("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if setting("console_logging", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        package_logger.addHandler(console)

    if setting("file_logging", False):
        path = Path(log_file or setting("log_file", "") or
                    Path(DEFAULT_DATA_DIR) / LOG_FILENAME).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    logger.debug(f"Logging configured at {level_name}")
    return package_logger


def b64encode(data: Optional[bytes]) -> Optional[str]:
    """
    Encode bytes as base64 text, passing None through.

    Args:
        data: Bytes to encode (or None)

    Returns:
        ASCII base64 string, or None
    """
    if data is None:
        return None
    return base64.b64encode(bytes(data)).decode("ascii")


def b64decode(data: Optional[str]) -> Optional[bytes]:
    """
    Decode base64 text, passing None through.

    Raises:
        ValueError: If the text is not valid base64
    """
    if data is None:
        return None
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 data: {e}") from e


def zeroize(buffer: Optional[bytearray]) -> None:
    """Overwrite a mutable key buffer with zeros in place."""
    if buffer is None:
        return
    buffer[:] = bytes(len(buffer))


def is_zeroed(buffer: Optional[bytearray]) -> bool:
    return buffer is None or not any(buffer)


def format_fingerprint(fingerprint: str) -> str:
    """
    Format a fingerprint for display with spaces every 4 characters.

    Args:
        fingerprint: Hex fingerprint string

    Returns:
        Formatted fingerprint
    """
    return " ".join(fingerprint[i : i + 4] for i in range(0, len(fingerprint), 4))


def short_id(identifier: str, length: int = 8) -> str:
    """Shorten a peer id or key fingerprint for log messages."""
    if len(identifier) <= length:
        return identifier
    return identifier[:length] + "..."
