"""Configuration management for file-tailer.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. It enforces a strict priority order and validates the watched path.
Supports XDG_CONFIG_HOME (Linux/macOS), APPDATA (Windows), and ~/.config fallback.

The configuration is aggregated into a :class:`TailerConfig` dataclass, which serves as the
single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``FILE_TAILER_WATCH_PATH``: Path to the file to follow.
    * ``FILE_TAILER_LOG_FILE``: Path to the log file.
    * ``FILE_TAILER_LOG_LEVEL``: Logging level.
    * ``FILE_TAILER_START_TIMEOUT``: Seconds to wait for the tailer to start.
    * ``FILE_TAILER_SIZE_POLL_ATTEMPTS``: Size checks per change notification.
    * ``FILE_TAILER_SIZE_POLL_INTERVAL``: Seconds between two size checks.

Configuration Loading Invariants:
    * **Path Validation**: The parent directory of the watched file must exist, since
      that directory is what gets registered for change notifications. The file itself
      may be missing, but if present it must be a regular file and not a symlink.
    * **Type Safety**: Numeric values are validated for range.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from file_tailer.tailer import (
    DEFAULT_SIZE_POLL_ATTEMPTS,
    DEFAULT_SIZE_POLL_INTERVAL,
    DEFAULT_START_TIMEOUT,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["TailerConfig", "load_config"]

CONFIG_SECTION = "file-tailer"


@dataclass
class TailerConfig:
    """Define the application configuration structure.

    Attributes:
        watch_path (str): Absolute path to the followed file.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
        start_timeout (float): Seconds to wait for the tailer to start. Defaults to 2.0.
        size_poll_attempts (int): Size checks per change notification. Defaults to 20.
        size_poll_interval (float): Seconds between two size checks. Defaults to 0.1.
    """

    watch_path: str
    log_file: Optional[str] = None
    log_level: str = "INFO"
    start_timeout: float = DEFAULT_START_TIMEOUT
    size_poll_attempts: int = DEFAULT_SIZE_POLL_ATTEMPTS
    size_poll_interval: float = DEFAULT_SIZE_POLL_INTERVAL


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `config.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/file-tailer/config.ini` (Linux/macOS).
    3. `%APPDATA%\\file-tailer\\config.ini` (Windows).
    4. `~/.config/file-tailer/config.ini` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(
            os.path.join(os.path.expanduser(xdg_config_home), CONFIG_SECTION, "config.ini")
        )
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(
            os.path.join(os.path.expanduser(os.environ["APPDATA"]), CONFIG_SECTION, "config.ini")
        )
    else:
        paths.append(
            os.path.join(os.path.expanduser("~"), ".config", CONFIG_SECTION, "config.ini")
        )
    return paths


def _validate_path(path_str: str, is_log: bool = False) -> str:
    """Resolve and validate a path, expanding the user tilde.

    For the watched file the parent directory is resolved strictly and the file
    name is kept as given, so the result names the directory entry that change
    notifications will report. Symlinks are rejected because changes to a link
    target are reported for the target's directory, not for the link.

    Args:
        path_str (str): The raw path string to validate (e.g., "~/app.log").
        is_log (bool): If True, validates for log file usage (write permission).
            If False, validates for watch path usage (read permission).

    Returns:
        str: The absolute path string.

    Raises:
        ValueError: If the parent directory does not exist, the path is a symlink,
            a directory or other non-regular file, or permissions are missing.
    """
    try:
        path = Path(os.path.expanduser(path_str))
        if not path.name or path.name in (".", ".."):
            raise ValueError(f"Invalid path: A file name is required: {path_str}")

        if path.is_symlink():
            raise ValueError(f"Invalid path: Symlinks are not supported: {path}")

        try:
            parent = path.parent.resolve(strict=True)
        except (FileNotFoundError, RuntimeError, OSError) as e:
            raise ValueError(f"Invalid path (parent directory not found): {path}") from e
        if not parent.is_dir():
            raise ValueError(f"Invalid path (parent is not a directory): {path}")
        resolved = parent / path.name

        if not is_log:
            if resolved.exists():
                if not resolved.is_file():
                    raise ValueError(
                        f"Invalid path: Watch path is not a regular file (directories/devices not allowed): {resolved}"
                    )
                try:
                    with resolved.open("rb"):
                        pass
                except PermissionError as e:
                    raise ValueError(f"Read permission denied for watch path: {resolved}") from e
        else:
            if resolved.exists() and not resolved.is_file():
                raise ValueError(f"Invalid path: Log file is not a regular file: {resolved}")
            try:
                with resolved.open("a"):
                    pass
            except PermissionError as e:
                raise ValueError(f"Write permission denied for log file: {resolved}") from e
            except OSError as e:
                raise ValueError(f"Cannot create log file: {e}") from e

        return str(resolved)

    except Exception as e:
        if isinstance(e, ValueError):
            raise
        raise ValueError(f"Path validation failed for '{path_str}': {e}") from e


def _to_int(values: Dict[str, Any], key: str, low: int, high: int) -> None:
    try:
        values[key] = int(values[key])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid integer for {key}: {values[key]}") from e
    if not (low <= values[key] <= high):
        raise ValueError(f"{key} must be between {low} and {high}, got {values[key]}")


def _to_float(values: Dict[str, Any], key: str, allow_zero: bool) -> None:
    try:
        values[key] = float(values[key])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for {key}: {values[key]}") from e
    if values[key] < 0 or (values[key] == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValueError(f"{key} must be {qualifier}, got {values[key]}")


def load_config(args: Dict[str, Any]) -> TailerConfig:
    """Load and validate configuration with strict priority, returning a TailerConfig.

    Priority Order (Highest to Lowest):
        1. CLI Arguments (passed via `args`)
        2. Environment Variables (e.g., `FILE_TAILER_LOG_LEVEL`)
        3. Config File (section ``[file-tailer]`` of `config.ini`)
        4. Hardcoded Defaults

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Keys should match TailerConfig attributes. Values of None are ignored
            so lower-priority sources can take effect. A truthy ``debug`` key
            forces the DEBUG log level.

    Returns:
        TailerConfig: The fully resolved and validated configuration object.

    Raises:
        ValueError: If no watch path is configured, a numeric value is invalid,
            or path validation fails for 'watch_path' or 'log_file'.

    Examples:
        >>> config = load_config({"watch_path": "/var/log/syslog", "size_poll_attempts": 5})
        >>> config.size_poll_attempts
        5
        >>> config.start_timeout
        2.0
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "watch_path": None,
        "log_file": None,
        "log_level": "INFO",
        "start_timeout": DEFAULT_START_TIMEOUT,
        "size_poll_attempts": DEFAULT_SIZE_POLL_ATTEMPTS,
        "size_poll_interval": DEFAULT_SIZE_POLL_INTERVAL,
    }

    # 2. Config File (first one found wins)
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if CONFIG_SECTION in parser:
                    for key, value in parser[CONFIG_SECTION].items():
                        if value is not None and value != "":
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    env_map = {
        "FILE_TAILER_WATCH_PATH": "watch_path",
        "FILE_TAILER_LOG_FILE": "log_file",
        "FILE_TAILER_LOG_LEVEL": "log_level",
        "FILE_TAILER_START_TIMEOUT": "start_timeout",
        "FILE_TAILER_SIZE_POLL_ATTEMPTS": "size_poll_attempts",
        "FILE_TAILER_SIZE_POLL_INTERVAL": "size_poll_interval",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    _to_float(config_values, "start_timeout", allow_zero=False)
    _to_int(config_values, "size_poll_attempts", 1, 1000)
    _to_float(config_values, "size_poll_interval", allow_zero=True)

    if not config_values["watch_path"]:
        raise ValueError("No watch path configured (pass a path or set FILE_TAILER_WATCH_PATH)")
    config_values["watch_path"] = _validate_path(str(config_values["watch_path"]), is_log=False)

    if config_values["log_file"]:
        config_values["log_file"] = _validate_path(str(config_values["log_file"]), is_log=True)

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    # Drop keys that are not TailerConfig fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(TailerConfig)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return TailerConfig(**filtered_values)
