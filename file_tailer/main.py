"""Main entry point for file-tailer.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the main loop. It starts a `TailerThread` for the configured
path and copies every appended byte range to stdout, like ``tail -f``.

Key Responsibilities:
    - CLI Argument Parsing: Handles the watch path, --log-file, --log-level, etc.
    - Signal Handling: Registers handlers for SIGINT/SIGTERM to ensure graceful shutdown.
    - Logging: Configures logging on stderr (stdout carries the tailed data) with
      optional file logging and rotation (10MB).
    - Liveness: Exits with a non-zero status if the tailer fails to start or dies.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType
from typing import BinaryIO, List, Optional

try:
    from file_tailer import __version__
    from file_tailer.config import load_config
    from file_tailer.tailer import TailerCallback, TailerThread
except ImportError as e:
    if "watchdog" in str(e):
        sys.exit(f"Error: Missing dependency: {e}. Please install required packages.")
    raise

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class StreamCallback(TailerCallback):
    """Write received data to a binary stream and log lifecycle events."""

    def __init__(self, stream: Optional[BinaryIO] = None) -> None:
        self.stream = stream if stream is not None else sys.stdout.buffer

    def on_create(self, path: Path) -> None:
        logger.info(f"{path} has appeared; following new file")

    def on_delete(self, path: Path) -> None:
        logger.warning(f"{path} has been deleted; waiting for it to reappear")

    def on_truncate(self, path: Path, below_threshold: bool) -> None:
        logger.warning(f"{path}: file truncated")

    def on_receive(self, path: Path, data: bytes) -> None:
        self.stream.write(data)
        self.stream.flush()

    def on_observer_fault(self, method_name: str, error: Exception) -> None:
        logger.error(f"Output failed in {method_name}: {error}")


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stderr) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Normal operations (startup, file created).
            - ``WARNING``: Recoverable issues (file deleted, truncated, stalled reads).
            - ``ERROR``: Failures (tailer failure, output errors).
            - ``DEBUG``: Detailed diagnostics (raw notifications, cursor positions).
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="file-tailer",
        description="Output data appended to a file as it grows (like tail -f).",
    )
    parser.add_argument(
        "watch_path", nargs="?", default=None, help="Path to the file to follow."
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument(
        "--start-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the tailer to start (default: 2.0).",
    )
    parser.add_argument(
        "--size-poll-attempts",
        type=int,
        default=None,
        help="Size checks per change notification (1-1000, default: 20).",
    )
    parser.add_argument(
        "--size-poll-interval",
        type=float,
        default=None,
        help="Seconds between two size checks (default: 0.1).",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging, start the
    tailer and wait until a signal arrives or the tailer dies.

    Args:
        argv (Optional[List[str]]): Arguments to parse. Defaults to ``sys.argv[1:]``.

    Raises:
        SystemExit: If configuration is invalid, the tailer fails to start, or
            the tailer exits with an error (code 1).

    Example:
        $ file-tailer /var/log/app.log --log-level DEBUG
    """
    args = build_parser().parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stderr)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")
    logger.info(f"Starting file-tailer v{__version__} (PID: {os.getpid()})...")

    watch_path = Path(config.watch_path)
    tailer = TailerThread(
        StreamCallback(),
        watch_path.name,
        watch_path.parent,
        size_poll_attempts=config.size_poll_attempts,
        size_poll_interval=config.size_poll_interval,
    )

    stop_event = threading.Event()

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        """Set the stop event on SIGINT/SIGTERM."""
        logger.info(f"Received signal {signal.Signals(sig).name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    exit_code = 0
    try:
        tailer.start()
        if not tailer.wait_for_start(config.start_timeout):
            logger.error(f"Tailer failed to start: {tailer.get_error()}")
            exit_code = 1
            return

        # Wake up periodically to notice a tailer that died.
        while not stop_event.wait(0.5):
            if not tailer.is_alive():
                error = tailer.get_error()
                if error is not None:
                    logger.error(f"Tailer exited with error: {error}")
                    exit_code = 1
                break
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    finally:
        tailer.stop(timeout=2.0)
        stats = tailer.get_statistics()
        logger.info(
            f"Tailer stopped: Events={stats.get('events_matched', 0)}, "
            f"Receives={stats.get('receives', 0)}, Bytes={stats.get('bytes_received', 0)}, "
            f"Truncates={stats.get('truncates', 0)}, Faults={stats.get('observer_faults', 0)}"
        )
        if exit_code:
            sys.exit(exit_code)


if __name__ == "__main__":
    main()
