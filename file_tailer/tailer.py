"""
Single file tailing worker, the equivalent of ``tail -f``.

Responsibility:
    `TailerThread` follows one path and reports appended bytes, truncation,
    deletion and (re)creation of the file to a `TailerCallback`. It turns the
    directory level notifications of `file_tailer.notifications` into byte
    ranges by keeping a read cursor for the currently open file.

Design:
    - **Single owner**: the open file, the cursor and the watch registration
      are only touched from the worker thread. Callers talk to the worker
      through a start flag, a stop flag and `interrupt`.
    - **Size polling**: a MODIFY notification can arrive before the new size
      is visible through ``stat``. The worker polls the size a bounded number of
      times (``size_poll_attempts`` spaced ``size_poll_interval`` apart, 2 s by
      default) and stops polling as soon as the size differs from the cursor.
    - **Append only**: data present when the file is first opened is skipped.
      A recreated file is a new stream starting at offset 0.

Key Invariants:
    - The cursor never exceeds the size of the open file as last observed.
    - No byte range is delivered twice between two cursor resets.
    - Callbacks run on the worker thread, in the order notifications arrived.
    - A callback raising never stops the worker.
"""

from __future__ import annotations

import abc
import enum
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Optional, Union

from file_tailer.notifications import EventKind, WaitInterrupted, WatchEvent, WatchService

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "DEFAULT_START_TIMEOUT",
    "DEFAULT_SIZE_POLL_ATTEMPTS",
    "DEFAULT_SIZE_POLL_INTERVAL",
    "RunState",
    "StartTimeoutError",
    "TailerCallback",
    "TailerError",
    "TailerThread",
]

DEFAULT_START_TIMEOUT = 2.0
DEFAULT_SIZE_POLL_ATTEMPTS = 20
DEFAULT_SIZE_POLL_INTERVAL = 0.1


class TailerError(Exception):
    """A fatal condition inside the tailer worker."""


class StartTimeoutError(TailerError):
    """The worker did not finish starting within the requested timeout."""


class RunState(enum.Enum):
    """Lifecycle of a `TailerThread`."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class TailerCallback(abc.ABC):
    """The interface a `TailerThread` uses to report events.

    All methods are called on the worker thread. A method that blocks stalls
    delivery of every later event.
    """

    @abc.abstractmethod
    def on_create(self, path: Path) -> None:
        """The file was created and a new read handle is open."""

    @abc.abstractmethod
    def on_delete(self, path: Path) -> None:
        """The file was deleted; the read handle is closed and the cursor reset."""

    @abc.abstractmethod
    def on_truncate(self, path: Path, below_threshold: bool) -> None:
        """The file shrank.

        Args:
            path (Path): The followed file.
            below_threshold (bool): True when the new size is below the data
                already delivered, in which case reading restarts at offset 0.
        """

    @abc.abstractmethod
    def on_receive(self, path: Path, data: bytes) -> None:
        """New data was appended to the file. ``data`` is never empty."""

    @abc.abstractmethod
    def on_observer_fault(self, method_name: str, error: Exception) -> None:
        """One of the other methods raised ``error`` while being called.

        Anything raised from here is discarded.
        """


class TailerThread(threading.Thread):
    """Follow a file for appended data, much like ``tail -f``.

    The file may not exist yet. If it does, reading starts at its current end,
    so only data appended after `is_started` turned true is reported.

    Attributes:
        callback (TailerCallback): Receiver of all events.
        path (Path): Absolute path of the followed file.
        directory (Path): The registered parent directory of `path`.
        size_poll_attempts (int): Size checks per notification before giving up.
        size_poll_interval (float): Seconds between two size checks.

    Example:
        >>> tailer = TailerThread(callback, "app.log", "/var/log")
        >>> tailer.start()
        >>> if not tailer.wait_for_start():
        ...     raise tailer.get_error()
        >>> # ...
        >>> tailer.stop()
    """

    def __init__(
        self,
        callback: TailerCallback,
        file_name: Union[str, Path],
        directory: Optional[Union[str, Path]] = None,
        *,
        size_poll_attempts: int = DEFAULT_SIZE_POLL_ATTEMPTS,
        size_poll_interval: float = DEFAULT_SIZE_POLL_INTERVAL,
        watch_service_factory: Callable[[], WatchService] = WatchService,
        daemon: bool = True,
    ) -> None:
        """Initialize the worker without starting it.

        Args:
            callback (TailerCallback): Receiver of all events.
            file_name (Union[str, Path]): The file to follow, relative to ``directory``.
            directory (Optional[Union[str, Path]]): The directory containing the
                file. Defaults to the current directory.
            size_poll_attempts (int): Size checks per notification (at least 1).
            size_poll_interval (float): Seconds between size checks.
            watch_service_factory (Callable[[], WatchService]): Creates the
                notification source on every run.
            daemon (bool): Whether the worker is a daemon thread.

        Raises:
            ValueError: If the polling parameters are out of range.
        """
        if size_poll_attempts < 1:
            raise ValueError(f"size_poll_attempts must be at least 1, got {size_poll_attempts}")
        if size_poll_interval < 0:
            raise ValueError(f"size_poll_interval must be non-negative, got {size_poll_interval}")

        self.path = (Path(directory if directory is not None else ".") / file_name).absolute()
        super().__init__(name=f"TailerThread({self.path.name})", daemon=daemon)

        self.callback = callback
        self.directory = self.path.parent
        self.size_poll_attempts = size_poll_attempts
        self.size_poll_interval = size_poll_interval
        self._watch_service_factory = watch_service_factory

        # Control surface shared with callers.
        self._stop_event = threading.Event()
        self._settled = threading.Event()
        self._run_state = RunState.NOT_STARTED
        self._exception: Optional[Exception] = None
        # Guards _exception against a start timeout racing a worker failure.
        self._error_lock = threading.Lock()

        # Worker-owned state.
        self._watch_service: Optional[WatchService] = None
        self._file: Optional[BinaryIO] = None
        self._last_size = 0
        self._known_size = 0

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {}
        self._start_time = 0.0

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def wait_for_start(self, timeout: float = DEFAULT_START_TIMEOUT) -> bool:
        """Block until the worker is running, has failed, or ``timeout`` passed.

        On timeout without a recorded failure a `StartTimeoutError` is stored
        and returned by `get_error` afterwards.

        Args:
            timeout (float): Maximum time to wait in seconds.

        Returns:
            bool: True only if the worker reached the running state in time.
        """
        self._settled.wait(timeout)
        if self._run_state is RunState.RUNNING:
            return True
        with self._error_lock:
            if self._exception is None and self._run_state not in (RunState.STOPPED, RunState.FAILED):
                self._exception = StartTimeoutError(
                    f"Timed out after {timeout}s waiting for tailer of {self.path} to start"
                )
        return False

    def is_started(self) -> bool:
        """Return whether the worker is following the file.

        Changes that happen before this returns True may not be reported.
        """
        return self._run_state is RunState.RUNNING

    @property
    def state(self) -> RunState:
        return self._run_state

    def get_error(self) -> Optional[Exception]:
        """Return the error that made the worker exit or fail to start, if any."""
        return self._exception

    def do_stop(self) -> None:
        """Ask the worker to exit.

        The request is only seen between two notification waits; follow it
        with `interrupt` to wake a worker blocked waiting for notifications.
        """
        self._stop_event.set()

    def interrupt(self) -> None:
        """Wake the worker if it is blocked waiting for notifications.

        Without a preceding `do_stop` the worker simply waits again.
        """
        watch_service = self._watch_service
        if watch_service is not None:
            watch_service.wakeup()

    def stop(self, timeout: float = 1.0) -> bool:
        """Request a stop, wake the worker and wait for it to exit.

        Args:
            timeout (float): Seconds to wait for the thread to exit.

        Returns:
            bool: True if the worker thread is no longer alive.
        """
        self.do_stop()
        self.interrupt()
        if self.ident is not None and threading.current_thread() is not self:
            self.join(timeout)
        if self.is_alive():
            logger.warning(f"Tailer for {self.path} did not stop within {timeout}s")
            return False
        return True

    def get_statistics(self) -> Dict[str, Any]:
        """Return event counters and uptime.

        Returns:
            Dict[str, Any]: Counters such as ``events_matched``, ``receives`` and
            ``bytes_received``, plus ``uptime`` in seconds.
        """
        with self._stats_lock:
            stats: Dict[str, Any] = dict(self._stats)
        stats["uptime"] = time.monotonic() - self._start_time if self._start_time else 0.0
        stats["state"] = self._run_state.value
        return stats

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _reset_for_run(self) -> None:
        """Reset worker-owned state and create a fresh watch service."""
        with self._error_lock:
            self._exception = None
        self._last_size = 0
        self._known_size = 0
        self._close_handle("upon re-run")
        if self._watch_service is not None:
            self._watch_service.close()
        with self._stats_lock:
            self._stats = {
                "events_matched": 0,
                "creates": 0,
                "deletes": 0,
                "truncates": 0,
                "receives": 0,
                "bytes_received": 0,
                "observer_faults": 0,
            }
        self._start_time = time.monotonic()
        self._watch_service = self._watch_service_factory()

    def run(self) -> None:
        """Start following the file and dispatch events until stopped."""
        self._run_state = RunState.STARTING
        try:
            self._reset_for_run()
            assert self._watch_service is not None
            self._watch_service.register(self.directory)

            self._open_existing()

            # Only mark as started once registered.
            self._run_state = RunState.RUNNING
            self._settled.set()
            logger.info(f"Tailer started for {self.path}")

            while not self._stop_event.is_set():
                try:
                    events = self._watch_service.take()
                except WaitInterrupted:
                    # A stop, if requested, is seen by the loop condition.
                    continue
                for event in events:
                    if self._stop_event.is_set():
                        break
                    self._dispatch(event)
        except Exception as e:
            logger.error(f"Tailer for {self.path} failed: {e}", exc_info=True)
            with self._error_lock:
                self._exception = e
                self._run_state = RunState.FAILED
        finally:
            self._close_handle("before thread exit")
            if self._watch_service is not None:
                try:
                    self._watch_service.close()
                except Exception as e:
                    logger.error(f"Couldn't close watch service before thread exit: {e}")
            if self._run_state is not RunState.FAILED:
                self._run_state = RunState.STOPPED
            self._settled.set()
            logger.info(f"Tailer for {self.path} exited ({self._run_state.value})")

    def _open_existing(self) -> None:
        """Open the file if it exists and move the cursor to its end."""
        # The file may not exist yet. If it does, skip what is already there.
        if not self.path.is_file():
            logger.info(f"{self.path} does not exist yet, waiting for creation")
            return
        self._file = self._open(self.path)
        self._last_size = self._known_size = os.stat(self.path).st_size
        self._file.seek(self._last_size)
        logger.debug(f"Opened {self.path} at start, positioned at {self._last_size}")

    def _dispatch(self, event: WatchEvent) -> None:
        """Apply one notification if it concerns the followed file."""
        watched_file = self.directory / event.name
        if self._is_target(event.kind, watched_file):
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Event {event.kind.value} for {watched_file}")
            self._count("events_matched")
            # Callbacks always see the followed path, even for a hard link.
            self._event(event.kind, self.path)
        elif logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Ignoring {event.kind.value} for {watched_file}")

    def _is_target(self, kind: EventKind, watched_file: Path) -> bool:
        """Return whether a notification for a directory entry concerns the followed file.

        Writes through another hard link of the file count as a MODIFY. Creating
        or deleting such a link does not touch the followed file.
        """
        if watched_file == self.path:
            return True
        if kind is not EventKind.MODIFY:
            return False
        try:
            return os.path.samefile(watched_file, self.path)
        except OSError:
            return False

    def _event(self, kind: EventKind, path: Path) -> None:
        """Apply one notification for the followed file.

        Args:
            kind (EventKind): CREATE, DELETE or MODIFY.
            path (Path): The followed file.

        Raises:
            TailerError: If a created path is not a readable regular file, or a
                change arrives while no file is open.
            OSError: If the created file cannot be opened.
        """
        if kind is EventKind.CREATE:
            if not path.is_file():
                raise TailerError(f"{path} is not a regular file or can't be opened for reading")
            # Normally the delete event came first and closed it already.
            self._close_handle("on recreate")
            self._last_size = self._known_size = 0
            self._file = self._open(path)
            self._count("creates")
            self._notify("on_create", path)

        if kind is EventKind.CREATE or kind is EventKind.MODIFY:
            self._apply_change(path)
        elif kind is EventKind.DELETE:
            self._close_handle("upon delete event")
            self._last_size = self._known_size = 0
            self._count("deletes")
            self._notify("on_delete", path)

    def _apply_change(self, path: Path) -> None:
        if self._file is None:
            raise TailerError(f"No open file for {path} while handling a change")

        current_size = self._poll_size(path)
        if current_size < self._last_size:
            logger.warning(
                f"{path} truncated from {self._last_size} to {current_size} bytes, reading from start"
            )
            self._last_size = 0
            self._count("truncates")
            self._notify("on_truncate", path, True)
        elif current_size < self._known_size:
            logger.warning(f"{path} shrank from {self._known_size} to {current_size} bytes")
            self._count("truncates")
            self._notify("on_truncate", path, False)
        self._known_size = current_size

        if current_size <= self._last_size:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"No growth for {path}: size={current_size}, cursor={self._last_size}")
            return

        data = self._read(current_size - self._last_size)
        if data is None:
            logger.warning(f"0 bytes read from {path} at {self._last_size}; will retry on next change")
        elif not data:
            # The file is shorter than stat claimed: it was replaced or
            # truncated meanwhile. Start over on a fresh handle.
            logger.debug(f"Unexpected end of {path} at {self._last_size}, reopening")
            self._close_handle("on reopen")
            self._last_size = self._known_size = 0
            self._file = self._open(path)
        else:
            self._last_size += len(data)
            self._count("receives")
            self._count("bytes_received", len(data))
            self._notify("on_receive", path, data)

    def _poll_size(self, path: Path) -> int:
        """Return the file size once it differs from the cursor, or after all attempts.

        A failing ``stat`` counts as no change.
        """
        current_size = self._last_size
        for attempt in range(self.size_poll_attempts):
            try:
                current_size = os.stat(path).st_size
            except OSError as e:
                logger.debug(f"Stat failed for {path} (attempt {attempt + 1}): {e}")
                current_size = self._last_size
            if current_size != self._last_size:
                return current_size
            if attempt < self.size_poll_attempts - 1 and self._stop_event.wait(self.size_poll_interval):
                break
        return current_size

    def _read(self, size: int) -> Optional[bytes]:
        """Read up to ``size`` bytes at the cursor.

        Returns:
            Optional[bytes]: The bytes read (empty at end of file), or None if
            the read failed.
        """
        assert self._file is not None
        try:
            self._file.seek(self._last_size)
            return self._file.read(size)
        except OSError as e:
            logger.error(f"Read error on {self.path}: {e}")
            return None

    def _open(self, path: Path) -> BinaryIO:
        handle = open(path, "rb")
        logger.debug(f"Opened {path}")
        return handle

    def _close_handle(self, reason: str) -> None:
        if self._file is None:
            return
        try:
            self._file.close()
        except OSError as e:
            logger.error(f"Couldn't close {self.path} {reason}: {e}")
        self._file = None

    def _notify(self, method_name: str, *args: Any) -> None:
        try:
            getattr(self.callback, method_name)(*args)
        except Exception as e:
            self._report_callback_error(method_name, e)

    def _report_callback_error(self, method_name: str, error: Exception) -> None:
        """Pass a callback failure to `TailerCallback.on_observer_fault`.

        Anything raised by the fault handler itself is ignored.
        """
        self._count("observer_faults")
        logger.error(f"callback.{method_name} raised an exception", exc_info=error)
        try:
            self.callback.on_observer_fault(method_name, error)
        except Exception as e:
            logger.debug(f"callback.on_observer_fault raised {e!r}, ignoring")

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] = self._stats.get(key, 0) + amount

    def __repr__(self) -> str:
        return f"<TailerThread path={self.path} state={self._run_state.value}>"
