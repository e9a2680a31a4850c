"""
Directory change notifications built on watchdog.

Responsibility:
    Turn the callback-style `watchdog` observer into a blocking queue of
    ``(kind, name)`` events for one directory, which is what the tailer's event
    loop consumes. Only directories can be watched, so a file is followed by
    registering its parent and filtering on the file name.

Design:
    - **Batching**: `WatchService.take` blocks for the first event and then
      drains everything already queued, so a burst collapsed by the OS
      (e.g. delete + recreate) is handed over as one ordered batch.
    - **Wake-up**: `WatchService.wakeup` places a marker on the queue that makes
      a blocked `take` raise `WaitInterrupted`. Threads cannot be interrupted in
      Python, so this stands in for interrupting the waiting thread.
    - **Moves**: a rename away from a name is reported as DELETE of that name,
      a rename onto a name as CREATE of that name.
"""

from __future__ import annotations

import enum
import logging
import os
import queue
import threading
from pathlib import Path
from typing import List, NamedTuple, Optional, Union

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "EventKind",
    "WatchEvent",
    "WatchService",
    "DirectoryEventHandler",
    "NotificationError",
    "WaitInterrupted",
    "WatchServiceClosed",
    "WatchDirectoryLost",
]


class EventKind(enum.Enum):
    """Kinds of directory entry changes reported to the tailer."""

    CREATE = "create"
    DELETE = "delete"
    MODIFY = "modify"


class WatchEvent(NamedTuple):
    """A single change of a directory entry.

    Attributes:
        kind (EventKind): What happened to the entry.
        name (str): The entry's file name, relative to the watched directory.
    """

    kind: EventKind
    name: str


class NotificationError(Exception):
    """Base class for errors raised by the notification source."""


class WaitInterrupted(NotificationError):
    """A blocked `WatchService.take` was woken up by `WatchService.wakeup`."""


class WatchServiceClosed(NotificationError):
    """The watch service was closed while (or before) waiting for events."""


class WatchDirectoryLost(NotificationError):
    """The watched directory was deleted or moved away."""


# Queue markers. They are compared by identity.
_WAKEUP = object()
_CLOSED = object()
_DIRECTORY_LOST = object()


def _decode(path: Union[str, bytes]) -> Path:
    return Path(os.fsdecode(path))


class DirectoryEventHandler(FileSystemEventHandler):
    """Translate watchdog events for one directory into `WatchEvent` items.

    Attributes:
        directory (Path): The absolute directory whose entries are reported.
    """

    def __init__(self, directory: Path, events: "queue.Queue[object]") -> None:
        self.directory = directory
        self._events = events

    def _put(self, kind: EventKind, path: Path) -> None:
        if path.parent != self.directory:
            return
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Queueing {kind.value} event for {path.name}")
        self._events.put(WatchEvent(kind, path.name))

    def _directory_gone(self, event: FileSystemEvent) -> bool:
        if event.is_directory and _decode(event.src_path) == self.directory:
            logger.warning(f"Watch directory removed: {self.directory}")
            self._events.put(_DIRECTORY_LOST)
            return True
        return False

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._put(EventKind.CREATE, _decode(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if self._directory_gone(event) or event.is_directory:
            return
        self._put(EventKind.DELETE, _decode(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._put(EventKind.MODIFY, _decode(event.src_path))

    def on_moved(self, event: FileMovedEvent) -> None:
        if self._directory_gone(event) or event.is_directory:
            return
        self._put(EventKind.DELETE, _decode(event.src_path))
        self._put(EventKind.CREATE, _decode(event.dest_path))

    def __repr__(self) -> str:
        return f"<DirectoryEventHandler directory={self.directory}>"


class WatchService:
    """Blocking event queue fed by a watchdog observer for a single directory.

    Example:
        >>> service = WatchService()
        >>> service.register(Path("/var/log"))
        >>> batch = service.take()  # blocks
        >>> service.close()
    """

    def __init__(self, join_timeout: float = 5.0) -> None:
        """Initialize an unregistered, open service.

        Args:
            join_timeout (float): Seconds to wait for the observer thread on close.
        """
        self.join_timeout = join_timeout
        self.directory: Optional[Path] = None
        self._events: "queue.Queue[object]" = queue.Queue()
        # A marker met while draining a batch, handed out by the next take().
        self._pending: Optional[object] = None
        self._observer: Optional[Observer] = None
        self._lock = threading.Lock()
        self._closed = False

    def register(self, directory: Union[str, Path]) -> DirectoryEventHandler:
        """Start watching ``directory`` for create, delete and modify events.

        Args:
            directory (Union[str, Path]): The directory to watch (non-recursive).

        Returns:
            DirectoryEventHandler: The handler feeding this service's queue.

        Raises:
            FileNotFoundError: If the directory does not exist.
            WatchServiceClosed: If the service has been closed.
            RuntimeError: If a directory is already registered.
            OSError: If the observer cannot be started (e.g. inotify limits).
        """
        path = Path(directory).absolute()
        with self._lock:
            if self._closed:
                raise WatchServiceClosed("Watch service is closed")
            if self._observer is not None:
                raise RuntimeError(f"Watch service already registered for {self.directory}")
            if not path.is_dir():
                raise FileNotFoundError(f"Watch directory not found: {path}")

            handler = DirectoryEventHandler(path, self._events)
            observer = Observer()
            # Security: recursive=False, only direct entries of the directory are reported.
            observer.schedule(handler, str(path), recursive=False)
            observer.start()
            self._observer = observer
            self.directory = path
        logger.debug(f"Registered {path} ({type(observer).__name__})")
        return handler

    def take(self) -> List[WatchEvent]:
        """Block until events are available and return them as one batch.

        Returns:
            List[WatchEvent]: At least one event, in arrival order.

        Raises:
            WaitInterrupted: If `wakeup` was called.
            WatchServiceClosed: If the service is closed.
            WatchDirectoryLost: If the watched directory disappeared.
        """
        if self._pending is not None:
            item, self._pending = self._pending, None
        else:
            item = self._events.get()
        self._raise_for_marker(item)
        batch = [item]
        while True:
            try:
                item = self._events.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, WatchEvent):
                batch.append(item)
            else:
                # Deliver what we have; the marker takes effect on the next take().
                self._pending = item
                break
        return batch  # type: ignore[return-value]

    def _raise_for_marker(self, item: object) -> None:
        if item is _WAKEUP:
            raise WaitInterrupted("Wait for notifications interrupted")
        if item is _CLOSED:
            # Keep the marker so that every later take() fails as well.
            self._pending = _CLOSED
            raise WatchServiceClosed("Watch service is closed")
        if item is _DIRECTORY_LOST:
            self._pending = _DIRECTORY_LOST
            raise WatchDirectoryLost(f"Watch directory removed: {self.directory}")

    def wakeup(self) -> None:
        """Make a blocked (or the next) `take` raise `WaitInterrupted`."""
        self._events.put(_WAKEUP)

    def close(self) -> None:
        """Stop the observer and fail any pending or future `take`.

        Safe to call more than once.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            observer = self._observer
            self._observer = None
        self._events.put(_CLOSED)
        if observer is not None:
            try:
                observer.stop()
                observer.join(timeout=self.join_timeout)
                if observer.is_alive():
                    logger.warning("Observer thread did not terminate within timeout.")
            except RuntimeError as e:
                logger.error(f"Error stopping observer: {e}")
        logger.debug("Watch service closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return f"<WatchService directory={self.directory} closed={self._closed}>"
