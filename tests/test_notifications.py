"""Tests for the watchdog-backed notification source."""

from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from file_tailer.notifications import (
    EventKind,
    WaitInterrupted,
    WatchDirectoryLost,
    WatchEvent,
    WatchService,
    WatchServiceClosed,
)


@pytest.fixture
def service() -> WatchService:
    return WatchService()


@pytest.fixture
def handler(service: WatchService, temp_dir: Path, mock_observer: MagicMock):
    """Handler registered on a service whose observer is mocked out."""
    return service.register(temp_dir)


def test_register_schedules_non_recursive_observer(
    service: WatchService, temp_dir: Path, mock_observer: MagicMock
) -> None:
    handler = service.register(temp_dir)

    observer = mock_observer.return_value
    observer.schedule.assert_called_once_with(handler, str(temp_dir), recursive=False)
    observer.start.assert_called_once()
    assert service.directory == temp_dir
    assert handler.directory == temp_dir


def test_register_missing_directory_raises(service: WatchService, temp_dir: Path, mock_observer: MagicMock) -> None:
    with pytest.raises(FileNotFoundError):
        service.register(temp_dir / "missing")
    mock_observer.assert_not_called()


def test_register_twice_raises(service: WatchService, temp_dir: Path, mock_observer: MagicMock) -> None:
    service.register(temp_dir)
    with pytest.raises(RuntimeError, match="already registered"):
        service.register(temp_dir)


def test_register_after_close_raises(service: WatchService, temp_dir: Path, mock_observer: MagicMock) -> None:
    service.close()
    with pytest.raises(WatchServiceClosed):
        service.register(temp_dir)


def test_observer_start_failure_propagates(service: WatchService, temp_dir: Path, mock_observer: MagicMock) -> None:
    mock_observer.return_value.start.side_effect = OSError("inotify watch limit reached")
    with pytest.raises(OSError, match="inotify"):
        service.register(temp_dir)


@pytest.mark.parametrize(
    "event_factory,expected",
    [
        (lambda d: FileCreatedEvent(str(d / "app.log")), [WatchEvent(EventKind.CREATE, "app.log")]),
        (lambda d: FileDeletedEvent(str(d / "app.log")), [WatchEvent(EventKind.DELETE, "app.log")]),
        (lambda d: FileModifiedEvent(str(d / "app.log")), [WatchEvent(EventKind.MODIFY, "app.log")]),
        (
            lambda d: FileMovedEvent(str(d / "app.log"), str(d / "app.log.1")),
            [WatchEvent(EventKind.DELETE, "app.log"), WatchEvent(EventKind.CREATE, "app.log.1")],
        ),
        (
            lambda d: FileMovedEvent(str(d.parent / "elsewhere.log"), str(d / "app.log")),
            [WatchEvent(EventKind.CREATE, "app.log")],
        ),
        (
            lambda d: FileMovedEvent(str(d / "app.log"), str(d.parent / "elsewhere.log")),
            [WatchEvent(EventKind.DELETE, "app.log")],
        ),
    ],
    ids=["created", "deleted", "modified", "renamed", "moved in", "moved out"],
)
def test_file_events_are_translated(
    service: WatchService, handler, temp_dir: Path, event_factory, expected
) -> None:
    handler.dispatch(event_factory(temp_dir))
    assert service.take() == expected


def test_directory_and_foreign_events_are_ignored(service: WatchService, handler, temp_dir: Path) -> None:
    handler.dispatch(DirCreatedEvent(str(temp_dir / "sub")))
    handler.dispatch(DirModifiedEvent(str(temp_dir)))
    handler.dispatch(FileModifiedEvent(str(temp_dir / "sub" / "nested.log")))
    handler.dispatch(FileModifiedEvent(str(temp_dir / "app.log")))

    assert service.take() == [WatchEvent(EventKind.MODIFY, "app.log")]


def test_bytes_paths_are_decoded(service: WatchService, handler, temp_dir: Path) -> None:
    handler.on_created(FileCreatedEvent(bytes(temp_dir / "app.log")))
    assert service.take() == [WatchEvent(EventKind.CREATE, "app.log")]


def test_take_drains_queued_events_as_one_batch(service: WatchService, handler, temp_dir: Path) -> None:
    target = str(temp_dir / "app.log")
    handler.dispatch(FileDeletedEvent(target))
    handler.dispatch(FileCreatedEvent(target))
    handler.dispatch(FileModifiedEvent(target))

    assert [e.kind for e in service.take()] == [EventKind.DELETE, EventKind.CREATE, EventKind.MODIFY]


def test_wakeup_interrupts_blocked_take(service: WatchService) -> None:
    errors = []

    def _take() -> None:
        try:
            service.take()
        except WaitInterrupted as e:
            errors.append(e)

    t = threading.Thread(target=_take)
    t.start()
    service.wakeup()
    t.join(2.0)

    assert not t.is_alive()
    assert len(errors) == 1


def test_wakeup_after_events_is_seen_by_next_take(service: WatchService, handler, temp_dir: Path) -> None:
    handler.dispatch(FileModifiedEvent(str(temp_dir / "app.log")))
    service.wakeup()
    handler.dispatch(FileModifiedEvent(str(temp_dir / "app.log")))

    assert service.take() == [WatchEvent(EventKind.MODIFY, "app.log")]
    with pytest.raises(WaitInterrupted):
        service.take()
    assert service.take() == [WatchEvent(EventKind.MODIFY, "app.log")]


def test_close_stops_observer_and_fails_take(
    service: WatchService, temp_dir: Path, mock_observer: MagicMock
) -> None:
    service.register(temp_dir)
    observer = mock_observer.return_value
    observer.is_alive.return_value = False

    service.close()
    service.close()

    observer.stop.assert_called_once()
    observer.join.assert_called_once()
    assert service.closed
    with pytest.raises(WatchServiceClosed):
        service.take()
    with pytest.raises(WatchServiceClosed):
        service.take()


@pytest.mark.parametrize("moved", [False, True], ids=["deleted", "moved"])
def test_losing_watch_directory_fails_take(service: WatchService, handler, temp_dir: Path, moved: bool) -> None:
    if moved:
        handler.dispatch(DirMovedEvent(str(temp_dir), str(temp_dir.parent / "renamed")))
    else:
        handler.dispatch(DirDeletedEvent(str(temp_dir)))

    with pytest.raises(WatchDirectoryLost):
        service.take()


def test_real_observer_reports_file_creation(service: WatchService, temp_dir: Path) -> None:
    service.register(temp_dir)
    # Safety net so a missing event cannot hang the test.
    timer = threading.Timer(5.0, service.wakeup)
    timer.start()
    try:
        (temp_dir / "app.log").write_bytes(b"hello\n")
        seen = []
        while WatchEvent(EventKind.CREATE, "app.log") not in seen:
            seen.extend(service.take())
    finally:
        timer.cancel()
        service.close()

    assert seen[0] == WatchEvent(EventKind.CREATE, "app.log")
