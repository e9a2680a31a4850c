"""Shared fixtures: temporary directories, a recording callback and a tailer factory."""

from pathlib import Path
import os
import tempfile
import threading
from typing import Any, Callable, Generator, List, Optional, Tuple
from unittest.mock import MagicMock, patch

import pytest

from file_tailer.tailer import TailerCallback, TailerThread


class RecordingCallback(TailerCallback):
    """Callback that records every event and lets tests wait for them."""

    def __init__(self) -> None:
        self.events: List[Tuple[Any, ...]] = []
        self.faults: List[Tuple[str, Exception]] = []
        self._condition = threading.Condition()

    def _record(self, *event: Any) -> None:
        with self._condition:
            self.events.append(event)
            self._condition.notify_all()

    def on_create(self, path: Path) -> None:
        self._record("create", path)

    def on_delete(self, path: Path) -> None:
        self._record("delete", path)

    def on_truncate(self, path: Path, below_threshold: bool) -> None:
        self._record("truncate", path, below_threshold)

    def on_receive(self, path: Path, data: bytes) -> None:
        self._record("receive", path, data)

    def on_observer_fault(self, method_name: str, error: Exception) -> None:
        with self._condition:
            self.faults.append((method_name, error))
            self._condition.notify_all()

    def kinds(self) -> List[str]:
        with self._condition:
            return [event[0] for event in self.events]

    def count(self, kind: str) -> int:
        return self.kinds().count(kind)

    def received(self) -> bytes:
        with self._condition:
            return b"".join(event[2] for event in self.events if event[0] == "receive")

    def lines(self) -> List[str]:
        return [line for line in self.received().decode("utf-8").split("\n") if line]

    def wait_for(self, predicate: Callable[["RecordingCallback"], bool], timeout: float = 5.0) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: predicate(self), timeout)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname).resolve()


@pytest.fixture
def recorder() -> RecordingCallback:
    return RecordingCallback()


@pytest.fixture
def sample_file(temp_dir: Path) -> Path:
    """Path of the followed file; not created."""
    return temp_dir / "sampleFile.txt"


@pytest.fixture
def make_tailer(
    recorder: RecordingCallback, temp_dir: Path
) -> Generator[Callable[..., TailerThread], None, None]:
    """Factory for tailers with fast size polling. Every tailer is stopped on teardown."""
    created: List[TailerThread] = []

    def _make(
        file_name: str = "sampleFile.txt",
        directory: Optional[Path] = None,
        callback: Optional[TailerCallback] = None,
        **kwargs: Any,
    ) -> TailerThread:
        kwargs.setdefault("size_poll_attempts", 10)
        kwargs.setdefault("size_poll_interval", 0.05)
        tailer = TailerThread(
            callback or recorder,
            file_name,
            directory if directory is not None else temp_dir,
            **kwargs,
        )
        created.append(tailer)
        return tailer

    yield _make

    for tailer in created:
        if tailer.ident is not None:
            tailer.stop(timeout=2.0)


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Fixture for mocking the watchdog Observer."""
    with patch("file_tailer.notifications.Observer") as mock:
        yield mock


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, temp_dir: Path) -> Path:
    """Isolate configuration sources: no FILE_TAILER_* variables, no config files."""
    for key in list(os.environ):
        if key.startswith("FILE_TAILER_"):
            monkeypatch.delenv(key, raising=False)
    config_home = temp_dir / "xdg"
    config_home.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    cwd = temp_dir / "cwd"
    cwd.mkdir()
    monkeypatch.chdir(cwd)
    return config_home

