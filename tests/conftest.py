from __future__ import annotations

import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Generator, Iterable, List, Optional, Tuple
from unittest.mock import MagicMock, patch

import pytest

from taskwatch.dispatcher import CancellationToken
from taskwatch.engine import EngineExit, WatchEngine
from taskwatch.exceptions import TaskFailedError, TaskFatalError
from taskwatch.models import ChangeEvent, ChangeKind, WatchTarget


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname).resolve()


@pytest.fixture
def make_target(temp_dir: Path) -> Callable[..., WatchTarget]:
    """Factory for WatchTargets rooted in temp_dir."""

    def _make(name: str = "scripts", patterns: Iterable[str] = ("lib/*.js",), **kwargs: object) -> WatchTarget:
        kwargs.setdefault("cwd", temp_dir)
        kwargs.setdefault("debounce_delay", 0.1)
        return WatchTarget(name=name, patterns=tuple(patterns), **kwargs)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Fixture for mocking the watchdog Observer."""
    with patch("taskwatch.watcher.Observer") as mock:
        mock.return_value.is_alive.return_value = True
        yield mock


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeWatcher:
    """Stand-in for PathWatcher that lets tests emit events directly."""

    def __init__(self) -> None:
        self.paths: List[Path] = []
        self.callback: Optional[Callable[[ChangeEvent], None]] = None
        self.stopped = False
        self.healthy = True
        self.health_checks = 0

    def start(self, paths: Iterable[Path], callback: Callable[[ChangeEvent], None]) -> None:
        self.paths = list(paths)
        self.callback = callback

    def stop(self) -> None:
        self.stopped = True

    def check_health(self) -> bool:
        self.health_checks += 1
        return self.healthy

    def emit(self, path: Path, kind: ChangeKind = ChangeKind.CHANGED) -> None:
        assert self.callback is not None, "watcher not started"
        self.callback(ChangeEvent(path=path, kind=kind))


@pytest.fixture
def fake_watcher() -> FakeWatcher:
    return FakeWatcher()


class ScriptedRunner:
    """Task collaborator whose behavior is scripted per target.

    ``behaviors[name]`` is one of ``"ok"``, ``"fail"``, ``"fatal"``, ``"crash"``,
    ``"exit"`` (raise ``SystemExit``) or ``"block"`` (wait until cancelled or
    released). Every call is recorded as ``(target name, changed files)``.
    """

    def __init__(self, behaviors: Optional[Dict[str, str]] = None) -> None:
        self.behaviors: Dict[str, str] = dict(behaviors or {})
        self.calls: List[Tuple[str, List[str]]] = []
        self.started = threading.Event()
        self.release = threading.Event()
        self._lock = threading.Lock()
        self.running = 0
        self.max_running = 0

    def run(self, target: WatchTarget, changed_files: List[str], token: CancellationToken) -> None:
        with self._lock:
            self.calls.append((target.name, list(changed_files)))
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        self.started.set()
        try:
            behavior = self.behaviors.get(target.name, "ok")
            if behavior == "block":
                while not token.cancelled and not self.release.is_set():
                    token.wait(0.01)
            elif behavior == "fail":
                raise TaskFailedError(f"{target.name} failed")
            elif behavior == "fatal":
                raise TaskFatalError(f"{target.name} is broken")
            elif behavior == "crash":
                raise RuntimeError("boom")
            elif behavior == "exit":
                raise SystemExit(3)
        finally:
            with self._lock:
                self.running -= 1


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


def drive(
    engine: WatchEngine,
    until: Callable[[], bool],
    timeout: float = 5.0,
    clock: Optional[FakeClock] = None,
) -> Optional[EngineExit]:
    """Step the engine until ``until()`` holds or it exits.

    When a fake clock is given it is advanced on every step so debounce
    deadlines pass without sleeping.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if clock is not None:
            clock.advance(0.05)
        result = engine.step(timeout=0.01)
        if result is not None or until():
            return result
    raise AssertionError("engine did not reach the expected state in time")
