"""End-to-end tests for the watch engine control loop.

The watcher and clock are fakes; runs execute on real dispatcher threads.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Generator, List
from unittest.mock import MagicMock

import pytest

from conftest import FakeClock, FakeWatcher, ScriptedRunner, drive
from taskwatch.config import Config
from taskwatch.engine import EngineExit, WatchEngine
from taskwatch.exceptions import EngineAlreadyRunningError, EngineNotRunningError
from taskwatch.models import ChangeKind, WatchTarget
from taskwatch.tasks import CommandTaskRunner
from taskwatch.watcher import PathWatcher

EngineFactory = Callable[..., WatchEngine]


@pytest.fixture(autouse=True)
def info_logs(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)


@pytest.fixture
def make_engine(
    fake_watcher: FakeWatcher, runner: ScriptedRunner, clock: FakeClock
) -> Generator[EngineFactory, None, None]:
    engines: List[WatchEngine] = []

    def _make(targets: List[WatchTarget], **kwargs: object) -> WatchEngine:
        kwargs.setdefault("runner", runner)
        kwargs.setdefault("watcher", fake_watcher)
        kwargs.setdefault("clock", clock)
        engine = WatchEngine(targets, **kwargs)  # type: ignore[arg-type]
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


def _messages(caplog: pytest.LogCaptureFixture) -> List[str]:
    return [r.getMessage() for r in caplog.records if r.name == "taskwatch.engine"]


def test_start_logs_waiting_and_watches_roots(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    engine = make_engine([make_target(patterns=["lib/*.js"])])
    engine.start()
    assert fake_watcher.paths == [temp_dir / "lib"]
    assert _messages(caplog)[-1] == "Waiting..."
    with pytest.raises(EngineAlreadyRunningError):
        engine.start()


def test_step_requires_start(make_engine: EngineFactory, make_target: Callable[..., WatchTarget]) -> None:
    engine = make_engine([make_target()])
    with pytest.raises(EngineNotRunningError):
        engine.step(0)


def test_change_runs_task_once(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    runner: ScriptedRunner, clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    engine = make_engine([make_target()])
    engine.start()
    for _ in range(3):
        fake_watcher.emit(temp_dir / "lib" / "one.js")
    drive(engine, lambda: len(runner.calls) == 1 and engine.coordinator.is_idle, clock=clock)

    assert runner.calls == [("scripts", ["lib/one.js"])]
    messages = _messages(caplog)
    assert 'File "lib/one.js" changed' in messages
    assert "Done" in messages
    assert any(m.startswith("Completed in ") for m in messages)
    assert messages.count("Waiting...") == 2
    assert engine.coordinator.succeeded == 1


def test_unmatched_and_filtered_events_are_ignored(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    runner: ScriptedRunner, clock: FakeClock, temp_dir: Path,
) -> None:
    engine = make_engine([make_target(events=frozenset({ChangeKind.ADDED}))])
    engine.start()
    fake_watcher.emit(temp_dir / "README.md")
    fake_watcher.emit(temp_dir / "lib" / "one.js", ChangeKind.CHANGED)
    for _ in range(10):
        clock.advance(0.05)
        engine.step(0.01)
    assert runner.calls == []
    assert len(engine.accumulator) == 0


def test_at_begin_runs_without_changes(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], runner: ScriptedRunner,
    clock: FakeClock, caplog: pytest.LogCaptureFixture,
) -> None:
    engine = make_engine([make_target(at_begin=True)])
    engine.start()
    drive(engine, lambda: engine.coordinator.is_idle and len(runner.calls) == 1, clock=clock)
    assert runner.calls == [("scripts", [])]
    # No "Waiting..." until the startup run finished.
    messages = _messages(caplog)
    assert messages.index("Done") < messages.index("Waiting...")


def test_date_format_in_completion_line(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], runner: ScriptedRunner,
    clock: FakeClock, caplog: pytest.LogCaptureFixture,
) -> None:
    engine = make_engine([make_target(at_begin=True, date_format="day %j of %Y")])
    engine.start()
    drive(engine, lambda: engine.coordinator.is_idle and bool(runner.calls), clock=clock)
    completed = [m for m in _messages(caplog) if m.startswith("Completed in")]
    assert len(completed) == 1
    assert "(changes sealed day " in completed[0]


def test_multiple_targets_share_one_slot(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    runner: ScriptedRunner, clock: FakeClock, temp_dir: Path,
) -> None:
    engine = make_engine([make_target("one", ["lib/*.js"]), make_target("two", ["lib/**"])])
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, lambda: len(runner.calls) == 2 and engine.coordinator.is_idle, clock=clock)
    assert [name for name, _ in runner.calls] == ["one", "two"]
    assert runner.max_running == 1


def test_concurrent_targets_run_in_parallel(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path,
) -> None:
    runner = ScriptedRunner({"one": "block", "two": "block"})
    engine = make_engine([make_target("one"), make_target("two")], runner=runner, concurrent=True)
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, lambda: runner.running == 2, clock=clock)
    assert runner.max_running == 2
    runner.release.set()
    drive(engine, lambda: engine.coordinator.is_idle, clock=clock)


def test_one_run_at_a_time_without_interrupt(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path,
) -> None:
    runner = ScriptedRunner({"scripts": "block"})
    engine = make_engine([make_target()], runner=runner)
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, runner.started.is_set, clock=clock)

    fake_watcher.emit(temp_dir / "lib" / "b.js")
    fake_watcher.emit(temp_dir / "lib" / "c.js")
    drive(engine, lambda: engine.coordinator.pending_count() == 1, clock=clock)
    (active,) = engine.coordinator.active_runs()
    assert not active.token.cancelled
    assert runner.max_running == 1

    runner.release.set()
    drive(engine, lambda: engine.coordinator.is_idle and len(runner.calls) == 2, clock=clock)
    assert runner.calls == [("scripts", ["lib/a.js"]), ("scripts", ["lib/b.js", "lib/c.js"])]
    assert engine.coordinator.interrupted == 0


def test_interrupt_reruns_with_all_changes(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    runner = ScriptedRunner({"scripts": "block"})
    engine = make_engine([make_target(interrupt=True)], runner=runner)
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, runner.started.is_set, clock=clock)

    runner.started.clear()
    fake_watcher.emit(temp_dir / "lib" / "b.js")
    drive(engine, lambda: len(runner.calls) == 2 and runner.started.is_set(), clock=clock)
    assert runner.max_running == 1

    runner.release.set()
    drive(engine, lambda: engine.coordinator.is_idle, clock=clock)
    assert runner.calls == [("scripts", ["lib/a.js"]), ("scripts", ["lib/a.js", "lib/b.js"])]
    assert 'Task "scripts" interrupted' in _messages(caplog)
    assert engine.coordinator.interrupted == 1
    assert engine.coordinator.succeeded == 1


def test_failing_task_keeps_watching(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    runner = ScriptedRunner({"scripts": "fail"})
    engine = make_engine([make_target()], runner=runner)
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, lambda: engine.coordinator.failed == 1 and engine.coordinator.is_idle, clock=clock)

    messages = _messages(caplog)
    assert "Done, with errors" in messages
    assert messages.count("Waiting...") == 2
    assert any(r.levelno == logging.ERROR and "failed" in r.getMessage() for r in caplog.records)

    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, lambda: engine.coordinator.failed == 2 and engine.coordinator.is_idle, clock=clock)
    assert engine.step(0) is None


def test_fatal_error_continues_by_default(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    runner = ScriptedRunner({"scripts": "fatal"})
    engine = make_engine([make_target()], runner=runner)
    engine.start()
    for expected in (1, 2, 3):
        fake_watcher.emit(temp_dir / "lib" / "a.js")
        drive(engine, lambda: engine.coordinator.fatals == expected and engine.coordinator.is_idle, clock=clock)
    assert any(m.startswith("Fatal error") for m in _messages(caplog))
    assert engine.step(0) is None


def test_fatal_policy_stops_engine(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path,
) -> None:
    runner = ScriptedRunner({"scripts": "fatal"})
    engine = make_engine([make_target()], runner=runner, max_consecutive_fatals=2)
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    assert drive(engine, lambda: engine.coordinator.fatals == 1, clock=clock) is None
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    assert drive(engine, lambda: False, clock=clock) is EngineExit.FATAL


def test_cwd_relative_changed_files(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    runner: ScriptedRunner, clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    sub = temp_dir / "subdir"
    engine = make_engine([make_target(patterns=["**/*.js"], cwd=sub)])
    engine.start()
    fake_watcher.emit(sub / "lib" / "one.js")
    drive(engine, lambda: bool(runner.calls) and engine.coordinator.is_idle, clock=clock)
    assert runner.calls == [("scripts", [str(Path("lib") / "one.js")])]
    assert f'File "{Path("lib") / "one.js"}" changed' in _messages(caplog)


def test_reload_target(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    runner: ScriptedRunner, clock: FakeClock, temp_dir: Path,
) -> None:
    engine = make_engine([make_target("scripts"), make_target("settings", ["conf/*.toml"], reload=True)])
    engine.start()
    fake_watcher.emit(temp_dir / "conf" / "app.toml")
    assert drive(engine, lambda: False, clock=clock) is EngineExit.RELOAD
    assert runner.calls == []


def test_config_file_change_restarts_when_forced(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path,
) -> None:
    config_path = temp_dir / "taskwatch.toml"
    engine = make_engine([make_target()], config_path=config_path, force_restart=True)
    engine.start()
    assert temp_dir in fake_watcher.paths
    fake_watcher.emit(config_path)
    assert engine.step(0.5) is EngineExit.RESTART


def test_config_file_change_reloads(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    temp_dir: Path,
) -> None:
    config_path = temp_dir / "taskwatch.toml"
    engine = make_engine([make_target()], config_path=config_path)
    engine.start()
    fake_watcher.emit(config_path, ChangeKind.DELETED)
    assert engine.step(0.5) is EngineExit.RELOAD


def test_operator_interrupt(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    runner = ScriptedRunner({"scripts": "block"})
    engine = make_engine([make_target()], runner=runner)
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, runner.started.is_set, clock=clock)

    # First interrupt cancels the run and the engine keeps watching.
    engine.request_interrupt()
    assert drive(engine, lambda: engine.coordinator.is_idle, clock=clock) is None
    assert 'Task "scripts" interrupted' in _messages(caplog)

    # Interrupting while idle exits.
    engine.request_interrupt()
    assert drive(engine, lambda: False, clock=clock) is EngineExit.STOPPED


def test_second_interrupt_while_cancelling_exits(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path,
) -> None:
    runner = ScriptedRunner({"scripts": "block"})
    engine = make_engine([make_target()], runner=runner)
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, runner.started.is_set, clock=clock)
    engine.request_interrupt()
    engine.request_interrupt()
    assert drive(engine, lambda: False, clock=clock) is EngineExit.STOPPED


def test_run_until_stopped(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
) -> None:
    engine = make_engine([make_target()], health_interval=0.05)
    results: List[EngineExit] = []
    thread = threading.Thread(target=lambda: results.append(engine.run()))
    thread.start()
    engine.request_stop()
    thread.join(5)
    assert results == [EngineExit.STOPPED]
    assert fake_watcher.stopped
    assert not engine.running
    with pytest.raises(EngineNotRunningError):
        engine.step(0)


def test_unhealthy_watcher_is_reported(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, caplog: pytest.LogCaptureFixture,
) -> None:
    fake_watcher.healthy = False
    engine = make_engine([make_target()], health_interval=0.1)
    engine.start()
    drive(engine, lambda: fake_watcher.health_checks > 0, clock=clock)
    assert "File watcher is unhealthy" in caplog.text


def test_statistics(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    runner: ScriptedRunner, clock: FakeClock, temp_dir: Path,
) -> None:
    engine = make_engine([make_target()])
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    fake_watcher.emit(temp_dir / "lib" / "b.js")
    drive(engine, lambda: engine.coordinator.succeeded == 1, clock=clock)
    stats = engine.get_statistics()
    assert stats["events"] == 2
    assert stats["batches"] == 1
    assert stats["runs_succeeded"] == 1


def test_from_config(make_target: Callable[..., WatchTarget], temp_dir: Path) -> None:
    config = Config(
        targets=[make_target()],
        config_path=str(temp_dir / "taskwatch.toml"),
        kill_timeout=1.5,
        poll_interval=0.25,
        concurrent=True,
        max_consecutive_fatals=4,
    )
    engine = WatchEngine.from_config(config)
    assert isinstance(engine.dispatcher.runner, CommandTaskRunner)
    assert engine.dispatcher.runner.kill_timeout == 1.5
    assert isinstance(engine.watcher, PathWatcher)
    assert engine.watcher.poll_interval == 0.25
    assert engine.coordinator.concurrent is True
    assert engine.max_consecutive_fatals == 4
    assert engine.config_path == temp_dir / "taskwatch.toml"


def test_requires_targets() -> None:
    with pytest.raises(ValueError):
        WatchEngine([])


def test_zero_delay_burst_is_one_run(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    runner: ScriptedRunner, clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    project = temp_dir / "X"
    engine = make_engine([make_target(patterns=["lib/*.js"], cwd=project, debounce_delay=0)])
    engine.start()

    # The watcher hands over the two writes on separate loop turns.
    fake_watcher.emit(project / "lib" / "one.js")
    assert engine.step(0) is None
    assert runner.calls == []
    fake_watcher.emit(project / "lib" / "two.js")
    assert engine.step(0) is None
    assert runner.calls == []

    drive(engine, lambda: len(runner.calls) == 1 and engine.coordinator.is_idle, clock=clock)
    assert runner.calls == [("scripts", ["lib/one.js", "lib/two.js"])]
    messages = _messages(caplog)
    assert messages.count('File "lib/one.js" changed') == 1
    assert messages.count('File "lib/two.js" changed') == 1
    assert messages.index('File "lib/two.js" changed') < messages.index("Done")


def test_change_to_one_target_never_runs_the_other(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    runner: ScriptedRunner, clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    engine = make_engine([make_target("scripts", ["lib/*.js"]), make_target("docs", ["docs/*.md"])])
    engine.start()

    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, lambda: len(runner.calls) == 1 and engine.coordinator.is_idle, clock=clock)
    for _ in range(5):
        clock.advance(0.05)
        engine.step(0.01)
    assert runner.calls == [("scripts", ["lib/a.js"])]

    fake_watcher.emit(temp_dir / "docs" / "guide.md")
    drive(engine, lambda: len(runner.calls) == 2 and engine.coordinator.is_idle, clock=clock)
    assert runner.calls[1] == ("docs", ["docs/guide.md"])
    assert _messages(caplog).count("Done") == 2


def test_fatal_cycles_each_return_to_waiting(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    runner = ScriptedRunner({"scripts": "fatal"})
    engine = make_engine([make_target()], runner=runner)
    engine.start()
    for expected in (1, 2):
        fake_watcher.emit(temp_dir / "lib" / "a.js")
        drive(engine, lambda: engine.coordinator.fatals == expected and engine.coordinator.is_idle, clock=clock)

    messages = _messages(caplog)
    assert len(runner.calls) == 2
    assert len([m for m in messages if m.startswith("Fatal error")]) == 2
    # One at startup, then one per completed cycle.
    assert messages.count("Waiting...") == 3
    assert engine.step(0) is None


def test_repeated_interrupts_end_in_one_completion(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    runner = ScriptedRunner({"scripts": "block"})
    engine = make_engine([make_target(interrupt=True)], runner=runner)
    engine.start()
    for count, name in enumerate(("a.js", "b.js", "c.js"), start=1):
        runner.started.clear()
        fake_watcher.emit(temp_dir / "lib" / name)
        drive(engine, lambda: len(runner.calls) == count and runner.started.is_set(), clock=clock)

    runner.release.set()
    drive(engine, lambda: engine.coordinator.is_idle, clock=clock)

    messages = _messages(caplog)
    assert messages.count('Task "scripts" interrupted') == 2
    assert messages.count("Done") == 1
    assert engine.coordinator.interrupted == 2
    assert engine.coordinator.succeeded == 1
    assert runner.calls[-1] == ("scripts", ["lib/a.js", "lib/b.js", "lib/c.js"])
    assert runner.max_running == 1


def test_touch_during_debounce_of_slow_task_runs_once(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path,
) -> None:
    runner = ScriptedRunner({"scripts": "block"})
    engine = make_engine([make_target(debounce_delay=1.0)], runner=runner)
    engine.start()

    fake_watcher.emit(temp_dir / "lib" / "a.js")
    engine.step(0)
    clock.advance(0.5)
    engine.step(0)
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    engine.step(0)
    assert runner.calls == []

    drive(engine, runner.started.is_set, clock=clock)
    runner.release.set()
    drive(engine, lambda: engine.coordinator.is_idle, clock=clock)
    for _ in range(10):
        clock.advance(0.1)
        engine.step(0.01)
    assert runner.calls == [("scripts", ["lib/a.js"])]


def test_task_raising_system_exit_frees_the_slot(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    runner = ScriptedRunner({"scripts": "exit"})
    engine = make_engine([make_target()], runner=runner)
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, lambda: engine.coordinator.fatals == 1 and engine.coordinator.is_idle, clock=clock)
    assert "Fatal error: SystemExit: 3" in _messages(caplog)

    fake_watcher.emit(temp_dir / "lib" / "b.js")
    drive(engine, lambda: engine.coordinator.fatals == 2 and engine.coordinator.is_idle, clock=clock)
    assert len(runner.calls) == 2


def test_run_that_cannot_start_is_reported(
    make_engine: EngineFactory, make_target: Callable[..., WatchTarget], fake_watcher: FakeWatcher,
    clock: FakeClock, temp_dir: Path, caplog: pytest.LogCaptureFixture,
) -> None:
    engine = make_engine([make_target()])
    engine.dispatcher.start = MagicMock(side_effect=RuntimeError("no threads left"))  # type: ignore[method-assign]
    engine.start()
    fake_watcher.emit(temp_dir / "lib" / "a.js")
    drive(engine, lambda: engine.coordinator.fatals == 1 and engine.coordinator.is_idle, clock=clock)

    messages = _messages(caplog)
    assert "Fatal error: could not start run: no threads left" in messages
    assert "Done, with errors" in messages
    assert messages[-1] == "Waiting..."
