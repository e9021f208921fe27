"""Lifecycle controller: the single control loop of the watch engine.

Responsibility:
    The engine wires the watcher, the target resolver, the debounce
    accumulator, the run coordinator and the dispatcher together, and owns
    the operator-facing log lines.

Design:
    - **One control thread**: watchdog observer threads and dispatcher worker
      threads never touch engine state. They post messages to a queue which
      the control thread consumes. Coordinator and accumulator state are only
      read and written by the control thread.
    - **Deadline-driven**: the loop sleeps until a message arrives or the next
      debounce deadline passes, whichever comes first. There is no timer
      thread per target.
    - **Explicit exit**: :meth:`WatchEngine.run` returns an
      :class:`EngineExit` telling the caller whether to stop, reload the
      configuration or re-execute the process.

Key Invariants:
    - Nothing escapes the control loop except an explicit stop: task failures,
      fatal task errors and watcher problems are logged and the engine keeps
      watching (unless the consecutive-fatal policy trips).
    - On exit every active run is cancelled and its worker is joined, so no
      task process outlives the engine.
"""

from __future__ import annotations

import logging
import os
import queue
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, TYPE_CHECKING

from taskwatch.coordinator import RunCoordinator
from taskwatch.debounce import DebounceAccumulator, format_timestamp
from taskwatch.dispatcher import TaskDispatcher
from taskwatch.exceptions import EngineAlreadyRunningError, EngineNotRunningError
from taskwatch.models import ChangeBatch, ChangeEvent, Run, RunOutcome, RunState, WatchTarget
from taskwatch.resolver import TargetResolver, relative_to_cwd
from taskwatch.tasks import CommandTaskRunner, TaskRunner
from taskwatch.watcher import PathWatcher

if TYPE_CHECKING:
    from taskwatch.config import Config

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_HEALTH_INTERVAL = 5.0
DEFAULT_SHUTDOWN_TIMEOUT = 10.0

_EVENT = "event"
_OUTCOME = "outcome"
_INTERRUPT = "interrupt"
_STOP = "stop"


class EngineExit(str, Enum):
    """Why :meth:`WatchEngine.run` returned."""

    STOPPED = "stopped"
    RELOAD = "reload"
    RESTART = "restart"
    FATAL = "fatal"


class ChangeSource(Protocol):
    """What the engine needs from a file watcher."""

    def start(self, paths: Iterable[Path], callback: Callable[[ChangeEvent], None]) -> None:
        ...

    def stop(self) -> None:
        ...

    def check_health(self) -> bool:
        ...


class WatchEngine:
    """Watch files, debounce changes and run each target's tasks.

    Attributes:
        targets (List[WatchTarget]): Targets in declaration order.
        resolver (TargetResolver): Maps paths to targets.
        accumulator (DebounceAccumulator): Open batches per target.
        coordinator (RunCoordinator): Run state machine.
        dispatcher (TaskDispatcher): Executes runs on worker threads.
        watcher (ChangeSource): Source of change events.
        max_consecutive_fatals (int): Stop after this many fatal runs in a row; 0 disables.
        force_restart (bool): Return ``restart`` instead of ``reload`` on configuration changes.
        config_path (Optional[Path]): Configuration file whose changes trigger a reload.

    Example:
        >>> engine = WatchEngine([WatchTarget("tests", ("src/**/*.py",), ("pytest -q",))])  # doctest: +SKIP
        >>> engine.run()  # doctest: +SKIP
        <EngineExit.STOPPED: 'stopped'>
    """

    def __init__(
        self,
        targets: Sequence[WatchTarget],
        runner: Optional[TaskRunner] = None,
        watcher: Optional[ChangeSource] = None,
        concurrent: bool = False,
        max_consecutive_fatals: int = 0,
        force_restart: bool = False,
        config_path: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        if not targets:
            raise ValueError("At least one target is required")
        if max_consecutive_fatals < 0:
            raise ValueError(f"max_consecutive_fatals must be non-negative, got {max_consecutive_fatals}")
        self.targets: List[WatchTarget] = list(targets)
        self.resolver = TargetResolver(self.targets)
        self.accumulator = DebounceAccumulator(self.targets)
        self.dispatcher = TaskDispatcher(runner if runner is not None else CommandTaskRunner())
        self.coordinator = RunCoordinator(self.targets, self._start_run, concurrent=concurrent)
        self.watcher: ChangeSource = watcher if watcher is not None else PathWatcher()
        self.max_consecutive_fatals = max_consecutive_fatals
        self.force_restart = force_restart
        self.config_path = Path(os.path.abspath(config_path)) if config_path is not None else None
        self.health_interval = health_interval
        self.shutdown_timeout = shutdown_timeout

        self._clock = clock
        self._queue: "queue.SimpleQueue[Tuple[str, Any]]" = queue.SimpleQueue()
        self._started = False
        self._closed = False
        self._exit: Optional[EngineExit] = None
        self._next_health_check = 0.0
        self.start_time = 0.0

    @classmethod
    def from_config(
        cls,
        config: Config,
        runner: Optional[TaskRunner] = None,
        watcher: Optional[ChangeSource] = None,
    ) -> "WatchEngine":
        """Build an engine from a loaded :class:`~taskwatch.config.Config`."""
        return cls(
            config.targets,
            runner=runner if runner is not None else CommandTaskRunner(kill_timeout=config.kill_timeout),
            watcher=watcher if watcher is not None else PathWatcher(poll_interval=config.poll_interval),
            concurrent=config.concurrent,
            max_consecutive_fatals=config.max_consecutive_fatals,
            force_restart=config.force_restart,
            config_path=Path(config.config_path) if config.config_path else None,
            shutdown_timeout=config.kill_timeout + DEFAULT_SHUTDOWN_TIMEOUT,
        )

    # Thread-safe entry points. These only post messages.

    def post_event(self, event: ChangeEvent) -> None:
        """Queue a change event. Called from watcher threads."""
        self._queue.put((_EVENT, event))

    def request_interrupt(self) -> None:
        """Cancel the active run(s), or stop the engine if nothing is running.

        A second request while the cancelled runs are still winding down stops
        the engine. Safe to call from a signal handler.
        """
        self._queue.put((_INTERRUPT, None))

    def request_stop(self) -> None:
        """Stop the engine. Safe to call from a signal handler."""
        self._queue.put((_STOP, None))

    def _post_outcome(self, run: Run, outcome: RunOutcome) -> None:
        self._queue.put((_OUTCOME, (run, outcome)))

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._started and not self._closed

    def watch_roots(self) -> List[Path]:
        """Directories handed to the watcher: target roots plus the config file's directory."""
        roots = self.resolver.watch_roots()
        if self.config_path is not None:
            config_dir = self.config_path.parent
            if not any(config_dir == root or root in config_dir.parents for root in roots):
                roots.append(config_dir)
        return roots

    def start(self) -> None:
        """Start watching and submit ``at_begin`` runs.

        Raises:
            EngineAlreadyRunningError: If the engine was already started.
        """
        if self._started:
            raise EngineAlreadyRunningError("WatchEngine can only be started once")
        self._started = True
        self.start_time = time.monotonic()
        roots = self.watch_roots()
        self.watcher.start(roots, self.post_event)
        logger.info(f"Watching {len(self.targets)} target(s) under {len(roots)} root(s)")
        self._next_health_check = self._clock() + self.health_interval

        for batch in self.accumulator.begin():
            logger.debug(f"Running {batch.target.name} at startup")
            self.coordinator.submit(batch)
        if self.coordinator.is_idle:
            logger.info("Waiting...")

    def run(self) -> EngineExit:
        """Start the engine and process messages until it exits.

        Returns:
            EngineExit: ``stopped``, ``reload``, ``restart`` or ``fatal``.
        """
        self.start()
        try:
            while True:
                result = self.step(timeout=self.health_interval)
                if result is not None:
                    return result
        finally:
            self.close()

    def step(self, timeout: Optional[float] = None) -> Optional[EngineExit]:
        """Run one iteration of the control loop.

        Waits for a message for at most ``timeout`` seconds, or less if a
        debounce deadline is closer, then handles every queued message and
        seals the batches that are due.

        Args:
            timeout (Optional[float]): Upper bound on the wait. None waits
                until a message arrives or a deadline passes.

        Returns:
            Optional[EngineExit]: The exit reason once the engine is done, else None.

        Raises:
            EngineNotRunningError: If the engine was not started or is closed.
        """
        if not self._started or self._closed:
            raise EngineNotRunningError("WatchEngine is not running")
        if self._exit is not None:
            return self._exit

        wait = self.accumulator.seconds_until_due(self._clock())
        if timeout is not None:
            wait = timeout if wait is None else min(wait, timeout)
        try:
            message = self._queue.get(timeout=wait)
        except queue.Empty:
            message = None

        while message is not None and self._exit is None:
            self._handle(*message)
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                message = None

        if self._exit is None:
            self._seal_due()
        if self._exit is None:
            self._check_health()
        return self._exit

    def close(self) -> None:
        """Cancel runs, stop the watcher and wait for workers. Idempotent."""
        if self._closed:
            return
        self._closed = True
        cancelled = self.coordinator.cancel_active()
        dropped = self.coordinator.drop_pending()
        if cancelled or dropped:
            logger.info(f"Shutting down: cancelled {len(cancelled)} run(s), dropped {dropped} queued run(s)")
        try:
            self.watcher.stop()
        except Exception as e:
            logger.error(f"Error stopping watcher: {e}")
        if not self.dispatcher.join(self.shutdown_timeout):
            logger.warning(f"Task workers still running after {self.shutdown_timeout}s")
        stats = self.get_statistics()
        logger.debug(f"Engine statistics: {stats}")

    def _finish(self, reason: EngineExit) -> None:
        if self._exit is None:
            self._exit = reason
            logger.debug(f"Engine exiting: {reason.value}")

    # Message handling (control thread only)

    def _handle(self, kind: str, payload: Any) -> None:
        if kind == _EVENT:
            self._on_event(payload)
        elif kind == _OUTCOME:
            run, outcome = payload
            self._on_outcome(run, outcome)
        elif kind == _INTERRUPT:
            self._on_interrupt()
        elif kind == _STOP:
            self._finish(EngineExit.STOPPED)
        else:
            logger.error(f"Unknown engine message: {kind}")

    def _on_event(self, event: ChangeEvent) -> None:
        if self.config_path is not None and event.path == self.config_path:
            logger.info(f'Configuration file "{self.config_path.name}" {event.kind.value}, reloading')
            self._finish(EngineExit.RESTART if self.force_restart else EngineExit.RELOAD)
            return
        now = self._clock()
        for target in self.resolver.targets_for(event.path, event.kind):
            self.accumulator.add(target, event, now=now)

    def _seal_due(self) -> None:
        for batch in self.accumulator.seal_due(self._clock()):
            self._submit(batch)
            if self._exit is not None:
                return

    def _submit(self, batch: ChangeBatch) -> None:
        target = batch.target
        for rel, kind in sorted((relative_to_cwd(path, target.cwd), kind) for path, kind in batch):
            logger.info(f'File "{rel}" {kind.value}')
        if target.reload:
            logger.info(f"Target {target.name} changed, reloading")
            self._finish(EngineExit.RESTART if self.force_restart else EngineExit.RELOAD)
            return
        self.coordinator.submit(batch)

    def _start_run(self, run: Run) -> None:
        changed = self.resolver.relative_paths(run.target, run.batch)
        try:
            self.dispatcher.start(run, changed, self._post_outcome)
        except Exception as e:
            # Same path as an outcome posted by a worker.
            logger.error(f"Failed to start {run!r}: {e}", exc_info=True)
            self._post_outcome(run, RunOutcome.failed(f"could not start run: {e}", fatal=True))

    def _on_outcome(self, run: Run, reported: RunOutcome) -> None:
        if run.state.is_terminal:
            return
        target = run.target
        # The coordinator may rewrite the outcome (interrupting runs end as interrupted).
        self.coordinator.on_outcome(run, reported)
        outcome = run.outcome
        if outcome is None:
            return

        if outcome.state is RunState.INTERRUPTED:
            logger.info(f'Task "{target.name}" interrupted')
        else:
            if outcome.state is RunState.SUCCEEDED:
                logger.info("Done")
            elif outcome.fatal:
                logger.error(f"Fatal error: {outcome.reason}")
                logger.error("Done, with errors")
            else:
                logger.error(f'Task "{target.name}" failed: {outcome.reason}')
                logger.error("Done, with errors")
            elapsed = (run.finished_at or 0.0) - (run.started_at or 0.0)
            sealed = format_timestamp(run.batch.sealed_at or time.time(), target.date_format)
            logger.info(f"Completed in {elapsed:.3f}s (changes sealed {sealed})")

        if 0 < self.max_consecutive_fatals <= self.coordinator.consecutive_fatals:
            logger.error(f"Stopping after {self.coordinator.consecutive_fatals} consecutive fatal error(s)")
            self._finish(EngineExit.FATAL)
            return
        if self.coordinator.is_idle:
            logger.info("Waiting...")

    def _on_interrupt(self) -> None:
        cancelled = self.coordinator.cancel_active()
        if not cancelled:
            logger.info("Interrupt received while idle, stopping")
            self._finish(EngineExit.STOPPED)
            return
        dropped = self.coordinator.drop_pending()
        names = ", ".join(run.target.name for run in cancelled)
        logger.info(f"Interrupting {names} (dropped {dropped} queued run(s)); interrupt again to quit")

    def _check_health(self) -> None:
        now = self._clock()
        if now < self._next_health_check:
            return
        self._next_health_check = now + self.health_interval
        try:
            if not self.watcher.check_health():
                logger.warning("File watcher is unhealthy; changes may be missed")
        except Exception as e:
            logger.error(f"Error checking watcher health: {e}")

    def get_statistics(self) -> Dict[str, Any]:
        """Return usage statistics.

        Returns:
            Dict[str, Any]: Event, batch and run counters plus uptime.
        """
        return {
            "events": self.accumulator.total_events,
            "batches": self.accumulator.total_batches,
            "runs_succeeded": self.coordinator.succeeded,
            "runs_failed": self.coordinator.failed,
            "runs_interrupted": self.coordinator.interrupted,
            "fatal_errors": self.coordinator.fatals,
            "pending": self.coordinator.pending_count(),
            "uptime": time.monotonic() - self.start_time if self._started else 0.0,
        }

    def __repr__(self) -> str:
        return f"<WatchEngine targets={[t.name for t in self.targets]} running={self.running}>"
