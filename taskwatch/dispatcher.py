"""Execution boundary between the run coordinator and the task collaborator.

The dispatcher invokes the collaborator exactly once per Run, on a worker
thread, and converts whatever happens into a :class:`RunOutcome`. Cancellation
is explicit: each Run carries a :class:`CancellationToken` that the coordinator
cancels and the collaborator observes.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional, Sequence, Set, TYPE_CHECKING

from taskwatch.exceptions import TaskFailedError, TaskFatalError
from taskwatch.models import Run, RunOutcome, WatchTarget

if TYPE_CHECKING:
    from taskwatch.tasks import TaskRunner

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class CancellationToken:
    """Thread-safe, idempotent cancellation flag with callbacks.

    Example:
        >>> token = CancellationToken()
        >>> token.cancel()
        True
        >>> token.cancel()
        False
        >>> token.cancelled
        True
    """

    __slots__ = ("_event", "_lock", "_callbacks")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Cancel the token.

        Returns:
            bool: True if this call cancelled the token, False if it already was.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.error("Error in cancellation callback", exc_info=True)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or until ``timeout`` elapses. Returns ``cancelled``."""
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback run on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def __repr__(self) -> str:
        return f"<CancellationToken cancelled={self.cancelled}>"


class TaskDispatcher:
    """Run tasks for sealed batches and report their outcomes.

    Attributes:
        runner (TaskRunner): The task collaborator.
    """

    def __init__(self, runner: TaskRunner) -> None:
        self.runner = runner
        self._threads: Set[threading.Thread] = set()
        self._lock = threading.Lock()

    def execute(self, target: WatchTarget, changed_paths: Sequence[str], token: CancellationToken) -> RunOutcome:
        """Invoke the collaborator once and classify the result.

        Any result observed after the token was cancelled is reported as
        interrupted: an interrupted run is neither a success nor a failure.

        Args:
            target (WatchTarget): The target whose tasks should run.
            changed_paths (Sequence[str]): Changed files relative to the target's cwd.
            token (CancellationToken): Cancelled when the run must stop.

        Returns:
            RunOutcome: succeeded, failed (possibly fatal) or interrupted.
        """
        if token.cancelled:
            return RunOutcome.interrupted()
        try:
            self.runner.run(target, list(changed_paths), token)
        except TaskFatalError as e:
            if token.cancelled:
                return RunOutcome.interrupted()
            return RunOutcome.failed(str(e) or "fatal task error", fatal=True)
        except TaskFailedError as e:
            if token.cancelled:
                return RunOutcome.interrupted()
            return RunOutcome.failed(str(e) or "task failed")
        except Exception as e:
            if token.cancelled:
                return RunOutcome.interrupted()
            logger.error(f"Unexpected error running tasks for {target.name}: {e}", exc_info=True)
            return RunOutcome.failed(f"{type(e).__name__}: {e}", fatal=True)
        if token.cancelled:
            return RunOutcome.interrupted()
        return RunOutcome.succeeded()

    def start(
        self,
        run: Run,
        changed_paths: Sequence[str],
        on_done: Callable[[Run, RunOutcome], None],
    ) -> threading.Thread:
        """Execute a run on a worker thread and report the outcome via ``on_done``."""

        def _work() -> None:
            started = time.monotonic()
            try:
                outcome = self.execute(run.target, changed_paths, run.token)
            except BaseException as e:
                # SystemExit or KeyboardInterrupt from an in-process task must still free the slot.
                logger.error(f"Task for {run.target.name} raised {type(e).__name__}: {e}")
                outcome = RunOutcome.failed(f"{type(e).__name__}: {e}", fatal=True)
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"{run!r} finished as {outcome.state.value} in {time.monotonic() - started:.3f}s")
            try:
                on_done(run, outcome)
            except Exception:
                logger.error(f"Failed to report outcome of {run!r}", exc_info=True)
            finally:
                with self._lock:
                    self._threads.discard(threading.current_thread())

        thread = threading.Thread(target=_work, name=f"TaskRun-{run.target.name}-{run.id}")
        thread.daemon = True
        with self._lock:
            self._threads.add(thread)
        thread.start()
        return thread

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for all worker threads. Returns True if none is left alive."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        with self._lock:
            return not any(t.is_alive() for t in self._threads)

    @property
    def active_workers(self) -> int:
        with self._lock:
            return sum(1 for t in self._threads if t.is_alive())

    def __repr__(self) -> str:
        return f"<TaskDispatcher runner={type(self.runner).__name__} workers={self.active_workers}>"
