"""Task collaborators: the units of work run when a target changes.

The engine only relies on the :class:`TaskRunner` capability. A runner returns
normally on success, raises :class:`TaskFailedError` for an ordinary failure
and :class:`TaskFatalError` for an unrecoverable one, and must stop promptly
once its cancellation token is cancelled.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from typing import Callable, Dict, List, Optional, Protocol, TYPE_CHECKING

from taskwatch.exceptions import TaskFailedError, TaskFatalError
from taskwatch.models import WatchTarget

if TYPE_CHECKING:
    from taskwatch.dispatcher import CancellationToken

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

ENV_TARGET = "TASKWATCH_TARGET"
ENV_CHANGED_FILES = "TASKWATCH_CHANGED_FILES"

# Shell exit statuses for "not executable" and "command not found".
FATAL_EXIT_CODES = frozenset({126, 127})

TaskFunction = Callable[[List[str], "CancellationToken"], None]


class TaskRunner(Protocol):
    """Capability interface for running a target's work."""

    def run(self, target: WatchTarget, changed_files: List[str], token: CancellationToken) -> None:
        ...


class CommandTaskRunner:
    """Run a target's shell commands in child processes, one after another.

    Each command runs in the target's cwd with ``TASKWATCH_TARGET`` and
    ``TASKWATCH_CHANGED_FILES`` (``os.pathsep`` separated) added to its
    environment. On cancellation the child's process group is terminated, and
    killed if it has not exited after ``kill_timeout`` seconds; ``run`` only
    returns once the child is gone.

    Attributes:
        kill_timeout (float): Grace period between terminate and kill.
        poll_interval (float): How often the child is checked for exit.
    """

    def __init__(self, kill_timeout: float = 5.0, poll_interval: float = 0.05) -> None:
        if kill_timeout < 0:
            raise ValueError(f"kill_timeout must be non-negative, got {kill_timeout}")
        self.kill_timeout = kill_timeout
        self.poll_interval = poll_interval

    def run(self, target: WatchTarget, changed_files: List[str], token: CancellationToken) -> None:
        if not target.tasks:
            logger.warning(f"No tasks configured for target {target.name}")
            return
        env = os.environ.copy()
        env[ENV_TARGET] = target.name
        env[ENV_CHANGED_FILES] = os.pathsep.join(changed_files)

        for command in target.tasks:
            if token.cancelled:
                return
            logger.info(f'Running "{command}" for target {target.name}')
            returncode = self._run_command(command, target, env, token)
            if returncode is None:
                return
            if returncode in FATAL_EXIT_CODES:
                raise TaskFatalError(f'"{command}" could not be executed (exit code {returncode})')
            if returncode != 0:
                raise TaskFailedError(f'"{command}" exited with code {returncode}')

    def _run_command(
        self,
        command: str,
        target: WatchTarget,
        env: Dict[str, str],
        token: CancellationToken,
    ) -> Optional[int]:
        """Run one command. Returns its exit code, or None if it was cancelled."""
        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=str(target.cwd),
                env=env,
                start_new_session=(os.name != "nt"),
            )
        except OSError as e:
            raise TaskFatalError(f'Could not start "{command}": {e}') from e

        try:
            while proc.poll() is None:
                if token.wait(self.poll_interval):
                    self._terminate(proc)
                    return None
        except BaseException:
            self._terminate(proc)
            raise
        if token.cancelled:
            return None
        return proc.returncode

    def _terminate(self, proc: subprocess.Popen) -> None:
        """Terminate the child (and its process group) and reap it.

        The shell may exit on SIGTERM while a command it started keeps
        running, so on POSIX the whole group gets the grace period, not
        just the shell.
        """
        if proc.poll() is not None:
            return
        deadline = time.monotonic() + self.kill_timeout
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Task process {proc.pid} did not exit after {self.kill_timeout}s; killing it.")
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()
            return
        if os.name == "nt":
            return
        while self._group_alive(proc.pid):
            if time.monotonic() >= deadline:
                logger.warning(f"Processes of task group {proc.pid} survived the shell; killing them.")
                self._signal(proc, signal.SIGKILL)
                return
            time.sleep(self.poll_interval)

    @staticmethod
    def _group_alive(pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except OSError:
            return False
        return True

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name != "nt":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"Failed to signal process {proc.pid}: {e}")

    def __repr__(self) -> str:
        return f"<CommandTaskRunner kill_timeout={self.kill_timeout}>"


class CallableTaskRunner:
    """Run in-process Python callables registered per target name.

    Callables receive the changed files and the cancellation token. They cannot
    be forcibly stopped, so they should check ``token.cancelled`` during long
    work.
    """

    def __init__(self, tasks: Optional[Dict[str, TaskFunction]] = None) -> None:
        self._tasks: Dict[str, TaskFunction] = dict(tasks or {})

    def register(self, target_name: str, func: TaskFunction) -> None:
        self._tasks[target_name] = func

    def run(self, target: WatchTarget, changed_files: List[str], token: CancellationToken) -> None:
        func = self._tasks.get(target.name)
        if func is None:
            raise TaskFatalError(f"No task registered for target {target.name}")
        func(changed_files, token)

    def __repr__(self) -> str:
        return f"<CallableTaskRunner targets={sorted(self._tasks)}>"
