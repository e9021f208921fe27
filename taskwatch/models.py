"""Data models shared by the watch engine components."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple, TYPE_CHECKING

from taskwatch.exceptions import BatchSealedError

if TYPE_CHECKING:
    from taskwatch.dispatcher import CancellationToken

DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ChangeKind(str, Enum):
    """Kinds of file changes. The value is the word used in log lines."""

    ADDED = "added"
    CHANGED = "changed"
    DELETED = "deleted"


ALL_KINDS: FrozenSet[ChangeKind] = frozenset(ChangeKind)


class RunState(str, Enum):
    """Lifecycle states of a Run."""

    QUEUED = "queued"
    RUNNING = "running"
    INTERRUPTING = "interrupting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.FAILED, RunState.INTERRUPTED)


@dataclass(frozen=True)
class WatchTarget:
    """A named set of glob patterns and the tasks to run when they change.

    Attributes:
        name: Target name as declared in the configuration.
        patterns: Glob patterns relative to ``cwd``. A leading ``!`` negates.
        tasks: Shell commands run (in order) when the target changes.
        cwd: Absolute directory patterns and reported paths are relative to.
        debounce_delay: Quiet period in seconds before a batch is sealed.
        interrupt: Whether a new batch interrupts a running task.
        spawn: Whether tasks run in a child process that can be interrupted.
        at_begin: Run the tasks once at startup, before any change.
        date_format: strftime format used when echoing batch timestamps.
        events: Change kinds that trigger this target.
        reload: A change to this target reloads the configuration.
        dot: Let wildcards match names starting with a dot.
    """

    name: str
    patterns: Tuple[str, ...]
    tasks: Tuple[str, ...] = ()
    cwd: Path = field(default_factory=Path.cwd)
    debounce_delay: float = 0.5
    interrupt: bool = False
    spawn: bool = True
    at_begin: bool = False
    date_format: str = DEFAULT_DATE_FORMAT
    events: FrozenSet[ChangeKind] = ALL_KINDS
    reload: bool = False
    dot: bool = False

    def __post_init__(self) -> None:
        if not self.cwd.is_absolute():
            raise ValueError(f"cwd must be absolute: {self.cwd}")
        if self.debounce_delay < 0:
            raise ValueError(f"debounce_delay must be non-negative, got {self.debounce_delay}")

    @property
    def can_interrupt(self) -> bool:
        """Whether a running task of this target may be cancelled by new changes."""
        return self.interrupt and self.spawn


@dataclass(frozen=True)
class ChangeEvent:
    """A single normalized filesystem change."""

    path: Path
    kind: ChangeKind
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.path.is_absolute():
            raise ValueError(f"path must be absolute: {self.path}")


def _merge_kind(existing: ChangeKind, new: ChangeKind) -> ChangeKind:
    # A file created and then written within one batch is still new.
    if existing is ChangeKind.ADDED and new is ChangeKind.CHANGED:
        return existing
    # Deleted then recreated (atomic save) is a change.
    if existing is ChangeKind.DELETED and new is ChangeKind.ADDED:
        return ChangeKind.CHANGED
    return new


@dataclass
class ChangeBatch:
    """The deduplicated set of paths that changed for one target in one quiet period.

    The batch accepts new paths until it is sealed. After ``seal()`` it is
    immutable and ready to be handed to the run coordinator.
    """

    target: WatchTarget
    opened_at: float = field(default_factory=time.time)
    changes: Dict[Path, ChangeKind] = field(default_factory=dict)
    sealed_at: Optional[float] = None

    @property
    def sealed(self) -> bool:
        return self.sealed_at is not None

    @property
    def paths(self) -> List[Path]:
        return list(self.changes)

    def add(self, event: ChangeEvent) -> None:
        if self.sealed:
            raise BatchSealedError(f"Batch for target '{self.target.name}' is sealed")
        existing = self.changes.get(event.path)
        self.changes[event.path] = event.kind if existing is None else _merge_kind(existing, event.kind)

    def seal(self, now: Optional[float] = None) -> "ChangeBatch":
        if not self.sealed:
            self.sealed_at = time.time() if now is None else now
        return self

    def merge(self, other: "ChangeBatch") -> "ChangeBatch":
        """Return a new sealed batch holding the union of both batches' changes."""
        if other.target.name != self.target.name:
            raise ValueError(
                f"Cannot merge batches of different targets: {self.target.name} / {other.target.name}"
            )
        merged = ChangeBatch(target=self.target, opened_at=min(self.opened_at, other.opened_at))
        for path, kind in itertools.chain(self.changes.items(), other.changes.items()):
            existing = merged.changes.get(path)
            merged.changes[path] = kind if existing is None else _merge_kind(existing, kind)
        sealed_times = [t for t in (self.sealed_at, other.sealed_at) if t is not None]
        merged.sealed_at = max(sealed_times) if sealed_times else time.time()
        return merged

    def __len__(self) -> int:
        return len(self.changes)

    def __iter__(self) -> Iterator[Tuple[Path, ChangeKind]]:
        return iter(self.changes.items())


@dataclass(frozen=True)
class RunOutcome:
    """Terminal result of a Run as reported by the dispatcher."""

    state: RunState
    reason: Optional[str] = None
    fatal: bool = False

    def __post_init__(self) -> None:
        if not self.state.is_terminal:
            raise ValueError(f"Outcome state must be terminal, got {self.state.value}")

    @classmethod
    def succeeded(cls) -> "RunOutcome":
        return cls(RunState.SUCCEEDED)

    @classmethod
    def failed(cls, reason: str, fatal: bool = False) -> "RunOutcome":
        return cls(RunState.FAILED, reason=reason, fatal=fatal)

    @classmethod
    def interrupted(cls) -> "RunOutcome":
        return cls(RunState.INTERRUPTED)


_run_ids = itertools.count(1)


@dataclass
class Run:
    """One execution of a target's tasks for one sealed batch."""

    target: WatchTarget
    batch: ChangeBatch
    group: str
    token: "CancellationToken"
    state: RunState = RunState.QUEUED
    id: int = field(default_factory=lambda: next(_run_ids))
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    outcome: Optional[RunOutcome] = None

    @property
    def active(self) -> bool:
        return self.state in (RunState.RUNNING, RunState.INTERRUPTING)

    def __repr__(self) -> str:
        return f"<Run #{self.id} target={self.target.name} state={self.state.value} files={len(self.batch)}>"
