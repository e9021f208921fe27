"""Run lifecycle state machine.

Responsibility:
    The coordinator owns every Run from the moment a sealed batch reaches it
    until the Run is terminal. It decides whether a new batch starts a Run,
    preempts (interrupts) the active Run of the same target, or waits in the
    pending slot of its target-group.

Key Invariants:
    - At most one Run is ``running`` or ``interrupting`` per target-group. With
      ``concurrent=False`` all targets share one group (a single global
      execution slot); otherwise every target is its own group.
    - A slot is released only when the dispatcher reports a terminal outcome,
      so a superseding Run never overlaps the Run it replaces.
    - Batches that arrive while a Run is busy are merged into one pending
      batch per target; no change is dropped. The changes of an interrupted
      Run are carried into the Run that supersedes it.
    - When several targets are pending, the one declared first starts first.
    - The coordinator is driven from a single control thread and starts no
      threads of its own.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from taskwatch.dispatcher import CancellationToken
from taskwatch.models import ChangeBatch, Run, RunOutcome, RunState, WatchTarget

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

SHARED_GROUP = "*"


@dataclass
class _GroupSlot:
    """Execution slot of one target-group."""

    name: str
    active: Optional[Run] = None
    pending: Dict[str, Run] = field(default_factory=dict)

    @property
    def idle(self) -> bool:
        return self.active is None and not self.pending


class RunCoordinator:
    """Serialize and preempt task runs per target-group.

    Attributes:
        targets (List[WatchTarget]): Targets in declaration order.
        concurrent (bool): One execution slot per target instead of a shared one.
        succeeded (int): Runs that ended successfully.
        failed (int): Runs that ended in failure (fatal included).
        interrupted (int): Runs abandoned because of an interrupt.
        fatals (int): Runs that ended with a fatal failure.
        consecutive_fatals (int): Fatal outcomes since the last non-fatal completion.
    """

    def __init__(
        self,
        targets: Sequence[WatchTarget],
        start_run: Callable[[Run], None],
        concurrent: bool = False,
    ) -> None:
        self.targets: List[WatchTarget] = list(targets)
        self.concurrent = concurrent
        self._start_run = start_run
        self._order: Dict[str, int] = {t.name: i for i, t in enumerate(self.targets)}
        self._slots: Dict[str, _GroupSlot] = {}
        for target in self.targets:
            group = self.group_of(target)
            self._slots.setdefault(group, _GroupSlot(group))

        self.succeeded = 0
        self.failed = 0
        self.interrupted = 0
        self.fatals = 0
        self.consecutive_fatals = 0

    def group_of(self, target: WatchTarget) -> str:
        return target.name if self.concurrent else SHARED_GROUP

    def submit(self, batch: ChangeBatch) -> Optional[Run]:
        """Hand a sealed batch to the coordinator.

        Args:
            batch (ChangeBatch): A sealed batch for one target.

        Returns:
            Optional[Run]: The Run started for this batch, or None if the batch
            was queued (possibly after interrupting the active Run).
        """
        if not batch.sealed:
            raise ValueError("Only sealed batches can be submitted")
        target = batch.target
        if target.name not in self._order:
            raise KeyError(f"Unknown target: {target.name}")
        slot = self._slots[self.group_of(target)]
        active = slot.active

        if active is None:
            return self._start(slot, self._new_run(slot, batch))

        queued = slot.pending.get(target.name)
        if active.target.name == target.name and target.can_interrupt:
            if active.state is RunState.RUNNING:
                logger.debug(f"Interrupting {active!r} for newer changes")
                active.state = RunState.INTERRUPTING
                active.token.cancel()
                # Carry the abandoned changes forward, oldest first.
                if queued is None:
                    queued = self._enqueue(slot, active.batch, None)
                else:
                    queued.batch = active.batch.merge(queued.batch)
        self._enqueue(slot, batch, queued)
        return None

    def _enqueue(self, slot: _GroupSlot, batch: ChangeBatch, queued: Optional[Run]) -> Run:
        if queued is None:
            queued = self._new_run(slot, batch)
            slot.pending[batch.target.name] = queued
            logger.debug(f"Queued {queued!r}")
        else:
            queued.batch = queued.batch.merge(batch)
            logger.debug(f"Merged {len(batch)} path(s) into {queued!r}")
        return queued

    def _new_run(self, slot: _GroupSlot, batch: ChangeBatch) -> Run:
        return Run(target=batch.target, batch=batch, group=slot.name, token=CancellationToken())

    def _start(self, slot: _GroupSlot, run: Run) -> Run:
        run.state = RunState.RUNNING
        run.started_at = time.time()
        slot.active = run
        logger.debug(f"Starting {run!r}")
        try:
            self._start_run(run)
        except Exception as e:
            logger.error(f"Failed to start {run!r}: {e}", exc_info=True)
            self.on_outcome(run, RunOutcome.failed(f"could not start run: {e}", fatal=True))
        return run

    def on_outcome(self, run: Run, outcome: RunOutcome) -> Optional[Run]:
        """Record a Run's terminal outcome, release its slot and start the next Run.

        Reporting an outcome for a Run that is already terminal is a no-op.

        Args:
            run (Run): The finished Run.
            outcome (RunOutcome): The dispatcher's verdict.

        Returns:
            Optional[Run]: The next Run started in the freed slot, if any.
        """
        if run.state.is_terminal:
            return None
        slot = self._slots[run.group]
        if slot.active is not run:
            logger.warning(f"Outcome reported for {run!r}, which does not hold its slot")
            return None

        # A run cancelled while finishing still counts as interrupted.
        if run.state is RunState.INTERRUPTING and outcome.state is not RunState.INTERRUPTED:
            outcome = RunOutcome.interrupted()
        run.state = outcome.state
        run.outcome = outcome
        run.finished_at = time.time()
        slot.active = None

        if outcome.state is RunState.SUCCEEDED:
            self.succeeded += 1
            self.consecutive_fatals = 0
        elif outcome.state is RunState.FAILED:
            self.failed += 1
            if outcome.fatal:
                self.fatals += 1
                self.consecutive_fatals += 1
            else:
                self.consecutive_fatals = 0
        else:
            self.interrupted += 1
        logger.debug(f"{run!r} reached {outcome.state.value}")

        return self._start_next(slot)

    def _start_next(self, slot: _GroupSlot) -> Optional[Run]:
        if slot.active is not None or not slot.pending:
            return None
        name = min(slot.pending, key=self._order.__getitem__)
        return self._start(slot, slot.pending.pop(name))

    def cancel_active(self) -> List[Run]:
        """Cancel every running Run (operator interrupt).

        Returns:
            List[Run]: Runs that were cancelled by this call. Runs that are
            already interrupting or terminal are left untouched.
        """
        cancelled = []
        for slot in self._slots.values():
            run = slot.active
            if run is not None and run.state is RunState.RUNNING:
                run.state = RunState.INTERRUPTING
                run.token.cancel()
                cancelled.append(run)
        return cancelled

    def drop_pending(self) -> int:
        """Discard all queued Runs. Returns how many were dropped."""
        count = 0
        for slot in self._slots.values():
            count += len(slot.pending)
            slot.pending.clear()
        return count

    @property
    def is_idle(self) -> bool:
        return all(slot.idle for slot in self._slots.values())

    def active_runs(self) -> List[Run]:
        return [slot.active for slot in self._slots.values() if slot.active is not None]

    def pending_runs(self) -> List[Run]:
        runs = [run for slot in self._slots.values() for run in slot.pending.values()]
        return sorted(runs, key=lambda r: self._order[r.target.name])

    def pending_count(self) -> int:
        return sum(len(slot.pending) for slot in self._slots.values())

    def __repr__(self) -> str:
        return (
            f"<RunCoordinator groups={len(self._slots)} active={len(self.active_runs())} "
            f"pending={self.pending_count()}>"
        )
