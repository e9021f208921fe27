"""Per-target debouncing of change events into sealed batches.

Design:
    - **Wait-for-quiet**: every event for a target pushes that target's
      deadline to ``now + debounce_delay``. A batch is sealed only once a full
      window passes without a new event (debounce, not throttle).
    - **Clock-driven**: the accumulator never sleeps or starts threads. The
      control loop asks for the next deadline, waits for at most that long, and
      then calls :meth:`DebounceAccumulator.seal_due`. This keeps the
      accumulator single-threaded and deterministic under test.
    - **at_begin**: targets configured to fire at startup get an immediately
      sealed, empty batch.
    - **Settle window**: a batch is never due sooner than ``MIN_SETTLE_DELAY``
      after its last event, even with ``debounce_delay = 0``. Watchdog delivers
      the events of one write burst one at a time, and a zero deadline would
      let the control loop seal the first event before the rest arrive.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from taskwatch.models import ChangeBatch, ChangeEvent, WatchTarget

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

MIN_SETTLE_DELAY = 0.02


def format_timestamp(timestamp: float, date_format: str) -> str:
    """Format a batch timestamp for display.

    This is presentation only; it has no effect on scheduling.

    Args:
        timestamp (float): Unix timestamp (e.g. ``ChangeBatch.sealed_at``).
        date_format (str): A ``strftime`` format string.

    Returns:
        str: The formatted local time.

    Example:
        >>> format_timestamp(0.0, "%Y")[:2]
        '19'
    """
    return datetime.fromtimestamp(timestamp).strftime(date_format)


@dataclass
class _OpenBatch:
    batch: ChangeBatch
    deadline: float
    events: int = 0


class DebounceAccumulator:
    """Collect change events per target and seal one batch per quiet period.

    Attributes:
        targets (List[WatchTarget]): Known targets, in declaration order.
        total_events (int): Number of events folded into batches.
        total_batches (int): Number of batches sealed.
    """

    def __init__(self, targets: Sequence[WatchTarget]) -> None:
        self.targets: List[WatchTarget] = list(targets)
        self._order: Dict[str, int] = {t.name: i for i, t in enumerate(self.targets)}
        self._open: Dict[str, _OpenBatch] = {}
        self.total_events = 0
        self.total_batches = 0

    def add(self, target: WatchTarget, event: ChangeEvent, now: Optional[float] = None) -> ChangeBatch:
        """Fold an event into the target's open batch and reset its timer.

        Args:
            target (WatchTarget): The target the event was resolved to.
            event (ChangeEvent): The change to record.
            now (Optional[float]): Current monotonic time; defaults to ``time.monotonic()``.

        Returns:
            ChangeBatch: The (still open) batch the event was added to.
        """
        if target.name not in self._order:
            raise KeyError(f"Unknown target: {target.name}")
        now = time.monotonic() if now is None else now
        entry = self._open.get(target.name)
        if entry is None:
            entry = _OpenBatch(ChangeBatch(target=target, opened_at=time.time()), deadline=now)
            self._open[target.name] = entry
        entry.batch.add(event)
        entry.events += 1
        entry.deadline = now + max(target.debounce_delay, MIN_SETTLE_DELAY)
        self.total_events += 1
        return entry.batch

    def begin(self) -> List[ChangeBatch]:
        """Return immediately sealed empty batches for every ``at_begin`` target."""
        sealed_at = time.time()
        batches = [
            ChangeBatch(target=t, opened_at=sealed_at).seal(sealed_at)
            for t in self.targets
            if t.at_begin
        ]
        self.total_batches += len(batches)
        return batches

    def seal_due(self, now: Optional[float] = None) -> List[ChangeBatch]:
        """Seal and return every batch whose quiet period has elapsed.

        Batches are returned in target declaration order so that ties between
        targets that become ready together are broken deterministically.

        Args:
            now (Optional[float]): Current monotonic time.

        Returns:
            List[ChangeBatch]: Newly sealed batches (possibly empty).
        """
        now = time.monotonic() if now is None else now
        due = [name for name, entry in self._open.items() if entry.deadline <= now]
        return self._seal(due)

    def flush_all(self) -> List[ChangeBatch]:
        """Seal every open batch regardless of its deadline."""
        return self._seal(list(self._open))

    def _seal(self, names: List[str]) -> List[ChangeBatch]:
        sealed: List[ChangeBatch] = []
        sealed_at = time.time()
        for name in sorted(names, key=self._order.__getitem__):
            entry = self._open.pop(name)
            if entry.events > 1 and logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Coalesced {entry.events} events into {len(entry.batch)} path(s) for {name}")
            sealed.append(entry.batch.seal(sealed_at))
        self.total_batches += len(sealed)
        return sealed

    def next_deadline(self) -> Optional[float]:
        """Return the earliest open deadline (monotonic), or None if nothing is open."""
        if not self._open:
            return None
        return min(entry.deadline for entry in self._open.values())

    def seconds_until_due(self, now: Optional[float] = None) -> Optional[float]:
        """Return how long the caller may wait before the next batch is due."""
        deadline = self.next_deadline()
        if deadline is None:
            return None
        now = time.monotonic() if now is None else now
        return max(0.0, deadline - now)

    def open_batch(self, target_name: str) -> Optional[ChangeBatch]:
        entry = self._open.get(target_name)
        return entry.batch if entry else None

    def __len__(self) -> int:
        return len(self._open)

    def __repr__(self) -> str:
        return f"<DebounceAccumulator open={sorted(self._open)}>"
