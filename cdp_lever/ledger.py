"""
ledger.py - Transactional boundary for top-level operations

OperationLedger is the all-or-nothing substrate every engine operation runs
inside. It is the only place that decides whether the effects of an operation
persist.

Key responsibilities:
    - Serializes top-level operations behind a single-writer re-entrant lock
    - Snapshots every registered participant before the outermost operation
    - Restores every participant if the operation raises, then re-raises
    - Records an OperationRecord for every top-level attempt, applied or not
    - Tracks logical time for records and interest/yield accrual
"""

from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, TypeVar
import logging
import threading

from .core import OperationRecord, OperationStatus, Transactional

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationLedger:
    """
    Single-writer transactional boundary with an audit trail.

    Design Principles:
        - Atomic: a failing operation leaves every participant exactly as it
          was before the operation started.
        - Re-entrant: an operation may call other operations (tend calls
          lever_up); nested calls join the outermost boundary.
        - Always logs: every top-level attempt is appended to operation_log.

    Example:
        ledger = OperationLedger("strategy")
        ledger.register(book)
        ledger.register(position_ledger)

        result = ledger.run("tend", "keeper", engine_step)
    """

    def __init__(self, name: str, initial_time: Optional[datetime] = None):
        """
        Create an operation ledger.

        Args:
            name: Identifier used in exec ids
            initial_time: Starting logical time (default: 1970-01-01)
        """
        self.name = name
        self.participants: List[Transactional] = []
        self.operation_log: List[OperationRecord] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._next_sequence: int = 0
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    @property
    def in_operation(self) -> bool:
        return self._depth > 0

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the logical clock. Time can only move forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    def register(self, participant: Transactional) -> None:
        """Add a participant whose state is snapshotted around each operation."""
        if not isinstance(participant, Transactional):
            raise TypeError(f"{participant!r} does not implement snapshot()/restore()")
        if any(p is participant for p in self.participants):
            return
        self.participants.append(participant)

    def run(self, name: str, caller: str, fn: Callable[[], T]) -> T:
        """
        Execute `fn` atomically as operation `name`.

        Returns:
            Whatever `fn` returns

        Raises:
            Whatever `fn` raises, after every participant has been restored
        """
        with self.operation(name, caller):
            return fn()

    @contextmanager
    def operation(self, name: str, caller: str) -> Iterator[None]:
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshots = [(p, p.snapshot()) for p in self.participants]
            self._depth = 1
            try:
                yield
            except BaseException as exc:
                for participant, snap in reversed(snapshots):
                    participant.restore(snap)
                self._record(name, caller, OperationStatus.REJECTED, type(exc).__name__)
                logger.warning(f"{name} by {caller} rejected and rolled back: {exc}")
                raise
            else:
                self._record(name, caller, OperationStatus.APPLIED, None)
                logger.debug(f"{name} by {caller} applied")
            finally:
                self._depth = 0

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def _record(self, name: str, caller: str, status: OperationStatus, error: Optional[str]) -> None:
        sequence = self._next_sequence
        self._next_sequence += 1
        self.operation_log.append(OperationRecord(
            sequence_number=sequence,
            exec_id=self._generate_exec_id(sequence),
            name=name,
            caller=caller,
            status=status,
            timestamp=self._current_time,
            error=error,
        ))

    def __repr__(self) -> str:
        return f"OperationLedger({self.name!r}, {len(self.participants)} participants, {len(self.operation_log)} records)"
