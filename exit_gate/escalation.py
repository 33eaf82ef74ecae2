"""
Escalation Manager

Counts failures per backlog task and raises a hard block once a task has
failed too many times:
- track_failure records an attempt's error
- check_escalation writes the NEEDS_USER marker at the threshold
- the marker stays until a human removes it (clear_escalation)
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .schema import EscalationMarker, FailureEntry, FailureError
from .store import SignalStore
from .utils import Clock, isoformat_z, utc_now

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_FAILURE_HISTORY = 20
ESCALATION_ERROR_COUNT = 3


@dataclass
class EscalationCheck:
    """Result of checking one task for escalation."""
    escalate: bool
    task_id: str
    failures: int = 0
    errors: list[str] = field(default_factory=list)
    marker_written: bool = False


class EscalationManager:
    """
    Per-task failure counting and escalation marker management.
    """

    def __init__(
        self,
        store: SignalStore,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
        history_size: int = DEFAULT_FAILURE_HISTORY,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.max_failures = max_failures
        self.history_size = history_size
        self._clock = clock

    def failure_count(self, task_id: str) -> int:
        entry = self.store.read_failures().value.get(task_id)
        return entry.count if entry else 0

    def track_failure(self, task_id: str, error_text: str) -> int:
        """
        Record a failed attempt at a task.

        Args:
            task_id: Backlog task id
            error_text: What went wrong

        Returns:
            The task's new failure count

        Raises:
            MalformedSignal: If the failure log exists but cannot be read
        """
        now = isoformat_z(self._clock())
        result = self.store.read_failures()
        if result.malformed:
            # Rewriting would reset every task's count
            raise result.error
        failures = dict(result.value)

        entry = failures.get(task_id) or FailureEntry()
        entry.count += 1
        entry.errors.append(FailureError(error=error_text, timestamp=now))
        if len(entry.errors) > self.history_size:
            entry.errors = entry.errors[-self.history_size:]
        entry.last_failure = now
        failures[task_id] = entry

        self.store.write_failures(failures)
        logger.info(f"Task {task_id} failure #{entry.count}: {error_text}")
        return entry.count

    def clear_failures(self, task_id: str) -> bool:
        """Forget a task's failures once it has left the backlog."""
        failures = dict(self.store.read_failures().value)
        if task_id not in failures:
            return False
        del failures[task_id]
        self.store.write_failures(failures)
        return True

    def check_escalation(self, task_id: str) -> EscalationCheck:
        """
        Escalate a task that has reached the failure threshold.

        Writes the escalation marker at most once: an existing marker is
        never overwritten.
        """
        entry = self.store.read_failures().value.get(task_id)
        if entry is None or entry.count < self.max_failures:
            return EscalationCheck(
                escalate=False,
                task_id=task_id,
                failures=entry.count if entry else 0,
            )

        recent = entry.errors[-ESCALATION_ERROR_COUNT:]
        written = False
        existing = self._existing_marker()
        if existing is None:
            marker = EscalationMarker(
                task_id=task_id,
                failures=entry.count,
                errors=recent,
                created_at=isoformat_z(self._clock()),
            )
            self.store.write_escalation(marker)
            written = True
            logger.warning(f"Escalating task {task_id} after {entry.count} failures")

        return EscalationCheck(
            escalate=True,
            task_id=task_id,
            failures=entry.count,
            errors=[e.error for e in recent],
            marker_written=written,
        )

    def _existing_marker(self) -> Optional[EscalationMarker]:
        if not self.store.has_escalation():
            return None
        return self.store.read_escalation().value

    def pending(self) -> Optional[EscalationMarker]:
        """The outstanding escalation, if any."""
        return self._existing_marker()

    def clear_escalation(self) -> bool:
        """Remove the escalation marker (explicit human action)."""
        cleared = self.store.clear_escalation()
        if cleared:
            logger.info("Escalation marker cleared")
        return cleared
