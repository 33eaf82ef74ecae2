"""
Advisory lock for coordinated multi-worker bursts.

The lock is a record in the signal store, not an OS lock: it expires after a
timeout so a crashed holder never wedges other workers. Unreadable lock state
counts as "no lock".
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from .schema import LockRecord
from .store import SignalStore
from .utils import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 300


class LockNotAcquired(Exception):
    """Raised by LockManager.hold when another worker holds the lock."""

    def __init__(self, holder: str, age_seconds: float):
        self.holder = holder
        self.age_seconds = age_seconds
        super().__init__(f"Lock held by {holder} ({age_seconds:.0f}s old)")


@dataclass
class LockResult:
    """Outcome of an acquire attempt."""
    acquired: bool
    holder: Optional[str] = None
    age_seconds: Optional[float] = None


def default_agent_id() -> str:
    return str(os.getpid())


class LockManager:
    """
    Timeout-based mutual exclusion over the store's lock record.

    Mutual exclusion is best effort: two workers racing on an expired lock
    can both believe they won, and the later write wins.
    """

    def __init__(
        self,
        store: SignalStore,
        timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def _current(self) -> Optional[LockRecord]:
        """Valid (unexpired) lock, or None."""
        result = self.store.read_lock()
        lock = result.value
        if lock is None:
            return None
        if lock.age_seconds(self._clock()) >= self.timeout_seconds:
            return None
        return lock

    def holder(self) -> Optional[LockRecord]:
        return self._current()

    def acquire(self, agent_id: str) -> LockResult:
        """
        Try to take the lock for agent_id.

        Succeeds when there is no lock, the lock is expired or unreadable, or
        agent_id already holds it (which refreshes it).
        """
        now = self._clock()
        current = self._current()

        if current is not None and current.agent_id != agent_id:
            age = current.age_seconds(now)
            logger.info(f"Lock held by {current.agent_id} ({age:.0f}s), {agent_id} not acquired")
            return LockResult(acquired=False, holder=current.agent_id, age_seconds=age)

        try:
            self.store.write_lock(LockRecord(agent_id=agent_id, acquired_at=now))
        except OSError as e:
            # Fail open: an unwritable lock does not stop work
            logger.warning(f"Cannot write lock for {agent_id}, proceeding unlocked: {e}")
        return LockResult(acquired=True, holder=agent_id, age_seconds=0.0)

    def release(self, agent_id: str) -> bool:
        """
        Delete the lock if agent_id holds it.

        Returns:
            True if a lock was released
        """
        result = self.store.read_lock()
        lock = result.value
        if lock is None or lock.agent_id != agent_id:
            return False

        try:
            released = self.store.delete_lock()
        except OSError as e:
            logger.warning(f"Cannot release lock for {agent_id}: {e}")
            return False

        if released:
            logger.info(f"Released lock held by {agent_id}")
        return released

    @contextmanager
    def hold(self, agent_id: str) -> Iterator[LockResult]:
        """
        Hold the lock for the duration of a block.

        Raises:
            LockNotAcquired: If another worker holds a valid lock
        """
        result = self.acquire(agent_id)
        if not result.acquired:
            raise LockNotAcquired(result.holder or "unknown", result.age_seconds or 0.0)
        try:
            yield result
        finally:
            self.release(agent_id)
