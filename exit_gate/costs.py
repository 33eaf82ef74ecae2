"""
Cost guard for exploration/verification bursts.

Each check folds the current burst's sub-call count into a cumulative total
and a capped history, then compares the burst alone against the warning and
hard thresholds. A hard block stays until a human acknowledges the burst or
removes its record.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .schema import CostHistory, CostRecord, CostSession
from .store import SignalStore
from .utils import Clock, isoformat_z, utc_now

logger = logging.getLogger(__name__)

DEFAULT_COST_WARNING = 30
DEFAULT_COST_LIMIT = 50
DEFAULT_HISTORY_SIZE = 10


class CostDecision(Enum):
    """Decision from a cost check."""
    OK = "ok"
    WARNING = "warning"
    BLOCKED = "blocked"


@dataclass
class CostCheck:
    """Result of evaluating the current burst."""
    decision: CostDecision
    sub_calls: int = 0
    limit: int = DEFAULT_COST_LIMIT
    total_sub_calls: int = 0
    acknowledged: bool = False

    @property
    def blocked(self) -> bool:
        return self.decision == CostDecision.BLOCKED

    @property
    def warning(self) -> bool:
        return self.decision == CostDecision.WARNING


class CostGuard:
    """
    Tracks and limits cumulative sub-operation counts.
    """

    def __init__(
        self,
        store: SignalStore,
        warning_threshold: int = DEFAULT_COST_WARNING,
        hard_limit: int = DEFAULT_COST_LIMIT,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.warning_threshold = warning_threshold
        self.hard_limit = hard_limit
        self.history_size = history_size
        self._clock = clock

    def check(self) -> CostCheck:
        """
        Record the current burst and evaluate it.

        With no cost record (or an unreadable one) there is nothing to limit.
        """
        record = self.store.read_cost_record().value
        if record is None:
            return CostCheck(decision=CostDecision.OK, limit=self.hard_limit)

        history = self._record_burst(record)

        if record.sub_calls >= self.hard_limit:
            decision = CostDecision.WARNING if record.acknowledged else CostDecision.BLOCKED
        elif record.sub_calls >= self.warning_threshold:
            decision = CostDecision.WARNING
        else:
            decision = CostDecision.OK

        if decision == CostDecision.BLOCKED:
            logger.warning(f"Cost limit reached: {record.sub_calls}/{self.hard_limit} sub-calls")

        return CostCheck(
            decision=decision,
            sub_calls=record.sub_calls,
            limit=self.hard_limit,
            total_sub_calls=history.total_sub_calls,
            acknowledged=record.acknowledged,
        )

    def _record_burst(self, record: CostRecord) -> CostHistory:
        now = isoformat_z(self._clock())
        history = self.store.read_cost_history().value or CostHistory()

        history.total_sub_calls += record.sub_calls
        history.last_updated = now
        history.sessions.append(CostSession(
            timestamp=now,
            sub_calls=record.sub_calls,
            cost_estimate=record.cost_estimate if record.cost_estimate is not None else "unknown",
        ))
        if len(history.sessions) > self.history_size:
            history.sessions = history.sessions[-self.history_size:]

        try:
            self.store.write_cost_history(history)
        except OSError as e:
            logger.warning(f"Cannot update cost history: {e}")
        return history

    def acknowledge(self) -> bool:
        """
        Accept the current burst's cost so it no longer blocks.

        Returns:
            False if there is no readable cost record
        """
        record = self.store.read_cost_record().value
        if record is None:
            return False
        record.acknowledged = True
        self.store.write_cost_record(record)
        logger.info(f"Cost acknowledged at {record.sub_calls} sub-calls")
        return True

    def discard(self) -> bool:
        """Remove the current burst record."""
        return self.store.delete_cost_record()

    def status_summary(self) -> Optional[str]:
        """Chunk progress of the current burst, for directives."""
        record: Optional[CostRecord] = self.store.read_cost_record().value
        if record is None:
            return None

        estimate = record.cost_estimate if record.cost_estimate is not None else "unknown"
        return (
            "### Exploration Status\n"
            f"- Chunks: {record.processed_chunks}/{len(record.chunks)} processed\n"
            f"- Sub-calls: {record.sub_calls}\n"
            f"- Cost estimate: {estimate}\n"
        )
