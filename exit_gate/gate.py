"""
Exit Gate Evaluator

Decides, each time a session tries to end, whether it may stop (ALLOW), must
keep working (BLOCK), or must wait for a human (ESCALATE).

Checks run in a fixed order and the first match wins:
1. Override markers (FORCE_EXIT, FORCE_COMPLETE, RALPH_HANDOFF) - one-shot ALLOW
2. Pending escalation marker - ESCALATE
3. Cost guard hard limit - BLOCK
4. Incomplete session - abandoned (ALLOW), iteration limit or continue (BLOCK)
5. Completion verification - validation, tests, git (BLOCK and revert phase)
6. Persistent backlog - ESCALATE on repeated failure, else BLOCK
7. ALLOW, releasing this agent's lock
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Optional

from .config import GateLimits
from .costs import CostGuard
from .directives import (
    Directive,
    ReasonCode,
    cost_limit,
    cost_warning,
    escalation_pending,
    escalation_required,
    git_incomplete,
    internal_error,
    iteration_limit,
    state_unreadable,
    tasks_remaining,
    tests_unverified,
    validation_errors,
    validation_summary,
)
from .errors import EscalationRequired, LimitExceeded, ReadResult
from .escalation import EscalationManager
from .locks import LockManager, default_agent_id
from .phases import phase_directive
from .schema import Phase, SessionState, TestResults
from .store import OverrideKind, SignalStore
from .utils import Clock, age_seconds, utc_now

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Gate decision."""
    ALLOW = "allow"
    BLOCK = "block"
    ESCALATE = "escalate"


EXIT_ALLOW = 0
EXIT_BLOCK = 2


@dataclass
class GateOutcome:
    """Decision plus everything needed to report it."""
    decision: Decision
    reason: ReasonCode
    directive: Optional[Directive] = None
    message: str = ""
    advisories: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW

    @property
    def exit_code(self) -> int:
        return EXIT_ALLOW if self.allowed else EXIT_BLOCK

    def raise_for_decision(self) -> None:
        """
        Raise for outcomes that need a human or a higher limit.

        Raises:
            EscalationRequired: On ESCALATE
            LimitExceeded: On an iteration or cost limit block
        """
        if self.decision == Decision.ESCALATE:
            raise EscalationRequired(self.details.get("task_id", "unknown"), self.details.get("failures", 0))
        if self.reason in (ReasonCode.ITERATION_LIMIT, ReasonCode.COST_LIMIT):
            raise LimitExceeded(self.reason.value, self.details.get("current", 0), self.details.get("maximum", 0))

    def stderr_line(self) -> Optional[str]:
        """One-line reason for the error stream on BLOCK/ESCALATE."""
        if self.allowed:
            return None
        title = self.directive.title if self.directive else self.reason.value
        return f"[BLOCKED] {title}"

    def render(self) -> str:
        """Text for the output stream."""
        parts = []
        if self.message:
            parts.append(self.message)
        if self.directive:
            parts.append(self.directive.render())
        parts.extend(self.advisories)
        return "\n".join(parts).rstrip() + "\n"

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "reason": self.reason.value,
            "exit_code": self.exit_code,
            "message": self.message,
            "directive": self.directive.to_dict() if self.directive else None,
            "advisories": list(self.advisories),
            "warnings": list(self.warnings),
            "details": dict(self.details),
        }


def _allow(reason: ReasonCode, message: str) -> GateOutcome:
    return GateOutcome(decision=Decision.ALLOW, reason=reason, message=message)


def _block(directive: Directive, **details) -> GateOutcome:
    return GateOutcome(decision=Decision.BLOCK, reason=directive.reason, directive=directive, details=details)


def _escalate(directive: Directive, **details) -> GateOutcome:
    return GateOutcome(decision=Decision.ESCALATE, reason=directive.reason, directive=directive, details=details)


class GateEvaluator:
    """
    Fuses every persisted signal into one exit decision.

    Example:
        evaluator = GateEvaluator(FileSignalStore(Path.cwd()))
        outcome = evaluator.evaluate()
        sys.exit(outcome.exit_code)
    """

    def __init__(
        self,
        store: SignalStore,
        limits: Optional[GateLimits] = None,
        clock: Clock = utc_now,
        agent_id: Optional[str] = None,
    ):
        self.store = store
        self.limits = limits or GateLimits()
        self._clock = clock
        self.agent_id = agent_id or default_agent_id()

        self.escalation = EscalationManager(
            store,
            max_failures=self.limits.max_task_failures,
            history_size=self.limits.failure_history,
            clock=clock,
        )
        self.costs = CostGuard(
            store,
            warning_threshold=self.limits.cost_warning,
            hard_limit=self.limits.cost_limit,
            history_size=self.limits.cost_history_size,
            clock=clock,
        )
        self.locks = LockManager(store, timeout_seconds=self.limits.lock_timeout_seconds, clock=clock)

        self._warnings: list[str] = []

    @property
    def state_dir(self) -> str:
        return self.store.describe()

    def evaluate(self) -> GateOutcome:
        """
        Run the gate once.

        Never raises: an unexpected failure becomes BLOCK(INTERNAL_ERROR) with
        instructions for forcing an exit.
        """
        self._warnings = []
        try:
            outcome = self._evaluate()
        except Exception as e:
            logger.exception("Exit gate evaluation failed")
            outcome = _block(internal_error(e, self.state_dir))

        outcome.warnings = self._warnings + outcome.warnings
        logger.info(f"Gate decision: {outcome.decision.value} ({outcome.reason.value})")
        return outcome

    def _note(self, result: ReadResult) -> None:
        """Remember a malformed read so it can be surfaced with the decision."""
        if result.malformed and result.error is not None:
            self._warnings.append(str(result.error))

    # ========================================================================
    # Evaluation steps
    # ========================================================================

    def _evaluate(self) -> GateOutcome:
        outcome = self._check_overrides()
        if outcome:
            return outcome

        if self.store.has_escalation():
            marker_result = self.store.read_escalation()
            self._note(marker_result)
            marker = marker_result.value
            return _escalate(
                escalation_pending(marker, self.state_dir),
                task_id=marker.task_id,
                failures=marker.failures,
            )

        advisories = []
        cost = self.costs.check()
        if cost.blocked:
            return _block(
                cost_limit(cost.sub_calls, cost.limit, cost.total_sub_calls, self.state_dir),
                current=cost.sub_calls,
                maximum=cost.limit,
            )
        if cost.warning:
            advisories.append(cost_warning(cost.sub_calls, cost.limit))

        state_result = self.store.read_state()
        self._note(state_result)
        state = state_result.value
        if state_result.malformed:
            outcome = _block(state_unreadable(state_result.error.detail, self.state_dir))
            outcome.advisories.extend(advisories)
            return outcome

        if state is not None and state.phase != Phase.CANCELLED:
            if not state.claims_done:
                outcome = self._check_in_progress(state)
            else:
                outcome = self._verify_completion(state)
            if outcome:
                outcome.advisories.extend(advisories)
                return outcome

        outcome = self._check_backlog()
        if outcome:
            outcome.advisories.extend(advisories)
            return outcome

        self.locks.release(self.agent_id)
        if state is None:
            outcome = _allow(ReasonCode.NO_SESSION, "[OK] Exit allowed: no active session")
        else:
            outcome = _allow(ReasonCode.VERIFIED, "[OK] Deep Loop: Exit allowed")
        outcome.advisories.extend(advisories)
        return outcome

    def _check_overrides(self) -> Optional[GateOutcome]:
        override = self.store.consume_override()
        if override is None:
            return None

        if override.kind == OverrideKind.FORCE_EXIT:
            return _allow(ReasonCode.FORCE_EXIT, "[OK] Force exit requested")
        if override.kind == OverrideKind.FORCE_COMPLETE:
            return _allow(
                ReasonCode.FORCE_COMPLETE,
                f"## Force complete: {override.reason or 'No reason given'}",
            )
        return _allow(ReasonCode.HANDOFF, "[OK] Handing off to external loop runner")

    def _check_in_progress(self, state: SessionState) -> GateOutcome:
        now = self._clock()

        if state.last_activity is not None:
            idle = age_seconds(state.last_activity, now)
            if idle > self.limits.stale_hours * 3600:
                logger.info(f"Session idle for {idle / 3600:.1f}h, treating as abandoned")
                return _allow(
                    ReasonCode.ABANDONED,
                    f"[OK] Stale session ({idle / 3600:.1f}h idle), exit allowed",
                )

        if state.budget_exhausted:
            return _block(
                iteration_limit(state, self.state_dir),
                current=state.iteration,
                maximum=state.max_iterations,
            )

        state.iteration += 1
        state.touch(now)
        self.store.write_state(state)

        return _block(phase_directive(state, self._status_summaries()))

    def _status_summaries(self) -> list[str]:
        summaries = []
        cost_status = self.costs.status_summary()
        if cost_status:
            summaries.append(cost_status)

        validation = self.store.read_validation_state().value
        open_errors = validation.unresolved(self._clock(), self._validation_window)
        summary = validation_summary(validation.files_validated, len(open_errors))
        if summary:
            summaries.append(summary)
        return summaries

    @property
    def _validation_window(self) -> timedelta:
        return timedelta(minutes=self.limits.validation_window_minutes)

    def _verify_completion(self, state: SessionState) -> Optional[GateOutcome]:
        now = self._clock()

        validation_result = self.store.read_validation_state()
        self._note(validation_result)
        open_errors = validation_result.value.unresolved(now, self._validation_window)
        if open_errors:
            self._revert(state, Phase.FIX)
            return _block(validation_errors(open_errors))

        tests_result = self.store.read_test_results()
        self._note(tests_result)
        missing, failed = (tests_result.value or TestResults()).unverified()
        if missing or failed:
            self._revert(state, Phase.REVIEW)
            return _block(tests_unverified(missing, failed))

        git_result = self.store.read_git_results()
        self._note(git_result)
        git = git_result.value
        if git is not None and git.tooling_present:
            missing, failed = git.unmet()
            if missing or failed:
                self._revert(state, Phase.REVIEW)
                return _block(git_incomplete(missing, failed))

        return None

    def _revert(self, state: SessionState, phase: Phase) -> None:
        logger.info(f"Verification failed, reverting {state.phase.value} -> {phase.value}")
        state.phase = phase
        state.complete = False
        state.touch(self._clock())
        self.store.write_state(state)

    def _check_backlog(self) -> Optional[GateOutcome]:
        backlog_result = self.store.read_backlog()
        self._note(backlog_result)
        backlog = backlog_result.value

        now = self._clock()
        pending = backlog.pending(now, self.limits.task_stale_hours)
        task = backlog.next_task(now, self.limits.task_stale_hours)
        if task is None:
            return None

        check = self.escalation.check_escalation(task.id)
        if check.escalate:
            return _escalate(
                escalation_required(task.id, check.failures, check.errors, self.state_dir),
                task_id=task.id,
                failures=check.failures,
            )

        return _block(tasks_remaining(task, len(pending), check.failures))
