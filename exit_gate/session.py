"""
Session lifecycle: bootstrap, start-of-session cleanup and resume report.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import GateConfig
from .errors import ExitGateError
from .schema import ComplexityTier, Phase, PersistentTask, SessionState, TaskPriority, TaskStatus
from .store import DEFAULT_STATE_DIR, FileSignalStore, Record, SignalStore
from .utils import Clock, utc_now

logger = logging.getLogger(__name__)

RESUME_LIST_LIMIT = 5

STATUS_MARKERS = {
    TaskStatus.IN_PROGRESS: "[>]",
    TaskStatus.PENDING: "[ ]",
}

PRIORITY_MARKERS = {
    TaskPriority.HIGH: "(high)",
    TaskPriority.MEDIUM: "(medium)",
    TaskPriority.LOW: "(low)",
}


def start_session(
    store: SignalStore,
    task: Optional[str] = None,
    tier: ComplexityTier = ComplexityTier.STANDARD,
    clock: Clock = utc_now,
    force: bool = False,
) -> SessionState:
    """
    Create a fresh session at PLAN with a tier-derived iteration budget.

    Args:
        store: Where to write state.json
        task: Short task description shown in directives
        tier: Complexity tier selecting maxIterations
        force: Replace an unfinished session instead of refusing

    Raises:
        ExitGateError: If an unfinished session exists and force is False
    """
    existing = store.read_state().value
    if existing is not None and not existing.phase.is_terminal and not force:
        raise ExitGateError(
            f"Session already active (phase {existing.phase.value}, "
            f"iteration {existing.iteration}/{existing.max_iterations})"
        )

    now = clock()
    state = SessionState(
        phase=Phase.PLAN,
        iteration=0,
        max_iterations=tier.max_iterations,
        complete=False,
        task=task,
        started_at=now,
        last_activity=now,
    )
    store.write_state(state)
    logger.info(f"Started {tier.value} session ({state.max_iterations} iterations max)")
    return state


# ============================================================================
# Cleanup
# ============================================================================

def _is_finished(state: Optional[SessionState]) -> bool:
    return state is not None and state.complete and state.phase == Phase.COMPLETE


def cleanup_stale_state_dirs(
    working_dir: Path,
    max_age_days: int,
    clock: Clock = utc_now,
    prefix: str = DEFAULT_STATE_DIR,
) -> list[Path]:
    """
    Remove leftover state directories (`.deep`, `.deep-<id>`, ...).

    A directory goes when its session finished (COMPLETE and complete), or
    when its state.json (the directory itself if there is none) has not been
    modified for more than `max_age_days`. Directories whose state.json can't
    be read are kept. A zero or negative age disables cleanup.

    Returns:
        Directories removed
    """
    if max_age_days <= 0:
        return []

    max_age = max_age_days * 86400
    now = clock().timestamp()
    removed = []

    try:
        entries = sorted(Path(working_dir).iterdir())
    except OSError as e:
        logger.warning(f"Cannot scan {working_dir} for state directories: {e}")
        return []

    for entry in entries:
        if not entry.name.startswith(prefix) or not entry.is_dir():
            continue

        state_file = entry / Record.STATE.value
        result = FileSignalStore(entry.parent, entry.name).read_state()
        if result.malformed:
            logger.warning(f"Keeping {entry}: unreadable {Record.STATE.value}")
            continue

        state = result.value
        try:
            if state is not None:
                should_remove = _is_finished(state) or now - state_file.stat().st_mtime > max_age
            else:
                should_remove = now - entry.stat().st_mtime > max_age
        except OSError as e:
            logger.warning(f"Cannot stat {entry}: {e}")
            continue

        if not should_remove:
            continue

        try:
            shutil.rmtree(entry)
            removed.append(entry)
            logger.info(f"Removed stale state directory {entry}")
        except OSError as e:
            logger.warning(f"Cannot remove {entry}: {e}")

    return removed


# ============================================================================
# Resume report
# ============================================================================

@dataclass
class SessionReport:
    """What session start found and did."""
    cleaned: list[Path] = field(default_factory=list)
    pending: list[PersistentTask] = field(default_factory=list)
    cleanup_days: int = 0
    state_dir: str = DEFAULT_STATE_DIR

    @property
    def empty(self) -> bool:
        return not self.cleaned and not self.pending

    def render(self) -> str:
        parts = []
        if self.cleaned:
            parts.append(
                f"Cleaned up: {len(self.cleaned)} stale state director(ies) "
                f"(>{self.cleanup_days} days old)\n"
            )

        if self.pending:
            lines = []
            for i, task in enumerate(self.pending[:RESUME_LIST_LIMIT], 1):
                status = STATUS_MARKERS.get(task.status, "[ ]")
                priority = PRIORITY_MARKERS.get(task.priority, "")
                lines.append(f"  {i}. {status} {priority} {task.content}")
            if len(self.pending) > RESUME_LIST_LIMIT:
                lines.append(f"  ... and {len(self.pending) - RESUME_LIST_LIMIT} more")

            parts.append(
                "## Persistent Tasks Detected\n\n"
                f"You have **{len(self.pending)}** pending task(s) from a previous session:\n\n"
                + "\n".join(lines)
                + "\n\n**Options:**\n"
                "- Continue working on these tasks (the exit gate will enforce completion)\n"
                "- Run `exit-gate status` to check current loop state\n"
                f"- Create `{self.state_dir}/FORCE_EXIT` to bypass the exit gate once\n"
                "- Run `exit-gate transition CANCELLED` to cancel the loop entirely\n"
            )

        return "\n".join(parts)


def session_start(
    working_dir: Path,
    config: Optional[GateConfig] = None,
    clock: Clock = utc_now,
) -> SessionReport:
    """
    Clean up stale state and report backlog tasks to resume.

    Purely informational: never blocks the session.
    """
    config = config or GateConfig()
    working_dir = Path(working_dir)
    state_dir = config.store.state_dir

    cleaned = cleanup_stale_state_dirs(
        working_dir,
        config.session.cleanup_days,
        clock=clock,
        prefix=state_dir,
    )

    store = FileSignalStore(working_dir, state_dir)
    backlog = store.read_backlog().value
    pending = backlog.pending(clock(), config.limits.task_stale_hours)

    return SessionReport(
        cleaned=cleaned,
        pending=pending,
        cleanup_days=config.session.cleanup_days,
        state_dir=state_dir,
    )
