"""
Directives

Guidance attached to every BLOCK/ESCALATE decision. A directive is both
machine-readable (reason code, remediation list) and rendered as markdown
for the agent or human reading the hook output.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .schema import EscalationMarker, Phase, PersistentTask, SessionState, ValidationIssue


class ReasonCode(str, Enum):
    """Why the gate decided what it did."""
    # ALLOW
    FORCE_EXIT = "force_exit"
    FORCE_COMPLETE = "force_complete"
    HANDOFF = "handoff"
    ABANDONED = "abandoned"
    NO_SESSION = "no_session"
    VERIFIED = "verified"

    # BLOCK
    COST_LIMIT = "cost_limit_reached"
    ITERATION_LIMIT = "iteration_limit"
    CONTINUE_PHASE = "continue_phase"
    VALIDATION_ERRORS = "validation_errors"
    TESTS_UNVERIFIED = "tests_unverified"
    GIT_INCOMPLETE = "git_incomplete"
    TASKS_REMAINING = "tasks_remaining"
    STATE_UNREADABLE = "state_unreadable"
    INTERNAL_ERROR = "internal_error"

    # ESCALATE
    ESCALATION_PENDING = "escalation_pending"
    ESCALATION_REQUIRED = "escalation_required"


@dataclass
class Directive:
    """Reason and remediation for a gate decision."""
    reason: ReasonCode
    title: str
    body: str = ""
    remediation: list[str] = field(default_factory=list)

    def render(self) -> str:
        parts = [f"## {self.title}", ""]
        if self.body:
            parts.extend([self.body.strip(), ""])
        if self.remediation:
            parts.append("### Options:")
            parts.append("")
            for i, step in enumerate(self.remediation, 1):
                parts.append(f"{i}. {step}")
            parts.append("")
        return "\n".join(parts)

    def to_dict(self) -> dict:
        return {
            "reason": self.reason.value,
            "title": self.title,
            "body": self.body,
            "remediation": list(self.remediation),
        }


def _marker(state_dir: str, name: str) -> str:
    return f"`{state_dir}/{name}`"


# ============================================================================
# Limits
# ============================================================================

def iteration_limit(state: SessionState, state_dir: str) -> Directive:
    return Directive(
        reason=ReasonCode.ITERATION_LIMIT,
        title=f"ITERATION LIMIT REACHED ({state.iteration}/{state.max_iterations})",
        body="The loop has used its whole iteration budget. It will not continue on its own.",
        remediation=[
            f"Force exit (abandon work): `touch {state_dir}/FORCE_EXIT`",
            f"Force complete (accept the work as is): write a reason to {_marker(state_dir, 'FORCE_COMPLETE')}",
            f"Raise the limit: increase `maxIterations` in {_marker(state_dir, 'state.json')}",
            "Review progress and decide whether the task is actually complete",
        ],
    )


def cost_limit(sub_calls: int, limit: int, total: int, state_dir: str) -> Directive:
    return Directive(
        reason=ReasonCode.COST_LIMIT,
        title="COST LIMIT REACHED",
        body=(
            f"Sub-calls in the current burst: {sub_calls}/{limit}\n"
            f"Cumulative sub-calls: {total}"
        ),
        remediation=[
            "Acknowledge the cost and continue: `exit-gate ack-cost`",
            f"Abort the burst: delete {_marker(state_dir, 'rlm-context.json')} and use standard exploration",
            f"Review cumulative costs in {_marker(state_dir, 'rlm-costs.json')}",
        ],
    )


def cost_warning(sub_calls: int, limit: int) -> str:
    return (
        "### Cost Warning\n\n"
        f"Sub-calls: {sub_calls}/{limit}. Approaching the cost limit; consider coarser "
        "chunks, tighter filtering, or stopping exploration once enough is known.\n"
    )


# ============================================================================
# Phase continuation
# ============================================================================

_ATOMIC_COMMITS = """### Atomic Commits

For each finished task stage only its files and commit with
`deep: [task-id] - [brief description]`. Do not bundle unrelated changes."""

_SIMPLIFY = """### Simplify

Before leaving BUILD remove unused imports, dead code and needless
abstraction layers."""

_E2E = """### End-to-End Verification

Exercise the real behaviour, not only unit tests: drive the UI for web apps,
make real requests for APIs, run CLIs with sample input and check exit codes."""

_CHECKLIST = """### Completion Checklist

- [ ] All acceptance criteria in plan.md are met
- [ ] Tests, type checks, lint and build pass and are recorded in test-results.json
- [ ] PR created, CI green and merged (if in a git repo)
- [ ] No unresolved validation errors"""

PHASE_INSTRUCTIONS = {
    Phase.PLAN: """### PLAN Phase

Write `plan.md` with the problem statement, testable acceptance criteria,
an atomic task breakdown and the risks.

When done: `exit-gate transition BUILD`""",
    Phase.BUILD: f"""### BUILD Phase

Work through the plan's tasks in order, validating (tests, lint, types)
after each one and logging failures with `exit-gate track-failure`.

{_ATOMIC_COMMITS}

{_SIMPLIFY}

When done: `exit-gate transition REVIEW`""",
    Phase.REVIEW: f"""### REVIEW Phase

Review the change for correctness, security and test coverage.

{_E2E}

{_CHECKLIST}

If issues remain: `exit-gate transition FIX`
If clean: `exit-gate transition SHIP`""",
    Phase.FIX: f"""### FIX Phase

Fix every open issue, committing each fix atomically and re-running
validation.

{_ATOMIC_COMMITS}

When done: `exit-gate transition REVIEW`""",
    Phase.SHIP: """### SHIP Phase

Push the branch, open a PR, wait for CI and merge. Record the results in
git-results.json, then mark the session complete.""",
}


def continue_phase(state: SessionState, summaries: Optional[list[str]] = None) -> Directive:
    instructions = PHASE_INSTRUCTIONS.get(state.phase, "")
    header = f"**Phase:** {state.phase.value}\n**Task:** {state.task or 'See task.md'}"
    sections = [header]
    sections.extend(s.strip() for s in (summaries or []) if s)
    if instructions:
        sections.append(instructions)
    return Directive(
        reason=ReasonCode.CONTINUE_PHASE,
        title=f"Deep Loop - Iteration {state.iteration}/{state.max_iterations}",
        body="\n\n".join(sections),
    )


# ============================================================================
# Completion verification
# ============================================================================

MAX_ERRORS_PER_FILE = 5


def validation_errors(issues: list[ValidationIssue]) -> Directive:
    by_file: dict[str, list[ValidationIssue]] = {}
    for issue in issues:
        by_file.setdefault(issue.file or "unknown", []).append(issue)

    lines = ["The following files have unresolved validation errors:", ""]
    for path, errors in by_file.items():
        lines.append(f"#### {path}")
        for err in errors[:MAX_ERRORS_PER_FILE]:
            loc = f"L{err.line}: " if err.line else ""
            lines.append(f"- {loc}{err.message}")
        if len(errors) > MAX_ERRORS_PER_FILE:
            lines.append(f"- ... and {len(errors) - MAX_ERRORS_PER_FILE} more")
        lines.append("")

    return Directive(
        reason=ReasonCode.VALIDATION_ERRORS,
        title=f"BLOCKED - {len(issues)} Validation Error(s)",
        body="\n".join(lines) + "\nThe session has been moved back to FIX.",
        remediation=["Fix these errors, then re-run validation before completing"],
    )


def validation_summary(files_validated: int, error_count: int) -> Optional[str]:
    if not files_validated:
        return None
    if error_count == 0:
        return f"### Validation: {files_validated} files validated, no errors"
    return f"### Validation: {files_validated} files validated, {error_count} errors pending"


def _missing_failed(missing: list[str], failed: list[str]) -> str:
    lines = []
    if missing:
        lines.append("**Missing:** " + ", ".join(missing))
    if failed:
        lines.append("**Failed:** " + ", ".join(failed))
    return "\n".join(lines)


def tests_unverified(missing: list[str], failed: list[str]) -> Directive:
    return Directive(
        reason=ReasonCode.TESTS_UNVERIFIED,
        title="BLOCKED - Tests Not Verified",
        body=_missing_failed(missing, failed) + "\n\nThe session has been moved back to REVIEW.",
        remediation=["Run tests, type checks, lint and build, and update test-results.json"],
    )


def git_incomplete(missing: list[str], failed: list[str]) -> Directive:
    return Directive(
        reason=ReasonCode.GIT_INCOMPLETE,
        title="BLOCKED - Git Workflow Incomplete",
        body=_missing_failed(missing, failed) + "\n\nThe session has been moved back to REVIEW.",
        remediation=[
            "Create the PR: `gh pr create`",
            "Wait for CI: `gh pr checks --watch`",
            "Merge: `gh pr merge --squash`",
            "Update git-results.json with the outcome",
        ],
    )


# ============================================================================
# Backlog & escalation
# ============================================================================

def tasks_remaining(task: PersistentTask, remaining: int, failures: int) -> Directive:
    body = f"**Next:** {task.content}\n**ID:** {task.id}\n**Status:** {task.status_label}"
    if failures:
        body += f"\n**Failed attempts:** {failures}"
    return Directive(
        reason=ReasonCode.TASKS_REMAINING,
        title=f"Persistent Tasks - {remaining} remaining",
        body=body,
        remediation=["Continue working; update persistent-tasks.json when the task is complete"],
    )


def escalation_required(task_id: str, failures: int, errors: list[str], state_dir: str) -> Directive:
    recent = "\n".join(f"- {e}" for e in errors) or "- (no error text recorded)"
    return Directive(
        reason=ReasonCode.ESCALATION_REQUIRED,
        title="USER ESCALATION REQUIRED",
        body=(
            f"Task `{task_id}` has failed {failures} consecutive times.\n\n"
            f"### Recent Errors:\n{recent}\n\n"
            "The loop is BLOCKED until a human responds."
        ),
        remediation=[
            "Provide guidance in the chat",
            f"Skip the task: set its status to `blocked` in {_marker(state_dir, 'persistent-tasks.json')}",
            f"Abandon the loop: `touch {state_dir}/FORCE_EXIT`",
        ],
    )


def escalation_pending(marker: EscalationMarker, state_dir: str) -> Directive:
    return Directive(
        reason=ReasonCode.ESCALATION_PENDING,
        title="BLOCKED - User Escalation Pending",
        body=(
            f"Task `{marker.task_id}` needs your attention ({marker.failures} failures).\n"
            f"See {_marker(state_dir, 'NEEDS_USER')} for details."
        ),
        remediation=[
            "Address the issue, then clear the marker: `exit-gate clear-escalation`",
            f"Abandon the loop: `touch {state_dir}/FORCE_EXIT`",
        ],
    )


def state_unreadable(detail: str, state_dir: str) -> Directive:
    return Directive(
        reason=ReasonCode.STATE_UNREADABLE,
        title="BLOCKED - Session State Unreadable",
        body=f"`{state_dir}/state.json` exists but cannot be read: {detail}",
        remediation=[
            f"Repair or delete `{state_dir}/state.json`",
            "Start a fresh session: `exit-gate start \"task\" --force`",
            f"Abandon the loop: `touch {state_dir}/FORCE_EXIT`",
        ],
    )


def internal_error(error: Exception, state_dir: str) -> Directive:
    return Directive(
        reason=ReasonCode.INTERNAL_ERROR,
        title="BLOCKED - Exit Gate Error",
        body=f"The exit gate could not evaluate this session: {error}",
        remediation=[
            f"Inspect and repair the records in `{state_dir}`",
            f"Abandon the loop: `touch {state_dir}/FORCE_EXIT`",
        ],
    )
