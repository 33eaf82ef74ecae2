"""
Signal Schema Definitions using Pydantic

Structure of every record the exit gate reads or writes. Field aliases match
the camelCase JSON the task executor and its helper tools produce; cost
records keep their snake_case names.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .utils import ensure_utc, parse_timestamp

logger = logging.getLogger(__name__)


# ============================================================================
# Enums
# ============================================================================

class Phase(str, Enum):
    """Workflow stage of a session."""
    PLAN = "PLAN"
    BUILD = "BUILD"
    REVIEW = "REVIEW"
    FIX = "FIX"
    SHIP = "SHIP"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({Phase.COMPLETE, Phase.CANCELLED})

# Phases in which the session claims to be finished and must be verified
VERIFY_PHASES = frozenset({Phase.COMPLETE, Phase.SHIP})


class ComplexityTier(str, Enum):
    """Task size, which decides the iteration budget."""
    SIMPLE = "simple"
    STANDARD = "standard"
    COMPLEX = "complex"

    @property
    def max_iterations(self) -> int:
        return TIER_MAX_ITERATIONS[self]


TIER_MAX_ITERATIONS = {
    ComplexityTier.SIMPLE: 3,
    ComplexityTier.STANDARD: 10,
    ComplexityTier.COMPLEX: 20,
}


class TaskStatus(str, Enum):
    """Status of a backlog task."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.BLOCKED)


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ============================================================================
# Base
# ============================================================================

class SignalModel(BaseModel):
    """
    Base for persisted records.

    Unknown keys are kept so that rewriting a record (e.g. bumping the
    iteration) never drops fields written by other tools.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _aware(value):
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


# ============================================================================
# Session State
# ============================================================================

class SessionState(SignalModel):
    """Contents of state.json."""
    phase: Phase = Phase.PLAN
    iteration: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=TIER_MAX_ITERATIONS[ComplexityTier.STANDARD], ge=1, alias="maxIterations")
    complete: bool = False
    last_activity: Optional[datetime] = Field(default=None, alias="lastActivity")
    task: Optional[str] = None
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")

    @field_validator("phase", mode="before")
    @classmethod
    def normalize_phase(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("last_activity", "started_at", mode="after")
    @classmethod
    def timestamps_are_utc(cls, v):
        return _aware(v)

    @property
    def claims_done(self) -> bool:
        """Session says it is finished and must pass verification."""
        return self.complete or self.phase in VERIFY_PHASES

    @property
    def budget_exhausted(self) -> bool:
        return self.iteration >= self.max_iterations

    def touch(self, now: datetime) -> None:
        self.last_activity = ensure_utc(now)


# ============================================================================
# Test Results
# ============================================================================

TEST_CATEGORIES = ("tests", "types", "lint", "build")


class CategoryResult(BaseModel):
    ran: bool = False
    passed: bool = False


class TestResults(SignalModel):
    """Contents of test-results.json."""
    __test__ = False  # keep pytest from collecting this class

    results: dict[str, CategoryResult] = Field(default_factory=dict)
    all_passed: Optional[bool] = Field(default=None, alias="allPassed")

    def unverified(self) -> tuple[list[str], list[str]]:
        """
        Categories that block completion.

        Returns:
            Tuple of (missing, failed) descriptions
        """
        missing = []
        failed = []
        for category in TEST_CATEGORIES:
            result = self.results.get(category)
            if result is None:
                missing.append(f"{category}: no results")
            elif not result.ran:
                missing.append(f"{category}: not run")
            elif not result.passed:
                failed.append(f"{category}: failed")

        if not missing and not failed:
            if self.all_passed is None:
                missing.append("allPassed: not reported")
            elif not self.all_passed:
                failed.append("allPassed is false")

        return missing, failed

    @property
    def verified(self) -> bool:
        missing, failed = self.unverified()
        return not missing and not failed


# ============================================================================
# Git Results
# ============================================================================

class RepositoryInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_git_repo: bool = Field(default=False, alias="isGitRepo")
    has_gh_cli: bool = Field(default=False, alias="hasGhCli")


class PullRequestInfo(BaseModel):
    created: bool = False
    url: Optional[str] = None


class CIInfo(BaseModel):
    checked: bool = False
    passed: bool = False


class MergeInfo(BaseModel):
    merged: bool = False


class GitEnforcement(BaseModel):
    """Policy overrides. Only an explicit false relaxes a requirement."""
    model_config = ConfigDict(populate_by_name=True)

    require_pr: bool = Field(default=True, alias="requirePR")
    require_ci_pass: bool = Field(default=True, alias="requireCIPass")
    require_merge: bool = Field(default=True, alias="requireMerge")


class GitResults(SignalModel):
    """Contents of git-results.json."""
    repository: RepositoryInfo = Field(default_factory=RepositoryInfo)
    pr: PullRequestInfo = Field(default_factory=PullRequestInfo)
    ci: CIInfo = Field(default_factory=CIInfo)
    merge: MergeInfo = Field(default_factory=MergeInfo)
    enforcement: GitEnforcement = Field(default_factory=GitEnforcement)

    @property
    def tooling_present(self) -> bool:
        return self.repository.is_git_repo and self.repository.has_gh_cli

    def unmet(self) -> tuple[list[str], list[str]]:
        """
        Enforced git requirements that are not satisfied.

        Returns:
            Tuple of (missing, failed) descriptions
        """
        missing = []
        failed = []

        if self.enforcement.require_pr and not self.pr.created:
            missing.append("PR not created")

        if self.enforcement.require_ci_pass:
            if not self.ci.checked:
                missing.append("CI not checked")
            elif not self.ci.passed:
                failed.append("CI failed")

        if self.enforcement.require_merge and not self.merge.merged:
            missing.append("PR not merged")

        return missing, failed


# ============================================================================
# Validation State
# ============================================================================

def _as_text(value, default: str = "") -> str:
    if value is None:
        return default
    return value if isinstance(value, str) else str(value)


class ValidationIssue(BaseModel):
    """One file-validation error reported by a content validator."""
    file: str = "unknown"
    message: str = ""
    line: Optional[Union[int, str]] = None
    timestamp: Optional[Union[str, float]] = None

    @field_validator("file", mode="before")
    @classmethod
    def file_as_text(cls, v):
        return _as_text(v, "unknown")

    @field_validator("message", mode="before")
    @classmethod
    def message_as_text(cls, v):
        return _as_text(v)

    @property
    def recorded_at(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)

    @classmethod
    def from_entry(cls, index: int, raw) -> "ValidationIssue":
        """
        Read one entry of the errors list.

        An entry that doesn't fit the model is kept as an undated issue, so
        it still counts as unresolved.
        """
        if isinstance(raw, cls):
            return raw
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Unreadable validation error entry {index}, keeping it open: {e}")
        if isinstance(raw, dict):
            return cls(file=_as_text(raw.get("file"), "unknown"),
                       message=_as_text(raw.get("message")) or str(raw))
        return cls(message=str(raw))


class ValidationState(SignalModel):
    """Contents of validation-state.json."""
    errors: list[ValidationIssue] = Field(default_factory=list)
    files_validated: int = Field(default=0, alias="filesValidated")
    last_validated: Optional[str] = Field(default=None, alias="lastValidated")

    @field_validator("errors", mode="before")
    @classmethod
    def read_each_error(cls, v):
        if isinstance(v, list):
            return [ValidationIssue.from_entry(i, raw) for i, raw in enumerate(v)]
        return v

    def unresolved(self, now: datetime, window: timedelta) -> list[ValidationIssue]:
        """
        Errors still considered open.

        An error reported within `window` of `now` is open. Errors without a
        readable timestamp are also treated as open.
        """
        cutoff = ensure_utc(now) - window
        open_errors = []
        for issue in self.errors:
            recorded = issue.recorded_at
            if recorded is None or recorded > cutoff:
                open_errors.append(issue)
        return open_errors


# ============================================================================
# Persistent Tasks
# ============================================================================

DEFAULT_TASK_STALE_HOURS = 24


def _known(enum_cls, value):
    """Map a recognised value onto its enum member and pass anything else through."""
    try:
        return enum_cls(value)
    except (ValueError, TypeError):
        return value


class PersistentTask(SignalModel):
    """
    One backlog entry.

    Status and priority keep values this package doesn't know about. Any
    status other than completed or blocked counts as open work.
    """
    id: str
    content: str = ""
    status: Union[TaskStatus, str] = TaskStatus.PENDING
    priority: Union[TaskPriority, str] = TaskPriority.MEDIUM
    created_at: Optional[Union[str, float]] = Field(default=None, alias="createdAt")

    @field_validator("id", mode="before")
    @classmethod
    def id_as_text(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("content", mode="before")
    @classmethod
    def content_as_text(cls, v):
        return _as_text(v)

    @field_validator("status", mode="before")
    @classmethod
    def known_status(cls, v):
        return _known(TaskStatus, v)

    @field_validator("priority", mode="before")
    @classmethod
    def known_priority(cls, v):
        return _known(TaskPriority, v)

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.status, TaskStatus) and self.status.is_terminal

    @property
    def status_label(self) -> str:
        return self.status.value if isinstance(self.status, TaskStatus) else str(self.status)

    @property
    def created(self) -> Optional[datetime]:
        return parse_timestamp(self.created_at)

    def is_stale(self, now: datetime, threshold: timedelta) -> bool:
        """Tasks with an unreadable creation time are never considered stale."""
        created = self.created
        if created is None:
            return False
        return ensure_utc(now) - created > threshold

    @classmethod
    def from_entry(cls, index: int, raw) -> "PersistentTask":
        """
        Read one entry of the task list.

        Entries without an id are named by position. An entry that still
        doesn't fit the model is kept as a pending task so the backlog
        never shrinks because of it.
        """
        if isinstance(raw, cls):
            return raw
        fallback_id = f"task-{index + 1}"
        if isinstance(raw, dict) and raw.get("id") in (None, ""):
            raw = {**raw, "id": fallback_id}
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Unreadable task entry {index}, counting it as pending: {e}")
        if isinstance(raw, dict):
            task_id = raw["id"] if isinstance(raw["id"], str) else fallback_id
            content = _as_text(raw.get("content")) or f"Unreadable task entry {index + 1}"
        else:
            task_id, content = fallback_id, str(raw)
        return cls(id=task_id, content=content)


class BacklogConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    stale_threshold_hours: Optional[float] = Field(default=None, alias="staleThresholdHours")


class TaskBacklog(SignalModel):
    """Contents of persistent-tasks.json."""
    config: BacklogConfig = Field(default_factory=BacklogConfig)
    tasks: list[PersistentTask] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def read_each_entry(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        tasks = data.get("tasks")
        if isinstance(tasks, list):
            data["tasks"] = [PersistentTask.from_entry(i, raw) for i, raw in enumerate(tasks)]
        config = data.get("config")
        if config is not None and not isinstance(config, BacklogConfig):
            try:
                data["config"] = BacklogConfig.model_validate(config)
            except ValidationError as e:
                logger.warning(f"Unreadable backlog config, using defaults: {e}")
                data.pop("config")
        return data

    def pending(self, now: datetime, default_stale_hours: float = DEFAULT_TASK_STALE_HOURS) -> list[PersistentTask]:
        """Open tasks that are not stale, in backlog order."""
        hours = self.config.stale_threshold_hours or default_stale_hours
        threshold = timedelta(hours=hours)
        return [
            t for t in self.tasks
            if not t.is_terminal and not t.is_stale(now, threshold)
        ]

    def next_task(self, now: datetime, default_stale_hours: float = DEFAULT_TASK_STALE_HOURS) -> Optional[PersistentTask]:
        """The task being worked on, else the earliest pending one."""
        pending = self.pending(now, default_stale_hours)
        if not pending:
            return None
        for task in pending:
            if task.status == TaskStatus.IN_PROGRESS:
                return task
        return pending[0]


# ============================================================================
# Failures & Escalation
# ============================================================================

class FailureError(BaseModel):
    error: str
    timestamp: Optional[str] = None


class FailureEntry(BaseModel):
    """Failure history for one task in failures.json."""
    model_config = ConfigDict(populate_by_name=True)

    count: int = Field(default=0, ge=0)
    errors: list[FailureError] = Field(default_factory=list)
    last_failure: Optional[str] = Field(default=None, alias="lastFailure")


class EscalationMarker(SignalModel):
    """Contents of the NEEDS_USER marker."""
    task_id: str = Field(default="unknown", alias="taskId")
    failures: int = 0
    errors: list[FailureError] = Field(default_factory=list)
    message: str = "Task has failed multiple times. User intervention recommended."
    created_at: Optional[str] = Field(default=None, alias="createdAt")


# ============================================================================
# Lock
# ============================================================================

class LockRecord(SignalModel):
    """Contents of agent.lock."""
    agent_id: str = Field(
        validation_alias=AliasChoices("agentId", "holderId", "agent_id"),
        serialization_alias="agentId",
    )
    acquired_at: datetime = Field(alias="acquiredAt")

    @field_validator("agent_id", mode="before")
    @classmethod
    def agent_id_as_text(cls, v):
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("acquired_at", mode="after")
    @classmethod
    def acquired_at_is_utc(cls, v):
        return ensure_utc(v)

    def age_seconds(self, now: datetime) -> float:
        return (ensure_utc(now) - self.acquired_at).total_seconds()


# ============================================================================
# Costs
# ============================================================================

class CostChunk(BaseModel):
    path: Optional[str] = None
    chars: int = 0
    processed: bool = False


class CostRecord(SignalModel):
    """Current exploration burst (rlm-context.json)."""
    sub_calls: int = Field(default=0, ge=0)
    cost_estimate: Union[float, str, None] = None
    chunks: list[CostChunk] = Field(default_factory=list)
    acknowledged: bool = False

    @property
    def processed_chunks(self) -> int:
        return sum(1 for c in self.chunks if c.processed)


class CostSession(BaseModel):
    timestamp: str
    sub_calls: int = 0
    cost_estimate: Union[float, str, None] = "unknown"


class CostHistory(SignalModel):
    """Cumulative accounting across bursts (rlm-costs.json)."""
    total_sub_calls: int = 0
    sessions: list[CostSession] = Field(default_factory=list)
    last_updated: Optional[str] = None
