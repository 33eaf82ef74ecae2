"""
Signal Store

Typed access to the records a session leaves in its state directory.

Every record has exactly one read operation returning a ReadResult and one
documented default used when the record is missing or unreadable:

    state               None (no active session)
    test results        None (treated as unverified)
    git results         None (git verification skipped)
    validation state    empty ValidationState
    backlog             empty TaskBacklog
    failures            {}
    lock                None (fail open)
    cost record         None (no burst in progress)
    cost history        empty CostHistory
    escalation marker   default EscalationMarker when present but unreadable

Backends only implement raw load/save/delete/claim of named blobs, so an
in-memory fake behaves exactly like the file store.
"""

import json
import logging
import os
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from pydantic import ValidationError

from .errors import ReadResult
from .schema import (
    CostHistory,
    CostRecord,
    EscalationMarker,
    FailureEntry,
    GitResults,
    LockRecord,
    SessionState,
    SignalModel,
    TaskBacklog,
    TestResults,
    ValidationState,
)
from .utils import atomic_write_json

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STATE_DIR = ".deep"


class Record(str, Enum):
    """Named records and their file names inside the state directory."""
    STATE = "state.json"
    TEST_RESULTS = "test-results.json"
    GIT_RESULTS = "git-results.json"
    VALIDATION = "validation-state.json"
    BACKLOG = "persistent-tasks.json"
    FAILURES = "failures.json"
    LOCK = "agent.lock"
    COST_RECORD = "rlm-context.json"
    COST_HISTORY = "rlm-costs.json"
    ESCALATION = "NEEDS_USER"


class OverrideKind(str, Enum):
    """One-shot markers that let the session end, in precedence order."""
    FORCE_EXIT = "FORCE_EXIT"
    FORCE_COMPLETE = "FORCE_COMPLETE"
    HANDOFF = "RALPH_HANDOFF"


@dataclass
class Override:
    """A consumed override marker."""
    kind: OverrideKind
    reason: str = ""


def _parse_failures(data: Any) -> dict[str, FailureEntry]:
    if not isinstance(data, dict):
        raise ValueError("failures must be an object keyed by task id")
    return {str(task_id): FailureEntry.model_validate(entry) for task_id, entry in data.items()}


class SignalStore(ABC):
    """
    Base class for signal storage backends.

    Subclasses provide the raw blob operations; typed reads and writes live
    here so their defaults are defined once.
    """

    # ------------------------------------------------------------------
    # Raw operations
    # ------------------------------------------------------------------

    @abstractmethod
    def _load(self, name: str) -> Optional[str]:
        """Return the blob's text, or None if it does not exist."""
        pass

    @abstractmethod
    def _save(self, name: str, data: Any) -> None:
        """Replace the blob with JSON-encoded data."""
        pass

    @abstractmethod
    def _save_text(self, name: str, text: str) -> None:
        """Replace the blob with plain text."""
        pass

    @abstractmethod
    def _delete(self, name: str) -> bool:
        """Delete the blob, returning True if it existed."""
        pass

    @abstractmethod
    def _exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def _claim(self, name: str) -> Optional[str]:
        """
        Atomically remove a blob and return its text.

        At most one concurrent caller receives the text; the rest get None.
        """
        pass

    @abstractmethod
    def describe(self) -> str:
        """Human-readable location of the store, used in directives."""
        pass

    # ------------------------------------------------------------------
    # Generic typed read
    # ------------------------------------------------------------------

    def _read(
        self,
        record: Record,
        parse: Callable[[Any], T],
        default: Optional[T] = None,
    ) -> ReadResult[T]:
        try:
            raw = self._load(record.value)
        except OSError as e:
            logger.warning(f"Cannot read {record.value}: {e}")
            return ReadResult.broken(record.value, str(e), default)

        if raw is None:
            return ReadResult.absent(record.value, default)

        try:
            value = parse(json.loads(raw))
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning(f"Malformed {record.value}, using default: {e}")
            return ReadResult.broken(record.value, str(e), default)

        return ReadResult.found(value)

    def _write_model(self, record: Record, model: SignalModel) -> None:
        self._save(record.value, model.to_json_dict())

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    def read_state(self) -> ReadResult[SessionState]:
        return self._read(Record.STATE, SessionState.model_validate)

    def write_state(self, state: SessionState) -> None:
        self._write_model(Record.STATE, state)

    # ------------------------------------------------------------------
    # Verification inputs (produced by external collaborators)
    # ------------------------------------------------------------------

    def read_test_results(self) -> ReadResult[TestResults]:
        return self._read(Record.TEST_RESULTS, TestResults.model_validate)

    def write_test_results(self, results: TestResults) -> None:
        self._write_model(Record.TEST_RESULTS, results)

    def read_git_results(self) -> ReadResult[GitResults]:
        return self._read(Record.GIT_RESULTS, GitResults.model_validate)

    def write_git_results(self, results: GitResults) -> None:
        self._write_model(Record.GIT_RESULTS, results)

    def read_validation_state(self) -> ReadResult[ValidationState]:
        return self._read(Record.VALIDATION, ValidationState.model_validate, ValidationState())

    def write_validation_state(self, validation: ValidationState) -> None:
        self._write_model(Record.VALIDATION, validation)

    def read_backlog(self) -> ReadResult[TaskBacklog]:
        return self._read(Record.BACKLOG, TaskBacklog.model_validate, TaskBacklog())

    def write_backlog(self, backlog: TaskBacklog) -> None:
        self._write_model(Record.BACKLOG, backlog)

    # ------------------------------------------------------------------
    # Failures & escalation
    # ------------------------------------------------------------------

    def read_failures(self) -> ReadResult[dict[str, FailureEntry]]:
        return self._read(Record.FAILURES, _parse_failures, {})

    def write_failures(self, failures: dict[str, FailureEntry]) -> None:
        self._save(
            Record.FAILURES.value,
            {task_id: entry.model_dump(mode="json", by_alias=True, exclude_none=True)
             for task_id, entry in failures.items()},
        )

    def has_escalation(self) -> bool:
        try:
            return self._exists(Record.ESCALATION.value)
        except OSError as e:
            # Can't tell whether a human is needed, so assume one is
            logger.warning(f"Cannot check escalation marker: {e}")
            return True

    def read_escalation(self) -> ReadResult[EscalationMarker]:
        return self._read(Record.ESCALATION, EscalationMarker.model_validate, EscalationMarker())

    def write_escalation(self, marker: EscalationMarker) -> None:
        self._write_model(Record.ESCALATION, marker)

    def clear_escalation(self) -> bool:
        return self._delete(Record.ESCALATION.value)

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    def read_lock(self) -> ReadResult[LockRecord]:
        return self._read(Record.LOCK, LockRecord.model_validate)

    def write_lock(self, lock: LockRecord) -> None:
        self._write_model(Record.LOCK, lock)

    def delete_lock(self) -> bool:
        return self._delete(Record.LOCK.value)

    # ------------------------------------------------------------------
    # Costs
    # ------------------------------------------------------------------

    def read_cost_record(self) -> ReadResult[CostRecord]:
        return self._read(Record.COST_RECORD, CostRecord.model_validate)

    def write_cost_record(self, record: CostRecord) -> None:
        self._write_model(Record.COST_RECORD, record)

    def delete_cost_record(self) -> bool:
        return self._delete(Record.COST_RECORD.value)

    def read_cost_history(self) -> ReadResult[CostHistory]:
        return self._read(Record.COST_HISTORY, CostHistory.model_validate, CostHistory())

    def write_cost_history(self, history: CostHistory) -> None:
        self._write_model(Record.COST_HISTORY, history)

    # ------------------------------------------------------------------
    # Override markers
    # ------------------------------------------------------------------

    def place_override(self, kind: OverrideKind, reason: str = "") -> None:
        self._save_text(kind.value, reason)

    def has_override(self, kind: OverrideKind) -> bool:
        return self._exists(kind.value)

    def consume_override(self) -> Optional[Override]:
        """
        Claim the highest-precedence override marker, if any.

        The marker is removed as part of the claim, so each marker allows
        exactly one exit no matter how many evaluators race for it.
        """
        for kind in OverrideKind:
            try:
                text = self._claim(kind.value)
            except OSError as e:
                logger.warning(f"Cannot consume {kind.value}: {e}")
                continue
            if text is not None:
                logger.info(f"Consumed override marker {kind.value}")
                return Override(kind=kind, reason=text.strip())
        return None


class FileSignalStore(SignalStore):
    """
    Signal store backed by files in `<working_dir>/.deep/`.
    """

    def __init__(self, working_dir: Optional[Path] = None, state_dir: str = DEFAULT_STATE_DIR):
        """
        Initialize file store.

        Args:
            working_dir: Project directory (default: cwd)
            state_dir: Directory name for records, relative to working_dir
        """
        self.working_dir = Path(working_dir or Path.cwd())
        self.root = self.working_dir / state_dir

    def path_for(self, name: str) -> Path:
        return self.root / name

    def describe(self) -> str:
        return str(self.root)

    def _load(self, name: str) -> Optional[str]:
        try:
            return self.path_for(name).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _save(self, name: str, data: Any) -> None:
        atomic_write_json(self.path_for(name), data)

    def _save_text(self, name: str, text: str) -> None:
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    def _delete(self, name: str) -> bool:
        try:
            self.path_for(name).unlink()
            return True
        except FileNotFoundError:
            return False

    def _exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def _claim(self, name: str) -> Optional[str]:
        path = self.path_for(name)
        claimed = path.with_name(f".{name}.claimed.{os.getpid()}.{random.randint(0, 999999)}")
        try:
            os.rename(path, claimed)
        except FileNotFoundError:
            return None

        try:
            return claimed.read_text(encoding="utf-8", errors="replace")
        finally:
            try:
                claimed.unlink()
            except FileNotFoundError:
                pass


class MemorySignalStore(SignalStore):
    """
    In-memory signal store for tests and dry runs.

    Blobs are kept as text so malformed records can be injected with
    `put_raw`.
    """

    def __init__(self):
        self._blobs: dict[str, str] = {}

    def describe(self) -> str:
        return "<memory>"

    def put_raw(self, name: str, text: str) -> None:
        self._blobs[name] = text

    def get_raw(self, name: str) -> Optional[str]:
        return self._blobs.get(name)

    def _load(self, name: str) -> Optional[str]:
        return self._blobs.get(name)

    def _save(self, name: str, data: Any) -> None:
        self._blobs[name] = json.dumps(data, indent=2)

    def _save_text(self, name: str, text: str) -> None:
        self._blobs[name] = text

    def _delete(self, name: str) -> bool:
        return self._blobs.pop(name, None) is not None

    def _exists(self, name: str) -> bool:
        return name in self._blobs

    def _claim(self, name: str) -> Optional[str]:
        return self._blobs.pop(name, None)
