"""
Error Handling

Exception taxonomy for the exit gate and the result type returned by every
signal read. Reads never raise: a missing or unreadable record comes back as
a ReadResult carrying the documented default for that record.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar


T = TypeVar("T")


# ============================================================================
# EXCEPTIONS
# ============================================================================

class ExitGateError(Exception):
    """Base exception for exit gate errors"""
    pass


class InvalidTransition(ExitGateError):
    """Requested phase is not reachable from the current phase"""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition from {current} to {target}")


class SignalError(ExitGateError):
    """A persisted signal could not be used"""

    def __init__(self, record: str, detail: str = ""):
        self.record = record
        self.detail = detail
        message = f"{record}: {detail}" if detail else record
        super().__init__(message)


class MissingSignal(SignalError):
    """Record is absent (the producing phase may not have run yet)"""
    pass


class MalformedSignal(SignalError):
    """Record exists but cannot be parsed or validated"""
    pass


class LimitExceeded(ExitGateError):
    """An iteration or cost ceiling was reached"""

    def __init__(self, limit_name: str, current: int, maximum: int):
        self.limit_name = limit_name
        self.current = current
        self.maximum = maximum
        super().__init__(f"{limit_name} limit reached ({current}/{maximum})")


class EscalationRequired(ExitGateError):
    """A task failed too many times and needs a human"""

    def __init__(self, task_id: str, failures: int):
        self.task_id = task_id
        self.failures = failures
        super().__init__(f"Task {task_id} failed {failures} times")


class ConfigurationError(ExitGateError):
    """Configuration is invalid"""
    pass


# ============================================================================
# READ RESULTS
# ============================================================================

class SignalStatus(str, Enum):
    """Outcome of reading one persisted record."""
    OK = "ok"
    MISSING = "missing"
    MALFORMED = "malformed"


@dataclass
class ReadResult(Generic[T]):
    """
    Result of a typed signal read.

    `value` always holds something usable: the parsed record when status is
    OK, otherwise the record's documented default (which may be None).
    """
    status: SignalStatus
    value: Optional[T] = None
    error: Optional[SignalError] = None

    @property
    def ok(self) -> bool:
        return self.status == SignalStatus.OK

    @property
    def missing(self) -> bool:
        return self.status == SignalStatus.MISSING

    @property
    def malformed(self) -> bool:
        return self.status == SignalStatus.MALFORMED

    @classmethod
    def found(cls, value: T) -> "ReadResult[T]":
        return cls(status=SignalStatus.OK, value=value)

    @classmethod
    def absent(cls, record: str, default: Optional[T] = None) -> "ReadResult[T]":
        return cls(
            status=SignalStatus.MISSING,
            value=default,
            error=MissingSignal(record),
        )

    @classmethod
    def broken(cls, record: str, detail: str, default: Optional[T] = None) -> "ReadResult[T]":
        return cls(
            status=SignalStatus.MALFORMED,
            value=default,
            error=MalformedSignal(record, detail),
        )
