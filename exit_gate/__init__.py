"""
Exit Gate - session exit policy engine

Decides whether a development session may end, must keep working, or must
wait for a human, by fusing persisted workflow signals (state, test results,
git status, validation errors, task backlog, failures, costs and markers).
"""

__version__ = "1.0.0"

from .schema import (
    Phase,
    ComplexityTier,
    SessionState,
    TestResults,
    GitResults,
    ValidationState,
    PersistentTask,
    TaskBacklog,
    TaskStatus,
)

from .errors import (
    ExitGateError,
    InvalidTransition,
    MissingSignal,
    MalformedSignal,
    LimitExceeded,
    EscalationRequired,
    ConfigurationError,
    ReadResult,
)

from .store import SignalStore, FileSignalStore, MemorySignalStore, OverrideKind
from .phases import request_transition, can_transition
from .gate import GateEvaluator, GateOutcome, Decision
from .directives import Directive, ReasonCode
from .escalation import EscalationManager
from .locks import LockManager
from .costs import CostGuard
from .config import GateConfig, ConfigManager, load_config
from .session import start_session, session_start

__all__ = [
    # Schema
    "Phase",
    "ComplexityTier",
    "SessionState",
    "TestResults",
    "GitResults",
    "ValidationState",
    "PersistentTask",
    "TaskBacklog",
    "TaskStatus",
    # Errors
    "ExitGateError",
    "InvalidTransition",
    "MissingSignal",
    "MalformedSignal",
    "LimitExceeded",
    "EscalationRequired",
    "ConfigurationError",
    "ReadResult",
    # Store
    "SignalStore",
    "FileSignalStore",
    "MemorySignalStore",
    "OverrideKind",
    # Gate
    "request_transition",
    "can_transition",
    "GateEvaluator",
    "GateOutcome",
    "Decision",
    "Directive",
    "ReasonCode",
    "EscalationManager",
    "LockManager",
    "CostGuard",
    # Config
    "GateConfig",
    "ConfigManager",
    "load_config",
    # Session
    "start_session",
    "session_start",
]
