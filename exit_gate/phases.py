"""
Phase state machine.

The gate never picks business transitions itself; the executor requests them
and this module checks they are reachable from the current phase.
"""

import logging
from typing import Optional, Union

from .directives import Directive, continue_phase
from .errors import InvalidTransition, MissingSignal
from .schema import Phase, SessionState
from .store import SignalStore
from .utils import Clock, utc_now

logger = logging.getLogger(__name__)


TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PLAN: frozenset({Phase.BUILD}),
    Phase.BUILD: frozenset({Phase.REVIEW}),
    Phase.REVIEW: frozenset({Phase.FIX, Phase.SHIP}),
    Phase.FIX: frozenset({Phase.REVIEW}),
    Phase.SHIP: frozenset({Phase.COMPLETE}),
    Phase.COMPLETE: frozenset(),
    Phase.CANCELLED: frozenset(),
}


def can_transition(current: Phase, target: Phase) -> bool:
    if target == Phase.CANCELLED:
        return not current.is_terminal
    return target in TRANSITIONS.get(current, frozenset())


def allowed_targets(current: Phase) -> list[Phase]:
    return [p for p in Phase if can_transition(current, p)]


def request_transition(
    store: SignalStore,
    target: Union[Phase, str],
    clock: Clock = utc_now,
) -> SessionState:
    """
    Move the session to `target` and persist it.

    Args:
        store: Signal store holding state.json
        target: Phase (or phase name) to move to

    Returns:
        The updated session state

    Raises:
        MissingSignal: If there is no session to transition
        InvalidTransition: If `target` is unknown or not reachable
    """
    result = store.read_state()
    state = result.value
    if state is None:
        raise result.error or MissingSignal("state.json")

    if isinstance(target, str):
        try:
            target = Phase(target.strip().upper())
        except ValueError:
            raise InvalidTransition(state.phase.value, target)

    if not can_transition(state.phase, target):
        raise InvalidTransition(state.phase.value, target.value)

    previous = state.phase
    state.phase = target
    if target == Phase.COMPLETE:
        state.complete = True
    state.touch(clock())
    store.write_state(state)

    logger.info(f"Phase transition {previous.value} -> {target.value}")
    return state


def phase_directive(state: SessionState, summaries: Optional[list[str]] = None) -> Optional[Directive]:
    """Continuation directive for the session's phase; None once terminal."""
    if state.phase.is_terminal:
        return None
    return continue_phase(state, summaries)
