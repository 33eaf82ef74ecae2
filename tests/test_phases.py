"""Tests for the phase state machine."""

import pytest

from exit_gate.errors import InvalidTransition, MissingSignal
from exit_gate.phases import allowed_targets, can_transition, phase_directive, request_transition
from exit_gate.schema import Phase, SessionState


class TestTransitionTable:

    @pytest.mark.parametrize("current,target", [
        (Phase.PLAN, Phase.BUILD),
        (Phase.BUILD, Phase.REVIEW),
        (Phase.REVIEW, Phase.FIX),
        (Phase.REVIEW, Phase.SHIP),
        (Phase.FIX, Phase.REVIEW),
        (Phase.SHIP, Phase.COMPLETE),
    ])
    def test_business_transitions(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (Phase.PLAN, Phase.REVIEW),
        (Phase.BUILD, Phase.SHIP),
        (Phase.FIX, Phase.SHIP),
        (Phase.REVIEW, Phase.COMPLETE),
        (Phase.COMPLETE, Phase.BUILD),
        (Phase.CANCELLED, Phase.PLAN),
    ])
    def test_unreachable_transitions(self, current, target):
        assert not can_transition(current, target)

    @pytest.mark.parametrize("current", [Phase.PLAN, Phase.BUILD, Phase.REVIEW, Phase.FIX, Phase.SHIP])
    def test_any_active_phase_can_cancel(self, current):
        assert can_transition(current, Phase.CANCELLED)

    def test_terminal_phases_cannot_cancel(self):
        assert not can_transition(Phase.COMPLETE, Phase.CANCELLED)
        assert not can_transition(Phase.CANCELLED, Phase.CANCELLED)

    def test_allowed_targets_from_review(self):
        assert allowed_targets(Phase.REVIEW) == [Phase.FIX, Phase.SHIP, Phase.CANCELLED]


class TestRequestTransition:

    def test_persists_new_phase(self, store, clock):
        store.write_state(SessionState(phase=Phase.PLAN))
        clock.advance(minutes=10)

        state = request_transition(store, Phase.BUILD, clock=clock)

        assert state.phase == Phase.BUILD
        stored = store.read_state().value
        assert stored.phase == Phase.BUILD
        assert stored.last_activity == clock.now

    def test_accepts_phase_names(self, store, clock):
        store.write_state(SessionState(phase=Phase.REVIEW))

        assert request_transition(store, "fix", clock=clock).phase == Phase.FIX

    def test_complete_sets_flag(self, store, clock):
        store.write_state(SessionState(phase=Phase.SHIP))

        state = request_transition(store, Phase.COMPLETE, clock=clock)

        assert state.complete is True
        assert store.read_state().value.complete is True

    def test_invalid_transition_raises(self, store, clock):
        store.write_state(SessionState(phase=Phase.PLAN, iteration=2))

        with pytest.raises(InvalidTransition) as exc_info:
            request_transition(store, Phase.SHIP, clock=clock)

        assert exc_info.value.current == "PLAN"
        assert store.read_state().value.phase == Phase.PLAN

    def test_unknown_phase_name_raises(self, store, clock):
        store.write_state(SessionState(phase=Phase.PLAN))

        with pytest.raises(InvalidTransition):
            request_transition(store, "DEPLOY", clock=clock)

    def test_leaving_terminal_phase_raises(self, store, clock):
        store.write_state(SessionState(phase=Phase.COMPLETE, complete=True))

        with pytest.raises(InvalidTransition):
            request_transition(store, Phase.BUILD, clock=clock)

    def test_no_session_raises(self, store, clock):
        with pytest.raises(MissingSignal):
            request_transition(store, Phase.BUILD, clock=clock)


class TestPhaseDirective:

    def test_review_directive_has_checklist(self):
        directive = phase_directive(SessionState(phase=Phase.REVIEW, iteration=3))

        assert "Completion Checklist" in directive.body
        assert "End-to-End Verification" in directive.body
        assert directive.title == "Deep Loop - Iteration 3/10"

    def test_summaries_are_included(self):
        directive = phase_directive(SessionState(phase=Phase.PLAN), ["### Validation: 3 files validated, no errors"])

        assert "3 files validated" in directive.body

    @pytest.mark.parametrize("phase", [Phase.COMPLETE, Phase.CANCELLED])
    def test_terminal_phases_have_no_directive(self, phase):
        assert phase_directive(SessionState(phase=phase)) is None
