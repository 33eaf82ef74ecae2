"""Tests for failure tracking and escalation."""

import pytest

from exit_gate.errors import MalformedSignal
from exit_gate.escalation import EscalationManager
from exit_gate.store import Record


@pytest.fixture
def manager(store, clock):
    return EscalationManager(store, max_failures=3, history_size=20, clock=clock)


class TestTrackFailure:

    def test_counts_increase(self, manager, store):
        assert manager.track_failure("t1", "boom") == 1
        assert manager.track_failure("t1", "bang") == 2

        entry = store.read_failures().value["t1"]
        assert [e.error for e in entry.errors] == ["boom", "bang"]
        assert entry.last_failure == "2026-01-15T12:00:00Z"

    def test_tasks_are_independent(self, manager):
        manager.track_failure("t1", "x")
        manager.track_failure("t2", "y")

        assert manager.failure_count("t1") == 1
        assert manager.failure_count("t2") == 1
        assert manager.failure_count("t3") == 0

    def test_history_is_bounded(self, store, clock):
        manager = EscalationManager(store, history_size=5, clock=clock)

        for i in range(8):
            manager.track_failure("t1", f"error {i}")

        entry = store.read_failures().value["t1"]
        assert entry.count == 8
        assert [e.error for e in entry.errors] == [f"error {i}" for i in range(3, 8)]

    def test_malformed_log_is_not_overwritten(self, manager, store):
        store.put_raw(Record.FAILURES.value, "{broken")

        with pytest.raises(MalformedSignal):
            manager.track_failure("t1", "boom")

        assert store.get_raw(Record.FAILURES.value) == "{broken"

    def test_clear_failures(self, manager):
        manager.track_failure("t1", "x")

        assert manager.clear_failures("t1")
        assert manager.failure_count("t1") == 0
        assert not manager.clear_failures("t1")


class TestCheckEscalation:

    def test_below_threshold(self, manager, store):
        manager.track_failure("t1", "a")
        manager.track_failure("t1", "b")

        check = manager.check_escalation("t1")

        assert not check.escalate
        assert check.failures == 2
        assert not store.has_escalation()

    def test_threshold_writes_marker(self, manager, store):
        for err in ("a", "b", "c", "d"):
            manager.track_failure("t1", err)

        check = manager.check_escalation("t1")

        assert check.escalate
        assert check.marker_written
        assert check.errors == ["b", "c", "d"]
        marker = store.read_escalation().value
        assert marker.task_id == "t1"
        assert marker.failures == 4

    def test_marker_written_once(self, manager, store, clock):
        for err in ("a", "b", "c"):
            manager.track_failure("t1", err)

        manager.check_escalation("t1")
        original = store.get_raw(Record.ESCALATION.value)
        clock.advance(minutes=1)
        manager.track_failure("t1", "d")
        again = manager.check_escalation("t1")

        assert again.escalate
        assert not again.marker_written
        assert store.get_raw(Record.ESCALATION.value) == original

    def test_existing_marker_for_other_task_kept(self, manager, store):
        for task in ("t1", "t2"):
            for err in ("a", "b", "c"):
                manager.track_failure(task, err)

        manager.check_escalation("t1")
        check = manager.check_escalation("t2")

        assert check.escalate
        assert store.read_escalation().value.task_id == "t1"

    def test_clear_escalation(self, manager, store):
        for err in ("a", "b", "c"):
            manager.track_failure("t1", err)
        manager.check_escalation("t1")

        assert manager.pending() is not None
        assert manager.clear_escalation()
        assert manager.pending() is None
        assert not manager.clear_escalation()
