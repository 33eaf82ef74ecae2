"""Tests for the cost guard."""

import pytest

from exit_gate.costs import CostDecision, CostGuard
from exit_gate.schema import CostRecord
from exit_gate.store import Record


@pytest.fixture
def guard(store, clock):
    return CostGuard(store, warning_threshold=30, hard_limit=50, history_size=10, clock=clock)


class TestCheck:

    def test_no_record_is_ok(self, guard, store):
        check = guard.check()

        assert check.decision == CostDecision.OK
        assert store.read_cost_history().missing

    @pytest.mark.parametrize("sub_calls,decision", [
        (0, CostDecision.OK),
        (29, CostDecision.OK),
        (30, CostDecision.WARNING),
        (49, CostDecision.WARNING),
        (50, CostDecision.BLOCKED),
        (120, CostDecision.BLOCKED),
    ])
    def test_thresholds(self, guard, store, sub_calls, decision):
        store.write_cost_record(CostRecord(sub_calls=sub_calls))

        assert guard.check().decision == decision

    def test_burst_added_to_history(self, guard, store):
        store.write_cost_record(CostRecord(sub_calls=12, cost_estimate=0.4))

        check = guard.check()

        history = store.read_cost_history().value
        assert check.total_sub_calls == 12
        assert history.total_sub_calls == 12
        assert history.sessions[0].sub_calls == 12
        assert history.sessions[0].cost_estimate == 0.4

    def test_every_check_accumulates(self, guard, store):
        store.write_cost_record(CostRecord(sub_calls=5))

        guard.check()
        guard.check()

        assert store.read_cost_history().value.total_sub_calls == 10

    def test_history_is_capped(self, guard, store):
        store.write_cost_record(CostRecord(sub_calls=1))

        for _ in range(15):
            guard.check()

        history = store.read_cost_history().value
        assert len(history.sessions) == 10
        assert history.total_sub_calls == 15

    def test_malformed_record_fails_open(self, guard, store):
        store.put_raw(Record.COST_RECORD.value, "{{")

        assert guard.check().decision == CostDecision.OK


class TestUnblocking:

    def test_acknowledge_lifts_block(self, guard, store):
        store.write_cost_record(CostRecord(sub_calls=55))
        assert guard.check().blocked

        assert guard.acknowledge()

        check = guard.check()
        assert not check.blocked
        assert check.acknowledged

    def test_acknowledge_without_record(self, guard):
        assert not guard.acknowledge()

    def test_discard_removes_record(self, guard, store):
        store.write_cost_record(CostRecord(sub_calls=55))

        assert guard.discard()
        assert guard.check().decision == CostDecision.OK


class TestStatusSummary:

    def test_summary_counts_chunks(self, guard, store):
        store.write_cost_record(CostRecord.model_validate({
            "sub_calls": 7,
            "cost_estimate": "$0.12",
            "chunks": [{"processed": True}, {"processed": True}, {"processed": False}],
        }))

        summary = guard.status_summary()

        assert "Chunks: 2/3 processed" in summary
        assert "Sub-calls: 7" in summary
        assert "$0.12" in summary

    def test_no_summary_without_record(self, guard):
        assert guard.status_summary() is None
