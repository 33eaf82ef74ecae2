"""Tests for directive rendering."""

from exit_gate.directives import (
    ReasonCode,
    escalation_required,
    git_incomplete,
    iteration_limit,
    tasks_remaining,
    validation_summary,
)
from exit_gate.schema import PersistentTask, SessionState


def test_render_numbers_remediation():
    directive = iteration_limit(SessionState(iteration=10, max_iterations=10), ".deep")

    text = directive.render()

    assert text.startswith("## ITERATION LIMIT REACHED (10/10)")
    assert "1. Force exit (abandon work): `touch .deep/FORCE_EXIT`" in text
    assert "4. Review progress" in text


def test_to_dict_is_machine_readable():
    data = git_incomplete(["PR not created"], ["CI failed"]).to_dict()

    assert data["reason"] == ReasonCode.GIT_INCOMPLETE.value
    assert "**Missing:** PR not created" in data["body"]
    assert "**Failed:** CI failed" in data["body"]
    assert len(data["remediation"]) == 4


def test_escalation_lists_recent_errors():
    directive = escalation_required("t1", 3, ["a", "b"], ".deep")

    assert "Task `t1` has failed 3 consecutive times" in directive.body
    assert "- a\n- b" in directive.body


def test_tasks_remaining_mentions_failures():
    task = PersistentTask(id="t1", content="Write docs")

    assert "**Failed attempts:** 2" in tasks_remaining(task, 1, 2).body
    assert "Failed attempts" not in tasks_remaining(task, 1, 0).body


def test_validation_summary():
    assert validation_summary(0, 0) is None
    assert validation_summary(4, 0) == "### Validation: 4 files validated, no errors"
    assert validation_summary(4, 2) == "### Validation: 4 files validated, 2 errors pending"
