"""Tests for pay run state machine."""

import pytest

from payrun_engine.errors import StateConflictError
from payrun_engine.services.state_machine import PayRunStateMachine, PayRunStatus

LIFECYCLE = [
    "draft",
    "inputs_locked",
    "calculating",
    "calculated",
    "review",
    "pending_approval",
    "approved",
    "finalising",
    "finalised",
    "closed",
]


class TestPayRunStateMachine:
    """Test state machine transitions."""

    def test_statuses_in_lifecycle_order(self):
        assert [s.value for s in PayRunStatus] == LIFECYCLE

    @pytest.mark.parametrize("current,following", zip(LIFECYCLE, LIFECYCLE[1:]))
    def test_each_status_has_one_successor(self, current, following):
        assert PayRunStateMachine.get_next_statuses(current) == [following]
        assert PayRunStateMachine.can_transition(current, following) is True

    def test_invalid_transitions(self):
        """Test that invalid transitions are blocked."""
        # Can't skip a step
        assert PayRunStateMachine.can_transition("draft", "calculating") is False
        assert PayRunStateMachine.can_transition("review", "approved") is False

        # Backward moves only happen through reopen and unlock
        assert PayRunStateMachine.can_transition("approved", "calculated") is False
        assert PayRunStateMachine.can_transition("calculated", "draft") is False

        # Closed is terminal
        assert PayRunStateMachine.can_transition("closed", "draft") is False

    def test_validate_transition_raises(self):
        """Test that validate_transition raises for invalid transitions."""
        with pytest.raises(StateConflictError) as exc_info:
            PayRunStateMachine.validate_transition("draft", "approved")

        assert exc_info.value.from_status == "draft"
        assert exc_info.value.to_status == "approved"
        assert exc_info.value.reason == "next status is 'inputs_locked'"

    def test_validate_terminal(self):
        with pytest.raises(StateConflictError) as exc_info:
            PayRunStateMachine.validate_transition(PayRunStatus.CLOSED, PayRunStatus.DRAFT)

        assert exc_info.value.from_status == "closed"
        assert "terminal" in exc_info.value.reason

    def test_validate_accepts_enum_members(self):
        PayRunStateMachine.validate_transition(PayRunStatus.REVIEW, PayRunStatus.PENDING_APPROVAL)

    def test_closed_has_no_next(self):
        assert PayRunStateMachine.get_next_statuses("closed") == []


class TestStatusGroups:
    """Which operations each status permits."""

    @pytest.mark.parametrize(
        "status,expected",
        [("draft", False), ("inputs_locked", True), ("calculated", True), ("review", False)],
    )
    def test_can_calculate(self, status, expected):
        assert PayRunStateMachine.can_calculate(status) is expected

    def test_gated_statuses(self):
        assert PayRunStateMachine.requires_clean_exceptions("review") is True
        assert PayRunStateMachine.requires_clean_exceptions("pending_approval") is True
        assert PayRunStateMachine.requires_clean_exceptions("calculated") is False

    def test_reopen_and_unlock(self):
        assert PayRunStateMachine.can_reopen("finalised") is True
        assert PayRunStateMachine.can_reopen("closed") is False
        assert PayRunStateMachine.can_unlock("calculated") is True
        assert PayRunStateMachine.can_unlock("review") is False

    def test_delete_only_before_approval(self):
        assert PayRunStateMachine.can_delete("pending_approval") is True
        assert PayRunStateMachine.can_delete("approved") is False
        assert PayRunStateMachine.can_delete("finalised") is False

    def test_lines_editable(self):
        assert PayRunStateMachine.can_edit_lines("review") is True
        assert PayRunStateMachine.can_edit_lines("approved") is False

    def test_stamp_prefix(self):
        assert PayRunStateMachine.stamp_prefix("approved") == "approved"
        assert PayRunStateMachine.stamp_prefix("review") is None
