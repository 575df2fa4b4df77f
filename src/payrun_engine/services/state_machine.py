"""Pay run state machine with transition validation."""

from __future__ import annotations

from enum import Enum

from payrun_engine.errors import StateConflictError


class PayRunStatus(str, Enum):
    """Pay run status values, in lifecycle order."""

    DRAFT = "draft"
    INPUTS_LOCKED = "inputs_locked"
    CALCULATING = "calculating"
    CALCULATED = "calculated"
    REVIEW = "review"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    FINALISING = "finalising"
    FINALISED = "finalised"
    CLOSED = "closed"


class PayRunStateMachine:
    """State machine for pay run status transitions.

    Forward transitions are strictly linear; every status has exactly one
    successor:
    - draft → inputs_locked → calculating → calculated
    - calculated → review → pending_approval → approved
    - approved → finalising → finalised → closed

    Two audited operations move backwards and are not part of the
    forward table:
    - reopen: approved / finalising / finalised → calculated
    - unlock inputs: inputs_locked / calculating / calculated → draft
    """

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayRunStatus.DRAFT: [PayRunStatus.INPUTS_LOCKED],
        PayRunStatus.INPUTS_LOCKED: [PayRunStatus.CALCULATING],
        PayRunStatus.CALCULATING: [PayRunStatus.CALCULATED],
        PayRunStatus.CALCULATED: [PayRunStatus.REVIEW],
        PayRunStatus.REVIEW: [PayRunStatus.PENDING_APPROVAL],
        PayRunStatus.PENDING_APPROVAL: [PayRunStatus.APPROVED],
        PayRunStatus.APPROVED: [PayRunStatus.FINALISING],
        PayRunStatus.FINALISING: [PayRunStatus.FINALISED],
        PayRunStatus.FINALISED: [PayRunStatus.CLOSED],
        PayRunStatus.CLOSED: [],  # Terminal state
    }

    # Statuses from which a (re)calculation may start
    CALCULATION_ALLOWED = {
        PayRunStatus.INPUTS_LOCKED,
        PayRunStatus.CALCULATING,
        PayRunStatus.CALCULATED,
    }

    # Statuses where lines can be excluded/included and exceptions resolved
    LINES_EDITABLE = {
        PayRunStatus.CALCULATED,
        PayRunStatus.REVIEW,
        PayRunStatus.PENDING_APPROVAL,
    }

    # Leaving these statuses requires zero blocking exceptions
    GATED = {
        PayRunStatus.REVIEW,
        PayRunStatus.PENDING_APPROVAL,
    }

    REOPENABLE = {
        PayRunStatus.APPROVED,
        PayRunStatus.FINALISING,
        PayRunStatus.FINALISED,
    }

    UNLOCKABLE = {
        PayRunStatus.INPUTS_LOCKED,
        PayRunStatus.CALCULATING,
        PayRunStatus.CALCULATED,
    }

    # Runs may only be deleted before approval
    DELETABLE = {
        PayRunStatus.DRAFT,
        PayRunStatus.INPUTS_LOCKED,
        PayRunStatus.CALCULATING,
        PayRunStatus.CALCULATED,
        PayRunStatus.REVIEW,
        PayRunStatus.PENDING_APPROVAL,
    }

    # Statuses whose transition into them records actor and timestamp
    STAMPED = {
        PayRunStatus.INPUTS_LOCKED: "inputs_locked",
        PayRunStatus.CALCULATED: "calculated",
        PayRunStatus.APPROVED: "approved",
        PayRunStatus.FINALISED: "finalised",
        PayRunStatus.CLOSED: "closed",
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising StateConflictError if invalid."""
        if not cls.can_transition(from_status, to_status):
            expected = cls.get_next_statuses(from_status)
            reason = (
                f"next status is '{expected[0]}'"
                if expected
                else f"'{_value(from_status)}' is terminal"
            )
            raise StateConflictError(_value(from_status), _value(to_status), reason)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return [_value(s) for s in cls.VALID_TRANSITIONS.get(current_status, [])]

    @classmethod
    def can_calculate(cls, status: str) -> bool:
        return status in cls.CALCULATION_ALLOWED

    @classmethod
    def can_edit_lines(cls, status: str) -> bool:
        return status in cls.LINES_EDITABLE

    @classmethod
    def requires_clean_exceptions(cls, from_status: str) -> bool:
        """Check if leaving this status needs all error exceptions cleared."""
        return from_status in cls.GATED

    @classmethod
    def can_reopen(cls, status: str) -> bool:
        return status in cls.REOPENABLE

    @classmethod
    def can_unlock(cls, status: str) -> bool:
        return status in cls.UNLOCKABLE

    @classmethod
    def can_delete(cls, status: str) -> bool:
        return status in cls.DELETABLE

    @classmethod
    def stamp_prefix(cls, to_status: str) -> str | None:
        """Column prefix (``<prefix>_by``/``<prefix>_at``) stamped on entry."""
        return cls.STAMPED.get(to_status)


def _value(status: str) -> str:
    return status.value if isinstance(status, PayRunStatus) else status
