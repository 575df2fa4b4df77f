"""Domain errors raised by the pay run engine.

Every error carries a stable ``code`` so the API layer can map it to a
response without string matching.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID


class PayRunError(Exception):
    """Base class for all pay run engine errors."""

    code = "PAY_RUN_ERROR"


class InputValidationError(PayRunError):
    """Raised when required input data is missing or invalid.

    Raised before any state mutation, naming the offending field and,
    where relevant, the employee it belongs to.
    """

    code = "INPUT_INVALID"

    def __init__(self, field: str, message: str, employee_number: str | None = None):
        self.field = field
        self.employee_number = employee_number
        self.message = message
        prefix = f"Employee {employee_number}: " if employee_number else ""
        super().__init__(f"{prefix}{field}: {message}")


class PayPeriodError(InputValidationError):
    """Raised for an invalid frequency, period number or tax year label."""

    code = "PAY_PERIOD_INVALID"


class PayElementError(InputValidationError):
    """Raised when a pay element definition or assignment is invalid."""

    code = "PAY_ELEMENT_INVALID"


class TaxPolicyNotFoundError(PayRunError):
    """Raised when no tax policy is configured for a tax year."""

    code = "TAX_POLICY_NOT_FOUND"

    def __init__(self, tax_year: str):
        self.tax_year = tax_year
        super().__init__(f"No tax policy configured for tax year '{tax_year}'")


class PayRunNotFoundError(PayRunError):
    """Raised when a pay run, line or exception does not exist for the tenant."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: UUID | str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class StateConflictError(PayRunError):
    """Raised when a transition is out of order for the run's current status.

    Always retryable by re-reading the current state.
    """

    code = "STATE_CONFLICT"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DuplicatePayRunError(PayRunError):
    """Raised when a run already exists for the tenant, frequency and period."""

    code = "DUPLICATE_PAY_RUN"

    def __init__(self, frequency: str, tax_year: str, period_number: int):
        self.frequency = frequency
        self.tax_year = tax_year
        self.period_number = period_number
        super().__init__(
            f"A {frequency} pay run for period {period_number} of {tax_year} already exists"
        )


class ConcurrentModificationError(StateConflictError):
    """Raised when another writer changed the run between read and write."""

    code = "CONCURRENT_MODIFICATION"


class AdjustmentStateError(StateConflictError):
    """Raised when an adjustment's status does not allow the change."""

    code = "ADJUSTMENT_STATE_CONFLICT"


@dataclass(frozen=True)
class BlockingLine:
    """One line holding unresolved error-severity exceptions."""

    pay_run_line_id: UUID
    employee_number: str
    employee_name: str
    exception_types: list[str] = field(default_factory=list)


class BlockingExceptionsError(StateConflictError):
    """Raised when unresolved error exceptions block a transition."""

    code = "BLOCKING_EXCEPTIONS"

    def __init__(self, from_status: str, to_status: str, lines: list[BlockingLine]):
        self.lines = lines
        names = ", ".join(
            f"{line.employee_number} {line.employee_name} ({', '.join(line.exception_types)})"
            for line in lines
        )
        super().__init__(
            from_status,
            to_status,
            f"{len(lines)} line(s) have unresolved error exceptions: {names}",
        )


class OutputRequestError(PayRunError):
    """Raised when an output generator rejects a trigger call."""

    code = "OUTPUT_REQUEST_FAILED"

    def __init__(self, output: str, reason: str):
        self.output = output
        super().__init__(f"Requesting {output} failed: {reason}")
