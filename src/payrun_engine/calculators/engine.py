"""Pay run calculation engine - per-employee orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Sequence

from payrun_engine.calculators.exceptions import ExceptionDetector
from payrun_engine.calculators.gross_to_net import GrossToNetCalculator
from payrun_engine.calculators.line_builder import LineItemBuilder
from payrun_engine.calculators.pay_elements import PayElementRegistry
from payrun_engine.calculators.tax_calculator import TaxCalculator
from payrun_engine.calculators.tax_policy import TaxPolicy
from payrun_engine.calculators.types import (
    EmployeeHistory,
    EmployeeSnapshot,
    LineCalculation,
    PayFrequency,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class EmployeeInput:
    """Everything needed to calculate one employee, frozen before calculation."""

    snapshot: EmployeeSnapshot
    unpaid_leave_days: Decimal = Decimal("0")
    history: EmployeeHistory = field(default_factory=EmployeeHistory)
    is_included: bool = True
    exclude_reason: str | None = None


@dataclass
class RunTotals:
    """Aggregate totals over the included lines of a run."""

    employee_count: int = 0
    processed_count: int = 0
    exception_count: int = 0
    total_gross: Decimal = ZERO
    total_deductions: Decimal = ZERO
    total_employer_contributions: Decimal = ZERO
    total_net: Decimal = ZERO
    total_paye: Decimal = ZERO
    total_uif_employee: Decimal = ZERO
    total_uif_employer: Decimal = ZERO
    total_sdl: Decimal = ZERO

    @classmethod
    def from_lines(cls, lines: Iterable[Any]) -> RunTotals:
        """Sum persisted or freshly computed lines.

        Excluded lines count as processed but add nothing to the totals.
        Exception count covers unresolved exceptions on included lines.
        """
        totals = cls()
        for line in lines:
            totals.processed_count += 1
            if not line.is_included:
                continue
            totals.employee_count += 1
            totals.exception_count += sum(1 for e in line.exceptions if not e.is_resolved)
            totals.total_gross += line.gross_earnings
            totals.total_deductions += line.total_deductions
            totals.total_employer_contributions += line.total_employer_contributions
            totals.total_net += line.net_pay
            totals.total_paye += line.paye
            totals.total_uif_employee += line.uif_employee
            totals.total_uif_employer += line.uif_employer
            totals.total_sdl += line.sdl
        return totals


class PayRunCalculationEngine:
    """Calculates lines for a pay run from frozen inputs.

    Pipeline per employee (stable order):
    1) Resolve pay elements and compute gross-to-net
    2) Detect exceptions against the snapshot and prior history
    3) Fingerprint the result

    Holds no database state, so batches can run on worker threads.
    """

    def __init__(
        self,
        registry: PayElementRegistry,
        policy: TaxPolicy,
        frequency: PayFrequency,
        period_start: date,
        period_end: date,
        sdl_registered: bool = True,
        detector: ExceptionDetector | None = None,
    ):
        self.calculator = GrossToNetCalculator(
            registry, TaxCalculator(policy), frequency, sdl_registered
        )
        self.detector = detector or ExceptionDetector()
        self.period_start = period_start
        self.period_end = period_end

    def calculate_employee(self, employee: EmployeeInput) -> LineCalculation:
        line = self.calculator.calculate(
            employee.snapshot,
            unpaid_leave_days=employee.unpaid_leave_days,
            history=employee.history,
            is_included=employee.is_included,
            exclude_reason=employee.exclude_reason,
        )
        line.exceptions = self.detector.detect(
            line, self.period_start, self.period_end, employee.history
        )
        line.calculation_hash = LineItemBuilder.compute_line_hash(line)
        return line

    def calculate_batch(self, employees: Sequence[EmployeeInput]) -> list[LineCalculation]:
        """Calculate a chunk of employees in input order."""
        lines = [self.calculate_employee(e) for e in employees]
        logger.debug("Calculated batch of %d employee(s)", len(lines))
        return lines
