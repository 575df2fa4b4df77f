"""Exception detection over computed pay lines.

Each rule is a plain callable taking a ``RuleContext`` and returning a
``DetectedException`` or None. The detector runs every rule in order, so
tenants can extend the default list without touching existing rules.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Sequence

from payrun_engine.calculators.types import (
    DetectedException,
    EmployeeHistory,
    EmployeeSnapshot,
    ExceptionType,
    LineCalculation,
    Severity,
)

DEFAULT_VARIANCE_THRESHOLD_PCT = Decimal("20")


@dataclass(frozen=True)
class RuleContext:
    line: LineCalculation
    period_start: date
    period_end: date
    history: EmployeeHistory
    variance_threshold_pct: Decimal = DEFAULT_VARIANCE_THRESHOLD_PCT

    @property
    def employee(self) -> EmployeeSnapshot:
        return self.line.employee


Rule = Callable[[RuleContext], Optional[DetectedException]]


def negative_net_pay(ctx: RuleContext) -> DetectedException | None:
    if ctx.line.net_pay >= 0:
        return None
    return DetectedException(
        ExceptionType.NEGATIVE_NET_PAY,
        Severity.ERROR,
        "Net pay is negative",
        details=(
            f"Gross {ctx.line.gross_earnings} less deductions "
            f"{ctx.line.total_deductions} = {ctx.line.net_pay}"
        ),
    )


def missing_bank_details(ctx: RuleContext) -> DetectedException | None:
    bank = ctx.employee.bank
    if bank is not None and bank.is_complete:
        return None
    missing = [
        label
        for label, value in (
            ("account holder", bank.account_holder if bank else None),
            ("account number", bank.account_number if bank else None),
            ("branch code", bank.branch_code if bank else None),
        )
        if not value
    ]
    return DetectedException(
        ExceptionType.MISSING_BANK_DETAILS,
        Severity.ERROR,
        "Bank details are incomplete",
        details="Missing " + ", ".join(missing),
    )


def missing_tax_number(ctx: RuleContext) -> DetectedException | None:
    if ctx.employee.tax_number:
        return None
    return DetectedException(
        ExceptionType.MISSING_TAX_NUMBER, Severity.WARNING, "Tax number is missing"
    )


def missing_id_number(ctx: RuleContext) -> DetectedException | None:
    if ctx.employee.id_number:
        return None
    return DetectedException(
        ExceptionType.MISSING_ID_NUMBER, Severity.WARNING, "ID number is missing"
    )


def large_variance(ctx: RuleContext) -> DetectedException | None:
    previous = ctx.history.last_net_pay
    if previous is None or previous == 0:
        return None
    change_pct = (ctx.line.net_pay - previous) / abs(previous) * Decimal("100")
    if abs(change_pct) <= ctx.variance_threshold_pct:
        return None
    change_pct = change_pct.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return DetectedException(
        ExceptionType.LARGE_VARIANCE,
        Severity.WARNING,
        f"Net pay changed by {change_pct}% since the last finalised run",
        details=f"Previous {previous}, current {ctx.line.net_pay}",
    )


def salary_change(ctx: RuleContext) -> DetectedException | None:
    previous = ctx.history.last_basic_salary
    if previous is None or previous == ctx.line.basic_salary:
        return None
    return DetectedException(
        ExceptionType.SALARY_CHANGE,
        Severity.WARNING,
        "Basic salary changed since the last finalised run",
        details=f"Previous {previous}, current {ctx.line.basic_salary}",
    )


def new_employee(ctx: RuleContext) -> DetectedException | None:
    start = ctx.employee.start_date
    if start is None or not ctx.period_start <= start <= ctx.period_end:
        return None
    return DetectedException(
        ExceptionType.NEW_EMPLOYEE,
        Severity.WARNING,
        "Employee started during this period",
        details=f"Start date {start.isoformat()}",
    )


def terminated(ctx: RuleContext) -> DetectedException | None:
    end = ctx.employee.termination_date
    if end is None or end > ctx.period_end:
        return None
    return DetectedException(
        ExceptionType.TERMINATED,
        Severity.WARNING,
        "Employee terminated on or before period end",
        details=f"Termination date {end.isoformat()}",
    )


def manual_adjustment(ctx: RuleContext) -> DetectedException | None:
    codes = [a.code for a in ctx.employee.assignments if a.is_adjustment]
    if not codes:
        return None
    return DetectedException(
        ExceptionType.MANUAL_ADJUSTMENT,
        Severity.WARNING,
        "Line includes manual adjustments",
        details=", ".join(codes),
    )


DEFAULT_RULES: tuple[Rule, ...] = (
    negative_net_pay,
    missing_bank_details,
    missing_tax_number,
    missing_id_number,
    large_variance,
    salary_change,
    new_employee,
    terminated,
    manual_adjustment,
)


class ExceptionDetector:
    """Runs exception rules over a computed line."""

    def __init__(
        self,
        rules: Sequence[Rule] | None = None,
        variance_threshold_pct: Decimal = DEFAULT_VARIANCE_THRESHOLD_PCT,
    ):
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES
        self.variance_threshold_pct = variance_threshold_pct

    def detect(
        self,
        line: LineCalculation,
        period_start: date,
        period_end: date,
        history: EmployeeHistory | None = None,
    ) -> list[DetectedException]:
        ctx = RuleContext(
            line=line,
            period_start=period_start,
            period_end=period_end,
            history=history or EmployeeHistory(),
            variance_threshold_pct=self.variance_threshold_pct,
        )
        found = []
        for rule in self.rules:
            exception = rule(ctx)
            if exception is not None:
                found.append(exception)
        return found
