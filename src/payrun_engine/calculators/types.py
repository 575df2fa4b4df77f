"""Type definitions for the gross-to-net pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

ZERO = Decimal("0.00")


class PayFrequency(str, Enum):
    """Pay frequencies and their period counts."""

    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"
    MONTHLY = "monthly"

    @property
    def periods_per_year(self) -> int:
        return {
            PayFrequency.WEEKLY: 52,
            PayFrequency.FORTNIGHTLY: 26,
            PayFrequency.MONTHLY: 12,
        }[self]


class ElementType(str, Enum):
    """Pay element categories."""

    EARNING = "earning"
    DEDUCTION = "deduction"
    EMPLOYER_CONTRIBUTION = "employer_contribution"


class Severity(str, Enum):
    """Exception severity. Only ERROR blocks a run."""

    WARNING = "warning"
    ERROR = "error"


class ExceptionType(str, Enum):
    """Pay run line exception types."""

    NEGATIVE_NET_PAY = "negative_net_pay"
    MISSING_BANK_DETAILS = "missing_bank_details"
    MISSING_TAX_NUMBER = "missing_tax_number"
    MISSING_ID_NUMBER = "missing_id_number"
    LARGE_VARIANCE = "large_variance"
    SALARY_CHANGE = "salary_change"
    NEW_EMPLOYEE = "new_employee"
    TERMINATED = "terminated"
    MANUAL_ADJUSTMENT = "manual_adjustment"


class AdjustmentType(str, Enum):
    """How an adjustment is applied to pay runs."""

    ONCE_OFF = "once_off"
    RECURRING = "recurring"
    RETRO = "retro"


class AdjustmentStatus(str, Enum):
    """Adjustment approval lifecycle: pending -> approved/rejected, approved -> applied."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


def _decimal_or_none(value: Any) -> Decimal | None:
    return None if value is None else Decimal(str(value))


def _str_or_none(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _date_or_none(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass(frozen=True)
class BankDetails:
    """Employee bank account as supplied by the employee directory."""

    account_holder: str | None = None
    bank_name: str | None = None
    account_number: str | None = None
    branch_code: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.account_holder and self.account_number and self.branch_code)

    @property
    def masked_account_number(self) -> str | None:
        return mask_account_number(self.account_number)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_holder": self.account_holder,
            "bank_name": self.bank_name,
            "account_number": self.account_number,
            "branch_code": self.branch_code,
        }


def mask_account_number(account_number: str | None) -> str | None:
    """Mask all but the last four digits, e.g. ``****1234``."""
    if not account_number:
        return None
    return "****" + account_number[-4:]


@dataclass(frozen=True)
class ElementAssignment:
    """An employee's use of a pay element for one period.

    Values left as None fall back to the element definition's defaults.
    """

    code: str
    amount: Decimal | None = None
    percentage: Decimal | None = None
    rate: Decimal | None = None
    units: Decimal | None = None
    reference: str | None = None
    notes: str | None = None
    is_adjustment: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "amount": _str_or_none(self.amount),
            "percentage": _str_or_none(self.percentage),
            "rate": _str_or_none(self.rate),
            "units": _str_or_none(self.units),
            "reference": self.reference,
            "notes": self.notes,
            "is_adjustment": self.is_adjustment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ElementAssignment:
        return cls(
            code=data["code"],
            amount=_decimal_or_none(data.get("amount")),
            percentage=_decimal_or_none(data.get("percentage")),
            rate=_decimal_or_none(data.get("rate")),
            units=_decimal_or_none(data.get("units")),
            reference=data.get("reference"),
            notes=data.get("notes"),
            is_adjustment=bool(data.get("is_adjustment", False)),
        )


@dataclass(frozen=True)
class EmployeeSnapshot:
    """Employee data frozen at inputs_locked.

    Captured once from the employee directory; calculation never reads
    live employee records.
    """

    employee_id: str
    employee_number: str
    employee_name: str
    basic_salary: Decimal
    id_number: str | None = None
    tax_number: str | None = None
    department: str | None = None
    job_title: str | None = None
    hourly_rate: Decimal | None = None
    bank: BankDetails | None = None
    uif_exempt: bool = False
    start_date: date | None = None
    termination_date: date | None = None
    assignments: tuple[ElementAssignment, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "employee_id": self.employee_id,
            "employee_number": self.employee_number,
            "employee_name": self.employee_name,
            "basic_salary": str(self.basic_salary),
            "id_number": self.id_number,
            "tax_number": self.tax_number,
            "department": self.department,
            "job_title": self.job_title,
            "hourly_rate": _str_or_none(self.hourly_rate),
            "bank": self.bank.to_dict() if self.bank else None,
            "uif_exempt": self.uif_exempt,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "termination_date": (
                self.termination_date.isoformat() if self.termination_date else None
            ),
            "assignments": [a.to_dict() for a in self.assignments],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmployeeSnapshot:
        bank = data.get("bank")
        return cls(
            employee_id=data["employee_id"],
            employee_number=data["employee_number"],
            employee_name=data["employee_name"],
            basic_salary=Decimal(str(data["basic_salary"])),
            id_number=data.get("id_number"),
            tax_number=data.get("tax_number"),
            department=data.get("department"),
            job_title=data.get("job_title"),
            hourly_rate=_decimal_or_none(data.get("hourly_rate")),
            bank=BankDetails(**bank) if bank else None,
            uif_exempt=bool(data.get("uif_exempt", False)),
            start_date=_date_or_none(data.get("start_date")),
            termination_date=_date_or_none(data.get("termination_date")),
            assignments=tuple(
                ElementAssignment.from_dict(a) for a in data.get("assignments", [])
            ),
        )


@dataclass(frozen=True)
class LineItem:
    """One itemized earning, deduction or employer contribution.

    Element code, name and tax flags are copied from the definition so
    later edits to the element never change a computed line.
    """

    code: str
    name: str
    element_type: ElementType
    amount: Decimal
    rate: Decimal | None = None
    units: Decimal | None = None
    percentage: Decimal | None = None
    is_taxable: bool = False
    is_uif_applicable: bool = False
    is_sdl_applicable: bool = False
    is_pre_tax: bool = False
    reference: str | None = None
    notes: str | None = None

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for hashing (deterministic ordering)."""
        return {
            "code": self.code,
            "element_type": self.element_type.value,
            "amount": str(self.amount),
            "rate": _str_or_none(self.rate),
            "units": _str_or_none(self.units),
            "percentage": _str_or_none(self.percentage),
            "flags": [
                self.is_taxable,
                self.is_uif_applicable,
                self.is_sdl_applicable,
                self.is_pre_tax,
            ],
        }


@dataclass(frozen=True)
class YtdTotals:
    """Year-to-date accumulators for one employee within one tax year."""

    gross: Decimal = ZERO
    taxable: Decimal = ZERO
    paye: Decimal = ZERO
    uif: Decimal = ZERO
    sdl: Decimal = ZERO
    net: Decimal = ZERO

    def add(
        self,
        gross: Decimal,
        taxable: Decimal,
        paye: Decimal,
        uif: Decimal,
        sdl: Decimal,
        net: Decimal,
    ) -> YtdTotals:
        return YtdTotals(
            gross=self.gross + gross,
            taxable=self.taxable + taxable,
            paye=self.paye + paye,
            uif=self.uif + uif,
            sdl=self.sdl + sdl,
            net=self.net + net,
        )


@dataclass(frozen=True)
class EmployeeHistory:
    """What the last finalised runs say about an employee."""

    ytd: YtdTotals = field(default_factory=YtdTotals)
    last_net_pay: Decimal | None = None
    last_basic_salary: Decimal | None = None


@dataclass(frozen=True)
class DetectedException:
    """A typed, severity-ranked flag on a computed line."""

    exception_type: ExceptionType
    severity: Severity
    message: str
    details: str | None = None
    is_resolved: bool = False

    @property
    def is_blocking(self) -> bool:
        return self.severity == Severity.ERROR and not self.is_resolved


@dataclass
class LineCalculation:
    """Result of calculating one employee's pay for a run."""

    employee: EmployeeSnapshot
    basic_salary: Decimal
    earnings: list[LineItem]
    deductions: list[LineItem]
    employer_contributions: list[LineItem]
    gross_earnings: Decimal
    taxable_income: Decimal
    paye: Decimal
    uif_employee: Decimal
    uif_employer: Decimal
    sdl: Decimal
    total_deductions: Decimal
    total_employer_contributions: Decimal
    net_pay: Decimal
    ytd: YtdTotals
    is_included: bool = True
    exclude_reason: str | None = None
    exceptions: list[DetectedException] = field(default_factory=list)
    calculation_hash: str = ""

    @property
    def items(self) -> list[LineItem]:
        return [*self.earnings, *self.deductions, *self.employer_contributions]

    @property
    def has_adjustments(self) -> bool:
        return any(a.is_adjustment for a in self.employee.assignments)
