"""Pay run, frozen input, line, line item, exception and audit models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payrun_engine.calculators.types import (
    ElementType,
    EmployeeSnapshot,
    Severity,
    mask_account_number,
)
from payrun_engine.models.base import Base, Cents, ExactDecimal, JSONType, TimestampMixin

ZERO = Decimal("0.00")

PAY_RUN_STATUSES = (
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
)


def _in_check(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


class PayRun(Base, TimestampMixin):
    """One payroll cycle for one tenant and one pay frequency/period."""

    __tablename__ = "pay_run"

    pay_run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    frequency: Mapped[str] = mapped_column(String, nullable=False)
    period_number: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_year: Mapped[str] = mapped_column(String(9), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    cut_off_date: Mapped[date] = mapped_column(Date, nullable=False)
    pay_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    sdl_registered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    employee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exception_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    total_gross: Mapped[Decimal] = mapped_column(Cents, nullable=False, default=ZERO)
    total_deductions: Mapped[Decimal] = mapped_column(Cents, nullable=False, default=ZERO)
    total_employer_contributions: Mapped[Decimal] = mapped_column(
        Cents, nullable=False, default=ZERO
    )
    total_net: Mapped[Decimal] = mapped_column(Cents, nullable=False, default=ZERO)
    total_paye: Mapped[Decimal] = mapped_column(Cents, nullable=False, default=ZERO)
    total_uif_employee: Mapped[Decimal] = mapped_column(Cents, nullable=False, default=ZERO)
    total_uif_employer: Mapped[Decimal] = mapped_column(Cents, nullable=False, default=ZERO)
    total_sdl: Mapped[Decimal] = mapped_column(Cents, nullable=False, default=ZERO)

    created_by: Mapped[str] = mapped_column(String, nullable=False)
    inputs_locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    inputs_locked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    calculated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    finalised_by: Mapped[str | None] = mapped_column(String, nullable=True)
    finalised_at: Mapped[datetime | None] = mapped_column(nullable=True)
    closed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reopened_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reopened_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reopen_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reopen_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    payslips_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    bank_file_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    journal_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    element_snapshot_json: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSONType, nullable=True
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "frequency",
            "tax_year",
            "period_number",
            name="pay_run_tenant_period_unique",
        ),
        CheckConstraint(_in_check("status", PAY_RUN_STATUSES), name="pay_run_status_check"),
        CheckConstraint(
            "frequency IN ('weekly', 'fortnightly', 'monthly')",
            name="pay_run_frequency_check",
        ),
        CheckConstraint("period_end >= period_start", name="pay_run_dates_check"),
        Index("ix_pay_run_tenant_status", "tenant_id", "status"),
    )


class PayRunInput(Base, TimestampMixin):
    """Per-employee input frozen when the run's inputs are locked."""

    __tablename__ = "pay_run_input"

    pay_run_input_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run.pay_run_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[str] = mapped_column(String, nullable=False)
    employee_number: Mapped[str] = mapped_column(String, nullable=False)
    snapshot_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    unpaid_leave_days: Mapped[Decimal] = mapped_column(
        ExactDecimal, nullable=False, default=Decimal("0")
    )
    is_included: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    exclude_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("pay_run_id", "employee_id", name="pay_run_input_employee_unique"),
    )

    @property
    def snapshot(self) -> EmployeeSnapshot:
        return EmployeeSnapshot.from_dict(self.snapshot_json)


class PayRunLine(Base, TimestampMixin):
    """One employee's computed payslip data for a pay run."""

    __tablename__ = "pay_run_line"

    pay_run_line_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run.pay_run_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Employee identity, captured at calculation time
    employee_id: Mapped[str] = mapped_column(String, nullable=False)
    employee_number: Mapped[str] = mapped_column(String, nullable=False)
    employee_name: Mapped[str] = mapped_column(String, nullable=False)
    id_number: Mapped[str | None] = mapped_column(String, nullable=True)
    tax_number: Mapped[str | None] = mapped_column(String, nullable=True)
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    job_title: Mapped[str | None] = mapped_column(String, nullable=True)

    basic_salary: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    gross_earnings: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    taxable_income: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    paye: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    uif_employee: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    uif_employer: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    sdl: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    total_deductions: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    total_employer_contributions: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    net_pay: Mapped[Decimal] = mapped_column(Cents, nullable=False)

    ytd_gross: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    ytd_taxable: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    ytd_paye: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    ytd_uif: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    ytd_sdl: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    ytd_net: Mapped[Decimal] = mapped_column(Cents, nullable=False)

    is_included: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    exclude_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_adjustments: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Bank details snapshot; full number is for bank-file generation only
    bank_account_holder: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_account_number: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_branch_code: Mapped[str | None] = mapped_column(String, nullable=True)

    calculation_hash: Mapped[str] = mapped_column(String(32), nullable=False)

    __table_args__ = (
        UniqueConstraint("pay_run_id", "employee_id", name="pay_run_line_employee_unique"),
        Index("ix_pay_run_line_employee", "employee_id"),
    )

    items: Mapped[list[PayRunLineItem]] = relationship(
        order_by="PayRunLineItem.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    exceptions: Mapped[list[PayRunException]] = relationship(
        order_by="PayRunException.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def masked_account_number(self) -> str | None:
        return mask_account_number(self.bank_account_number)

    @property
    def earnings(self) -> list[PayRunLineItem]:
        return [i for i in self.items if i.element_type == ElementType.EARNING.value]

    @property
    def deductions(self) -> list[PayRunLineItem]:
        return [i for i in self.items if i.element_type == ElementType.DEDUCTION.value]

    @property
    def employer_contributions(self) -> list[PayRunLineItem]:
        return [
            i
            for i in self.items
            if i.element_type == ElementType.EMPLOYER_CONTRIBUTION.value
        ]

    @property
    def blocking_exceptions(self) -> list[PayRunException]:
        """Unresolved error exceptions. Excluded lines never block."""
        if not self.is_included:
            return []
        return [e for e in self.exceptions if e.is_blocking]


class PayRunLineItem(Base):
    """One itemized earning, deduction or employer contribution on a line."""

    __tablename__ = "pay_run_line_item"

    pay_run_line_item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_run_line_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run_line.pay_run_line_id", ondelete="CASCADE"),
        nullable=False,
    )
    pay_run_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    element_code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    element_type: Mapped[str] = mapped_column(String, nullable=False)
    rate: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    units: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    percentage: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Cents, nullable=False)
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_uif_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_sdl_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pre_tax: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reference: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "element_type IN ('earning', 'deduction', 'employer_contribution')",
            name="pay_run_line_item_type_check",
        ),
        CheckConstraint("amount >= 0", name="pay_run_line_item_amount_check"),
    )


class PayRunException(Base, TimestampMixin):
    """Typed, severity-ranked flag attached to a pay run line."""

    __tablename__ = "pay_run_exception"

    pay_run_exception_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_run_line_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run_line.pay_run_line_id", ondelete="CASCADE"),
        nullable=False,
    )
    pay_run_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    exception_type: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "severity IN ('warning', 'error')",
            name="pay_run_exception_severity_check",
        ),
    )

    @property
    def is_blocking(self) -> bool:
        return self.severity == Severity.ERROR.value and not self.is_resolved


class AuditEvent(Base, TimestampMixin):
    """Audit trail entry."""

    __tablename__ = "audit_event"

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    actor_id: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[UUID] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (Index("ix_audit_event_entity", "entity_type", "entity_id"),)
