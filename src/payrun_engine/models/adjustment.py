"""Payroll adjustments awaiting, or folded into, a pay run."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from payrun_engine.calculators.types import AdjustmentStatus, AdjustmentType, ElementAssignment
from payrun_engine.models.base import Base, Cents, ExactDecimal, TimestampMixin, utcnow

if TYPE_CHECKING:
    from payrun_engine.models.payroll import PayRun

ADJUSTMENT_TYPES = tuple(t.value for t in AdjustmentType)
ADJUSTMENT_STATUSES = tuple(s.value for s in AdjustmentStatus)


class PayrollAdjustment(Base, TimestampMixin):
    """An extra earning or deduction for one employee, approved before use.

    Approved adjustments are copied into the employee's frozen inputs when
    a run locks. Once-off and retro adjustments then become ``applied``
    to that run; recurring ones stay approved for every run their
    effective dates overlap.
    """

    __tablename__ = "payroll_adjustment"

    adjustment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_id: Mapped[str] = mapped_column(String, nullable=False)
    element_code: Mapped[str] = mapped_column(String, nullable=False)
    adjustment_type: Mapped[str] = mapped_column(String, nullable=False)

    amount: Mapped[Decimal | None] = mapped_column(Cents, nullable=True)
    percentage: Mapped[Decimal | None] = mapped_column(ExactDecimal, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Either a specific run, or a date window
    effective_pay_run_id: Mapped[UUID | None] = mapped_column(nullable=True)
    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    retro_period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    retro_period_end: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=AdjustmentStatus.PENDING.value
    )
    requires_approval: Mapped[bool] = mapped_column(nullable=False, default=True)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_pay_run_id: Mapped[UUID | None] = mapped_column(nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_by: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "adjustment_type IN (" + ", ".join(f"'{t}'" for t in ADJUSTMENT_TYPES) + ")",
            name="payroll_adjustment_type_check",
        ),
        CheckConstraint(
            "status IN (" + ", ".join(f"'{s}'" for s in ADJUSTMENT_STATUSES) + ")",
            name="payroll_adjustment_status_check",
        ),
        Index("ix_payroll_adjustment_tenant_status", "tenant_id", "status"),
    )

    @property
    def is_retroactive(self) -> bool:
        return self.adjustment_type == AdjustmentType.RETRO.value

    @property
    def is_recurring(self) -> bool:
        return self.adjustment_type == AdjustmentType.RECURRING.value

    def applies_to(self, pay_run: PayRun) -> bool:
        """Whether this approved adjustment belongs in the run's inputs."""
        if self.status != AdjustmentStatus.APPROVED.value:
            return False
        if self.effective_pay_run_id is not None:
            return self.effective_pay_run_id == pay_run.pay_run_id
        if self.effective_from is not None and self.effective_from > pay_run.period_end:
            return False
        if self.is_recurring and self.effective_to is not None:
            return self.effective_to >= pay_run.period_start
        return True

    def to_assignment(self) -> ElementAssignment:
        notes = self.reason
        if self.is_retroactive and self.retro_period_start and self.retro_period_end:
            notes = (
                f"{self.reason} (retro {self.retro_period_start.isoformat()}"
                f" to {self.retro_period_end.isoformat()})"
            )
        return ElementAssignment(
            code=self.element_code,
            amount=self.amount,
            percentage=self.percentage,
            reference=f"ADJ-{str(self.adjustment_id)[:8].upper()}",
            notes=notes,
            is_adjustment=True,
        )
