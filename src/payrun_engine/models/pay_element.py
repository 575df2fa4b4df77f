"""Tenant-owned pay element definitions and payroll settings."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from payrun_engine.calculators.pay_elements import PayElementDefinition, method_from_dict
from payrun_engine.calculators.types import ElementType
from payrun_engine.models.base import Base, ExactDecimal, JSONType, TimestampMixin, utcnow


class PayElement(Base, TimestampMixin):
    """A reusable earning, deduction or employer contribution definition."""

    __tablename__ = "pay_element"

    pay_element_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    element_type: Mapped[str] = mapped_column(String, nullable=False)
    calculation_method: Mapped[str] = mapped_column(String, nullable=False)
    method_params_json: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_uif_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_sdl_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pension_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pre_tax: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    gl_code: Mapped[str | None] = mapped_column(String, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="pay_element_tenant_code_unique"),
        CheckConstraint(
            "element_type IN ('earning', 'deduction', 'employer_contribution')",
            name="pay_element_type_check",
        ),
        CheckConstraint(
            "calculation_method IN ('fixed', 'percentage', 'hourly', 'daily', 'formula')",
            name="pay_element_method_check",
        ),
    )

    def to_definition(self) -> PayElementDefinition:
        """Build the validated definition; raises PayElementError if invalid."""
        return PayElementDefinition(
            code=self.code,
            name=self.name,
            element_type=ElementType(self.element_type),
            method=method_from_dict(self.calculation_method, self.method_params_json),
            is_taxable=self.is_taxable,
            is_uif_applicable=self.is_uif_applicable,
            is_sdl_applicable=self.is_sdl_applicable,
            is_pension_applicable=self.is_pension_applicable,
            is_pre_tax=self.is_pre_tax,
            is_recurring=self.is_recurring,
            is_active=self.is_active,
            gl_code=self.gl_code,
            sort_order=self.sort_order,
        )

    def apply_definition(self, definition: PayElementDefinition) -> None:
        data = definition.to_dict()
        self.code = definition.code
        self.name = definition.name
        self.element_type = definition.element_type.value
        self.calculation_method = data["calculation_method"]
        self.method_params_json = data["method_params"]
        self.is_taxable = definition.is_taxable
        self.is_uif_applicable = definition.is_uif_applicable
        self.is_sdl_applicable = definition.is_sdl_applicable
        self.is_pension_applicable = definition.is_pension_applicable
        self.is_pre_tax = definition.is_pre_tax
        self.is_recurring = definition.is_recurring
        self.is_active = definition.is_active
        self.gl_code = definition.gl_code
        self.sort_order = definition.sort_order

    @classmethod
    def from_definition(cls, tenant_id: UUID, definition: PayElementDefinition) -> PayElement:
        element = cls(tenant_id=tenant_id)
        element.apply_definition(definition)
        return element


class TenantPayrollSettings(Base, TimestampMixin):
    """Per-tenant payroll options. Absent rows fall back to defaults."""

    __tablename__ = "tenant_payroll_settings"

    tenant_id: Mapped[UUID] = mapped_column(primary_key=True)
    sdl_registered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    pay_day: Mapped[int] = mapped_column(Integer, nullable=False, default=25)
    cut_off_day: Mapped[int] = mapped_column(Integer, nullable=False, default=25)
    large_variance_threshold_pct: Mapped[Decimal | None] = mapped_column(
        ExactDecimal, nullable=True
    )

    __table_args__ = (
        CheckConstraint("pay_day BETWEEN 1 AND 31", name="tenant_settings_pay_day_check"),
        CheckConstraint("cut_off_day BETWEEN 1 AND 31", name="tenant_settings_cut_off_check"),
    )
