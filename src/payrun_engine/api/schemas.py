"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Pay run schemas
# ============================================================================


class PayRunCreate(BaseModel):
    """Schema for creating a pay run."""

    frequency: str = Field(..., examples=["monthly"])
    period_number: int = Field(..., ge=1)
    tax_year: str = Field(..., examples=["2024/2025"])
    notes: str | None = None


class PayRunResponse(BaseModel):
    """Schema for pay run response."""

    model_config = ConfigDict(from_attributes=True)

    pay_run_id: UUID
    tenant_id: UUID
    frequency: str
    period_number: int
    tax_year: str
    period_start: date
    period_end: date
    cut_off_date: date
    pay_date: date
    status: str
    version: int
    sdl_registered: bool
    employee_count: int
    processed_count: int
    exception_count: int
    total_gross: Decimal
    total_deductions: Decimal
    total_employer_contributions: Decimal
    total_net: Decimal
    total_paye: Decimal
    total_uif_employee: Decimal
    total_uif_employer: Decimal
    total_sdl: Decimal
    created_by: str
    created_at: datetime
    inputs_locked_by: str | None = None
    inputs_locked_at: datetime | None = None
    calculated_by: str | None = None
    calculated_at: datetime | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    finalised_by: str | None = None
    finalised_at: datetime | None = None
    closed_by: str | None = None
    closed_at: datetime | None = None
    reopened_by: str | None = None
    reopened_at: datetime | None = None
    reopen_reason: str | None = None
    reopen_count: int
    payslips_generated: bool
    bank_file_generated: bool
    journal_generated: bool
    notes: str | None = None


class PayRunListResponse(BaseModel):
    """Schema for listing pay runs."""

    items: list[PayRunResponse]
    total: int


# ============================================================================
# Line schemas
# ============================================================================


class LineItemResponse(BaseModel):
    """Schema for one earning, deduction or employer contribution."""

    model_config = ConfigDict(from_attributes=True)

    element_code: str
    name: str
    element_type: str
    rate: Decimal | None = None
    units: Decimal | None = None
    percentage: Decimal | None = None
    amount: Decimal
    is_taxable: bool
    is_uif_applicable: bool
    is_sdl_applicable: bool
    is_pre_tax: bool
    reference: str | None = None
    notes: str | None = None


class ExceptionResponse(BaseModel):
    """Schema for a line exception."""

    model_config = ConfigDict(from_attributes=True)

    pay_run_exception_id: UUID
    pay_run_line_id: UUID
    exception_type: str
    severity: str
    message: str
    details: str | None = None
    is_resolved: bool
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution: str | None = None


class PayRunLineResponse(BaseModel):
    """Schema for one employee's line. Bank account numbers are masked."""

    model_config = ConfigDict(from_attributes=True)

    pay_run_line_id: UUID
    pay_run_id: UUID
    employee_id: str
    employee_number: str
    employee_name: str
    id_number: str | None = None
    tax_number: str | None = None
    department: str | None = None
    job_title: str | None = None
    basic_salary: Decimal
    gross_earnings: Decimal
    taxable_income: Decimal
    paye: Decimal
    uif_employee: Decimal
    uif_employer: Decimal
    sdl: Decimal
    total_deductions: Decimal
    total_employer_contributions: Decimal
    net_pay: Decimal
    ytd_gross: Decimal
    ytd_taxable: Decimal
    ytd_paye: Decimal
    ytd_uif: Decimal
    ytd_sdl: Decimal
    ytd_net: Decimal
    is_included: bool
    exclude_reason: str | None = None
    has_adjustments: bool = False
    bank_account_holder: str | None = None
    bank_name: str | None = None
    masked_account_number: str | None = None
    bank_branch_code: str | None = None
    calculation_hash: str
    items: list[LineItemResponse] = []
    exceptions: list[ExceptionResponse] = []


class PayRunLineListResponse(BaseModel):
    """Schema for listing a pay run's lines."""

    items: list[PayRunLineResponse]
    total: int


# ============================================================================
# Transition schemas
# ============================================================================


class TransitionRequest(BaseModel):
    """Schema for moving a run to its next status."""

    to_status: str


class ReasonRequest(BaseModel):
    """Schema for operations that require a reason (reopen, exclude)."""

    reason: str = Field(..., min_length=1)


class UnlockRequest(BaseModel):
    """Schema for unlocking inputs."""

    reason: str | None = None


class ResolveExceptionRequest(BaseModel):
    """Schema for resolving an exception."""

    resolution: str = Field(..., min_length=1)


class AuditEventResponse(BaseModel):
    """Schema for an audit trail entry."""

    model_config = ConfigDict(from_attributes=True)

    audit_event_id: UUID
    actor_id: str
    action: str
    details_json: dict[str, Any] | None = None
    created_at: datetime


# ============================================================================
# Pay element schemas
# ============================================================================


class PayElementCreate(BaseModel):
    """Schema for creating a pay element."""

    code: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    element_type: str
    calculation_method: str
    method_params: dict[str, Any] = {}
    is_taxable: bool = False
    is_uif_applicable: bool = False
    is_sdl_applicable: bool = False
    is_pension_applicable: bool = False
    is_pre_tax: bool = False
    is_recurring: bool = True
    is_active: bool = True
    gl_code: str | None = None
    sort_order: int = 0


class PayElementUpdate(BaseModel):
    """Schema for updating a pay element. Omitted fields are unchanged."""

    name: str | None = None
    calculation_method: str | None = None
    method_params: dict[str, Any] | None = None
    is_taxable: bool | None = None
    is_uif_applicable: bool | None = None
    is_sdl_applicable: bool | None = None
    is_pension_applicable: bool | None = None
    is_pre_tax: bool | None = None
    is_recurring: bool | None = None
    is_active: bool | None = None
    gl_code: str | None = None
    sort_order: int | None = None


class PayElementResponse(BaseModel):
    """Schema for pay element response."""

    model_config = ConfigDict(from_attributes=True)

    pay_element_id: UUID
    code: str
    name: str
    element_type: str
    calculation_method: str
    method_params_json: dict[str, Any]
    is_taxable: bool
    is_uif_applicable: bool
    is_sdl_applicable: bool
    is_pension_applicable: bool
    is_pre_tax: bool
    is_recurring: bool
    is_active: bool
    gl_code: str | None = None
    sort_order: int


class SeedResponse(BaseModel):
    added: int


# ============================================================================
# Tenant settings schemas
# ============================================================================


class PayrollSettingsResponse(BaseModel):
    """Schema for tenant payroll settings."""

    model_config = ConfigDict(from_attributes=True)

    tenant_id: UUID
    sdl_registered: bool
    pay_day: int
    cut_off_day: int
    large_variance_threshold_pct: Decimal | None = None


class PayrollSettingsUpdate(BaseModel):
    """Schema for updating tenant payroll settings."""

    sdl_registered: bool | None = None
    pay_day: int | None = None
    cut_off_day: int | None = None
    large_variance_threshold_pct: Decimal | None = None


# ============================================================================
# Adjustment schemas
# ============================================================================


class AdjustmentCreate(BaseModel):
    """Schema for creating a payroll adjustment."""

    employee_id: str = Field(..., min_length=1)
    element_code: str = Field(..., examples=["BONUS"])
    adjustment_type: str = Field(..., examples=["once_off"])
    reason: str = Field(..., min_length=1)
    amount: Decimal | None = None
    percentage: Decimal | None = None
    notes: str | None = None
    effective_pay_run_id: UUID | None = None
    effective_from: date | None = None
    effective_to: date | None = None
    retro_period_start: date | None = None
    retro_period_end: date | None = None
    requires_approval: bool = True


class AdjustmentUpdate(BaseModel):
    """Schema for editing a pending adjustment. Omitted fields are unchanged."""

    element_code: str | None = None
    amount: Decimal | None = None
    percentage: Decimal | None = None
    reason: str | None = None
    notes: str | None = None
    effective_pay_run_id: UUID | None = None
    effective_from: date | None = None
    effective_to: date | None = None
    retro_period_start: date | None = None
    retro_period_end: date | None = None


class AdjustmentReject(BaseModel):
    reason: str = Field(..., min_length=1)


class AdjustmentResponse(BaseModel):
    """Schema for adjustment response."""

    model_config = ConfigDict(from_attributes=True)

    adjustment_id: UUID
    employee_id: str
    element_code: str
    adjustment_type: str
    amount: Decimal | None = None
    percentage: Decimal | None = None
    reason: str
    notes: str | None = None
    effective_pay_run_id: UUID | None = None
    effective_from: date | None = None
    effective_to: date | None = None
    retro_period_start: date | None = None
    retro_period_end: date | None = None
    status: str
    requires_approval: bool
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    applied_pay_run_id: UUID | None = None
    applied_at: datetime | None = None
    created_by: str
    created_at: datetime


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
