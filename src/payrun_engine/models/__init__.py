"""ORM models."""

from payrun_engine.models.adjustment import PayrollAdjustment
from payrun_engine.models.base import Base, Cents, ExactDecimal
from payrun_engine.models.pay_element import PayElement, TenantPayrollSettings
from payrun_engine.models.payroll import (
    PAY_RUN_STATUSES,
    AuditEvent,
    PayRun,
    PayRunException,
    PayRunInput,
    PayRunLine,
    PayRunLineItem,
)

__all__ = [
    "PAY_RUN_STATUSES",
    "AuditEvent",
    "Base",
    "Cents",
    "ExactDecimal",
    "PayElement",
    "PayRun",
    "PayRunException",
    "PayRunInput",
    "PayRunLine",
    "PayRunLineItem",
    "PayrollAdjustment",
    "TenantPayrollSettings",
]
