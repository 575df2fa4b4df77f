"""Contracts for the systems a pay run reads from and triggers.

The employee directory and leave service are read-only inputs. Output
generators (payslips, bank file, GL journal) are fire-and-forget: the
engine only records that each output was requested.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Protocol
from uuid import UUID

from payrun_engine.calculators.types import EmployeeSnapshot

logger = logging.getLogger(__name__)


class OutputKind(str, Enum):
    PAYSLIPS = "payslips"
    BANK_FILE = "bank_file"
    JOURNAL = "journal"

    @property
    def flag(self) -> str:
        """PayRun column recording that this output was requested."""
        return f"{self.value}_generated"


class EmployeeDirectory(Protocol):
    async def active_employees(self, tenant_id: UUID, as_of: date) -> list[EmployeeSnapshot]:
        ...


class LeaveService(Protocol):
    async def unpaid_leave_days(
        self, tenant_id: UUID, employee_id: str, start: date, end: date
    ) -> Decimal:
        ...


class OutputGenerator(Protocol):
    async def request(self, tenant_id: UUID, pay_run_id: UUID, output: OutputKind) -> None:
        ...

    async def invalidate(self, tenant_id: UUID, pay_run_id: UUID) -> None:
        ...


class StaticEmployeeDirectory:
    """In-memory roster keyed by tenant."""

    def __init__(self, employees: dict[UUID, Iterable[EmployeeSnapshot]] | None = None):
        self._employees: dict[UUID, list[EmployeeSnapshot]] = {
            tenant_id: list(snapshots) for tenant_id, snapshots in (employees or {}).items()
        }

    def set_employees(self, tenant_id: UUID, employees: Iterable[EmployeeSnapshot]) -> None:
        self._employees[tenant_id] = list(employees)

    async def active_employees(self, tenant_id: UUID, as_of: date) -> list[EmployeeSnapshot]:
        # Employees terminated before the period are no longer on the roster.
        return [
            e
            for e in self._employees.get(tenant_id, [])
            if e.termination_date is None or e.termination_date >= as_of
        ]


class NoUnpaidLeave:
    async def unpaid_leave_days(
        self, tenant_id: UUID, employee_id: str, start: date, end: date
    ) -> Decimal:
        return Decimal("0")


class LoggingOutputGenerator:
    """Records output requests in the log only."""

    async def request(self, tenant_id: UUID, pay_run_id: UUID, output: OutputKind) -> None:
        logger.info("Requested %s for pay run %s", output.value, pay_run_id)

    async def invalidate(self, tenant_id: UUID, pay_run_id: UUID) -> None:
        logger.info("Invalidated outputs for pay run %s", pay_run_id)


@dataclass
class Collaborators:
    """External systems used by the pay run service."""

    directory: EmployeeDirectory = field(default_factory=StaticEmployeeDirectory)
    leave: LeaveService = field(default_factory=NoUnpaidLeave)
    outputs: OutputGenerator = field(default_factory=LoggingOutputGenerator)
