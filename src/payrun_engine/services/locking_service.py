"""Input freezing for pay runs."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import replace
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.pay_elements import PayElementRegistry
from payrun_engine.calculators.types import ElementAssignment, EmployeeSnapshot
from payrun_engine.collaborators import Collaborators
from payrun_engine.errors import InputValidationError
from payrun_engine.models import PayRun, PayRunInput, PayrollAdjustment

logger = logging.getLogger(__name__)


class LockingService:
    """Service for freezing pay run inputs at draft → inputs_locked.

    When inputs are locked:
    1. The active roster is read once from the employee directory
    2. Approved adjustments are added to each employee's assignments
    3. Unpaid leave for the period is read from the leave service
    4. Every employee is validated before anything is written
    5. One PayRunInput row per employee is stored

    Calculation reads only these rows, never live employee data.
    """

    def __init__(self, session: AsyncSession, collaborators: Collaborators):
        self.session = session
        self.collaborators = collaborators

    async def freeze_inputs(
        self,
        pay_run: PayRun,
        registry: PayElementRegistry,
        adjustments: Sequence[PayrollAdjustment] = (),
    ) -> int:
        """Capture and store inputs for a pay run.

        Adjustments for employees outside the roster are ignored.
        Returns count of frozen employees.

        Raises:
            InputValidationError: Naming the first missing or invalid field;
                nothing is written in that case.
        """
        employees = await self.collaborators.directory.active_employees(
            pay_run.tenant_id, pay_run.period_start
        )
        if not employees:
            raise InputValidationError("employees", "no active employees for this period")
        employees = self.fold_adjustments(employees, adjustments)

        seen: set[str] = set()
        for snapshot in employees:
            self.validate_snapshot(snapshot, registry)
            if snapshot.employee_id in seen:
                raise InputValidationError(
                    "employee_id", "appears more than once", snapshot.employee_number
                )
            seen.add(snapshot.employee_id)

        rows = []
        for snapshot in employees:
            days = await self.collaborators.leave.unpaid_leave_days(
                pay_run.tenant_id,
                snapshot.employee_id,
                pay_run.period_start,
                pay_run.period_end,
            )
            days = Decimal(str(days or 0))
            if days < 0:
                raise InputValidationError(
                    "unpaid_leave_days", "must not be negative", snapshot.employee_number
                )
            rows.append(
                PayRunInput(
                    pay_run_id=pay_run.pay_run_id,
                    employee_id=snapshot.employee_id,
                    employee_number=snapshot.employee_number,
                    snapshot_json=snapshot.to_dict(),
                    unpaid_leave_days=days,
                )
            )

        self.session.add_all(rows)
        await self.session.flush()
        logger.info("Froze inputs for %d employee(s) on pay run %s", len(rows), pay_run.pay_run_id)
        return len(rows)

    @staticmethod
    def validate_snapshot(snapshot: EmployeeSnapshot, registry: PayElementRegistry) -> None:
        """Validate required employee data and element assignments."""
        if not snapshot.employee_id:
            raise InputValidationError("employee_id", "is required", snapshot.employee_number)
        if not snapshot.employee_number:
            raise InputValidationError(
                "employee_number", f"is required (employee id {snapshot.employee_id})"
            )
        if not snapshot.employee_name:
            raise InputValidationError("employee_name", "is required", snapshot.employee_number)
        if snapshot.basic_salary is None:
            raise InputValidationError("basic_salary", "is required", snapshot.employee_number)
        if snapshot.basic_salary < 0:
            raise InputValidationError(
                "basic_salary", "must not be negative", snapshot.employee_number
            )
        registry.validate(snapshot)

    async def load_inputs(self, pay_run_id: UUID) -> list[PayRunInput]:
        result = await self.session.execute(
            select(PayRunInput)
            .where(PayRunInput.pay_run_id == pay_run_id)
            .order_by(PayRunInput.employee_number)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_input(self, pay_run_id: UUID, employee_id: str) -> PayRunInput | None:
        result = await self.session.execute(
            select(PayRunInput).where(
                PayRunInput.pay_run_id == pay_run_id,
                PayRunInput.employee_id == employee_id,
            )
        )
        return result.scalar_one_or_none()

    async def release_inputs(self, pay_run_id: UUID) -> int:
        """Discard frozen inputs (unlock).

        Returns count of released rows.
        """
        result = await self.session.execute(
            delete(PayRunInput)
            .where(PayRunInput.pay_run_id == pay_run_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    @staticmethod
    def fold_adjustments(
        employees: Sequence[EmployeeSnapshot], adjustments: Sequence[PayrollAdjustment]
    ) -> list[EmployeeSnapshot]:
        """Append each employee's adjustments to their element assignments."""
        by_employee: dict[str, list[ElementAssignment]] = defaultdict(list)
        for adjustment in adjustments:
            by_employee[adjustment.employee_id].append(adjustment.to_assignment())
        if not by_employee:
            return list(employees)
        return [
            replace(s, assignments=(*s.assignments, *by_employee[s.employee_id]))
            if s.employee_id in by_employee
            else s
            for s in employees
        ]
