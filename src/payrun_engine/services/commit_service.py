"""Line persistence and total aggregation for pay runs."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.engine import RunTotals
from payrun_engine.calculators.line_builder import LineItemBuilder
from payrun_engine.calculators.types import (
    BankDetails,
    DetectedException,
    ElementType,
    EmployeeSnapshot,
    ExceptionType,
    LineCalculation,
    LineItem,
    Severity,
    YtdTotals,
)
from payrun_engine.models import PayRunException, PayRunLine, PayRunLineItem

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class CommitService:
    """Service for replacing a run's lines and recomputing its totals.

    Key invariants:
    1. One line per employee per run (enforced by unique constraint)
    2. Lines are replaced wholesale on every calculation, inside the
       caller's transaction, so a failed calculation leaves the previous
       lines untouched
    3. Run totals are always derived from included lines, never patched
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def delete_lines(self, pay_run_id: UUID) -> int:
        """Delete all lines, items and exceptions of a run.

        Returns count of deleted lines.
        """
        for model in (PayRunException, PayRunLineItem):
            await self.session.execute(
                delete(model)
                .where(model.pay_run_id == pay_run_id)
                .execution_options(synchronize_session=False)
            )
        result = await self.session.execute(
            delete(PayRunLine)
            .where(PayRunLine.pay_run_id == pay_run_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def replace_lines(
        self,
        pay_run_id: UUID,
        lines: Sequence[LineCalculation],
        chunk_size: int = 200,
    ) -> int:
        """Replace all lines of a run, flushing in chunks.

        Returns count of written lines.
        """
        removed = await self.delete_lines(pay_run_id)
        if removed:
            logger.debug("Removed %d previous line(s) from pay run %s", removed, pay_run_id)

        for start in range(0, len(lines), chunk_size):
            chunk = lines[start : start + chunk_size]
            self.session.add_all(self.build_line(pay_run_id, line) for line in chunk)
            await self.session.flush()

        return len(lines)

    @staticmethod
    def build_line(pay_run_id: UUID, line: LineCalculation) -> PayRunLine:
        employee = line.employee
        bank = employee.bank
        model = PayRunLine(
            pay_run_id=pay_run_id,
            employee_id=employee.employee_id,
            employee_number=employee.employee_number,
            employee_name=employee.employee_name,
            id_number=employee.id_number,
            tax_number=employee.tax_number,
            department=employee.department,
            job_title=employee.job_title,
            basic_salary=line.basic_salary,
            gross_earnings=line.gross_earnings,
            taxable_income=line.taxable_income,
            paye=line.paye,
            uif_employee=line.uif_employee,
            uif_employer=line.uif_employer,
            sdl=line.sdl,
            total_deductions=line.total_deductions,
            total_employer_contributions=line.total_employer_contributions,
            net_pay=line.net_pay,
            ytd_gross=line.ytd.gross,
            ytd_taxable=line.ytd.taxable,
            ytd_paye=line.ytd.paye,
            ytd_uif=line.ytd.uif,
            ytd_sdl=line.ytd.sdl,
            ytd_net=line.ytd.net,
            is_included=line.is_included,
            exclude_reason=line.exclude_reason,
            has_adjustments=line.has_adjustments,
            bank_account_holder=bank.account_holder if bank else None,
            bank_name=bank.bank_name if bank else None,
            bank_account_number=bank.account_number if bank else None,
            bank_branch_code=bank.branch_code if bank else None,
            calculation_hash=line.calculation_hash,
        )
        model.items = [
            PayRunLineItem(
                pay_run_id=pay_run_id,
                position=position,
                element_code=item.code,
                name=item.name,
                element_type=item.element_type.value,
                rate=item.rate,
                units=item.units,
                percentage=item.percentage,
                amount=item.amount,
                is_taxable=item.is_taxable,
                is_uif_applicable=item.is_uif_applicable,
                is_sdl_applicable=item.is_sdl_applicable,
                is_pre_tax=item.is_pre_tax,
                reference=item.reference,
                notes=item.notes,
            )
            for position, item in enumerate(line.items)
        ]
        model.exceptions = [
            PayRunException(
                pay_run_id=pay_run_id,
                position=position,
                exception_type=exc.exception_type.value,
                severity=exc.severity.value,
                message=exc.message,
                details=exc.details,
                is_resolved=exc.is_resolved,
            )
            for position, exc in enumerate(line.exceptions)
        ]
        return model

    @staticmethod
    def to_calculation(line: PayRunLine) -> LineCalculation:
        """Rebuild the calculation a persisted line holds, e.g. to re-fingerprint it."""
        bank = None
        if line.bank_account_number or line.bank_account_holder or line.bank_branch_code:
            bank = BankDetails(
                account_holder=line.bank_account_holder,
                bank_name=line.bank_name,
                account_number=line.bank_account_number,
                branch_code=line.bank_branch_code,
            )
        employee = EmployeeSnapshot(
            employee_id=line.employee_id,
            employee_number=line.employee_number,
            employee_name=line.employee_name,
            basic_salary=line.basic_salary,
            id_number=line.id_number,
            tax_number=line.tax_number,
            department=line.department,
            job_title=line.job_title,
            bank=bank,
        )
        items = [
            LineItem(
                code=item.element_code,
                name=item.name,
                element_type=ElementType(item.element_type),
                amount=item.amount,
                rate=item.rate,
                units=item.units,
                percentage=item.percentage,
                is_taxable=item.is_taxable,
                is_uif_applicable=item.is_uif_applicable,
                is_sdl_applicable=item.is_sdl_applicable,
                is_pre_tax=item.is_pre_tax,
                reference=item.reference,
                notes=item.notes,
            )
            for item in line.items
        ]
        earnings, deductions, contributions = LineItemBuilder.partition(items)
        return LineCalculation(
            employee=employee,
            basic_salary=line.basic_salary,
            earnings=earnings,
            deductions=deductions,
            employer_contributions=contributions,
            gross_earnings=line.gross_earnings,
            taxable_income=line.taxable_income,
            paye=line.paye,
            uif_employee=line.uif_employee,
            uif_employer=line.uif_employer,
            sdl=line.sdl,
            total_deductions=line.total_deductions,
            total_employer_contributions=line.total_employer_contributions,
            net_pay=line.net_pay,
            ytd=YtdTotals(
                gross=line.ytd_gross,
                taxable=line.ytd_taxable,
                paye=line.ytd_paye,
                uif=line.ytd_uif,
                sdl=line.ytd_sdl,
                net=line.ytd_net,
            ),
            is_included=line.is_included,
            exclude_reason=line.exclude_reason,
            exceptions=[
                DetectedException(
                    exception_type=ExceptionType(exc.exception_type),
                    severity=Severity(exc.severity),
                    message=exc.message,
                    details=exc.details,
                    is_resolved=exc.is_resolved,
                )
                for exc in line.exceptions
            ],
            calculation_hash=line.calculation_hash,
        )

    async def aggregate_totals(self, pay_run_id: UUID) -> RunTotals:
        """Sum included lines of a run in the database."""
        included = PayRunLine.is_included.is_(True)
        result = await self.session.execute(
            select(
                func.count(PayRunLine.pay_run_line_id),
                func.sum(PayRunLine.gross_earnings),
                func.sum(PayRunLine.total_deductions),
                func.sum(PayRunLine.total_employer_contributions),
                func.sum(PayRunLine.net_pay),
                func.sum(PayRunLine.paye),
                func.sum(PayRunLine.uif_employee),
                func.sum(PayRunLine.uif_employer),
                func.sum(PayRunLine.sdl),
            ).where(PayRunLine.pay_run_id == pay_run_id, included)
        )
        (count, gross, deductions, contributions, net, paye, uif_ee, uif_er, sdl) = result.one()

        processed = await self.session.scalar(
            select(func.count(PayRunLine.pay_run_line_id)).where(
                PayRunLine.pay_run_id == pay_run_id
            )
        )
        exceptions = await self.session.scalar(
            select(func.count(PayRunException.pay_run_exception_id))
            .join(PayRunLine, PayRunLine.pay_run_line_id == PayRunException.pay_run_line_id)
            .where(
                PayRunException.pay_run_id == pay_run_id,
                PayRunException.is_resolved.is_(False),
                included,
            )
        )

        return RunTotals(
            employee_count=count or 0,
            processed_count=processed or 0,
            exception_count=exceptions or 0,
            total_gross=gross or ZERO,
            total_deductions=deductions or ZERO,
            total_employer_contributions=contributions or ZERO,
            total_net=net or ZERO,
            total_paye=paye or ZERO,
            total_uif_employee=uif_ee or ZERO,
            total_uif_employer=uif_er or ZERO,
            total_sdl=sdl or ZERO,
        )

    @staticmethod
    def totals_values(totals: RunTotals) -> dict[str, object]:
        """Column values for writing totals onto a PayRun."""
        return {
            "employee_count": totals.employee_count,
            "processed_count": totals.processed_count,
            "exception_count": totals.exception_count,
            "total_gross": totals.total_gross,
            "total_deductions": totals.total_deductions,
            "total_employer_contributions": totals.total_employer_contributions,
            "total_net": totals.total_net,
            "total_paye": totals.total_paye,
            "total_uif_employee": totals.total_uif_employee,
            "total_uif_employer": totals.total_uif_employer,
            "total_sdl": totals.total_sdl,
        }
