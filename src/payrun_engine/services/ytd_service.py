"""Year-to-date and prior-period lookups from finalised pay runs."""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.types import EmployeeHistory, YtdTotals
from payrun_engine.models import PayRun, PayRunLine
from payrun_engine.services.state_machine import PayRunStatus

SETTLED_STATUSES = (PayRunStatus.FINALISED.value, PayRunStatus.CLOSED.value)


class YtdService:
    """Reads employee history from settled (finalised or closed) runs.

    YTD figures are carried forward from the most recent settled line of
    the same tenant, frequency and tax year. They are never rebuilt by
    summing historical runs.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def history_for(
        self, pay_run: PayRun, employee_ids: Iterable[str]
    ) -> dict[str, EmployeeHistory]:
        """Return history for each employee; absent employees have none."""
        employee_ids = list(employee_ids)
        if not employee_ids:
            return {}

        earlier = or_(
            PayRun.tax_year < pay_run.tax_year,
            and_(
                PayRun.tax_year == pay_run.tax_year,
                PayRun.period_number < pay_run.period_number,
            ),
        )
        result = await self.session.execute(
            select(PayRunLine, PayRun.tax_year)
            .join(PayRun, PayRun.pay_run_id == PayRunLine.pay_run_id)
            .where(
                PayRun.tenant_id == pay_run.tenant_id,
                PayRun.frequency == pay_run.frequency,
                PayRun.status.in_(SETTLED_STATUSES),
                PayRun.pay_run_id != pay_run.pay_run_id,
                PayRunLine.employee_id.in_(employee_ids),
                earlier,
            )
            .order_by(PayRun.tax_year.desc(), PayRun.period_number.desc())
        )

        ytd: dict[str, YtdTotals] = {}
        last_line: dict[str, PayRunLine] = {}
        for line, tax_year in result.all():
            # Rows arrive newest first; keep the first hit per employee.
            if tax_year == pay_run.tax_year and line.employee_id not in ytd:
                ytd[line.employee_id] = YtdTotals(
                    gross=line.ytd_gross,
                    taxable=line.ytd_taxable,
                    paye=line.ytd_paye,
                    uif=line.ytd_uif,
                    sdl=line.ytd_sdl,
                    net=line.ytd_net,
                )
            if line.is_included and line.employee_id not in last_line:
                last_line[line.employee_id] = line

        history: dict[str, EmployeeHistory] = {}
        for employee_id in employee_ids:
            previous = last_line.get(employee_id)
            history[employee_id] = EmployeeHistory(
                ytd=ytd.get(employee_id, YtdTotals()),
                last_net_pay=previous.net_pay if previous else None,
                last_basic_salary=previous.basic_salary if previous else None,
            )
        return history
