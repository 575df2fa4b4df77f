"""Gross-to-net calculation for a single employee."""

from __future__ import annotations

import logging
from decimal import Decimal

from payrun_engine.calculators.line_builder import LineItemBuilder
from payrun_engine.calculators.pay_elements import PayElementRegistry
from payrun_engine.calculators.tax_calculator import TaxCalculator
from payrun_engine.calculators.types import (
    ElementType,
    EmployeeHistory,
    EmployeeSnapshot,
    LineCalculation,
    LineItem,
    PayFrequency,
)

logger = logging.getLogger(__name__)

# (formula, fallback code, fallback name, element type)
STATUTORY_ITEMS = {
    "paye": ("PAYE", "PAYE", ElementType.DEDUCTION),
    "uif_employee": ("UIF_EE", "UIF (Employee)", ElementType.DEDUCTION),
    "uif_employer": ("UIF_ER", "UIF (Employer)", ElementType.EMPLOYER_CONTRIBUTION),
    "sdl": ("SDL", "Skills Development Levy", ElementType.EMPLOYER_CONTRIBUTION),
}


class GrossToNetCalculator:
    """Turns an employee snapshot into itemized pay for one period.

    Order of operations:
    1. Resolve element assignments into earnings, deductions and
       employer contributions
    2. Gross = sum of earnings
    3. Taxable income = taxable earnings - pre-tax deductions (floor 0)
    4. PAYE, UIF (employee and employer) and SDL
    5. Net = gross - total deductions; employer contributions never
       reduce net pay
    6. YTD = prior YTD + this period
    """

    def __init__(
        self,
        registry: PayElementRegistry,
        tax_calculator: TaxCalculator,
        frequency: PayFrequency,
        sdl_registered: bool = True,
    ):
        self.registry = registry
        self.tax_calculator = tax_calculator
        self.frequency = frequency
        self.sdl_registered = sdl_registered

    def calculate(
        self,
        snapshot: EmployeeSnapshot,
        unpaid_leave_days: Decimal = Decimal("0"),
        history: EmployeeHistory | None = None,
        is_included: bool = True,
        exclude_reason: str | None = None,
    ) -> LineCalculation:
        history = history or EmployeeHistory()
        items = self.registry.resolve(snapshot, self.frequency, unpaid_leave_days)
        earnings, deductions, contributions = LineItemBuilder.partition(items)

        gross = LineItemBuilder.sum_amounts(earnings)
        taxable = LineItemBuilder.sum_amounts(e for e in earnings if e.is_taxable)
        taxable -= LineItemBuilder.sum_amounts(d for d in deductions if d.is_pre_tax)
        taxable = max(Decimal("0.00"), taxable)

        paye = self.tax_calculator.calculate_paye(taxable, self.frequency)
        uif_employee, uif_employer = self.tax_calculator.calculate_uif(
            taxable, self.frequency, exempt=snapshot.uif_exempt
        )
        sdl = self.tax_calculator.calculate_sdl(gross, self.sdl_registered)

        statutory_deductions = [
            item
            for item in (
                self._statutory_item("paye", paye),
                self._statutory_item("uif_employee", uif_employee),
            )
            if item is not None
        ]
        statutory_contributions = [
            item
            for item in (
                self._statutory_item("uif_employer", uif_employer),
                self._statutory_item("sdl", sdl),
            )
            if item is not None
        ]
        deductions = statutory_deductions + deductions
        contributions = statutory_contributions + contributions

        total_deductions = LineItemBuilder.sum_amounts(deductions)
        total_contributions = LineItemBuilder.sum_amounts(contributions)
        net = gross - total_deductions

        if is_included:
            ytd = history.ytd.add(gross, taxable, paye, uif_employee, sdl, net)
        else:
            ytd = history.ytd

        logger.debug(
            "Calculated %s: gross=%s paye=%s net=%s",
            snapshot.employee_number,
            gross,
            paye,
            net,
        )

        return LineCalculation(
            employee=snapshot,
            basic_salary=LineItemBuilder.round_to_cents(snapshot.basic_salary),
            earnings=earnings,
            deductions=deductions,
            employer_contributions=contributions,
            gross_earnings=gross,
            taxable_income=taxable,
            paye=paye,
            uif_employee=uif_employee,
            uif_employer=uif_employer,
            sdl=sdl,
            total_deductions=total_deductions,
            total_employer_contributions=total_contributions,
            net_pay=net,
            ytd=ytd,
            is_included=is_included,
            exclude_reason=exclude_reason,
        )

    def _statutory_item(self, formula: str, amount: Decimal) -> LineItem | None:
        if amount <= 0:
            return None
        code, name, element_type = STATUTORY_ITEMS[formula]
        definition = self.registry.statutory(formula)
        if definition is not None:
            code, name = definition.code, definition.name
        return LineItemBuilder.create_statutory_item(code, name, element_type, amount)
