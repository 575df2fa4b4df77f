"""Statutory deduction calculation: PAYE, UIF and SDL."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from payrun_engine.calculators.tax_policy import TaxPolicy
from payrun_engine.calculators.types import PayFrequency

CENTS = Decimal("0.01")


class TaxCalculator:
    """Calculates statutory deductions for one tax year's policy.

    PAYE uses the annualisation method: period taxable income is scaled
    to a year by the frequency's periods per year, taxed through the
    progressive brackets, reduced by the primary rebate (never below
    zero) and divided back down to the period.
    """

    def __init__(self, policy: TaxPolicy):
        self.policy = policy

    def calculate_paye(self, taxable_income: Decimal, frequency: PayFrequency) -> Decimal:
        if taxable_income <= 0:
            return Decimal("0.00")

        periods = Decimal(frequency.periods_per_year)
        annual_income = taxable_income * periods
        annual_tax = self._calculate_progressive_tax(annual_income)
        annual_tax = max(Decimal("0"), annual_tax - self.policy.primary_rebate)
        return (annual_tax / periods).quantize(CENTS, rounding=ROUND_HALF_UP)

    def uif_cap(self, frequency: PayFrequency) -> Decimal:
        """Per-period UIF earnings ceiling."""
        return self.policy.uif_annual_ceiling / Decimal(frequency.periods_per_year)

    def calculate_uif(
        self,
        uif_earnings: Decimal,
        frequency: PayFrequency,
        exempt: bool = False,
    ) -> tuple[Decimal, Decimal]:
        """Return (employee, employer) UIF for the period."""
        if exempt or uif_earnings <= 0:
            return Decimal("0.00"), Decimal("0.00")

        capped = min(uif_earnings, self.uif_cap(frequency))
        employee = self._calculate_flat_tax(capped, self.policy.uif_employee_rate)
        employer = self._calculate_flat_tax(capped, self.policy.uif_employer_rate)
        return employee, employer

    def calculate_sdl(self, gross_earnings: Decimal, sdl_registered: bool) -> Decimal:
        if not sdl_registered:
            return Decimal("0.00")
        return self._calculate_flat_tax(gross_earnings, self.policy.sdl_rate)

    def _calculate_progressive_tax(self, wages: Decimal) -> Decimal:
        """Calculate tax using progressive brackets."""
        if wages <= 0:
            return Decimal("0")

        total_tax = Decimal("0")
        remaining = wages

        for bracket in self.policy.brackets:
            if remaining <= 0:
                break

            bracket_min = bracket.min_amount
            bracket_max = bracket.max_amount if bracket.max_amount else wages + 1

            if wages < bracket_min:
                continue

            taxable_in_bracket = min(remaining, bracket_max - bracket_min)
            if taxable_in_bracket > 0:
                total_tax += bracket.flat_amount + (taxable_in_bracket * bracket.rate)
                remaining -= taxable_in_bracket

        return total_tax

    @staticmethod
    def _calculate_flat_tax(wages: Decimal, rate: Decimal) -> Decimal:
        """Calculate flat-rate tax."""
        if wages <= 0:
            return Decimal("0.00")
        return (wages * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
