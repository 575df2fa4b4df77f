"""Tests for the gross-to-net calculator."""

from dataclasses import replace
from decimal import Decimal

import pytest

from conftest import make_employee
from payrun_engine.calculators.gross_to_net import GrossToNetCalculator
from payrun_engine.calculators.pay_elements import (
    Fixed,
    PayElementDefinition,
    PayElementRegistry,
)
from payrun_engine.calculators.tax_calculator import TaxCalculator
from payrun_engine.calculators.types import (
    ElementAssignment,
    ElementType,
    EmployeeHistory,
    PayFrequency,
    YtdTotals,
)


@pytest.fixture
def policy(tax_policies):
    return tax_policies.for_tax_year("2025/2026")


@pytest.fixture
def calculator(registry, policy) -> GrossToNetCalculator:
    return GrossToNetCalculator(registry, TaxCalculator(policy), PayFrequency.MONTHLY)


class TestGrossToNet:
    def test_uif_below_ceiling(self, registry, policy):
        """UIF at 1% each when the ceiling is above earnings."""
        policy = replace(policy, uif_annual_ceiling=Decimal("600000"))
        calculator = GrossToNetCalculator(registry, TaxCalculator(policy), PayFrequency.MONTHLY)

        line = calculator.calculate(make_employee("E001", "35000.00"))

        assert line.gross_earnings == Decimal("35000.00")
        assert line.uif_employee == Decimal("350.00")
        assert line.uif_employer == Decimal("350.00")

    def test_standard_monthly_employee(self, calculator):
        line = calculator.calculate(make_employee("E001", "35000.00"))

        assert line.taxable_income == Decimal("35000.00")
        assert line.paye == Decimal("6289.33")
        assert line.uif_employee == Decimal("177.12")
        assert line.sdl == Decimal("350.00")
        assert line.total_deductions == Decimal("6466.45")
        assert line.total_employer_contributions == Decimal("527.12")
        assert line.net_pay == Decimal("28533.55")

    def test_net_is_gross_less_deductions(self, calculator):
        employee = make_employee(
            "E001",
            "30000.00",
            assignments=(
                ElementAssignment("BONUS", amount=Decimal("2500")),
                ElementAssignment("MEDICAL_EE", amount=Decimal("1800")),
                ElementAssignment("MEDICAL_ER", amount=Decimal("1800")),
                ElementAssignment("PENSION_EE"),
            ),
        )
        line = calculator.calculate(employee)

        assert line.net_pay == line.gross_earnings - line.total_deductions
        # Employer contributions never reduce net pay
        assert line.total_employer_contributions > 0
        assert sum(i.amount for i in line.deductions) == line.total_deductions

    def test_pre_tax_deductions_reduce_taxable_income(self, calculator):
        employee = make_employee(
            "E001", "30000.00", assignments=(ElementAssignment("PENSION_EE"),)
        )
        line = calculator.calculate(employee)

        assert line.taxable_income == Decimal("27750.00")

    def test_non_taxable_earnings_excluded_from_taxable(self, registry, policy):
        reimbursement = PayElementDefinition(
            "REIMB", "Reimbursement", ElementType.EARNING, Fixed(), sort_order=9
        )
        registry = PayElementRegistry.from_definitions([*registry.ordered(), reimbursement])
        calculator = GrossToNetCalculator(registry, TaxCalculator(policy), PayFrequency.MONTHLY)
        employee = make_employee(
            "E001", "20000.00", assignments=(ElementAssignment("REIMB", amount=Decimal("500")),)
        )
        line = calculator.calculate(employee)

        assert line.gross_earnings == Decimal("20500.00")
        assert line.taxable_income == Decimal("20000.00")

    def test_statutory_items_first_and_named(self, calculator):
        line = calculator.calculate(
            make_employee(
                "E001",
                "35000.00",
                assignments=(ElementAssignment("LOAN", amount=Decimal("500")),),
            )
        )

        assert [d.code for d in line.deductions] == ["PAYE", "UIF_EE", "LOAN"]
        assert [c.code for c in line.employer_contributions] == ["UIF_ER", "SDL"]

    def test_zero_statutory_amounts_omitted(self, calculator):
        line = calculator.calculate(make_employee("E001", "5000.00", uif_exempt=True))

        assert line.paye == Decimal("0.00")
        assert [d.code for d in line.deductions] == []

    def test_sdl_not_registered(self, registry, policy):
        calculator = GrossToNetCalculator(
            registry, TaxCalculator(policy), PayFrequency.MONTHLY, sdl_registered=False
        )
        line = calculator.calculate(make_employee("E001", "35000.00"))
        assert line.sdl == Decimal("0.00")

    def test_deductions_exceeding_gross_give_negative_net(self, calculator):
        employee = make_employee(
            "E001", "1000.00", assignments=(ElementAssignment("LOAN", amount=Decimal("5000")),)
        )
        line = calculator.calculate(employee)

        assert line.total_deductions == Decimal("5010.00")
        assert line.net_pay == Decimal("-4010.00")


class TestYtd:
    def test_adds_period_to_prior_ytd(self, calculator):
        history = EmployeeHistory(
            ytd=YtdTotals(
                gross=Decimal("35000.00"),
                taxable=Decimal("35000.00"),
                paye=Decimal("6289.33"),
                uif=Decimal("177.12"),
                sdl=Decimal("350.00"),
                net=Decimal("28533.55"),
            )
        )
        line = calculator.calculate(make_employee("E001", "35000.00"), history=history)

        assert line.ytd.gross == Decimal("70000.00")
        assert line.ytd.paye == Decimal("12578.66")
        assert line.ytd.net == Decimal("57067.10")

    def test_excluded_line_keeps_prior_ytd(self, calculator):
        prior = YtdTotals(gross=Decimal("35000.00"))
        line = calculator.calculate(
            make_employee("E001", "35000.00"),
            history=EmployeeHistory(ytd=prior),
            is_included=False,
            exclude_reason="On unpaid sabbatical",
        )

        assert line.is_included is False
        assert line.ytd == prior
        # The line is still computed for review
        assert line.net_pay == Decimal("28533.55")
