"""Tests for pay element definitions and the registry."""

from decimal import Decimal

import pytest

from conftest import make_employee
from payrun_engine.calculators.pay_elements import (
    DEFAULT_ELEMENTS,
    Daily,
    Fixed,
    Formula,
    Hourly,
    PayElementDefinition,
    PayElementRegistry,
    Percentage,
    method_from_dict,
)
from payrun_engine.calculators.types import ElementAssignment, ElementType, PayFrequency
from payrun_engine.errors import PayElementError


class TestCalculationMethods:
    """Each method variant validates its own fields at construction."""

    def test_percentage_out_of_range(self):
        with pytest.raises(PayElementError) as exc_info:
            Percentage(Decimal("150"))
        assert exc_info.value.field == "percentage"

    def test_percentage_unknown_base(self):
        with pytest.raises(PayElementError):
            Percentage(Decimal("5"), base="net")

    def test_hourly_multiplier_must_be_positive(self):
        with pytest.raises(PayElementError):
            Hourly(Decimal("0"))

    def test_unknown_formula(self):
        with pytest.raises(PayElementError):
            Formula("income_tax")

    def test_negative_default_amount(self):
        with pytest.raises(PayElementError):
            Fixed(Decimal("-1"))

    def test_from_dict(self):
        method = method_from_dict("percentage", {"percentage": "7.5", "base": "gross"})
        assert method == Percentage(Decimal("7.5"), "gross")

    def test_unknown_kind(self):
        with pytest.raises(PayElementError) as exc_info:
            method_from_dict("tiered", {})
        assert exc_info.value.field == "calculation_method"


class TestDefinitions:
    def test_only_deductions_can_be_pre_tax(self):
        with pytest.raises(PayElementError) as exc_info:
            PayElementDefinition(
                "RA", "Retirement", ElementType.EARNING, Fixed(), is_pre_tax=True
            )
        assert exc_info.value.field == "is_pre_tax"

    def test_basic_must_be_fixed(self):
        with pytest.raises(PayElementError):
            PayElementDefinition("BASIC", "Basic", ElementType.EARNING, Daily())

    def test_defaults_are_unique_and_ordered(self):
        registry = PayElementRegistry.with_defaults()

        assert len(registry.definitions) == len(DEFAULT_ELEMENTS) == 16
        assert registry.ordered()[0].code == "BASIC"
        assert registry.statutory("paye").code == "PAYE"
        assert registry.statutory("sdl").code == "SDL"

    def test_duplicate_codes_rejected(self):
        with pytest.raises(PayElementError):
            PayElementRegistry.from_definitions([DEFAULT_ELEMENTS[0], DEFAULT_ELEMENTS[0]])

    def test_payload_round_trip(self, registry):
        restored = PayElementRegistry.from_payload(registry.to_payload())
        assert restored.definitions == registry.definitions


class TestAssignmentValidation:
    """Assignments are validated before any calculation."""

    @pytest.mark.parametrize(
        "assignment,message",
        [
            (ElementAssignment("GYM", amount=Decimal("100")), "unknown"),
            (ElementAssignment("BASIC", amount=Decimal("100")), "basic salary"),
            (ElementAssignment("PAYE", amount=Decimal("100")), "statutory"),
            (ElementAssignment("BONUS"), "amount is required"),
            (ElementAssignment("OT_1.5"), "units are required"),
            (ElementAssignment("BONUS", amount=Decimal("-5")), "must not be negative"),
            (ElementAssignment("PENSION_EE", percentage=Decimal("250")), "between 0 and 100"),
        ],
    )
    def test_invalid_assignment(self, registry, assignment, message):
        employee = make_employee("E010", assignments=(assignment,))

        with pytest.raises(PayElementError) as exc_info:
            registry.validate(employee)

        assert message in str(exc_info.value)
        assert exc_info.value.employee_number == "E010"

    def test_duplicate_assignment(self, registry):
        bonus = ElementAssignment("BONUS", amount=Decimal("100"))
        employee = make_employee("E011", assignments=(bonus, bonus))

        with pytest.raises(PayElementError, match="more than once"):
            registry.validate(employee)

    def test_inactive_element(self):
        bonus = PayElementDefinition(
            "BONUS", "Bonus", ElementType.EARNING, Fixed(), is_active=False
        )
        registry = PayElementRegistry.from_definitions([bonus])
        employee = make_employee(
            "E012", assignments=(ElementAssignment("BONUS", amount=Decimal("1")),)
        )

        with pytest.raises(PayElementError, match="inactive"):
            registry.validate(employee)


class TestResolution:
    """Assignments resolve to line items in sort order."""

    def test_basic_only(self, registry):
        items = registry.resolve(make_employee("E001", "35000.00"), PayFrequency.MONTHLY)

        assert [i.code for i in items] == ["BASIC"]
        assert items[0].amount == Decimal("35000.00")

    def test_unpaid_leave_reduces_basic(self, registry):
        # 21 670 / 21.67 working days = 1 000 a day
        items = registry.resolve(
            make_employee("E001", "21670.00"), PayFrequency.MONTHLY, Decimal("1")
        )

        assert items[0].amount == Decimal("20670.00")
        assert "unpaid leave" in items[0].notes

    def test_unpaid_leave_never_below_zero(self, registry):
        items = registry.resolve(
            make_employee("E001", "5000.00"), PayFrequency.WEEKLY, Decimal("10")
        )
        assert items == []

    def test_overtime_uses_derived_hourly_rate(self, registry):
        # 17 336 / 21.67 = 800 a day = 100 an hour
        employee = make_employee(
            "E001",
            "17336.00",
            assignments=(ElementAssignment("OT_1.5", units=Decimal("10")),),
        )
        overtime = registry.resolve(employee, PayFrequency.MONTHLY)[1]

        assert overtime.code == "OT_1.5"
        assert overtime.rate == Decimal("150.00")
        assert overtime.units == Decimal("10")
        assert overtime.amount == Decimal("1500.00")

    def test_pension_percentage_of_pensionable_earnings(self, registry):
        employee = make_employee(
            "E001",
            "30000.00",
            assignments=(
                ElementAssignment("PENSION_EE"),
                ElementAssignment("PENSION_ER"),
                ElementAssignment("BONUS", amount=Decimal("5000")),
            ),
        )
        items = {i.code: i for i in registry.resolve(employee, PayFrequency.MONTHLY)}

        # Bonus is not pensionable
        assert items["PENSION_EE"].amount == Decimal("2250.00")
        assert items["PENSION_EE"].is_pre_tax is True
        assert items["PENSION_ER"].element_type == ElementType.EMPLOYER_CONTRIBUTION
        assert items["PENSION_ER"].percentage == Decimal("7.5")

    def test_daily_rate_override(self, registry):
        casual = PayElementDefinition(
            "CASUAL", "Casual Days", ElementType.EARNING, Daily(Decimal("450")), is_taxable=True
        )
        registry = PayElementRegistry.from_definitions([*registry.ordered(), casual])
        employee = make_employee(
            "E001",
            "0",
            assignments=(ElementAssignment("CASUAL", units=Decimal("3")),),
        )
        items = registry.resolve(employee, PayFrequency.WEEKLY)

        assert [i.code for i in items] == ["CASUAL"]
        assert items[0].amount == Decimal("1350.00")

    def test_percentage_override_at_upper_bound(self, registry):
        employee = make_employee(
            "E001",
            "10000.00",
            assignments=(ElementAssignment("PENSION_EE", percentage=Decimal("100")),),
        )
        items = {i.code: i for i in registry.resolve(employee, PayFrequency.MONTHLY)}

        assert items["PENSION_EE"].amount == Decimal("10000.00")

    def test_zero_hourly_rate_override_is_kept(self, registry):
        employee = make_employee(
            "E001",
            "35000.00",
            assignments=(
                ElementAssignment("OT_1.5", units=Decimal("10"), rate=Decimal("0")),
            ),
        )
        overtime = registry.resolve(employee, PayFrequency.MONTHLY)[1]

        assert overtime.rate == Decimal("0.00")
        assert overtime.amount == Decimal("0.00")

    def test_zero_daily_rate_override_is_kept(self, registry):
        casual = PayElementDefinition(
            "CASUAL", "Casual Days", ElementType.EARNING, Daily(Decimal("450")), is_taxable=True
        )
        registry = PayElementRegistry.from_definitions([*registry.ordered(), casual])
        employee = make_employee(
            "E001",
            "0",
            assignments=(
                ElementAssignment("CASUAL", units=Decimal("3"), rate=Decimal("0")),
            ),
        )
        items = registry.resolve(employee, PayFrequency.WEEKLY)

        assert items[0].amount == Decimal("0.00")
