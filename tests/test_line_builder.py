"""Tests for line item builder."""

from decimal import Decimal

from payrun_engine.calculators.line_builder import LineItemBuilder
from payrun_engine.calculators.types import ElementType


class TestLineItemBuilder:
    """Test line item builder functionality."""

    def test_round_to_cents(self):
        """Test rounding to 2 decimal places."""
        assert LineItemBuilder.round_to_cents(Decimal("10.124")) == Decimal("10.12")

        # Half-up rounding
        assert LineItemBuilder.round_to_cents(Decimal("10.125")) == Decimal("10.13")
        assert LineItemBuilder.round_to_cents(Decimal("10.135")) == Decimal("10.14")

    def test_create_item_rounds_amount(self):
        item = LineItemBuilder.create_item(
            "OT_1.5",
            "Overtime 1.5x",
            ElementType.EARNING,
            Decimal("1500.004"),
            rate=Decimal("150.0004"),
            units=Decimal("10"),
            is_taxable=True,
        )

        assert item.amount == Decimal("1500.00")
        # Rate is kept at calculation precision
        assert item.rate == Decimal("150.0004")
        assert item.is_taxable is True

    def test_deduction_amounts_stay_positive(self):
        item = LineItemBuilder.create_item(
            "LOAN", "Staff Loan", ElementType.DEDUCTION, Decimal("500")
        )
        assert item.amount == Decimal("500.00")

    def test_statutory_items_carry_no_flags(self):
        item = LineItemBuilder.create_statutory_item(
            "PAYE", "PAYE", ElementType.DEDUCTION, Decimal("6289.333")
        )

        assert item.amount == Decimal("6289.33")
        assert not (item.is_taxable or item.is_uif_applicable or item.is_pre_tax)

    def test_sum_amounts(self):
        items = [
            LineItemBuilder.create_item("A", "A", ElementType.EARNING, Decimal("0.105")),
            LineItemBuilder.create_item("B", "B", ElementType.EARNING, Decimal("0.105")),
        ]
        # Each rounds to 0.11 before summing
        assert LineItemBuilder.sum_amounts(items) == Decimal("0.22")
        assert LineItemBuilder.sum_amounts([]) == Decimal("0.00")

    def test_partition(self):
        items = [
            LineItemBuilder.create_item("BASIC", "Basic", ElementType.EARNING, Decimal("1")),
            LineItemBuilder.create_item("LOAN", "Loan", ElementType.DEDUCTION, Decimal("1")),
            LineItemBuilder.create_item(
                "MEDICAL_ER", "Medical", ElementType.EMPLOYER_CONTRIBUTION, Decimal("1")
            ),
            LineItemBuilder.create_item("BONUS", "Bonus", ElementType.EARNING, Decimal("1")),
        ]
        earnings, deductions, contributions = LineItemBuilder.partition(items)

        assert [i.code for i in earnings] == ["BASIC", "BONUS"]
        assert [i.code for i in deductions] == ["LOAN"]
        assert [i.code for i in contributions] == ["MEDICAL_ER"]
