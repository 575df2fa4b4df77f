"""Line item builder with idempotent hashing."""

from __future__ import annotations

import hashlib
import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from payrun_engine.calculators.types import ElementType, LineCalculation, LineItem


class LineItemBuilder:
    """Builds line items and fingerprints computed lines.

    Amounts on line items are always positive; the element type decides
    whether an item adds to gross, reduces net, or is an employer cost.

    Every persisted amount is rounded half-up to cents.
    """

    OUTPUT_PRECISION = Decimal("0.01")  # 2 decimal places for persistence

    @staticmethod
    def round_to_cents(amount: Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return amount.quantize(LineItemBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def create_item(
        code: str,
        name: str,
        element_type: ElementType,
        amount: Decimal,
        *,
        rate: Decimal | None = None,
        units: Decimal | None = None,
        percentage: Decimal | None = None,
        is_taxable: bool = False,
        is_uif_applicable: bool = False,
        is_sdl_applicable: bool = False,
        is_pre_tax: bool = False,
        reference: str | None = None,
        notes: str | None = None,
    ) -> LineItem:
        """Create a line item with its amount rounded to cents."""
        return LineItem(
            code=code,
            name=name,
            element_type=element_type,
            amount=LineItemBuilder.round_to_cents(amount),
            rate=rate,
            units=units,
            percentage=percentage,
            is_taxable=is_taxable,
            is_uif_applicable=is_uif_applicable,
            is_sdl_applicable=is_sdl_applicable,
            is_pre_tax=is_pre_tax,
            reference=reference,
            notes=notes,
        )

    @staticmethod
    def create_statutory_item(
        code: str, name: str, element_type: ElementType, amount: Decimal
    ) -> LineItem:
        """Create a PAYE/UIF/SDL item. Statutory items carry no tax flags."""
        return LineItemBuilder.create_item(code, name, element_type, amount)

    @staticmethod
    def sum_amounts(items: Iterable[LineItem]) -> Decimal:
        total = Decimal("0")
        for item in items:
            total += item.amount
        return LineItemBuilder.round_to_cents(total)

    @staticmethod
    def partition(
        items: Iterable[LineItem],
    ) -> tuple[list[LineItem], list[LineItem], list[LineItem]]:
        """Split items into (earnings, deductions, employer contributions)."""
        earnings: list[LineItem] = []
        deductions: list[LineItem] = []
        contributions: list[LineItem] = []
        for item in items:
            if item.element_type == ElementType.EARNING:
                earnings.append(item)
            elif item.element_type == ElementType.DEDUCTION:
                deductions.append(item)
            else:
                contributions.append(item)
        return earnings, deductions, contributions

    @staticmethod
    def compute_line_hash(line: LineCalculation) -> str:
        """Compute deterministic hash for a computed line.

        The hash covers every item and every computed total, so two
        calculations over identical inputs produce identical hashes.
        """
        canonical = {
            "employee_id": line.employee.employee_id,
            "items": [item.to_canonical_dict() for item in line.items],
            "totals": [
                str(line.basic_salary),
                str(line.gross_earnings),
                str(line.taxable_income),
                str(line.paye),
                str(line.uif_employee),
                str(line.uif_employer),
                str(line.sdl),
                str(line.total_deductions),
                str(line.total_employer_contributions),
                str(line.net_pay),
            ],
            "ytd": [
                str(line.ytd.gross),
                str(line.ytd.taxable),
                str(line.ytd.paye),
                str(line.ytd.uif),
                str(line.ytd.sdl),
                str(line.ytd.net),
            ],
            "included": line.is_included,
            "exceptions": sorted(e.exception_type.value for e in line.exceptions),
        }
        json_str = json.dumps(canonical, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]
