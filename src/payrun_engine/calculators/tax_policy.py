"""Statutory tax policy data, versioned by tax year.

Policies are loaded from JSON with one entry per tax year:

    {
        "tax_year": "2025/2026",
        "brackets": [
            {"min": 0, "max": 237100, "rate": 0.18, "flat": 0},
            ...
            {"min": 1817000, "max": null, "rate": 0.45, "flat": 0}
        ],
        "primary_rebate": 17235,
        "uif_employee_rate": 0.01,
        "uif_employer_rate": 0.01,
        "uif_annual_ceiling": 212544,
        "sdl_rate": 0.01
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from importlib import resources
from pathlib import Path
from typing import Any

from payrun_engine.errors import InputValidationError, TaxPolicyNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaxBracket:
    """Annual income tax bracket."""

    min_amount: Decimal
    max_amount: Decimal | None
    rate: Decimal
    flat_amount: Decimal = Decimal("0")


@dataclass(frozen=True)
class TaxPolicy:
    """PAYE, UIF and SDL parameters for one tax year."""

    tax_year: str
    brackets: list[TaxBracket]
    primary_rebate: Decimal
    uif_employee_rate: Decimal
    uif_employer_rate: Decimal
    uif_annual_ceiling: Decimal
    sdl_rate: Decimal

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TaxPolicy:
        tax_year = payload.get("tax_year")
        if not tax_year:
            raise InputValidationError("tax_year", "tax policy entry has no tax_year")

        # Parse brackets
        brackets = []
        for b in payload.get("brackets", []):
            brackets.append(
                TaxBracket(
                    min_amount=Decimal(str(b["min"])),
                    max_amount=Decimal(str(b["max"])) if b.get("max") else None,
                    rate=Decimal(str(b["rate"])),
                    flat_amount=Decimal(str(b.get("flat", 0))),
                )
            )
        if not brackets:
            raise InputValidationError("brackets", f"tax policy {tax_year} has no brackets")

        try:
            return cls(
                tax_year=tax_year,
                brackets=sorted(brackets, key=lambda b: b.min_amount),
                primary_rebate=Decimal(str(payload.get("primary_rebate", 0))),
                uif_employee_rate=Decimal(str(payload["uif_employee_rate"])),
                uif_employer_rate=Decimal(str(payload["uif_employer_rate"])),
                uif_annual_ceiling=Decimal(str(payload["uif_annual_ceiling"])),
                sdl_rate=Decimal(str(payload["sdl_rate"])),
            )
        except KeyError as e:
            raise InputValidationError(
                e.args[0], f"tax policy {tax_year} is missing a required value"
            ) from e


@dataclass
class TaxPolicyTable:
    """Tax policies keyed by tax year label."""

    policies: dict[str, TaxPolicy] = field(default_factory=dict)

    def for_tax_year(self, tax_year: str) -> TaxPolicy:
        policy = self.policies.get(tax_year)
        if policy is None:
            raise TaxPolicyNotFoundError(tax_year)
        return policy

    @property
    def tax_years(self) -> list[str]:
        return sorted(self.policies)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TaxPolicyTable:
        table = cls()
        for entry in payload.get("policies", []):
            policy = TaxPolicy.from_payload(entry)
            table.policies[policy.tax_year] = policy
        return table

    @classmethod
    def from_json_file(cls, path: str | Path) -> TaxPolicyTable:
        with open(path, encoding="utf-8") as f:
            table = cls.from_payload(json.load(f))
        logger.info("Loaded tax policies for %s from %s", ", ".join(table.tax_years), path)
        return table

    @classmethod
    def load_default(cls, path: str | None = None) -> TaxPolicyTable:
        """Load from ``path`` if given, else the bundled policy file."""
        if path:
            return cls.from_json_file(path)
        data = resources.files("payrun_engine").joinpath("data/tax_policies.json")
        return cls.from_payload(json.loads(data.read_text(encoding="utf-8")))
