"""Pay element definitions and resolution of employee assignments.

A pay element is a reusable earning, deduction or employer contribution.
Its calculation method is one of a closed set of variants, each
validated when it is constructed:

    Fixed       -> amount (employee override or element default)
    Percentage  -> percentage x base (basic, gross or pensionable earnings)
    Hourly      -> hours x rate x multiplier
    Daily       -> days x rate
    Formula     -> statutory item computed by the gross-to-net calculator
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, ClassVar, Iterable, Union

from payrun_engine.calculators.line_builder import LineItemBuilder
from payrun_engine.calculators.types import (
    ElementAssignment,
    ElementType,
    EmployeeSnapshot,
    LineItem,
    PayFrequency,
)
from payrun_engine.errors import PayElementError

BASIC_CODE = "BASIC"

HOURS_PER_DAY = Decimal("8")

WORKING_DAYS_PER_PERIOD: dict[PayFrequency, Decimal] = {
    PayFrequency.MONTHLY: Decimal("21.67"),
    PayFrequency.FORTNIGHTLY: Decimal("10"),
    PayFrequency.WEEKLY: Decimal("5"),
}

PERCENTAGE_BASES = ("basic", "gross", "pensionable")
FORMULAS = ("paye", "uif_employee", "uif_employer", "sdl")


def _decimal(value: Any) -> Decimal | None:
    return None if value is None else Decimal(str(value))


@dataclass(frozen=True)
class Fixed:
    kind: ClassVar[str] = "fixed"

    default_amount: Decimal | None = None

    def __post_init__(self) -> None:
        if self.default_amount is not None and self.default_amount < 0:
            raise PayElementError("default_amount", "must not be negative")

    def params(self) -> dict[str, Any]:
        return {"default_amount": None if self.default_amount is None else str(self.default_amount)}


@dataclass(frozen=True)
class Percentage:
    kind: ClassVar[str] = "percentage"

    percentage: Decimal
    base: str = "basic"

    def __post_init__(self) -> None:
        if self.percentage is None:
            raise PayElementError("percentage", "is required for percentage elements")
        if not Decimal("0") <= self.percentage <= Decimal("100"):
            raise PayElementError("percentage", "must be between 0 and 100")
        if self.base not in PERCENTAGE_BASES:
            raise PayElementError(
                "base", f"'{self.base}' is not one of {', '.join(PERCENTAGE_BASES)}"
            )

    def params(self) -> dict[str, Any]:
        return {"percentage": str(self.percentage), "base": self.base}


@dataclass(frozen=True)
class Hourly:
    kind: ClassVar[str] = "hourly"

    multiplier: Decimal = Decimal("1")

    def __post_init__(self) -> None:
        if self.multiplier is None or self.multiplier <= 0:
            raise PayElementError("multiplier", "must be greater than zero")

    def params(self) -> dict[str, Any]:
        return {"multiplier": str(self.multiplier)}


@dataclass(frozen=True)
class Daily:
    kind: ClassVar[str] = "daily"

    rate: Decimal | None = None

    def __post_init__(self) -> None:
        if self.rate is not None and self.rate < 0:
            raise PayElementError("rate", "must not be negative")

    def params(self) -> dict[str, Any]:
        return {"rate": None if self.rate is None else str(self.rate)}


@dataclass(frozen=True)
class Formula:
    kind: ClassVar[str] = "formula"

    formula: str

    def __post_init__(self) -> None:
        if self.formula not in FORMULAS:
            raise PayElementError(
                "formula", f"'{self.formula}' is not one of {', '.join(FORMULAS)}"
            )

    def params(self) -> dict[str, Any]:
        return {"formula": self.formula}


CalculationMethod = Union[Fixed, Percentage, Hourly, Daily, Formula]


def method_from_dict(kind: str, params: dict[str, Any] | None = None) -> CalculationMethod:
    """Build a calculation method variant from its kind and parameters."""
    params = params or {}
    if kind == Fixed.kind:
        return Fixed(default_amount=_decimal(params.get("default_amount")))
    if kind == Percentage.kind:
        return Percentage(
            percentage=_decimal(params.get("percentage")),
            base=params.get("base") or "basic",
        )
    if kind == Hourly.kind:
        return Hourly(multiplier=_decimal(params.get("multiplier")) or Decimal("1"))
    if kind == Daily.kind:
        return Daily(rate=_decimal(params.get("rate")))
    if kind == Formula.kind:
        return Formula(formula=params.get("formula"))
    raise PayElementError("calculation_method", f"unknown calculation method '{kind}'")


@dataclass(frozen=True)
class PayElementDefinition:
    """A tenant's definition of one earning, deduction or contribution."""

    code: str
    name: str
    element_type: ElementType
    method: CalculationMethod
    is_taxable: bool = False
    is_uif_applicable: bool = False
    is_sdl_applicable: bool = False
    is_pension_applicable: bool = False
    is_pre_tax: bool = False
    is_recurring: bool = True
    is_active: bool = True
    gl_code: str | None = None
    sort_order: int = 0

    def __post_init__(self) -> None:
        if not self.code:
            raise PayElementError("code", "is required")
        if not self.name:
            raise PayElementError("name", "is required")
        if self.is_pre_tax and self.element_type != ElementType.DEDUCTION:
            raise PayElementError("is_pre_tax", "only deductions can be pre-tax")
        if self.code == BASIC_CODE and not isinstance(self.method, Fixed):
            raise PayElementError("calculation_method", "BASIC must use the fixed method")

    @property
    def is_statutory(self) -> bool:
        return isinstance(self.method, Formula)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "element_type": self.element_type.value,
            "calculation_method": self.method.kind,
            "method_params": self.method.params(),
            "is_taxable": self.is_taxable,
            "is_uif_applicable": self.is_uif_applicable,
            "is_sdl_applicable": self.is_sdl_applicable,
            "is_pension_applicable": self.is_pension_applicable,
            "is_pre_tax": self.is_pre_tax,
            "is_recurring": self.is_recurring,
            "is_active": self.is_active,
            "gl_code": self.gl_code,
            "sort_order": self.sort_order,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PayElementDefinition:
        try:
            element_type = ElementType(data["element_type"])
        except ValueError as e:
            raise PayElementError(
                "element_type", f"unknown element type '{data['element_type']}'"
            ) from e
        return cls(
            code=data["code"],
            name=data["name"],
            element_type=element_type,
            method=method_from_dict(data["calculation_method"], data.get("method_params")),
            is_taxable=data.get("is_taxable", False),
            is_uif_applicable=data.get("is_uif_applicable", False),
            is_sdl_applicable=data.get("is_sdl_applicable", False),
            is_pension_applicable=data.get("is_pension_applicable", False),
            is_pre_tax=data.get("is_pre_tax", False),
            is_recurring=data.get("is_recurring", True),
            is_active=data.get("is_active", True),
            gl_code=data.get("gl_code"),
            sort_order=data.get("sort_order", 0),
        )


def _earning(
    code: str,
    name: str,
    method: CalculationMethod,
    sort_order: int,
    *,
    taxable: bool = True,
    uif: bool = True,
    sdl: bool = True,
    pension: bool = False,
    recurring: bool = True,
    gl_code: str | None = None,
) -> PayElementDefinition:
    return PayElementDefinition(
        code=code,
        name=name,
        element_type=ElementType.EARNING,
        method=method,
        is_taxable=taxable,
        is_uif_applicable=uif,
        is_sdl_applicable=sdl,
        is_pension_applicable=pension,
        is_recurring=recurring,
        gl_code=gl_code,
        sort_order=sort_order,
    )


DEFAULT_ELEMENTS: tuple[PayElementDefinition, ...] = (
    # Earnings
    _earning("BASIC", "Basic Salary", Fixed(), 1, pension=True, gl_code="5000"),
    _earning("OT_1.5", "Overtime (1.5x)", Hourly(Decimal("1.5")), 2,
             recurring=False, gl_code="5010"),
    _earning("OT_2.0", "Overtime (2.0x)", Hourly(Decimal("2.0")), 3,
             recurring=False, gl_code="5010"),
    _earning("BONUS", "Bonus", Fixed(), 4, recurring=False, gl_code="5020"),
    _earning("COMMISSION", "Commission", Fixed(), 5, recurring=False, gl_code="5030"),
    _earning("TRAVEL_ALLOW", "Travel Allowance", Fixed(), 6, uif=False, sdl=False,
             gl_code="5040"),
    _earning("CELL_ALLOW", "Cellphone Allowance", Fixed(), 7, gl_code="5050"),
    # Deductions
    PayElementDefinition("PAYE", "PAYE", ElementType.DEDUCTION, Formula("paye"),
                         gl_code="2100", sort_order=20),
    PayElementDefinition("UIF_EE", "UIF (Employee)", ElementType.DEDUCTION,
                         Formula("uif_employee"), gl_code="2110", sort_order=21),
    PayElementDefinition("PENSION_EE", "Pension Fund (Employee)", ElementType.DEDUCTION,
                         Percentage(Decimal("7.5"), "pensionable"), is_pre_tax=True,
                         gl_code="2120", sort_order=22),
    PayElementDefinition("MEDICAL_EE", "Medical Aid (Employee)", ElementType.DEDUCTION,
                         Fixed(), gl_code="2130", sort_order=23),
    PayElementDefinition("LOAN", "Staff Loan Repayment", ElementType.DEDUCTION,
                         Fixed(), gl_code="1400", sort_order=24),
    # Employer contributions
    PayElementDefinition("UIF_ER", "UIF (Employer)", ElementType.EMPLOYER_CONTRIBUTION,
                         Formula("uif_employer"), gl_code="6100", sort_order=40),
    PayElementDefinition("SDL", "Skills Development Levy",
                         ElementType.EMPLOYER_CONTRIBUTION, Formula("sdl"),
                         gl_code="6110", sort_order=41),
    PayElementDefinition("PENSION_ER", "Pension Fund (Employer)",
                         ElementType.EMPLOYER_CONTRIBUTION,
                         Percentage(Decimal("7.5"), "pensionable"),
                         gl_code="6120", sort_order=42),
    PayElementDefinition("MEDICAL_ER", "Medical Aid (Employer)",
                         ElementType.EMPLOYER_CONTRIBUTION, Fixed(),
                         gl_code="6130", sort_order=43),
)


@dataclass
class _Bases:
    basic: Decimal = Decimal("0")
    gross: Decimal = Decimal("0")
    pensionable: Decimal = Decimal("0")

    def add(self, definition: PayElementDefinition, amount: Decimal) -> None:
        self.gross += amount
        if definition.is_pension_applicable:
            self.pensionable += amount


@dataclass
class PayElementRegistry:
    """The set of pay element definitions in force for one pay run."""

    definitions: dict[str, PayElementDefinition] = field(default_factory=dict)

    @classmethod
    def from_definitions(
        cls, definitions: Iterable[PayElementDefinition]
    ) -> PayElementRegistry:
        registry = cls()
        for definition in definitions:
            if definition.code in registry.definitions:
                raise PayElementError("code", f"duplicate element code '{definition.code}'")
            registry.definitions[definition.code] = definition
        return registry

    @classmethod
    def with_defaults(cls) -> PayElementRegistry:
        return cls.from_definitions(DEFAULT_ELEMENTS)

    @classmethod
    def from_payload(cls, payload: list[dict[str, Any]]) -> PayElementRegistry:
        return cls.from_definitions(PayElementDefinition.from_dict(d) for d in payload)

    def to_payload(self) -> list[dict[str, Any]]:
        return [d.to_dict() for d in self.ordered()]

    def ordered(self) -> list[PayElementDefinition]:
        return sorted(self.definitions.values(), key=lambda d: (d.sort_order, d.code))

    def get(self, code: str) -> PayElementDefinition:
        definition = self.definitions.get(code)
        if definition is None:
            raise PayElementError("code", f"unknown pay element '{code}'")
        return definition

    def statutory(self, formula: str) -> PayElementDefinition | None:
        """Return the active definition carrying a statutory formula."""
        for definition in self.ordered():
            method = definition.method
            if definition.is_active and isinstance(method, Formula) and method.formula == formula:
                return definition
        return None

    def validate(self, snapshot: EmployeeSnapshot) -> None:
        """Check every assignment refers to a usable element.

        An element is assigned at most once; adjustments may add further
        items for an element that is already assigned.

        Raises:
            PayElementError: Naming the offending assignment and employee.
        """
        seen: set[str] = set()
        for assignment in snapshot.assignments:
            field_name = f"assignments.{assignment.code}"

            def reject(message: str) -> PayElementError:
                return PayElementError(field_name, message, snapshot.employee_number)

            definition = self.definitions.get(assignment.code)
            if definition is None:
                raise reject("unknown pay element code")
            if not definition.is_active:
                raise reject("pay element is inactive")
            if definition.code == BASIC_CODE:
                raise reject("basic salary is taken from the employee record")
            if definition.is_statutory:
                raise reject("statutory elements are calculated, not assigned")
            if not assignment.is_adjustment:
                if assignment.code in seen:
                    raise reject("pay element assigned more than once")
                seen.add(assignment.code)

            for name in ("amount", "percentage", "rate", "units"):
                value = getattr(assignment, name)
                if value is not None and value < 0:
                    raise reject(f"{name} must not be negative")

            method = definition.method
            if isinstance(method, Fixed):
                if assignment.amount is None and method.default_amount is None:
                    raise reject("amount is required")
            elif isinstance(method, Percentage):
                if assignment.percentage is not None and assignment.percentage > 100:
                    raise reject("percentage must be between 0 and 100")
            elif isinstance(method, (Hourly, Daily)):
                if assignment.units is None:
                    raise reject(f"units are required for {method.kind} elements")

    def resolve(
        self,
        snapshot: EmployeeSnapshot,
        frequency: PayFrequency,
        unpaid_leave_days: Decimal = Decimal("0"),
    ) -> list[LineItem]:
        """Resolve an employee's assignments into line items.

        BASIC is produced from the snapshot's basic salary, reduced by
        unpaid leave. Earnings resolve first (in sort order) so that
        percentage deductions and contributions see the full gross and
        pensionable bases. Statutory (formula) elements are left to the
        gross-to-net calculator.
        """
        self.validate(snapshot)
        working_days = WORKING_DAYS_PER_PERIOD[frequency]
        daily_rate = snapshot.basic_salary / working_days
        hourly_rate = (
            snapshot.hourly_rate
            if snapshot.hourly_rate is not None
            else daily_rate / HOURS_PER_DAY
        )

        assignments: dict[str, list[ElementAssignment]] = {}
        for assignment in snapshot.assignments:
            assignments.setdefault(assignment.code, []).append(assignment)
        bases = _Bases()
        items: list[LineItem] = []

        basic_definition = self.definitions.get(BASIC_CODE)
        if basic_definition is not None and basic_definition.is_active:
            basic_item = self._basic_item(
                basic_definition, snapshot.basic_salary, daily_rate, unpaid_leave_days
            )
            bases.basic = basic_item.amount
            if basic_item.amount > 0:
                items.append(basic_item)
                bases.add(basic_definition, basic_item.amount)

        ordered = [
            d for d in self.ordered() if d.code in assignments and not d.is_statutory
        ]
        earnings = [d for d in ordered if d.element_type == ElementType.EARNING]
        others = [d for d in ordered if d.element_type != ElementType.EARNING]

        for definition in earnings:
            for assignment in assignments[definition.code]:
                item = self._resolve_one(definition, assignment, bases, hourly_rate, daily_rate)
                items.append(item)
                bases.add(definition, item.amount)

        for definition in others:
            items.extend(
                self._resolve_one(definition, assignment, bases, hourly_rate, daily_rate)
                for assignment in assignments[definition.code]
            )

        return items

    @staticmethod
    def _basic_item(
        definition: PayElementDefinition,
        basic_salary: Decimal,
        daily_rate: Decimal,
        unpaid_leave_days: Decimal,
    ) -> LineItem:
        amount = basic_salary
        notes = None
        if unpaid_leave_days and unpaid_leave_days > 0:
            amount = max(Decimal("0"), basic_salary - unpaid_leave_days * daily_rate)
            notes = f"Less {unpaid_leave_days} unpaid leave day(s)"
        return _item(definition, amount, notes=notes)

    @staticmethod
    def _resolve_one(
        definition: PayElementDefinition,
        assignment: ElementAssignment,
        bases: _Bases,
        hourly_rate: Decimal,
        daily_rate: Decimal,
    ) -> LineItem:
        method = definition.method
        if isinstance(method, Fixed):
            amount = (
                assignment.amount if assignment.amount is not None else method.default_amount
            )
            return _item(definition, amount, assignment=assignment)

        if isinstance(method, Percentage):
            percentage = (
                assignment.percentage
                if assignment.percentage is not None
                else method.percentage
            )
            base = getattr(bases, method.base)
            return _item(
                definition,
                base * percentage / Decimal("100"),
                assignment=assignment,
                percentage=percentage,
            )

        if isinstance(method, Hourly):
            rate = (
                assignment.rate if assignment.rate is not None else hourly_rate
            ) * method.multiplier
            return _item(
                definition,
                assignment.units * rate,
                assignment=assignment,
                rate=LineItemBuilder.round_to_cents(rate),
                units=assignment.units,
            )

        # Daily
        if assignment.rate is not None:
            rate = assignment.rate
        elif method.rate is not None:
            rate = method.rate
        else:
            rate = daily_rate
        return _item(
            definition,
            assignment.units * rate,
            assignment=assignment,
            rate=LineItemBuilder.round_to_cents(rate),
            units=assignment.units,
        )


def _item(
    definition: PayElementDefinition,
    amount: Decimal,
    *,
    assignment: ElementAssignment | None = None,
    rate: Decimal | None = None,
    units: Decimal | None = None,
    percentage: Decimal | None = None,
    notes: str | None = None,
) -> LineItem:
    return LineItemBuilder.create_item(
        definition.code,
        definition.name,
        definition.element_type,
        amount,
        rate=rate,
        units=units,
        percentage=percentage,
        is_taxable=definition.is_taxable,
        is_uif_applicable=definition.is_uif_applicable,
        is_sdl_applicable=definition.is_sdl_applicable,
        is_pre_tax=definition.is_pre_tax,
        reference=assignment.reference if assignment else None,
        notes=(assignment.notes if assignment and assignment.notes else notes),
    )
