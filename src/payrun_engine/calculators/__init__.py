"""Pay run calculation engine."""

from payrun_engine.calculators.engine import (
    EmployeeInput,
    PayRunCalculationEngine,
    RunTotals,
)
from payrun_engine.calculators.exceptions import ExceptionDetector
from payrun_engine.calculators.gross_to_net import GrossToNetCalculator
from payrun_engine.calculators.line_builder import LineItemBuilder
from payrun_engine.calculators.pay_elements import PayElementDefinition, PayElementRegistry
from payrun_engine.calculators.pay_period import PayPeriod, calculate_pay_period
from payrun_engine.calculators.tax_calculator import TaxCalculator
from payrun_engine.calculators.tax_policy import TaxPolicy, TaxPolicyTable

__all__ = [
    "EmployeeInput",
    "ExceptionDetector",
    "GrossToNetCalculator",
    "LineItemBuilder",
    "PayElementDefinition",
    "PayElementRegistry",
    "PayPeriod",
    "PayRunCalculationEngine",
    "RunTotals",
    "TaxCalculator",
    "TaxPolicy",
    "TaxPolicyTable",
    "calculate_pay_period",
]
