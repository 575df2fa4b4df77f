"""Pay period derivation for the March-to-February tax year."""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, timedelta

from payrun_engine.calculators.types import PayFrequency
from payrun_engine.errors import PayPeriodError

TAX_YEAR_PATTERN = re.compile(r"^(\d{4})/(\d{4})$")
TAX_YEAR_START_MONTH = 3

# Weekly and fortnightly pay dates fall this many days after period end.
PAY_DATE_OFFSET_DAYS = 3


@dataclass(frozen=True)
class PayPeriod:
    """Dates bounding one pay period."""

    frequency: PayFrequency
    period_number: int
    tax_year: str
    period_start: date
    period_end: date
    cut_off_date: date
    pay_date: date


def parse_tax_year(tax_year: str) -> int:
    """Return the starting calendar year of a ``YYYY/YYYY`` label."""
    match = TAX_YEAR_PATTERN.match(tax_year or "")
    if match is None:
        raise PayPeriodError("tax_year", f"'{tax_year}' is not in YYYY/YYYY format")
    start, end = int(match.group(1)), int(match.group(2))
    if end != start + 1:
        raise PayPeriodError(
            "tax_year", f"'{tax_year}' must span two consecutive calendar years"
        )
    return start


def format_tax_year(start_year: int) -> str:
    return f"{start_year}/{start_year + 1}"


def current_tax_year(on: date) -> str:
    """Return the tax year label containing ``on``.

    January and February belong to the tax year that started the
    previous March.
    """
    if on.month < TAX_YEAR_START_MONTH:
        return format_tax_year(on.year - 1)
    return format_tax_year(on.year)


def _validate_period_number(frequency: PayFrequency, period_number: int) -> None:
    limit = frequency.periods_per_year
    if not isinstance(period_number, int) or not 1 <= period_number <= limit:
        raise PayPeriodError(
            "period_number",
            f"{period_number} is outside 1-{limit} for {frequency.value} pay",
        )


def _day_in_month(year: int, month: int, day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def calculate_pay_period(
    frequency: PayFrequency | str,
    period_number: int,
    tax_year: str,
    pay_day: int = 25,
    cut_off_day: int = 25,
) -> PayPeriod:
    """Derive period start, end, cut-off and pay date.

    Monthly period 1 is March of the starting year; periods 11 and 12
    are January and February of the following year. Pay day and cut-off
    day are clamped to the last day of short months.

    Weekly and fortnightly periods are fixed 7/14 day blocks counted
    from March 1; the cut-off is the period end and pay date falls
    three days later.

    Raises:
        PayPeriodError: For an unknown frequency, an out-of-range period
            number, or a malformed tax year label.
    """
    try:
        frequency = PayFrequency(frequency)
    except ValueError:
        raise PayPeriodError("frequency", f"unknown pay frequency '{frequency}'") from None
    _validate_period_number(frequency, period_number)
    start_year = parse_tax_year(tax_year)

    if frequency == PayFrequency.MONTHLY:
        month_index = (period_number - 1 + TAX_YEAR_START_MONTH - 1) % 12
        month = month_index + 1
        year = start_year if period_number <= 10 else start_year + 1
        period_start = date(year, month, 1)
        period_end = _day_in_month(year, month, 31)
        cut_off_date = _day_in_month(year, month, cut_off_day)
        pay_date = _day_in_month(year, month, pay_day)
    else:
        length = 7 if frequency == PayFrequency.WEEKLY else 14
        year_start = date(start_year, TAX_YEAR_START_MONTH, 1)
        period_start = year_start + timedelta(days=(period_number - 1) * length)
        period_end = period_start + timedelta(days=length - 1)
        cut_off_date = period_end
        pay_date = period_end + timedelta(days=PAY_DATE_OFFSET_DAYS)

    return PayPeriod(
        frequency=frequency,
        period_number=period_number,
        tax_year=tax_year,
        period_start=period_start,
        period_end=period_end,
        cut_off_date=cut_off_date,
        pay_date=pay_date,
    )


def period_number_for(frequency: PayFrequency | str, tax_year: str, on: date) -> int:
    """Return the period number of ``tax_year`` that contains ``on``.

    The trailing day or two of a tax year not covered by 52 weeks (or 26
    fortnights) belong to the final period.
    """
    frequency = PayFrequency(frequency)
    start_year = parse_tax_year(tax_year)
    year_start = date(start_year, TAX_YEAR_START_MONTH, 1)
    year_end = date(start_year + 1, TAX_YEAR_START_MONTH, 1) - timedelta(days=1)
    if not year_start <= on <= year_end:
        raise PayPeriodError("date", f"{on.isoformat()} is outside tax year {tax_year}")

    if frequency == PayFrequency.MONTHLY:
        return (on.month - TAX_YEAR_START_MONTH) % 12 + 1

    length = 7 if frequency == PayFrequency.WEEKLY else 14
    number = (on - year_start).days // length + 1
    return min(number, frequency.periods_per_year)
