"""Tests for pay period derivation."""

from datetime import date

import pytest

from payrun_engine.calculators.pay_period import (
    calculate_pay_period,
    current_tax_year,
    parse_tax_year,
    period_number_for,
)
from payrun_engine.calculators.types import PayFrequency
from payrun_engine.errors import PayPeriodError


class TestMonthlyPeriods:
    """Monthly periods follow the March-to-February tax year."""

    def test_first_period_is_march(self):
        period = calculate_pay_period("monthly", 1, "2025/2026")

        assert period.frequency == PayFrequency.MONTHLY
        assert period.period_start == date(2025, 3, 1)
        assert period.period_end == date(2025, 3, 31)
        assert period.cut_off_date == date(2025, 3, 25)
        assert period.pay_date == date(2025, 3, 25)

    def test_january_and_february_roll_into_next_year(self):
        january = calculate_pay_period("monthly", 11, "2025/2026")
        february = calculate_pay_period("monthly", 12, "2025/2026")

        assert january.period_start == date(2026, 1, 1)
        assert january.period_end == date(2026, 1, 31)
        assert february.period_start == date(2026, 2, 1)
        assert february.period_end == date(2026, 2, 28)

    def test_leap_year_february(self):
        period = calculate_pay_period(PayFrequency.MONTHLY, 12, "2027/2028")
        assert period.period_end == date(2028, 2, 29)

    def test_pay_day_clamped_to_short_month(self):
        """Pay day 31 in April falls on the 30th."""
        period = calculate_pay_period("monthly", 2, "2025/2026", pay_day=31, cut_off_day=31)

        assert period.pay_date == date(2025, 4, 30)
        assert period.cut_off_date == date(2025, 4, 30)


class TestWeeklyPeriods:
    """Weekly and fortnightly periods are fixed blocks from March 1."""

    def test_first_week(self):
        period = calculate_pay_period("weekly", 1, "2025/2026")

        assert period.period_start == date(2025, 3, 1)
        assert period.period_end == date(2025, 3, 7)
        assert period.cut_off_date == date(2025, 3, 7)
        assert period.pay_date == date(2025, 3, 10)

    def test_last_fortnight(self):
        period = calculate_pay_period("fortnightly", 26, "2025/2026")

        assert period.period_start == date(2026, 2, 14)
        assert period.period_end == date(2026, 2, 27)

    def test_trailing_days_belong_to_last_period(self):
        assert period_number_for("weekly", "2025/2026", date(2026, 2, 28)) == 52
        assert period_number_for("fortnightly", "2025/2026", date(2026, 2, 28)) == 26

    def test_period_number_for_monthly(self):
        assert period_number_for("monthly", "2025/2026", date(2025, 3, 15)) == 1
        assert period_number_for("monthly", "2025/2026", date(2026, 1, 15)) == 11

    def test_period_number_for_date_outside_year(self):
        with pytest.raises(PayPeriodError):
            period_number_for("monthly", "2025/2026", date(2026, 3, 1))


class TestValidation:
    """Invalid inputs raise PayPeriodError naming the field."""

    @pytest.mark.parametrize(
        "frequency,period_number",
        [("monthly", 0), ("monthly", 13), ("fortnightly", 27), ("weekly", 53)],
    )
    def test_period_number_out_of_range(self, frequency, period_number):
        with pytest.raises(PayPeriodError) as exc_info:
            calculate_pay_period(frequency, period_number, "2025/2026")
        assert exc_info.value.field == "period_number"

    def test_unknown_frequency(self):
        with pytest.raises(PayPeriodError) as exc_info:
            calculate_pay_period("daily", 1, "2025/2026")
        assert exc_info.value.field == "frequency"

    @pytest.mark.parametrize("label", ["2025-2026", "2025/2027", "25/26", ""])
    def test_malformed_tax_year(self, label):
        with pytest.raises(PayPeriodError) as exc_info:
            parse_tax_year(label)
        assert exc_info.value.field == "tax_year"


class TestCurrentTaxYear:
    def test_before_march_is_previous_year(self):
        assert current_tax_year(date(2026, 2, 10)) == "2025/2026"

    def test_from_march(self):
        assert current_tax_year(date(2026, 3, 1)) == "2026/2027"
