from datetime import datetime

from tms_billing.periods import add_months, period_end_for_interval


def test_month_end_clamps_to_leap_day():
    assert add_months(datetime(2024, 1, 31, 10, 30), 1) == datetime(2024, 2, 29, 10, 30)


def test_month_end_clamps_in_common_year():
    assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)


def test_december_rolls_into_next_year():
    assert add_months(datetime(2024, 12, 15), 1) == datetime(2025, 1, 15)


def test_yearly_period_from_leap_day():
    assert period_end_for_interval(datetime(2024, 2, 29), "yearly") == datetime(2025, 2, 28)


def test_unknown_interval_is_monthly():
    start = datetime(2024, 3, 10)
    assert period_end_for_interval(start, None) == datetime(2024, 4, 10)
    assert period_end_for_interval(start, "weekly") == datetime(2024, 4, 10)
