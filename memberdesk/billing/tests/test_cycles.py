import re
from datetime import date

import pytest

from memberdesk.billing.constants import BillingCycle
from memberdesk.billing.cycles import billing_period_end
from memberdesk.billing.cycles import generate_invoice_number
from memberdesk.billing.cycles import next_charge_date
from memberdesk.billing.cycles import normalize_cycle


@pytest.mark.parametrize(
    ("cycle", "expected"),
    [
        ("DAILY", date(2025, 1, 16)),
        ("WEEKLY", date(2025, 1, 22)),
        ("MONTHLY", date(2025, 2, 15)),
        ("QUARTERLY", date(2025, 4, 15)),
        ("SEMIANNUAL", date(2025, 7, 15)),
        ("ANNUAL", date(2026, 1, 15)),
    ],
)
def test_next_charge_date_per_cycle(cycle, expected):
    assert next_charge_date(date(2025, 1, 15), cycle) == expected


def test_month_end_is_clamped():
    assert next_charge_date(date(2025, 1, 31), "MONTHLY") == date(2025, 2, 28)
    assert next_charge_date(date(2024, 1, 31), "MONTHLY") == date(2024, 2, 29)
    assert next_charge_date(date(2024, 2, 29), "ANNUAL") == date(2025, 2, 28)


def test_unknown_cycle_is_monthly():
    assert normalize_cycle("FORTNIGHTLY") == BillingCycle.MONTHLY
    assert normalize_cycle(None) == BillingCycle.MONTHLY
    assert next_charge_date(date(2025, 3, 10), "bogus") == date(2025, 4, 10)


def test_cycle_aliases():
    assert normalize_cycle("semi_annually") == BillingCycle.SEMIANNUAL
    assert normalize_cycle("Yearly") == BillingCycle.ANNUAL
    assert normalize_cycle(" weekly ") == BillingCycle.WEEKLY


def test_billing_period_end_is_day_before_next_charge():
    assert billing_period_end(date(2025, 1, 1), "MONTHLY") == date(2025, 1, 31)
    assert billing_period_end(date(2025, 1, 1), "DAILY") == date(2025, 1, 1)


def test_invoice_number_format():
    number = generate_invoice_number(date(2025, 3, 1))
    assert re.fullmatch(r"INV-20250301-[A-Z0-9]{4}", number)
