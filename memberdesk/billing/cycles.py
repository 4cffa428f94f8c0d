"""
Billing period arithmetic.

Month-based cycles use dateutil's relativedelta, which clamps to the last day
of a shorter month (Jan 31 + 1 month = Feb 28/29).
"""

from __future__ import annotations

import secrets
import string
from datetime import date
from datetime import timedelta

from dateutil.relativedelta import relativedelta

from memberdesk.billing.constants import BillingCycle

_CYCLE_STEPS = {
    BillingCycle.DAILY: relativedelta(days=1),
    BillingCycle.WEEKLY: relativedelta(weeks=1),
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.QUARTERLY: relativedelta(months=3),
    BillingCycle.SEMIANNUAL: relativedelta(months=6),
    BillingCycle.ANNUAL: relativedelta(years=1),
}

# Spellings found in imported data.
_CYCLE_ALIASES = {
    "SEMI_ANNUALLY": BillingCycle.SEMIANNUAL,
    "SEMI-ANNUALLY": BillingCycle.SEMIANNUAL,
    "SEMIANNUALLY": BillingCycle.SEMIANNUAL,
    "YEARLY": BillingCycle.ANNUAL,
    "ANNUALLY": BillingCycle.ANNUAL,
}

INVOICE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def normalize_cycle(cycle: str | None) -> BillingCycle:
    """Map a stored cycle string to a BillingCycle, defaulting to MONTHLY."""
    key = (cycle or "").strip().upper()
    if key in _CYCLE_ALIASES:
        return _CYCLE_ALIASES[key]
    try:
        return BillingCycle(key)
    except ValueError:
        return BillingCycle.MONTHLY


def next_charge_date(start: date, cycle: str | None) -> date:
    return start + _CYCLE_STEPS[normalize_cycle(cycle)]


def billing_period_end(start: date, cycle: str | None) -> date:
    """Last day covered by the period that begins on ``start``."""
    return next_charge_date(start, cycle) - timedelta(days=1)


def generate_invoice_number(today: date) -> str:
    """Return a number like ``INV-20250301-7K2Q``."""
    suffix = "".join(secrets.choice(INVOICE_SUFFIX_ALPHABET) for _ in range(4))
    return f"INV-{today:%Y%m%d}-{suffix}"
