"""
Discount resolution for invoices and promo codes.

The price functions are pure: the same subscription, plan, period and family
size always give the same amount. The scheduler calls resolve_amount() once
per invoice and stores the result; nothing recalculates it later.

Order of application:
    1. price override (or plan price)
    2. family discount
    3. rank discount
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import transaction
from django.db.models import F
from django.db.models import Q
from django.utils import timezone

from memberdesk.billing.constants import DiscountType
from memberdesk.billing.exceptions import PromoCodeError
from memberdesk.billing.models import PromoCode

if TYPE_CHECKING:
    from datetime import date
    from datetime import datetime

    from memberdesk.billing.models import Plan
    from memberdesk.billing.models import Subscription
    from memberdesk.tenants.models import Tenant

logger = logging.getLogger(__name__)

# Minimum family group size (member + relatives) for the family discount.
FAMILY_DISCOUNT_MIN_SIZE = 2


def _format_cents(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def _round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; money rounds half up.
    return int(value + 0.5)


def effective_price(
    subscription: Subscription,
    plan: Plan,
    billing_period_start: date,
) -> int:
    """
    Base price for one billing period, before percentage discounts.

    A ``first_period_discount_only`` override applies only while the period
    starts within one day of the subscription start.
    """
    override = subscription.price_override_cents
    if override is None:
        return plan.price_cents
    if not subscription.first_period_discount_only:
        return override
    if billing_period_start <= subscription.start_date + timedelta(days=1):
        return override
    return plan.price_cents


def apply_percent_discount(amount_cents: int, percent: int) -> int:
    if percent <= 0:
        return amount_cents
    discount = _round_half_up(amount_cents * percent / 100)
    return max(0, amount_cents - discount)


def apply_family_discount(amount_cents: int, percent: int, family_count: int) -> int:
    if family_count < FAMILY_DISCOUNT_MIN_SIZE:
        return amount_cents
    return apply_percent_discount(amount_cents, percent)


@dataclass(frozen=True)
class PriceBreakdown:
    amount_cents: int
    base_cents: int
    notes: list[str] = field(default_factory=list)

    @property
    def notes_text(self) -> str:
        return "\n".join(self.notes)


def resolve_amount(
    subscription: Subscription,
    billing_period_start: date,
    family_count: int | None = None,
) -> PriceBreakdown:
    """
    Work out what to invoice for one period, with notes for each discount.

    ``family_count`` defaults to the member's family group size.
    """
    plan = subscription.plan
    base = effective_price(subscription, plan, billing_period_start)
    amount = base
    notes: list[str] = []

    if family_count is None:
        family_count = subscription.member.family_size()

    discounted = apply_family_discount(
        amount,
        plan.family_discount_percent,
        family_count,
    )
    if discounted != amount:
        notes.append(
            f"Family discount ({plan.family_discount_percent}%): "
            f"-{_format_cents(amount - discounted)}",
        )
        amount = discounted

    if subscription.rank_discount_eligible:
        discounted = apply_percent_discount(amount, plan.rank_discount_percent)
        if discounted != amount:
            notes.append(
                f"Rank discount ({plan.rank_discount_percent}%): "
                f"-{_format_cents(amount - discounted)}",
            )
            amount = discounted

    return PriceBreakdown(amount_cents=amount, base_cents=base, notes=notes)


# =============================================================================
# Promo codes
# =============================================================================


@dataclass(frozen=True)
class PromoDiscount:
    code: str
    discount_type: str
    discount_value: int
    description: str = ""

    def apply(self, amount_cents: int) -> int:
        if self.discount_type == DiscountType.PERCENT:
            return apply_percent_discount(amount_cents, self.discount_value)
        return max(0, amount_cents - self.discount_value)

    @classmethod
    def from_promo(cls, promo: PromoCode) -> PromoDiscount:
        return cls(
            code=promo.code,
            discount_type=promo.discount_type,
            discount_value=promo.discount_value,
            description=promo.description,
        )


@dataclass(frozen=True)
class PromoValidation:
    valid: bool
    discount: PromoDiscount | None = None
    error: str = ""


def _check_promo(promo: PromoCode | None, plan: Plan | None, now: datetime) -> str:
    """Return an error message, or an empty string when the promo is usable."""
    if promo is None:
        return "Invalid promo code"
    if not promo.is_active:
        return "This promo code is no longer active"
    if promo.valid_from and now < promo.valid_from:
        return "This promo code is not yet active"
    if promo.valid_until and now > promo.valid_until:
        return "This promo code has expired"
    if (
        promo.max_redemptions is not None
        and promo.redemption_count >= promo.max_redemptions
    ):
        return "This promo code has reached its usage limit"
    if plan is not None:
        applicable = promo.applicable_plans.all()
        if applicable and plan not in applicable:
            return "This promo code does not apply to the selected plan"
    return ""


def validate_promo(
    tenant: Tenant,
    code: str,
    plan: Plan | None = None,
    now: datetime | None = None,
) -> PromoValidation:
    """Check a promo code without redeeming it."""
    now = now or timezone.now()
    promo = PromoCode.objects.filter(tenant=tenant, code=code.strip().upper()).first()
    error = _check_promo(promo, plan, now)
    if error:
        return PromoValidation(valid=False, error=error)
    return PromoValidation(valid=True, discount=PromoDiscount.from_promo(promo))


def redeem_promo(
    tenant: Tenant,
    code: str,
    plan: Plan | None = None,
    now: datetime | None = None,
) -> PromoDiscount:
    """
    Redeem a promo code, counting it against its redemption cap.

    The row is locked and the increment is conditional on the cap, so two
    enrolments racing for the last redemption cannot both succeed.

    Raises:
        PromoCodeError: if the code is unknown, inactive, expired, not valid
            for the plan, or used up.
    """
    now = now or timezone.now()
    with transaction.atomic():
        promo = (
            PromoCode.objects.select_for_update()
            .filter(tenant=tenant, code=code.strip().upper())
            .first()
        )
        error = _check_promo(promo, plan, now)
        if error:
            raise PromoCodeError(error)

        updated = (
            PromoCode.objects.filter(pk=promo.pk)
            .filter(
                Q(max_redemptions__isnull=True)
                | Q(redemption_count__lt=F("max_redemptions")),
            )
            .update(redemption_count=F("redemption_count") + 1)
        )
        if not updated:
            raise PromoCodeError("This promo code has reached its usage limit")

    logger.info("Redeemed promo code %s for tenant %s", promo.code, tenant.slug)
    return PromoDiscount.from_promo(promo)
