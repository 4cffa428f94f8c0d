"""
Tests for invoice amount resolution and promo codes.
"""

from datetime import date
from datetime import timedelta

import pytest
from django.utils import timezone

from memberdesk.billing.constants import DiscountType
from memberdesk.billing.discounts import apply_family_discount
from memberdesk.billing.discounts import apply_percent_discount
from memberdesk.billing.discounts import effective_price
from memberdesk.billing.discounts import redeem_promo
from memberdesk.billing.discounts import resolve_amount
from memberdesk.billing.discounts import validate_promo
from memberdesk.billing.exceptions import PromoCodeError
from memberdesk.billing.models import PromoCode
from memberdesk.billing.tests.factories import PlanFactory
from memberdesk.billing.tests.factories import PromoCodeFactory
from memberdesk.billing.tests.factories import SubscriptionFactory
from memberdesk.members.tests.factories import FamilyLinkFactory


class TestPercentDiscounts:
    def test_rounds_half_up(self):
        # 15% of 9999 is 1499.85
        assert apply_percent_discount(9999, 15) == 8499
        # 10% of 1005 is 100.5
        assert apply_percent_discount(1005, 10) == 904

    def test_zero_percent_is_identity(self):
        assert apply_percent_discount(5000, 0) == 5000

    def test_never_negative(self):
        assert apply_percent_discount(5000, 100) == 0

    def test_family_discount_needs_two_people(self):
        assert apply_family_discount(10000, 10, 1) == 10000
        assert apply_family_discount(10000, 10, 2) == 9000


@pytest.mark.django_db
class TestEffectivePrice:
    def test_plan_price_without_override(self):
        subscription = SubscriptionFactory(plan__price_cents=12000)
        assert effective_price(subscription, subscription.plan, date(2025, 3, 1)) == 12000

    def test_override_applies_every_period(self):
        subscription = SubscriptionFactory(price_override_cents=8000)
        assert effective_price(subscription, subscription.plan, date(2025, 6, 1)) == 8000

    def test_first_period_only_override(self):
        subscription = SubscriptionFactory(
            plan__price_cents=10000,
            price_override_cents=5000,
            first_period_discount_only=True,
            start_date=date(2025, 1, 1),
        )
        plan = subscription.plan

        assert effective_price(subscription, plan, date(2025, 1, 1)) == 5000
        assert effective_price(subscription, plan, date(2025, 1, 2)) == 5000
        assert effective_price(subscription, plan, date(2025, 2, 1)) == 10000


@pytest.mark.django_db
class TestResolveAmount:
    def test_family_then_rank_with_notes(self):
        subscription = SubscriptionFactory(
            plan__price_cents=10000,
            plan__family_discount_percent=10,
            plan__rank_discount_percent=5,
            rank_discount_eligible=True,
        )

        price = resolve_amount(subscription, date(2025, 1, 1), family_count=3)

        # 10000 - 10% = 9000; 9000 - 5% = 8550
        assert price.amount_cents == 8550
        assert price.base_cents == 10000
        assert price.notes == [
            "Family discount (10%): -$10.00",
            "Rank discount (5%): -$4.50",
        ]

    def test_family_size_is_looked_up(self):
        subscription = SubscriptionFactory(
            plan__price_cents=10000,
            plan__family_discount_percent=20,
        )
        FamilyLinkFactory(member=subscription.member)

        price = resolve_amount(subscription, date(2025, 1, 1))

        assert price.amount_cents == 8000

    def test_rank_discount_needs_eligibility(self):
        subscription = SubscriptionFactory(
            plan__price_cents=10000,
            plan__rank_discount_percent=50,
            rank_discount_eligible=False,
        )

        price = resolve_amount(subscription, date(2025, 1, 1), family_count=1)

        assert price.amount_cents == 10000
        assert price.notes_text == ""


@pytest.mark.django_db
class TestPromoCodes:
    def test_codes_are_stored_upper_case(self, tenant):
        promo = PromoCodeFactory(tenant=tenant, code=" spring25 ")
        assert promo.code == "SPRING25"

    def test_validate_is_case_insensitive(self, tenant):
        PromoCodeFactory(tenant=tenant, code="SPRING", discount_value=25)

        validation = validate_promo(tenant, "spring")

        assert validation.valid
        assert validation.discount.discount_value == 25
        assert validation.discount.apply(10000) == 7500

    def test_unknown_code(self, tenant):
        validation = validate_promo(tenant, "NOPE")
        assert not validation.valid
        assert validation.error == "Invalid promo code"

    def test_codes_do_not_cross_tenants(self, tenant):
        PromoCodeFactory(code="SHARED")
        assert not validate_promo(tenant, "SHARED").valid

    def test_expired_and_future_codes(self, tenant):
        now = timezone.now()
        PromoCodeFactory(tenant=tenant, code="OLD", valid_until=now - timedelta(days=1))
        PromoCodeFactory(tenant=tenant, code="SOON", valid_from=now + timedelta(days=1))

        assert validate_promo(tenant, "OLD").error == "This promo code has expired"
        assert validate_promo(tenant, "SOON").error == "This promo code is not yet active"

    def test_plan_restriction(self, tenant):
        allowed = PlanFactory(tenant=tenant)
        other = PlanFactory(tenant=tenant)
        promo = PromoCodeFactory(tenant=tenant, code="ONLYONE")
        promo.applicable_plans.add(allowed)

        assert validate_promo(tenant, "ONLYONE", allowed).valid
        assert (
            validate_promo(tenant, "ONLYONE", other).error
            == "This promo code does not apply to the selected plan"
        )

    def test_fixed_discount_floors_at_zero(self, tenant):
        PromoCodeFactory(
            tenant=tenant,
            code="TENOFF",
            discount_type=DiscountType.FIXED,
            discount_value=1000,
        )
        discount = validate_promo(tenant, "TENOFF").discount

        assert discount.apply(5000) == 4000
        assert discount.apply(500) == 0

    def test_redeem_counts_against_cap(self, tenant):
        promo = PromoCodeFactory(tenant=tenant, code="ONCE", max_redemptions=1)

        redeem_promo(tenant, "ONCE")

        promo.refresh_from_db()
        assert promo.redemption_count == 1
        with pytest.raises(PromoCodeError, match="usage limit"):
            redeem_promo(tenant, "ONCE")
        assert PromoCode.objects.get(pk=promo.pk).redemption_count == 1

    def test_validate_does_not_redeem(self, tenant):
        promo = PromoCodeFactory(tenant=tenant, code="LOOK", max_redemptions=1)

        validate_promo(tenant, "LOOK")
        validate_promo(tenant, "LOOK")

        promo.refresh_from_db()
        assert promo.redemption_count == 0

    def test_redeem_inactive_code(self, tenant):
        PromoCodeFactory(tenant=tenant, code="OFF", is_active=False)

        with pytest.raises(PromoCodeError) as exc_info:
            redeem_promo(tenant, "OFF")
        assert exc_info.value.code == "invalid_promo_code"
