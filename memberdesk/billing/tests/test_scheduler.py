"""
Tests for BillingScheduler runs and the daily automatic run.
"""

from datetime import date
from unittest.mock import patch

import pytest

from memberdesk.billing.constants import BillingCycle
from memberdesk.billing.constants import InvoiceStatus
from memberdesk.billing.constants import SubscriptionStatus
from memberdesk.billing.discounts import resolve_amount
from memberdesk.billing.models import Invoice
from memberdesk.billing.scheduler import BillingScheduler
from memberdesk.billing.scheduler import tenant_today
from memberdesk.billing.tests.factories import InvoiceFactory
from memberdesk.billing.tests.factories import SubscriptionFactory
from memberdesk.payments.processors.base import ChargeDeclined
from memberdesk.payments.processors.base import ChargeResult
from memberdesk.payments.processors.base import ChargeStatus
from memberdesk.payments.processors.base import ProcessorError
from memberdesk.payments.tests.fakes import FakeProcessor
from memberdesk.payments.tests.fakes import fake_factory
from memberdesk.tenants.tenant_settings import BillingSettings

TODAY = date(2025, 1, 1)


def make_scheduler(tenant, processor=None, **settings_overrides):
    factory = fake_factory(processor, **settings_overrides)
    return BillingScheduler(
        tenant,
        billing_settings=factory.settings,
        processors=factory,
    )


@pytest.mark.django_db
class TestRun:
    def test_invoices_due_subscription(self, subscription):
        result = BillingScheduler(subscription.tenant).run(TODAY)

        assert result.as_dict() == {"created": 1, "skipped": 0, "total": 1, "errors": []}
        invoice = Invoice.objects.get(subscription=subscription)
        assert invoice.amount_cents == 10000
        assert invoice.billing_period_start == date(2025, 1, 1)
        assert invoice.billing_period_end == date(2025, 1, 31)
        assert invoice.due_date == date(2025, 1, 8)
        subscription.refresh_from_db()
        assert subscription.next_charge_date == date(2025, 2, 1)

    def test_grace_period_and_currency_come_from_settings(self, subscription):
        scheduler = BillingScheduler(
            subscription.tenant,
            billing_settings=BillingSettings(grace_period_days=3, currency="eur"),
        )

        scheduler.run(TODAY)

        invoice = Invoice.objects.get(subscription=subscription)
        assert invoice.due_date == date(2025, 1, 4)
        assert invoice.currency == "eur"

    def test_rerun_does_not_double_bill(self, subscription):
        scheduler = BillingScheduler(subscription.tenant)
        scheduler.run(TODAY)

        # Simulate an overlapping run that read the old next_charge_date.
        subscription.refresh_from_db()
        subscription.next_charge_date = TODAY
        subscription.save()
        result = scheduler.run(TODAY)

        assert result.created == 0
        assert result.skipped == 1
        assert Invoice.objects.filter(subscription=subscription).count() == 1
        subscription.refresh_from_db()
        assert subscription.next_charge_date == date(2025, 2, 1)

    def test_skips_subscriptions_that_are_not_due(self, tenant):
        SubscriptionFactory(tenant=tenant, next_charge_date=date(2025, 1, 2))
        SubscriptionFactory(tenant=tenant, status=SubscriptionStatus.SUSPENDED)
        SubscriptionFactory(tenant=tenant, plan__auto_renew=False)
        SubscriptionFactory(tenant=tenant, next_charge_date=None)
        SubscriptionFactory()

        result = BillingScheduler(tenant).run(TODAY)

        assert result.total == 0
        assert not Invoice.objects.exists()

    def test_catches_up_one_period_per_run(self, subscription):
        subscription.next_charge_date = date(2024, 11, 1)
        subscription.save()
        scheduler = BillingScheduler(subscription.tenant)

        scheduler.run(TODAY)
        scheduler.run(TODAY)
        scheduler.run(TODAY)

        starts = sorted(
            Invoice.objects.filter(subscription=subscription).values_list(
                "billing_period_start",
                flat=True,
            ),
        )
        assert starts == [date(2024, 11, 1), date(2024, 12, 1), date(2025, 1, 1)]

    def test_uses_plan_cycle(self, subscription):
        subscription.plan.billing_cycle = BillingCycle.QUARTERLY
        subscription.plan.save()

        BillingScheduler(subscription.tenant).run(TODAY)

        subscription.refresh_from_db()
        assert subscription.next_charge_date == date(2025, 4, 1)

    def test_one_failure_does_not_stop_the_run(self, tenant):
        broken = SubscriptionFactory(tenant=tenant, member__first_name="Broken")
        healthy = SubscriptionFactory(tenant=tenant)

        def flaky(subscription, period_start, family_count=None):
            if subscription.pk == broken.pk:
                msg = "pricing exploded"
                raise RuntimeError(msg)
            return resolve_amount(subscription, period_start, family_count)

        with patch("memberdesk.billing.scheduler.resolve_amount", side_effect=flaky):
            result = BillingScheduler(tenant).run(TODAY)

        assert result.created == 1
        assert result.errors == [f"{broken.member.full_name}: pricing exploded"]
        assert Invoice.objects.filter(subscription=healthy).exists()
        broken.refresh_from_db()
        assert broken.next_charge_date == TODAY


@pytest.mark.django_db
class TestAutoCharge:
    def _with_card(self, subscription):
        member = subscription.member
        member.stripe_customer_id = "cus_1"
        member.default_payment_method_id = "pm_1"
        member.save()

    def test_successful_charge_pays_invoice(self, subscription):
        self._with_card(subscription)
        scheduler = make_scheduler(subscription.tenant)

        result = scheduler.run(TODAY, auto_charge=True)

        assert result.charged == 1
        invoice = Invoice.objects.get(subscription=subscription)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.settlement.external_payment_id.startswith("pi_auto_")

    def test_pending_charge_leaves_invoice_open(self, subscription):
        self._with_card(subscription)
        processor = FakeProcessor(
            charge=ChargeResult(external_payment_id="pi_slow", status=ChargeStatus.PENDING),
        )

        make_scheduler(subscription.tenant, processor).run(TODAY, auto_charge=True)

        invoice = Invoice.objects.get(subscription=subscription)
        assert invoice.status == InvoiceStatus.PENDING

    def test_declined_charge_starts_dunning(self, subscription):
        self._with_card(subscription)
        processor = FakeProcessor(
            charge_error=ChargeDeclined("Insufficient funds", external_payment_id="pi_x"),
        )

        make_scheduler(subscription.tenant, processor).run(TODAY, auto_charge=True)

        invoice = Invoice.objects.get(subscription=subscription)
        assert invoice.status == InvoiceStatus.FAILED
        assert invoice.next_retry_date == date(2025, 1, 8)
        subscription.refresh_from_db()
        assert subscription.retry_count == 1

    def test_decline_without_payment_id_starts_dunning(self, subscription):
        self._with_card(subscription)
        processor = FakeProcessor(charge_error=ChargeDeclined("Do not honor"))

        make_scheduler(subscription.tenant, processor).run(TODAY, auto_charge=True)

        invoice = Invoice.objects.get(subscription=subscription)
        assert invoice.status == InvoiceStatus.FAILED
        assert invoice.last_failed_payment_id.startswith(f"decline-{invoice.pk}-")
        subscription.refresh_from_db()
        assert subscription.retry_count == 1

    def test_processor_error_is_reported(self, subscription):
        self._with_card(subscription)
        processor = FakeProcessor(charge_error=ProcessorError("Stripe is down"))

        result = make_scheduler(subscription.tenant, processor).run(
            TODAY,
            auto_charge=True,
        )

        assert result.created == 1
        assert result.errors == [f"{subscription.member.full_name}: Stripe is down"]
        invoice = Invoice.objects.get(subscription=subscription)
        assert invoice.status == InvoiceStatus.PENDING

    def test_member_without_card_is_not_charged(self, subscription):
        processor = FakeProcessor()

        make_scheduler(subscription.tenant, processor).run(TODAY, auto_charge=True)

        assert processor.called("charge_off_session") == []


@pytest.mark.django_db
class TestCancellations:
    def test_cancels_when_date_arrives(self, tenant):
        due = SubscriptionFactory(tenant=tenant, cancellation_effective_date=TODAY)
        suspended = SubscriptionFactory(
            tenant=tenant,
            status=SubscriptionStatus.SUSPENDED,
            cancellation_effective_date=date(2024, 12, 1),
        )
        later = SubscriptionFactory(
            tenant=tenant,
            cancellation_effective_date=date(2025, 2, 1),
        )

        cancelled = BillingScheduler(tenant).process_cancellations(TODAY)

        assert cancelled == 2
        for subscription in (due, suspended, later):
            subscription.refresh_from_db()
        assert due.status == SubscriptionStatus.CANCELLED
        assert due.next_charge_date is None
        assert suspended.status == SubscriptionStatus.CANCELLED
        assert later.status == SubscriptionStatus.ACTIVE


@pytest.mark.django_db
class TestAutoRun:
    def test_runs_every_step_once_per_day(self, subscription):
        overdue = InvoiceFactory(
            tenant=subscription.tenant,
            member=subscription.member,
            due_date=date(2024, 12, 1),
        )
        scheduler = BillingScheduler(subscription.tenant)

        first = scheduler.auto_run(TODAY)
        second = scheduler.auto_run(TODAY)

        assert not first.skipped
        assert first.invoices_created == 1
        assert first.past_due_marked == 1
        assert second.as_dict() == {"skipped": True, "message": "Already run today"}
        overdue.refresh_from_db()
        assert overdue.status == InvoiceStatus.PAST_DUE

    def test_next_day_runs_again(self, subscription):
        scheduler = BillingScheduler(subscription.tenant)

        scheduler.auto_run(TODAY)
        result = scheduler.auto_run(date(2025, 1, 2))

        assert not result.skipped

    def test_disabled_auto_generate(self, subscription):
        scheduler = BillingScheduler(
            subscription.tenant,
            billing_settings=BillingSettings(auto_generate=False),
        )

        result = scheduler.auto_run(TODAY)

        assert result.skipped
        assert result.message == "Auto-generate disabled"
        assert not Invoice.objects.exists()

    def test_counts_cancellations(self, subscription):
        subscription.cancellation_effective_date = TODAY
        subscription.save()

        result = BillingScheduler(subscription.tenant).auto_run(TODAY)

        # Billing runs before cancellations, so the final period is invoiced.
        assert result.invoices_created == 1
        assert result.cancellations_processed == 1


def test_tenant_today_falls_back_to_utc(caplog):
    today = tenant_today(BillingSettings(timezone="Mars/Olympus_Mons"))

    assert isinstance(today, date)
    assert "Unknown timezone" in caplog.text
