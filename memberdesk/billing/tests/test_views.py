"""
Tests for the staff billing API.
"""

from datetime import date
from unittest.mock import patch

import pytest
from django.urls import reverse

from memberdesk.billing.constants import InvoiceStatus
from memberdesk.billing.constants import PaymentMethod
from memberdesk.billing.ledger import InvoiceLedger
from memberdesk.billing.models import Invoice
from memberdesk.billing.tests.factories import InvoiceFactory
from memberdesk.billing.tests.factories import PlanFactory
from memberdesk.billing.tests.factories import PromoCodeFactory
from memberdesk.payments.processors.base import RefundResult
from memberdesk.payments.tests.fakes import FakeProcessor
from memberdesk.payments.tests.fakes import fake_factory
from memberdesk.tenants.tests.factories import TenantFactory


def tenant_url(name, tenant, **kwargs):
    return reverse(name, kwargs={"tenant_slug": tenant.slug, **kwargs})


@pytest.mark.django_db
class TestPermissions:
    def test_anonymous_is_rejected(self, client, tenant):
        response = client.post(tenant_url("api:billing:run", tenant))
        assert response.status_code in (401, 403)

    def test_non_staff_is_rejected(self, client, django_user_model, tenant):
        user = django_user_model.objects.create_user(username="member", password="pw")  # noqa: S106
        client.force_login(user)

        response = client.post(tenant_url("api:billing:run", tenant))

        assert response.status_code == 403

    def test_unknown_tenant_is_404(self, admin_client):
        response = admin_client.post(
            reverse("api:billing:run", kwargs={"tenant_slug": "nowhere"}),
        )
        assert response.status_code == 404

    def test_inactive_tenant_is_404(self, admin_client):
        tenant = TenantFactory(is_active=False)
        response = admin_client.post(tenant_url("api:billing:run", tenant))
        assert response.status_code == 404


@pytest.mark.django_db
class TestBillingRunViews:
    def test_run(self, admin_client, subscription):
        subscription.next_charge_date = date(2020, 1, 1)
        subscription.save()

        response = admin_client.post(tenant_url("api:billing:run", subscription.tenant))

        assert response.status_code == 200
        assert response.json() == {"created": 1, "skipped": 0, "total": 1, "errors": []}

    def test_run_failure_is_500(self, admin_client, tenant):
        with patch(
            "memberdesk.billing.views.BillingScheduler.run",
            side_effect=RuntimeError("database on fire"),
        ):
            response = admin_client.post(tenant_url("api:billing:run", tenant))

        assert response.status_code == 500
        assert response.json() == {
            "detail": "database on fire",
            "code": "billing_run_failed",
        }

    def test_auto_run_only_once_per_day(self, admin_client, tenant):
        url = tenant_url("api:billing:auto-run", tenant)

        first = admin_client.post(url)
        second = admin_client.post(url)

        assert first.status_code == 200
        assert first.json()["skipped"] is False
        assert second.json() == {"skipped": True, "message": "Already run today"}

    def test_past_due_sweep(self, admin_client, tenant, member):
        InvoiceFactory(tenant=tenant, member=member, due_date=date(2020, 1, 1))

        response = admin_client.post(tenant_url("api:billing:past-due", tenant))

        assert response.json() == {"updated": 1}


@pytest.mark.django_db
class TestInvoiceDetailView:
    def test_get(self, admin_client, invoice):
        response = admin_client.get(
            tenant_url("api:billing:invoice-detail", invoice.tenant, invoice_id=invoice.pk),
        )

        assert response.status_code == 200
        body = response.json()["invoice"]
        assert body["invoice_number"] == invoice.invoice_number
        assert body["member_name"] == "Ada Lovelace"
        assert body["status"] == InvoiceStatus.PENDING

    def test_other_tenants_invoice_is_404(self, admin_client, tenant):
        foreign = InvoiceFactory()

        response = admin_client.get(
            tenant_url("api:billing:invoice-detail", tenant, invoice_id=foreign.pk),
        )

        assert response.status_code == 404

    def test_mark_paid_by_hand(self, admin_client, invoice):
        response = admin_client.patch(
            tenant_url("api:billing:invoice-detail", invoice.tenant, invoice_id=invoice.pk),
            {"status": "PAID", "payment_method": "CHECK", "notes": "Check #1001"},
            content_type="application/json",
        )

        assert response.status_code == 200
        body = response.json()
        assert body["applied"] is True
        assert body["invoice"]["status"] == InvoiceStatus.PAID
        assert body["invoice"]["payment_method"] == PaymentMethod.CHECK
        assert body["invoice"]["settlement_id"] is not None

    def test_repeated_mark_paid_is_not_applied_twice(self, admin_client, invoice):
        url = tenant_url("api:billing:invoice-detail", invoice.tenant, invoice_id=invoice.pk)

        admin_client.patch(url, {"status": "PAID"}, content_type="application/json")
        response = admin_client.patch(url, {"status": "PAID"}, content_type="application/json")

        assert response.status_code == 200
        assert response.json()["applied"] is False
        assert invoice.settlements.count() == 1

    def test_invalid_transition_is_409(self, admin_client, invoice):
        InvoiceLedger().void(invoice)

        response = admin_client.patch(
            tenant_url("api:billing:invoice-detail", invoice.tenant, invoice_id=invoice.pk),
            {"status": "PAID"},
            content_type="application/json",
        )

        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    def test_pending_cannot_be_requested(self, admin_client, invoice):
        response = admin_client.patch(
            tenant_url("api:billing:invoice-detail", invoice.tenant, invoice_id=invoice.pk),
            {"status": "PENDING"},
            content_type="application/json",
        )

        assert response.status_code == 400
        assert "status" in response.json()

    def test_insufficient_credit_is_400(self, admin_client, invoice):
        response = admin_client.patch(
            tenant_url("api:billing:invoice-detail", invoice.tenant, invoice_id=invoice.pk),
            {"status": "PAID", "payment_method": "ACCOUNT"},
            content_type="application/json",
        )

        assert response.status_code == 400
        assert response.json()["code"] == "insufficient_credit"

    def test_void_paid_invoice_reports_refund_failure(self, admin_client, invoice):
        InvoiceLedger().mark_paid(invoice, processor="stripe", external_payment_id="pi_1")
        processor = FakeProcessor(
            refund_result=RefundResult(success=False, error="No such payment_intent"),
        )

        with patch(
            "memberdesk.billing.views.ProcessorFactory.for_tenant",
            return_value=fake_factory(processor),
        ):
            response = admin_client.patch(
                tenant_url(
                    "api:billing:invoice-detail",
                    invoice.tenant,
                    invoice_id=invoice.pk,
                ),
                {"status": "VOID"},
                content_type="application/json",
            )

        assert response.status_code == 200
        body = response.json()
        assert body["invoice"]["status"] == InvoiceStatus.VOID
        assert "No such payment_intent" in body["warnings"][0]
        assert Invoice.objects.get(pk=invoice.pk).status == InvoiceStatus.VOID


@pytest.mark.django_db
class TestPromoCodeValidateView:
    def test_valid_code(self, admin_client, tenant):
        PromoCodeFactory(tenant=tenant, code="SUMMER", discount_value=15, description="Summer")

        response = admin_client.post(
            tenant_url("api:billing:promo-validate", tenant),
            {"code": "summer"},
            content_type="application/json",
        )

        assert response.json() == {
            "valid": True,
            "code": "SUMMER",
            "discount_type": "PERCENT",
            "discount_value": 15,
            "description": "Summer",
        }

    def test_invalid_code(self, admin_client, tenant):
        response = admin_client.post(
            tenant_url("api:billing:promo-validate", tenant),
            {"code": "NOPE"},
            content_type="application/json",
        )

        assert response.json() == {"valid": False, "error": "Invalid promo code"}

    def test_plan_from_other_tenant_is_404(self, admin_client, tenant):
        PromoCodeFactory(tenant=tenant, code="SUMMER")
        foreign_plan = PlanFactory()

        response = admin_client.post(
            tenant_url("api:billing:promo-validate", tenant),
            {"code": "SUMMER", "plan_id": foreign_plan.pk},
            content_type="application/json",
        )

        assert response.status_code == 404
