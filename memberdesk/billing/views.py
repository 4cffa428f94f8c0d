"""
Staff API for billing.

Routes (under /api/v1/tenants/<tenant_slug>/):
    POST  billing/run/              invoice every due subscription
    POST  billing/auto-run/         once-a-day composite run
    POST  billing/past-due/         sweep overdue invoices to PAST_DUE
    GET   invoices/<id>/            invoice detail
    PATCH invoices/<id>/            manual status change
    POST  promo-codes/validate/     check a promo code
"""

import logging

from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from memberdesk.billing.discounts import validate_promo
from memberdesk.billing.exceptions import BillingError
from memberdesk.billing.exceptions import InvalidTransitionError
from memberdesk.billing.ledger import InvoiceLedger
from memberdesk.billing.models import Invoice
from memberdesk.billing.models import Plan
from memberdesk.billing.scheduler import BillingScheduler
from memberdesk.billing.scheduler import tenant_today
from memberdesk.billing.serializers import InvoiceSerializer
from memberdesk.billing.serializers import InvoiceUpdateSerializer
from memberdesk.billing.serializers import PromoValidateSerializer
from memberdesk.payments.factory import ProcessorFactory
from memberdesk.tenants.scoping import TenantScopedMixin

logger = logging.getLogger(__name__)


def error_response(exc: BillingError, status_code: int) -> Response:
    return Response({"detail": exc.detail, "code": exc.code}, status=status_code)


class TenantAPIView(TenantScopedMixin, APIView):
    permission_classes = [IsAdminUser]


class BillingRunView(TenantAPIView):
    """Generate invoices for every subscription that is due today."""

    def post(self, request, tenant_slug):
        tenant = self.get_tenant()
        try:
            result = BillingScheduler(tenant).run()
        except Exception as exc:
            logger.exception("Billing run failed for %s", tenant.slug)
            return Response(
                {"detail": str(exc), "code": "billing_run_failed"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return Response(result.as_dict())


class BillingAutoRunView(TenantAPIView):
    """
    Run the daily billing job if it has not run yet today.

    Safe to call on every dashboard load; later calls the same day report
    ``{"skipped": true}``.
    """

    def post(self, request, tenant_slug):
        tenant = self.get_tenant()
        try:
            result = BillingScheduler(tenant).auto_run()
        except Exception as exc:
            logger.exception("Automatic billing run failed for %s", tenant.slug)
            return Response(
                {"detail": str(exc), "code": "billing_run_failed"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return Response(result.as_dict())


class PastDueSweepView(TenantAPIView):
    def post(self, request, tenant_slug):
        scheduler = BillingScheduler(self.get_tenant())
        updated = scheduler.ledger.sweep_past_due(
            scheduler.tenant,
            tenant_today(scheduler.settings),
        )
        return Response({"updated": updated})


class InvoiceDetailView(TenantAPIView):
    def get_invoice(self, invoice_id: int) -> Invoice:
        return get_object_or_404(
            Invoice.objects.select_related("member", "subscription__plan"),
            pk=invoice_id,
            tenant=self.get_tenant(),
        )

    def get(self, request, tenant_slug, invoice_id):
        invoice = self.get_invoice(invoice_id)
        return Response({"invoice": InvoiceSerializer(invoice).data})

    def patch(self, request, tenant_slug, invoice_id):
        """
        Change an invoice's status by hand.

        PAID records a manual settlement (cash unless ``payment_method`` says
        otherwise). VOID on a paid invoice reverses it and refunds a processor
        payment; a failed refund comes back in ``warnings``.
        """
        invoice = self.get_invoice(invoice_id)
        serializer = InvoiceUpdateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data

        ledger = InvoiceLedger(processors=ProcessorFactory.for_tenant(self.get_tenant()))
        try:
            result = ledger.transition(
                invoice,
                data["status"],
                payment_method=data.get("payment_method"),
                notes=data.get("notes"),
            )
        except InvalidTransitionError as exc:
            return error_response(exc, status.HTTP_409_CONFLICT)
        except BillingError as exc:
            return error_response(exc, status.HTTP_400_BAD_REQUEST)

        logger.info(
            "User %s set invoice %s to %s (applied=%s)",
            request.user.pk,
            invoice.invoice_number,
            data["status"],
            result.applied,
        )
        return Response(
            {
                "invoice": InvoiceSerializer(result.invoice).data,
                "applied": result.applied,
                "warnings": result.warnings,
            },
        )


class PromoCodeValidateView(TenantAPIView):
    def post(self, request, tenant_slug):
        serializer = PromoValidateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        tenant = self.get_tenant()

        plan = None
        plan_id = serializer.validated_data.get("plan_id")
        if plan_id:
            plan = get_object_or_404(Plan, pk=plan_id, tenant=tenant)

        validation = validate_promo(tenant, serializer.validated_data["code"], plan)
        if not validation.valid:
            return Response({"valid": False, "error": validation.error})
        discount = validation.discount
        return Response(
            {
                "valid": True,
                "code": discount.code,
                "discount_type": discount.discount_type,
                "discount_value": discount.discount_value,
                "description": discount.description,
            },
        )
