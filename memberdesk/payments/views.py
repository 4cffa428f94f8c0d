"""
Checkout API and processor webhook endpoints.

Webhooks are plain Django views: they must see the raw request body to
verify signatures, and processors authenticate with signatures rather than
sessions, so there is no CSRF token or DRF authentication on them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.conf import settings
from django.http import Http404
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
from rest_framework import status
from rest_framework.response import Response

from memberdesk.billing.exceptions import BillingError
from memberdesk.billing.models import Invoice
from memberdesk.billing.views import TenantAPIView
from memberdesk.billing.views import error_response
from memberdesk.payments.checkout import CheckoutService
from memberdesk.payments.factory import ProcessorFactory
from memberdesk.payments.models import CheckoutSession
from memberdesk.payments.processors.base import ProcessorError
from memberdesk.payments.processors.base import ProcessorNotConfigured
from memberdesk.payments.reconciler import ReconcileStatus
from memberdesk.payments.reconciler import WebhookReconciler
from memberdesk.payments.serializers import CheckoutStartSerializer
from memberdesk.payments.serializers import CheckoutStatusQuerySerializer
from memberdesk.payments.webhooks import WebhookError
from memberdesk.payments.webhooks import codec_for
from memberdesk.tenants.models import Tenant

if TYPE_CHECKING:
    from django.http import HttpRequest

logger = logging.getLogger(__name__)


def processor_error_response(exc: ProcessorError) -> Response:
    status_code = (
        status.HTTP_400_BAD_REQUEST
        if isinstance(exc, ProcessorNotConfigured)
        else status.HTTP_502_BAD_GATEWAY
    )
    return Response(
        {"detail": exc.detail, "code": exc.code, "processor": exc.processor},
        status=status_code,
    )


class InvoiceCheckoutView(TenantAPIView):
    """Start a hosted checkout for an invoice on the tenant's active processor."""

    def post(self, request, tenant_slug, invoice_id):
        tenant = self.get_tenant()
        invoice = get_object_or_404(
            Invoice.objects.select_related("member"),
            pk=invoice_id,
            tenant=tenant,
        )
        serializer = CheckoutStartSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            session = CheckoutService(tenant).start_checkout(
                invoice,
                serializer.validated_data["success_url"],
                serializer.validated_data["cancel_url"],
            )
        except BillingError as exc:
            return error_response(exc, status.HTTP_409_CONFLICT)
        except ProcessorError as exc:
            return processor_error_response(exc)

        return Response(
            {
                "checkout_url": session.checkout_url,
                "session_id": session.session_id,
                "order_id": session.order_id,
                "processor": session.processor,
            },
            status=status.HTTP_201_CREATED,
        )


class CheckoutStatusView(TenantAPIView):
    """
    Report (and settle) a checkout after the member is redirected back.

    Query: ``?sessionId=...`` and/or ``?orderId=...``. Repeated calls for a
    completed checkout return the same ``settlementId``.
    """

    def get(self, request, tenant_slug):
        query = CheckoutStatusQuerySerializer(data=request.query_params)
        if not query.is_valid():
            return Response(query.errors, status=status.HTTP_400_BAD_REQUEST)

        service = CheckoutService(self.get_tenant())
        try:
            result = service.poll(
                session_id=query.validated_data["sessionId"],
                order_id=query.validated_data["orderId"],
            )
        except CheckoutSession.DoesNotExist as exc:
            raise Http404 from exc
        except ProcessorError as exc:
            return processor_error_response(exc)

        payload = {"status": result.status, "processor": result.processor}
        if result.settlement_id is not None:
            payload["settlementId"] = result.settlement_id
        return Response(payload)


def _notification_url(request: HttpRequest) -> str:
    base = getattr(settings, "WEBHOOK_BASE_URL", "")
    if base:
        return f"{base.rstrip('/')}{request.path}"
    return request.build_absolute_uri(request.path)


@csrf_exempt
@require_http_methods(["POST"])
def processor_webhook(request: HttpRequest, processor: str, tenant_slug: str):
    """
    Receive a webhook from Stripe, PayPal or Square for one tenant.

    200: applied, already applied, or nothing to do.
    400: bad signature or payload; nothing was changed.
    409: the event arrived before the payment it refers to; redeliver.
    """
    tenant = get_object_or_404(Tenant, slug=tenant_slug, is_active=True)
    processors = ProcessorFactory.for_tenant(tenant)
    codec = codec_for(processor, processors, _notification_url(request))
    if codec is None:
        raise Http404

    try:
        event = codec.parse(request.body, request.headers)
    except WebhookError as exc:
        logger.warning(
            "Rejected %s webhook for %s: %s",
            processor,
            tenant.slug,
            exc.detail,
        )
        return JsonResponse({"detail": exc.detail, "code": exc.code}, status=400)

    if event is None:
        return JsonResponse({"received": True, "status": ReconcileStatus.IGNORED})

    outcome = WebhookReconciler(tenant, processors).apply(event)
    if outcome.status == ReconcileStatus.DEFERRED:
        return JsonResponse(
            {"received": False, "status": outcome.status, "detail": outcome.detail},
            status=409,
        )
    return JsonResponse({"received": True, "status": outcome.status})
