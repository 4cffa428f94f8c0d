"""
Hosted checkout for invoices.

start_checkout() asks the tenant's active processor for a hosted payment
page and records a CheckoutSession. poll() is what the member's browser
calls after being redirected back: it asks the processor how the session is
going and, on completion, settles the invoice through the reconciler, the
same path a webhook takes. Whichever arrives first wins; the other is a
no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db.models import Q

from memberdesk.billing.constants import InvoiceStatus
from memberdesk.billing.constants import SettlementKind
from memberdesk.billing.exceptions import BillingError
from memberdesk.billing.models import SettlementTransaction
from memberdesk.payments.events import Failed
from memberdesk.payments.events import Succeeded
from memberdesk.payments.factory import ProcessorFactory
from memberdesk.payments.models import CheckoutSession
from memberdesk.payments.models import CheckoutSessionStatus
from memberdesk.payments.processors.base import CheckoutState
from memberdesk.payments.processors.base import ProcessorNotConfigured
from memberdesk.payments.reconciler import WebhookReconciler

if TYPE_CHECKING:
    from memberdesk.billing.models import Invoice
    from memberdesk.tenants.models import Tenant

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = (
    InvoiceStatus.PENDING,
    InvoiceStatus.PAST_DUE,
    InvoiceStatus.FAILED,
)


@dataclass
class PollResult:
    status: str
    processor: str
    invoice_id: int
    settlement_id: int | None = None


class CheckoutService:
    def __init__(
        self,
        tenant: Tenant,
        processors: ProcessorFactory | None = None,
        reconciler: WebhookReconciler | None = None,
    ):
        self.tenant = tenant
        self.processors = processors or ProcessorFactory.for_tenant(tenant)
        self.reconciler = reconciler or WebhookReconciler(tenant, self.processors)

    def start_checkout(
        self,
        invoice: Invoice,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        if invoice.status not in PAYABLE_STATUSES:
            msg = f"Invoice {invoice.invoice_number} is {invoice.status} and cannot be paid."
            raise BillingError(msg, code="invoice_not_payable")

        processor = self.processors.active()
        if processor is None:
            raise ProcessorNotConfigured(self.processors.settings.active_processor or "")

        result = processor.create_checkout(
            invoice.amount_cents,
            invoice.currency,
            success_url,
            cancel_url,
            metadata={
                "invoice_id": str(invoice.pk),
                "invoice_number": invoice.invoice_number,
                "tenant": self.tenant.slug,
                "source": "invoice",
            },
            description=f"Invoice {invoice.invoice_number}",
        )
        session = CheckoutSession.objects.create(
            tenant=self.tenant,
            invoice=invoice,
            processor=processor.name,
            session_id=result.session_id,
            order_id=result.order_id,
            checkout_url=result.checkout_url,
        )
        logger.info(
            "Started %s checkout %s for invoice %s",
            processor.name,
            result.session_id,
            invoice.invoice_number,
        )
        return session

    def find_session(self, session_id: str = "", order_id: str = "") -> CheckoutSession:
        """
        Raises:
            CheckoutSession.DoesNotExist: no session of this tenant matches.
        """
        match = Q()
        if session_id:
            match |= Q(session_id=session_id)
        if order_id:
            match |= Q(order_id=order_id)
        if not match:
            raise CheckoutSession.DoesNotExist
        session = (
            CheckoutSession.objects.filter(match, tenant=self.tenant)
            .order_by("-created")
            .first()
        )
        if session is None:
            raise CheckoutSession.DoesNotExist
        return session

    def _capture_settlement_id(self, session: CheckoutSession) -> int | None:
        if not session.external_payment_id:
            return None
        return (
            SettlementTransaction.objects.filter(
                tenant=self.tenant,
                processor=session.processor,
                kind=SettlementKind.CAPTURE,
                external_payment_id=session.external_payment_id,
            )
            .values_list("pk", flat=True)
            .first()
        )

    def poll(self, session_id: str = "", order_id: str = "") -> PollResult:
        """
        Report a checkout's status, settling the invoice when it completes.

        Safe to call repeatedly: once a session is complete the stored
        settlement is returned without contacting the processor again.
        """
        session = self.find_session(session_id, order_id)
        if session.status == CheckoutSessionStatus.COMPLETE:
            return PollResult(
                status=CheckoutState.COMPLETE,
                processor=session.processor,
                invoice_id=session.invoice_id,
                settlement_id=self._capture_settlement_id(session),
            )

        processor = self.processors.get(session.processor)
        if processor is None:
            raise ProcessorNotConfigured(session.processor)

        status = processor.poll_status(
            session.session_id,
            session.order_id or order_id or None,
        )
        # Our own record decides which invoice this is, not the processor echo.
        metadata = {
            **status.metadata,
            "invoice_id": str(session.invoice_id),
            "order_id": session.order_id,
        }

        settlement_id = None
        if status.status == CheckoutState.COMPLETE:
            outcome = self.reconciler.apply(
                Succeeded(
                    processor=session.processor,
                    external_payment_id=status.external_payment_id,
                    amount_cents=status.amount_cents,
                    metadata=metadata,
                ),
            )
            settlement_id = outcome.settlement_id
            CheckoutSession.objects.filter(pk=session.pk).update(
                status=CheckoutSessionStatus.COMPLETE,
                external_payment_id=status.external_payment_id,
            )
        elif status.status == CheckoutState.FAILED:
            self.reconciler.apply(
                Failed(
                    processor=session.processor,
                    external_payment_id=status.external_payment_id
                    or session.session_id,
                    metadata=metadata,
                    reason="Checkout payment failed",
                ),
            )
            CheckoutSession.objects.filter(pk=session.pk).update(
                status=CheckoutSessionStatus.FAILED,
            )
        elif status.status == CheckoutState.EXPIRED:
            CheckoutSession.objects.filter(pk=session.pk).update(
                status=CheckoutSessionStatus.EXPIRED,
            )

        return PollResult(
            status=status.status,
            processor=session.processor,
            invoice_id=session.invoice_id,
            settlement_id=settlement_id,
        )
