"""
Apply processor events to the invoice ledger exactly once.

Processors redeliver webhooks, deliver them out of order, and the same
payment can be reported by both a webhook and a checkout poll. The
reconciler leans on the ledger's compare-and-set transitions and the
settlement uniqueness constraint for all of that; it never checks-then-acts
on invoice status itself.

Outcomes:
    applied   the event changed the ledger
    noop      the ledger already reflected the event
    ignored   nothing to do (unknown invoice, partial refund, pending order)
    deferred  the event arrived too early; the caller should ask the
              processor to redeliver it
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from django.db.models import Q

from memberdesk.billing.constants import InvoiceStatus
from memberdesk.billing.constants import SettlementKind
from memberdesk.billing.constants import SettlementStatus
from memberdesk.billing.dunning import DunningEngine
from memberdesk.billing.ledger import InvoiceLedger
from memberdesk.billing.models import Invoice
from memberdesk.billing.models import SettlementTransaction
from memberdesk.payments.events import Approved
from memberdesk.payments.events import Failed
from memberdesk.payments.events import Refunded
from memberdesk.payments.events import Succeeded
from memberdesk.payments.factory import ProcessorFactory
from memberdesk.payments.models import CheckoutSession
from memberdesk.payments.models import CheckoutSessionStatus
from memberdesk.payments.processors.base import CheckoutState
from memberdesk.payments.processors.base import ProcessorError

if TYPE_CHECKING:
    from memberdesk.payments.events import ProcessorEvent
    from memberdesk.tenants.models import Tenant

logger = logging.getLogger(__name__)


class ReconcileStatus(StrEnum):
    APPLIED = "applied"
    NOOP = "noop"
    IGNORED = "ignored"
    DEFERRED = "deferred"


@dataclass
class ReconcileOutcome:
    status: ReconcileStatus
    invoice_id: int | None = None
    settlement_id: int | None = None
    detail: str = ""


class WebhookReconciler:
    def __init__(
        self,
        tenant: Tenant,
        processors: ProcessorFactory,
        *,
        ledger: InvoiceLedger | None = None,
        dunning: DunningEngine | None = None,
    ):
        self.tenant = tenant
        self.processors = processors
        self.ledger = ledger or InvoiceLedger(processors=processors)
        self.dunning = dunning or DunningEngine(
            processors.settings,
            processors=processors,
            ledger=self.ledger,
        )

    @classmethod
    def for_tenant(cls, tenant: Tenant) -> WebhookReconciler:
        return cls(tenant, ProcessorFactory.for_tenant(tenant))

    def apply(self, event: ProcessorEvent) -> ReconcileOutcome:
        if isinstance(event, Succeeded):
            outcome = self._apply_succeeded(event)
        elif isinstance(event, Failed):
            outcome = self._apply_failed(event)
        elif isinstance(event, Refunded):
            outcome = self._apply_refunded(event)
        elif isinstance(event, Approved):
            outcome = self._apply_approved(event)
        else:
            msg = f"Unsupported event {type(event).__name__}"
            raise TypeError(msg)

        logger.info(
            "%s %s %s for tenant %s: %s %s",
            event.processor,
            type(event).__name__,
            event.external_payment_id or "-",
            self.tenant.slug,
            outcome.status,
            outcome.detail,
        )
        return outcome

    # -------------------------------------------------------------------------
    # Invoice resolution
    # -------------------------------------------------------------------------

    def resolve_invoice(self, event: ProcessorEvent) -> Invoice | None:
        """
        Find the invoice an event is about, within this tenant only.

        Tries the ``invoice_id`` we put in the metadata (a primary key or an
        invoice number), then the checkout session or settlement that carries
        the processor's ids.
        """
        invoices = Invoice.objects.filter(tenant=self.tenant).select_related(
            "member",
            "subscription__plan",
        )
        reference = (event.metadata or {}).get("invoice_id", "")
        if reference:
            match = Q(invoice_number=reference)
            if reference.isdigit():
                match |= Q(pk=int(reference))
            invoice = invoices.filter(match).first()
            if invoice is not None:
                return invoice

        session_match = Q()
        order_id = (event.metadata or {}).get("order_id") or getattr(
            event,
            "order_id",
            "",
        )
        if order_id:
            session_match |= Q(order_id=order_id) | Q(session_id=order_id)
        if event.external_payment_id:
            session_match |= Q(external_payment_id=event.external_payment_id)
            session_match |= Q(session_id=event.external_payment_id)
        if session_match:
            session = CheckoutSession.objects.filter(
                session_match,
                tenant=self.tenant,
                processor=event.processor,
            ).first()
            if session is not None:
                return invoices.filter(pk=session.invoice_id).first()

        if event.external_payment_id:
            settlement = SettlementTransaction.objects.filter(
                tenant=self.tenant,
                processor=event.processor,
                external_payment_id=event.external_payment_id,
            ).first()
            if settlement is not None:
                return invoices.filter(pk=settlement.invoice_id).first()
        return None

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _apply_succeeded(self, event: Succeeded) -> ReconcileOutcome:
        invoice = self.resolve_invoice(event)
        if invoice is None:
            logger.warning(
                "No invoice found for %s payment %s (metadata %s)",
                event.processor,
                event.external_payment_id,
                dict(event.metadata),
            )
            return ReconcileOutcome(ReconcileStatus.IGNORED, detail="unknown invoice")

        if event.amount_cents is not None and event.amount_cents != invoice.amount_cents:
            logger.warning(
                "%s payment %s for invoice %s was %s cents, invoice is %s cents",
                event.processor,
                event.external_payment_id,
                invoice.invoice_number,
                event.amount_cents,
                invoice.amount_cents,
            )

        result = self.ledger.mark_paid(
            invoice,
            processor=event.processor,
            external_payment_id=event.external_payment_id,
            amount_cents=event.amount_cents,
        )
        CheckoutSession.objects.filter(
            tenant=self.tenant,
            invoice=invoice,
            processor=event.processor,
            status=CheckoutSessionStatus.PENDING,
        ).update(
            status=CheckoutSessionStatus.COMPLETE,
            external_payment_id=event.external_payment_id,
        )

        settlement_id = result.settlement.pk if result.settlement else None
        if result.applied:
            return ReconcileOutcome(
                ReconcileStatus.APPLIED,
                invoice_id=invoice.pk,
                settlement_id=settlement_id,
            )
        return ReconcileOutcome(
            ReconcileStatus.NOOP,
            invoice_id=invoice.pk,
            settlement_id=settlement_id,
            detail=f"invoice is {result.invoice.status}",
        )

    def _apply_failed(self, event: Failed) -> ReconcileOutcome:
        invoice = self.resolve_invoice(event)
        if invoice is None:
            return ReconcileOutcome(ReconcileStatus.IGNORED, detail="unknown invoice")

        result = self.ledger.mark_failed(
            invoice,
            external_payment_id=event.external_payment_id,
            reason=event.reason,
        )
        if not result.applied:
            return ReconcileOutcome(
                ReconcileStatus.NOOP,
                invoice_id=invoice.pk,
                detail=f"invoice is {result.invoice.status}",
            )
        self.dunning.record_failure(result.invoice)
        return ReconcileOutcome(ReconcileStatus.APPLIED, invoice_id=invoice.pk)

    def _apply_refunded(self, event: Refunded) -> ReconcileOutcome:
        capture = (
            SettlementTransaction.objects.filter(
                tenant=self.tenant,
                processor=event.processor,
                kind=SettlementKind.CAPTURE,
                external_payment_id=event.external_payment_id,
            )
            .select_related("invoice")
            .first()
        )
        if capture is None:
            return ReconcileOutcome(
                ReconcileStatus.DEFERRED,
                detail="capture not recorded yet",
            )
        invoice = capture.invoice
        if capture.status == SettlementStatus.REVERSED:
            return ReconcileOutcome(
                ReconcileStatus.NOOP,
                invoice_id=invoice.pk,
                settlement_id=capture.pk,
                detail="already reversed",
            )
        if invoice.status != InvoiceStatus.PAID:
            return ReconcileOutcome(
                ReconcileStatus.DEFERRED,
                invoice_id=invoice.pk,
                detail=f"invoice is {invoice.status}",
            )
        if not event.full:
            logger.warning(
                "Partial %s refund on invoice %s (%s cents); left PAID for review",
                event.processor,
                invoice.invoice_number,
                event.amount_cents,
            )
            return ReconcileOutcome(
                ReconcileStatus.IGNORED,
                invoice_id=invoice.pk,
                settlement_id=capture.pk,
                detail="partial refund",
            )

        result = self.ledger.void(
            invoice,
            reason=f"Refunded at {event.processor}",
            refund_processor=False,
        )
        if not result.applied:
            return ReconcileOutcome(
                ReconcileStatus.NOOP,
                invoice_id=invoice.pk,
                detail=f"invoice is {result.invoice.status}",
            )
        return ReconcileOutcome(
            ReconcileStatus.APPLIED,
            invoice_id=invoice.pk,
            settlement_id=result.settlement.pk if result.settlement else None,
        )

    def _apply_approved(self, event: Approved) -> ReconcileOutcome:
        processor = self.processors.get(event.processor)
        if processor is None:
            return ReconcileOutcome(
                ReconcileStatus.IGNORED,
                detail=f"{event.processor} is not configured",
            )
        order_id = event.order_id or event.external_payment_id
        try:
            status = processor.poll_status(order_id, order_id)
        except ProcessorError as exc:
            logger.warning(
                "Could not capture %s order %s: %s",
                event.processor,
                order_id,
                exc.detail,
            )
            return ReconcileOutcome(ReconcileStatus.DEFERRED, detail=exc.detail)

        metadata = {**event.metadata, **status.metadata, "order_id": order_id}
        if status.status == CheckoutState.COMPLETE:
            return self._apply_succeeded(
                Succeeded(
                    processor=event.processor,
                    external_payment_id=status.external_payment_id,
                    amount_cents=status.amount_cents,
                    metadata=metadata,
                ),
            )
        if status.status == CheckoutState.FAILED:
            return self._apply_failed(
                Failed(
                    processor=event.processor,
                    external_payment_id=status.external_payment_id or order_id,
                    metadata=metadata,
                    reason="Capture declined",
                ),
            )
        return ReconcileOutcome(
            ReconcileStatus.IGNORED,
            detail=f"order is {status.status}",
        )
