"""
Invoice ledger: creation and lifecycle transitions.

Every status change is a compare-and-set:

    UPDATE invoice SET status = <target>
    WHERE id = <id> AND status IN (<allowed predecessors>)

The transition happened only if exactly one row was updated. Duplicate
webhooks, overlapping scheduler runs and double-clicks in the admin all
collapse into a single applied transition plus no-ops, without locks held
across network calls.

Lifecycle:

    PENDING  → PAST_DUE, PAID, FAILED, VOID
    PAST_DUE → PAID, FAILED, VOID
    FAILED   → PAID, PAST_DUE, VOID, FAILED (another failed attempt)
    PAID     → VOID (reversal)

Usage:
    ledger = InvoiceLedger()
    result = ledger.create_invoice(member=..., subscription=..., ...)
    if not result.created:
        ...  # this period was already invoiced

    outcome = ledger.mark_paid(invoice, processor="stripe",
                               external_payment_id="pi_123")
    if not outcome.applied:
        ...  # already paid
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import IntegrityError
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from memberdesk.billing.constants import DUNNING_RETRY_SCHEDULE_DAYS
from memberdesk.billing.constants import PROCESSOR_PAYMENT_METHODS
from memberdesk.billing.constants import GiftCertificateStatus
from memberdesk.billing.constants import InvoiceStatus
from memberdesk.billing.constants import PaymentMethod
from memberdesk.billing.constants import Processor
from memberdesk.billing.constants import SettlementKind
from memberdesk.billing.constants import SettlementStatus
from memberdesk.billing.cycles import generate_invoice_number
from memberdesk.billing.exceptions import BillingError
from memberdesk.billing.exceptions import InvalidTransitionError
from memberdesk.billing.models import GiftCertificate
from memberdesk.billing.models import Invoice
from memberdesk.billing.models import SettlementTransaction
from memberdesk.billing.models import Subscription
from memberdesk.members.models import Member
from memberdesk.notifications.notifier import INVOICE_CREATED
from memberdesk.notifications.notifier import PAST_DUE
from memberdesk.notifications.notifier import PAYMENT_RECEIVED
from memberdesk.notifications.notifier import invoice_variables
from memberdesk.notifications.notifier import notify_on_commit

if TYPE_CHECKING:
    from datetime import date
    from datetime import datetime

    from memberdesk.notifications.notifier import Notifier
    from memberdesk.payments.factory import ProcessorFactory
    from memberdesk.tenants.models import Tenant

logger = logging.getLogger(__name__)

# target status -> statuses it may be entered from
ALLOWED_PREDECESSORS: dict[str, frozenset[str]] = {
    InvoiceStatus.PENDING: frozenset(),
    InvoiceStatus.PAST_DUE: frozenset({InvoiceStatus.PENDING, InvoiceStatus.FAILED}),
    InvoiceStatus.PAID: frozenset(
        {InvoiceStatus.PENDING, InvoiceStatus.PAST_DUE, InvoiceStatus.FAILED},
    ),
    InvoiceStatus.FAILED: frozenset(
        {InvoiceStatus.PENDING, InvoiceStatus.PAST_DUE, InvoiceStatus.FAILED},
    ),
    InvoiceStatus.VOID: frozenset(
        {
            InvoiceStatus.PENDING,
            InvoiceStatus.PAST_DUE,
            InvoiceStatus.FAILED,
            InvoiceStatus.PAID,
        },
    ),
}

# Attempts to create an invoice before giving up on a free invoice number.
INVOICE_NUMBER_ATTEMPTS = 5


def can_transition(current: str, target: str) -> bool:
    return current in ALLOWED_PREDECESSORS.get(target, frozenset())


@dataclass
class CreateResult:
    invoice: Invoice
    created: bool


@dataclass
class TransitionResult:
    """
    Outcome of a ledger transition.

    ``applied`` is False when the invoice was already in (or past) the target
    state, e.g. a redelivered webhook.
    """

    invoice: Invoice
    applied: bool
    settlement: SettlementTransaction | None = None
    warnings: list[str] = field(default_factory=list)


class InvoiceLedger:
    """
    Owns invoice rows and their status.

    ``processors`` is only needed to issue processor refunds when a paid
    invoice is voided by hand. ``notifier`` defaults to email.
    """

    def __init__(
        self,
        processors: ProcessorFactory | None = None,
        notifier: Notifier | None = None,
    ):
        self.processors = processors
        self.notifier = notifier

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_invoice(
        self,
        *,
        member: Member,
        subscription: Subscription | None,
        amount_cents: int,
        billing_period_start: date,
        billing_period_end: date,
        due_date: date,
        currency: str = "usd",
        notes: str = "",
        today: date | None = None,
    ) -> CreateResult:
        """
        Create a PENDING invoice.

        If the subscription already has an invoice for ``billing_period_start``
        that invoice is returned with ``created=False``. Concurrent callers
        rely on the database constraint for this, not on a prior lookup.
        """
        today = today or timezone.localdate()
        for _attempt in range(INVOICE_NUMBER_ATTEMPTS):
            try:
                with transaction.atomic():
                    invoice = Invoice.objects.create(
                        tenant=member.tenant,
                        member=member,
                        subscription=subscription,
                        invoice_number=generate_invoice_number(today),
                        amount_cents=amount_cents,
                        currency=currency,
                        billing_period_start=billing_period_start,
                        billing_period_end=billing_period_end,
                        due_date=due_date,
                        status=InvoiceStatus.PENDING,
                        notes=notes,
                    )
            except IntegrityError:
                if subscription is not None:
                    existing = Invoice.objects.filter(
                        subscription=subscription,
                        billing_period_start=billing_period_start,
                    ).first()
                    if existing is not None:
                        logger.info(
                            "Invoice for subscription %s period %s already exists",
                            subscription.pk,
                            billing_period_start,
                        )
                        return CreateResult(invoice=existing, created=False)
                # Invoice number clash; try another suffix.
                continue

            logger.info(
                "Created invoice %s for member %s (%s cents)",
                invoice.invoice_number,
                member.pk,
                amount_cents,
            )
            notify_on_commit(
                INVOICE_CREATED,
                member,
                invoice_variables(invoice),
                notifier=self.notifier,
            )
            return CreateResult(invoice=invoice, created=True)

        msg = "Could not allocate a unique invoice number."
        raise BillingError(msg, code="invoice_number_exhausted")

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _compare_and_set(
        self,
        invoice: Invoice,
        target: str,
        predecessors: frozenset[str] | set[str],
        **fields,
    ) -> bool:
        updated = Invoice.objects.filter(
            pk=invoice.pk,
            status__in=predecessors,
        ).update(status=target, modified=timezone.now(), **fields)
        return updated == 1

    def _refuse(self, invoice: Invoice, target: str, *, strict: bool) -> None:
        """Raise for a manual request that the lifecycle does not allow."""
        if strict and invoice.status != target:
            raise InvalidTransitionError(invoice.status, target)

    def transition(
        self,
        invoice: Invoice,
        target: str,
        *,
        payment_method: str | None = None,
        notes: str | None = None,
    ) -> TransitionResult:
        """
        Apply a manual status change, e.g. from the invoice API.

        Raises:
            InvalidTransitionError: if ``target`` cannot be reached from the
                invoice's current status.
        """
        if target == InvoiceStatus.PAID:
            result = self.mark_paid(
                invoice,
                payment_method=payment_method or PaymentMethod.CASH,
                strict=True,
            )
        elif target == InvoiceStatus.VOID:
            result = self.void(invoice, strict=True)
        elif target == InvoiceStatus.FAILED:
            result = self.mark_failed(invoice, reason="Marked failed manually", strict=True)
        elif target == InvoiceStatus.PAST_DUE:
            result = self.mark_past_due(invoice, strict=True)
        else:
            raise InvalidTransitionError(invoice.status, target)

        # Notes are written only after the status change was accepted.
        if notes is not None:
            Invoice.objects.filter(pk=invoice.pk).update(notes=notes)
            result.invoice.notes = notes
        return result

    def mark_paid(  # noqa: PLR0913
        self,
        invoice: Invoice,
        *,
        processor: str = Processor.MANUAL,
        external_payment_id: str = "",
        amount_cents: int | None = None,
        currency: str | None = None,
        payment_method: str | None = None,
        paid_at: datetime | None = None,
        strict: bool = False,
    ) -> TransitionResult:
        """
        Move an invoice to PAID and record the capture.

        PAID is absorbing: a second success for the same payment (or any
        success once the invoice is paid) is a no-op and creates no second
        settlement.
        """
        paid_at = paid_at or timezone.now()
        method = payment_method or PROCESSOR_PAYMENT_METHODS.get(
            processor,
            PaymentMethod.OTHER,
        )
        amount = invoice.amount_cents if amount_cents is None else amount_cents

        with transaction.atomic():
            if external_payment_id:
                existing = SettlementTransaction.objects.filter(
                    processor=processor,
                    kind=SettlementKind.CAPTURE,
                    external_payment_id=external_payment_id,
                ).first()
                if existing is not None:
                    invoice.refresh_from_db()
                    return TransitionResult(
                        invoice=invoice,
                        applied=False,
                        settlement=existing,
                    )

            credit_applied = 0
            if method == PaymentMethod.ACCOUNT:
                member = Member.objects.select_for_update().get(pk=invoice.member_id)
                if member.account_credit_cents < amount:
                    msg = "Member does not have enough account credit."
                    raise BillingError(msg, code="insufficient_credit")
                credit_applied = amount

            applied = self._compare_and_set(
                invoice,
                InvoiceStatus.PAID,
                ALLOWED_PREDECESSORS[InvoiceStatus.PAID],
                paid_at=paid_at,
                payment_method=method,
                next_retry_date=None,
            )
            if not applied:
                invoice.refresh_from_db()
                self._refuse(invoice, InvoiceStatus.PAID, strict=strict)
                if external_payment_id and invoice.status == InvoiceStatus.PAID:
                    logger.warning(
                        "Invoice %s already paid; %s payment %s was not recorded "
                        "and may need a refund",
                        invoice.invoice_number,
                        processor,
                        external_payment_id,
                    )
                return TransitionResult(
                    invoice=invoice,
                    applied=False,
                    settlement=invoice.settlement,
                )

            if credit_applied:
                Member.objects.filter(pk=invoice.member_id).update(
                    account_credit_cents=F("account_credit_cents") - credit_applied,
                )

            settlement = SettlementTransaction.objects.create(
                tenant_id=invoice.tenant_id,
                invoice=invoice,
                kind=SettlementKind.CAPTURE,
                status=SettlementStatus.COMPLETED,
                processor=processor,
                external_payment_id=external_payment_id,
                amount_cents=amount,
                currency=currency or invoice.currency,
                payment_method=method,
                credit_applied_cents=credit_applied,
            )
            Invoice.objects.filter(pk=invoice.pk).update(settlement=settlement)

            if invoice.subscription_id:
                Subscription.objects.filter(pk=invoice.subscription_id).update(
                    last_payment_date=timezone.localdate(paid_at),
                    retry_count=0,
                )

            invoice.refresh_from_db()
            notify_on_commit(
                PAYMENT_RECEIVED,
                invoice.member,
                invoice_variables(invoice),
                notifier=self.notifier,
            )

        logger.info(
            "Invoice %s paid via %s (%s)",
            invoice.invoice_number,
            processor,
            external_payment_id or method,
        )
        return TransitionResult(invoice=invoice, applied=True, settlement=settlement)

    def mark_failed(
        self,
        invoice: Invoice,
        *,
        external_payment_id: str = "",
        reason: str = "",
        today: date | None = None,
        strict: bool = False,
    ) -> TransitionResult:
        """
        Record a failed payment attempt.

        A failure for a payment id that was already recorded is a no-op, so
        redelivered failure webhooks do not escalate dunning twice. Without a
        payment id only the first failure out of PENDING/PAST_DUE applies.
        """
        today = today or timezone.localdate()
        predecessors = set(ALLOWED_PREDECESSORS[InvoiceStatus.FAILED])
        if not external_payment_id:
            predecessors.discard(InvoiceStatus.FAILED)

        queryset = Invoice.objects.filter(pk=invoice.pk, status__in=predecessors)
        if external_payment_id:
            queryset = queryset.exclude(last_failed_payment_id=external_payment_id)
        applied = (
            queryset.update(
                status=InvoiceStatus.FAILED,
                last_failed_payment_id=external_payment_id,
                failure_reason=reason[:255],
                last_retry_date=today,
                modified=timezone.now(),
            )
            == 1
        )
        invoice.refresh_from_db()
        if not applied:
            self._refuse(invoice, InvoiceStatus.FAILED, strict=strict)
            return TransitionResult(invoice=invoice, applied=False)

        logger.warning(
            "Payment failed for invoice %s: %s",
            invoice.invoice_number,
            reason or "no reason given",
        )
        return TransitionResult(invoice=invoice, applied=True)

    def mark_past_due(
        self,
        invoice: Invoice,
        *,
        today: date | None = None,
        strict: bool = False,
    ) -> TransitionResult:
        today = today or timezone.localdate()
        applied = self._compare_and_set(
            invoice,
            InvoiceStatus.PAST_DUE,
            ALLOWED_PREDECESSORS[InvoiceStatus.PAST_DUE],
            next_retry_date=today + timedelta(days=DUNNING_RETRY_SCHEDULE_DAYS[0]),
        )
        invoice.refresh_from_db()
        if not applied:
            self._refuse(invoice, InvoiceStatus.PAST_DUE, strict=strict)
            return TransitionResult(invoice=invoice, applied=False)

        notify_on_commit(
            PAST_DUE,
            invoice.member,
            invoice_variables(invoice),
            notifier=self.notifier,
        )
        return TransitionResult(invoice=invoice, applied=True)

    def void(
        self,
        invoice: Invoice,
        *,
        reason: str = "",
        refund_processor: bool = True,
        refund_external_id: str = "",
        strict: bool = False,
    ) -> TransitionResult:
        """
        Void an invoice.

        Voiding a PAID invoice reverses its capture exactly once: the capture
        settlement flips to REVERSED, account credit it consumed is restored,
        gift certificates it paid for are voided, and a REFUND settlement is
        recorded. All of that commits together.

        When ``refund_processor`` is set and the capture came from a
        processor, the refund is issued after the local commit. A failed
        processor refund does not undo the VOID; it is returned as a warning
        for manual follow-up.
        """
        with transaction.atomic():
            locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
            previous = locked.status
            if previous not in ALLOWED_PREDECESSORS[InvoiceStatus.VOID]:
                invoice.refresh_from_db()
                self._refuse(invoice, InvoiceStatus.VOID, strict=strict)
                return TransitionResult(invoice=invoice, applied=False)

            notes = locked.notes
            if reason:
                notes = f"{notes}\n{reason}".strip()
            applied = self._compare_and_set(
                locked,
                InvoiceStatus.VOID,
                {previous},
                notes=notes,
                next_retry_date=None,
            )
            if not applied:
                invoice.refresh_from_db()
                return TransitionResult(invoice=invoice, applied=False)

            capture = None
            refund = None
            if previous == InvoiceStatus.PAID and locked.settlement_id:
                capture, refund = self._reverse_capture(
                    locked.settlement_id,
                    refund_external_id=refund_external_id,
                )

        invoice.refresh_from_db()
        logger.info(
            "Voided invoice %s (was %s)",
            invoice.invoice_number,
            previous,
        )

        warnings: list[str] = []
        if refund_processor and capture is not None and capture.is_processor_captured:
            warning = self._refund_at_processor(invoice, capture)
            if warning:
                warnings.append(warning)

        return TransitionResult(
            invoice=invoice,
            applied=True,
            settlement=refund,
            warnings=warnings,
        )

    def _reverse_capture(
        self,
        settlement_id: int,
        *,
        refund_external_id: str,
    ) -> tuple[SettlementTransaction | None, SettlementTransaction | None]:
        """Undo the effects of a capture. Must run inside a transaction."""
        reversed_count = SettlementTransaction.objects.filter(
            pk=settlement_id,
            status=SettlementStatus.COMPLETED,
        ).update(status=SettlementStatus.REVERSED, modified=timezone.now())
        if not reversed_count:
            return None, None

        capture = SettlementTransaction.objects.get(pk=settlement_id)
        if capture.credit_applied_cents:
            Member.objects.filter(pk=capture.invoice.member_id).update(
                account_credit_cents=F("account_credit_cents")
                + capture.credit_applied_cents,
            )
        voided = GiftCertificate.objects.filter(
            purchase_invoice_id=capture.invoice_id,
            status=GiftCertificateStatus.ACTIVE,
        ).update(status=GiftCertificateStatus.VOID, modified=timezone.now())
        if voided:
            logger.info(
                "Voided %s gift certificate(s) bought with invoice %s",
                voided,
                capture.invoice_id,
            )

        refund = SettlementTransaction.objects.create(
            tenant_id=capture.tenant_id,
            invoice_id=capture.invoice_id,
            kind=SettlementKind.REFUND,
            status=SettlementStatus.COMPLETED,
            processor=capture.processor,
            external_payment_id=refund_external_id,
            amount_cents=capture.amount_cents,
            currency=capture.currency,
            payment_method=capture.payment_method,
            credit_applied_cents=capture.credit_applied_cents,
            reverses=capture,
        )
        return capture, refund

    def _refund_at_processor(
        self,
        invoice: Invoice,
        capture: SettlementTransaction,
    ) -> str:
        """Issue the processor refund for a reversed capture; return a warning."""
        processor = self.processors.get(capture.processor) if self.processors else None
        if processor is None:
            warning = (
                f"Invoice {invoice.invoice_number} was voided but "
                f"{capture.processor} is not configured, so the payment was not "
                "refunded. Manual follow-up required."
            )
            logger.error(warning)
            return warning

        result = processor.refund(
            capture.external_payment_id,
            capture.amount_cents,
            capture.currency,
        )
        if result.success:
            if result.refund_id:
                SettlementTransaction.objects.filter(
                    reverses=capture,
                    kind=SettlementKind.REFUND,
                    external_payment_id="",
                ).update(external_payment_id=result.refund_id)
            return ""

        warning = (
            f"Invoice {invoice.invoice_number} was voided but the "
            f"{capture.processor} refund failed: {result.error}. "
            "Manual follow-up required."
        )
        logger.error(warning)
        return warning

    # -------------------------------------------------------------------------
    # Batch operations
    # -------------------------------------------------------------------------

    def sweep_past_due(self, tenant: Tenant, today: date | None = None) -> int:
        """
        Move PENDING invoices whose due date has passed to PAST_DUE.

        Returns the number of invoices moved.
        """
        today = today or timezone.localdate()
        overdue = Invoice.objects.filter(
            tenant=tenant,
            status=InvoiceStatus.PENDING,
            due_date__lt=today,
        ).select_related("member", "subscription__plan")

        moved = 0
        for invoice in overdue:
            result = self.mark_past_due(invoice, today=today)
            if result.applied:
                moved += 1
        if moved:
            logger.info("Marked %s invoice(s) past due for %s", moved, tenant.slug)
        return moved
