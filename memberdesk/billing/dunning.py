"""
Dunning: retrying unpaid invoices and escalating to suspension.

The schedule is a pure function of the subscription's retry count:

    retry_count   delay before next retry   reminder level
    0, 1          3 / 7 days                friendly
    2             14 days                   urgent
    3             30 days                   final
    4+            30 days                   suspension

Once retry_count reaches the tenant's ``dunning_max_retries`` the membership
is suspended and no further automatic charges are attempted for it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from memberdesk.billing.constants import DUNNING_RETRY_SCHEDULE_DAYS
from memberdesk.billing.constants import EscalationLevel
from memberdesk.billing.constants import InvoiceStatus
from memberdesk.billing.constants import SubscriptionStatus
from memberdesk.billing.ledger import InvoiceLedger
from memberdesk.billing.models import Invoice
from memberdesk.billing.models import Subscription
from memberdesk.members.models import Member
from memberdesk.notifications.notifier import DUNNING_PREFIX
from memberdesk.notifications.notifier import invoice_variables
from memberdesk.notifications.notifier import notify_on_commit
from memberdesk.payments.processors.base import ChargeDeclined
from memberdesk.payments.processors.base import ProcessorError
from memberdesk.payments.processors.base import customer_ref_for

if TYPE_CHECKING:
    from datetime import date

    from memberdesk.notifications.notifier import Notifier
    from memberdesk.payments.factory import ProcessorFactory
    from memberdesk.tenants.models import Tenant
    from memberdesk.tenants.tenant_settings import BillingSettings

logger = logging.getLogger(__name__)

URGENT_RETRY_COUNT = 2
FINAL_RETRY_COUNT = 3


def retry_delay_days(retry_count: int) -> int:
    if retry_count >= len(DUNNING_RETRY_SCHEDULE_DAYS):
        return DUNNING_RETRY_SCHEDULE_DAYS[-1]
    return DUNNING_RETRY_SCHEDULE_DAYS[max(retry_count, 0)]


def next_retry_date(retry_count: int, now: date) -> date:
    return now + timedelta(days=retry_delay_days(retry_count))


def escalation_level(retry_count: int) -> EscalationLevel:
    if retry_count <= 1:
        return EscalationLevel.FRIENDLY
    if retry_count == URGENT_RETRY_COUNT:
        return EscalationLevel.URGENT
    if retry_count == FINAL_RETRY_COUNT:
        return EscalationLevel.FINAL
    return EscalationLevel.SUSPENSION


def should_suspend(retry_count: int, max_retries: int) -> bool:
    return retry_count >= max_retries


def decline_reference(invoice: Invoice, today: date, exc: ChargeDeclined) -> str:
    """
    Key a declined charge attempt for mark_failed().

    Some processors decline without a payment id; each claimed attempt still
    counts as a failure of its own.
    """
    return exc.external_payment_id or f"decline-{invoice.pk}-{today.isoformat()}"


@dataclass
class DunningOutcome:
    retry_count: int
    level: EscalationLevel
    suspended: bool
    next_retry_date: date | None = None


@dataclass
class DunningRunResult:
    processed: int = 0
    charged: int = 0
    suspended: int = 0
    errors: list[str] = field(default_factory=list)


class DunningEngine:
    """
    Escalates failed payments and retries unpaid invoices.

    Usage:
        engine = DunningEngine(billing_settings, processors=factory)
        engine.record_failure(invoice)     # after a failed payment
        engine.run_retries(tenant)         # daily
    """

    def __init__(
        self,
        billing_settings: BillingSettings,
        *,
        processors: ProcessorFactory | None = None,
        ledger: InvoiceLedger | None = None,
        notifier: Notifier | None = None,
    ):
        self.settings = billing_settings
        self.processors = processors
        self.notifier = notifier
        self.ledger = ledger or InvoiceLedger(processors=processors, notifier=notifier)

    def record_failure(
        self,
        invoice: Invoice,
        today: date | None = None,
    ) -> DunningOutcome | None:
        """
        Count one failed payment against the invoice's subscription.

        Returns None for invoices that are not tied to a subscription, and
        for memberships that are no longer active: a suspended account is not
        escalated or charged the debt again.
        """
        if not invoice.subscription_id:
            return None
        today = today or timezone.localdate()
        max_retries = self.settings.dunning_max_retries

        with transaction.atomic():
            counted = Subscription.objects.filter(
                pk=invoice.subscription_id,
                status=SubscriptionStatus.ACTIVE,
            ).update(retry_count=F("retry_count") + 1)
            if not counted:
                logger.info(
                    "Not escalating invoice %s: subscription %s is not active",
                    invoice.invoice_number,
                    invoice.subscription_id,
                )
                return None
            subscription = Subscription.objects.get(pk=invoice.subscription_id)
            retry_count = subscription.retry_count
            level = escalation_level(retry_count)

            if should_suspend(retry_count, max_retries):
                self._suspend(invoice, subscription, today)
                outcome = DunningOutcome(
                    retry_count=retry_count,
                    level=EscalationLevel.SUSPENSION,
                    suspended=True,
                )
            else:
                retry_on = next_retry_date(retry_count, today)
                Invoice.objects.filter(pk=invoice.pk).update(
                    next_retry_date=retry_on,
                    last_retry_date=today,
                )
                if level == EscalationLevel.SUSPENSION:
                    # The tenant allows more retries than the reminder ladder.
                    level = EscalationLevel.FINAL
                outcome = DunningOutcome(
                    retry_count=retry_count,
                    level=level,
                    suspended=False,
                    next_retry_date=retry_on,
                )

            invoice.refresh_from_db()
            notify_on_commit(
                f"{DUNNING_PREFIX}{outcome.level}",
                invoice.member,
                invoice_variables(invoice),
                notifier=self.notifier,
            )

        logger.info(
            "Dunning for invoice %s: retry %s/%s, level %s%s",
            invoice.invoice_number,
            retry_count,
            max_retries,
            outcome.level,
            " (suspended)" if outcome.suspended else "",
        )
        return outcome

    def _suspend(self, invoice: Invoice, subscription: Subscription, today: date):
        """Stop retrying, suspend the membership and carry the debt."""
        Invoice.objects.filter(
            pk=invoice.pk,
            status__in=[InvoiceStatus.PENDING, InvoiceStatus.PAST_DUE],
        ).update(status=InvoiceStatus.FAILED, modified=timezone.now())
        Invoice.objects.filter(pk=invoice.pk).update(
            next_retry_date=None,
            last_retry_date=today,
        )
        suspended = Subscription.objects.filter(
            pk=subscription.pk,
            status=SubscriptionStatus.ACTIVE,
        ).update(status=SubscriptionStatus.SUSPENDED, next_charge_date=None)
        if not suspended:
            return
        # The debt is carried once, by whichever call suspended the membership.
        Member.objects.filter(pk=invoice.member_id).update(
            account_credit_cents=F("account_credit_cents") - invoice.amount_cents,
        )
        logger.warning(
            "Suspended subscription %s after %s failed payments",
            subscription.pk,
            subscription.retry_count,
        )

    def run_retries(self, tenant: Tenant, today: date | None = None) -> DunningRunResult:
        """
        Retry every PAST_DUE or FAILED invoice whose retry date has arrived.

        Members with a stored payment method are charged off-session; a
        decline escalates through record_failure(). Members without one are
        escalated directly.
        """
        result = DunningRunResult()
        if not self.settings.dunning_enabled:
            return result
        today = today or timezone.localdate()

        due = Invoice.objects.filter(
            tenant=tenant,
            status__in=[InvoiceStatus.PAST_DUE, InvoiceStatus.FAILED],
            next_retry_date__lte=today,
            subscription__status=SubscriptionStatus.ACTIVE,
        ).select_related("member", "subscription__plan")

        for invoice in due:
            try:
                self._retry_invoice(invoice, today, result)
            except Exception as exc:
                logger.exception("Dunning retry failed for invoice %s", invoice.pk)
                result.errors.append(f"{invoice.invoice_number}: {exc}")
        return result

    def _retry_invoice(
        self,
        invoice: Invoice,
        today: date,
        result: DunningRunResult,
    ) -> None:
        # Push the retry date forward before charging so an overlapping run
        # does not pick the same invoice up again.
        claimed = Invoice.objects.filter(
            pk=invoice.pk,
            next_retry_date=invoice.next_retry_date,
        ).update(
            next_retry_date=next_retry_date(invoice.subscription.retry_count, today),
            last_retry_date=today,
        )
        if not claimed:
            return

        processor = self.processors.active() if self.processors else None
        customer = (
            customer_ref_for(invoice.member, processor.name) if processor else None
        )
        if processor is None or customer is None:
            outcome = self.record_failure(invoice, today)
            result.processed += 1
            if outcome and outcome.suspended:
                result.suspended += 1
            return

        try:
            charge = processor.charge_off_session(
                customer,
                invoice.amount_cents,
                invoice.currency,
                metadata={
                    "invoice_id": str(invoice.pk),
                    "tenant": invoice.tenant.slug,
                    "reason": "dunning_retry",
                },
            )
        except ChargeDeclined as exc:
            failed = self.ledger.mark_failed(
                invoice,
                external_payment_id=decline_reference(invoice, today, exc),
                reason=exc.detail,
                today=today,
            )
            result.processed += 1
            if failed.applied:
                outcome = self.record_failure(invoice, today)
                if outcome and outcome.suspended:
                    result.suspended += 1
            return
        except ProcessorError as exc:
            logger.warning(
                "Could not retry invoice %s with %s: %s",
                invoice.invoice_number,
                processor.name,
                exc.detail,
            )
            result.errors.append(f"{invoice.invoice_number}: {exc.detail}")
            return

        result.processed += 1
        result.charged += 1
        if charge.succeeded:
            self.ledger.mark_paid(
                invoice,
                processor=processor.name,
                external_payment_id=charge.external_payment_id,
                amount_cents=invoice.amount_cents,
                currency=invoice.currency,
            )
