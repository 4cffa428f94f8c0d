"""
Recurring billing runs.

A run invoices every ACTIVE, auto-renewing subscription whose
next_charge_date has arrived, then advances that date by one cycle. Runs may
overlap (the beat task, the management command and an admin clicking "run
billing"); the ledger's one-invoice-per-period constraint is what keeps them
from double billing, so a collision simply counts as skipped.

The daily automatic run also sweeps overdue invoices to PAST_DUE, retries
dunning charges and applies scheduled cancellations. It happens at most once
per tenant per local day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from memberdesk.billing.constants import SubscriptionStatus
from memberdesk.billing.cycles import billing_period_end
from memberdesk.billing.cycles import next_charge_date
from memberdesk.billing.discounts import resolve_amount
from memberdesk.billing.dunning import DunningEngine
from memberdesk.billing.dunning import decline_reference
from memberdesk.billing.ledger import InvoiceLedger
from memberdesk.billing.models import Subscription
from memberdesk.payments.factory import ProcessorFactory
from memberdesk.payments.processors.base import ChargeDeclined
from memberdesk.payments.processors.base import ProcessorError
from memberdesk.payments.processors.base import customer_ref_for
from memberdesk.tenants.tenant_settings import claim_daily_run
from memberdesk.tenants.tenant_settings import get_billing_settings

if TYPE_CHECKING:
    from datetime import date

    from memberdesk.billing.models import Invoice
    from memberdesk.notifications.notifier import Notifier
    from memberdesk.tenants.models import Tenant
    from memberdesk.tenants.tenant_settings import BillingSettings

logger = logging.getLogger(__name__)


def tenant_today(billing_settings: BillingSettings) -> date:
    """Today's date in the tenant's configured timezone."""
    try:
        zone = ZoneInfo(billing_settings.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(
            "Unknown timezone %r; using UTC",
            billing_settings.timezone,
        )
        zone = ZoneInfo("UTC")
    return timezone.localdate(timezone=zone)


@dataclass
class BillingRunResult:
    created: int = 0
    skipped: int = 0
    total: int = 0
    charged: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "created": self.created,
            "skipped": self.skipped,
            "total": self.total,
            "errors": self.errors,
        }


@dataclass
class AutoRunResult:
    skipped: bool
    message: str = ""
    invoices_created: int = 0
    invoices_skipped: int = 0
    past_due_marked: int = 0
    dunning_processed: int = 0
    memberships_suspended: int = 0
    cancellations_processed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        if self.skipped:
            return {"skipped": True, "message": self.message}
        return {
            "skipped": False,
            "invoices_created": self.invoices_created,
            "invoices_skipped": self.invoices_skipped,
            "past_due_marked": self.past_due_marked,
            "dunning_processed": self.dunning_processed,
            "memberships_suspended": self.memberships_suspended,
            "cancellations_processed": self.cancellations_processed,
            "errors": self.errors,
        }


class BillingScheduler:
    """
    Runs billing for one tenant.

    Usage:
        scheduler = BillingScheduler(tenant)
        result = scheduler.run()                # invoices only
        summary = scheduler.auto_run()          # once-a-day composite run
    """

    def __init__(
        self,
        tenant: Tenant,
        *,
        billing_settings: BillingSettings | None = None,
        processors: ProcessorFactory | None = None,
        notifier: Notifier | None = None,
    ):
        self.tenant = tenant
        self.settings = billing_settings or get_billing_settings(tenant)
        self.processors = processors or ProcessorFactory(self.settings)
        self.ledger = InvoiceLedger(processors=self.processors, notifier=notifier)
        self.dunning = DunningEngine(
            self.settings,
            processors=self.processors,
            ledger=self.ledger,
            notifier=notifier,
        )

    def due_subscriptions(self, today: date):
        return (
            Subscription.objects.filter(
                tenant=self.tenant,
                status=SubscriptionStatus.ACTIVE,
                next_charge_date__lte=today,
                plan__auto_renew=True,
            )
            .select_related("member", "plan")
            .order_by("next_charge_date", "pk")
        )

    def run(self, today: date | None = None, *, auto_charge: bool = False) -> BillingRunResult:
        """
        Invoice every due subscription.

        Each subscription is handled in its own savepoint; an error is
        recorded as "<member name>: <message>" and the run moves on.
        """
        today = today or tenant_today(self.settings)
        result = BillingRunResult()
        subscriptions = list(self.due_subscriptions(today))
        result.total = len(subscriptions)

        for subscription in subscriptions:
            try:
                with transaction.atomic():
                    invoice, created = self._bill_subscription(subscription, today)
            except Exception as exc:
                logger.exception(
                    "Billing failed for subscription %s (tenant %s)",
                    subscription.pk,
                    self.tenant.slug,
                )
                result.errors.append(f"{subscription.member.full_name}: {exc}")
                continue

            if not created:
                result.skipped += 1
                continue
            result.created += 1
            if auto_charge:
                self._auto_charge(invoice, result, today)

        logger.info(
            "Billing run for %s: %s created, %s skipped, %s errors of %s due",
            self.tenant.slug,
            result.created,
            result.skipped,
            len(result.errors),
            result.total,
        )
        return result

    def _bill_subscription(
        self,
        subscription: Subscription,
        today: date,
    ) -> tuple[Invoice, bool]:
        period_start = subscription.next_charge_date
        cycle = subscription.plan.billing_cycle
        price = resolve_amount(subscription, period_start)

        outcome = self.ledger.create_invoice(
            member=subscription.member,
            subscription=subscription,
            amount_cents=price.amount_cents,
            billing_period_start=period_start,
            billing_period_end=billing_period_end(period_start, cycle),
            due_date=period_start + timedelta(days=self.settings.grace_period_days),
            currency=self.settings.currency,
            notes=price.notes_text,
            today=today,
        )
        # Conditional so overlapping runs advance the date once.
        Subscription.objects.filter(
            pk=subscription.pk,
            next_charge_date=period_start,
        ).update(next_charge_date=next_charge_date(period_start, cycle))
        return outcome.invoice, outcome.created

    def _auto_charge(self, invoice: Invoice, result: BillingRunResult, today: date):
        """Charge a new invoice to the member's stored payment method, if any."""
        processor = self.processors.active()
        if processor is None:
            return
        customer = customer_ref_for(invoice.member, processor.name)
        if customer is None:
            return

        try:
            charge = processor.charge_off_session(
                customer,
                invoice.amount_cents,
                invoice.currency,
                metadata={
                    "invoice_id": str(invoice.pk),
                    "tenant": self.tenant.slug,
                    "reason": "auto_billing",
                },
            )
        except ChargeDeclined as exc:
            logger.info(
                "Auto-charge for invoice %s declined: %s",
                invoice.invoice_number,
                exc.detail,
            )
            failed = self.ledger.mark_failed(
                invoice,
                external_payment_id=decline_reference(invoice, today, exc),
                reason=exc.detail,
                today=today,
            )
            if failed.applied:
                self.dunning.record_failure(failed.invoice, today)
            return
        except ProcessorError as exc:
            logger.warning(
                "Auto-charge for invoice %s failed: %s",
                invoice.invoice_number,
                exc.detail,
            )
            result.errors.append(f"{invoice.member.full_name}: {exc.detail}")
            return

        result.charged += 1
        if charge.succeeded:
            self.ledger.mark_paid(
                invoice,
                processor=processor.name,
                external_payment_id=charge.external_payment_id,
                amount_cents=invoice.amount_cents,
                currency=invoice.currency,
            )

    def process_cancellations(self, today: date | None = None) -> int:
        """Cancel memberships whose cancellation date has arrived."""
        today = today or tenant_today(self.settings)
        cancelled = (
            Subscription.objects.filter(
                tenant=self.tenant,
                cancellation_effective_date__lte=today,
            )
            .filter(
                Q(status=SubscriptionStatus.ACTIVE)
                | Q(status=SubscriptionStatus.SUSPENDED),
            )
            .update(
                status=SubscriptionStatus.CANCELLED,
                next_charge_date=None,
                modified=timezone.now(),
            )
        )
        if cancelled:
            logger.info("Cancelled %s membership(s) for %s", cancelled, self.tenant.slug)
        return cancelled

    def auto_run(self, today: date | None = None) -> AutoRunResult:
        """
        The once-a-day composite run: billing with auto-charge, past-due
        sweep, dunning retries and scheduled cancellations.
        """
        today = today or tenant_today(self.settings)
        if not self.settings.auto_generate:
            return AutoRunResult(skipped=True, message="Auto-generate disabled")
        if not claim_daily_run(self.tenant, today):
            return AutoRunResult(skipped=True, message="Already run today")

        billing = self.run(today, auto_charge=True)
        past_due = self.ledger.sweep_past_due(self.tenant, today)
        dunning = self.dunning.run_retries(self.tenant, today)
        cancellations = self.process_cancellations(today)

        return AutoRunResult(
            skipped=False,
            invoices_created=billing.created,
            invoices_skipped=billing.skipped,
            past_due_marked=past_due,
            dunning_processed=dunning.processed,
            memberships_suspended=dunning.suspended,
            cancellations_processed=cancellations,
            errors=billing.errors + dunning.errors,
        )
