"""
Member notifications for billing events.

Events:
- invoice_created: a new invoice was generated
- payment_received: an invoice was paid
- past_due: an invoice passed its due date unpaid
- dunning_friendly / dunning_urgent / dunning_final / dunning_suspension:
  escalating reminders from the dunning engine

Notifications are best effort. send() never raises; it returns a
NotifyResult so callers and tests can see what happened. Billing code
queues them with notify_on_commit() so a rolled-back transition never emails
anyone.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING
from typing import Protocol

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction
from django.utils.translation import gettext as _

from memberdesk.tenants.tenant_settings import get_billing_settings

if TYPE_CHECKING:
    from collections.abc import Mapping

    from memberdesk.billing.models import Invoice
    from memberdesk.members.models import Member

logger = logging.getLogger(__name__)


class NotifyResult(StrEnum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


INVOICE_CREATED = "invoice_created"
PAYMENT_RECEIVED = "payment_received"
PAST_DUE = "past_due"
DUNNING_PREFIX = "dunning_"

# event key -> (subject, plain text body). Bodies use %(name)s placeholders.
TEMPLATES: dict[str, tuple[str, str]] = {
    INVOICE_CREATED: (
        "Invoice %(invoice_number)s: %(amount)s due",
        """Hi %(member_name)s,

A new invoice has been generated for your membership.

Invoice: %(invoice_number)s
Plan: %(plan_name)s
Amount: %(amount)s
Due date: %(due_date)s

Please ensure payment is made by the due date.

%(tenant_name)s
""",
    ),
    PAYMENT_RECEIVED: (
        "Payment received: %(amount)s",
        """Hi %(member_name)s,

We've received your payment of %(amount)s.
Invoice: %(invoice_number)s

Thank you for keeping your account current!

%(tenant_name)s
""",
    ),
    PAST_DUE: (
        "Payment past due: %(amount)s",
        """Hi %(member_name)s,

Your payment of %(amount)s was due on %(due_date)s and is now past due.
Invoice: %(invoice_number)s

Please make your payment as soon as possible to avoid any interruption to
your membership.

%(tenant_name)s
""",
    ),
    "dunning_friendly": (
        "Payment reminder: %(amount)s",
        """Hi %(member_name)s,

This is a friendly reminder that your payment of %(amount)s is past due.
Invoice: %(invoice_number)s

Please make your payment at your earliest convenience to keep your
membership active.

%(tenant_name)s
""",
    ),
    "dunning_urgent": (
        "Urgent: payment overdue, %(amount)s",
        """Hi %(member_name)s,

Your payment of %(amount)s is now significantly overdue.
Invoice: %(invoice_number)s

Please make your payment immediately to avoid any disruption to your
membership.

%(tenant_name)s
""",
    ),
    "dunning_final": (
        "Final notice: payment required, %(amount)s",
        """Hi %(member_name)s,

This is your final notice. Your payment of %(amount)s remains unpaid.
Invoice: %(invoice_number)s

If payment is not received promptly, your membership will be suspended.

%(tenant_name)s
""",
    ),
    "dunning_suspension": (
        "Account suspended: payment required",
        """Hi %(member_name)s,

Due to non-payment of %(amount)s, your membership has been suspended.
Invoice: %(invoice_number)s

To reactivate your membership, please make your payment and contact us.

%(tenant_name)s
""",
    ),
}

_EVENT_TOGGLES = {
    INVOICE_CREATED: "notify_invoice_created",
    PAYMENT_RECEIVED: "notify_payment_received",
    PAST_DUE: "notify_past_due",
}


class Notifier(Protocol):
    def send(
        self,
        event_key: str,
        member: Member,
        variables: Mapping[str, object],
    ) -> NotifyResult: ...


def _toggle_for(event_key: str) -> str:
    if event_key.startswith(DUNNING_PREFIX):
        return "notify_dunning"
    return _EVENT_TOGGLES.get(event_key, "")


class EmailNotifier:
    """Sends plain-text billing emails with Django's mail framework."""

    def send(
        self,
        event_key: str,
        member: Member,
        variables: Mapping[str, object],
    ) -> NotifyResult:
        template = TEMPLATES.get(event_key)
        if template is None:
            logger.error("No email template for notification %s", event_key)
            return NotifyResult.FAILED

        if not member.email:
            logger.info(
                "Skipping %s notification: member %s has no email",
                event_key,
                member.pk,
            )
            return NotifyResult.SKIPPED

        toggle = _toggle_for(event_key)
        if toggle and not getattr(get_billing_settings(member.tenant), toggle):
            return NotifyResult.SKIPPED

        context = {
            "member_name": member.full_name,
            "tenant_name": member.tenant.name,
            **variables,
        }
        subject_template, body_template = template
        try:
            subject = _(subject_template) % context
            body = _(body_template) % context
        except KeyError:
            logger.exception("Missing variable for %s notification", event_key)
            return NotifyResult.FAILED

        try:
            sent = send_mail(
                subject,
                body,
                getattr(settings, "DEFAULT_FROM_EMAIL", None),
                [member.email],
            )
        except Exception:
            logger.exception(
                "Error sending %s notification to %s",
                event_key,
                member.email,
            )
            return NotifyResult.FAILED

        if sent == 0:
            logger.error(
                "Email backend did not accept %s notification for %s",
                event_key,
                member.email,
            )
            return NotifyResult.FAILED

        logger.info("Sent %s notification to member %s", event_key, member.pk)
        return NotifyResult.SENT


def invoice_variables(invoice: Invoice) -> dict[str, str]:
    """Template variables describing an invoice."""
    plan_name = invoice.subscription.plan.name if invoice.subscription_id else ""
    return {
        "invoice_number": invoice.invoice_number,
        "amount": f"${invoice.amount_cents / 100:,.2f}",
        "due_date": invoice.due_date.isoformat(),
        "plan_name": plan_name,
    }


def get_notifier() -> Notifier:
    return EmailNotifier()


def notify_on_commit(
    event_key: str,
    member: Member,
    variables: Mapping[str, object],
    notifier: Notifier | None = None,
) -> None:
    """Queue a notification to go out once the current transaction commits."""

    def _send():
        (notifier or get_notifier()).send(event_key, member, variables)

    transaction.on_commit(_send)
