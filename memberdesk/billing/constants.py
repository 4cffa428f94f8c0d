"""
Billing constants.

These enums define billing cycles, the subscription and invoice lifecycles,
and the settlement records that back paid invoices.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class BillingCycle(models.TextChoices):
    DAILY = "DAILY", _("Daily")
    WEEKLY = "WEEKLY", _("Weekly")
    MONTHLY = "MONTHLY", _("Monthly")
    QUARTERLY = "QUARTERLY", _("Quarterly")
    SEMIANNUAL = "SEMIANNUAL", _("Semi-annual")
    ANNUAL = "ANNUAL", _("Annual")


class SubscriptionStatus(models.TextChoices):
    """
    Membership lifecycle states.

        ACTIVE → SUSPENDED (dunning exhausted its retries)
        ACTIVE → CANCELLED (cancellation effective date reached)
    """

    ACTIVE = "ACTIVE", _("Active")
    SUSPENDED = "SUSPENDED", _("Suspended")
    CANCELLED = "CANCELLED", _("Cancelled")


class InvoiceStatus(models.TextChoices):
    """
    Invoice lifecycle states.

    PENDING is the only initial state. See memberdesk.billing.ledger for the
    allowed transitions.
    """

    PENDING = "PENDING", _("Pending")
    PAST_DUE = "PAST_DUE", _("Past Due")
    PAID = "PAID", _("Paid")
    VOID = "VOID", _("Void")
    FAILED = "FAILED", _("Failed")


class PaymentMethod(models.TextChoices):
    """How an invoice was settled."""

    CARD = "CARD", _("Card")
    CASH = "CASH", _("Cash")
    CHECK = "CHECK", _("Check")
    BANK_TRANSFER = "BANK_TRANSFER", _("Bank transfer")
    ACCOUNT = "ACCOUNT", _("Account credit")
    STRIPE = "STRIPE", _("Stripe")
    PAYPAL = "PAYPAL", _("PayPal")
    SQUARE = "SQUARE", _("Square")
    OTHER = "OTHER", _("Other")


class Processor(models.TextChoices):
    STRIPE = "stripe", _("Stripe")
    PAYPAL = "paypal", _("PayPal")
    SQUARE = "square", _("Square")
    MANUAL = "manual", _("Manual")


class SettlementKind(models.TextChoices):
    CAPTURE = "CAPTURE", _("Capture")
    REFUND = "REFUND", _("Refund")


class SettlementStatus(models.TextChoices):
    COMPLETED = "COMPLETED", _("Completed")
    REVERSED = "REVERSED", _("Reversed")


class GiftCertificateStatus(models.TextChoices):
    ACTIVE = "ACTIVE", _("Active")
    VOID = "VOID", _("Void")


class DiscountType(models.TextChoices):
    PERCENT = "PERCENT", _("Percent")
    FIXED = "FIXED", _("Fixed amount")


class EscalationLevel(models.TextChoices):
    FRIENDLY = "friendly", _("Friendly reminder")
    URGENT = "urgent", _("Urgent")
    FINAL = "final", _("Final notice")
    SUSPENSION = "suspension", _("Suspension")


# Days until the next dunning retry, indexed by retry count. Counts past the
# end of the list keep using the last entry.
DUNNING_RETRY_SCHEDULE_DAYS = (3, 7, 14, 30)

# Processor names map onto the payment method recorded on the invoice.
PROCESSOR_PAYMENT_METHODS = {
    Processor.STRIPE: PaymentMethod.STRIPE,
    Processor.PAYPAL: PaymentMethod.PAYPAL,
    Processor.SQUARE: PaymentMethod.SQUARE,
}
