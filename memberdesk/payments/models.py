"""
Checkout sessions started for invoices.

A CheckoutSession row is written when we redirect a member to a processor.
Polling and webhooks that carry only a session, order or payment id use it
to find the invoice, so the browser never gets to name the invoice itself.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _
from model_utils.models import TimeStampedModel

from memberdesk.billing.constants import Processor
from memberdesk.billing.models import Invoice
from memberdesk.tenants.models import Tenant


class CheckoutSessionStatus(models.TextChoices):
    PENDING = "pending", _("Pending")
    COMPLETE = "complete", _("Complete")
    EXPIRED = "expired", _("Expired")
    FAILED = "failed", _("Failed")


class CheckoutSession(TimeStampedModel):
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="checkout_sessions",
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.CASCADE,
        related_name="checkout_sessions",
    )
    processor = models.CharField(max_length=10, choices=Processor.choices)
    session_id = models.CharField(max_length=255)
    order_id = models.CharField(max_length=255, blank=True, default="")
    checkout_url = models.URLField(max_length=2048, blank=True, default="")
    status = models.CharField(
        max_length=10,
        choices=CheckoutSessionStatus.choices,
        default=CheckoutSessionStatus.PENDING,
    )
    external_payment_id = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["processor", "session_id"],
                name="uniq_checkout_session",
            ),
        ]
        indexes = [
            models.Index(
                fields=["processor", "order_id"],
                name="payments_ch_process_3b8d10_idx",
            ),
        ]

    def __str__(self):
        return f"{self.processor}:{self.session_id}"
