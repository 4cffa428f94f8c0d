"""
Billing models for Memberdesk.

Key design decisions:
- All money is integer cents; currency codes are lower-case ISO strings.
- An invoice is unique per (subscription, billing_period_start). That single
  constraint is what makes concurrent billing runs safe.
- invoice.amount_cents is fixed at creation and never recalculated.
- Every captured payment or refund is a SettlementTransaction row. A PAID
  invoice points at the capture that settled it.

Relationship:
    Member ──1:N── Subscription ──N:1── Plan
    Subscription ──1:N── Invoice ──1:N── SettlementTransaction
    SettlementTransaction ──1:N── GiftCertificate
"""

from django.core.validators import MaxValueValidator
from django.db import models
from django.db.models import Q
from model_utils.models import TimeStampedModel

from memberdesk.billing.constants import BillingCycle
from memberdesk.billing.constants import DiscountType
from memberdesk.billing.constants import GiftCertificateStatus
from memberdesk.billing.constants import InvoiceStatus
from memberdesk.billing.constants import PaymentMethod
from memberdesk.billing.constants import Processor
from memberdesk.billing.constants import SettlementKind
from memberdesk.billing.constants import SettlementStatus
from memberdesk.billing.constants import SubscriptionStatus
from memberdesk.members.models import Member
from memberdesk.tenants.models import Tenant


class Plan(TimeStampedModel):
    """
    A membership plan a tenant sells.

    Plans are read-only during a billing run; price changes apply to invoices
    generated afterwards.
    """

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="plans")
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True, default="")
    price_cents = models.PositiveIntegerField(help_text="Price per billing cycle.")
    billing_cycle = models.CharField(
        max_length=20,
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    auto_renew = models.BooleanField(
        default=True,
        help_text="Only auto-renewing plans are invoiced by the scheduler.",
    )
    family_discount_percent = models.PositiveSmallIntegerField(
        default=0,
        validators=[MaxValueValidator(100)],
    )
    rank_discount_percent = models.PositiveSmallIntegerField(
        default=0,
        validators=[MaxValueValidator(100)],
    )
    cancellation_notice_days = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name

    @property
    def price_dollars(self) -> float:
        return self.price_cents / 100


class Subscription(TimeStampedModel):
    """
    A member's enrolment in a plan (a "membership").

    The scheduler advances next_charge_date; the dunning engine owns
    retry_count and flips status to SUSPENDED.
    """

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    member = models.ForeignKey(
        Member,
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.ACTIVE,
    )
    start_date = models.DateField()
    next_charge_date = models.DateField(null=True, blank=True)
    price_override_cents = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Custom price. Null means use the plan price.",
    )
    first_period_discount_only = models.BooleanField(
        default=False,
        help_text="Apply the price override to the first billing period only.",
    )
    rank_discount_eligible = models.BooleanField(default=False)
    retry_count = models.PositiveIntegerField(default=0)
    last_payment_date = models.DateField(null=True, blank=True)
    cancellation_effective_date = models.DateField(
        null=True,
        blank=True,
        help_text="When set, the membership is cancelled on this date.",
    )

    class Meta:
        indexes = [
            models.Index(
                fields=["tenant", "status", "next_charge_date"],
                name="billing_sub_tenant__0c1f2e_idx",
            ),
        ]

    def __str__(self):
        return f"{self.member} on {self.plan}"

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


class Invoice(TimeStampedModel):
    """
    One bill for one billing period of one subscription.

    Status changes go through memberdesk.billing.ledger; do not assign
    ``status`` directly outside of it.
    """

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="invoices",
    )
    member = models.ForeignKey(
        Member,
        on_delete=models.CASCADE,
        related_name="invoices",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="invoices",
        help_text="Null for one-off invoices such as gift certificate sales.",
    )
    invoice_number = models.CharField(max_length=32)
    amount_cents = models.PositiveIntegerField()
    currency = models.CharField(max_length=3, default="usd")
    billing_period_start = models.DateField()
    billing_period_end = models.DateField()
    due_date = models.DateField()
    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.PENDING,
    )
    paid_at = models.DateTimeField(null=True, blank=True)
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        blank=True,
        default="",
    )
    settlement = models.ForeignKey(
        "billing.SettlementTransaction",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text="The capture that settled this invoice.",
    )
    notes = models.TextField(blank=True, default="")

    # Dunning bookkeeping
    next_retry_date = models.DateField(null=True, blank=True)
    last_retry_date = models.DateField(null=True, blank=True)
    last_failed_payment_id = models.CharField(max_length=255, blank=True, default="")
    failure_reason = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["-billing_period_start", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["subscription", "billing_period_start"],
                name="uniq_invoice_per_subscription_period",
            ),
            models.UniqueConstraint(
                fields=["tenant", "invoice_number"],
                name="uniq_invoice_number_per_tenant",
            ),
        ]
        indexes = [
            models.Index(
                fields=["tenant", "status", "due_date"],
                name="billing_inv_tenant__5d2a81_idx",
            ),
            models.Index(
                fields=["tenant", "status", "next_retry_date"],
                name="billing_inv_tenant__9e47b3_idx",
            ),
        ]

    def __str__(self):
        return self.invoice_number

    @property
    def amount_dollars(self) -> float:
        return self.amount_cents / 100


class SettlementTransaction(TimeStampedModel):
    """
    A captured payment or a refund against an invoice.

    external_payment_id is the processor's id (PaymentIntent, PayPal capture,
    Square payment). It is unique per processor and kind, so a redelivered
    webhook cannot record the same capture twice.
    """

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="settlements",
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.CASCADE,
        related_name="settlements",
    )
    kind = models.CharField(
        max_length=10,
        choices=SettlementKind.choices,
        default=SettlementKind.CAPTURE,
    )
    status = models.CharField(
        max_length=10,
        choices=SettlementStatus.choices,
        default=SettlementStatus.COMPLETED,
    )
    processor = models.CharField(
        max_length=10,
        choices=Processor.choices,
        default=Processor.MANUAL,
    )
    external_payment_id = models.CharField(max_length=255, blank=True, default="")
    amount_cents = models.PositiveIntegerField()
    currency = models.CharField(max_length=3, default="usd")
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        blank=True,
        default="",
    )
    credit_applied_cents = models.PositiveIntegerField(
        default=0,
        help_text="Member account credit consumed by this capture.",
    )
    reverses = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="reversals",
    )
    note = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["processor", "kind", "external_payment_id"],
                condition=~Q(external_payment_id=""),
                name="uniq_settlement_external_payment",
            ),
        ]

    def __str__(self):
        return f"{self.kind} {self.amount_cents} for {self.invoice_id}"

    @property
    def is_processor_captured(self) -> bool:
        return self.processor != Processor.MANUAL and bool(self.external_payment_id)


class GiftCertificate(TimeStampedModel):
    """
    A gift certificate sold through an invoice.

    Voided when the settlement that paid for it is reversed.
    """

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="gift_certificates",
    )
    code = models.CharField(max_length=32)
    amount_cents = models.PositiveIntegerField()
    status = models.CharField(
        max_length=10,
        choices=GiftCertificateStatus.choices,
        default=GiftCertificateStatus.ACTIVE,
    )
    purchase_invoice = models.ForeignKey(
        Invoice,
        on_delete=models.CASCADE,
        related_name="gift_certificates",
    )

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "code"],
                name="uniq_gift_certificate_code",
            ),
        ]

    def __str__(self):
        return self.code


class PromoCode(TimeStampedModel):
    """
    A discount code members can enter at enrolment.

    Codes are stored upper-case. ``discount_value`` is a percentage for
    PERCENT codes and cents for FIXED codes.
    """

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="promo_codes",
    )
    code = models.CharField(max_length=50)
    description = models.CharField(max_length=255, blank=True, default="")
    discount_type = models.CharField(
        max_length=10,
        choices=DiscountType.choices,
        default=DiscountType.PERCENT,
    )
    discount_value = models.PositiveIntegerField()
    is_active = models.BooleanField(default=True)
    valid_from = models.DateTimeField(null=True, blank=True)
    valid_until = models.DateTimeField(null=True, blank=True)
    max_redemptions = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Null = unlimited.",
    )
    redemption_count = models.PositiveIntegerField(default=0)
    applicable_plans = models.ManyToManyField(
        Plan,
        blank=True,
        related_name="promo_codes",
        help_text="Leave empty to allow every plan.",
    )

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "code"],
                name="uniq_promo_code_per_tenant",
            ),
        ]

    def __str__(self):
        return self.code

    def save(self, *args, **kwargs):
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)
