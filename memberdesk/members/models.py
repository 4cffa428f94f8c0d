"""
Member records as the billing engine sees them.

Relationship: Tenant ──1:N── Member ──N:N (FamilyLink)── Member

Only the fields billing reads are modelled here: contact email for
notifications, processor customer references for off-session charges, and
the account credit balance.
"""

from django.db import models
from django.db.models import Q
from model_utils.models import TimeStampedModel

from memberdesk.tenants.models import Tenant


class Member(TimeStampedModel):
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="members",
    )
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, blank=True, default="")
    email = models.EmailField(blank=True, default="")

    # Processor customer references
    stripe_customer_id = models.CharField(max_length=255, blank=True, default="")
    paypal_payer_id = models.CharField(max_length=255, blank=True, default="")
    square_customer_id = models.CharField(max_length=255, blank=True, default="")
    default_payment_method_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text=(
            "Stored card or vault token used for off-session charges on the "
            "tenant's active processor."
        ),
    )

    account_credit_cents = models.IntegerField(
        default=0,
        help_text="Credit balance in cents. Negative means the member owes money.",
    )

    class Meta:
        ordering = ["last_name", "first_name"]

    def __str__(self):
        return self.full_name

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def family_size(self) -> int:
        """Number of people in this member's family group, including them."""
        links = FamilyLink.objects.filter(Q(member=self) | Q(relative=self))
        return 1 + links.count()


class FamilyLink(TimeStampedModel):
    """
    Undirected link between two members of the same tenant.

    Store each pair once; family_size() looks at both sides.
    """

    member = models.ForeignKey(
        Member,
        on_delete=models.CASCADE,
        related_name="family_links",
    )
    relative = models.ForeignKey(
        Member,
        on_delete=models.CASCADE,
        related_name="+",
    )
    relationship = models.CharField(max_length=50, blank=True, default="")

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["member", "relative"],
                name="uniq_family_link",
            ),
            models.CheckConstraint(
                condition=~Q(member=models.F("relative")),
                name="family_link_not_self",
            ),
        ]

    def __str__(self):
        return f"{self.member} ~ {self.relative}"
