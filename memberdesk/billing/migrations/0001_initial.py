import django.core.validators
import django.db.models.deletion
import django.utils.timezone
import model_utils.fields
from django.db import migrations
from django.db import models


def _base_fields():
    return [
        (
            "id",
            models.BigAutoField(
                auto_created=True,
                primary_key=True,
                serialize=False,
                verbose_name="ID",
            ),
        ),
        (
            "created",
            model_utils.fields.AutoCreatedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="created",
            ),
        ),
        (
            "modified",
            model_utils.fields.AutoLastModifiedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="modified",
            ),
        ),
    ]


PAYMENT_METHOD_CHOICES = [
    ("CARD", "Card"),
    ("CASH", "Cash"),
    ("CHECK", "Check"),
    ("BANK_TRANSFER", "Bank transfer"),
    ("ACCOUNT", "Account credit"),
    ("STRIPE", "Stripe"),
    ("PAYPAL", "PayPal"),
    ("SQUARE", "Square"),
    ("OTHER", "Other"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("tenants", "0001_initial"),
        ("members", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                *_base_fields(),
                ("name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "price_cents",
                    models.PositiveIntegerField(help_text="Price per billing cycle."),
                ),
                (
                    "billing_cycle",
                    models.CharField(
                        choices=[
                            ("DAILY", "Daily"),
                            ("WEEKLY", "Weekly"),
                            ("MONTHLY", "Monthly"),
                            ("QUARTERLY", "Quarterly"),
                            ("SEMIANNUAL", "Semi-annual"),
                            ("ANNUAL", "Annual"),
                        ],
                        default="MONTHLY",
                        max_length=20,
                    ),
                ),
                (
                    "auto_renew",
                    models.BooleanField(
                        default=True,
                        help_text="Only auto-renewing plans are invoiced by the scheduler.",
                    ),
                ),
                (
                    "family_discount_percent",
                    models.PositiveSmallIntegerField(
                        default=0,
                        validators=[django.core.validators.MaxValueValidator(100)],
                    ),
                ),
                (
                    "rank_discount_percent",
                    models.PositiveSmallIntegerField(
                        default=0,
                        validators=[django.core.validators.MaxValueValidator(100)],
                    ),
                ),
                ("cancellation_notice_days", models.PositiveIntegerField(default=0)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="plans",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={"ordering": ["name"]},
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                *_base_fields(),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("ACTIVE", "Active"),
                            ("SUSPENDED", "Suspended"),
                            ("CANCELLED", "Cancelled"),
                        ],
                        default="ACTIVE",
                        max_length=20,
                    ),
                ),
                ("start_date", models.DateField()),
                ("next_charge_date", models.DateField(blank=True, null=True)),
                (
                    "price_override_cents",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Custom price. Null means use the plan price.",
                        null=True,
                    ),
                ),
                (
                    "first_period_discount_only",
                    models.BooleanField(
                        default=False,
                        help_text="Apply the price override to the first billing period only.",
                    ),
                ),
                ("rank_discount_eligible", models.BooleanField(default=False)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("last_payment_date", models.DateField(blank=True, null=True)),
                (
                    "cancellation_effective_date",
                    models.DateField(
                        blank=True,
                        help_text="When set, the membership is cancelled on this date.",
                        null=True,
                    ),
                ),
                (
                    "member",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscriptions",
                        to="members.member",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscriptions",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(
                        fields=["tenant", "status", "next_charge_date"],
                        name="billing_sub_tenant__0c1f2e_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                *_base_fields(),
                ("invoice_number", models.CharField(max_length=32)),
                ("amount_cents", models.PositiveIntegerField()),
                ("currency", models.CharField(default="usd", max_length=3)),
                ("billing_period_start", models.DateField()),
                ("billing_period_end", models.DateField()),
                ("due_date", models.DateField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("PAST_DUE", "Past Due"),
                            ("PAID", "Paid"),
                            ("VOID", "Void"),
                            ("FAILED", "Failed"),
                        ],
                        default="PENDING",
                        max_length=20,
                    ),
                ),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payment_method",
                    models.CharField(
                        blank=True,
                        choices=PAYMENT_METHOD_CHOICES,
                        default="",
                        max_length=20,
                    ),
                ),
                ("notes", models.TextField(blank=True, default="")),
                ("next_retry_date", models.DateField(blank=True, null=True)),
                ("last_retry_date", models.DateField(blank=True, null=True)),
                (
                    "last_failed_payment_id",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                (
                    "failure_reason",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                (
                    "member",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="invoices",
                        to="members.member",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        help_text="Null for one-off invoices such as gift certificate sales.",
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="invoices",
                        to="billing.subscription",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="invoices",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "ordering": ["-billing_period_start", "-id"],
                "indexes": [
                    models.Index(
                        fields=["tenant", "status", "due_date"],
                        name="billing_inv_tenant__5d2a81_idx",
                    ),
                    models.Index(
                        fields=["tenant", "status", "next_retry_date"],
                        name="billing_inv_tenant__9e47b3_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SettlementTransaction",
            fields=[
                *_base_fields(),
                (
                    "kind",
                    models.CharField(
                        choices=[("CAPTURE", "Capture"), ("REFUND", "Refund")],
                        default="CAPTURE",
                        max_length=10,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[("COMPLETED", "Completed"), ("REVERSED", "Reversed")],
                        default="COMPLETED",
                        max_length=10,
                    ),
                ),
                (
                    "processor",
                    models.CharField(
                        choices=[
                            ("stripe", "Stripe"),
                            ("paypal", "PayPal"),
                            ("square", "Square"),
                            ("manual", "Manual"),
                        ],
                        default="manual",
                        max_length=10,
                    ),
                ),
                (
                    "external_payment_id",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                ("amount_cents", models.PositiveIntegerField()),
                ("currency", models.CharField(default="usd", max_length=3)),
                (
                    "payment_method",
                    models.CharField(
                        blank=True,
                        choices=PAYMENT_METHOD_CHOICES,
                        default="",
                        max_length=20,
                    ),
                ),
                (
                    "credit_applied_cents",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Member account credit consumed by this capture.",
                    ),
                ),
                ("note", models.CharField(blank=True, default="", max_length=255)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="settlements",
                        to="billing.invoice",
                    ),
                ),
                (
                    "reverses",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reversals",
                        to="billing.settlementtransaction",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="settlements",
                        to="tenants.tenant",
                    ),
                ),
            ],
        ),
        migrations.AddField(
            model_name="invoice",
            name="settlement",
            field=models.ForeignKey(
                blank=True,
                help_text="The capture that settled this invoice.",
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="+",
                to="billing.settlementtransaction",
            ),
        ),
        migrations.CreateModel(
            name="GiftCertificate",
            fields=[
                *_base_fields(),
                ("code", models.CharField(max_length=32)),
                ("amount_cents", models.PositiveIntegerField()),
                (
                    "status",
                    models.CharField(
                        choices=[("ACTIVE", "Active"), ("VOID", "Void")],
                        default="ACTIVE",
                        max_length=10,
                    ),
                ),
                (
                    "purchase_invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="gift_certificates",
                        to="billing.invoice",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="gift_certificates",
                        to="tenants.tenant",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="PromoCode",
            fields=[
                *_base_fields(),
                ("code", models.CharField(max_length=50)),
                (
                    "description",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                (
                    "discount_type",
                    models.CharField(
                        choices=[("PERCENT", "Percent"), ("FIXED", "Fixed amount")],
                        default="PERCENT",
                        max_length=10,
                    ),
                ),
                ("discount_value", models.PositiveIntegerField()),
                ("is_active", models.BooleanField(default=True)),
                ("valid_from", models.DateTimeField(blank=True, null=True)),
                ("valid_until", models.DateTimeField(blank=True, null=True)),
                (
                    "max_redemptions",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Null = unlimited.",
                        null=True,
                    ),
                ),
                ("redemption_count", models.PositiveIntegerField(default=0)),
                (
                    "applicable_plans",
                    models.ManyToManyField(
                        blank=True,
                        help_text="Leave empty to allow every plan.",
                        related_name="promo_codes",
                        to="billing.plan",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="promo_codes",
                        to="tenants.tenant",
                    ),
                ),
            ],
        ),
        migrations.AddConstraint(
            model_name="invoice",
            constraint=models.UniqueConstraint(
                fields=("subscription", "billing_period_start"),
                name="uniq_invoice_per_subscription_period",
            ),
        ),
        migrations.AddConstraint(
            model_name="invoice",
            constraint=models.UniqueConstraint(
                fields=("tenant", "invoice_number"),
                name="uniq_invoice_number_per_tenant",
            ),
        ),
        migrations.AddConstraint(
            model_name="settlementtransaction",
            constraint=models.UniqueConstraint(
                condition=models.Q(("external_payment_id", ""), _negated=True),
                fields=("processor", "kind", "external_payment_id"),
                name="uniq_settlement_external_payment",
            ),
        ),
        migrations.AddConstraint(
            model_name="giftcertificate",
            constraint=models.UniqueConstraint(
                fields=("tenant", "code"),
                name="uniq_gift_certificate_code",
            ),
        ),
        migrations.AddConstraint(
            model_name="promocode",
            constraint=models.UniqueConstraint(
                fields=("tenant", "code"),
                name="uniq_promo_code_per_tenant",
            ),
        ),
    ]
