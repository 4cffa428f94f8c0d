from rest_framework import serializers

from memberdesk.billing.constants import InvoiceStatus
from memberdesk.billing.constants import PaymentMethod
from memberdesk.billing.models import Invoice

# Statuses an admin may request through the API. PENDING is initial only.
SETTABLE_STATUSES = [
    InvoiceStatus.PAID,
    InvoiceStatus.VOID,
    InvoiceStatus.FAILED,
    InvoiceStatus.PAST_DUE,
]


class InvoiceSerializer(serializers.ModelSerializer):
    member_name = serializers.CharField(source="member.full_name", read_only=True)
    settlement_id = serializers.IntegerField(read_only=True, allow_null=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "member",
            "member_name",
            "subscription",
            "amount_cents",
            "currency",
            "billing_period_start",
            "billing_period_end",
            "due_date",
            "status",
            "paid_at",
            "payment_method",
            "settlement_id",
            "notes",
            "next_retry_date",
            "last_retry_date",
            "failure_reason",
            "created",
            "modified",
        ]
        read_only_fields = fields


class InvoiceUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=SETTABLE_STATUSES)
    payment_method = serializers.ChoiceField(
        choices=PaymentMethod.choices,
        required=False,
    )
    notes = serializers.CharField(required=False, allow_blank=True)


class PromoValidateSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=50)
    plan_id = serializers.IntegerField(required=False, allow_null=True)
