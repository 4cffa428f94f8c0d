from django.contrib import admin

from memberdesk.billing.models import GiftCertificate
from memberdesk.billing.models import Invoice
from memberdesk.billing.models import Plan
from memberdesk.billing.models import PromoCode
from memberdesk.billing.models import SettlementTransaction
from memberdesk.billing.models import Subscription


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    list_display = ["name", "tenant", "price_cents", "billing_cycle", "auto_renew"]
    list_filter = ["tenant", "billing_cycle", "is_active"]


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = ["member", "plan", "status", "next_charge_date", "retry_count"]
    list_filter = ["tenant", "status"]
    raw_id_fields = ["member"]


class SettlementInline(admin.TabularInline):
    model = SettlementTransaction
    fk_name = "invoice"
    extra = 0
    can_delete = False
    readonly_fields = [
        "kind",
        "status",
        "processor",
        "external_payment_id",
        "amount_cents",
        "credit_applied_cents",
        "created",
    ]
    fields = readonly_fields


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    """
    Invoices are read-only here; status changes go through the ledger
    (the invoice API) so settlements and notifications stay consistent.
    """

    list_display = [
        "invoice_number",
        "member",
        "amount_cents",
        "status",
        "due_date",
        "paid_at",
    ]
    list_filter = ["tenant", "status"]
    search_fields = ["invoice_number", "member__last_name", "member__email"]
    readonly_fields = ["status", "paid_at", "settlement", "amount_cents"]
    raw_id_fields = ["member", "subscription"]
    inlines = [SettlementInline]


@admin.register(GiftCertificate)
class GiftCertificateAdmin(admin.ModelAdmin):
    list_display = ["code", "tenant", "amount_cents", "status"]
    list_filter = ["tenant", "status"]


@admin.register(PromoCode)
class PromoCodeAdmin(admin.ModelAdmin):
    list_display = [
        "code",
        "tenant",
        "discount_type",
        "discount_value",
        "redemption_count",
        "max_redemptions",
        "is_active",
    ]
    list_filter = ["tenant", "is_active"]
    filter_horizontal = ["applicable_plans"]
