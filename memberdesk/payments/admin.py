from django.contrib import admin

from memberdesk.payments.models import CheckoutSession


@admin.register(CheckoutSession)
class CheckoutSessionAdmin(admin.ModelAdmin):
    list_display = ["session_id", "processor", "invoice", "status", "created"]
    list_filter = ["tenant", "processor", "status"]
    search_fields = ["session_id", "order_id", "external_payment_id"]
    raw_id_fields = ["invoice"]
