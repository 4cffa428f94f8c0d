from django.urls import path

from memberdesk.payments import views

app_name = "payments"

urlpatterns = [
    path(
        "invoices/<int:invoice_id>/checkout/",
        views.InvoiceCheckoutView.as_view(),
        name="invoice-checkout",
    ),
    path(
        "checkout/status/",
        views.CheckoutStatusView.as_view(),
        name="checkout-status",
    ),
]

webhook_urlpatterns = [
    path(
        "<str:processor>/<slug:tenant_slug>/",
        views.processor_webhook,
        name="processor-webhook",
    ),
]
