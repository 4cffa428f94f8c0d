from django.urls import path

from memberdesk.billing import views

app_name = "billing"

urlpatterns = [
    path("billing/run/", views.BillingRunView.as_view(), name="run"),
    path("billing/auto-run/", views.BillingAutoRunView.as_view(), name="auto-run"),
    path("billing/past-due/", views.PastDueSweepView.as_view(), name="past-due"),
    path(
        "invoices/<int:invoice_id>/",
        views.InvoiceDetailView.as_view(),
        name="invoice-detail",
    ),
    path(
        "promo-codes/validate/",
        views.PromoCodeValidateView.as_view(),
        name="promo-validate",
    ),
]
