"""
Staff API router.

Every route is tenant scoped:
    /api/v1/tenants/<tenant_slug>/billing/...
    /api/v1/tenants/<tenant_slug>/invoices/...
    /api/v1/tenants/<tenant_slug>/checkout/...
"""

from django.urls import include
from django.urls import path

app_name = "api"

tenant_patterns = [
    path("", include("memberdesk.billing.urls")),
    path("", include("memberdesk.payments.urls")),
]

urlpatterns = [
    path("tenants/<slug:tenant_slug>/", include(tenant_patterns)),
]
