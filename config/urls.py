from django.conf import settings
from django.contrib import admin
from django.urls import include
from django.urls import path

from memberdesk.payments.urls import webhook_urlpatterns

urlpatterns = [
    path(settings.ADMIN_URL, admin.site.urls),
    # Staff API: /api/v1/tenants/<tenant_slug>/...
    path("api/v1/", include("config.api_router")),
    # Processor webhooks: /webhooks/<processor>/<tenant_slug>/
    path("webhooks/", include((webhook_urlpatterns, "webhooks"))),
]
