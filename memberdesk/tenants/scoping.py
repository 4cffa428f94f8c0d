"""
Tenant resolution for API views.

Every API route carries the tenant slug:
    /api/v1/tenants/<tenant_slug>/...
"""

from __future__ import annotations

from django.shortcuts import get_object_or_404

from memberdesk.tenants.models import Tenant


class TenantScopedMixin:
    """
    Resolve the tenant from the ``tenant_slug`` URL kwarg.

    Usage:
        class MyView(TenantScopedMixin, APIView):
            def get(self, request, tenant_slug):
                tenant = self.get_tenant()
    """

    _tenant: Tenant | None = None

    def get_tenant(self) -> Tenant:
        """Raises Http404 for unknown or inactive tenants."""
        if self._tenant is None:
            self._tenant = get_object_or_404(
                Tenant,
                slug=self.kwargs.get("tenant_slug"),
                is_active=True,
            )
        return self._tenant
