"""
Tenant models.

Relationship: Tenant ──1:N── TenantSetting (key/value)

Settings are stored as plain strings so studio admins can edit them in the
Django admin. Typed access goes through memberdesk.tenants.tenant_settings.
"""

from django.db import models
from model_utils.models import TimeStampedModel


class Tenant(TimeStampedModel):
    """
    A studio business using Memberdesk.

    The slug is what API and webhook URLs carry, e.g.
    ``/webhooks/stripe/<slug>/``.
    """

    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=100, unique=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class TenantSetting(TimeStampedModel):
    """
    One configuration value for a tenant.

    Keys are the snake_case names used by BillingSettings aliases, for example
    ``billing_grace_period_days`` or ``payment_stripe_webhook_secret``.
    """

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="settings",
    )
    key = models.CharField(max_length=100)
    value = models.TextField(blank=True, default="")

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "key"],
                name="uniq_tenant_setting_key",
            ),
        ]

    def __str__(self):
        return f"{self.tenant.slug}:{self.key}"
