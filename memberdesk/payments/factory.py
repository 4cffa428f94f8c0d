"""
Per-tenant construction of payment processor adapters.

A ProcessorFactory is built from one tenant's BillingSettings and handed to
the scheduler, reconciler and checkout service. Adapters are created lazily
and cached on the factory instance only, so credentials never leak between
tenants and tests can inject fakes with ``ProcessorFactory(..., overrides=)``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from memberdesk.payments.processors.base import ProcessorNotConfigured
from memberdesk.payments.processors.paypal_processor import PayPalProcessor
from memberdesk.payments.processors.square_processor import SquareProcessor
from memberdesk.payments.processors.stripe_processor import StripeProcessor
from memberdesk.tenants.tenant_settings import get_billing_settings

if TYPE_CHECKING:
    from collections.abc import Mapping

    from memberdesk.payments.processors.base import PaymentProcessor
    from memberdesk.tenants.models import Tenant
    from memberdesk.tenants.tenant_settings import BillingSettings

logger = logging.getLogger(__name__)

PROCESSOR_NAMES = ("stripe", "paypal", "square")


class ProcessorFactory:
    def __init__(
        self,
        billing_settings: BillingSettings,
        overrides: Mapping[str, PaymentProcessor] | None = None,
    ):
        self.settings = billing_settings
        self._processors: dict[str, PaymentProcessor] = dict(overrides or {})

    @classmethod
    def for_tenant(cls, tenant: Tenant) -> ProcessorFactory:
        return cls(get_billing_settings(tenant))

    def is_configured(self, name: str) -> bool:
        if name in self._processors:
            return True
        if name == "stripe":
            return self.settings.stripe.is_configured
        if name == "paypal":
            return self.settings.paypal.is_configured
        if name == "square":
            return self.settings.square.is_configured
        return False

    def _build(self, name: str) -> PaymentProcessor:
        if name == "stripe":
            return StripeProcessor(self.settings.stripe)
        if name == "paypal":
            return PayPalProcessor(self.settings.paypal)
        return SquareProcessor(self.settings.square)

    def get(self, name: str) -> PaymentProcessor | None:
        """Return the adapter for ``name``, or None if it is not configured."""
        if name in self._processors:
            return self._processors[name]
        if name not in PROCESSOR_NAMES or not self.is_configured(name):
            return None
        processor = self._build(name)
        self._processors[name] = processor
        return processor

    def require(self, name: str) -> PaymentProcessor:
        processor = self.get(name)
        if processor is None:
            raise ProcessorNotConfigured(name)
        return processor

    def active(self) -> PaymentProcessor | None:
        """The tenant's active processor, if one is selected and configured."""
        name = self.settings.active_processor
        if not name:
            return None
        processor = self.get(name)
        if processor is None:
            logger.warning("Active processor %s has no credentials configured", name)
        return processor
