"""
Helpers for loading and validating per-tenant billing settings.

Raw values live in TenantSetting rows as strings. BillingSettings is the
strongly typed overlay the billing and payments code reads from; pydantic
coerces "true"/"7"/"2024-01-31" strings into real values.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING
from typing import Literal

from django.db import IntegrityError
from django.db import transaction
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from memberdesk.tenants.models import TenantSetting

if TYPE_CHECKING:
    from memberdesk.tenants.models import Tenant

logger = logging.getLogger(__name__)

LAST_AUTO_RUN_KEY = "billing_last_auto_run"

ProcessorName = Literal["stripe", "paypal", "square"]


class StripeCredentials(BaseModel):
    secret_key: str = ""
    webhook_secret: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


class PayPalCredentials(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    sandbox: bool = True
    webhook_id: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class SquareCredentials(BaseModel):
    access_token: str = ""
    location_id: str = ""
    application_id: str = ""
    sandbox: bool = True
    webhook_signature_key: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token and self.location_id)


class BillingSettings(BaseModel):
    """
    Typed view of one tenant's billing configuration.

    Field aliases are the TenantSetting keys.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    active_processor: ProcessorName | None = Field(
        default=None,
        alias="payment_active_processor",
        description="Processor used for checkouts and off-session charges.",
    )
    currency: str = Field(default="usd", alias="currency")
    timezone: str = Field(default="UTC", alias="timezone")
    grace_period_days: int = Field(
        default=7,
        ge=0,
        alias="billing_grace_period_days",
        description="Days after the period start before an invoice is due.",
    )
    auto_generate: bool = Field(default=True, alias="billing_auto_generate")
    last_auto_run: date | None = Field(default=None, alias=LAST_AUTO_RUN_KEY)
    dunning_enabled: bool = Field(default=True, alias="dunning_enabled")
    dunning_max_retries: int = Field(default=4, ge=0, alias="dunning_max_retries")

    # Member email toggles
    notify_invoice_created: bool = Field(default=True, alias="notify_invoice_created")
    notify_payment_received: bool = Field(
        default=True,
        alias="notify_payment_received",
    )
    notify_past_due: bool = Field(default=True, alias="notify_past_due")
    notify_dunning: bool = Field(default=True, alias="notify_dunning")

    # Processor credentials, flattened to match how they are stored.
    stripe_secret_key: str = Field(default="", alias="payment_stripe_secret_key")
    stripe_webhook_secret: str = Field(
        default="",
        alias="payment_stripe_webhook_secret",
    )
    paypal_client_id: str = Field(default="", alias="payment_paypal_client_id")
    paypal_client_secret: str = Field(
        default="",
        alias="payment_paypal_client_secret",
    )
    paypal_sandbox: bool = Field(default=True, alias="payment_paypal_sandbox")
    paypal_webhook_id: str = Field(default="", alias="payment_paypal_webhook_id")
    square_access_token: str = Field(
        default="",
        alias="payment_square_access_token",
    )
    square_location_id: str = Field(default="", alias="payment_square_location_id")
    square_application_id: str = Field(
        default="",
        alias="payment_square_application_id",
    )
    square_sandbox: bool = Field(default=True, alias="payment_square_sandbox")
    square_webhook_signature_key: str = Field(
        default="",
        alias="payment_square_webhook_signature_key",
    )

    @property
    def stripe(self) -> StripeCredentials:
        return StripeCredentials(
            secret_key=self.stripe_secret_key,
            webhook_secret=self.stripe_webhook_secret,
        )

    @property
    def paypal(self) -> PayPalCredentials:
        return PayPalCredentials(
            client_id=self.paypal_client_id,
            client_secret=self.paypal_client_secret,
            sandbox=self.paypal_sandbox,
            webhook_id=self.paypal_webhook_id,
        )

    @property
    def square(self) -> SquareCredentials:
        return SquareCredentials(
            access_token=self.square_access_token,
            location_id=self.square_location_id,
            application_id=self.square_application_id,
            sandbox=self.square_sandbox,
            webhook_signature_key=self.square_webhook_signature_key,
        )


def _raw_settings(tenant: Tenant) -> dict[str, str]:
    rows = TenantSetting.objects.filter(tenant=tenant).values_list("key", "value")
    # Blank values mean "unset" so the model default applies.
    return {key: value for key, value in rows if value != ""}


def get_billing_settings(tenant: Tenant) -> BillingSettings:
    """
    Return the typed billing settings for a tenant.

    Values that fail validation are dropped individually and logged, so one
    bad row does not reset the tenant's other settings.
    """
    raw = _raw_settings(tenant)
    try:
        return BillingSettings.model_validate(raw)
    except PydanticValidationError as exc:
        invalid = {str(err["loc"][0]) for err in exc.errors() if err["loc"]}
        logger.warning(
            "Invalid settings %s for tenant %s; falling back to defaults.",
            sorted(invalid),
            tenant.slug,
        )
        cleaned = {key: value for key, value in raw.items() if key not in invalid}
        return BillingSettings.model_validate(cleaned)


def set_tenant_setting(tenant: Tenant, key: str, value: object) -> TenantSetting:
    """Create or update one setting, storing its string form."""
    if isinstance(value, bool):
        value = "true" if value else "false"
    setting, _created = TenantSetting.objects.update_or_create(
        tenant=tenant,
        key=key,
        defaults={"value": str(value)},
    )
    return setting


def claim_daily_run(tenant: Tenant, day: date) -> bool:
    """
    Record that the automatic billing run happened on ``day``.

    Returns True only for the first caller on a given day. The update is a
    conditional write, so two workers racing for the same tenant cannot both
    claim the run.
    """
    stamp = day.isoformat()
    updated = (
        TenantSetting.objects.filter(tenant=tenant, key=LAST_AUTO_RUN_KEY)
        .exclude(value=stamp)
        .update(value=stamp)
    )
    if updated:
        return True
    if TenantSetting.objects.filter(tenant=tenant, key=LAST_AUTO_RUN_KEY).exists():
        return False
    try:
        with transaction.atomic():
            TenantSetting.objects.create(
                tenant=tenant,
                key=LAST_AUTO_RUN_KEY,
                value=stamp,
            )
    except IntegrityError:
        return False
    return True

