"""
Tests for typed tenant billing settings.
"""

from datetime import date

import pytest

from memberdesk.tenants.models import TenantSetting
from memberdesk.tenants.tenant_settings import LAST_AUTO_RUN_KEY
from memberdesk.tenants.tenant_settings import claim_daily_run
from memberdesk.tenants.tenant_settings import get_billing_settings
from memberdesk.tenants.tenant_settings import set_tenant_setting
from memberdesk.tenants.tests.factories import TenantFactory
from memberdesk.tenants.tests.factories import TenantSettingFactory


@pytest.mark.django_db
class TestGetBillingSettings:
    def test_defaults_when_nothing_stored(self):
        settings = get_billing_settings(TenantFactory())

        assert settings.grace_period_days == 7
        assert settings.dunning_enabled is True
        assert settings.dunning_max_retries == 4
        assert settings.auto_generate is True
        assert settings.currency == "usd"
        assert settings.active_processor is None
        assert settings.last_auto_run is None

    def test_string_values_are_coerced(self):
        tenant = TenantFactory()
        set_tenant_setting(tenant, "billing_grace_period_days", 10)
        set_tenant_setting(tenant, "dunning_enabled", False)
        set_tenant_setting(tenant, "payment_active_processor", "square")
        set_tenant_setting(tenant, "payment_square_sandbox", "false")

        settings = get_billing_settings(tenant)

        assert settings.grace_period_days == 10
        assert settings.dunning_enabled is False
        assert settings.active_processor == "square"
        assert settings.square.sandbox is False

    def test_invalid_value_falls_back_without_losing_others(self, caplog):
        tenant = TenantFactory()
        TenantSettingFactory(tenant=tenant, key="dunning_max_retries", value="lots")
        TenantSettingFactory(tenant=tenant, key="billing_grace_period_days", value="3")

        settings = get_billing_settings(tenant)

        assert settings.dunning_max_retries == 4
        assert settings.grace_period_days == 3
        assert "dunning_max_retries" in caplog.text

    def test_blank_value_means_unset(self):
        tenant = TenantFactory()
        TenantSettingFactory(tenant=tenant, key="payment_active_processor", value="")

        assert get_billing_settings(tenant).active_processor is None

    def test_settings_are_isolated_per_tenant(self):
        first = TenantFactory()
        second = TenantFactory()
        set_tenant_setting(first, "currency", "eur")

        assert get_billing_settings(first).currency == "eur"
        assert get_billing_settings(second).currency == "usd"


@pytest.mark.django_db
class TestClaimDailyRun:
    def test_first_claim_wins(self):
        tenant = TenantFactory()
        today = date(2025, 3, 1)

        assert claim_daily_run(tenant, today) is True
        assert claim_daily_run(tenant, today) is False
        stored = TenantSetting.objects.get(tenant=tenant, key=LAST_AUTO_RUN_KEY)
        assert stored.value == "2025-03-01"

    def test_next_day_can_claim_again(self):
        tenant = TenantFactory()

        assert claim_daily_run(tenant, date(2025, 3, 1)) is True
        assert claim_daily_run(tenant, date(2025, 3, 2)) is True
        assert get_billing_settings(tenant).last_auto_run == date(2025, 3, 2)
