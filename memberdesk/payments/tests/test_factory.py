import pytest

from memberdesk.payments.factory import ProcessorFactory
from memberdesk.payments.processors.base import ProcessorNotConfigured
from memberdesk.payments.processors.paypal_processor import PayPalProcessor
from memberdesk.payments.processors.square_processor import SquareProcessor
from memberdesk.payments.processors.stripe_processor import StripeProcessor
from memberdesk.payments.tests.fakes import FakeProcessor
from memberdesk.tenants.tenant_settings import BillingSettings
from memberdesk.tenants.tenant_settings import set_tenant_setting


class TestProcessorFactory:
    def test_unconfigured_processors_are_none(self):
        factory = ProcessorFactory(BillingSettings())

        assert factory.get("stripe") is None
        assert factory.get("paypal") is None
        assert factory.get("square") is None
        assert factory.get("venmo") is None
        assert factory.active() is None

    def test_builds_configured_adapters(self):
        factory = ProcessorFactory(
            BillingSettings(
                stripe_secret_key="sk_test_1",
                paypal_client_id="id",
                paypal_client_secret="secret",
                square_access_token="EAAA",
                square_location_id="LOC-1",
            ),
        )

        assert isinstance(factory.get("stripe"), StripeProcessor)
        assert isinstance(factory.get("paypal"), PayPalProcessor)
        assert isinstance(factory.get("square"), SquareProcessor)

    def test_adapters_are_cached_per_factory(self):
        billing_settings = BillingSettings(stripe_secret_key="sk_test_1")
        factory = ProcessorFactory(billing_settings)

        assert factory.get("stripe") is factory.get("stripe")
        assert ProcessorFactory(billing_settings).get("stripe") is not factory.get("stripe")

    def test_half_configured_square_is_not_configured(self):
        factory = ProcessorFactory(BillingSettings(square_access_token="EAAA"))

        assert not factory.is_configured("square")
        assert factory.get("square") is None

    def test_require_raises(self):
        factory = ProcessorFactory(BillingSettings())

        with pytest.raises(ProcessorNotConfigured) as exc_info:
            factory.require("paypal")

        assert exc_info.value.code == "processor_not_configured"
        assert exc_info.value.processor == "paypal"

    def test_override_wins(self):
        fake = FakeProcessor("square")
        factory = ProcessorFactory(
            BillingSettings(active_processor="square"),
            overrides={"square": fake},
        )

        assert factory.is_configured("square")
        assert factory.active() is fake

    def test_active_without_credentials_logs(self, caplog):
        factory = ProcessorFactory(BillingSettings(active_processor="stripe"))

        assert factory.active() is None
        assert "has no credentials configured" in caplog.text


@pytest.mark.django_db
def test_for_tenant_reads_tenant_settings(tenant):
    set_tenant_setting(tenant, "payment_active_processor", "stripe")
    set_tenant_setting(tenant, "payment_stripe_secret_key", "sk_test_tenant")

    factory = ProcessorFactory.for_tenant(tenant)

    processor = factory.active()
    assert isinstance(processor, StripeProcessor)
    assert processor.api_key == "sk_test_tenant"
