"""
Tests for webhook signature verification and event decoding.
"""

import json
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from memberdesk.payments.events import Approved
from memberdesk.payments.events import Failed
from memberdesk.payments.events import Refunded
from memberdesk.payments.events import Succeeded
from memberdesk.payments.factory import ProcessorFactory
from memberdesk.payments.processors.base import ProcessorError
from memberdesk.payments.processors.base import encode_metadata
from memberdesk.payments.tests.fakes import square_signature
from memberdesk.payments.tests.fakes import stripe_signature
from memberdesk.payments.webhooks import InvalidPayload
from memberdesk.payments.webhooks import PayPalWebhookCodec
from memberdesk.payments.webhooks import SignatureVerificationFailed
from memberdesk.payments.webhooks import SquareWebhookCodec
from memberdesk.payments.webhooks import StripeWebhookCodec
from memberdesk.payments.webhooks import codec_for
from memberdesk.payments.webhooks import normalize_metadata
from memberdesk.tenants.tenant_settings import BillingSettings
from memberdesk.tenants.tenant_settings import SquareCredentials
from memberdesk.tenants.tenant_settings import StripeCredentials

STRIPE_SECRET = "whsec_test"  # noqa: S105
SQUARE_KEY = "sq-signature-key"
SQUARE_URL = "https://hooks.example.com/webhooks/square/iron-temple/"


def encode(payload):
    return json.dumps(payload).encode()


def test_normalize_metadata_accepts_camel_case():
    assert normalize_metadata({"invoiceId": 7}) == {"invoiceId": "7", "invoice_id": "7"}
    assert normalize_metadata({"invoice_id": "1", "invoiceId": "2"})["invoice_id"] == "1"
    assert normalize_metadata(None) == {}


# =============================================================================
# Stripe
# =============================================================================


class TestStripeWebhookCodec:
    def setup_method(self):
        self.codec = StripeWebhookCodec(StripeCredentials(webhook_secret=STRIPE_SECRET))

    def parse(self, payload, signature=None):
        body = encode(payload)
        header = signature or stripe_signature(body, STRIPE_SECRET)
        return self.codec.parse(body, {"Stripe-Signature": header})

    def test_checkout_session_completed(self):
        event = self.parse(
            {
                "type": "checkout.session.completed",
                "data": {
                    "object": {
                        "id": "cs_1",
                        "mode": "payment",
                        "payment_status": "paid",
                        "payment_intent": "pi_1",
                        "amount_total": 2500,
                        "metadata": {"invoice_id": "42"},
                    },
                },
            },
        )

        assert event == Succeeded(
            processor="stripe",
            external_payment_id="pi_1",
            amount_cents=2500,
            metadata={"invoice_id": "42"},
        )

    def test_setup_mode_session_is_ignored(self):
        event = self.parse(
            {
                "type": "checkout.session.completed",
                "data": {"object": {"id": "cs_1", "mode": "setup", "payment_status": "no_payment_required"}},
            },
        )
        assert event is None

    def test_payment_failed(self):
        event = self.parse(
            {
                "type": "payment_intent.payment_failed",
                "data": {
                    "object": {
                        "id": "pi_1",
                        "amount": 2500,
                        "metadata": {"invoiceId": "42"},
                        "last_payment_error": {"message": "Your card has insufficient funds."},
                    },
                },
            },
        )

        assert isinstance(event, Failed)
        assert event.metadata["invoice_id"] == "42"
        assert event.reason == "Your card has insufficient funds."

    def test_partial_refund(self):
        event = self.parse(
            {
                "type": "charge.refunded",
                "data": {
                    "object": {
                        "id": "ch_1",
                        "payment_intent": "pi_1",
                        "amount": 2500,
                        "amount_refunded": 1000,
                    },
                },
            },
        )

        assert isinstance(event, Refunded)
        assert event.external_payment_id == "pi_1"
        assert not event.full

    def test_unhandled_type(self):
        assert self.parse({"type": "customer.created", "data": {"object": {}}}) is None

    def test_bad_signature(self):
        with pytest.raises(SignatureVerificationFailed):
            self.parse({"type": "customer.created"}, signature="t=1,v1=deadbeef")

    def test_stale_timestamp(self):
        body = encode({"type": "customer.created"})
        header = stripe_signature(body, STRIPE_SECRET, timestamp=int(time.time()) - 3600)

        with pytest.raises(SignatureVerificationFailed):
            self.codec.parse(body, {"Stripe-Signature": header})

    def test_missing_secret_rejects(self):
        codec = StripeWebhookCodec(StripeCredentials())
        body = encode({"type": "customer.created"})

        with pytest.raises(SignatureVerificationFailed) as exc_info:
            codec.parse(body, {"Stripe-Signature": stripe_signature(body, STRIPE_SECRET)})

        assert "not configured" in exc_info.value.detail

    def test_signed_garbage_is_invalid_payload(self):
        body = b"[1, 2, 3]"
        with pytest.raises(InvalidPayload):
            self.codec.parse(body, {"Stripe-Signature": stripe_signature(body, STRIPE_SECRET)})


# =============================================================================
# PayPal
# =============================================================================


def paypal_client(verified=True):
    client = MagicMock()
    client.credentials = SimpleNamespace(webhook_id="WH-1")
    client.verify_webhook_signature.return_value = verified
    return client


class TestPayPalWebhookCodec:
    def test_headers_are_lowercased_for_verification(self):
        client = paypal_client()
        codec = PayPalWebhookCodec(client)
        body = encode({"event_type": "BILLING.PLAN.CREATED"})

        assert codec.parse(body, {"PAYPAL-TRANSMISSION-ID": "T-1"}) is None

        headers, event = client.verify_webhook_signature.call_args.args
        assert headers == {"paypal-transmission-id": "T-1"}
        assert event == {"event_type": "BILLING.PLAN.CREATED"}

    def test_unverified_delivery(self):
        codec = PayPalWebhookCodec(paypal_client(verified=False))
        with pytest.raises(SignatureVerificationFailed):
            codec.parse(encode({}), {})

    def test_verification_outage_rejects(self):
        client = paypal_client()
        client.verify_webhook_signature.side_effect = ProcessorError("PayPal is down")

        with pytest.raises(SignatureVerificationFailed):
            PayPalWebhookCodec(client).parse(encode({}), {})

    def test_unconfigured_rejects(self):
        with pytest.raises(SignatureVerificationFailed):
            PayPalWebhookCodec(None).parse(encode({}), {})

    def test_order_approved(self):
        event = PayPalWebhookCodec(paypal_client()).decode(
            {
                "event_type": "CHECKOUT.ORDER.APPROVED",
                "resource": {
                    "id": "ORDER-1",
                    "purchase_units": [{"custom_id": encode_metadata({"invoice_id": "42"})}],
                },
            },
        )

        assert event == Approved(
            processor="paypal",
            external_payment_id="",
            metadata={"invoice_id": "42"},
            order_id="ORDER-1",
        )

    def test_capture_completed(self):
        event = PayPalWebhookCodec(paypal_client()).decode(
            {
                "event_type": "PAYMENT.CAPTURE.COMPLETED",
                "resource": {
                    "id": "CAP-1",
                    "amount": {"value": "25.00", "currency_code": "USD"},
                    "custom_id": "42",
                    "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
                },
            },
        )

        assert event == Succeeded(
            processor="paypal",
            external_payment_id="CAP-1",
            amount_cents=2500,
            metadata={"invoice_id": "42", "order_id": "ORDER-1"},
        )

    def test_refund_points_at_capture(self):
        event = PayPalWebhookCodec(paypal_client()).decode(
            {
                "event_type": "PAYMENT.CAPTURE.REFUNDED",
                "resource": {
                    "id": "REFUND-1",
                    "amount": {"value": "25.00"},
                    "links": [
                        {"rel": "self", "href": "https://api.paypal.com/v2/payments/refunds/REFUND-1"},
                        {"rel": "up", "href": "https://api.paypal.com/v2/payments/captures/CAP-1"},
                    ],
                },
            },
        )

        assert isinstance(event, Refunded)
        assert event.external_payment_id == "CAP-1"


# =============================================================================
# Square
# =============================================================================


class TestSquareWebhookCodec:
    def setup_method(self):
        self.codec = SquareWebhookCodec(
            SquareCredentials(webhook_signature_key=SQUARE_KEY),
            SQUARE_URL,
        )

    def parse(self, payload):
        body = encode(payload)
        signature = square_signature(body, SQUARE_KEY, SQUARE_URL)
        return self.codec.parse(body, {"x-square-hmacsha256-signature": signature})

    def test_completed_payment(self):
        event = self.parse(
            {
                "type": "payment.updated",
                "data": {
                    "object": {
                        "payment": {
                            "id": "SQ-PAY-1",
                            "status": "COMPLETED",
                            "order_id": "SQ-ORDER-1",
                            "amount_money": {"amount": 2500, "currency": "USD"},
                        },
                    },
                },
            },
        )

        assert event == Succeeded(
            processor="square",
            external_payment_id="SQ-PAY-1",
            amount_cents=2500,
            metadata={"order_id": "SQ-ORDER-1"},
        )

    def test_approved_payment_is_not_final(self):
        event = self.parse(
            {
                "type": "payment.updated",
                "data": {"object": {"payment": {"id": "SQ-PAY-1", "status": "APPROVED"}}},
            },
        )
        assert event is None

    def test_failed_payment(self):
        event = self.parse(
            {
                "type": "payment.updated",
                "data": {
                    "object": {
                        "payment": {"id": "SQ-PAY-1", "status": "FAILED", "reference_id": "42"},
                    },
                },
            },
        )

        assert isinstance(event, Failed)
        assert event.metadata == {"invoice_id": "42"}
        assert event.reason == "Square payment failed"

    def test_completed_refund(self):
        event = self.parse(
            {
                "type": "refund.updated",
                "data": {
                    "object": {
                        "refund": {
                            "id": "R-1",
                            "status": "COMPLETED",
                            "payment_id": "SQ-PAY-1",
                            "amount_money": {"amount": 2500},
                        },
                    },
                },
            },
        )

        assert event == Refunded(
            processor="square",
            external_payment_id="SQ-PAY-1",
            amount_cents=2500,
        )

    def test_signature_covers_the_notification_url(self):
        body = encode({"type": "payment.updated"})
        signature = square_signature(body, SQUARE_KEY, "https://elsewhere.example.com/")

        with pytest.raises(SignatureVerificationFailed):
            self.codec.parse(body, {"x-square-hmacsha256-signature": signature})

    def test_missing_signature(self):
        with pytest.raises(SignatureVerificationFailed):
            self.codec.parse(encode({}), {})


def test_codec_for():
    factory = ProcessorFactory(BillingSettings())

    assert isinstance(codec_for("stripe", factory), StripeWebhookCodec)
    assert isinstance(codec_for("paypal", factory), PayPalWebhookCodec)
    assert isinstance(codec_for("square", factory, SQUARE_URL), SquareWebhookCodec)
    assert codec_for("venmo", factory) is None
