"""
Webhook codecs: verify a processor's delivery and decode it into an event.

Each codec checks the raw request body against the tenant's secret before
looking at its contents, then maps the processor's event types onto
memberdesk.payments.events:

    Stripe  checkout.session.completed       -> Succeeded
            payment_intent.succeeded         -> Succeeded
            payment_intent.payment_failed    -> Failed
            charge.refunded                  -> Refunded
    PayPal  CHECKOUT.ORDER.APPROVED          -> Approved
            PAYMENT.CAPTURE.COMPLETED        -> Succeeded
            PAYMENT.CAPTURE.DENIED           -> Failed
            PAYMENT.CAPTURE.REFUNDED         -> Refunded
    Square  payment.completed / .updated     -> Succeeded or Failed by status
            refund.created / .updated        -> Refunded once COMPLETED

Anything else decodes to None and is acknowledged without action.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from abc import ABC
from abc import abstractmethod
from typing import TYPE_CHECKING
from typing import ClassVar

import stripe

from memberdesk.payments.events import Approved
from memberdesk.payments.events import Failed
from memberdesk.payments.events import Refunded
from memberdesk.payments.events import Succeeded
from memberdesk.payments.processors.base import ProcessorError
from memberdesk.payments.processors.base import decimal_string_to_cents
from memberdesk.payments.processors.base import decode_metadata
from memberdesk.payments.processors.square_processor import payment_metadata

if TYPE_CHECKING:
    from collections.abc import Mapping

    from memberdesk.payments.events import ProcessorEvent
    from memberdesk.payments.factory import ProcessorFactory
    from memberdesk.payments.processors.paypal_processor import PayPalProcessor
    from memberdesk.tenants.tenant_settings import SquareCredentials
    from memberdesk.tenants.tenant_settings import StripeCredentials

logger = logging.getLogger(__name__)

STRIPE_SIGNATURE_TOLERANCE_SECONDS = 300


class WebhookError(Exception):
    def __init__(self, detail: str, code: str = "webhook_error"):
        self.detail = detail
        self.code = code
        super().__init__(detail)


class SignatureVerificationFailed(WebhookError):
    def __init__(self, detail: str = "Invalid webhook signature."):
        super().__init__(detail, code="invalid_signature")


class InvalidPayload(WebhookError):
    def __init__(self, detail: str = "Invalid webhook payload."):
        super().__init__(detail, code="invalid_payload")


def load_json(body: bytes) -> dict:
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise InvalidPayload from exc
    if not isinstance(payload, dict):
        msg = "Webhook payload must be a JSON object."
        raise InvalidPayload(msg)
    return payload


def normalize_metadata(metadata: Mapping[str, object] | None) -> dict[str, str]:
    """Stringify metadata values and accept the older camelCase invoice key."""
    result = {str(key): str(value) for key, value in (metadata or {}).items()}
    if "invoice_id" not in result and result.get("invoiceId"):
        result["invoice_id"] = result["invoiceId"]
    return result


class WebhookCodec(ABC):
    processor: ClassVar[str]

    def parse(self, body: bytes, headers: Mapping[str, str]) -> ProcessorEvent | None:
        """
        Verify and decode one delivery.

        Raises:
            SignatureVerificationFailed: the delivery is not from the processor.
            InvalidPayload: the body is not a JSON object.
        """
        self.verify(body, headers)
        return self.decode(load_json(body))

    @abstractmethod
    def verify(self, body: bytes, headers: Mapping[str, str]) -> None: ...

    @abstractmethod
    def decode(self, payload: dict) -> ProcessorEvent | None: ...


# =============================================================================
# Stripe
# =============================================================================


class StripeWebhookCodec(WebhookCodec):
    processor = "stripe"

    def __init__(
        self,
        credentials: StripeCredentials,
        tolerance: int = STRIPE_SIGNATURE_TOLERANCE_SECONDS,
    ):
        self.secret = credentials.webhook_secret
        self.tolerance = tolerance

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        if not self.secret:
            msg = "Stripe webhook secret is not configured."
            raise SignatureVerificationFailed(msg)
        signature = headers.get("Stripe-Signature", "")
        try:
            stripe.WebhookSignature.verify_header(
                body.decode("utf-8"),
                signature,
                self.secret,
                self.tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise SignatureVerificationFailed from exc

    def decode(self, payload: dict) -> ProcessorEvent | None:
        event_type = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            # Setup-mode sessions only save a card.
            if obj.get("mode") != "payment" or obj.get("payment_status") != "paid":
                return None
            return Succeeded(
                processor=self.processor,
                external_payment_id=_stripe_id(obj.get("payment_intent")) or obj["id"],
                amount_cents=obj.get("amount_total"),
                metadata=normalize_metadata(obj.get("metadata")),
            )
        if event_type == "payment_intent.succeeded":
            return Succeeded(
                processor=self.processor,
                external_payment_id=obj["id"],
                amount_cents=obj.get("amount_received") or obj.get("amount"),
                metadata=normalize_metadata(obj.get("metadata")),
            )
        if event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            return Failed(
                processor=self.processor,
                external_payment_id=obj["id"],
                amount_cents=obj.get("amount"),
                metadata=normalize_metadata(obj.get("metadata")),
                reason=error.get("message") or error.get("code") or "",
            )
        if event_type == "charge.refunded":
            intent_id = _stripe_id(obj.get("payment_intent"))
            if not intent_id:
                return None
            return Refunded(
                processor=self.processor,
                external_payment_id=intent_id,
                amount_cents=obj.get("amount_refunded"),
                metadata=normalize_metadata(obj.get("metadata")),
                full=obj.get("amount_refunded", 0) >= obj.get("amount", 0),
            )
        return None


def _stripe_id(value) -> str:
    if isinstance(value, dict):
        return value.get("id", "")
    return value or ""


# =============================================================================
# PayPal
# =============================================================================


class PayPalWebhookCodec(WebhookCodec):
    processor = "paypal"

    def __init__(self, processor: PayPalProcessor | None):
        self.client = processor

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        if self.client is None or not self.client.credentials.webhook_id:
            msg = "PayPal webhook id is not configured."
            raise SignatureVerificationFailed(msg)
        lowered = {key.lower(): value for key, value in headers.items()}
        try:
            verified = self.client.verify_webhook_signature(lowered, load_json(body))
        except ProcessorError as exc:
            logger.warning("PayPal webhook verification call failed: %s", exc.detail)
            raise SignatureVerificationFailed from exc
        if not verified:
            raise SignatureVerificationFailed

    def decode(self, payload: dict) -> ProcessorEvent | None:
        event_type = payload.get("event_type", "")
        resource = payload.get("resource") or {}

        if event_type == "CHECKOUT.ORDER.APPROVED":
            units = resource.get("purchase_units") or [{}]
            return Approved(
                processor=self.processor,
                external_payment_id="",
                metadata=normalize_metadata(decode_metadata(units[0].get("custom_id"))),
                order_id=resource.get("id", ""),
            )
        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            return Succeeded(
                processor=self.processor,
                external_payment_id=resource["id"],
                amount_cents=_paypal_amount(resource),
                metadata=_paypal_metadata(resource),
            )
        if event_type == "PAYMENT.CAPTURE.DENIED":
            return Failed(
                processor=self.processor,
                external_payment_id=resource.get("id", ""),
                amount_cents=_paypal_amount(resource),
                metadata=_paypal_metadata(resource),
                reason=(resource.get("status_details") or {}).get("reason", "DENIED"),
            )
        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            capture_id = _paypal_capture_id(resource)
            if not capture_id:
                return None
            return Refunded(
                processor=self.processor,
                external_payment_id=capture_id,
                amount_cents=_paypal_amount(resource),
                metadata=_paypal_metadata(resource),
            )
        return None


def _paypal_amount(resource: dict) -> int | None:
    return decimal_string_to_cents((resource.get("amount") or {}).get("value"))


def _paypal_metadata(resource: dict) -> dict[str, str]:
    metadata = normalize_metadata(decode_metadata(resource.get("custom_id")))
    order_id = (
        (resource.get("supplementary_data") or {})
        .get("related_ids", {})
        .get("order_id")
    )
    if order_id:
        metadata.setdefault("order_id", order_id)
    return metadata


def _paypal_capture_id(resource: dict) -> str:
    """
    The refunded capture's id.

    Refund resources link back to their capture with rel="up"; capture
    resources are the capture itself.
    """
    for link in resource.get("links", []):
        if link.get("rel") == "up" and "/captures/" in link.get("href", ""):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return resource.get("id", "")


# =============================================================================
# Square
# =============================================================================


class SquareWebhookCodec(WebhookCodec):
    processor = "square"

    def __init__(self, credentials: SquareCredentials, notification_url: str):
        self.signature_key = credentials.webhook_signature_key
        self.notification_url = notification_url

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        if not self.signature_key:
            msg = "Square webhook signature key is not configured."
            raise SignatureVerificationFailed(msg)
        signature = headers.get("x-square-hmacsha256-signature", "")
        if not signature:
            raise SignatureVerificationFailed
        digest = hmac.new(
            key=self.signature_key.encode("utf-8"),
            msg=self.notification_url.encode("utf-8") + body,
            digestmod=hashlib.sha256,
        ).digest()
        expected = base64.b64encode(digest).decode("utf-8")
        if not hmac.compare_digest(signature.strip(), expected):
            raise SignatureVerificationFailed

    def decode(self, payload: dict) -> ProcessorEvent | None:
        event_type = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type in ("payment.completed", "payment.updated"):
            payment = obj.get("payment") or {}
            status = payment.get("status")
            amount = (payment.get("amount_money") or {}).get("amount")
            if status == "COMPLETED":
                return Succeeded(
                    processor=self.processor,
                    external_payment_id=payment["id"],
                    amount_cents=amount,
                    metadata=payment_metadata(payment),
                )
            if status in ("FAILED", "CANCELED"):
                return Failed(
                    processor=self.processor,
                    external_payment_id=payment.get("id", ""),
                    amount_cents=amount,
                    metadata=payment_metadata(payment),
                    reason=f"Square payment {status.lower()}",
                )
            return None

        if event_type in ("refund.created", "refund.updated"):
            refund = obj.get("refund") or {}
            if refund.get("status") != "COMPLETED" or not refund.get("payment_id"):
                return None
            return Refunded(
                processor=self.processor,
                external_payment_id=refund["payment_id"],
                amount_cents=(refund.get("amount_money") or {}).get("amount"),
            )
        return None


def codec_for(
    processor_name: str,
    processors: ProcessorFactory,
    notification_url: str = "",
) -> WebhookCodec | None:
    """Build the codec for one processor from a tenant's settings."""
    billing_settings = processors.settings
    if processor_name == "stripe":
        return StripeWebhookCodec(billing_settings.stripe)
    if processor_name == "paypal":
        return PayPalWebhookCodec(processors.get("paypal"))
    if processor_name == "square":
        return SquareWebhookCodec(billing_settings.square, notification_url)
    return None
