"""
PayPal adapter (Orders v2 REST API via requests).

PayPal orders are two-phase: the buyer approves, then we capture. The
capture happens in poll_status() the first time an APPROVED order is seen,
whether that poll comes from the member's browser returning or from a
CHECKOUT.ORDER.APPROVED webhook. A ``PayPal-Request-Id`` header keyed on the
order id makes the capture idempotent on PayPal's side.

Amounts are decimal strings ("19.99"); our metadata travels in the purchase
unit's ``custom_id``.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING

import requests
from django.conf import settings

from memberdesk.payments.processors.base import ChargeDeclined
from memberdesk.payments.processors.base import ChargeResult
from memberdesk.payments.processors.base import ChargeStatus
from memberdesk.payments.processors.base import CheckoutResult
from memberdesk.payments.processors.base import CheckoutState
from memberdesk.payments.processors.base import CheckoutStatus
from memberdesk.payments.processors.base import PaymentProcessor
from memberdesk.payments.processors.base import ProcessorError
from memberdesk.payments.processors.base import RefundResult
from memberdesk.payments.processors.base import cents_to_decimal_string
from memberdesk.payments.processors.base import decimal_string_to_cents
from memberdesk.payments.processors.base import decode_metadata
from memberdesk.payments.processors.base import encode_metadata

if TYPE_CHECKING:
    from collections.abc import Mapping

    from memberdesk.payments.processors.base import CustomerRef
    from memberdesk.tenants.tenant_settings import PayPalCredentials

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"

# Refresh the OAuth token this long before PayPal says it expires.
TOKEN_EXPIRY_BUFFER_SECONDS = 300

HTTP_UNPROCESSABLE = 422


def _first_capture(order: dict) -> dict:
    units = order.get("purchase_units") or [{}]
    captures = (units[0].get("payments") or {}).get("captures") or []
    return captures[0] if captures else {}


def _custom_id(order: dict) -> str:
    units = order.get("purchase_units") or [{}]
    unit = units[0]
    if unit.get("custom_id"):
        return unit["custom_id"]
    return _first_capture(order).get("custom_id", "")


class PayPalProcessor(PaymentProcessor):
    name = "paypal"

    def __init__(self, credentials: PayPalCredentials, timeout: int | None = None):
        self.credentials = credentials
        self.base_url = SANDBOX_BASE_URL if credentials.sandbox else LIVE_BASE_URL
        self.timeout = timeout or getattr(settings, "PAYMENT_HTTP_TIMEOUT", 20)
        self._token = ""
        self._token_expires_at = 0.0

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            response = requests.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.credentials.client_id, self.credentials.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            msg = f"PayPal authentication failed: {exc}"
            raise ProcessorError(msg, code="auth_failed", processor=self.name) from exc

        data = response.json()
        self._token = data["access_token"]
        expires_in = int(data.get("expires_in", 0))
        self._token_expires_at = (
            time.monotonic() + expires_in - TOKEN_EXPIRY_BUFFER_SECONDS
        )
        return self._token

    def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        request_id: str = "",
    ) -> dict:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            msg = f"PayPal request failed: {exc}"
            raise ProcessorError(msg, processor=self.name) from exc

        if response.status_code == HTTP_UNPROCESSABLE:
            body = response.json() if response.content else {}
            issue = ((body.get("details") or [{}])[0]).get("issue", "")
            raise ChargeDeclined(
                body.get("message") or issue or "PayPal declined the request",
                processor=self.name,
            )
        if not response.ok:
            logger.warning(
                "PayPal %s %s returned %s: %s",
                method,
                path,
                response.status_code,
                response.text[:500],
            )
            msg = f"PayPal {method} {path} failed with HTTP {response.status_code}"
            raise ProcessorError(msg, processor=self.name)
        return response.json() if response.content else {}

    # -------------------------------------------------------------------------
    # PaymentProcessor
    # -------------------------------------------------------------------------

    def create_checkout(  # noqa: PLR0913
        self,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
        description: str = "",
    ) -> CheckoutResult:
        order = self._request(
            "POST",
            "/v2/checkout/orders",
            {
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "amount": {
                            "currency_code": currency.upper(),
                            "value": cents_to_decimal_string(amount_cents),
                        },
                        "description": description or "Membership",
                        "custom_id": encode_metadata(metadata),
                    },
                ],
                "payment_source": {
                    "paypal": {
                        "experience_context": {
                            "return_url": success_url,
                            "cancel_url": cancel_url,
                            "user_action": "PAY_NOW",
                        },
                    },
                },
            },
            request_id=str(uuid.uuid4()),
        )
        approve_url = next(
            (
                link["href"]
                for link in order.get("links", [])
                if link.get("rel") in ("payer-action", "approve")
            ),
            "",
        )
        logger.info("Created PayPal order %s", order["id"])
        return CheckoutResult(
            checkout_url=approve_url,
            session_id=order["id"],
            order_id=order["id"],
        )

    def capture_order(self, order_id: str) -> dict:
        return self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            {},
            request_id=f"capture-{order_id}",
        )

    def _status_from_order(self, order: dict) -> CheckoutStatus:
        metadata = decode_metadata(_custom_id(order))
        status = order.get("status")
        if status == "COMPLETED":
            capture = _first_capture(order)
            if capture.get("status") == "DECLINED":
                return CheckoutStatus(status=CheckoutState.FAILED, metadata=metadata)
            return CheckoutStatus(
                status=CheckoutState.COMPLETE,
                external_payment_id=capture.get("id", ""),
                amount_cents=decimal_string_to_cents(
                    (capture.get("amount") or {}).get("value"),
                ),
                metadata=metadata,
            )
        if status == "VOIDED":
            return CheckoutStatus(status=CheckoutState.EXPIRED, metadata=metadata)
        return CheckoutStatus(status=CheckoutState.PENDING, metadata=metadata)

    def poll_status(self, session_id: str, order_id: str | None = None) -> CheckoutStatus:
        order_id = order_id or session_id
        order = self._request("GET", f"/v2/checkout/orders/{order_id}")
        if order.get("status") == "APPROVED":
            try:
                order = self.capture_order(order_id)
            except ChargeDeclined:
                # Already captured by a concurrent poll or webhook, or the
                # funding source was refused. Re-read to find out which.
                order = self._request("GET", f"/v2/checkout/orders/{order_id}")
                if order.get("status") != "COMPLETED":
                    return CheckoutStatus(
                        status=CheckoutState.FAILED,
                        metadata=decode_metadata(_custom_id(order)),
                    )
            logger.info("Captured PayPal order %s", order_id)
        return self._status_from_order(order)

    def charge_off_session(
        self,
        customer: CustomerRef,
        amount_cents: int,
        currency: str,
        metadata: Mapping[str, str],
    ) -> ChargeResult:
        order = self._request(
            "POST",
            "/v2/checkout/orders",
            {
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "amount": {
                            "currency_code": currency.upper(),
                            "value": cents_to_decimal_string(amount_cents),
                        },
                        "custom_id": encode_metadata(metadata),
                    },
                ],
                "payment_source": {
                    "paypal": {"vault_id": customer.payment_method_id},
                },
            },
            request_id=str(uuid.uuid4()),
        )
        if order.get("status") != "COMPLETED":
            order = self.capture_order(order["id"])

        capture = _first_capture(order)
        if capture.get("status") == "DECLINED":
            raise ChargeDeclined(
                "PayPal declined the vaulted payment",
                processor=self.name,
                external_payment_id=capture.get("id", ""),
            )
        status = (
            ChargeStatus.SUCCEEDED
            if capture.get("status") == "COMPLETED"
            else ChargeStatus.PENDING
        )
        return ChargeResult(external_payment_id=capture.get("id", ""), status=status)

    def refund(
        self,
        external_payment_id: str,
        amount_cents: int,
        currency: str,
    ) -> RefundResult:
        try:
            refund = self._request(
                "POST",
                f"/v2/payments/captures/{external_payment_id}/refund",
                {
                    "amount": {
                        "currency_code": currency.upper(),
                        "value": cents_to_decimal_string(amount_cents),
                    },
                },
                request_id=f"refund-{external_payment_id}",
            )
        except ProcessorError as exc:
            logger.warning(
                "PayPal refund for %s failed: %s",
                external_payment_id,
                exc.detail,
            )
            return RefundResult(success=False, error=exc.detail)
        return RefundResult(success=True, refund_id=refund.get("id", ""))

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_webhook_signature(self, headers: Mapping[str, str], event: dict) -> bool:
        """
        Ask PayPal whether a webhook delivery is genuine.

        PayPal signs with a certificate chain rather than a shared secret, so
        verification is a round trip to its verify-webhook-signature API.
        """
        if not self.credentials.webhook_id:
            return False
        result = self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            {
                "auth_algo": headers.get("paypal-auth-algo", ""),
                "cert_url": headers.get("paypal-cert-url", ""),
                "transmission_id": headers.get("paypal-transmission-id", ""),
                "transmission_sig": headers.get("paypal-transmission-sig", ""),
                "transmission_time": headers.get("paypal-transmission-time", ""),
                "webhook_id": self.credentials.webhook_id,
                "webhook_event": event,
            },
        )
        return result.get("verification_status") == "SUCCESS"
