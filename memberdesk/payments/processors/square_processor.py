"""
Square adapter (Square REST API via requests).

Checkouts are payment links built around an order whose ``reference_id`` is
our invoice id. Square confirms the payment with a ``payment.*`` webhook;
that payment carries the order id, and off-session payments carry our
``reference_id`` directly.
"""

from __future__ import annotations

import logging
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
from memberdesk.payments.processors.base import decode_metadata
from memberdesk.payments.processors.base import encode_metadata

if TYPE_CHECKING:
    from collections.abc import Mapping

    from memberdesk.payments.processors.base import CustomerRef
    from memberdesk.tenants.tenant_settings import SquareCredentials

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://connect.squareupsandbox.com"
LIVE_BASE_URL = "https://connect.squareup.com"
SQUARE_VERSION = "2024-01-18"

HTTP_PAYMENT_REQUIRED = 402
DECLINED_PAYMENT_STATUSES = ("FAILED", "CANCELED")


def _error_detail(body: dict, fallback: str) -> str:
    errors = body.get("errors") or [{}]
    return errors[0].get("detail") or errors[0].get("code") or fallback


class SquareProcessor(PaymentProcessor):
    name = "square"

    def __init__(self, credentials: SquareCredentials, timeout: int | None = None):
        self.credentials = credentials
        self.base_url = SANDBOX_BASE_URL if credentials.sandbox else LIVE_BASE_URL
        self.timeout = timeout or getattr(settings, "PAYMENT_HTTP_TIMEOUT", 20)

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.credentials.access_token}",
                    "Square-Version": SQUARE_VERSION,
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            msg = f"Square request failed: {exc}"
            raise ProcessorError(msg, processor=self.name) from exc

        body = response.json() if response.content else {}
        if response.ok:
            return body

        detail = _error_detail(body, response.reason or "Square request failed")
        if response.status_code == HTTP_PAYMENT_REQUIRED:
            payment = body.get("payment") or {}
            raise ChargeDeclined(
                detail,
                processor=self.name,
                external_payment_id=payment.get("id", ""),
            )
        logger.warning(
            "Square %s %s returned %s: %s",
            method,
            path,
            response.status_code,
            detail,
        )
        raise ProcessorError(detail, processor=self.name)

    def create_checkout(  # noqa: PLR0913
        self,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
        description: str = "",
    ) -> CheckoutResult:
        data = self._request(
            "POST",
            "/v2/online-checkout/payment-links",
            {
                "idempotency_key": str(uuid.uuid4()),
                "order": {
                    "location_id": self.credentials.location_id,
                    "reference_id": metadata.get("invoice_id", ""),
                    "line_items": [
                        {
                            "name": description or "Membership",
                            "quantity": "1",
                            "base_price_money": {
                                "amount": amount_cents,
                                "currency": currency.upper(),
                            },
                        },
                    ],
                },
                "checkout_options": {"redirect_url": success_url},
                "payment_note": encode_metadata(metadata),
            },
        )
        link = data["payment_link"]
        logger.info("Created Square payment link %s (order %s)", link["id"], link["order_id"])
        return CheckoutResult(
            checkout_url=link["url"],
            session_id=link["id"],
            order_id=link["order_id"],
        )

    def poll_status(self, session_id: str, order_id: str | None = None) -> CheckoutStatus:
        if not order_id:
            msg = "Square checkout status needs the order id"
            raise ProcessorError(msg, code="missing_order_id", processor=self.name)
        order = self._request("GET", f"/v2/orders/{order_id}").get("order", {})
        metadata = {"invoice_id": order["reference_id"]} if order.get("reference_id") else {}

        state = order.get("state")
        if state == "COMPLETED":
            tenders = order.get("tenders") or [{}]
            total = (order.get("total_money") or {}).get("amount")
            return CheckoutStatus(
                status=CheckoutState.COMPLETE,
                external_payment_id=tenders[0].get("payment_id", ""),
                amount_cents=total,
                metadata=metadata,
            )
        if state == "CANCELED":
            return CheckoutStatus(status=CheckoutState.EXPIRED, metadata=metadata)
        return CheckoutStatus(status=CheckoutState.PENDING, metadata=metadata)

    def charge_off_session(
        self,
        customer: CustomerRef,
        amount_cents: int,
        currency: str,
        metadata: Mapping[str, str],
    ) -> ChargeResult:
        data = self._request(
            "POST",
            "/v2/payments",
            {
                "idempotency_key": str(uuid.uuid4()),
                "source_id": customer.payment_method_id,
                "customer_id": customer.customer_id,
                "amount_money": {"amount": amount_cents, "currency": currency.upper()},
                "autocomplete": True,
                "location_id": self.credentials.location_id,
                "reference_id": metadata.get("invoice_id", ""),
                "note": encode_metadata(metadata),
            },
        )
        payment = data.get("payment", {})
        status = payment.get("status")
        if status in DECLINED_PAYMENT_STATUSES:
            raise ChargeDeclined(
                f"Square payment {status.lower()}",
                processor=self.name,
                external_payment_id=payment.get("id", ""),
            )
        return ChargeResult(
            external_payment_id=payment.get("id", ""),
            status=ChargeStatus.SUCCEEDED
            if status == "COMPLETED"
            else ChargeStatus.PENDING,
        )

    def refund(
        self,
        external_payment_id: str,
        amount_cents: int,
        currency: str,
    ) -> RefundResult:
        try:
            data = self._request(
                "POST",
                "/v2/refunds",
                {
                    "idempotency_key": str(uuid.uuid4()),
                    "payment_id": external_payment_id,
                    "amount_money": {
                        "amount": amount_cents,
                        "currency": currency.upper(),
                    },
                },
            )
        except ProcessorError as exc:
            logger.warning(
                "Square refund for %s failed: %s",
                external_payment_id,
                exc.detail,
            )
            return RefundResult(success=False, error=exc.detail)
        return RefundResult(success=True, refund_id=data.get("refund", {}).get("id", ""))


def payment_metadata(payment: dict) -> dict[str, str]:
    """Recover our metadata from a Square payment object."""
    note = payment.get("note") or ""
    # Free-text notes from the dashboard are not ours.
    metadata = decode_metadata(note) if note.startswith("{") else {}
    if payment.get("reference_id"):
        metadata["invoice_id"] = payment["reference_id"]
    if payment.get("order_id"):
        metadata.setdefault("order_id", payment["order_id"])
    return metadata
