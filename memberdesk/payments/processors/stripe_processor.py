"""
Stripe adapter.

Uses the official SDK's resource classes with a per-call ``api_key`` so
several tenants' Stripe accounts can be served by one process.

Flow:
- Checkout: a Checkout Session in ``payment`` mode. Our metadata is copied to
  the PaymentIntent so payment_intent.* webhooks can find the invoice.
- Off-session: a PaymentIntent confirmed immediately against the member's
  saved card. Declines surface as stripe.CardError.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import stripe

from memberdesk.payments.processors.base import ChargeDeclined
from memberdesk.payments.processors.base import ChargeResult
from memberdesk.payments.processors.base import ChargeStatus
from memberdesk.payments.processors.base import CheckoutResult
from memberdesk.payments.processors.base import CheckoutState
from memberdesk.payments.processors.base import CheckoutStatus
from memberdesk.payments.processors.base import PaymentProcessor
from memberdesk.payments.processors.base import ProcessorError
from memberdesk.payments.processors.base import RefundResult

if TYPE_CHECKING:
    from collections.abc import Mapping

    from memberdesk.payments.processors.base import CustomerRef
    from memberdesk.tenants.tenant_settings import StripeCredentials

logger = logging.getLogger(__name__)


def _object_id(value) -> str:
    """Stripe returns either an id string or an expanded object."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return getattr(value, "id", "") or ""


def _error_message(exc: stripe.StripeError) -> str:
    return exc.user_message or str(exc) or exc.__class__.__name__


class StripeProcessor(PaymentProcessor):
    name = "stripe"

    def __init__(self, credentials: StripeCredentials):
        self.credentials = credentials

    @property
    def api_key(self) -> str:
        return self.credentials.secret_key

    def create_checkout(  # noqa: PLR0913
        self,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
        description: str = "",
    ) -> CheckoutResult:
        separator = "&" if "?" in success_url else "?"
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": {"name": description or "Membership"},
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    },
                ],
                success_url=f"{success_url}{separator}session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=cancel_url,
                client_reference_id=metadata.get("invoice_id"),
                metadata=dict(metadata),
                payment_intent_data={"metadata": dict(metadata)},
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session creation failed")
            raise ProcessorError(_error_message(exc), processor=self.name) from exc

        logger.info("Created Stripe checkout session %s", session.id)
        return CheckoutResult(checkout_url=session.url, session_id=session.id)

    def charge_off_session(
        self,
        customer: CustomerRef,
        amount_cents: int,
        currency: str,
        metadata: Mapping[str, str],
    ) -> ChargeResult:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount_cents,
                currency=currency.lower(),
                customer=customer.customer_id,
                payment_method=customer.payment_method_id,
                off_session=True,
                confirm=True,
                metadata=dict(metadata),
            )
        except stripe.CardError as exc:
            error = getattr(exc, "error", None)
            intent_id = _object_id(getattr(error, "payment_intent", None))
            raise ChargeDeclined(
                _error_message(exc),
                processor=self.name,
                external_payment_id=intent_id,
            ) from exc
        except stripe.StripeError as exc:
            raise ProcessorError(_error_message(exc), processor=self.name) from exc

        status = (
            ChargeStatus.SUCCEEDED
            if intent.status == "succeeded"
            else ChargeStatus.PENDING
        )
        return ChargeResult(external_payment_id=intent.id, status=status)

    def poll_status(self, session_id: str, order_id: str | None = None) -> CheckoutStatus:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise ProcessorError(_error_message(exc), processor=self.name) from exc

        metadata = dict(session.metadata or {})
        if session.status == "complete" and session.payment_status == "paid":
            return CheckoutStatus(
                status=CheckoutState.COMPLETE,
                external_payment_id=_object_id(session.payment_intent),
                amount_cents=session.amount_total,
                metadata=metadata,
            )
        if session.status == "expired":
            return CheckoutStatus(status=CheckoutState.EXPIRED, metadata=metadata)
        return CheckoutStatus(status=CheckoutState.PENDING, metadata=metadata)

    def refund(
        self,
        external_payment_id: str,
        amount_cents: int,
        currency: str,
    ) -> RefundResult:
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=external_payment_id,
                amount=amount_cents,
            )
        except stripe.StripeError as exc:
            logger.warning(
                "Stripe refund for %s failed: %s",
                external_payment_id,
                exc,
            )
            return RefundResult(success=False, error=_error_message(exc))
        return RefundResult(success=True, refund_id=refund.id)
