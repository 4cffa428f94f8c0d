"""
Common interface for payment processors.

Each processor hides its own completion model behind the same four calls:

- Stripe captures in one step; completion arrives by webhook or by
  retrieving the Checkout Session.
- PayPal is two-phase: an APPROVED order must be captured explicitly.
  poll_status() performs that capture the first time it sees APPROVED.
- Square checkouts are payment links keyed by an order id; completion is
  confirmed by a payment webhook carrying our reference id.

Adapters are built per tenant with explicit credentials (see
memberdesk.payments.factory). They hold no global client state.
"""

from __future__ import annotations

import json
from abc import ABC
from abc import abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from decimal import ROUND_HALF_UP
from decimal import Decimal
from decimal import InvalidOperation
from enum import StrEnum
from typing import TYPE_CHECKING
from typing import ClassVar

if TYPE_CHECKING:
    from memberdesk.members.models import Member


class ProcessorError(Exception):
    """A processor call failed (network, auth, validation)."""

    def __init__(
        self,
        detail: str,
        code: str = "processor_error",
        processor: str = "",
    ):
        self.detail = detail
        self.code = code
        self.processor = processor
        super().__init__(detail)


class ChargeDeclined(ProcessorError):
    """The processor answered and refused the charge."""

    def __init__(self, detail: str, processor: str = "", external_payment_id: str = ""):
        self.external_payment_id = external_payment_id
        super().__init__(detail, code="charge_declined", processor=processor)


class ProcessorNotConfigured(ProcessorError):
    def __init__(self, processor: str):
        super().__init__(
            f"{processor or 'Payment processor'} is not configured for this tenant.",
            code="processor_not_configured",
            processor=processor,
        )


class ChargeStatus(StrEnum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"


class CheckoutState(StrEnum):
    PENDING = "pending"
    COMPLETE = "complete"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass(frozen=True)
class CustomerRef:
    """Who to charge off-session, and with which stored method."""

    customer_id: str
    payment_method_id: str


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str
    session_id: str
    order_id: str = ""


@dataclass(frozen=True)
class ChargeResult:
    external_payment_id: str
    status: ChargeStatus

    @property
    def succeeded(self) -> bool:
        return self.status == ChargeStatus.SUCCEEDED


@dataclass(frozen=True)
class CheckoutStatus:
    status: CheckoutState
    external_payment_id: str = ""
    amount_cents: int | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: str = ""
    error: str = ""


class PaymentProcessor(ABC):
    name: ClassVar[str]

    @abstractmethod
    def create_checkout(  # noqa: PLR0913
        self,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
        description: str = "",
    ) -> CheckoutResult:
        """Start a hosted checkout the member is redirected to."""

    @abstractmethod
    def charge_off_session(
        self,
        customer: CustomerRef,
        amount_cents: int,
        currency: str,
        metadata: Mapping[str, str],
    ) -> ChargeResult:
        """
        Charge a stored payment method without the member present.

        Raises:
            ChargeDeclined: the processor refused the charge.
            ProcessorError: the call itself failed.
        """

    @abstractmethod
    def poll_status(self, session_id: str, order_id: str | None = None) -> CheckoutStatus:
        """Ask the processor how a checkout is going."""

    @abstractmethod
    def refund(
        self,
        external_payment_id: str,
        amount_cents: int,
        currency: str,
    ) -> RefundResult:
        """Refund a captured payment. Never raises."""


# =============================================================================
# Helpers shared by the adapters
# =============================================================================


def cents_to_decimal_string(amount_cents: int) -> str:
    """1999 -> "19.99", the format PayPal expects."""
    return str((Decimal(amount_cents) / 100).quantize(Decimal("0.01")))


def decimal_string_to_cents(value: str | None) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(
            (Decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP),
        )
    except InvalidOperation:
        return None


def encode_metadata(metadata: Mapping[str, str]) -> str:
    return json.dumps(dict(metadata), separators=(",", ":"), sort_keys=True)


def decode_metadata(raw: str | None) -> dict[str, str]:
    """
    Parse metadata we stored in a processor free-text field.

    A bare value that is not JSON is treated as an invoice id, which is how
    older payments were tagged.
    """
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {"invoice_id": raw}
    if isinstance(parsed, dict):
        return {str(key): str(value) for key, value in parsed.items()}
    return {"invoice_id": str(parsed)}


def customer_ref_for(member: Member, processor_name: str) -> CustomerRef | None:
    """
    Return the stored payment method for ``member`` on a processor, if any.

    PayPal vault tokens do not need a customer id; Stripe and Square do.
    """
    payment_method = member.default_payment_method_id
    if not payment_method:
        return None
    if processor_name == "stripe":
        customer_id = member.stripe_customer_id
    elif processor_name == "square":
        customer_id = member.square_customer_id
    elif processor_name == "paypal":
        return CustomerRef(
            customer_id=member.paypal_payer_id,
            payment_method_id=payment_method,
        )
    else:
        return None
    if not customer_id:
        return None
    return CustomerRef(customer_id=customer_id, payment_method_id=payment_method)
