"""
Processor-neutral payment events.

Webhook codecs decode each processor's payload into one of these, and the
reconciler only ever sees these. ``metadata`` carries what we attached when
the payment was started (at minimum ``invoice_id`` when we know it).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field


@dataclass(frozen=True)
class Succeeded:
    processor: str
    external_payment_id: str
    amount_cents: int | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Failed:
    processor: str
    external_payment_id: str
    amount_cents: int | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)
    reason: str = ""


@dataclass(frozen=True)
class Refunded:
    """A capture was refunded at the processor. ``full`` is False for partials."""

    processor: str
    external_payment_id: str
    amount_cents: int | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)
    full: bool = True


@dataclass(frozen=True)
class Approved:
    """The buyer approved a two-phase order that still needs capturing."""

    processor: str
    external_payment_id: str
    amount_cents: int | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)
    order_id: str = ""


ProcessorEvent = Succeeded | Failed | Refunded | Approved
