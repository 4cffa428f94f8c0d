"""
Billing exceptions.

Each carries a human-readable ``detail`` and a machine-readable ``code`` so
API views can return them as ``{"detail": ..., "code": ...}``.
"""


class BillingError(Exception):
    """Base exception for billing-related errors."""

    def __init__(self, detail: str, code: str = "billing_error"):
        self.detail = detail
        self.code = code
        super().__init__(detail)


class InvalidTransitionError(BillingError):
    """Raised when an invoice transition is not in the lifecycle table."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move an invoice from {current} to {target}.",
            code="invalid_transition",
        )


class PromoCodeError(BillingError):
    """Raised when a promo code cannot be applied."""

    def __init__(self, detail: str):
        super().__init__(detail, code="invalid_promo_code")
