"""Error taxonomy for checkout, payment actions and webhook processing.

Every error carries the HTTP status it maps to and a message that is safe to
show to the end user. Anything that is not a ``CheckoutError`` is treated as
an unexpected failure and rendered as a generic 500 by the API layer.
"""

from typing import Iterable, List, Optional


class CheckoutError(Exception):
    """Base class for expected, user-presentable failures."""
    status_code = 400
    code = "checkout_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CheckoutError):
    """Malformed input."""
    code = "validation_error"


class ProductUnavailable(CheckoutError):
    """One or more requested products do not exist or are inactive."""
    code = "product_unavailable"

    def __init__(self, missing_ids: Iterable[str]):
        self.missing_ids: List[str] = list(missing_ids)
        super().__init__(
            f"Products not found or inactive: {', '.join(self.missing_ids)}"
        )


class DiscountInvalid(CheckoutError):
    """A discount code cannot be applied."""
    code = "discount_invalid"


class DiscountNotFound(DiscountInvalid):
    code = "discount_not_found"

    def __init__(self, message: str = "Invalid discount code"):
        super().__init__(message)


class DiscountNotYetValid(DiscountInvalid):
    code = "discount_not_yet_valid"

    def __init__(self, message: str = "Discount code is not valid yet"):
        super().__init__(message)


class DiscountExpired(DiscountInvalid):
    code = "discount_expired"

    def __init__(self, message: str = "Discount code has expired"):
        super().__init__(message)


class DiscountExhausted(DiscountInvalid):
    code = "discount_exhausted"

    def __init__(self, message: str = "Discount code usage limit reached"):
        super().__init__(message)


class AmountTooLow(CheckoutError):
    """The charge is below the provider's minimum for the currency."""
    code = "amount_too_low"


class PaymentProcessingError(CheckoutError):
    """The provider rejected or failed to create the payment intent."""
    code = "payment_processing_error"

    def __init__(self, message: str = "Payment processing error. Please try again."):
        super().__init__(message)


class PaymentActionFailed(CheckoutError):
    """A capture or refund failed; the order was left unchanged."""
    code = "payment_action_failed"


class SignatureVerificationFailed(CheckoutError):
    """A webhook payload failed authenticity checks."""
    code = "signature_verification_failed"

    def __init__(self, message: str = "Webhook signature verification failed"):
        super().__init__(message)


class OrderNotFound(CheckoutError):
    status_code = 404
    code = "order_not_found"

    def __init__(self, order_id: Optional[str] = None):
        super().__init__("Order not found")
        self.order_id = order_id


class AccessDenied(CheckoutError):
    status_code = 403
    code = "access_denied"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class InternalError(CheckoutError):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


class WebhookConfigurationError(InternalError):
    """Webhook secret for a provider is not configured."""
    code = "webhook_not_configured"


class PaymentProviderError(Exception):
    """Raised by gateways when a provider call fails.

    Never shown to end users; services translate it into
    ``PaymentProcessingError`` or ``PaymentActionFailed``.
    """

    def __init__(self, message: str, provider: Optional[str] = None, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class ProviderTimeout(PaymentProviderError):
    """A provider call did not finish in time; its outcome is unknown."""

    def __init__(self, message: str = "Provider call timed out", provider: Optional[str] = None):
        super().__init__(message, provider=provider, retriable=True)
