"""Checkout error taxonomy.

Every failure the engine can observe is one of these exceptions. All of them
except ``InvalidSessionOperation`` and ``InvalidOrderOperation`` end up as a
``CheckoutError`` state carrying the message, the machine-readable code and
whether a retry makes sense.
"""

from enum import Enum
from typing import Any


class CheckoutErrorCode(str, Enum):
    """Machine-readable checkout error codes."""

    EMPTY_BASKET = "empty_basket"
    INVALID_BASKET = "invalid_basket"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    PAYMENT_DECLINED = "payment_declined"
    INVALID_PAYMENT_METHOD = "invalid_payment_method"
    AUTHENTICATION_FAILED = "authentication_failed"
    ORDER_FAILED = "order_failed"
    INVALID_OPERATION = "invalid_operation"
    INVALID_ORDER_OPERATION = "invalid_order_operation"
    UNEXPECTED_ERROR = "unexpected_error"


class CheckoutException(Exception):
    """Base exception for checkout failures.

    Carries a human-readable message, a machine-readable code and a flag telling
    the caller whether the same attempt can be retried.
    """

    default_code: CheckoutErrorCode = CheckoutErrorCode.UNEXPECTED_ERROR
    retryable: bool = True

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize checkout error.

        Args:
            message: Human-readable error description.
            code: Specific error code, defaults to the class code.
            details: Optional additional error details.
        """
        self.message = message
        self.code = code or self.default_code.value
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.message} ({self.code})"


class EmptyBasketError(CheckoutException):
    """Checkout was started from a basket with no items."""

    default_code = CheckoutErrorCode.EMPTY_BASKET
    retryable = False

    def __init__(self, message: str = "Basket is empty", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class InvalidBasketError(CheckoutException):
    """A basket line or aggregate breaks the pricing invariants."""

    default_code = CheckoutErrorCode.INVALID_BASKET
    retryable = False


class GatewayUnavailableError(CheckoutException):
    """Transport failure talking to the payment gateway or order service.

    The outcome of the request is unknown, so a retry must reuse the same
    idempotency key.
    """

    default_code = CheckoutErrorCode.GATEWAY_UNAVAILABLE

    def __init__(
        self,
        message: str = "The payment service is temporarily unavailable. Please try again.",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)


class PaymentDeclinedError(CheckoutException):
    """The gateway refused the charge (decline code in ``code``)."""

    default_code = CheckoutErrorCode.PAYMENT_DECLINED


class InvalidPaymentMethodError(CheckoutException):
    """The instrument could not be registered or used."""

    default_code = CheckoutErrorCode.INVALID_PAYMENT_METHOD


class AuthenticationFailedError(CheckoutException):
    """Step-up authentication (3-D Secure) was not completed."""

    default_code = CheckoutErrorCode.AUTHENTICATION_FAILED

    def __init__(self, message: str = "Authentication failed", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class OrderServiceError(CheckoutException):
    """The order backend rejected or failed to store an order."""

    default_code = CheckoutErrorCode.ORDER_FAILED


class InvalidSessionOperation(CheckoutException):
    """An operation was invoked from a state that does not allow it.

    This is a caller defect and is raised to the caller instead of becoming an
    error state.
    """

    default_code = CheckoutErrorCode.INVALID_OPERATION
    retryable = False


class InvalidOrderOperation(CheckoutException):
    """An order cannot be cancelled or refunded in its current status."""

    default_code = CheckoutErrorCode.INVALID_ORDER_OPERATION
    retryable = False
