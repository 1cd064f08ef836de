"""Payment gateway contract and its Stripe implementation."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import stripe

from src.core.config import Settings, get_settings
from src.core.errors import (
    AuthenticationFailedError,
    CheckoutException,
    GatewayUnavailableError,
    InvalidOrderOperation,
    InvalidPaymentMethodError,
    PaymentDeclinedError,
)
from src.core.stripe import TRANSIENT_STRIPE_ERRORS, get_stripe, timed_call
from src.schemas.checkout import Address, PaymentAuthorization, PaymentMethod

logger = logging.getLogger(__name__)

# User-facing messages for Stripe decline and validation codes
DECLINE_MESSAGES = {
    "card_declined": "Your card was declined. Please try another card.",
    "generic_decline": "Your card was declined. Please try another card.",
    "incorrect_number": "The card number is invalid. Please check and try again.",
    "invalid_number": "The card number is invalid. Please check and try again.",
    "invalid_expiry_month": "The expiry date is invalid. Please check and try again.",
    "invalid_expiry_year": "The expiry date is invalid. Please check and try again.",
    "incorrect_cvc": "The security code is invalid. Please check and try again.",
    "invalid_cvc": "The security code is invalid. Please check and try again.",
    "expired_card": "Your card has expired. Please use another card.",
    "insufficient_funds": "Your card has insufficient funds.",
    "processing_error": "An error occurred while processing your card. Please try again.",
    "payment_intent_authentication_failure": "We could not verify your card. Please try again or use another card.",
}
DEFAULT_DECLINE_MESSAGE = "Payment failed. Please try again."

SUCCEEDED_INTENT_STATUSES = {"succeeded", "requires_capture"}
FAILED_INTENT_STATUSES = {"requires_payment_method", "canceled"}
FAILED_REFUND_STATUSES = {"failed", "canceled"}


def readable_decline_message(code: str | None, decline_code: str | None = None, fallback: str | None = None) -> str:
    """Map Stripe error codes to a message suitable for display."""
    for key in (decline_code, code):
        if key and key in DECLINE_MESSAGES:
            return DECLINE_MESSAGES[key]
    return fallback or DEFAULT_DECLINE_MESSAGE


def map_stripe_error(error: stripe.StripeError) -> CheckoutException:
    """Translate a Stripe SDK error into the checkout error taxonomy.

    Transport and server failures become ``GatewayUnavailableError`` (outcome
    unknown, retry with the same idempotency key); card errors become
    ``PaymentDeclinedError`` carrying Stripe's code.
    """
    if isinstance(error, stripe.CardError):
        decline_code = getattr(error.error, "decline_code", None) if error.error else None
        code = error.code or "card_declined"
        return PaymentDeclinedError(
            readable_decline_message(code, decline_code, error.user_message),
            code=code,
            details={"decline_code": decline_code} if decline_code else None,
        )
    if isinstance(error, TRANSIENT_STRIPE_ERRORS) or isinstance(error, stripe.APIError):
        return GatewayUnavailableError(details={"stripe_error": type(error).__name__})
    if isinstance(error, stripe.AuthenticationError):
        return GatewayUnavailableError(
            "Payments are not configured correctly. Please try again later.",
            code="gateway_misconfigured",
        )
    if isinstance(error, stripe.InvalidRequestError):
        return InvalidPaymentMethodError(
            error.user_message or "The payment details were rejected.",
            code=error.code or "invalid_request",
        )
    return CheckoutException(error.user_message or DEFAULT_DECLINE_MESSAGE, code="gateway_error")


class PaymentGateway(ABC):
    """Operations the checkout engine needs from a payment processor.

    Implementations raise ``GatewayUnavailableError`` for transport failures and
    ``PaymentDeclinedError``/``InvalidPaymentMethodError`` for business failures
    so callers can tell a retryable outage from a refused instrument.
    """

    @abstractmethod
    async def list_payment_methods(self) -> list[PaymentMethod]:
        """List the customer's registered instruments."""

    @abstractmethod
    async def create_payment_method(
        self,
        gateway_token: str,
        billing_address: Address,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        """Register a tokenized instrument for the customer."""

    @abstractmethod
    async def delete_payment_method(self, payment_method_id: str) -> None:
        """Remove an instrument from the customer."""

    @abstractmethod
    async def set_default_payment_method(self, payment_method_id: str) -> None:
        """Make an instrument the customer's default."""

    @abstractmethod
    async def authorize(
        self,
        amount: int,
        currency: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> PaymentAuthorization:
        """Authorize and charge ``amount`` minor units."""

    @abstractmethod
    async def resolve_challenge(self, client_secret: str) -> PaymentAuthorization:
        """Resume an authorization after step-up authentication.

        Raises:
            AuthenticationFailedError: If the challenge was not passed.
        """

    @abstractmethod
    async def get_authorization(self, payment_intent_id: str) -> PaymentAuthorization:
        """Fetch the current status of an authorization."""

    @abstractmethod
    async def find_authorization(self, order_id: str) -> PaymentAuthorization | None:
        """Find the authorization created for an order whose response was lost."""

    @abstractmethod
    async def cancel_authorization(self, payment_intent_id: str) -> None:
        """Cancel an authorization that has not been captured.

        Raises:
            InvalidOrderOperation: If the gateway no longer allows cancelling it.
        """

    @abstractmethod
    async def refund(
        self,
        payment_intent_id: str,
        amount: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str:
        """Refund ``amount`` minor units of a captured payment.

        Returns:
            str: Gateway refund ID.

        Raises:
            InvalidOrderOperation: If the gateway refuses the refund.
        """


class StripePaymentGateway(PaymentGateway):
    """Payment gateway backed by Stripe PaymentMethods and PaymentIntents."""

    def __init__(self, customer_id: str, settings: Settings | None = None) -> None:
        """Initialize the gateway for one Stripe customer.

        Args:
            customer_id: Stripe customer owning the payment methods.
            settings: Optional settings override.
        """
        self.customer_id = customer_id
        self.stripe = get_stripe()
        self.settings = settings or get_settings()

    async def list_payment_methods(self) -> list[PaymentMethod]:
        try:
            customer = timed_call(
                "Customer.retrieve", self.stripe.Customer.retrieve, self.customer_id, read_only=True
            )
            methods = timed_call(
                "PaymentMethod.list",
                self.stripe.PaymentMethod.list,
                customer=self.customer_id,
                type="card",
                read_only=True,
            )
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        default_id = _default_payment_method_id(customer)
        return [_to_payment_method(pm, default_id) for pm in methods.data]

    async def create_payment_method(
        self,
        gateway_token: str,
        billing_address: Address,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        try:
            attached = timed_call(
                "PaymentMethod.attach",
                self.stripe.PaymentMethod.attach,
                gateway_token,
                customer=self.customer_id,
            )
            updated = timed_call(
                "PaymentMethod.modify",
                self.stripe.PaymentMethod.modify,
                attached.id,
                billing_details=_to_billing_details(billing_address),
            )
            if set_as_default:
                timed_call(
                    "Customer.modify",
                    self.stripe.Customer.modify,
                    self.customer_id,
                    invoice_settings={"default_payment_method": updated.id},
                )
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        method = _to_payment_method(updated, updated.id if set_as_default else None)
        if method.billing_address is None:
            method = method.model_copy(update={"billing_address": billing_address})
        logger.info("Registered payment method %s for customer %s", method.id, self.customer_id)
        return method

    async def delete_payment_method(self, payment_method_id: str) -> None:
        try:
            timed_call("PaymentMethod.detach", self.stripe.PaymentMethod.detach, payment_method_id)
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        logger.info("Removed payment method %s from customer %s", payment_method_id, self.customer_id)

    async def set_default_payment_method(self, payment_method_id: str) -> None:
        try:
            timed_call(
                "Customer.modify",
                self.stripe.Customer.modify,
                self.customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        logger.info("Payment method %s is now the default for customer %s", payment_method_id, self.customer_id)

    async def authorize(
        self,
        amount: int,
        currency: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> PaymentAuthorization:
        try:
            intent = timed_call(
                "PaymentIntent.create",
                self.stripe.PaymentIntent.create,
                amount=amount,
                currency=currency,
                customer=self.customer_id,
                payment_method=payment_method_id,
                payment_method_types=["card"],
                confirm=True,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        return _to_authorization(intent)

    async def resolve_challenge(self, client_secret: str) -> PaymentAuthorization:
        intent_id = client_secret.split("_secret_")[0]
        if not intent_id.startswith("pi_"):
            raise AuthenticationFailedError("Invalid authentication secret", code="invalid_client_secret")

        try:
            intent = timed_call(
                "PaymentIntent.retrieve", self.stripe.PaymentIntent.retrieve, intent_id, read_only=True
            )
            if intent.status == "requires_confirmation":
                intent = timed_call("PaymentIntent.confirm", self.stripe.PaymentIntent.confirm, intent_id)
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        if intent.status in FAILED_INTENT_STATUSES:
            code = _last_error_code(intent) or "payment_intent_authentication_failure"
            raise AuthenticationFailedError(readable_decline_message(code), code=code)
        if intent.status == "requires_action":
            raise AuthenticationFailedError(
                "Authentication was not completed. Please try again.",
                code="authentication_incomplete",
            )
        return _to_authorization(intent)

    async def get_authorization(self, payment_intent_id: str) -> PaymentAuthorization:
        try:
            intent = timed_call(
                "PaymentIntent.retrieve", self.stripe.PaymentIntent.retrieve, payment_intent_id, read_only=True
            )
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        return _to_authorization(intent)

    async def find_authorization(self, order_id: str) -> PaymentAuthorization | None:
        """Look up the PaymentIntent created for an order.

        Uses the ``order_id`` metadata set by ``authorize``. Stripe search is
        eventually consistent, so an intent created seconds ago may be missing.
        """
        try:
            result = timed_call(
                "PaymentIntent.search",
                self.stripe.PaymentIntent.search,
                query=f"metadata['order_id']:'{order_id}'",
                limit=1,
                read_only=True,
            )
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        if not result.data:
            return None
        return _to_authorization(result.data[0])

    async def cancel_authorization(self, payment_intent_id: str) -> None:
        try:
            timed_call("PaymentIntent.cancel", self.stripe.PaymentIntent.cancel, payment_intent_id)
        except stripe.InvalidRequestError as e:
            raise InvalidOrderOperation(
                e.user_message or "This payment can no longer be cancelled.",
                code=e.code or "payment_not_cancellable",
            ) from e
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        logger.info("Cancelled PaymentIntent %s", payment_intent_id)

    async def refund(
        self,
        payment_intent_id: str,
        amount: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str:
        try:
            refund = timed_call(
                "Refund.create",
                self.stripe.Refund.create,
                payment_intent=payment_intent_id,
                amount=amount,
                metadata={"reason": reason} if reason else {},
                idempotency_key=idempotency_key,
            )
        except stripe.InvalidRequestError as e:
            raise InvalidOrderOperation(
                e.user_message or "The refund was rejected.",
                code=e.code or "refund_rejected",
            ) from e
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        if refund.status in FAILED_REFUND_STATUSES:
            raise InvalidOrderOperation(
                f"The refund could not be completed (status: {refund.status})",
                code="refund_failed",
                details={"refund_id": refund.id},
            )
        logger.info("Refunded %d of PaymentIntent %s (%s)", amount, payment_intent_id, refund.id)
        return refund.id


def _to_authorization(intent: Any) -> PaymentAuthorization:
    """Map a PaymentIntent to an authorization, raising on refused payments."""
    status = intent.status
    if status in SUCCEEDED_INTENT_STATUSES:
        return PaymentAuthorization(payment_intent_id=intent.id, status="succeeded")
    if status == "requires_action":
        return PaymentAuthorization(
            payment_intent_id=intent.id,
            status="requires_action",
            client_secret=intent.client_secret,
        )
    if status == "processing":
        return PaymentAuthorization(payment_intent_id=intent.id, status="processing")

    code = _last_error_code(intent) or "card_declined"
    raise PaymentDeclinedError(
        readable_decline_message(code, fallback=f"Payment failed with status: {status}"),
        code=code,
        details={"payment_intent_id": intent.id, "status": status},
    )


def _last_error_code(intent: Any) -> str | None:
    last_error = getattr(intent, "last_payment_error", None)
    if not last_error:
        return None
    return getattr(last_error, "decline_code", None) or getattr(last_error, "code", None)


def _default_payment_method_id(customer: Any) -> str | None:
    invoice_settings = getattr(customer, "invoice_settings", None)
    default = getattr(invoice_settings, "default_payment_method", None) if invoice_settings else None
    if default is None or isinstance(default, str):
        return default
    return default.id


def _to_payment_method(pm: Any, default_id: str | None) -> PaymentMethod:
    card = getattr(pm, "card", None)
    created = getattr(pm, "created", None)
    return PaymentMethod(
        id=pm.id,
        type=getattr(pm, "type", None) or "card",
        last4=getattr(card, "last4", None) if card else None,
        brand=getattr(card, "brand", None) if card else None,
        expiry_month=_as_str(getattr(card, "exp_month", None)) if card else None,
        expiry_year=_as_str(getattr(card, "exp_year", None)) if card else None,
        is_default=default_id is not None and pm.id == default_id,
        billing_address=_to_address(getattr(pm, "billing_details", None)),
        created_at=datetime.fromtimestamp(created, tz=timezone.utc) if isinstance(created, int) else None,
    )


def _to_address(billing_details: Any) -> Address | None:
    address = getattr(billing_details, "address", None) if billing_details else None
    if not address:
        return None
    line1 = getattr(address, "line1", None)
    city = getattr(address, "city", None)
    post_code = getattr(address, "postal_code", None)
    if not (line1 and city and post_code):
        return None
    return Address(
        name=getattr(billing_details, "name", None),
        line1=line1,
        line2=getattr(address, "line2", None),
        city=city,
        county=getattr(address, "state", None),
        post_code=post_code,
        country_code=getattr(address, "country", None) or "GB",
    )


def _to_billing_details(address: Address) -> dict[str, Any]:
    return {
        "name": address.name,
        "address": {
            "line1": address.line1,
            "line2": address.line2,
            "city": address.city,
            "state": address.county,
            "postal_code": address.post_code,
            "country": address.country_code,
        },
    }


def _as_str(value: Any) -> str | None:
    return None if value is None else str(value)
