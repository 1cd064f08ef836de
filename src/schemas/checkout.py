"""Checkout and order Pydantic schemas."""

from datetime import datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.core.money import format_minor_units
from src.schemas.basket import Basket

# Order status literal type for validation
OrderStatus = Literal["pending", "payment_pending", "success", "failed", "cancelled", "refunded"]

# Next action reported by the order service after placing an order
NextAction = Literal["none", "requires_action"]

# Authorization status reported by the payment gateway
AuthorizationStatus = Literal["succeeded", "requires_action", "processing"]

CHECKOUT_STEP_TITLES = {
    1: "Review Order",
    2: "Payment Details",
    3: "Confirmation",
}


class Address(BaseModel):
    """Billing address."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str | None = Field(default=None, description="Stored address ID")
    name: str | None = Field(default=None, description="Name on the address")
    line1: str = Field(min_length=1, description="First address line")
    line2: str | None = Field(default=None, description="Second address line")
    city: str = Field(min_length=1, description="Town or city")
    county: str | None = Field(default=None, description="County")
    post_code: str = Field(min_length=1, description="Post code")
    country: str | None = Field(default=None, description="Country name")
    country_code: str = Field(default="GB", min_length=2, max_length=2, description="ISO country code")

    @property
    def display_name(self) -> str:
        parts = []
        if self.name:
            parts.append(self.name)
        parts.append(self.line1)
        if self.line2:
            parts.append(self.line2)
        parts.extend([self.city, self.post_code])
        return ", ".join(parts)

    @property
    def short_display(self) -> str:
        return f"{self.line1}, {self.city} {self.post_code}"


class PaymentMethod(BaseModel):
    """Instrument registered with the payment gateway."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(description="Gateway payment method ID")
    type: str = Field(default="card", description="Instrument type")
    last4: str | None = Field(default=None, description="Last four card digits")
    brand: str | None = Field(default=None, description="Card brand")
    expiry_month: str | None = Field(default=None, description="Expiry month")
    expiry_year: str | None = Field(default=None, description="Expiry year")
    is_default: bool = Field(default=False, description="Gateway-flagged default instrument")
    billing_address: Address | None = Field(default=None, description="Billing address held by the gateway")
    created_at: datetime | None = Field(default=None, description="Registration timestamp")

    @property
    def display_label(self) -> str:
        """Label such as 'Visa •••• 4242'."""
        brand = (self.brand or self.type).title()
        if self.last4:
            return f"{brand} •••• {self.last4}"
        return brand


class OrderItem(BaseModel):
    """A single line of a placed order."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(description="Order line ID")
    item_id: str = Field(description="Course or session ID")
    item_type: str = Field(description="Line type, e.g. course or session")
    item_name: str = Field(description="Line display name")
    price: int = Field(ge=0, description="Unit price in minor units")
    total_price: int = Field(ge=0, description="Price after discounts in minor units")
    discount_value: int | None = Field(default=None, description="Line discount")
    promo_code_discount_value: int | None = Field(default=None, description="Promo code discount")
    session_id: str | None = Field(default=None, description="Booked session ID")


class Order(BaseModel):
    """Server-assigned order record. Immutable once created."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(description="Order ID")
    user_id: str | None = Field(default=None, description="Purchasing user")
    items: tuple[OrderItem, ...] = Field(default=(), description="Order lines")
    sub_total: int = Field(default=0, description="Sum of line prices")
    discount_total: int = Field(default=0, description="Discounts applied")
    promo_code_discount_value: int = Field(default=0, description="Promo code discounts applied")
    credit_total: int = Field(default=0, description="Credit applied")
    fee_total: int = Field(default=0, description="Fees charged")
    tax: int = Field(default=0, description="Tax charged")
    total: int = Field(default=0, description="Order total")
    charge_total: int = Field(default=0, description="Amount charged at checkout")
    pay_later: int = Field(default=0, description="Amount deferred")
    refunded_total: int = Field(default=0, description="Amount refunded so far")
    currency: str = Field(default="gbp", description="Currency code")
    status: OrderStatus = Field(default="pending", description="Order status")
    payment_method_id: str | None = Field(default=None, description="Payment method charged")
    payment_method_type: str = Field(default="card", description="Payment method type")
    payment_intent_id: str | None = Field(default=None, description="Gateway payment intent ID")
    payment_transaction_status: str | None = Field(default=None, description="Gateway transaction status")
    billing_address: Address | None = Field(default=None, description="Billing address used")
    notes: str | None = Field(default=None, description="Order notes")
    idempotency_key: str | None = Field(default=None, description="Key of the payment attempt")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")
    updated_at: datetime | None = Field(default=None, description="Last update timestamp")

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def is_completed(self) -> bool:
        return self.status == "success"

    @property
    def is_payment_pending(self) -> bool:
        return self.status == "payment_pending"

    @property
    def has_failed(self) -> bool:
        return self.status in ("failed", "cancelled")

    @property
    def is_refunded(self) -> bool:
        return self.status == "refunded"

    @property
    def refundable_amount(self) -> int:
        """Charged amount not yet refunded."""
        if self.status not in ("success", "refunded"):
            return 0
        return max(0, self.charge_total - self.refunded_total)

    @property
    def requires_additional_payment(self) -> bool:
        return self.pay_later > 0

    @property
    def status_display(self) -> str:
        return {
            "success": "Completed",
            "pending": "Processing",
            "payment_pending": "Payment Pending",
            "failed": "Failed",
            "cancelled": "Cancelled",
            "refunded": "Refunded",
        }.get(self.status, self.status)

    @property
    def formatted_total(self) -> str:
        return format_minor_units(self.total)

    @property
    def formatted_charge_total(self) -> str:
        return format_minor_units(self.charge_total)


class PlaceOrderResult(BaseModel):
    """Order service answer to a place order request.

    Either ``success`` with an ``order`` (possibly with a ``requires_action``
    next action and a ``client_secret``), or a structured failure.
    """

    model_config = ConfigDict(frozen=True)

    success: bool = Field(description="Whether the order was created")
    order: Order | None = Field(default=None, description="Created order")
    error: str | None = Field(default=None, description="Failure message")
    error_code: str | None = Field(default=None, description="Machine-readable failure code")
    client_secret: str | None = Field(default=None, description="Secret to resume step-up authentication")
    next_action: NextAction = Field(default="none", description="Action the client must take")
    payment_transaction_status: str | None = Field(default=None, description="Gateway transaction status")

    @property
    def requires_action(self) -> bool:
        return self.next_action == "requires_action" and self.client_secret is not None

    @classmethod
    def failed(cls, error: str, error_code: str | None = None) -> "PlaceOrderResult":
        return cls(success=False, error=error, error_code=error_code)


class PaymentAuthorization(BaseModel):
    """Gateway answer to an authorization or a challenge resolution."""

    model_config = ConfigDict(frozen=True)

    payment_intent_id: str = Field(description="Gateway payment intent ID")
    status: AuthorizationStatus = Field(description="Authorization status")
    client_secret: str | None = Field(default=None, description="Secret for step-up authentication")


class CheckoutSession(BaseModel):
    """In-progress state of one checkout attempt.

    Instances are replaced, never mutated: the state machine builds each new
    session with ``model_copy(update=...)``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()), description="Checkout attempt ID")
    basket: Basket = Field(description="Priced basket snapshot")
    available_payment_methods: tuple[PaymentMethod, ...] = Field(default=(), description="Registered instruments")
    selected_payment_method: PaymentMethod | None = Field(default=None, description="Instrument to charge")
    billing_address: Address | None = Field(default=None, description="Billing address entered at checkout")
    current_step: int = Field(default=1, ge=1, description="Current checkout step")
    is_processing: bool = Field(default=False, description="Payment awaiting step-up authentication")
    client_secret: str | None = Field(default=None, description="Pending step-up authentication secret")
    pending_order_id: str | None = Field(default=None, description="Order awaiting step-up authentication")
    authentication_completed: bool = Field(default=False, description="Step-up authentication resolved")
    idempotency_key: str = Field(default_factory=lambda: uuid4().hex, description="Key of the current payment attempt")

    @property
    def has_billing_address(self) -> bool:
        if self.billing_address is not None:
            return True
        method = self.selected_payment_method
        return method is not None and method.billing_address is not None

    @property
    def can_proceed_to_payment(self) -> bool:
        return (
            not self.basket.is_empty
            and self.selected_payment_method is not None
            and self.has_billing_address
        )

    @property
    def requires_payment(self) -> bool:
        return self.basket.charge_total > 0

    @property
    def step_title(self) -> str:
        return CHECKOUT_STEP_TITLES.get(self.current_step, "Checkout")

    @property
    def progress_percent(self) -> float:
        return round(self.current_step / len(CHECKOUT_STEP_TITLES) * 100, 1)
