"""Order model type definitions for database operations."""

from datetime import datetime
from typing import Literal, TypedDict

# Order status enum values matching database enum
OrderStatus = Literal["pending", "payment_pending", "success", "failed", "cancelled", "refunded"]


class OrderLineItem(TypedDict):
    """Structure for a single line item in an order.

    Stored as part of the items JSONB array.
    """

    id: str
    item_id: str
    item_type: str
    item_name: str
    price: int
    total_price: int
    discount_value: int | None
    promo_code_discount_value: int | None
    session_id: str | None


class OrderRow(TypedDict):
    """Order table row representation.

    Maps directly to the database schema.
    """

    id: str
    user_id: str | None
    idempotency_key: str
    items: list[OrderLineItem]
    sub_total: int
    discount_total: int
    promo_code_discount_value: int
    credit_total: int
    fee_total: int
    tax: int
    total: int
    charge_total: int
    pay_later: int
    refunded_total: int
    currency: str
    status: OrderStatus
    payment_method_id: str | None
    payment_method_type: str
    payment_intent_id: str | None
    payment_transaction_status: str | None
    billing_address: dict | None
    notes: str | None
    metadata: dict
    created_at: datetime
    updated_at: datetime


class OrderCreate(TypedDict, total=False):
    """Data required to create a new order.

    Used when inserting a pending order before the charge is authorized.
    """

    user_id: str | None
    idempotency_key: str
    items: list[OrderLineItem]
    sub_total: int
    discount_total: int
    promo_code_discount_value: int
    credit_total: int
    fee_total: int
    tax: int
    total: int
    charge_total: int
    pay_later: int
    refunded_total: int
    currency: str
    status: OrderStatus
    payment_method_id: str | None
    payment_method_type: str
    billing_address: dict | None
    metadata: dict


class OrderUpdate(TypedDict, total=False):
    """Data that can be updated on an order.

    Used when recording the outcome of a payment authorization, a
    cancellation or a refund.
    """

    status: OrderStatus
    payment_intent_id: str
    payment_transaction_status: str
    refunded_total: int
    notes: str
    updated_at: str
