"""Database model type definitions."""

from src.models.order import OrderCreate, OrderLineItem, OrderRow, OrderStatus, OrderUpdate

__all__ = [
    "OrderRow",
    "OrderCreate",
    "OrderUpdate",
    "OrderLineItem",
    "OrderStatus",
]
