"""Order placement and order history.

The order service is the only component that moves money: it records a pending
order, asks the payment gateway to charge it and stores the outcome.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError

from src.core.config import Settings, get_settings
from src.core.errors import (
    EmptyBasketError,
    GatewayUnavailableError,
    InvalidOrderOperation,
    InvalidPaymentMethodError,
    OrderServiceError,
    PaymentDeclinedError,
)
from src.core.supabase import get_supabase_client
from src.models.order import OrderCreate, OrderLineItem, OrderUpdate
from src.schemas.basket import Basket, BasketItem
from src.schemas.checkout import Address, Order, PaymentAuthorization, PlaceOrderResult
from src.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

# Orders not yet paid; an order awaiting step-up authentication can still be cancelled
CANCELLABLE_STATUSES = ("pending", "payment_pending")


class OrderService(ABC):
    """Backend that turns a priced basket into an order."""

    @abstractmethod
    async def place_order(
        self,
        basket: Basket,
        payment_method_id: str,
        idempotency_key: str,
        payment_method_type: str = "card",
        billing_address: Address | None = None,
        line_item_info: dict[str, Any] | None = None,
    ) -> PlaceOrderResult:
        """Create an order for ``basket`` and charge its chargeable total.

        Calls carrying an idempotency key already seen must return the order of
        that earlier call instead of creating a second one.

        Raises:
            GatewayUnavailableError: If the outcome could not be determined.
        """

    @abstractmethod
    async def get_order(self, order_id: str) -> Order | None:
        """Fetch one order, or None if it does not exist."""

    @abstractmethod
    async def list_order_history(self, limit: int | None = None, offset: int = 0) -> list[Order]:
        """List past orders, newest first."""

    @abstractmethod
    async def cancel_order(self, order_id: str) -> Order:
        """Cancel an order that has not been paid.

        Raises:
            InvalidOrderOperation: If the order is missing or already paid.
        """

    @abstractmethod
    async def process_refund(self, order_id: str, amount: int, reason: str | None = None) -> Order:
        """Refund part or all of a paid order. Intended for admin tooling.

        Raises:
            InvalidOrderOperation: If the order is not refundable or the amount
                exceeds what is left to refund.
        """


class SupabaseOrderService(OrderService):
    """Order service storing orders in a Supabase table."""

    def __init__(
        self,
        gateway: PaymentGateway,
        user_id: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize order service.

        Args:
            gateway: Payment gateway used to charge orders.
            user_id: Owner of the orders placed and listed.
            settings: Optional settings override.
        """
        self.client = get_supabase_client()
        self.gateway = gateway
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.table = self.settings.orders_table

    async def place_order(
        self,
        basket: Basket,
        payment_method_id: str,
        idempotency_key: str,
        payment_method_type: str = "card",
        billing_address: Address | None = None,
        line_item_info: dict[str, Any] | None = None,
    ) -> PlaceOrderResult:
        if basket.is_empty:
            raise EmptyBasketError()

        row = self._find_by_idempotency_key(idempotency_key)
        if row is None:
            row = self._insert_order(
                basket, payment_method_id, idempotency_key, payment_method_type, billing_address, line_item_info
            )
            logger.info("Created pending order %s for basket %s", row["id"], basket.id)
        else:
            logger.info("Order %s already exists for idempotency key %s", row["id"], idempotency_key)

        status = row["status"]
        if status == "success":
            return PlaceOrderResult(
                success=True,
                order=_to_order(row),
                payment_transaction_status=row.get("payment_transaction_status"),
            )
        if status in ("failed", "cancelled", "refunded"):
            return PlaceOrderResult.failed(
                row.get("notes") or "Payment failed. Please try again.",
                error_code=row.get("payment_transaction_status") or "order_failed",
            )
        if status == "payment_pending" and row.get("payment_intent_id"):
            try:
                authorization = await self.gateway.get_authorization(row["payment_intent_id"])
            except (PaymentDeclinedError, InvalidPaymentMethodError) as e:
                return self._record_failure(row["id"], e)
            return self._record_authorization(row["id"], authorization)

        if row["charge_total"] == 0:
            updated = self._update_order(
                row["id"], {"status": "success", "payment_transaction_status": "no_charge"}
            )
            logger.info("Order %s completed without a charge", row["id"])
            return PlaceOrderResult(success=True, order=_to_order(updated), payment_transaction_status="no_charge")

        try:
            authorization = await self.gateway.authorize(
                amount=row["charge_total"],
                currency=row["currency"],
                payment_method_id=payment_method_id,
                idempotency_key=idempotency_key,
                metadata={"order_id": str(row["id"]), "basket_id": basket.id},
            )
        except (PaymentDeclinedError, InvalidPaymentMethodError) as e:
            return self._record_failure(row["id"], e)
        except GatewayUnavailableError:
            logger.warning("Charge outcome unknown for order %s, leaving it pending", row["id"])
            raise

        return self._record_authorization(row["id"], authorization)

    async def get_order(self, order_id: str) -> Order | None:
        """Get an order by ID.

        A ``payment_pending`` order is reconciled with the gateway first, so a
        completed step-up authentication is reflected in the returned status.

        Args:
            order_id: The order's ID.

        Returns:
            Order | None: The order or None if not found.
        """
        query = self.client.table(self.table).select("*").eq("id", order_id)
        if self.user_id:
            query = query.eq("user_id", self.user_id)
        response = self._execute(query.maybe_single(), "get_order")
        row = response.data if response and response.data else None
        if row is None:
            return None

        if row["status"] == "payment_pending" and row.get("payment_intent_id"):
            row = await self._reconcile(row)
        return _to_order(row)

    async def list_order_history(self, limit: int | None = None, offset: int = 0) -> list[Order]:
        """Get a page of the user's orders.

        Args:
            limit: Page size, defaults to the configured history page size.
            offset: Number of orders to skip.

        Returns:
            list[Order]: Orders, newest first.
        """
        limit = limit or self.settings.order_history_page_size
        query = self.client.table(self.table).select("*")
        if self.user_id:
            query = query.eq("user_id", self.user_id)
        response = self._execute(
            query.order("created_at", desc=True).range(offset, offset + limit - 1),
            "list_order_history",
        )
        return [_to_order(row) for row in response.data or []]

    async def cancel_order(self, order_id: str) -> Order:
        """Cancel an order that has not been paid.

        An authorization still awaiting step-up authentication is cancelled at
        the gateway first. A ``pending`` order whose charge response was lost is
        looked up at the gateway, so a payment that did go through is recorded
        instead of being cancelled.

        Args:
            order_id: The order's ID.

        Returns:
            Order: The cancelled order.

        Raises:
            InvalidOrderOperation: If the order is missing or has been paid.
        """
        row = self._get_row(order_id)
        status = row["status"]
        if status == "cancelled":
            return _to_order(row)
        if status not in CANCELLABLE_STATUSES:
            raise InvalidOrderOperation(
                f"Order {order_id} is {status} and cannot be cancelled",
                code="order_not_cancellable",
                details={"order_id": order_id, "status": status},
            )

        try:
            authorization = await self._authorization_for(row)
        except (PaymentDeclinedError, InvalidPaymentMethodError) as e:
            logger.info("Order %s has no live authorization to cancel: %s", order_id, e.code)
            authorization = None

        if authorization is not None:
            if authorization.status == "succeeded":
                self._record_authorization(order_id, authorization)
                raise InvalidOrderOperation(
                    f"Order {order_id} has already been paid",
                    code="order_not_cancellable",
                    details={"order_id": order_id, "status": "success"},
                )
            await self.gateway.cancel_authorization(authorization.payment_intent_id)

        updated = self._update_order(
            order_id,
            {"status": "cancelled", "payment_transaction_status": "canceled", "notes": "Order cancelled"},
        )
        logger.info("Order %s cancelled", order_id)
        return _to_order(updated)

    async def process_refund(self, order_id: str, amount: int, reason: str | None = None) -> Order:
        """Refund part or all of a paid order.

        The gateway call carries an idempotency key derived from the order and
        the amount already refunded, so repeating a request cannot refund twice.

        Args:
            order_id: The order's ID.
            amount: Amount to refund in minor units.
            reason: Optional reason stored with the refund and the order.

        Returns:
            Order: The order with its refunded total updated.

        Raises:
            InvalidOrderOperation: If the order is not refundable or the amount
                exceeds what is left to refund.
        """
        order = _to_order(self._get_row(order_id))
        if order.payment_intent_id is None or order.status not in ("success", "refunded"):
            raise InvalidOrderOperation(
                f"Order {order_id} has no captured payment to refund",
                code="order_not_refundable",
                details={"order_id": order_id, "status": order.status},
            )
        if amount <= 0 or amount > order.refundable_amount:
            raise InvalidOrderOperation(
                f"Refund of {amount} is not between 1 and {order.refundable_amount}",
                code="invalid_refund_amount",
                details={"order_id": order_id, "refundable_amount": order.refundable_amount},
            )

        refund_id = await self.gateway.refund(
            payment_intent_id=order.payment_intent_id,
            amount=amount,
            idempotency_key=f"refund-{order_id}-{order.refunded_total}-{amount}",
            reason=reason,
        )

        refunded_total = order.refunded_total + amount
        fully_refunded = refunded_total >= order.charge_total
        update: OrderUpdate = {
            "refunded_total": refunded_total,
            "status": "refunded" if fully_refunded else "success",
            "payment_transaction_status": "refunded" if fully_refunded else "partially_refunded",
        }
        if reason:
            update["notes"] = reason
        updated = self._update_order(order_id, update)
        logger.info("Order %s refunded %d (%s), %d refunded in total", order_id, amount, refund_id, refunded_total)
        return _to_order(updated)

    async def _authorization_for(self, row: dict[str, Any]) -> PaymentAuthorization | None:
        if row.get("payment_intent_id"):
            return await self.gateway.get_authorization(row["payment_intent_id"])
        if row["charge_total"] > 0:
            return await self.gateway.find_authorization(str(row["id"]))
        return None

    async def _reconcile(self, row: dict[str, Any]) -> dict[str, Any]:
        try:
            authorization = await self.gateway.get_authorization(row["payment_intent_id"])
        except (PaymentDeclinedError, InvalidPaymentMethodError) as e:
            logger.info("Pending order %s was declined: %s", row["id"], e.code)
            return self._update_order(
                row["id"], {"status": "failed", "payment_transaction_status": e.code, "notes": e.message}
            )

        if authorization.status == "succeeded":
            logger.info("Pending order %s confirmed by the gateway", row["id"])
            return self._update_order(
                row["id"], {"status": "success", "payment_transaction_status": authorization.status}
            )
        return row

    def _record_authorization(self, order_id: str, authorization: PaymentAuthorization) -> PlaceOrderResult:
        if authorization.status == "succeeded":
            updated = self._update_order(
                order_id,
                {
                    "status": "success",
                    "payment_intent_id": authorization.payment_intent_id,
                    "payment_transaction_status": authorization.status,
                },
            )
            logger.info("Order %s paid", order_id)
            return PlaceOrderResult(
                success=True,
                order=_to_order(updated),
                payment_transaction_status=authorization.status,
            )

        updated = self._update_order(
            order_id,
            {
                "status": "payment_pending",
                "payment_intent_id": authorization.payment_intent_id,
                "payment_transaction_status": authorization.status,
            },
        )
        if authorization.status == "requires_action":
            logger.info("Order %s requires step-up authentication", order_id)
            return PlaceOrderResult(
                success=True,
                order=_to_order(updated),
                client_secret=authorization.client_secret,
                next_action="requires_action",
                payment_transaction_status=authorization.status,
            )

        logger.info("Order %s payment is processing", order_id)
        return PlaceOrderResult(
            success=True,
            order=_to_order(updated),
            payment_transaction_status=authorization.status,
        )

    def _record_failure(
        self, order_id: str, error: PaymentDeclinedError | InvalidPaymentMethodError
    ) -> PlaceOrderResult:
        self._update_order(
            order_id,
            {"status": "failed", "payment_transaction_status": error.code, "notes": error.message},
        )
        logger.info("Order %s payment failed: %s", order_id, error.code)
        return PlaceOrderResult.failed(error.message, error_code=error.code)

    def _get_row(self, order_id: str) -> dict[str, Any]:
        query = self.client.table(self.table).select("*").eq("id", order_id)
        if self.user_id:
            query = query.eq("user_id", self.user_id)
        response = self._execute(query.maybe_single(), "get_order")
        if not response or not response.data:
            raise InvalidOrderOperation(
                f"Order {order_id} not found", code="order_not_found", details={"order_id": order_id}
            )
        return response.data

    def _find_by_idempotency_key(self, idempotency_key: str) -> dict[str, Any] | None:
        response = self._execute(
            self.client.table(self.table)
            .select("*")
            .eq("idempotency_key", idempotency_key)
            .maybe_single(),
            "find_by_idempotency_key",
        )
        return response.data if response and response.data else None

    def _insert_order(
        self,
        basket: Basket,
        payment_method_id: str,
        idempotency_key: str,
        payment_method_type: str,
        billing_address: Address | None,
        line_item_info: dict[str, Any] | None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {"basket_id": basket.id}
        if line_item_info:
            metadata["line_item_info"] = line_item_info

        order_data: OrderCreate = {
            "user_id": self.user_id or basket.user_id,
            "idempotency_key": idempotency_key,
            "items": [_to_line_item(item) for item in basket.items],
            "sub_total": basket.sub_total,
            "discount_total": basket.discount_total,
            "promo_code_discount_value": basket.promo_code_discount_value,
            "credit_total": basket.credit_total,
            "fee_total": basket.fee_total,
            "tax": basket.tax,
            "total": basket.total,
            "charge_total": basket.charge_total,
            "pay_later": basket.pay_later,
            "refunded_total": 0,
            "currency": self.settings.currency,
            "status": "pending",
            "payment_method_id": payment_method_id,
            "payment_method_type": payment_method_type,
            "billing_address": billing_address.model_dump() if billing_address else None,
            "metadata": metadata,
        }
        response = self._execute(self.client.table(self.table).insert(order_data), "insert_order")
        if not response.data:
            raise OrderServiceError("We could not create your order. Please try again.")
        return response.data[0]

    def _update_order(self, order_id: str, update_data: OrderUpdate) -> dict[str, Any]:
        update_data["updated_at"] = datetime.now(timezone.utc).isoformat()
        response = self._execute(
            self.client.table(self.table).update(update_data).eq("id", order_id),
            "update_order",
        )
        if not response.data:
            raise OrderServiceError(f"Order {order_id} not found", details={"order_id": order_id})
        return response.data[0]

    def _execute(self, query: Any, operation: str) -> Any:
        """Run a query, translating storage failures into checkout errors."""
        try:
            return query.execute()
        except httpx.HTTPError as e:
            logger.warning("Order storage %s failed: %s", operation, e)
            raise GatewayUnavailableError(
                "The order service is temporarily unavailable. Please try again.",
                details={"operation": operation},
            ) from e
        except PostgrestAPIError as e:
            logger.error("Order storage %s rejected: %s", operation, e.message)
            raise OrderServiceError(
                "We could not save your order. Please try again.",
                details={"operation": operation, "code": e.code},
            ) from e


def _to_line_item(item: BasketItem) -> OrderLineItem:
    return {
        "id": item.id,
        "item_id": item.session_id or item.course.id,
        "item_type": "taster" if item.is_taster else (item.course.type or "course"),
        "item_name": item.course.name,
        "price": item.price,
        "total_price": item.total_price,
        "discount_value": item.discount_value,
        "promo_code_discount_value": item.promo_code_discount_value,
        "session_id": item.session_id,
    }


def _to_order(row: dict[str, Any]) -> Order:
    return Order.model_validate(row)
