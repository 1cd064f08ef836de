"""Checkout state machine.

Drives one checkout attempt from a basket snapshot to a placed order. The
service holds a single current state, replaces it on every transition and
notifies subscribed listeners in order.
"""

import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from src.core.config import Settings, get_settings
from src.core.errors import (
    AuthenticationFailedError,
    CheckoutErrorCode,
    CheckoutException,
    EmptyBasketError,
    GatewayUnavailableError,
    InvalidBasketError,
    InvalidPaymentMethodError,
    InvalidSessionOperation,
    OrderServiceError,
    PaymentDeclinedError,
)
from src.schemas.basket import Basket
from src.schemas.checkout import Address, CheckoutSession, Order, PaymentMethod, PlaceOrderResult
from src.services.checkout_state import (
    CheckoutError,
    CheckoutInitial,
    CheckoutLoaded,
    CheckoutLoading,
    CheckoutProcessing,
    CheckoutState,
    CheckoutSuccess,
    PaymentOutcome,
    session_of,
)
from src.services.order_service import OrderService, SupabaseOrderService
from src.services.payment_gateway import PaymentGateway, StripePaymentGateway
from src.services.pricing import price_basket, validate_basket

logger = logging.getLogger(__name__)

StateListener = Callable[[CheckoutState], None]

UNEXPECTED_ERROR_MESSAGE = "Something went wrong. Please try again."

# Failures after which the gateway has definitely not charged the attempt
DEFINITIVE_PAYMENT_ERRORS = (
    EmptyBasketError,
    InvalidBasketError,
    PaymentDeclinedError,
    InvalidPaymentMethodError,
    AuthenticationFailedError,
)


class CheckoutService:
    """State machine for a single checkout flow.

    Every collaborator call is awaited. Each in-flight call remembers the
    generation it started in; ``reset()`` starts a new generation, so results
    that arrive afterwards are dropped instead of resurrecting the session.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        order_service: OrderService,
        settings: Settings | None = None,
    ) -> None:
        """Initialize checkout service with its collaborators.

        Args:
            gateway: Payment gateway for payment methods and step-up authentication.
            order_service: Backend that places and stores orders.
            settings: Optional settings override.
        """
        self.gateway = gateway
        self.order_service = order_service
        self.settings = settings or get_settings()
        self._state: CheckoutState = CheckoutInitial()
        self._listeners: list[StateListener] = []
        self._generation = 0

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> CheckoutState:
        return self._state

    @property
    def session(self) -> CheckoutSession | None:
        return session_of(self._state)

    @property
    def is_loading(self) -> bool:
        return isinstance(self._state, (CheckoutLoading, CheckoutProcessing))

    @property
    def error_message(self) -> str | None:
        return self._state.message if isinstance(self._state, CheckoutError) else None

    @property
    def error_code(self) -> str | None:
        return self._state.error_code if isinstance(self._state, CheckoutError) else None

    @property
    def success_order(self) -> Order | None:
        return self._state.order if isinstance(self._state, CheckoutSuccess) else None

    @property
    def available_payment_methods(self) -> list[PaymentMethod]:
        session = self.session
        return list(session.available_payment_methods) if session else []

    @property
    def selected_payment_method(self) -> PaymentMethod | None:
        session = self.session
        return session.selected_payment_method if session else None

    @property
    def current_step(self) -> int:
        session = self.session
        return session.current_step if session else 1

    @property
    def can_proceed_to_payment(self) -> bool:
        session = self.session
        return session is not None and session.can_proceed_to_payment

    @property
    def requires_payment(self) -> bool:
        session = self.session
        return session is not None and session.requires_payment

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called with every new state.

        Returns:
            Callable: Function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def initialize_checkout(self, basket: Basket) -> None:
        """Start a checkout for ``basket``.

        Empty and inconsistent baskets end in a non-retryable error. Otherwise
        the customer's payment methods are fetched and a new session is loaded
        with the gateway's default method selected.
        """
        generation = self._next_generation()

        if basket.is_empty:
            logger.info("Checkout rejected for empty basket %s", basket.id)
            self._fail(EmptyBasketError())
            return
        try:
            validate_basket(basket)
        except InvalidBasketError as e:
            logger.warning("Checkout rejected for basket %s: %s", basket.id, e)
            self._fail(e)
            return

        priced = price_basket(basket, self.settings.tax_rate_basis_points)
        self._set_state(CheckoutLoading())

        try:
            methods = await self.gateway.list_payment_methods()
        except CheckoutException as e:
            if self._is_stale(generation, "initialize_checkout"):
                return
            logger.warning("Failed to load payment methods: %s", e)
            self._fail(e)
            return
        except Exception:
            if self._is_stale(generation, "initialize_checkout"):
                return
            logger.exception("Unexpected error loading payment methods")
            self._fail_unexpected()
            return

        if self._is_stale(generation, "initialize_checkout"):
            return

        session = CheckoutSession(
            basket=priced,
            available_payment_methods=tuple(methods),
            selected_payment_method=_default_payment_method(methods),
        )
        logger.info("Checkout %s started for basket %s", session.id, basket.id)
        self._set_state(CheckoutLoaded(session))

    def next_step(self) -> int:
        """Advance one step, stopping at the last step."""
        session = self._require_loaded("change step")
        return self._move_to_step(session, session.current_step + 1)

    def previous_step(self) -> int:
        """Go back one step, stopping at the first step."""
        session = self._require_loaded("change step")
        return self._move_to_step(session, session.current_step - 1)

    def select_payment_method(self, method: PaymentMethod) -> None:
        session = self._require_loaded("select a payment method")
        self._set_state(CheckoutLoaded(session.model_copy(update={"selected_payment_method": method})))

    def update_billing_address(self, address: Address) -> None:
        session = self._require_loaded("update the billing address")
        self._set_state(CheckoutLoaded(session.model_copy(update={"billing_address": address})))

    async def add_payment_method(
        self,
        gateway_token: str,
        billing_address: Address,
        set_as_default: bool = False,
    ) -> bool:
        """Register a tokenized instrument and add it to the session.

        The new method is selected when it becomes the default or when nothing
        was selected yet. On failure the session is kept in the error state.

        Args:
            gateway_token: Token produced by the gateway's client SDK.
            billing_address: Billing address of the instrument.
            set_as_default: Whether the new method becomes the default.

        Returns:
            bool: True if the method was registered.
        """
        session = self._require_loaded("add a payment method")
        generation = self._generation
        self._set_state(CheckoutProcessing("Adding payment method...", session))

        try:
            method = await self.gateway.create_payment_method(gateway_token, billing_address, set_as_default)
        except CheckoutException as e:
            if self._is_stale(generation, "add_payment_method"):
                return False
            logger.warning("Failed to add payment method: %s", e)
            self._fail(e, session=session)
            return False
        except Exception:
            if self._is_stale(generation, "add_payment_method"):
                return False
            logger.exception("Unexpected error adding payment method")
            self._fail_unexpected(session=session)
            return False

        if self._is_stale(generation, "add_payment_method"):
            return True

        methods = list(session.available_payment_methods)
        if set_as_default:
            methods = [m.model_copy(update={"is_default": False}) if m.is_default else m for m in methods]
        methods.append(method)

        update: dict[str, Any] = {
            "available_payment_methods": tuple(methods),
            "billing_address": billing_address,
        }
        if set_as_default or session.selected_payment_method is None:
            update["selected_payment_method"] = method
        self._set_state(CheckoutLoaded(session.model_copy(update=update)))
        return True

    async def delete_payment_method(self, payment_method_id: str) -> bool:
        """Remove a saved instrument from the customer and the session.

        Deleting the selected method selects the default of the remaining
        methods, or the first of them.

        Args:
            payment_method_id: ID of a method listed in the session.

        Returns:
            bool: True if the method was removed.

        Raises:
            InvalidSessionOperation: If no session is loaded or the method is not listed.
        """
        session = self._require_loaded("delete a payment method")
        self._require_listed(session, payment_method_id)
        generation = self._generation
        self._set_state(CheckoutProcessing("Removing payment method...", session))

        if not await self._call_gateway(
            "delete_payment_method", generation, session, self.gateway.delete_payment_method, payment_method_id
        ):
            return False
        if self._is_stale(generation, "delete_payment_method"):
            return True

        methods = [m for m in session.available_payment_methods if m.id != payment_method_id]
        selected = session.selected_payment_method
        if selected is None or selected.id == payment_method_id:
            selected = _default_payment_method(methods)
        self._set_state(
            CheckoutLoaded(
                session.model_copy(
                    update={"available_payment_methods": tuple(methods), "selected_payment_method": selected}
                )
            )
        )
        return True

    async def set_default_payment_method(self, payment_method_id: str) -> bool:
        """Make a saved instrument the customer's default and select it.

        Args:
            payment_method_id: ID of a method listed in the session.

        Returns:
            bool: True if the default was changed.

        Raises:
            InvalidSessionOperation: If no session is loaded or the method is not listed.
        """
        session = self._require_loaded("change the default payment method")
        self._require_listed(session, payment_method_id)
        generation = self._generation
        self._set_state(CheckoutProcessing("Updating payment method...", session))

        if not await self._call_gateway(
            "set_default_payment_method",
            generation,
            session,
            self.gateway.set_default_payment_method,
            payment_method_id,
        ):
            return False
        if self._is_stale(generation, "set_default_payment_method"):
            return True

        methods = tuple(
            m.model_copy(update={"is_default": m.id == payment_method_id}) for m in session.available_payment_methods
        )
        selected = next(m for m in methods if m.id == payment_method_id)
        self._set_state(
            CheckoutLoaded(
                session.model_copy(update={"available_payment_methods": methods, "selected_payment_method": selected})
            )
        )
        return True

    async def process_payment(
        self,
        payment_method_type: str = "card",
        line_item_info: dict[str, Any] | None = None,
    ) -> PaymentOutcome:
        """Place the order for the session's basket and charge it.

        Allowed from ``Loaded``, or from a retryable error that kept its
        session. The state becomes ``Processing`` before the first await, so a
        second call made while the first is in flight is rejected.

        Args:
            payment_method_type: Type of the selected instrument.
            line_item_info: Extra data stored with the order.

        Returns:
            PaymentOutcome: What the caller has to do next.

        Raises:
            InvalidSessionOperation: If no payable session is loaded.
        """
        session = self._payable_session()
        if session.is_processing:
            raise InvalidSessionOperation("A payment for this checkout is already awaiting confirmation")
        if not session.can_proceed_to_payment:
            raise InvalidSessionOperation(
                "A payment method, a billing address and a non-empty basket are required to pay"
            )

        generation = self._generation
        self._set_state(CheckoutProcessing("Processing payment...", session))
        method = session.selected_payment_method
        billing_address = session.billing_address or method.billing_address

        try:
            result = await self.order_service.place_order(
                basket=session.basket,
                payment_method_id=method.id,
                idempotency_key=session.idempotency_key,
                payment_method_type=payment_method_type,
                billing_address=billing_address,
                line_item_info=line_item_info,
            )
        except CheckoutException as e:
            if self._is_stale(generation, "process_payment"):
                return PaymentOutcome.FAILED
            logger.warning("Payment for checkout %s failed: %s", session.id, e)
            retry_session = session
            if isinstance(e, DEFINITIVE_PAYMENT_ERRORS):
                retry_session = _rotate_idempotency_key(session)
            self._fail(e, session=retry_session)
            return PaymentOutcome.FAILED
        except Exception:
            if self._is_stale(generation, "process_payment"):
                return PaymentOutcome.FAILED
            logger.exception("Unexpected error processing payment for checkout %s", session.id)
            self._fail_unexpected(session=session)
            return PaymentOutcome.FAILED

        if self._is_stale(generation, "process_payment"):
            return _outcome_of(result)
        return self._apply_place_order_result(session, result)

    async def complete_3ds_authentication(self, client_secret: str) -> bool:
        """Resolve a pending step-up authentication challenge.

        Success does not finalize the order: the caller re-queries it with
        ``refresh_order_status``. A failed challenge sends the user back to the
        payment step with a fresh payment attempt.

        Returns:
            bool: True if the challenge was passed.

        Raises:
            InvalidSessionOperation: If no challenge with this secret is pending.
        """
        session = self._require_loaded("complete authentication")
        if session.client_secret is None or session.client_secret != client_secret:
            raise InvalidSessionOperation("No matching authentication is pending for this checkout")

        generation = self._generation
        self._set_state(CheckoutProcessing("Verifying your payment...", session))

        try:
            await self.gateway.resolve_challenge(client_secret)
        except GatewayUnavailableError as e:
            if self._is_stale(generation, "complete_3ds_authentication"):
                return False
            logger.warning("Could not reach the gateway to verify authentication: %s", e)
            self._fail(e, session=session)
            return False
        except CheckoutException as e:
            if self._is_stale(generation, "complete_3ds_authentication"):
                return False
            logger.warning("Authentication failed for checkout %s: %s", session.id, e)
            self._set_state(
                CheckoutError(
                    message=e.message,
                    error_code=CheckoutErrorCode.AUTHENTICATION_FAILED.value,
                    retryable=True,
                    session=_back_to_payment_step(session),
                )
            )
            return False
        except Exception:
            if self._is_stale(generation, "complete_3ds_authentication"):
                return False
            logger.exception("Unexpected error verifying authentication for checkout %s", session.id)
            self._fail_unexpected(session=session)
            return False

        if self._is_stale(generation, "complete_3ds_authentication"):
            return True

        logger.info("Authentication completed for checkout %s", session.id)
        self._set_state(
            CheckoutLoaded(session.model_copy(update={"client_secret": None, "authentication_completed": True}))
        )
        return True

    async def refresh_order_status(self) -> Order | None:
        """Re-query the order awaiting confirmation.

        A paid order ends the checkout, a failed one returns the user to the
        payment step, and a still pending one leaves the session loaded.

        Returns:
            Order | None: The fetched order, or None if it could not be fetched.

        Raises:
            InvalidSessionOperation: If no order is awaiting confirmation.
        """
        session = self._require_loaded("refresh the order status")
        if session.pending_order_id is None:
            raise InvalidSessionOperation("No order is awaiting confirmation")

        generation = self._generation
        self._set_state(CheckoutProcessing("Checking payment status...", session))

        try:
            order = await self.order_service.get_order(session.pending_order_id)
        except CheckoutException as e:
            if self._is_stale(generation, "refresh_order_status"):
                return None
            logger.warning("Failed to refresh order %s: %s", session.pending_order_id, e)
            self._fail(e, session=session)
            return None
        except Exception:
            if self._is_stale(generation, "refresh_order_status"):
                return None
            logger.exception("Unexpected error refreshing order %s", session.pending_order_id)
            self._fail_unexpected(session=session)
            return None

        if self._is_stale(generation, "refresh_order_status"):
            return order

        if order is None:
            self._fail(OrderServiceError("We could not find your order. Please try again."), session=session)
        elif order.is_completed:
            logger.info("Order %s confirmed", order.id)
            self._set_state(CheckoutSuccess(order))
        elif order.has_failed:
            logger.info("Order %s failed after authentication", order.id)
            self._set_state(
                CheckoutError(
                    message=order.notes or "Payment failed. Please try again.",
                    error_code=order.payment_transaction_status or CheckoutErrorCode.PAYMENT_DECLINED.value,
                    retryable=True,
                    session=_back_to_payment_step(session),
                )
            )
        else:
            self._set_state(CheckoutLoaded(session))
        return order

    async def refresh_payment_methods(self) -> None:
        """Re-fetch payment methods into the current session.

        Best effort: failures are logged and the state is left untouched.
        """
        if not isinstance(self._state, CheckoutLoaded):
            logger.debug("Skipping payment method refresh in state %s", type(self._state).__name__)
            return
        generation = self._generation

        try:
            methods = await self.gateway.list_payment_methods()
        except CheckoutException as e:
            logger.warning("Failed to refresh payment methods: %s", e)
            return
        except Exception:
            logger.exception("Unexpected error refreshing payment methods")
            return

        if self._is_stale(generation, "refresh_payment_methods"):
            return
        current = self._state
        if not isinstance(current, CheckoutLoaded):
            return

        session = current.session
        selected = session.selected_payment_method
        if selected is not None:
            selected = next((m for m in methods if m.id == selected.id), None)
        if selected is None:
            selected = _default_payment_method(methods)
        self._set_state(
            CheckoutLoaded(
                session.model_copy(
                    update={"available_payment_methods": tuple(methods), "selected_payment_method": selected}
                )
            )
        )

    def reset(self) -> None:
        """Discard the session and ignore every call still in flight."""
        self._next_generation()
        self._set_state(CheckoutInitial())

    def acknowledge_error(self) -> None:
        """Leave the error state.

        Returns to the preserved session when there is one, otherwise to
        ``Initial``.
        """
        match self._state:
            case CheckoutError(session=None):
                self.reset()
            case CheckoutError(session=session):
                self._set_state(CheckoutLoaded(session))
            case _:
                raise InvalidSessionOperation(
                    f"No error to acknowledge in state {type(self._state).__name__}"
                )

    async def get_order(self, order_id: str) -> Order | None:
        return await self.order_service.get_order(order_id)

    async def get_order_history(self, limit: int | None = None, offset: int = 0) -> list[Order]:
        return await self.order_service.list_order_history(
            limit=limit or self.settings.order_history_page_size,
            offset=offset,
        )

    async def cancel_order(self, order_id: str) -> Order:
        """Cancel an unpaid order.

        Usable in any state. When the order is the one the loaded session is
        waiting on, the session returns to the payment step with a fresh
        idempotency key.

        Raises:
            InvalidOrderOperation: If the order is missing or already paid.
        """
        generation = self._generation
        order = await self.order_service.cancel_order(order_id)

        if self._is_stale(generation, "cancel_order"):
            return order
        current = self._state
        if isinstance(current, CheckoutLoaded) and current.session.pending_order_id == order_id:
            logger.info("Order %s awaiting confirmation was cancelled", order_id)
            self._set_state(CheckoutLoaded(_back_to_payment_step(current.session)))
        return order

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_state(self, state: CheckoutState) -> None:
        logger.debug("Checkout state %s -> %s", type(self._state).__name__, type(state).__name__)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Checkout state listener failed on %s", type(state).__name__)

    def _fail(self, error: CheckoutException, session: CheckoutSession | None = None) -> None:
        self._set_state(
            CheckoutError(
                message=error.message,
                error_code=error.code,
                retryable=error.retryable,
                session=session,
            )
        )

    def _fail_unexpected(self, session: CheckoutSession | None = None) -> None:
        self._set_state(
            CheckoutError(
                message=UNEXPECTED_ERROR_MESSAGE,
                error_code=CheckoutErrorCode.UNEXPECTED_ERROR.value,
                retryable=True,
                session=session,
            )
        )

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _is_stale(self, generation: int, operation: str) -> bool:
        if generation != self._generation:
            logger.debug("Discarding %s result from a reset checkout", operation)
            return True
        return False

    def _require_loaded(self, action: str) -> CheckoutSession:
        match self._state:
            case CheckoutLoaded(session=session):
                return session
            case _:
                raise InvalidSessionOperation(f"Cannot {action} in state {type(self._state).__name__}")

    def _require_listed(self, session: CheckoutSession, payment_method_id: str) -> None:
        if not any(m.id == payment_method_id for m in session.available_payment_methods):
            raise InvalidSessionOperation(f"Payment method {payment_method_id} is not available in this checkout")

    async def _call_gateway(
        self,
        operation: str,
        generation: int,
        session: CheckoutSession,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> bool:
        """Await a payment method call, moving to the error state on failure."""
        try:
            await func(*args)
        except CheckoutException as e:
            if not self._is_stale(generation, operation):
                logger.warning("%s failed: %s", operation, e)
                self._fail(e, session=session)
            return False
        except Exception:
            if not self._is_stale(generation, operation):
                logger.exception("Unexpected error in %s", operation)
                self._fail_unexpected(session=session)
            return False
        return True

    def _payable_session(self) -> CheckoutSession:
        match self._state:
            case CheckoutLoaded(session=session):
                return session
            case CheckoutError(retryable=True, session=session) if session is not None:
                return session
            case _:
                raise InvalidSessionOperation(f"Cannot process payment in state {type(self._state).__name__}")

    def _move_to_step(self, session: CheckoutSession, step: int) -> int:
        step = max(1, min(step, self.settings.checkout_max_step))
        if step != session.current_step:
            self._set_state(CheckoutLoaded(session.model_copy(update={"current_step": step})))
        return step

    def _apply_place_order_result(self, session: CheckoutSession, result: PlaceOrderResult) -> PaymentOutcome:
        outcome = _outcome_of(result)

        if outcome is PaymentOutcome.FAILED:
            message = result.error or "We could not place your order. Please try again."
            logger.info("Payment for checkout %s failed: %s", session.id, result.error_code)
            self._set_state(
                CheckoutError(
                    message=message,
                    error_code=result.error_code or CheckoutErrorCode.ORDER_FAILED.value,
                    retryable=True,
                    session=_rotate_idempotency_key(session),
                )
            )
        elif outcome is PaymentOutcome.COMPLETED:
            logger.info("Checkout %s completed with order %s", session.id, result.order.id)
            self._set_state(CheckoutSuccess(result.order))
        else:
            logger.info("Order %s awaiting confirmation (%s)", result.order.id, outcome.value)
            self._set_state(
                CheckoutLoaded(
                    session.model_copy(
                        update={
                            "client_secret": result.client_secret if result.requires_action else None,
                            "pending_order_id": result.order.id,
                            "current_step": self.settings.checkout_max_step,
                            "is_processing": True,
                            "authentication_completed": False,
                        }
                    )
                )
            )
        return outcome


def build_checkout_service(customer_id: str, user_id: str | None = None) -> CheckoutService:
    """Wire a checkout service to Stripe and Supabase.

    Args:
        customer_id: Stripe customer paying for the basket.
        user_id: Owner of the orders created.

    Returns:
        CheckoutService: A service in the ``Initial`` state.
    """
    gateway = StripePaymentGateway(customer_id)
    return CheckoutService(gateway, SupabaseOrderService(gateway, user_id))


def _default_payment_method(methods: list[PaymentMethod]) -> PaymentMethod | None:
    return next((m for m in methods if m.is_default), methods[0] if methods else None)


def _rotate_idempotency_key(session: CheckoutSession) -> CheckoutSession:
    return session.model_copy(update={"idempotency_key": uuid4().hex})


def _back_to_payment_step(session: CheckoutSession) -> CheckoutSession:
    return session.model_copy(
        update={
            "current_step": 2,
            "client_secret": None,
            "pending_order_id": None,
            "is_processing": False,
            "authentication_completed": False,
            "idempotency_key": uuid4().hex,
        }
    )


def _outcome_of(result: PlaceOrderResult) -> PaymentOutcome:
    if not result.success or result.order is None:
        return PaymentOutcome.FAILED
    if result.requires_action:
        return PaymentOutcome.REQUIRES_ACTION
    if result.order.is_completed:
        return PaymentOutcome.COMPLETED
    if result.order.has_failed:
        return PaymentOutcome.FAILED
    return PaymentOutcome.PENDING
