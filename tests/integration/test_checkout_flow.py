"""End-to-end checkout flows through the Stripe gateway and Supabase order service."""

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import stripe

from src.schemas.basket import Basket
from src.services.checkout_service import CheckoutService
from src.services.checkout_state import CheckoutError, CheckoutLoaded, CheckoutSuccess, PaymentOutcome
from src.services.order_service import SupabaseOrderService
from src.services.payment_gateway import StripePaymentGateway


class FakeQuery:
    """Minimal stand-in for a PostgREST query builder over a list of rows."""

    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = rows
        self.op = "select"
        self.payload: dict[str, Any] = {}
        self.filters: list[tuple[str, Any]] = []
        self.single = False
        self.order_by: tuple[str, bool] | None = None
        self.bounds: tuple[int, int] | None = None

    def select(self, *_: str) -> "FakeQuery":
        self.op = "select"
        return self

    def insert(self, data: dict[str, Any]) -> "FakeQuery":
        self.op, self.payload = "insert", data
        return self

    def update(self, data: dict[str, Any]) -> "FakeQuery":
        self.op, self.payload = "update", data
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append((column, value))
        return self

    def maybe_single(self) -> "FakeQuery":
        self.single = True
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.order_by = (column, desc)
        return self

    def range(self, start: int, end: int) -> "FakeQuery":
        self.bounds = (start, end)
        return self

    def execute(self) -> SimpleNamespace | None:
        if self.op == "insert":
            now = datetime.now(timezone.utc).isoformat()
            row = {
                "id": f"order-{len(self.rows) + 1}",
                "payment_intent_id": None,
                "payment_transaction_status": None,
                "notes": None,
                "created_at": now,
                "updated_at": now,
                **self.payload,
            }
            self.rows.append(row)
            return SimpleNamespace(data=[dict(row)])

        matched = [row for row in self.rows if all(row.get(c) == v for c, v in self.filters)]
        if self.op == "update":
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=[dict(row) for row in matched])
        if self.single:
            return SimpleNamespace(data=dict(matched[0])) if matched else None
        if self.order_by:
            column, desc = self.order_by
            matched.sort(key=lambda row: row[column], reverse=desc)
        if self.bounds:
            matched = matched[self.bounds[0] : self.bounds[1] + 1]
        return SimpleNamespace(data=[dict(row) for row in matched])


class FakeSupabase:
    """Supabase client whose tables share one in-memory row list."""

    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] = []

    def table(self, _name: str) -> FakeQuery:
        return FakeQuery(self.rows)


def stripe_card(pm_id: str) -> SimpleNamespace:
    return SimpleNamespace(
        id=pm_id,
        type="card",
        card=SimpleNamespace(brand="visa", last4="4242", exp_month=12, exp_year=2030),
        billing_details=SimpleNamespace(
            name="Ada Lovelace",
            address=SimpleNamespace(
                line1="1 Pottery Lane", line2=None, city="London", state=None, postal_code="W11 4LZ", country="GB"
            ),
        ),
        created=1735689600,
    )


def intent(status: str, client_secret: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(id="pi_123", status=status, client_secret=client_secret, last_payment_error=None)


@pytest.fixture
def fake_supabase() -> FakeSupabase:
    """Create an in-memory Supabase client."""
    return FakeSupabase()


@pytest.fixture
def mock_stripe() -> MagicMock:
    """Create a mock Stripe module with two saved cards."""
    mock = MagicMock()
    mock.Customer.retrieve.return_value = SimpleNamespace(
        invoice_settings=SimpleNamespace(default_payment_method="pm_card_visa")
    )
    mock.PaymentMethod.list.return_value = SimpleNamespace(data=[stripe_card("pm_card_old"), stripe_card("pm_card_visa")])
    return mock


@pytest.fixture
def checkout_service(fake_supabase: FakeSupabase, mock_stripe: MagicMock, test_settings) -> CheckoutService:
    """Wire the engine to the real gateway and order service over fakes."""
    with patch("src.services.payment_gateway.get_stripe", return_value=mock_stripe), patch(
        "src.services.order_service.get_supabase_client", return_value=fake_supabase
    ):
        gateway = StripePaymentGateway("cus_123", settings=test_settings)
        order_service = SupabaseOrderService(gateway, user_id="user-1", settings=test_settings)
        return CheckoutService(gateway, order_service, settings=test_settings)


class TestCheckoutFlow:
    """Full checkout flows."""

    @pytest.mark.asyncio
    async def test_immediate_payment(
        self,
        checkout_service: CheckoutService,
        fake_supabase: FakeSupabase,
        mock_stripe: MagicMock,
        sample_basket: Basket,
    ) -> None:
        """Test a card charged without step-up authentication."""
        mock_stripe.PaymentIntent.create.return_value = intent("succeeded")

        await checkout_service.initialize_checkout(sample_basket)
        assert checkout_service.selected_payment_method.id == "pm_card_visa"

        outcome = await checkout_service.process_payment()

        assert outcome is PaymentOutcome.COMPLETED
        order = checkout_service.success_order
        assert order.is_completed is True
        assert order.charge_total == 4500
        assert order.payment_intent_id == "pi_123"
        assert [row["status"] for row in fake_supabase.rows] == ["success"]
        kwargs = mock_stripe.PaymentIntent.create.call_args.kwargs
        assert kwargs["payment_method"] == "pm_card_visa"
        assert kwargs["metadata"]["order_id"] == order.id

    @pytest.mark.asyncio
    async def test_three_d_secure_payment(
        self,
        checkout_service: CheckoutService,
        fake_supabase: FakeSupabase,
        mock_stripe: MagicMock,
        sample_basket: Basket,
    ) -> None:
        """Test step-up authentication followed by an order status refresh."""
        mock_stripe.PaymentIntent.create.return_value = intent("requires_action", "pi_123_secret_abc")
        mock_stripe.PaymentIntent.retrieve.return_value = intent("succeeded")

        await checkout_service.initialize_checkout(sample_basket)
        outcome = await checkout_service.process_payment()

        assert outcome is PaymentOutcome.REQUIRES_ACTION
        assert isinstance(checkout_service.state, CheckoutLoaded)
        assert checkout_service.session.client_secret == "pi_123_secret_abc"
        assert checkout_service.current_step == 3
        assert fake_supabase.rows[0]["status"] == "payment_pending"

        assert await checkout_service.complete_3ds_authentication("pi_123_secret_abc") is True
        order = await checkout_service.refresh_order_status()

        assert order.is_completed is True
        assert isinstance(checkout_service.state, CheckoutSuccess)
        assert fake_supabase.rows[0]["status"] == "success"

    @pytest.mark.asyncio
    async def test_decline_then_retry_with_new_attempt(
        self,
        checkout_service: CheckoutService,
        fake_supabase: FakeSupabase,
        mock_stripe: MagicMock,
        sample_basket: Basket,
    ) -> None:
        """Test that a declined attempt is recorded and a retry is a new order."""
        mock_stripe.PaymentIntent.create.side_effect = [
            stripe.CardError(
                "Your card was declined.",
                None,
                "card_declined",
                json_body={"error": {"code": "card_declined", "decline_code": "generic_decline"}},
            ),
            intent("succeeded"),
        ]

        await checkout_service.initialize_checkout(sample_basket)
        first = await checkout_service.process_payment()

        assert first is PaymentOutcome.FAILED
        state = checkout_service.state
        assert isinstance(state, CheckoutError)
        assert state.error_code == "card_declined"
        assert state.session.basket.items == sample_basket.items
        assert state.session.basket.charge_total == 4500
        assert state.message == "Your card was declined. Please try another card."

        checkout_service.acknowledge_error()
        second = await checkout_service.process_payment()

        assert second is PaymentOutcome.COMPLETED
        assert [row["status"] for row in fake_supabase.rows] == ["failed", "success"]
        keys = [c.kwargs["idempotency_key"] for c in mock_stripe.PaymentIntent.create.call_args_list]
        assert keys[0] != keys[1]

    @pytest.mark.asyncio
    async def test_network_failure_retry_reuses_order(
        self,
        checkout_service: CheckoutService,
        fake_supabase: FakeSupabase,
        mock_stripe: MagicMock,
        sample_basket: Basket,
    ) -> None:
        """Test that a retry after an unknown outcome cannot create a second order."""
        mock_stripe.PaymentIntent.create.side_effect = [
            stripe.APIConnectionError("Connection reset"),
            intent("succeeded"),
        ]

        await checkout_service.initialize_checkout(sample_basket)
        first = await checkout_service.process_payment()

        assert first is PaymentOutcome.FAILED
        assert checkout_service.error_code == "gateway_unavailable"
        assert fake_supabase.rows[0]["status"] == "pending"

        second = await checkout_service.process_payment()

        assert second is PaymentOutcome.COMPLETED
        assert len(fake_supabase.rows) == 1
        keys = [c.kwargs["idempotency_key"] for c in mock_stripe.PaymentIntent.create.call_args_list]
        assert keys[0] == keys[1]

    @pytest.mark.asyncio
    async def test_order_history(
        self,
        checkout_service: CheckoutService,
        mock_stripe: MagicMock,
        sample_basket: Basket,
    ) -> None:
        """Test that placed orders appear in the history."""
        mock_stripe.PaymentIntent.create.return_value = intent("succeeded")
        await checkout_service.initialize_checkout(sample_basket)
        await checkout_service.process_payment()

        history = await checkout_service.get_order_history()

        assert [order.id for order in history] == [checkout_service.success_order.id]
