"""Unit tests for runtime setup, Stripe configuration and the error taxonomy."""

import logging
from unittest.mock import MagicMock, patch

import pytest
import stripe

from src.core.errors import (
    CheckoutException,
    EmptyBasketError,
    GatewayUnavailableError,
    InvalidSessionOperation,
    PaymentDeclinedError,
)
from src.core.runtime import LOG_FORMAT, configure_logging, init_checkout_runtime
from src.core.stripe import _read_with_retry, configure_stripe, timed_call


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_debug_mode_logs_debug(self) -> None:
        """Test that debug settings enable DEBUG logging."""
        settings = MagicMock(debug=True, log_level="INFO")
        with patch("src.core.runtime.get_settings", return_value=settings), patch(
            "src.core.runtime.logging.basicConfig"
        ) as basic_config:
            configure_logging()

        basic_config.assert_called_once_with(level=logging.DEBUG, format=LOG_FORMAT)

    def test_level_from_settings(self) -> None:
        """Test that the configured level name is used."""
        settings = MagicMock(debug=False, log_level="warning")
        with patch("src.core.runtime.get_settings", return_value=settings), patch(
            "src.core.runtime.logging.basicConfig"
        ) as basic_config:
            configure_logging()

        basic_config.assert_called_once_with(level=logging.WARNING, format=LOG_FORMAT)

    def test_init_configures_stripe(self) -> None:
        """Test that runtime initialization configures the Stripe SDK."""
        with patch("src.core.runtime.configure_logging") as logging_setup, patch(
            "src.core.runtime.configure_stripe"
        ) as stripe_setup:
            init_checkout_runtime()

        logging_setup.assert_called_once()
        stripe_setup.assert_called_once()


class TestStripeSetup:
    """Tests for Stripe configuration and call timing."""

    def test_configure_stripe_sets_key_and_retries(self) -> None:
        """Test module-level Stripe configuration."""
        settings = MagicMock(stripe_secret_key="sk_test_123", stripe_max_network_retries=4)
        with patch("src.core.stripe.get_settings", return_value=settings), patch(
            "src.core.stripe.stripe"
        ) as mock_stripe:
            configure_stripe()

        assert mock_stripe.api_key == "sk_test_123"
        assert mock_stripe.max_network_retries == 4

    def test_read_calls_are_retried(self) -> None:
        """Test that read-only calls retry transient failures."""
        func = MagicMock(side_effect=[stripe.APIConnectionError("reset"), "ok"])

        with patch.object(_read_with_retry.retry, "sleep"):
            assert timed_call("PaymentIntent.retrieve", func, "pi_1", read_only=True) == "ok"

        assert func.call_count == 2

    def test_write_calls_are_not_retried(self) -> None:
        """Test that calls moving money run once."""
        func = MagicMock(side_effect=stripe.APIConnectionError("reset"))

        with pytest.raises(stripe.APIConnectionError):
            timed_call("PaymentIntent.create", func, amount=100)

        assert func.call_count == 1

    def test_slow_calls_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test the slow call warning."""
        with patch("src.core.stripe.SLOW_CALL_THRESHOLD_MS", -1), caplog.at_level(
            logging.WARNING, logger="src.core.stripe"
        ):
            timed_call("Customer.retrieve", MagicMock(return_value="ok"))

        assert "SLOW Stripe call: Customer.retrieve" in caplog.text


class TestErrors:
    """Tests for the checkout error taxonomy."""

    def test_default_codes_and_retryability(self) -> None:
        """Test class defaults."""
        assert EmptyBasketError().code == "empty_basket"
        assert EmptyBasketError().retryable is False
        assert GatewayUnavailableError().retryable is True
        assert InvalidSessionOperation("bad").retryable is False
        assert CheckoutException("oops").code == "unexpected_error"

    def test_explicit_code_and_str(self) -> None:
        """Test that gateway codes override the class code."""
        error = PaymentDeclinedError("Declined", code="card_declined", details={"decline_code": "do_not_honor"})

        assert error.code == "card_declined"
        assert error.details == {"decline_code": "do_not_honor"}
        assert str(error) == "Declined (card_declined)"
