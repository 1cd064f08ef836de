"""Stripe client configuration, retry policy and call timing."""

import logging
import time
from typing import Any, Callable, TypeVar

import stripe
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retry configuration for read-only calls
MAX_READ_ATTEMPTS = 3
MIN_WAIT_SECONDS = 0.5
MAX_WAIT_SECONDS = 4

# Latency threshold for logging (milliseconds)
SLOW_CALL_THRESHOLD_MS = 2000

# Transport-level failures: the request may not have reached Stripe
TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


def configure_stripe() -> None:
    """Configure Stripe SDK with API key and network retries from settings.

    This should be called once at application startup.
    If Stripe keys are not configured, Stripe operations will fail with clear errors.
    """
    settings = get_settings()
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
    else:
        logger.warning("Stripe secret key not configured. Payments will not work.")
    stripe.max_network_retries = settings.stripe_max_network_retries


def get_stripe() -> Any:
    """Get the configured Stripe module.

    Returns:
        stripe: The Stripe module with API key configured.

    Note:
        Stripe SDK uses module-level configuration, so this returns
        the stripe module itself. Ensure configure_stripe() has been
        called before using Stripe API calls.
    """
    return stripe


@retry(
    retry=retry_if_exception_type(TRANSIENT_STRIPE_ERRORS),
    stop=stop_after_attempt(MAX_READ_ATTEMPTS),
    wait=wait_exponential(multiplier=MIN_WAIT_SECONDS, min=MIN_WAIT_SECONDS, max=MAX_WAIT_SECONDS),
    reraise=True,
)
def _read_with_retry(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    return func(*args, **kwargs)


def timed_call(operation: str, func: Callable[..., T], *args: Any, read_only: bool = False, **kwargs: Any) -> T:
    """Invoke a Stripe API function, logging its latency.

    Read-only calls are retried on transient errors. Calls that move money are
    never retried here; they rely on Stripe's idempotency keys instead.

    Args:
        operation: Name used in log lines, e.g. ``PaymentIntent.create``.
        func: The Stripe SDK function to call.
        read_only: Whether the call is safe to retry.

    Returns:
        The Stripe API response.
    """
    start_time = time.perf_counter()
    error_msg = None
    try:
        if read_only:
            return _read_with_retry(func, *args, **kwargs)
        return func(*args, **kwargs)
    except stripe.StripeError as e:
        error_msg = f"{type(e).__name__}: {e.user_message or e}"
        raise
    finally:
        latency_ms = (time.perf_counter() - start_time) * 1000
        if error_msg:
            logger.warning("Stripe %s failed after %.2fms: %s", operation, latency_ms, error_msg)
        elif latency_ms > SLOW_CALL_THRESHOLD_MS:
            logger.warning("SLOW Stripe call: %s latency=%.2fms", operation, latency_ms)
        else:
            logger.debug("Stripe %s latency=%.2fms", operation, latency_ms)
