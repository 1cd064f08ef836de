"""Pytest configuration and fixtures."""

import os
from collections.abc import Generator
from typing import Any

import pytest

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_stripe_publishable_key")

from src.schemas.basket import Basket, BasketItem, CourseRef  # noqa: E402
from src.schemas.checkout import Address, PaymentMethod  # noqa: E402


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    # Clear the cache to ensure fresh settings
    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    # Clean up cache after tests
    get_settings.cache_clear()


@pytest.fixture
def sample_address() -> Address:
    """Create a billing address."""
    return Address(name="Ada Lovelace", line1="1 Pottery Lane", city="London", post_code="W11 4LZ")


@pytest.fixture
def sample_card(sample_address: Address) -> PaymentMethod:
    """Create a default card that carries a billing address."""
    return PaymentMethod(
        id="pm_default",
        brand="visa",
        last4="4242",
        expiry_month="12",
        expiry_year="2030",
        is_default=True,
        billing_address=sample_address,
    )


@pytest.fixture
def sample_basket() -> Basket:
    """Create a basket with one discounted course."""
    return Basket(
        id="basket-1",
        items=(
            BasketItem(
                id="item-1",
                course=CourseRef(id="course-1", name="Wheel Throwing for Beginners", type="StudioCourse"),
                price=5000,
                discount_value=500,
            ),
        ),
    )


@pytest.fixture
def empty_basket() -> Basket:
    """Create a basket without items."""
    return Basket(id="basket-empty")
