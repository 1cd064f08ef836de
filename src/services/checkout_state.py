"""Checkout state variants published by the checkout state machine."""

from dataclasses import dataclass
from enum import Enum

from src.schemas.checkout import CheckoutSession, Order


class PaymentOutcome(str, Enum):
    """Result of a process payment call.

    ``PENDING`` means the gateway accepted the charge but has not settled it;
    the caller polls with ``refresh_order_status``.
    """

    COMPLETED = "completed"
    REQUIRES_ACTION = "requires_action"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class CheckoutInitial:
    """No checkout in progress."""


@dataclass(frozen=True)
class CheckoutLoading:
    """Payment methods are being fetched for a new session."""


@dataclass(frozen=True)
class CheckoutLoaded:
    """A session is ready for user input."""

    session: CheckoutSession


@dataclass(frozen=True)
class CheckoutProcessing:
    """A gateway or order service call is in flight."""

    message: str
    session: CheckoutSession


@dataclass(frozen=True)
class CheckoutError:
    """A failure the user can see.

    ``session`` is kept when the failure happened mid-checkout so the user can
    retry or change payment details without losing the basket.
    """

    message: str
    error_code: str | None = None
    retryable: bool = True
    session: CheckoutSession | None = None


@dataclass(frozen=True)
class CheckoutSuccess:
    """Terminal state: the order was placed and paid."""

    order: Order


CheckoutState = (
    CheckoutInitial
    | CheckoutLoading
    | CheckoutLoaded
    | CheckoutProcessing
    | CheckoutError
    | CheckoutSuccess
)


def session_of(state: CheckoutState) -> CheckoutSession | None:
    """Session carried by ``state``, if any."""
    match state:
        case CheckoutLoaded(session=session) | CheckoutProcessing(session=session):
            return session
        case CheckoutError(session=session):
            return session
        case CheckoutInitial() | CheckoutLoading() | CheckoutSuccess():
            return None
