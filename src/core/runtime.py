"""Process-level setup for applications embedding the checkout engine."""

import logging

from src.core.config import get_settings
from src.core.stripe import configure_stripe

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure root logging with the level from settings.

    Debug mode forces DEBUG so state transitions are logged.
    """
    settings = get_settings()
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def init_checkout_runtime() -> None:
    """Configure logging and the Stripe SDK.

    Call once at startup, before building checkout services.
    """
    configure_logging()
    settings = get_settings()
    logger.info("Starting %s in %s mode", settings.app_name, settings.app_env)

    configure_stripe()
    if settings.stripe_secret_key and settings.is_production and settings.is_stripe_test_mode:
        logger.warning("Stripe test key configured in production")
    logger.info("Stripe SDK configured")
