"""
Payment Service Factory

Provides a single entry point for obtaining a payment service instance.
The factory pattern allows the rest of the application to remain agnostic
about which implementation is being used.

Usage:
    from orderflow.services.payment import get_payment_service

    # Returns MockPaymentService or StripePaymentService based on ENV_MODE
    payment_service = get_payment_service()

Environment Switching:
    - ENV_MODE=development → MockPaymentService (no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.payment.base import (
    AuthorizationResult,
    BasePaymentService,
    CorrelationContext,
    FINALIZED_STATUSES,
)
from orderflow.services.payment.mock import MockPaymentService
from orderflow.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Get the configured payment service instance.

    The instance is cached (singleton pattern); the mock keeps its
    authorizations in memory, so it must be shared across requests.

    Raises:
        ValueError: If production mode but Stripe key not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            webhook_secret=settings.stripe_webhook_secret,
            webhook_tolerance=settings.webhook_tolerance_seconds,
            min_latency=0.05,
            max_latency=0.2,
        )
    else:
        logger.info(
            f"Payment Service: Using StripePaymentService "
            f"({settings.env_mode.value} mode)"
        )
        return StripePaymentService()


def reset_payment_service() -> None:
    """
    Clear the cached payment service instance.

    Useful for testing or when configuration changes at runtime.
    """
    get_payment_service.cache_clear()
    logger.debug("Payment service cache cleared")


__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "AuthorizationResult",
    "BasePaymentService",
    "CorrelationContext",
    "FINALIZED_STATUSES",
    "MockPaymentService",
    "StripePaymentService",
]
