"""
Stripe Payment Service Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - STRIPE_WEBHOOK_SECRET for webhook verification

Security Notes:
    - Never log client secrets
    - Always verify webhook signatures
    - Use idempotency keys for retries
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import stripe

from orderflow.core.config import get_settings
from orderflow.services.payment.base import (
    AuthorizationResult,
    BasePaymentService,
    CorrelationContext,
)

logger = logging.getLogger(__name__)


class StripePaymentService(BasePaymentService):
    """
    Production Stripe payment service implementation.

    Authorizations are PaymentIntents with automatic payment methods; the
    checkout UI confirms them with the returned client secret. The SDK is
    blocking, so every call runs in a worker thread.
    """

    def __init__(self):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        super().__init__(settings.stripe_webhook_secret, settings.webhook_tolerance_seconds)

        # Configure Stripe SDK
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"  # Pin API version for stability
        stripe.max_network_retries = 2

        self._currency = settings.stripe_currency

        logger.info(
            f"StripePaymentService initialized "
            f"(api_version={stripe.api_version})"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "stripe"

    def _to_result(self, intent, start_time: datetime) -> AuthorizationResult:
        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
        return AuthorizationResult(
            success=True,
            authorization_id=intent.id,
            client_secret=intent.client_secret,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
            metadata=dict(intent.metadata or {}),
            response_time_ms=elapsed_ms,
        )

    def _to_error(self, e: stripe.StripeError, start_time: datetime) -> AuthorizationResult:
        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000

        if isinstance(e, stripe.AuthenticationError):
            # API key issues
            logger.critical(f"Stripe: Authentication failed - {e}")
            return AuthorizationResult(
                success=False,
                error_message="Payment service configuration error",
                error_code="authentication_error",
                response_time_ms=elapsed_ms,
            )

        if isinstance(e, stripe.APIConnectionError):
            # Network issues
            logger.error(f"Stripe: Connection error - {e}")
            return AuthorizationResult(
                success=False,
                error_message="Payment service temporarily unavailable",
                error_code="connection_error",
                response_time_ms=elapsed_ms,
            )

        if isinstance(e, stripe.InvalidRequestError):
            # Invalid parameters, unknown ids, wrong intent state
            logger.error(f"Stripe: Invalid request - {e}")
            return AuthorizationResult(
                success=False,
                error_message=str(e),
                error_code=e.code or "invalid_request",
                response_time_ms=elapsed_ms,
            )

        logger.error(f"Stripe: Error - {e}")
        return AuthorizationResult(
            success=False,
            error_message="Payment processing error",
            error_code="stripe_error",
            response_time_ms=elapsed_ms,
        )

    async def create_authorization(
        self,
        amount: int,
        correlation: CorrelationContext,
        idempotency_key: str,
        currency: str = "usd",
        receipt_email: Optional[str] = None,
        description: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        Create a PaymentIntent for client-side confirmation.

        The idempotency key makes concurrent or retried calls collapse onto
        one PaymentIntent on Stripe's side.
        """
        start_time = datetime.now()

        params = {
            "amount": amount,
            "currency": currency or self._currency,
            "metadata": correlation.to_metadata(),
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": idempotency_key,
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        if description:
            params["description"] = description

        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.create, **params)
        except stripe.StripeError as e:
            return self._to_error(e, start_time)

        logger.info(
            f"Stripe: PaymentIntent created - {intent.id} - "
            f"status={intent.status}"
        )
        return self._to_result(intent, start_time)

    async def retrieve_authorization(self, authorization_id: str) -> AuthorizationResult:
        start_time = datetime.now()
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, authorization_id)
        except stripe.StripeError as e:
            return self._to_error(e, start_time)

        logger.debug(f"Stripe: PaymentIntent retrieved - {intent.id} - status={intent.status}")
        return self._to_result(intent, start_time)

    async def update_authorization_amount(
        self,
        authorization_id: str,
        amount: int,
        correlation: CorrelationContext,
    ) -> AuthorizationResult:
        start_time = datetime.now()
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.modify,
                authorization_id,
                amount=amount,
                metadata=correlation.to_metadata(),
            )
        except stripe.StripeError as e:
            return self._to_error(e, start_time)

        logger.info(f"Stripe: PaymentIntent {intent.id} amount -> {intent.amount}")
        return self._to_result(intent, start_time)

    async def health_check(self) -> bool:
        """
        Verify Stripe API connectivity.

        Makes a lightweight API call to verify credentials and connectivity.
        """
        try:
            await asyncio.to_thread(stripe.Account.retrieve)
            logger.debug("Stripe: Health check passed")
            return True

        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
