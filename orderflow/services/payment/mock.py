"""
Mock Payment Service Implementation

Simulates Stripe-like payment authorizations without making real API calls.
Used in development mode (ENV_MODE=development) and by the test suite to:
    - Test the complete order -> authorization -> webhook flow locally
    - Develop without internet connectivity

Behavior:
    - Keeps authorizations in memory, keyed by a Stripe-like id (pi_mock_xxx)
    - Honors idempotency keys: the same key returns the same authorization
    - Optionally simulates latency and random provider failures
    - ``simulate_capture`` / ``simulate_failure`` move an authorization to a
      terminal status, the way a customer confirming the payment would
"""

import asyncio
import random
import uuid
import logging
from datetime import datetime
from typing import Optional

from orderflow.services.payment.base import (
    AuthorizationResult,
    BasePaymentService,
    CorrelationContext,
)

logger = logging.getLogger(__name__)


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment service.

    Attributes:
        failure_rate: Probability of a simulated provider error (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds

    Example:
        >>> service = MockPaymentService(webhook_secret="whsec_dev")
        >>> result = await service.create_authorization(
        ...     2475, CorrelationContext(order_id="..."), idempotency_key="k1"
        ... )
        >>> result.status
        'requires_payment_method'
    """

    # Simulated provider errors (mimics real Stripe error codes)
    ERROR_REASONS = [
        ("api_connection_error", "Payment service temporarily unavailable"),
        ("rate_limit", "Too many requests made to the API too quickly"),
    ]

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
        webhook_tolerance: int = 300,
    ):
        super().__init__(webhook_secret, webhook_tolerance)
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency

        self._authorizations: dict[str, dict] = {}
        self._idempotency_keys: dict[str, str] = {}
        self.create_calls = 0
        self.update_calls = 0

        logger.info(
            f"MockPaymentService initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    def _generate_authorization_id(self) -> str:
        """Generate a Stripe-like payment intent ID."""
        return f"pi_mock_{uuid.uuid4().hex[:24]}"

    async def _simulate_latency(self) -> float:
        """
        Simulate network latency.

        Returns:
            float: Actual latency in milliseconds
        """
        latency = random.uniform(self.min_latency, self.max_latency)
        if latency > 0:
            await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        """Determine if this request should simulate a failure."""
        return random.random() < self.failure_rate

    def _failure(self, latency_ms: float) -> AuthorizationResult:
        error_code, error_message = random.choice(self.ERROR_REASONS)
        logger.debug(f"Mock: Provider error - {error_code}")
        return AuthorizationResult(
            success=False,
            error_message=error_message,
            error_code=error_code,
            response_time_ms=latency_ms,
        )

    def _to_result(self, record: dict, latency_ms: float = 0.0) -> AuthorizationResult:
        return AuthorizationResult(
            success=True,
            authorization_id=record["id"],
            client_secret=record["client_secret"],
            amount=record["amount"],
            currency=record["currency"],
            status=record["status"],
            metadata=dict(record["metadata"]),
            response_time_ms=latency_ms,
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
        """Create (or replay, for a known idempotency key) an authorization."""
        latency_ms = await self._simulate_latency()

        existing_id = self._idempotency_keys.get(idempotency_key)
        if existing_id:
            logger.debug(f"Mock: Idempotent replay for {idempotency_key} -> {existing_id}")
            return self._to_result(self._authorizations[existing_id], latency_ms)

        if amount <= 0:
            return AuthorizationResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
                response_time_ms=latency_ms,
            )

        if self._should_fail():
            return self._failure(latency_ms)

        authorization_id = self._generate_authorization_id()
        record = {
            "id": authorization_id,
            "client_secret": f"{authorization_id}_secret_mock",
            "amount": amount,
            "currency": currency,
            "status": "requires_payment_method",
            "metadata": correlation.to_metadata(),
            "receipt_email": receipt_email,
            "description": description,
            "created": datetime.now(),
        }
        self._authorizations[authorization_id] = record
        self._idempotency_keys[idempotency_key] = authorization_id
        self.create_calls += 1

        logger.info(f"Mock: Authorization created - {authorization_id} - {amount} cents")
        return self._to_result(record, latency_ms)

    async def retrieve_authorization(self, authorization_id: str) -> AuthorizationResult:
        latency_ms = await self._simulate_latency()

        record = self._authorizations.get(authorization_id)
        if record is None:
            return AuthorizationResult(
                success=False,
                error_message=f"No such payment_intent: '{authorization_id}'",
                error_code="resource_missing",
                response_time_ms=latency_ms,
            )
        return self._to_result(record, latency_ms)

    async def update_authorization_amount(
        self,
        authorization_id: str,
        amount: int,
        correlation: CorrelationContext,
    ) -> AuthorizationResult:
        latency_ms = await self._simulate_latency()

        record = self._authorizations.get(authorization_id)
        if record is None:
            return AuthorizationResult(
                success=False,
                error_message=f"No such payment_intent: '{authorization_id}'",
                error_code="resource_missing",
                response_time_ms=latency_ms,
            )

        if self._should_fail():
            return self._failure(latency_ms)

        if record["status"] in ("succeeded", "processing", "canceled"):
            return AuthorizationResult(
                success=False,
                authorization_id=authorization_id,
                status=record["status"],
                error_message=(
                    "This PaymentIntent's amount could not be updated because "
                    f"it has a status of {record['status']}."
                ),
                error_code="payment_intent_unexpected_state",
                response_time_ms=latency_ms,
            )

        record["amount"] = amount
        record["metadata"].update(correlation.to_metadata())
        self.update_calls += 1

        logger.info(f"Mock: Authorization {authorization_id} amount -> {amount} cents")
        return self._to_result(record, latency_ms)

    def simulate_capture(self, authorization_id: str) -> dict:
        """Mark an authorization as succeeded and return its record."""
        record = self._authorizations[authorization_id]
        record["status"] = "succeeded"
        return dict(record)

    def simulate_failure(self, authorization_id: str) -> dict:
        """Mark an authorization as failed and return its record."""
        record = self._authorizations[authorization_id]
        record["status"] = "requires_payment_method"
        return dict(record)

    async def health_check(self) -> bool:
        """Mock health check always returns True."""
        logger.debug("Mock: Health check passed")
        return True
