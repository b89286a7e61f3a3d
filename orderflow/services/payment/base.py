"""
Payment Service Abstract Base Class

Defines the interface contract for all payment service implementations.
Both MockPaymentService and StripePaymentService must implement these methods,
ensuring consistent behavior regardless of which service is active.

The pipeline works with *authorizations*: a reserved charge for an amount
that the customer confirms client-side and the provider captures later,
reporting the outcome through a signed webhook.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - Facilitates testing with the in-memory mock implementation
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import stripe

from orderflow.core.errors import SignatureInvalid

logger = logging.getLogger(__name__)

# Authorization statuses after which the amount can no longer change
FINALIZED_STATUSES = frozenset({"succeeded", "processing", "canceled"})


@dataclass(frozen=True)
class CorrelationContext:
    """
    Typed view of the metadata attached to an authorization.

    Written when the authorization is created or its amount changes and
    read back verbatim from the provider's webhook event; it is the only
    link between an asynchronous payment event and an order.

    Attributes:
        order_id: Order the authorization belongs to
        tip: Tip (cents) included in the authorized amount
        base_amount: Authorized amount minus the tip, when known
    """
    order_id: Optional[str]
    tip: int = 0
    base_amount: Optional[int] = None

    def to_metadata(self) -> dict[str, str]:
        """Provider metadata values must be strings."""
        metadata = {"orderId": self.order_id or "", "tip": str(self.tip)}
        if self.base_amount is not None:
            metadata["base_amount"] = str(self.base_amount)
        return metadata

    @classmethod
    def from_metadata(cls, metadata: Optional[dict[str, Any]]) -> "CorrelationContext":
        metadata = metadata or {}
        order_id = str(metadata.get("orderId") or "").strip() or None
        return cls(
            order_id=order_id,
            tip=_parse_cents(metadata.get("tip"), default=0),
            base_amount=_parse_cents(metadata.get("base_amount"), default=None),
        )


def _parse_cents(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-integer metadata amount: {value!r}")
        return default


@dataclass
class AuthorizationResult:
    """
    Standardized result from authorization calls.

    Both Mock and Stripe implementations return this same structure.

    Attributes:
        success: Whether the provider call succeeded
        authorization_id: Provider identifier (Stripe format: pi_xxx)
        client_secret: Secret the checkout UI confirms the payment with
        amount: Authorized amount in cents
        currency: Currency code (e.g., "usd")
        status: Provider status (requires_payment_method, succeeded, ...)
        metadata: Metadata stored on the authorization
        error_message: Error description if the call failed
        error_code: Machine-readable error code
        response_time_ms: Time taken by the provider call
    """
    success: bool
    authorization_id: Optional[str] = None
    client_secret: Optional[str] = None
    amount: Optional[int] = None
    currency: str = "usd"
    status: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0

    @property
    def is_finalized(self) -> bool:
        return self.status in FINALIZED_STATUSES

    @property
    def correlation(self) -> CorrelationContext:
        return CorrelationContext.from_metadata(self.metadata)


class BasePaymentService(ABC):
    """
    Abstract base class for payment services.

    Implementations report provider failures through
    ``AuthorizationResult(success=False)`` rather than raising; the
    authorization manager turns those into pipeline errors.
    """

    def __init__(self, webhook_secret: Optional[str], webhook_tolerance: int = 300):
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the payment provider ("mock", "stripe")."""
        pass

    @abstractmethod
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
        Create an authorization for ``amount`` cents.

        Repeated calls with the same ``idempotency_key`` must return the
        same authorization instead of creating a new one.
        """
        pass

    @abstractmethod
    async def retrieve_authorization(self, authorization_id: str) -> AuthorizationResult:
        """Fetch the current state of an authorization."""
        pass

    @abstractmethod
    async def update_authorization_amount(
        self,
        authorization_id: str,
        amount: int,
        correlation: CorrelationContext,
    ) -> AuthorizationResult:
        """Change the amount (and correlation metadata) of an open authorization."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the payment service.

        Returns:
            bool: True if service is reachable and operational
        """
        pass

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify a signed webhook and return the parsed event.

        Uses the provider's ``t=<timestamp>,v1=<hmac>`` signature scheme with
        the shared webhook secret. There is no unverified fallback.

        Raises:
            SignatureInvalid: Missing secret, missing header, bad signature,
                stale timestamp or unparseable payload.
        """
        if not self._webhook_secret:
            logger.error("Webhook secret not configured; rejecting event")
            raise SignatureInvalid("Webhook signing secret is not configured")

        if not signature:
            raise SignatureInvalid("Missing signature")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self._webhook_secret,
                tolerance=self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"{self.provider_name}: Webhook signature invalid - {e}")
            raise SignatureInvalid("Invalid signature") from e
        except UnicodeDecodeError as e:
            raise SignatureInvalid("Payload is not valid UTF-8") from e

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise SignatureInvalid("Payload is not valid JSON") from e

        if not isinstance(event, dict) or "type" not in event:
            raise SignatureInvalid("Payload is not an event")

        logger.debug(f"{self.provider_name}: Webhook verified - {event['type']}")
        return event
