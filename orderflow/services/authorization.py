"""
Payment Authorization Manager

Creates at most one payment authorization per order and changes its amount
when the customer adds a tip after checkout.

Authorizations are created with the idempotency key
``order-{order_id}-amount-{total_charged}``, so a retried request for the
same amount always lands on the same provider object. The stored reference
is written with a conditional update (``authorization_id IS NULL``); a
request that loses that race returns the reference that won.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import (
    AlreadyCaptured,
    AuthorizationNotFound,
    OrderNotFound,
    PaymentFailed,
    PaymentProviderError,
    TipTooLarge,
    ValidationError,
)
from orderflow.models import Order, PaymentStatus
from orderflow.services.payment import (
    AuthorizationResult,
    BasePaymentService,
    CorrelationContext,
    get_payment_service,
)

logger = logging.getLogger(__name__)

# Provider error code for amount changes on a finalized authorization
UNEXPECTED_STATE = "payment_intent_unexpected_state"


def idempotency_key_for(order_id: str, amount: int) -> str:
    return f"order-{order_id}-amount-{amount}"


@dataclass
class AuthorizationHandle:
    """What the checkout UI needs to confirm a payment."""
    order_id: str
    authorization_id: str
    client_secret: Optional[str]
    amount: int
    status: Optional[str] = None


@dataclass
class TipResult:
    order_id: str
    tip: int
    base_amount: int
    new_total: int
    authorization_status: Optional[str] = None


class PaymentAuthorizationManager:
    """Owns the order <-> provider authorization link."""

    def __init__(
        self,
        db: AsyncSession,
        payment_service: Optional[BasePaymentService] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.payment_service = payment_service or get_payment_service()
        self.settings = settings or get_settings()

    async def _load_order(self, order_id: str) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    @staticmethod
    def _raise_provider_error(result: AuthorizationResult, action: str) -> None:
        logger.error(
            f"Payment provider failed to {action}: "
            f"{result.error_code} - {result.error_message}"
        )
        raise PaymentProviderError(result.error_message, result.error_code)

    @staticmethod
    def _handle(order_id: str, result: AuthorizationResult) -> AuthorizationHandle:
        return AuthorizationHandle(
            order_id=order_id,
            authorization_id=result.authorization_id,
            client_secret=result.client_secret,
            amount=result.amount,
            status=result.status,
        )

    # =========================================================================
    # ENSURE AUTHORIZATION
    # =========================================================================

    async def ensure_authorization(self, order_id: str) -> AuthorizationHandle:
        """
        Return the order's authorization, creating it on first use.

        Raises:
            OrderNotFound: Unknown order id
            PaymentProviderError: Provider rejected the create or retrieve
        """
        order = await self._load_order(order_id)

        if order.authorization_id:
            return await self._retrieve_handle(order.id, order.authorization_id)

        correlation = CorrelationContext(
            order_id=order.id,
            tip=order.tip or 0,
            base_amount=order.base_amount,
        )
        result = await self.payment_service.create_authorization(
            amount=order.total_charged,
            correlation=correlation,
            idempotency_key=idempotency_key_for(order.id, order.total_charged),
            currency=self.settings.stripe_currency,
            receipt_email=order.customer_email,
            description=f"{self.settings.restaurant_name} order #{order.order_number}",
        )
        if not result.success:
            self._raise_provider_error(result, f"authorize order {order.id}")

        stored = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.authorization_id.is_(None))
            .values(authorization_id=result.authorization_id)
        )
        await self.db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.payment_status.in_([PaymentStatus.DRAFT, PaymentStatus.UNPAID]),
            )
            .values(payment_status=PaymentStatus.PENDING)
        )
        await self.db.commit()

        if stored.rowcount == 0:
            order = await self._load_order(order_id)
            if order.authorization_id != result.authorization_id:
                logger.info(
                    f"Order {order.id} already has authorization "
                    f"{order.authorization_id}; discarding {result.authorization_id}"
                )
                return await self._retrieve_handle(order.id, order.authorization_id)

        logger.info(
            f"Order {order.id} authorized: {result.authorization_id} "
            f"for {result.amount} cents"
        )
        return self._handle(order.id, result)

    async def _retrieve_handle(self, order_id: str, authorization_id: str) -> AuthorizationHandle:
        result = await self.payment_service.retrieve_authorization(authorization_id)
        if not result.success:
            self._raise_provider_error(result, f"retrieve {authorization_id}")
        return self._handle(order_id, result)

    # =========================================================================
    # APPLY TIP
    # =========================================================================

    async def apply_tip(self, order_id: str, tip: int) -> TipResult:
        """
        Replace the tip on an open authorization.

        The provider amount is changed first; the order is only updated once
        the provider accepted the new amount, and only while the order is
        still neither paid nor failed.

        Raises:
            ValidationError: Negative tip
            TipTooLarge: Tip above the configured ceiling
            AuthorizationNotFound: Order has no authorization yet
            AlreadyCaptured: Authorization or order is already finalized
            PaymentFailed: The order was voided by a failed payment
            PaymentProviderError: Provider rejected the retrieve or update
        """
        if tip < 0:
            raise ValidationError("Tip cannot be negative")
        if tip > self.settings.tip_ceiling_cents:
            raise TipTooLarge(tip, self.settings.tip_ceiling_cents)

        order = await self._load_order(order_id)
        if not order.authorization_id:
            raise AuthorizationNotFound(f"Order {order_id} has no payment authorization")
        if order.payment_status == PaymentStatus.PAID:
            raise AlreadyCaptured()
        if order.payment_status == PaymentStatus.FAILED:
            logger.info(f"Tip rejected for order {order_id}: payment failed")
            raise PaymentFailed()

        current = await self.payment_service.retrieve_authorization(order.authorization_id)
        if not current.success:
            self._raise_provider_error(current, f"retrieve {order.authorization_id}")
        if current.is_finalized:
            logger.info(
                f"Tip rejected for order {order_id}: authorization is {current.status}"
            )
            raise AlreadyCaptured()

        previous_tip = current.correlation.tip if "tip" in current.metadata else (order.tip or 0)
        base = current.amount - previous_tip
        if base != order.base_amount:
            logger.warning(
                f"Order {order_id} base amount drift: authorization implies {base}, "
                f"order has {order.base_amount}"
            )
        new_total = base + tip

        updated = await self.payment_service.update_authorization_amount(
            order.authorization_id,
            new_total,
            CorrelationContext(order_id=order.id, tip=tip, base_amount=base),
        )
        if not updated.success:
            if updated.error_code == UNEXPECTED_STATE:
                raise AlreadyCaptured()
            self._raise_provider_error(updated, f"update {order.authorization_id}")

        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.payment_status.not_in([PaymentStatus.PAID, PaymentStatus.FAILED]),
            )
            .values(tip=tip, total_charged=new_total)
        )
        await self.db.commit()

        if result.rowcount == 0:
            logger.warning(
                f"Order {order_id} was finalized while applying tip; "
                f"provider amount {new_total} not recorded"
            )
            raise AlreadyCaptured()

        logger.info(f"Order {order_id} tip set to {tip} cents (total {new_total})")
        return TipResult(
            order_id=order.id,
            tip=tip,
            base_amount=base,
            new_total=new_total,
            authorization_status=updated.status,
        )
