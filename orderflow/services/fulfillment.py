"""
Webhook Fulfillment Processor

Turns verified payment-provider events into order state:

    payment_intent.succeeded       -> order paid, then kitchen ticket materialized
    payment_intent.payment_failed  -> order voided, payment failed
    anything else                  -> acknowledged, ignored

Providers deliver at least once. The paid transition is a conditional update
(``payment_status != paid``), so a redelivered event changes no money field;
ticket materialization is itself idempotent and is re-attempted on every
delivery so a previous partial failure heals on retry.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import MissingCorrelation, TicketMaterializationFailed
from orderflow.models import Order, OrderStatus, PaymentStatus
from orderflow.services.kitchen import KitchenTicketQueue
from orderflow.services.payment import BasePaymentService, CorrelationContext, get_payment_service

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"

RECORDED = "recorded"
DUPLICATE = "duplicate"
IGNORED = "ignored"

# Order statuses a successful payment moves to ``paid``
PAYABLE_ORDER_STATUSES = [
    OrderStatus.DRAFT,
    OrderStatus.NEW,
    OrderStatus.VOIDED,
    OrderStatus.PAYMENT_FAILED,
]


@dataclass
class FulfillmentOutcome:
    """What a webhook delivery did. ``action`` is recorded, duplicate or ignored."""
    event_type: str
    action: str
    order_id: Optional[str] = None
    ticket_id: Optional[int] = None

    @property
    def order_paid(self) -> bool:
        return self.event_type == PAYMENT_SUCCEEDED and self.action in (RECORDED, DUPLICATE)


def _event_object(event: dict) -> dict:
    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    return obj if isinstance(obj, dict) else {}


def _cents(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class WebhookFulfillmentProcessor:
    def __init__(
        self,
        db: AsyncSession,
        payment_service: Optional[BasePaymentService] = None,
        kitchen: Optional[KitchenTicketQueue] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.payment_service = payment_service or get_payment_service()
        self.kitchen = kitchen or KitchenTicketQueue(db)
        self.settings = settings or get_settings()

    async def handle(self, payload: bytes, signature: Optional[str]) -> FulfillmentOutcome:
        """
        Verify and apply one webhook delivery.

        Verification and the payment update share one timeout; running out
        of it raises ``asyncio.TimeoutError`` before anything is recorded.
        Ticket materialization runs afterwards under its own timeout and
        never fails the delivery.

        Raises:
            SignatureInvalid: Missing or invalid signature; nothing changed
            MissingCorrelation: Payment event without an order id
            asyncio.TimeoutError: The event was not recorded in time
        """
        outcome = await asyncio.wait_for(
            self.record(payload, signature),
            timeout=self.settings.webhook_timeout_seconds,
        )
        if outcome.order_paid:
            outcome.ticket_id = await self.materialize_ticket(outcome.order_id)
        return outcome

    async def record(self, payload: bytes, signature: Optional[str]) -> FulfillmentOutcome:
        """Verify the delivery and write its payment state."""
        event = self.payment_service.verify_webhook(payload, signature)
        event_type = event["type"]
        intent = _event_object(event)

        logger.info(f"Webhook {event.get('id', '-')}: {event_type} ({intent.get('id', '-')})")

        if event_type == PAYMENT_SUCCEEDED:
            return await self.record_payment_succeeded(intent)
        if event_type == PAYMENT_FAILED:
            return await self.record_payment_failed(intent)

        logger.debug(f"Ignoring webhook event type {event_type}")
        return FulfillmentOutcome(event_type=event_type, action=IGNORED)

    @staticmethod
    def _correlation(intent: dict, event_type: str) -> CorrelationContext:
        correlation = CorrelationContext.from_metadata(intent.get("metadata"))
        if correlation.order_id is None:
            logger.error(f"{event_type} for {intent.get('id', '-')} has no orderId metadata")
            raise MissingCorrelation("Payment event is missing the orderId metadata")
        return correlation

    async def record_payment_succeeded(self, intent: dict) -> FulfillmentOutcome:
        correlation = self._correlation(intent, PAYMENT_SUCCEEDED)
        order_id = correlation.order_id

        amount = _cents(intent.get("amount", intent.get("amount_received")))
        tip = correlation.tip
        base = correlation.base_amount if correlation.base_amount is not None else amount - tip
        if base + tip != amount:
            logger.warning(
                f"Order {order_id}: metadata base {base} + tip {tip} "
                f"does not match received amount {amount}"
            )

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status != PaymentStatus.PAID)
            .values(
                payment_status=PaymentStatus.PAID,
                total_charged=base,
                tip=tip,
                amount_received=amount,
                paid_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount:
            # Pay-at-pickup orders may already be moving through the kitchen
            await self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.order_status.in_(PAYABLE_ORDER_STATUSES))
                .values(order_status=OrderStatus.PAID)
            )
        await self.db.commit()

        if result.rowcount:
            action = RECORDED
            logger.info(f"Order {order_id} paid: {amount} cents received (tip {tip})")
        else:
            order = await self.db.get(Order, order_id)
            if order is None:
                logger.error(f"Payment succeeded for unknown order {order_id}")
                return FulfillmentOutcome(
                    event_type=PAYMENT_SUCCEEDED, action=IGNORED, order_id=order_id
                )
            action = DUPLICATE
            logger.info(f"Order {order_id} already paid; duplicate delivery")

        return FulfillmentOutcome(event_type=PAYMENT_SUCCEEDED, action=action, order_id=order_id)

    async def materialize_ticket(self, order_id: str) -> Optional[int]:
        """
        Create (or complete) the kitchen ticket for a paid order.

        Failures and timeouts are logged and leave the paid state alone;
        the reconciliation sweep retries them.
        """
        try:
            ticket = await asyncio.wait_for(
                self.kitchen.materialize(order_id),
                timeout=self.settings.webhook_timeout_seconds,
            )
        except asyncio.TimeoutError:
            failure = TicketMaterializationFailed(
                order_id,
                f"Kitchen ticket for order {order_id} timed out after "
                f"{self.settings.webhook_timeout_seconds}s",
            )
            logger.error(f"{failure.kind}: {failure.message}")
            return None
        except TicketMaterializationFailed:
            logger.exception(f"Kitchen ticket for paid order {order_id} not created")
            return None
        return ticket.id

    async def record_payment_failed(self, intent: dict) -> FulfillmentOutcome:
        correlation = self._correlation(intent, PAYMENT_FAILED)
        order_id = correlation.order_id

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status != PaymentStatus.PAID)
            .values(payment_status=PaymentStatus.FAILED, order_status=OrderStatus.VOIDED)
        )
        await self.db.commit()

        if not result.rowcount:
            logger.info(f"Payment failure for order {order_id} ignored (paid or unknown)")
            return FulfillmentOutcome(event_type=PAYMENT_FAILED, action=IGNORED, order_id=order_id)

        error = intent.get("last_payment_error") or {}
        logger.warning(
            f"Order {order_id} payment failed: {error.get('message', 'no reason given')}"
        )
        return FulfillmentOutcome(event_type=PAYMENT_FAILED, action=RECORDED, order_id=order_id)
