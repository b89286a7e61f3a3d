"""
Notification Dispatcher

Sends at most one customer message per (order, milestone) using
claim-then-send:

0. Skip milestones the order has not reached (no paid_at / accepted_at /
   ready_at); nothing is claimed.
1. Claim: ``UPDATE orders SET <milestone>_notified_at = :now
   WHERE id = :id AND <milestone>_notified_at IS NULL``.
   Zero rows means another caller owns the milestone -> skipped.
2. Compose and deliver the message under a timeout.
3. On any delivery failure release the claim, but only while it still holds
   the timestamp this call wrote, then raise NotificationSendFailed so the
   caller (or Celery) can retry.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import NotificationSendFailed, OrderNotFound
from orderflow.models import Milestone, Order
from orderflow.services.notifications import (
    BaseNotificationService,
    ComposedMessage,
    NotificationResult,
    compose_message,
    get_notification_service,
)
from orderflow.services.orders import OrderStore

logger = logging.getLogger(__name__)

SENT = "sent"
SKIPPED = "skipped"

EMAIL = "email"
SMS = "sms"


@dataclass
class DispatchResult:
    order_id: str
    milestone: Milestone
    status: str
    channel: Optional[str] = None
    message_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.status == SENT


def choose_channel(milestone: Milestone, order: Order) -> Optional[tuple[str, str]]:
    """
    Pick (channel, recipient) for a milestone.

    Receipts go by email when possible. Status updates go by SMS when the
    customer opted in. SMS always requires a phone and opt-in.
    """
    sms_ok = bool(order.customer_phone) and bool(order.sms_opt_in)
    email_ok = bool(order.customer_email)

    if Milestone(milestone) == Milestone.PAID:
        preferred = [(EMAIL, email_ok, order.customer_email), (SMS, sms_ok, order.customer_phone)]
    else:
        preferred = [(SMS, sms_ok, order.customer_phone), (EMAIL, email_ok, order.customer_email)]

    for channel, usable, recipient in preferred:
        if usable:
            return channel, recipient
    return None


class NotificationDispatcher:
    def __init__(
        self,
        db: AsyncSession,
        notification_service: Optional[BaseNotificationService] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notification_service = notification_service or get_notification_service()
        self.settings = settings or get_settings()

    # =========================================================================
    # CLAIMS
    # =========================================================================

    async def claim(self, order_id: str, milestone: Milestone) -> Optional[datetime]:
        """Claim a milestone; returns the claim timestamp, or None if taken."""
        column = Order.claim_column(milestone)
        claimed_at = datetime.now(timezone.utc)

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, column.is_(None))
            .values({column.key: claimed_at})
        )
        await self.db.commit()
        return claimed_at if result.rowcount else None

    async def release(self, order_id: str, milestone: Milestone, claimed_at: datetime) -> bool:
        """Clear a claim, only if it still holds ``claimed_at``."""
        column = Order.claim_column(milestone)
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, column == claimed_at)
            .values({column.key: None})
        )
        await self.db.commit()
        return bool(result.rowcount)

    # =========================================================================
    # NOTIFY
    # =========================================================================

    async def notify(self, order_id: str, milestone: Milestone) -> DispatchResult:
        """
        Send the milestone message once.

        Raises:
            OrderNotFound: Unknown order id
            NotificationSendFailed: Delivery failed; the claim was released
        """
        milestone = Milestone(milestone)
        order = await self.db.get(Order, order_id, populate_existing=True)
        if order is None:
            raise OrderNotFound(order_id)
        if not order.milestone_reached(milestone):
            logger.info(f"Order {order_id} has not reached {milestone.value}; nothing sent")
            return DispatchResult(
                order_id=order_id, milestone=milestone, status=SKIPPED, reason="not_reached"
            )

        claimed_at = await self.claim(order_id, milestone)
        if claimed_at is None:
            logger.info(f"{milestone.value} notification for order {order_id} already sent")
            return DispatchResult(
                order_id=order_id, milestone=milestone, status=SKIPPED, reason="already_sent"
            )

        try:
            channel, result = await self._deliver(order_id, milestone)
        except Exception as e:
            await self._release_after_failure(order_id, milestone, claimed_at)
            if isinstance(e, NotificationSendFailed):
                raise
            if isinstance(e, asyncio.TimeoutError):
                raise NotificationSendFailed(
                    order_id, milestone.value, f"{milestone.value} notification timed out"
                ) from e
            raise NotificationSendFailed(order_id, milestone.value, str(e)) from e

        logger.info(
            f"{milestone.value} notification for order {order_id} sent by {channel} "
            f"({result.message_id})"
        )
        return DispatchResult(
            order_id=order_id,
            milestone=milestone,
            status=SENT,
            channel=channel,
            message_id=result.message_id,
        )

    async def _release_after_failure(self, order_id: str, milestone: Milestone, claimed_at: datetime) -> None:
        released = await self.release(order_id, milestone, claimed_at)
        if released:
            logger.warning(f"{milestone.value} claim for order {order_id} released for retry")
        else:
            logger.warning(
                f"{milestone.value} claim for order {order_id} changed since {claimed_at}; "
                "left in place"
            )

    async def _deliver(self, order_id: str, milestone: Milestone) -> tuple[str, NotificationResult]:
        order = await self.db.get(Order, order_id, populate_existing=True)
        items = await OrderStore(self.db).list_items(order_id)

        target = choose_channel(milestone, order)
        if target is None:
            raise NotificationSendFailed(
                order_id, milestone.value, f"Order {order_id} has no deliverable contact"
            )
        channel, recipient = target

        message = compose_message(milestone, order, items, self.settings)
        result = await asyncio.wait_for(
            self._send(channel, recipient, message),
            timeout=self.settings.notification_timeout_seconds,
        )
        if not result.success:
            raise NotificationSendFailed(
                order_id,
                milestone.value,
                f"{result.provider or channel} rejected {milestone.value} message: "
                f"{result.error_message}",
            )
        return channel, result

    async def _send(self, channel: str, recipient: str, message: ComposedMessage) -> NotificationResult:
        if channel == SMS:
            return await self.notification_service.send_sms(recipient, message.sms)
        return await self.notification_service.send_email(
            recipient, message.subject, message.html, message.text
        )
