"""
Celery Tasks
Background tasks for customer notifications and kitchen reconciliation.

Each task runs the async services in its own event loop with a NullPool
session (see ``orderflow.database.worker_session``).
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.celery_worker import celery_app
from orderflow.core.config import get_settings
from orderflow.core.errors import NotificationSendFailed, OrderNotFound, TicketMaterializationFailed
from orderflow.database import worker_session
from orderflow.models import Milestone
from orderflow.services.dispatcher import NotificationDispatcher
from orderflow.services.kitchen import KitchenTicketQueue
from orderflow.services.notifications import BaseNotificationService

logger = logging.getLogger(__name__)


async def dispatch_milestone(
    db: AsyncSession,
    order_id: str,
    milestone: str,
    notification_service: Optional[BaseNotificationService] = None,
) -> dict:
    result = await NotificationDispatcher(db, notification_service).notify(order_id, Milestone(milestone))
    return {
        'order_id': result.order_id,
        'milestone': result.milestone.value,
        'status': result.status,
        'channel': result.channel,
        'message_id': result.message_id,
    }


async def run_reconciliation(db: AsyncSession, grace_seconds: int) -> dict:
    """
    Find paid and pay-at-pickup orders that never got a kitchen ticket and
    materialize them.

    Ticket creation is idempotent, so a sweep racing a late webhook is
    harmless. Money fields are never touched here.
    """
    kitchen = KitchenTicketQueue(db)
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=grace_seconds)
    orders = await kitchen.find_unticketed_orders(cutoff)

    repaired, failed = [], []
    for order in orders:
        logger.warning(
            f"Order #{order.order_number} ({order.id}, {order.payment_status.value}) "
            f"has no kitchen ticket"
        )
        try:
            await kitchen.materialize(order.id)
            repaired.append(order.id)
        except TicketMaterializationFailed:
            logger.exception(f"Reconciliation could not create ticket for order {order.id}")
            failed.append(order.id)

    return {
        'checked_before': cutoff.isoformat(),
        'unticketed': len(orders),
        'repaired': repaired,
        'failed': failed,
    }


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(NotificationSendFailed,),
    retry_backoff=True
)
def send_milestone_notification(self, order_id: str, milestone: str) -> dict:
    """
    Send one milestone message.

    A failed send releases its claim before raising, so Celery's retry
    starts from a clean state. Already-sent milestones come back as
    ``skipped``.
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: {milestone} notification for order {order_id}")
    start_time = time.time()

    async def _run() -> dict:
        async with worker_session() as db:
            return await dispatch_milestone(db, order_id, milestone)

    try:
        result = asyncio.run(_run())
    except OrderNotFound:
        logger.error(f"Task {task_id}: order {order_id} does not exist; not retrying")
        return {'order_id': order_id, 'milestone': milestone, 'status': 'order_not_found'}

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed
    logger.info(f"Task {task_id}: order {order_id} {milestone} -> {result['status']} in {elapsed}s")
    return result


@celery_app.task
def reconcile_kitchen_tickets() -> dict:
    """
    Periodic sweep: kitchen-bound orders without a kitchen ticket.
    """
    grace = get_settings().reconciliation_grace_seconds

    async def _run() -> dict:
        async with worker_session() as db:
            return await run_reconciliation(db, grace)

    result = asyncio.run(_run())
    if result['unticketed']:
        logger.warning(
            f"Reconciliation: {result['unticketed']} unticketed order(s), "
            f"{len(result['repaired'])} repaired"
        )
    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
