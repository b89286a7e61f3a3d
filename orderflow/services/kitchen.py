"""
Kitchen Ticket Queue

Materializes one kitchen ticket per paid order (pay-at-pickup orders get
theirs when they are placed) and moves tickets through
new -> in_progress -> done. Every write here is safe to repeat:

- ticket and ticket-item inserts ignore conflicts on their unique keys
  (order id, order item id), so duplicate webhooks converge on one ticket
- status changes are compare-and-set on the current status, so two staff
  taps on the same ticket advance it at most one step
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.errors import OrderNotFound, TicketMaterializationFailed, TicketNotFound
from orderflow.models import (
    KitchenTicket,
    KitchenTicketItem,
    Milestone,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    TicketStatus,
)

logger = logging.getLogger(__name__)

NEXT_STATUS = {
    TicketStatus.NEW: TicketStatus.IN_PROGRESS,
    TicketStatus.IN_PROGRESS: TicketStatus.DONE,
}

# Order status and timestamp column set when a ticket enters a status
ORDER_TRANSITIONS = {
    TicketStatus.IN_PROGRESS: (
        Milestone.ACCEPTED, OrderStatus.ACCEPTED, "accepted_at",
        [OrderStatus.NEW, OrderStatus.PAID],
    ),
    TicketStatus.DONE: (
        Milestone.READY, OrderStatus.READY, "ready_at",
        [OrderStatus.NEW, OrderStatus.PAID, OrderStatus.ACCEPTED],
    ),
}

DEFAULT_STATION = "kitchen"


@dataclass
class AdvanceResult:
    ticket: KitchenTicket
    previous_status: TicketStatus
    changed: bool
    milestone: Optional[Milestone] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KitchenTicketQueue:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self, model):
        """Dialect insert supporting ``on_conflict_do_nothing``."""
        if self.db.get_bind().dialect.name == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)

    # =========================================================================
    # MATERIALIZE
    # =========================================================================

    async def materialize(self, order_id: str) -> KitchenTicket:
        """
        Create the ticket for a paid or pay-at-pickup order, or complete a
        partial one.

        Raises:
            OrderNotFound: Unknown order id
            TicketMaterializationFailed: Database rejected the ticket writes
        """
        order = await self.db.get(Order, order_id, populate_existing=True)
        if order is None:
            raise OrderNotFound(order_id)

        items = (await self.db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )).scalars().all()

        try:
            await self.db.execute(
                self._insert(KitchenTicket)
                .values(
                    order_id=order.id,
                    order_number=order.order_number,
                    station=DEFAULT_STATION,
                    status=TicketStatus.NEW,
                )
                .on_conflict_do_nothing(index_elements=["order_id"])
            )
            ticket_id = (await self.db.execute(
                select(KitchenTicket.id).where(KitchenTicket.order_id == order.id)
            )).scalar_one()

            if items:
                await self.db.execute(
                    self._insert(KitchenTicketItem)
                    .values([
                        {
                            "ticket_id": ticket_id,
                            "order_item_id": item.id,
                            "display_name": item.name,
                            "quantity": item.quantity,
                            "modifiers": item.options_summary,
                            "instructions": item.special_instructions,
                            "status": TicketStatus.NEW,
                        }
                        for item in items
                    ])
                    .on_conflict_do_nothing(index_elements=["order_item_id"])
                )
            else:
                logger.warning(
                    f"Order #{order.order_number} ({order.id}) has no items; "
                    f"ticket {ticket_id} created empty"
                )

            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise TicketMaterializationFailed(order_id) from e

        logger.info(f"Kitchen ticket {ticket_id} ready for order #{order.order_number}")
        return await self.get_ticket(ticket_id)

    # =========================================================================
    # ADVANCE
    # =========================================================================

    async def advance(self, ticket_id: int) -> AdvanceResult:
        """
        Move a ticket one step forward. ``done`` tickets stay ``done``.

        Raises:
            TicketNotFound: Unknown ticket id
        """
        ticket = await self.get_ticket(ticket_id)
        current = ticket.status
        target = NEXT_STATUS.get(current)

        if target is None:
            return AdvanceResult(ticket=ticket, previous_status=current, changed=False)

        result = await self.db.execute(
            update(KitchenTicket)
            .where(KitchenTicket.id == ticket_id, KitchenTicket.status == current)
            .values(status=target)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            logger.info(f"Ticket {ticket_id} already moved past {current.value}")
            return AdvanceResult(
                ticket=await self.get_ticket(ticket_id),
                previous_status=current,
                changed=False,
            )

        await self.db.execute(
            update(KitchenTicketItem)
            .where(KitchenTicketItem.ticket_id == ticket_id)
            .values(status=target)
        )

        milestone, order_status, stamp_column, from_statuses = ORDER_TRANSITIONS[target]
        await self.db.execute(
            update(Order)
            .where(Order.id == ticket.order_id, Order.order_status.in_(from_statuses))
            .values({"order_status": order_status, stamp_column: _utcnow()})
        )
        await self.db.commit()

        logger.info(
            f"Ticket {ticket_id} (order #{ticket.order_number}): "
            f"{current.value} -> {target.value}"
        )
        return AdvanceResult(
            ticket=await self.get_ticket(ticket_id),
            previous_status=current,
            changed=True,
            milestone=milestone,
        )

    # =========================================================================
    # READ
    # =========================================================================

    async def get_ticket(self, ticket_id: int) -> KitchenTicket:
        result = await self.db.execute(
            select(KitchenTicket)
            .where(KitchenTicket.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        ticket = result.scalar_one_or_none()
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket

    async def get_ticket_for_order(self, order_id: str) -> Optional[KitchenTicket]:
        result = await self.db.execute(
            select(KitchenTicket)
            .where(KitchenTicket.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_active(self) -> list[KitchenTicket]:
        """Open tickets, oldest first."""
        result = await self.db.execute(
            select(KitchenTicket)
            .where(KitchenTicket.status.in_([TicketStatus.NEW, TicketStatus.IN_PROGRESS]))
            .order_by(KitchenTicket.created_at, KitchenTicket.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_unticketed_orders(self, older_than: datetime) -> list[Order]:
        """
        Orders the kitchen should have by ``older_than`` but has no ticket for:
        paid orders paid before then, and pay-at-pickup orders placed before then.
        """
        result = await self.db.execute(
            select(Order)
            .outerjoin(KitchenTicket, KitchenTicket.order_id == Order.id)
            .where(
                KitchenTicket.id.is_(None),
                or_(
                    and_(
                        Order.payment_status == PaymentStatus.PAID,
                        Order.paid_at <= older_than,
                    ),
                    and_(
                        Order.payment_status == PaymentStatus.NEEDS_PAYMENT,
                        Order.created_at <= older_than,
                    ),
                ),
            )
            .order_by(Order.created_at)
        )
        return list(result.scalars().all())
