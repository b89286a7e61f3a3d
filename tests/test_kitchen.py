"""Tests for the kitchen ticket queue."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from orderflow.core.errors import TicketNotFound
from orderflow.models import (
    KitchenTicket,
    KitchenTicketItem,
    Milestone,
    OrderStatus,
    PaymentStatus,
    TicketStatus,
)
from orderflow.services.kitchen import KitchenTicketQueue
from orderflow.services.orders import OrderStore


@pytest.fixture
def kitchen(db):
    return KitchenTicketQueue(db)


@pytest.fixture
def paid_ticket(make_order, pay, kitchen):
    async def _ticket():
        order = await make_order()
        outcome = await pay(order)
        return order, await kitchen.get_ticket(outcome.ticket_id)
    return _ticket


class TestMaterialize:
    async def test_materialize_is_idempotent(self, db, make_order, pay, kitchen):
        order = await make_order()
        outcome = await pay(order)

        again = await kitchen.materialize(order.id)

        assert again.id == outcome.ticket_id
        assert (await db.execute(select(func.count()).select_from(KitchenTicket))).scalar() == 1
        assert (await db.execute(select(func.count()).select_from(KitchenTicketItem))).scalar() == 2

    async def test_one_ticket_item_per_order_item(self, make_order, pay, kitchen):
        order = await make_order()
        outcome = await pay(order)

        ticket = await kitchen.get_ticket(outcome.ticket_id)

        assert ticket.status == TicketStatus.NEW
        assert ticket.station == "kitchen"
        assert sorted(i.order_item_id for i in ticket.items) == sorted(i.id for i in order.items)
        assert all(i.status == TicketStatus.NEW for i in ticket.items)


class TestAdvance:
    """new -> in_progress -> done, forward-only."""

    async def test_full_progression(self, db, paid_ticket, kitchen):
        order, ticket = await paid_ticket()

        accepted = await kitchen.advance(ticket.id)
        assert accepted.changed
        assert accepted.previous_status == TicketStatus.NEW
        assert accepted.ticket.status == TicketStatus.IN_PROGRESS
        assert accepted.milestone == Milestone.ACCEPTED
        assert all(i.status == TicketStatus.IN_PROGRESS for i in accepted.ticket.items)
        stored = await OrderStore(db).get_order(order.id)
        assert stored.order_status == OrderStatus.ACCEPTED
        assert stored.accepted_at is not None

        ready = await kitchen.advance(ticket.id)
        assert ready.changed
        assert ready.ticket.status == TicketStatus.DONE
        assert ready.milestone == Milestone.READY
        stored = await OrderStore(db).get_order(order.id)
        assert stored.order_status == OrderStatus.READY
        assert stored.ready_at is not None

    async def test_pay_at_pickup_ticket_progresses(self, db, make_order, kitchen):
        order = await make_order(source="ai_phone", payment_choice="pay_at_pickup")
        ticket = await kitchen.materialize(order.id)

        accepted = await kitchen.advance(ticket.id)
        assert accepted.milestone == Milestone.ACCEPTED
        assert (await OrderStore(db).get_order(order.id)).order_status == OrderStatus.ACCEPTED

        await kitchen.advance(ticket.id)
        stored = await OrderStore(db).get_order(order.id)
        assert stored.order_status == OrderStatus.READY
        assert stored.payment_status == PaymentStatus.NEEDS_PAYMENT
        assert stored.ready_at is not None

    async def test_done_is_terminal(self, paid_ticket, kitchen):
        _, ticket = await paid_ticket()
        await kitchen.advance(ticket.id)
        await kitchen.advance(ticket.id)

        result = await kitchen.advance(ticket.id)

        assert not result.changed
        assert result.milestone is None
        assert result.ticket.status == TicketStatus.DONE

    async def test_advance_does_not_touch_money(self, db, paid_ticket, kitchen):
        order, ticket = await paid_ticket()
        await kitchen.advance(ticket.id)

        stored = await OrderStore(db).get_order(order.id)
        assert stored.total_charged == 2475
        assert stored.tip == 0

    async def test_concurrent_taps_advance_one_step(self, paid_ticket, session_maker, kitchen):
        _, ticket = await paid_ticket()

        async def tap():
            async with session_maker() as session:
                return await KitchenTicketQueue(session).advance(ticket.id)

        results = await asyncio.gather(tap(), tap())

        assert sorted(r.changed for r in results) == [False, True]
        assert (await kitchen.get_ticket(ticket.id)).status == TicketStatus.IN_PROGRESS

    async def test_unknown_ticket(self, kitchen):
        with pytest.raises(TicketNotFound):
            await kitchen.advance(999)


class TestQueueReads:
    async def test_list_active_oldest_first(self, paid_ticket, kitchen):
        _, first = await paid_ticket()
        _, second = await paid_ticket()
        _, third = await paid_ticket()
        await kitchen.advance(second.id)
        await kitchen.advance(third.id)
        await kitchen.advance(third.id)

        active = await kitchen.list_active()

        assert [t.id for t in active] == [first.id, second.id]
        assert [t.status for t in active] == [TicketStatus.NEW, TicketStatus.IN_PROGRESS]

    async def test_unticketed_orders(self, db, make_order, pay, kitchen, monkeypatch):
        async def skip(self, order_id):
            from orderflow.core.errors import TicketMaterializationFailed
            raise TicketMaterializationFailed(order_id)

        ticketed = await make_order()
        await pay(ticketed)
        await make_order()  # never paid
        monkeypatch.setattr(KitchenTicketQueue, "materialize", skip)
        orphan = await make_order()
        await pay(orphan)
        monkeypatch.undo()

        future = datetime.now(timezone.utc) + timedelta(seconds=5)
        past = datetime.now(timezone.utc) - timedelta(hours=1)

        assert [o.id for o in await kitchen.find_unticketed_orders(future)] == [orphan.id]
        assert await kitchen.find_unticketed_orders(past) == []

        await kitchen.materialize(orphan.id)
        assert await kitchen.find_unticketed_orders(future) == []

    async def test_unticketed_pay_at_pickup_orders(self, make_order, kitchen):
        pickup = await make_order(source="kds", payment_choice="pay_at_pickup", customer_email=None)
        await make_order(source="kds")  # pay now, still pending

        future = datetime.now(timezone.utc) + timedelta(seconds=5)
        assert [o.id for o in await kitchen.find_unticketed_orders(future)] == [pickup.id]

        await kitchen.materialize(pickup.id)
        assert await kitchen.find_unticketed_orders(future) == []
