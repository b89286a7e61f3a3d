"""Tests for webhook verification and payment fulfillment."""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from orderflow.core.errors import MissingCorrelation, SignatureInvalid, TicketMaterializationFailed
from orderflow.models import (
    KitchenTicket,
    KitchenTicketItem,
    Order,
    OrderSource,
    OrderStatus,
    PaymentStatus,
)
from orderflow.services.fulfillment import WebhookFulfillmentProcessor
from orderflow.services.kitchen import KitchenTicketQueue
from orderflow.services.orders import OrderStore
from tests.factories import payment_event, sign


@pytest.fixture
def processor(db, payment_service):
    return WebhookFulfillmentProcessor(db, payment_service)


async def count_rows(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar()


class TestSignature:
    """Nothing is trusted before the signature verifies."""

    async def test_missing_signature(self, db, make_order, processor):
        order = await make_order()
        payload = payment_event(order.id, 2475)

        with pytest.raises(SignatureInvalid):
            await processor.handle(payload.encode(), None)

        assert (await OrderStore(db).get_order(order.id)).payment_status == PaymentStatus.UNPAID

    async def test_wrong_secret(self, db, make_order, processor):
        order = await make_order()
        payload = payment_event(order.id, 2475)

        with pytest.raises(SignatureInvalid):
            await processor.handle(payload.encode(), sign(payload, secret="whsec_other"))

        assert await count_rows(db, KitchenTicket) == 0

    async def test_tampered_payload(self, make_order, processor):
        order = await make_order()
        payload = payment_event(order.id, 2475)
        header = sign(payload)

        with pytest.raises(SignatureInvalid):
            await processor.handle(payment_event(order.id, 1).encode(), header)

    async def test_stale_timestamp(self, make_order, processor):
        order = await make_order()
        payload = payment_event(order.id, 2475)

        with pytest.raises(SignatureInvalid):
            await processor.handle(payload.encode(), sign(payload, timestamp=int(time.time()) - 3600))

    async def test_unconfigured_secret_rejects_everything(self, db, make_order):
        from orderflow.services.payment import MockPaymentService

        order = await make_order()
        payload = payment_event(order.id, 2475)
        processor = WebhookFulfillmentProcessor(db, MockPaymentService(webhook_secret=None))

        with pytest.raises(SignatureInvalid):
            await processor.handle(payload.encode(), sign(payload))


class TestPaymentSucceeded:
    """payment_intent.succeeded marks the order paid and creates its ticket."""

    async def test_records_payment_and_ticket(self, db, make_order, pay):
        order = await make_order()

        outcome = await pay(order, tip=300)

        assert outcome.action == "recorded"
        assert outcome.order_paid
        paid = await OrderStore(db).get_order(order.id)
        assert paid.payment_status == PaymentStatus.PAID
        assert paid.order_status == OrderStatus.PAID
        assert paid.total_charged == 2475
        assert paid.tip == 300
        assert paid.amount_received == 2775
        assert paid.paid_at is not None

        ticket = await KitchenTicketQueue(db).get_ticket(outcome.ticket_id)
        assert ticket.order_id == order.id
        assert ticket.order_number == order.order_number
        assert [(i.display_name, i.quantity, i.modifiers, i.instructions) for i in ticket.items] == [
            ("Pad Thai", 2, "Chicken, Medium spicy", None),
            ("Spring Rolls", 1, None, "Extra sauce"),
        ]

    async def test_base_falls_back_to_amount_minus_tip(self, db, make_order, pay):
        order = await make_order()

        await pay(order, tip=300, amount=2775, with_base=False)

        paid = await OrderStore(db).get_order(order.id)
        assert paid.total_charged == 2475
        assert paid.tip == 300

    async def test_missing_tip_defaults_to_zero(self, db, make_order, processor):
        order = await make_order()
        payload = payment_event(order.id, 2475)

        await processor.handle(payload.encode(), sign(payload))

        paid = await OrderStore(db).get_order(order.id)
        assert paid.tip == 0
        assert paid.total_charged == 2475

    async def test_missing_order_id(self, db, make_order, processor):
        order = await make_order()
        payload = payment_event(None, 2475, tip=0)

        with pytest.raises(MissingCorrelation):
            await processor.handle(payload.encode(), sign(payload))

        assert (await OrderStore(db).get_order(order.id)).payment_status == PaymentStatus.UNPAID

    async def test_unknown_order_is_acknowledged(self, db, processor):
        payload = payment_event("no-such-order", 2475, tip=0)

        outcome = await processor.handle(payload.encode(), sign(payload))

        assert outcome.action == "ignored"
        assert not outcome.order_paid
        assert await count_rows(db, KitchenTicket) == 0


class TestDuplicateDelivery:
    """Redelivered events never change money state or duplicate tickets."""

    async def test_second_delivery_is_noop(self, db, make_order, pay):
        order = await make_order()
        first = await pay(order, tip=300)
        paid_at = (await OrderStore(db).get_order(order.id)).paid_at

        second = await pay(order, tip=300)

        assert second.action == "duplicate"
        assert second.ticket_id == first.ticket_id
        stored = await OrderStore(db).get_order(order.id)
        assert stored.total_charged == 2475
        assert stored.tip == 300
        assert stored.paid_at == paid_at
        assert await count_rows(db, KitchenTicket) == 1
        assert await count_rows(db, KitchenTicketItem) == 2

    async def test_replay_with_other_amount_changes_nothing(self, db, make_order, pay):
        order = await make_order()
        await pay(order, tip=300)

        await pay(order, tip=900, amount=3375)

        stored = await OrderStore(db).get_order(order.id)
        assert stored.tip == 300
        assert stored.amount_received == 2775

    async def test_concurrent_deliveries(self, db, make_order, session_maker, payment_service):
        order = await make_order()
        payload = payment_event(order.id, 2775, tip=300, base_amount=2475)

        async def deliver():
            async with session_maker() as session:
                processor = WebhookFulfillmentProcessor(session, payment_service)
                return await processor.handle(payload.encode(), sign(payload))

        outcomes = await asyncio.gather(*[deliver() for _ in range(4)])

        assert sorted(o.action for o in outcomes) == ["duplicate", "duplicate", "duplicate", "recorded"]
        assert len({o.ticket_id for o in outcomes}) == 1
        assert await count_rows(db, KitchenTicket) == 1
        assert await count_rows(db, KitchenTicketItem) == 2

    async def test_redelivery_heals_partial_ticket(self, db, make_order, pay):
        order = await make_order()
        await pay(order)
        await db.execute(KitchenTicketItem.__table__.delete())
        await db.commit()

        await pay(order)

        assert await count_rows(db, KitchenTicketItem) == 2


class TestTicketFailures:
    """Ticket problems never undo a recorded payment."""

    async def test_order_without_items_still_paid(self, db, pay, caplog):
        order = Order(
            order_number=5001,
            source=OrderSource.KDS,
            customer_name="Walk In",
            subtotal=0,
            tax=0,
            tax_rate_bps=1075,
            total_charged=1000,
            order_status=OrderStatus.NEW,
            payment_status=PaymentStatus.PENDING,
        )
        db.add(order)
        await db.commit()

        with caplog.at_level(logging.WARNING, logger="orderflow.services.kitchen"):
            outcome = await pay(order, amount=1000)

        assert outcome.action == "recorded"
        assert outcome.ticket_id is not None
        assert "has no items" in caplog.text
        assert (await OrderStore(db).get_order(order.id)).payment_status == PaymentStatus.PAID

    async def test_materialization_failure_keeps_paid_state(self, db, make_order, pay, monkeypatch):
        order = await make_order()

        async def broken(self, order_id):
            raise TicketMaterializationFailed(order_id)

        monkeypatch.setattr(KitchenTicketQueue, "materialize", broken)

        outcome = await pay(order, tip=300)

        assert outcome.action == "recorded"
        assert outcome.ticket_id is None
        assert (await OrderStore(db).get_order(order.id)).payment_status == PaymentStatus.PAID

        monkeypatch.undo()
        cutoff = datetime.now(timezone.utc) + timedelta(seconds=5)
        unticketed = await KitchenTicketQueue(db).find_unticketed_orders(cutoff)
        assert [o.id for o in unticketed] == [order.id]

    async def test_ticket_timeout_keeps_paid_state(
        self, db, make_order, payment_service, settings, monkeypatch, caplog
    ):
        order = await make_order()
        order_id = order.id

        async def slow(self, order_id):
            await asyncio.sleep(1)

        monkeypatch.setattr(KitchenTicketQueue, "materialize", slow)
        processor = WebhookFulfillmentProcessor(
            db, payment_service,
            settings=settings.model_copy(update={"webhook_timeout_seconds": 0.1}),
        )
        payload = payment_event(order_id, 2475, tip=0)

        with caplog.at_level(logging.ERROR, logger="orderflow.services.fulfillment"):
            outcome = await processor.handle(payload.encode(), sign(payload))

        assert outcome.action == "recorded"
        assert outcome.order_paid
        assert outcome.ticket_id is None
        assert "ticket_materialization_failed" in caplog.text
        assert (await OrderStore(db).get_order(order_id)).payment_status == PaymentStatus.PAID

        monkeypatch.undo()
        cutoff = datetime.now(timezone.utc) + timedelta(seconds=5)
        unticketed = await KitchenTicketQueue(db).find_unticketed_orders(cutoff)
        assert [o.id for o in unticketed] == [order.id]


class TestPaymentFailed:
    async def test_failed_payment_voids_order(self, db, make_order, processor):
        order = await make_order()
        payload = payment_event(order.id, 2475, event_type="payment_intent.payment_failed")

        outcome = await processor.handle(payload.encode(), sign(payload))

        assert outcome.action == "recorded"
        assert not outcome.order_paid
        stored = await OrderStore(db).get_order(order.id)
        assert stored.payment_status == PaymentStatus.FAILED
        assert stored.order_status == OrderStatus.VOIDED
        assert await count_rows(db, KitchenTicket) == 0

    async def test_failure_after_payment_is_ignored(self, db, make_order, pay, processor):
        order = await make_order()
        await pay(order)
        payload = payment_event(order.id, 2475, event_type="payment_intent.payment_failed")

        outcome = await processor.handle(payload.encode(), sign(payload))

        assert outcome.action == "ignored"
        stored = await OrderStore(db).get_order(order.id)
        assert stored.payment_status == PaymentStatus.PAID
        assert stored.order_status == OrderStatus.PAID

    async def test_success_after_failure_records_payment(self, db, make_order, pay, processor):
        order = await make_order()
        failed = payment_event(order.id, 2475, event_type="payment_intent.payment_failed")
        await processor.handle(failed.encode(), sign(failed))

        outcome = await pay(order)

        assert outcome.action == "recorded"
        assert (await OrderStore(db).get_order(order.id)).payment_status == PaymentStatus.PAID


class TestOtherEvents:
    async def test_unhandled_type_is_acknowledged(self, db, make_order, processor):
        order = await make_order()
        payload = payment_event(order.id, 2475, event_type="charge.refunded")

        outcome = await processor.handle(payload.encode(), sign(payload))

        assert outcome.action == "ignored"
        assert outcome.event_type == "charge.refunded"
        assert (await OrderStore(db).get_order(order.id)).payment_status == PaymentStatus.UNPAID
