"""
Order Store

Creates orders from intake channels and owns the money fields:

    subtotal      = sum(unit_price * quantity)
    tax           = round_half_up(subtotal * tax_rate_bps / 10000)
    service_fee   = round_half_up(subtotal * service_fee_bps / 10000)
    total_charged = subtotal + tax + service_fee + tip      (tip = 0 here)

Rates are snapshotted onto the order so later configuration changes never
alter historical orders.
"""

import logging
import re
from typing import Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import (
    ItemInsertFailed,
    ItemsUnavailable,
    OrderNotFound,
    ValidationError,
)
from orderflow.models import (
    Order,
    OrderItem,
    OrderNumberCounter,
    OrderSource,
    OrderStatus,
    PaymentChoice,
    PaymentStatus,
    PickupMode,
)
from orderflow.schemas import OrderCreate, OrderItemCreate
from orderflow.services.availability import AvailabilityProvider, DatabaseAvailability

logger = logging.getLogger(__name__)


def apply_basis_points(amount: int, bps: int) -> int:
    """``amount * bps / 10000`` rounded half-up, for non-negative amounts."""
    return (amount * bps + 5000) // 10000


def calculate_order_totals(
    items: Sequence[OrderItemCreate],
    tax_rate_bps: int,
    service_fee_bps: int,
) -> dict[str, int]:
    """Calculate order subtotal, tax, service fee and total (cents)."""
    subtotal = sum(item.unit_price_cents * item.quantity for item in items)
    tax = apply_basis_points(subtotal, tax_rate_bps)
    service_fee = apply_basis_points(subtotal, service_fee_bps)

    return {
        "subtotal": subtotal,
        "tax": tax,
        "service_fee": service_fee,
        "tip": 0,
        "total_charged": subtotal + tax + service_fee,
    }


def initial_statuses(
    source: OrderSource, payment_choice: PaymentChoice
) -> tuple[OrderStatus, PaymentStatus]:
    """Order and payment status an intake channel starts an order in."""
    if source == OrderSource.ONLINE:
        # Web checkout stays a draft until the customer confirms payment
        return OrderStatus.DRAFT, PaymentStatus.UNPAID
    if payment_choice == PaymentChoice.PAY_AT_PICKUP:
        return OrderStatus.NEW, PaymentStatus.NEEDS_PAYMENT
    return OrderStatus.NEW, PaymentStatus.PENDING


def status_message(order: Order, restaurant_name: str) -> str:
    """Short, speakable status line for a customer asking about their order."""
    number = order.order_number
    if order.order_status == OrderStatus.READY:
        return (
            f"Great news! Your order #{number} is READY for pickup. "
            f"Please come to the counter at {restaurant_name}."
        )
    if order.order_status == OrderStatus.ACCEPTED:
        return f"Your order #{number} has been accepted and is being prepared."
    if order.payment_status == PaymentStatus.NEEDS_PAYMENT:
        return (
            f"Your order #{number} is confirmed and waiting in the queue. "
            "You'll pay when you arrive for pickup."
        )
    if order.order_status in (OrderStatus.PAID, OrderStatus.NEW):
        return (
            f"Your order #{number} has been received and is waiting for the kitchen "
            "to accept it."
        )
    return f"Your order #{number} has status: {order.order_status.value}."


class OrderStore:
    """Persistence and validation for order headers and line items."""

    def __init__(
        self,
        db: AsyncSession,
        availability: Optional[AvailabilityProvider] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.availability = availability or DatabaseAvailability(db)
        self.settings = settings or get_settings()

    # =========================================================================
    # CREATE
    # =========================================================================

    def validate(self, payload: OrderCreate) -> None:
        """
        Check the request before anything is written.

        Raises:
            ValidationError: Missing items, name, email for pay-now orders,
                or pickup time for scheduled orders.
        """
        if not payload.items:
            raise ValidationError("Order must contain at least one item")
        if not payload.customer_name or not payload.customer_name.strip():
            raise ValidationError("Missing customer_name")
        if payload.payment_choice == PaymentChoice.PAY_NOW and not payload.customer_email:
            raise ValidationError("customer_email is required to pay now")
        if payload.pickup_mode == PickupMode.SCHEDULED and payload.pickup_scheduled_at is None:
            raise ValidationError("pickup_scheduled_at is required for scheduled pickup")

    async def check_availability(self, items: Sequence[OrderItemCreate]) -> None:
        """Raise ItemsUnavailable if any line references an 86'd item."""
        unavailable = await self.availability.unavailable_item_ids()
        if not unavailable:
            return

        offending = [
            item.name for item in items
            if item.menu_item_id and str(item.menu_item_id) in unavailable
        ]
        if offending:
            logger.info(f"Rejecting order with unavailable items: {offending}")
            raise ItemsUnavailable(offending)

    async def create_order(self, payload: OrderCreate) -> Order:
        """
        Validate, price and persist a new order with its items.

        The header is committed first, then the items. If the items cannot
        be written the header is deleted again before ItemInsertFailed is
        raised, so no order without lines survives.
        """
        self.validate(payload)
        await self.check_availability(payload.items)

        totals = calculate_order_totals(
            payload.items, self.settings.tax_rate_bps, self.settings.service_fee_bps
        )
        order_status, payment_status = initial_statuses(payload.source, payload.payment_choice)

        order = Order(
            order_number=await self._allocate_order_number(),
            source=payload.source,
            customer_name=payload.customer_name.strip(),
            customer_phone=payload.customer_phone,
            customer_email=payload.customer_email,
            sms_opt_in=payload.sms_opt_in,
            pickup_mode=payload.pickup_mode,
            pickup_scheduled_at=(
                payload.pickup_scheduled_at
                if payload.pickup_mode == PickupMode.SCHEDULED else None
            ),
            payment_choice=payload.payment_choice,
            tax_rate_bps=self.settings.tax_rate_bps,
            service_fee_bps=self.settings.service_fee_bps,
            order_status=order_status,
            payment_status=payment_status,
            **totals,
        )
        self.db.add(order)
        await self.db.commit()
        order_id = order.id

        try:
            await self._insert_items(order_id, payload.items)
        except SQLAlchemyError as e:
            logger.error(f"Item insert failed for order {order_id}: {e}")
            await self.db.rollback()
            await self._delete_order(order_id)
            raise ItemInsertFailed(f"Could not store items for order {order_id}") from e

        logger.info(
            f"Order #{order.order_number} ({order_id}) created via {payload.source.value}: "
            f"{len(payload.items)} item(s), total {totals['total_charged']} cents"
        )
        return await self.get_order(order_id)

    async def _allocate_order_number(self) -> int:
        counter = OrderNumberCounter()
        self.db.add(counter)
        await self.db.flush()
        return counter.id + self.settings.order_number_offset

    async def _insert_items(self, order_id: str, items: Sequence[OrderItemCreate]) -> None:
        self.db.add_all([
            OrderItem(
                order_id=order_id,
                menu_item_id=item.menu_item_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price_cents,
                line_subtotal=item.line_subtotal,
                options_summary=item.options_summary,
                special_instructions=item.special_instructions,
            )
            for item in items
        ])
        await self.db.commit()

    async def _delete_order(self, order_id: str) -> None:
        """Compensating delete for a header whose items could not be stored."""
        await self.db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
        await self.db.execute(delete(Order).where(Order.id == order_id))
        await self.db.commit()
        logger.warning(f"Order {order_id} deleted after failed item insert")

    # =========================================================================
    # UPDATE
    # =========================================================================

    async def update_contact(
        self,
        order_id: str,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        sms_opt_in: Optional[bool] = None,
    ) -> Order:
        """Update contact details only; money fields are never touched."""
        values = {}
        if customer_name is not None:
            if not customer_name.strip():
                raise ValidationError("customer_name cannot be blank")
            values["customer_name"] = customer_name.strip()
        if customer_phone is not None:
            values["customer_phone"] = customer_phone
        if sms_opt_in is not None:
            values["sms_opt_in"] = sms_opt_in

        if not values:
            return await self.get_order(order_id)

        result = await self.db.execute(
            update(Order).where(Order.id == order_id).values(**values)
        )
        await self.db.commit()

        if result.rowcount == 0:
            raise OrderNotFound(order_id)

        logger.info(f"Order {order_id} contact updated: {sorted(values)}")
        return await self.get_order(order_id)

    # =========================================================================
    # READ
    # =========================================================================

    async def find_order(self, order_id: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_order(self, order_id: str) -> Order:
        order = await self.find_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def list_items(self, order_id: str) -> list[OrderItem]:
        result = await self.db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        return list(result.scalars().all())

    async def find_latest_order(
        self,
        order_number: Optional[int] = None,
        phone: Optional[str] = None,
    ) -> Order:
        """
        Most recent order for a customer, by order number or phone number.

        Phone numbers are compared on their last ten digits, so
        ``(510) 555-0199`` and ``+1 510-555-0199`` find the same orders.

        Raises:
            ValidationError: Neither lookup key given, or a phone number
                with fewer than ten digits
            OrderNotFound: No order matches
        """
        if order_number is not None:
            result = await self.db.execute(
                select(Order)
                .where(Order.order_number == order_number)
                .execution_options(populate_existing=True)
            )
            order = result.scalar_one_or_none()
            if order is None:
                raise OrderNotFound(str(order_number), f"Order #{order_number} not found")
            return order

        if not phone:
            raise ValidationError("Provide an order number or a phone number")
        digits = re.sub(r"\D", "", phone)
        if len(digits) < 10:
            raise ValidationError("Phone number must have at least 10 digits")

        result = await self.db.execute(
            select(Order)
            .where(Order.customer_phone.like(f"%{digits[-4:]}"))
            .order_by(Order.created_at.desc(), Order.order_number.desc())
            .execution_options(populate_existing=True)
        )
        for order in result.scalars():
            if re.sub(r"\D", "", order.customer_phone)[-10:] == digits[-10:]:
                return order
        raise OrderNotFound(phone, "No recent orders for that phone number")

    async def list_orders(
        self,
        skip: int = 0,
        limit: int = 10,
        order_status: Optional[OrderStatus] = None,
    ) -> tuple[int, list[Order]]:
        query = select(Order).order_by(Order.created_at.desc(), Order.order_number.desc())
        count_query = select(func.count(Order.id))

        if order_status is not None:
            query = query.where(Order.order_status == order_status)
            count_query = count_query.where(Order.order_status == order_status)

        total = (await self.db.execute(count_query)).scalar() or 0
        result = await self.db.execute(query.offset(skip).limit(limit))
        return total, list(result.scalars().all())
