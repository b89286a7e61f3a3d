"""
SQLAlchemy Database Models

Order header + line items, the kitchen ticket aggregate, the 86-list and
the order number counter. All money columns are integer cents.

Notification claims are not a table of their own: each milestone has a
nullable timestamp column on the order, set by a conditional update before
a message is sent and cleared again if delivery fails.

Version: 1.0.0
"""

import enum
import uuid

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Enum, Boolean, ForeignKey,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from orderflow.database import Base


class OrderStatus(str, enum.Enum):
    """Customer-facing order lifecycle."""
    DRAFT = "draft"
    NEW = "new"
    PAID = "paid"
    ACCEPTED = "accepted"
    READY = "ready"
    VOIDED = "voided"
    PAYMENT_FAILED = "payment_failed"
    ERROR = "error"


class PaymentStatus(str, enum.Enum):
    """Payment lifecycle, driven by the authorization manager and webhooks."""
    DRAFT = "draft"
    UNPAID = "unpaid"
    PENDING = "pending"
    NEEDS_PAYMENT = "needs_payment"
    PAID = "paid"
    FAILED = "failed"


class PickupMode(str, enum.Enum):
    ASAP = "asap"
    SCHEDULED = "scheduled"


class PaymentChoice(str, enum.Enum):
    PAY_NOW = "pay_now"
    PAY_AT_PICKUP = "pay_at_pickup"


class OrderSource(str, enum.Enum):
    """Intake channel that created the order."""
    ONLINE = "online"
    AI_PHONE = "ai_phone"
    KDS = "kds"


class TicketStatus(str, enum.Enum):
    """Kitchen ticket status. Forward-only."""
    NEW = "new"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class Milestone(str, enum.Enum):
    """Order events the customer is notified about."""
    PAID = "paid"
    ACCEPTED = "accepted"
    READY = "ready"


def _new_order_id() -> str:
    return str(uuid.uuid4())


class Order(Base):
    """
    Order header - single source of truth for money fields and status.

    Money invariant until payment is recorded:
        total_charged == subtotal + tax + service_fee + tip
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_order_id)
    order_number = Column(Integer, nullable=False, unique=True, index=True)
    source = Column(Enum(OrderSource), nullable=False, default=OrderSource.ONLINE)

    # =========================================================================
    # CUSTOMER INFORMATION
    # =========================================================================
    customer_name = Column(String(100), nullable=False)
    customer_phone = Column(String(20), nullable=True)
    customer_email = Column(String(255), nullable=True)
    sms_opt_in = Column(Boolean, nullable=False, default=False)

    # =========================================================================
    # PICKUP
    # =========================================================================
    pickup_mode = Column(Enum(PickupMode), nullable=False, default=PickupMode.ASAP)
    pickup_scheduled_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # PRICING (cents)
    # =========================================================================
    subtotal = Column(Integer, nullable=False)
    tax = Column(Integer, nullable=False)
    tax_rate_bps = Column(Integer, nullable=False)
    service_fee = Column(Integer, nullable=False, default=0)
    service_fee_bps = Column(Integer, nullable=False, default=0)
    tip = Column(Integer, nullable=False, default=0)
    total_charged = Column(Integer, nullable=False)
    amount_received = Column(Integer, nullable=True)

    # =========================================================================
    # PAYMENT
    # =========================================================================
    payment_choice = Column(
        Enum(PaymentChoice), nullable=False, default=PaymentChoice.PAY_NOW
    )
    payment_status = Column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.UNPAID, index=True
    )
    authorization_id = Column(String(100), nullable=True, unique=True)

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    order_status = Column(
        Enum(OrderStatus), nullable=False, default=OrderStatus.DRAFT, index=True
    )
    paid_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # NOTIFICATION CLAIMS
    # =========================================================================
    paid_notified_at = Column(DateTime(timezone=True), nullable=True)
    accepted_notified_at = Column(DateTime(timezone=True), nullable=True)
    ready_notified_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    @classmethod
    def claim_column(cls, milestone: "Milestone"):
        """Claim timestamp column for a notification milestone."""
        return {
            Milestone.PAID: cls.paid_notified_at,
            Milestone.ACCEPTED: cls.accepted_notified_at,
            Milestone.READY: cls.ready_notified_at,
        }[Milestone(milestone)]

    def milestone_reached(self, milestone: "Milestone") -> bool:
        """Whether the order has actually been paid / accepted / made ready."""
        reached_at = {
            Milestone.PAID: self.paid_at,
            Milestone.ACCEPTED: self.accepted_at,
            Milestone.READY: self.ready_at,
        }[Milestone(milestone)]
        return reached_at is not None

    @property
    def base_amount(self) -> int:
        """Order amount before tip."""
        return self.subtotal + self.tax + self.service_fee

    def __repr__(self):
        return (
            f"<Order #{self.order_number} - {self.customer_name} - "
            f"{self.order_status.value}/{self.payment_status.value}>"
        )


class OrderItem(Base):
    """One order line. Immutable once inserted."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    menu_item_id = Column(String(64), nullable=True)
    name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    line_subtotal = Column(Integer, nullable=False)
    options_summary = Column(Text, nullable=True)
    special_instructions = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem {self.quantity}x {self.name}>"


class KitchenTicket(Base):
    """
    Kitchen work item derived from a paid order.

    The unique order reference makes ticket creation idempotent under
    duplicate webhook delivery.
    """
    __tablename__ = "kitchen_tickets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        String(36), ForeignKey("orders.id"), nullable=False, unique=True, index=True
    )
    order_number = Column(Integer, nullable=False)
    station = Column(String(30), nullable=False, default="kitchen")
    status = Column(Enum(TicketStatus), nullable=False, default=TicketStatus.NEW, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship(
        "KitchenTicketItem",
        back_populates="ticket",
        lazy="selectin",
        order_by="KitchenTicketItem.id",
    )

    def __repr__(self):
        return f"<KitchenTicket {self.id} - order #{self.order_number} - {self.status.value}>"


class KitchenTicketItem(Base):
    """One ticket line. Each order item is claimed by at most one ticket."""
    __tablename__ = "kitchen_ticket_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(
        Integer, ForeignKey("kitchen_tickets.id"), nullable=False, index=True
    )
    order_item_id = Column(
        Integer, ForeignKey("order_items.id"), nullable=False, unique=True
    )
    display_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    modifiers = Column(Text, nullable=True)
    instructions = Column(Text, nullable=True)
    status = Column(Enum(TicketStatus), nullable=False, default=TicketStatus.NEW)

    ticket = relationship("KitchenTicket", back_populates="items")


class UnavailableItem(Base):
    """The 86-list: menu items currently out of stock."""
    __tablename__ = "menu_86"

    item_id = Column(String(64), primary_key=True)
    item_name = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class OrderNumberCounter(Base):
    """Monotonic counter backing human-readable order numbers."""
    __tablename__ = "order_number_counter"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
