"""
Pydantic Schemas for Request/Response Validation

Request shapes for the intake channels and staff UI, response shapes for
orders, payment authorizations, kitchen tickets and notifications.
All money values are integer cents.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
import re

from orderflow.models import (
    Milestone,
    OrderSource,
    OrderStatus,
    PaymentChoice,
    PaymentStatus,
    PickupMode,
    TicketStatus,
)


def _normalize_phone(v: Optional[str]) -> Optional[str]:
    if v is None or v.strip() == "":
        return None
    cleaned = re.sub(r'[^\d]', '', v)
    if len(cleaned) < 10:
        raise ValueError('Phone number must have at least 10 digits')
    return v.strip()


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderItemCreate(BaseModel):
    """Single line in an incoming order."""
    menu_item_id: Optional[str] = Field(None, max_length=64, examples=["pad-thai"])
    name: str = Field(..., min_length=1, max_length=200, examples=["Pad Thai"])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    unit_price_cents: int = Field(..., ge=0, examples=[1450])
    options_summary: Optional[str] = Field(None, max_length=500, examples=["Chicken, Medium spicy"])
    special_instructions: Optional[str] = Field(None, max_length=500)

    @property
    def line_subtotal(self) -> int:
        return self.quantity * self.unit_price_cents


class OrderCreate(BaseModel):
    """Request schema for creating a new order from any intake channel."""

    source: OrderSource = Field(default=OrderSource.ONLINE, examples=["online", "ai_phone"])

    # Customer Info
    customer_name: str = Field(..., max_length=100, examples=["Jane Doe"])
    customer_phone: Optional[str] = Field(None, max_length=20, examples=["510-555-0199"])
    customer_email: Optional[str] = Field(None, examples=["jane@example.com"])
    sms_opt_in: bool = Field(default=False)

    # Pickup
    pickup_mode: PickupMode = Field(default=PickupMode.ASAP)
    pickup_scheduled_at: Optional[datetime] = Field(None, examples=["2026-10-18T18:30:00-07:00"])

    # Payment
    payment_choice: PaymentChoice = Field(default=PaymentChoice.PAY_NOW)

    # Order Items (emptiness is reported by the order store)
    items: List[OrderItemCreate] = Field(default_factory=list)

    @field_validator('customer_phone')
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_phone(v)

    @field_validator('customer_email')
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v.strip() == "":
            return None
        v = v.strip()
        if not re.match(r'^[\w\.\+-]+@[\w\.-]+\.\w+$', v):
            raise ValueError('Invalid email format')
        return v


class ContactUpdate(BaseModel):
    """Narrow contact update made before payment is confirmed."""
    customer_name: Optional[str] = Field(None, max_length=100)
    customer_phone: Optional[str] = Field(None, max_length=20)
    sms_opt_in: Optional[bool] = None

    @field_validator('customer_phone')
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_phone(v)


class TipRequest(BaseModel):
    """Tip to apply to an order's pending authorization."""
    tip_cents: int = Field(..., examples=[300])


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderItemResponse(BaseModel):
    id: int
    menu_item_id: Optional[str]
    name: str
    quantity: int
    unit_price: int
    line_subtotal: int
    options_summary: Optional[str]
    special_instructions: Optional[str]

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: str
    order_number: int
    source: OrderSource
    customer_name: str
    customer_phone: Optional[str]
    customer_email: Optional[str]
    sms_opt_in: bool
    pickup_mode: PickupMode
    pickup_scheduled_at: Optional[datetime]
    payment_choice: PaymentChoice
    subtotal: int
    tax: int
    tax_rate_bps: int
    service_fee: int
    tip: int
    total_charged: int
    amount_received: Optional[int]
    order_status: OrderStatus
    payment_status: PaymentStatus
    authorization_id: Optional[str]
    paid_at: Optional[datetime]
    accepted_at: Optional[datetime]
    ready_at: Optional[datetime]
    created_at: Optional[datetime]
    items: List[OrderItemResponse]

    class Config:
        from_attributes = True


class OrderCreateResponse(BaseModel):
    """Response after successfully creating an order."""
    success: bool
    message: str
    order_id: str
    order_number: int
    order_status: str
    payment_status: str
    total_charged: int
    authorization_id: Optional[str] = None
    client_secret: Optional[str] = None


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class OrderStatusResponse(BaseModel):
    """Customer-facing status of the order found by a lookup."""
    order_id: str
    order_number: int
    order_status: OrderStatus
    payment_status: PaymentStatus
    message: str


class AuthorizationResponse(BaseModel):
    """Payment authorization handle for the checkout UI."""
    order_id: str
    authorization_id: str
    client_secret: Optional[str]
    amount: int


class TipResponse(BaseModel):
    order_id: str
    tip: int
    base_amount: int
    new_total: int
    authorization_status: Optional[str] = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to the payment provider."""
    received: bool = True
    event_type: str
    action: str
    order_id: Optional[str] = None
    ticket_id: Optional[int] = None


class KitchenTicketItemResponse(BaseModel):
    id: int
    order_item_id: int
    display_name: str
    quantity: int
    modifiers: Optional[str]
    instructions: Optional[str]
    status: TicketStatus

    class Config:
        from_attributes = True


class KitchenTicketResponse(BaseModel):
    id: int
    order_id: str
    order_number: int
    station: str
    status: TicketStatus
    created_at: Optional[datetime]
    items: List[KitchenTicketItemResponse]

    class Config:
        from_attributes = True


class KitchenQueueResponse(BaseModel):
    total: int
    tickets: List[KitchenTicketResponse]


class AdvanceResponse(BaseModel):
    ticket: KitchenTicketResponse
    previous_status: str
    changed: bool
    milestone: Optional[Milestone] = None


class NotificationDispatchResponse(BaseModel):
    order_id: str
    milestone: Milestone
    status: str
    channel: Optional[str] = None
    message_id: Optional[str] = None
    reason: Optional[str] = None


class UnticketedOrder(BaseModel):
    order_id: str
    order_number: int
    paid_at: Optional[datetime]


class ReconciliationResponse(BaseModel):
    grace_seconds: int
    total: int
    orders: List[UnticketedOrder]


class UnavailableItemsResponse(BaseModel):
    item_ids: List[str]


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_service: str
    notification_service: str
    timestamp: datetime
