"""
Milestone message composition.

``paid`` gets a full receipt (items and totals); ``accepted`` and ``ready``
get a short status line. Each message is rendered for both channels so the
dispatcher can pick whichever contact the order has.
"""

import html
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from orderflow.core.config import Settings
from orderflow.models import Milestone, Order, OrderItem


@dataclass
class ComposedMessage:
    milestone: Milestone
    subject: str
    text: str
    html: str
    sms: str


def money(cents: Optional[int]) -> str:
    return f"${(cents or 0) / 100:.2f}"


def format_pickup(pickup_at: Optional[datetime], timezone: str) -> str:
    if pickup_at is None:
        return "ASAP"
    if pickup_at.tzinfo is None:
        pickup_at = pickup_at.replace(tzinfo=ZoneInfo("UTC"))
    local = pickup_at.astimezone(ZoneInfo(timezone))
    return f"Scheduled: {local.strftime('%a %b %d, %I:%M %p %Z')}"


def _subject(milestone: Milestone, order_number: int, restaurant: str) -> str:
    if milestone == Milestone.PAID:
        return f"Receipt for Order #{order_number} - {restaurant}"
    if milestone == Milestone.ACCEPTED:
        return f"Order #{order_number} accepted - {restaurant}"
    return f"Order #{order_number} is ready - {restaurant}"


def _item_lines(items: Sequence[OrderItem]) -> list[str]:
    lines = []
    for item in items:
        lines.append(f"{item.quantity}x {item.name}")
        if item.options_summary and item.options_summary.strip():
            options = item.options_summary.strip().replace("\n", " | ")
            lines.append(f"  - {options}")
        if item.special_instructions and item.special_instructions.strip():
            lines.append(f"  - Note: {item.special_instructions.strip()}")
    return lines


def _total_lines(order: Order) -> list[str]:
    lines = [
        f"Subtotal: {money(order.subtotal)}",
        f"Tax: {money(order.tax)}",
        f"Service Fee: {money(order.service_fee)}",
    ]
    if order.tip:
        lines.append(f"Tip: {money(order.tip)}")
    lines.append(f"Total: {money(order.base_amount + (order.tip or 0))}")
    return lines


def compose_message(
    milestone: Milestone,
    order: Order,
    items: Sequence[OrderItem],
    settings: Settings,
) -> ComposedMessage:
    """Render the customer message for one milestone."""
    milestone = Milestone(milestone)
    restaurant = settings.restaurant_name
    name = (order.customer_name or "").strip()
    greeting = f"Hi {name}," if name else "Hi,"
    pickup = format_pickup(order.pickup_scheduled_at, settings.pickup_timezone)

    if milestone == Milestone.PAID:
        body = [
            greeting,
            "",
            "Payment received. Here is your receipt.",
            "",
            f"Order: #{order.order_number}",
            f"Pickup: {pickup}",
            "",
            "Items:",
            *(_item_lines(items) or ["(No items found)"]),
            "",
            *_total_lines(order),
            "",
            restaurant,
            settings.restaurant_address,
            "If you did not place this order, please reply to this email.",
        ]
        sms = (
            f"{restaurant}: Payment received for order #{order.order_number} "
            f"({money(order.base_amount + (order.tip or 0))}). Pickup: {pickup}."
        )
    elif milestone == Milestone.ACCEPTED:
        body = [
            greeting,
            "",
            f"Your order #{order.order_number} has been accepted and is now being prepared.",
            f"Pickup: {pickup}",
            "",
            restaurant,
            settings.restaurant_address,
        ]
        sms = (
            f"{restaurant}: Order #{order.order_number} confirmed and being prepared. "
            f"Questions? Call {settings.restaurant_phone}"
        )
    else:
        body = [
            greeting,
            "",
            f"Your order #{order.order_number} is ready for pickup.",
            "",
            "Please come to the counter when you arrive.",
            "",
            f"Thank you for choosing {restaurant}!",
            "",
            restaurant,
            settings.restaurant_address,
        ]
        sms = (
            f"{restaurant}: Order #{order.order_number} is ready for pickup! "
            f"Questions? Call {settings.restaurant_phone}"
        )

    text = "\n".join(body)
    body_html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        + "".join(f"<p>{html.escape(line)}</p>" if line else "<br>" for line in body)
        + "</div>"
    )

    return ComposedMessage(
        milestone=milestone,
        subject=_subject(milestone, order.order_number, restaurant),
        text=text,
        html=body_html,
        sms=sms,
    )
