"""
                        Services Module

Business logic for the fulfillment pipeline. Provider adapters follow the
hybrid architecture pattern: Mock (development) and Real (production).

Services:
    - orders: Order Store (intake, pricing, contact updates)
    - authorization: Payment authorization and tip adjustment
    - fulfillment: Stripe webhook processing
    - kitchen: Kitchen ticket queue
    - dispatcher: Claim-then-send milestone notifications
    - payment: Stripe / mock payment adapters
    - notifications: Twilio + SendGrid / mock messaging adapters
"""

from orderflow.services.authorization import PaymentAuthorizationManager
from orderflow.services.dispatcher import NotificationDispatcher
from orderflow.services.fulfillment import WebhookFulfillmentProcessor
from orderflow.services.kitchen import KitchenTicketQueue
from orderflow.services.orders import OrderStore

__all__ = [
    "OrderStore",
    "PaymentAuthorizationManager",
    "WebhookFulfillmentProcessor",
    "KitchenTicketQueue",
    "NotificationDispatcher",
]
