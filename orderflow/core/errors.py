"""
Custom exceptions for the fulfillment pipeline.

Every error carries a machine-readable ``kind`` and the HTTP status the API
layer renders it with. ``public`` marks errors whose message is safe to
show a customer; everything else is replaced by a generic message and only
logged in full.
"""

from typing import Iterable, Optional


class OrderflowError(Exception):
    """Base exception for pipeline errors."""

    kind = "orderflow_error"
    status_code = 500
    public = False
    public_message = "Your order could not be processed. Please try again."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.public_message
        super().__init__(self.message)

    @property
    def detail(self) -> str:
        """Message suitable for a response body."""
        return self.message if self.public else self.public_message


class ValidationError(OrderflowError):
    """Raised when a request is missing a required field or is inconsistent."""

    kind = "validation_error"
    status_code = 422
    public = True


class OrderNotFound(OrderflowError):
    """Raised when an order id does not match any order."""

    kind = "order_not_found"
    status_code = 404
    public = True

    def __init__(self, order_id: str, message: Optional[str] = None):
        self.order_id = order_id
        super().__init__(message or f"Order {order_id} not found")


class TicketNotFound(OrderflowError):
    """Raised when a kitchen ticket id does not match any ticket."""

    kind = "ticket_not_found"
    status_code = 404
    public = True

    def __init__(self, ticket_id: int, message: Optional[str] = None):
        self.ticket_id = ticket_id
        super().__init__(message or f"Kitchen ticket {ticket_id} not found")


class ItemsUnavailable(OrderflowError):
    """Raised when an order references items on the 86-list."""

    kind = "items_unavailable"
    status_code = 409
    public = True

    def __init__(self, item_names: Iterable[str], message: Optional[str] = None):
        self.item_names = list(item_names)
        if message is None:
            names = ", ".join(self.item_names)
            message = (
                f"Sorry, the following item(s) are currently unavailable: {names}. "
                "Please remove them and try again."
            )
        super().__init__(message)


class ItemInsertFailed(OrderflowError):
    """Raised when order lines could not be stored; the header was removed."""

    kind = "item_insert_failed"
    status_code = 500


class AuthorizationNotFound(OrderflowError):
    """Raised when an order has no usable payment authorization."""

    kind = "authorization_not_found"
    status_code = 404
    public = True


class AlreadyCaptured(OrderflowError):
    """Raised when the authorization amount can no longer change."""

    kind = "already_captured"
    status_code = 409
    public = True
    public_message = "Payment has already been completed for this order."


class PaymentFailed(OrderflowError):
    """Raised when the order's payment already failed and the order was voided."""

    kind = "payment_failed"
    status_code = 409
    public = True
    public_message = "Payment for this order failed. Please place the order again."


class TipTooLarge(OrderflowError):
    """Raised when a tip exceeds the configured ceiling."""

    kind = "tip_too_large"
    status_code = 422
    public = True

    def __init__(self, tip: int, ceiling: int):
        self.tip = tip
        self.ceiling = ceiling
        super().__init__(f"Tip of {tip} cents exceeds the maximum of {ceiling} cents")


class PaymentProviderError(OrderflowError):
    """Raised when the payment provider rejects or fails a call."""

    kind = "payment_provider_error"
    status_code = 502
    public_message = "Payment could not be confirmed. Please try again."

    def __init__(self, message: Optional[str] = None, error_code: Optional[str] = None):
        self.error_code = error_code
        super().__init__(message)


class SignatureInvalid(OrderflowError):
    """Raised when a webhook signature is missing or does not verify."""

    kind = "signature_invalid"
    status_code = 400
    public = True


class MissingCorrelation(OrderflowError):
    """Raised when a payment event does not carry the order id."""

    kind = "missing_correlation"
    status_code = 400
    public = True


class TicketMaterializationFailed(OrderflowError):
    """Raised when a kitchen ticket could not be written for a paid order."""

    kind = "ticket_materialization_failed"

    def __init__(self, order_id: str, message: Optional[str] = None):
        self.order_id = order_id
        super().__init__(message or f"Could not create kitchen ticket for order {order_id}")


class NotificationSendFailed(OrderflowError):
    """Raised when a milestone message could not be delivered."""

    kind = "notification_send_failed"
    status_code = 502

    def __init__(self, order_id: str, milestone: str, message: Optional[str] = None):
        self.order_id = order_id
        self.milestone = milestone
        super().__init__(message or f"Could not send {milestone} notification for order {order_id}")
