"""Request payloads and signed provider events used across the test suite."""

import hashlib
import hmac
import json
import time
from typing import Any, Optional

WEBHOOK_SECRET = "whsec_test_secret"


def order_payload(**overrides: Any) -> dict[str, Any]:
    """
    Two lines totalling 2000 cents:
    tax 215 (1075 bps), service fee 260 (1300 bps), total 2475.
    """
    payload = {
        "source": "online",
        "customer_name": "Jane Doe",
        "customer_phone": "510-555-0199",
        "customer_email": "jane@example.com",
        "sms_opt_in": False,
        "pickup_mode": "asap",
        "payment_choice": "pay_now",
        "items": [
            {
                "menu_item_id": "pad-thai",
                "name": "Pad Thai",
                "quantity": 2,
                "unit_price_cents": 650,
                "options_summary": "Chicken, Medium spicy",
            },
            {
                "menu_item_id": "spring-rolls",
                "name": "Spring Rolls",
                "quantity": 1,
                "unit_price_cents": 700,
                "special_instructions": "Extra sauce",
            },
        ],
    }
    payload.update(overrides)
    return payload


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={mac}"


def payment_event(
    order_id: Optional[str],
    amount: int,
    tip: Optional[int] = None,
    base_amount: Optional[int] = None,
    event_type: str = "payment_intent.succeeded",
    authorization_id: str = "pi_test_123",
) -> str:
    metadata = {}
    if order_id is not None:
        metadata["orderId"] = order_id
    if tip is not None:
        metadata["tip"] = str(tip)
    if base_amount is not None:
        metadata["base_amount"] = str(base_amount)

    return json.dumps({
        "id": "evt_test_1",
        "type": event_type,
        "data": {
            "object": {
                "id": authorization_id,
                "object": "payment_intent",
                "amount": amount,
                "amount_received": amount,
                "metadata": metadata,
            }
        },
    })
