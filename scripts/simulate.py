"""
Chaos Simulation Script

Drives the fulfillment pipeline end to end against a running server
(development mode, mock payment provider) and hammers it with duplicate
signed webhooks to check that money state, kitchen tickets and
notifications stay exactly-once.

Run from project root: python scripts/simulate.py

Requires STRIPE_WEBHOOK_SECRET to match the server's.

Version: 1.0.0
"""

import asyncio
import hashlib
import hmac
import json
import os
import random
import sys
import time
import argparse
from datetime import datetime
from typing import Any, Optional

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8001")
WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_dev_secret")
TOTAL_ORDERS = 20
DUPLICATE_DELIVERIES = 5

# Sample data for random orders
FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]
LAST_NAMES = ["Smith", "Johnson", "Williams", "Brown", "Jones", "Garcia", "Miller", "Davis", "Wilson", "Taylor"]
MENU_ITEMS = [
    {"menu_item_id": "pad-thai", "name": "Pad Thai", "unit_price_cents": 1450},
    {"menu_item_id": "green-curry", "name": "Green Curry", "unit_price_cents": 1595},
    {"menu_item_id": "tom-yum", "name": "Tom Yum Soup", "unit_price_cents": 895},
    {"menu_item_id": "spring-rolls", "name": "Spring Rolls", "unit_price_cents": 750},
    {"menu_item_id": "mango-sticky-rice", "name": "Mango Sticky Rice", "unit_price_cents": 850},
    {"menu_item_id": "thai-iced-tea", "name": "Thai Iced Tea", "unit_price_cents": 500},
]
TIPS = [0, 0, 200, 300, 450, 1000]


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    items = []
    for _ in range(random.randint(1, 4)):
        item = random.choice(MENU_ITEMS).copy()
        item["quantity"] = random.randint(1, 3)
        item["options_summary"] = random.choice([None, "Chicken, Medium spicy", "Tofu, Mild"])
        items.append(item)
    return items


def generate_order_payload() -> dict[str, Any]:
    """Phone order that pays now, so the server authorizes immediately."""
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    return {
        "source": "ai_phone",
        "customer_name": f"{first} {last}",
        "customer_phone": f"510-555-{random.randint(1000, 9999)}",
        "customer_email": f"{first.lower()}.{last.lower()}@example.com",
        "sms_opt_in": random.choice([True, False]),
        "pickup_mode": "asap",
        "payment_choice": "pay_now",
        "items": generate_random_items(),
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    """Stripe-Signature header for ``payload``."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def payment_succeeded_event(authorization_id: str, order_id: str, amount: int, tip: int) -> str:
    return json.dumps({
        "id": f"evt_sim_{random.randint(100000, 999999)}",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": authorization_id,
                "object": "payment_intent",
                "amount": amount,
                "amount_received": amount,
                "status": "succeeded",
                "metadata": {"orderId": order_id, "tip": str(tip), "base_amount": str(amount - tip)},
            }
        },
    })


# =============================================================================
# SINGLE ORDER FLOW
# =============================================================================

async def run_order_flow(client: httpx.AsyncClient, order_num: int) -> dict[str, Any]:
    """Create -> tip -> N concurrent duplicate webhooks -> verify."""
    start_time = time.time()

    try:
        response = await client.post("/api/orders", json=generate_order_payload())
        if response.status_code != 200:
            return {"order_num": order_num, "success": False, "error": response.text[:100]}
        created = response.json()
        order_id = created["order_id"]
        authorization_id: Optional[str] = created.get("authorization_id")
        if not authorization_id:
            return {"order_num": order_num, "success": False, "error": "no authorization"}

        tip = random.choice(TIPS)
        amount = created["total_charged"]
        if tip:
            response = await client.post(f"/api/orders/{order_id}/tip", json={"tip_cents": tip})
            if response.status_code != 200:
                return {"order_num": order_num, "success": False, "error": response.text[:100]}
            amount = response.json()["new_total"]

        payload = payment_succeeded_event(authorization_id, order_id, amount, tip)
        deliveries = await asyncio.gather(*[
            client.post(
                "/webhook/stripe",
                content=payload,
                headers={"stripe-signature": sign_payload(payload), "content-type": "application/json"},
            )
            for _ in range(DUPLICATE_DELIVERIES)
        ])
        actions = [d.json().get("action") if d.status_code == 200 else d.status_code for d in deliveries]
        ticket_ids = {d.json().get("ticket_id") for d in deliveries if d.status_code == 200}

        order = (await client.get(f"/api/orders/{order_id}")).json()
        consistent = (
            order["payment_status"] == "paid"
            and order["tip"] == tip
            and order["total_charged"] + order["tip"] == amount
            and actions.count("recorded") == 1
            and len(ticket_ids - {None}) == 1
        )

        return {
            "order_num": order_num,
            "success": consistent,
            "order_id": order_id,
            "total": amount,
            "actions": actions,
            "time": round(time.time() - start_time, 3),
            "error": None if consistent else f"inconsistent: {actions} {order['payment_status']}",
        }
    except httpx.HTTPError as e:
        return {"order_num": order_num, "success": False, "error": str(e)[:100]}


async def advance_all_tickets(client: httpx.AsyncClient) -> int:
    """Tap every active ticket twice concurrently; each must move one step."""
    tickets = (await client.get("/api/kitchen/tickets")).json()["tickets"]
    moved = 0
    for ticket in tickets:
        taps = await asyncio.gather(*[
            client.post(f"/api/kitchen/tickets/{ticket['id']}/advance") for _ in range(2)
        ])
        moved += sum(1 for t in taps if t.status_code == 200 and t.json()["changed"])
    return moved


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS) -> dict[str, Any]:
    print("=" * 70)
    print("CHAOS SIMULATION - DUPLICATE DELIVERY TEST")
    print("=" * 70)
    print(f"Total Orders: {num_orders}")
    print(f"Deliveries per webhook: {DUPLICATE_DELIVERIES}")
    print(f"Target: {API_BASE_URL}")
    print(f"Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient(base_url=API_BASE_URL, timeout=30.0) as client:
        health = await client.get("/health")
        print(f"\nHealth: {health.json().get('status')}")

        results = await asyncio.gather(*[run_order_flow(client, i + 1) for i in range(num_orders)])
        moved = await advance_all_tickets(client)
        reconciliation = (await client.get(
            "/api/kitchen/reconciliation", params={"grace_seconds": 0}
        )).json()

    total_time = round(time.time() - start_time, 2)
    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("SIMULATION RESULTS")
    print("=" * 70)
    print(f"\nConsistent Orders: {len(successful)}/{num_orders}")
    print(f"Inconsistent/Failed Orders: {len(failed)}/{num_orders}")
    print(f"Ticket advances (one per ticket expected): {moved}")
    print(f"Paid orders without ticket: {reconciliation.get('total')}")
    print(f"Total Time: {total_time}s")

    if successful:
        total_revenue = sum(r.get("total", 0) for r in successful)
        print(f"Total Authorized: ${total_revenue / 100:.2f}")

    if failed:
        print("\nFailed Order Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results,
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    args = parser.parse_args()

    summary = asyncio.run(run_simulation(num_orders=args.orders))
    sys.exit(0 if summary["failed"] == 0 else 1)
