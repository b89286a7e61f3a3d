"""HTTP surface tests, including the end-to-end order lifecycle."""

import asyncio

from orderflow.models import Milestone, UnavailableItem
from tests.factories import order_payload, payment_event, sign


async def post_webhook(client, payload: str, signature=None):
    headers = {"content-type": "application/json"}
    if signature is not None:
        headers["stripe-signature"] = signature
    return await client.post("/webhook/stripe", content=payload, headers=headers)


class TestOrderLifecycle:
    """Create -> authorize -> tip -> webhook -> kitchen -> notifications."""

    async def test_end_to_end(self, client, enqueued, notification_service):
        # Create
        response = await client.post("/api/orders", json=order_payload())
        assert response.status_code == 200
        created = response.json()
        order_id = created["order_id"]
        assert created["success"] is True
        assert created["total_charged"] == 2475
        assert created["order_status"] == "draft"
        assert created["payment_status"] == "unpaid"

        # Authorize
        response = await client.post(f"/api/orders/{order_id}/authorization")
        assert response.status_code == 200
        authorization = response.json()
        assert authorization["amount"] == 2475
        assert authorization["client_secret"]

        # Tip
        response = await client.post(f"/api/orders/{order_id}/tip", json={"tip_cents": 300})
        assert response.status_code == 200
        assert response.json() == {
            "order_id": order_id,
            "tip": 300,
            "base_amount": 2475,
            "new_total": 2775,
            "authorization_status": "requires_payment_method",
        }

        # Provider reports success
        payload = payment_event(
            order_id, 2775, tip=300, base_amount=2475,
            authorization_id=authorization["authorization_id"],
        )
        response = await post_webhook(client, payload, sign(payload))
        assert response.status_code == 200
        ack = response.json()
        assert ack["received"] is True
        assert ack["action"] == "recorded"
        assert ack["order_id"] == order_id

        order = (await client.get(f"/api/orders/{order_id}")).json()
        assert order["payment_status"] == "paid"
        assert order["order_status"] == "paid"
        assert order["total_charged"] == 2475
        assert order["tip"] == 300
        assert order["amount_received"] == 2775
        assert enqueued == [(order_id, Milestone.PAID)]

        # Kitchen
        queue = (await client.get("/api/kitchen/tickets")).json()
        assert queue["total"] == 1
        ticket = queue["tickets"][0]
        assert ticket["order_id"] == order_id
        assert [(i["display_name"], i["quantity"]) for i in ticket["items"]] == [
            ("Pad Thai", 2),
            ("Spring Rolls", 1),
        ]

        response = await client.post(f"/api/kitchen/tickets/{ticket['id']}/advance")
        assert response.json()["milestone"] == "accepted"
        response = await client.post(f"/api/kitchen/tickets/{ticket['id']}/advance")
        assert response.json()["milestone"] == "ready"
        assert response.json()["ticket"]["status"] == "done"
        assert enqueued[1:] == [(order_id, Milestone.ACCEPTED), (order_id, Milestone.READY)]

        order = (await client.get(f"/api/orders/{order_id}")).json()
        assert order["order_status"] == "ready"
        assert (await client.get("/api/kitchen/tickets")).json()["total"] == 0

        # Notifications (what the worker would run)
        response = await client.post(f"/api/orders/{order_id}/notifications/paid")
        assert response.json()["status"] == "sent"
        response = await client.post(f"/api/orders/{order_id}/notifications/paid")
        assert response.json()["status"] == "skipped"
        assert len(notification_service.sent) == 1
        assert "Total: $27.75" in notification_service.sent[0]["body"]

    async def test_duplicate_webhooks_over_http(self, client, enqueued):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]
        payload = payment_event(order_id, 2475, tip=0, base_amount=2475)

        responses = await asyncio.gather(*[
            post_webhook(client, payload, sign(payload)) for _ in range(3)
        ])

        assert all(r.status_code == 200 for r in responses)
        assert sorted(r.json()["action"] for r in responses) == ["duplicate", "duplicate", "recorded"]
        assert len({r.json()["ticket_id"] for r in responses}) == 1
        assert (await client.get("/api/kitchen/tickets")).json()["total"] == 1


class TestCreateOrderApi:
    async def test_unavailable_item_rejected(self, client, session_maker):
        async with session_maker() as session:
            session.add(UnavailableItem(item_id="pad-thai", item_name="Pad Thai"))
            await session.commit()

        response = await client.post("/api/orders", json=order_payload())

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "items_unavailable"
        assert "Pad Thai" in body["detail"]
        assert (await client.get("/api/orders")).json()["total"] == 0
        assert (await client.get("/api/menu/unavailable")).json() == {"item_ids": ["pad-thai"]}

    async def test_phone_order_is_authorized_immediately(self, client, payment_service):
        response = await client.post("/api/orders", json=order_payload(source="ai_phone"))

        body = response.json()
        assert response.status_code == 200
        assert body["order_status"] == "new"
        assert body["payment_status"] == "pending"
        assert body["authorization_id"].startswith("pi_mock_")
        assert body["client_secret"]
        assert payment_service.create_calls == 1

    async def test_pay_at_pickup_goes_to_kitchen(self, client, enqueued, payment_service):
        response = await client.post(
            "/api/orders", json=order_payload(source="ai_phone", payment_choice="pay_at_pickup")
        )
        body = response.json()
        order_id = body["order_id"]
        assert body["order_status"] == "new"
        assert body["payment_status"] == "needs_payment"
        assert body["authorization_id"] is None
        assert payment_service.create_calls == 0

        queue = (await client.get("/api/kitchen/tickets")).json()
        assert queue["total"] == 1
        ticket = queue["tickets"][0]
        assert ticket["order_id"] == order_id
        assert len(ticket["items"]) == 2

        await client.post(f"/api/kitchen/tickets/{ticket['id']}/advance")
        assert (await client.get(f"/api/orders/{order_id}")).json()["order_status"] == "accepted"
        await client.post(f"/api/kitchen/tickets/{ticket['id']}/advance")

        order = (await client.get(f"/api/orders/{order_id}")).json()
        assert order["order_status"] == "ready"
        assert order["payment_status"] == "needs_payment"
        assert enqueued == [(order_id, Milestone.ACCEPTED), (order_id, Milestone.READY)]

    async def test_status_lookup(self, client):
        created = (await client.post(
            "/api/orders", json=order_payload(source="ai_phone", payment_choice="pay_at_pickup")
        )).json()

        by_number = await client.get(
            "/api/orders/status", params={"order_number": created["order_number"]}
        )
        by_phone = await client.get("/api/orders/status", params={"phone": "(510) 555-0199"})

        assert by_number.status_code == 200
        assert by_number.json()["order_id"] == created["order_id"]
        assert by_number.json()["payment_status"] == "needs_payment"
        assert "waiting in the queue" in by_number.json()["message"]
        assert by_phone.json() == by_number.json()

    async def test_status_lookup_errors(self, client):
        missing = await client.get("/api/orders/status", params={"order_number": 4242})
        no_key = await client.get("/api/orders/status")

        assert missing.status_code == 404
        assert missing.json()["error"] == "order_not_found"
        assert no_key.status_code == 422
        assert no_key.json()["error"] == "validation_error"

    async def test_missing_email_for_pay_now(self, client):
        response = await client.post("/api/orders", json=order_payload(customer_email=None))

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    async def test_empty_order(self, client):
        response = await client.post("/api/orders", json=order_payload(items=[]))
        assert response.status_code == 422

    async def test_malformed_request(self, client):
        response = await client.post("/api/orders", json={"items": "nope"})

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    async def test_update_contact(self, client):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]

        response = await client.patch(
            f"/api/orders/{order_id}/contact",
            json={"customer_phone": "(510) 555-0111", "sms_opt_in": True},
        )

        assert response.status_code == 200
        assert response.json()["customer_phone"] == "(510) 555-0111"
        assert response.json()["sms_opt_in"] is True
        assert response.json()["total_charged"] == 2475

    async def test_list_orders_rejects_unknown_status(self, client):
        response = await client.get("/api/orders", params={"status": "shipped"})
        assert response.status_code == 422

    async def test_unknown_order(self, client):
        response = await client.get("/api/orders/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "order_not_found"


class TestPaymentErrorsApi:
    async def test_tip_without_authorization(self, client):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]

        response = await client.post(f"/api/orders/{order_id}/tip", json={"tip_cents": 300})

        assert response.status_code == 404
        assert response.json()["error"] == "authorization_not_found"

    async def test_tip_too_large(self, client):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]
        await client.post(f"/api/orders/{order_id}/authorization")

        response = await client.post(f"/api/orders/{order_id}/tip", json={"tip_cents": 50000})

        assert response.status_code == 422
        assert response.json()["error"] == "tip_too_large"

    async def test_tip_after_capture(self, client, payment_service):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]
        authorization = (await client.post(f"/api/orders/{order_id}/authorization")).json()
        payment_service.simulate_capture(authorization["authorization_id"])

        response = await client.post(f"/api/orders/{order_id}/tip", json={"tip_cents": 300})

        assert response.status_code == 409
        assert response.json()["error"] == "already_captured"

    async def test_provider_failure_is_generic(self, client, payment_service):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]
        payment_service.failure_rate = 1.0

        response = await client.post(f"/api/orders/{order_id}/authorization")

        assert response.status_code == 502
        assert response.json()["error"] == "payment_provider_error"
        assert response.json()["detail"] == "Payment could not be confirmed. Please try again."


class TestWebhookApi:
    async def test_bad_signature(self, client, enqueued):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]
        payload = payment_event(order_id, 2475, tip=0)

        response = await post_webhook(client, payload, sign(payload, secret="whsec_wrong"))

        assert response.status_code == 400
        assert response.json()["error"] == "signature_invalid"
        assert (await client.get(f"/api/orders/{order_id}")).json()["payment_status"] == "unpaid"
        assert enqueued == []

    async def test_missing_signature(self, client):
        payload = payment_event("whatever", 2475)
        response = await post_webhook(client, payload)
        assert response.status_code == 400

    async def test_missing_correlation(self, client):
        payload = payment_event(None, 2475, tip=0)

        response = await post_webhook(client, payload, sign(payload))

        assert response.status_code == 400
        assert response.json()["error"] == "missing_correlation"

    async def test_failed_payment_not_enqueued(self, client, enqueued):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]
        payload = payment_event(order_id, 2475, event_type="payment_intent.payment_failed")

        response = await post_webhook(client, payload, sign(payload))

        assert response.status_code == 200
        assert enqueued == []
        order = (await client.get(f"/api/orders/{order_id}")).json()
        assert order["order_status"] == "voided"

    async def test_recording_timeout_returns_503(self, client, monkeypatch):
        from orderflow import main
        from orderflow.services.fulfillment import WebhookFulfillmentProcessor

        async def stuck(self, intent):
            await asyncio.sleep(5)

        monkeypatch.setattr(WebhookFulfillmentProcessor, "record_payment_succeeded", stuck)
        monkeypatch.setattr(main.settings, "webhook_timeout_seconds", 0.05)
        payload = payment_event("whatever", 2475)

        response = await post_webhook(client, payload, sign(payload))

        assert response.status_code == 503
        assert response.json()["error"] == "webhook_timeout"

    async def test_slow_ticket_still_acknowledges_payment(self, client, enqueued, monkeypatch):
        from orderflow import main
        from orderflow.services.kitchen import KitchenTicketQueue

        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]

        async def slow(self, order_id):
            await asyncio.sleep(1)

        monkeypatch.setattr(KitchenTicketQueue, "materialize", slow)
        monkeypatch.setattr(main.settings, "webhook_timeout_seconds", 0.3)
        payload = payment_event(order_id, 2475, tip=0)

        response = await post_webhook(client, payload, sign(payload))

        assert response.status_code == 200
        assert response.json()["action"] == "recorded"
        assert response.json()["ticket_id"] is None
        assert enqueued == [(order_id, Milestone.PAID)]
        order = (await client.get(f"/api/orders/{order_id}")).json()
        assert order["payment_status"] == "paid"
        assert order["order_status"] == "paid"


class TestNotificationApi:
    async def test_unreached_milestone_is_skipped(self, client, notification_service):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]

        ready = await client.post(f"/api/orders/{order_id}/notifications/ready")
        accepted = await client.post(f"/api/orders/{order_id}/notifications/accepted")

        assert ready.status_code == 200
        assert ready.json()["status"] == "skipped"
        assert ready.json()["reason"] == "not_reached"
        assert accepted.json()["reason"] == "not_reached"
        assert notification_service.sent == []

    async def test_paid_milestone_after_payment(self, client, notification_service):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]
        payload = payment_event(order_id, 2475, tip=0)
        await post_webhook(client, payload, sign(payload))

        paid = await client.post(f"/api/orders/{order_id}/notifications/paid")
        ready = await client.post(f"/api/orders/{order_id}/notifications/ready")

        assert paid.json()["status"] == "sent"
        assert paid.json()["reason"] is None
        assert ready.json()["reason"] == "not_reached"
        assert len(notification_service.sent) == 1


class TestKitchenApi:
    async def test_unknown_ticket(self, client):
        response = await client.post("/api/kitchen/tickets/12345/advance")

        assert response.status_code == 404
        assert response.json()["error"] == "ticket_not_found"

    async def test_done_ticket_does_not_renotify(self, client, enqueued):
        order_id = (await client.post("/api/orders", json=order_payload())).json()["order_id"]
        payload = payment_event(order_id, 2475, tip=0)
        ticket_id = (await post_webhook(client, payload, sign(payload))).json()["ticket_id"]

        for _ in range(4):
            await client.post(f"/api/kitchen/tickets/{ticket_id}/advance")

        assert [m for _, m in enqueued] == [Milestone.PAID, Milestone.ACCEPTED, Milestone.READY]

    async def test_reconciliation_empty(self, client):
        response = await client.get("/api/kitchen/reconciliation", params={"grace_seconds": 0})

        assert response.status_code == 200
        assert response.json()["total"] == 0


class TestHealthApi:
    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["health"] == "/health"

    async def test_health_reports_components(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["database"] == "healthy"
        assert body["payment_service"] == "healthy"
        assert body["notification_service"] == "healthy"
        assert body["status"] in ("operational", "degraded")
