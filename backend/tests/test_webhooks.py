"""Tests for the inbound webhook endpoint."""

import hashlib
import hmac
import json
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.metrics import metrics
from app.models import (
    Delivery,
    DeliveryStatus,
    Order,
    OrderStatus,
    Rider,
    ScheduledTask,
    TaskKind,
    WebhookConfig,
)


API = "/api/v1"
GLORIA_URL = f"{API}/webhooks/gloria_food"
DOORDASH_URL = f"{API}/webhooks/doordash"


def gloria_body(order_id=1001, status="accepted", order_type="delivery", **extra) -> bytes:
    order = {
        "id": order_id,
        "status": status,
        "type": order_type,
        "currency": "USD",
        "total_price": "31.00",
        "client_first_name": "Pat",
        "client_last_name": "Lee",
        "client_phone": "+15550142",
        "client_address": "77 Pine St",
        "latitude": 40.7150,
        "longitude": -74.0030,
        "items": [{"name": "Ramen", "quantity": 2, "price": "15.50"}],
    }
    order.update(extra)
    return json.dumps({"count": 1, "orders": [order]}).encode()


def post_gloria(client: TestClient, body: bytes, key: str = "gf-key-1"):
    return client.post(GLORIA_URL, content=body, headers={"X-API-Key": key, "Content-Type": "application/json"})


def post_doordash(client: TestClient, payload: dict, key: str = "dd-key-1", secret: str = "dd-secret-1",
                  signature: str = None):
    body = json.dumps(payload).encode()
    if signature is None:
        signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post(
        DOORDASH_URL,
        content=body,
        headers={"X-API-Key": key, "X-Signature": signature, "Content-Type": "application/json"},
    )


def count(db: Session, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


def fresh(db: Session, model, pk):
    db.expire_all()
    return db.get(model, pk)


class TestWebhookAuthentication:
    """Unauthenticated calls are rejected before anything is parsed."""

    def test_missing_api_key(self, client, db_session, restaurant):
        rejected_before = metrics.webhooks_rejected.get("gloria_food", 0)

        response = client.post(GLORIA_URL, content=gloria_body())

        assert response.status_code == 401
        assert count(db_session, Order) == 0
        assert metrics.webhooks_rejected["gloria_food"] == rejected_before + 1

    def test_unknown_api_key(self, client, db_session, restaurant):
        response = post_gloria(client, gloria_body(), key="not-a-key")

        assert response.status_code == 401
        assert count(db_session, Order) == 0

    def test_key_for_other_platform(self, client, db_session, restaurant):
        response = post_gloria(client, gloria_body(), key="dd-key-1")

        assert response.status_code == 401

    def test_inactive_key(self, client, db_session, restaurant):
        config = db_session.scalar(select(WebhookConfig).where(WebhookConfig.api_key == "gf-key-1"))
        config.is_active = False
        db_session.commit()

        response = post_gloria(client, gloria_body())

        assert response.status_code == 401

    def test_bad_signature(self, client, db_session, restaurant, make_delivery, rider):
        delivery = make_delivery(DeliveryStatus.DISPATCHED, rider=rider)

        response = post_doordash(
            client,
            {"event_name": "DASHER_PICKED_UP", "external_delivery_id": delivery.external_delivery_id},
            signature="0" * 64,
        )

        assert response.status_code == 401
        assert fresh(db_session, Delivery, delivery.id).status == DeliveryStatus.DISPATCHED

    def test_missing_signature(self, client, restaurant):
        response = client.post(
            DOORDASH_URL,
            content=b'{"event_name": "DASHER_PICKED_UP", "external_delivery_id": "dlv-1"}',
            headers={"X-API-Key": "dd-key-1"},
        )

        assert response.status_code == 401

    def test_bearer_token_accepted(self, client, db_session, restaurant):
        response = client.post(
            GLORIA_URL, content=gloria_body(), headers={"Authorization": "Bearer gf-key-1"}
        )

        assert response.status_code == 200
        assert count(db_session, Order) == 1

    def test_unknown_platform(self, client, restaurant):
        response = client.post(f"{API}/webhooks/ubereats", content=b"{}", headers={"X-API-Key": "gf-key-1"})

        assert response.status_code == 400


class TestWebhookValidation:
    """Malformed bodies are rejected without side effects."""

    def test_invalid_json(self, client, db_session, restaurant):
        response = post_gloria(client, b"{oops")

        assert response.status_code == 400
        assert count(db_session, Order) == 0

    def test_missing_order_id(self, client, db_session, restaurant):
        body = json.dumps({"orders": [{"status": "accepted", "type": "delivery"}]}).encode()

        response = post_gloria(client, body)

        assert response.status_code == 400
        assert count(db_session, Order) == 0


class TestOrderWebhooks:
    """Gloria Food order intake."""

    def test_order_is_assigned_to_rider(self, client, db_session, restaurant, rider):
        response = post_gloria(client, gloria_body())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        [result] = data["results"]
        assert result["status"] == "processed"
        assert result["event"] == "OrderCreated"
        assert result["delivery_status"] == "assigned"

        order = db_session.scalar(select(Order))
        assert order.external_id == "1001"
        assert order.status == OrderStatus.CONFIRMED
        assert order.total_amount == Decimal("31.00")
        delivery = fresh(db_session, Delivery, result["delivery_id"])
        assert delivery.rider_id == rider.id
        assert delivery.provider == "doordash"
        assert fresh(db_session, Rider, rider.id).current_load == 1
        kinds = [t.kind for t in db_session.scalars(select(ScheduledTask))]
        assert kinds == [TaskKind.DISPATCH_CALL]

    def test_duplicate_webhook_is_idempotent(self, client, db_session, restaurant, rider):
        first = post_gloria(client, gloria_body())
        second = post_gloria(client, gloria_body())

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert second.json()["results"][0]["delivery_id"] == first.json()["results"][0]["delivery_id"]
        assert count(db_session, Order) == 1
        assert count(db_session, Delivery) == 1
        assert count(db_session, ScheduledTask) == 1
        assert fresh(db_session, Rider, rider.id).current_load == 1

    def test_no_rider_leaves_assignment_pending(self, client, db_session, restaurant):
        response = post_gloria(client, gloria_body())

        [result] = response.json()["results"]
        assert result["delivery_status"] == "assignment_pending"
        assert "no rider" in result["message"]

    def test_pickup_order_has_no_delivery(self, client, db_session, restaurant, rider):
        response = post_gloria(client, gloria_body(order_type="pickup"))

        [result] = response.json()["results"]
        assert result["order_id"] is not None
        assert result["delivery_id"] is None
        assert count(db_session, Delivery) == 0

    def test_self_fulfilled_restaurant(self, client, db_session, self_fulfilled_restaurant):
        response = post_gloria(client, gloria_body(), key="gf-key-2")

        [result] = response.json()["results"]
        assert result["delivery_status"] == "confirmed"
        delivery = fresh(db_session, Delivery, result["delivery_id"])
        assert delivery.provider is None

    def test_batched_orders(self, client, db_session, restaurant, make_rider):
        make_rider(name="One")
        make_rider(name="Two")
        orders = [json.loads(gloria_body(order_id=i))["orders"][0] for i in (1, 2)]
        body = json.dumps({"count": 2, "orders": orders}).encode()

        response = post_gloria(client, body)

        assert [r["status"] for r in response.json()["results"]] == ["processed", "processed"]
        assert count(db_session, Delivery) == 2

    def test_cancellation_releases_rider(self, client, db_session, restaurant, rider):
        created = post_gloria(client, gloria_body()).json()["results"][0]

        response = post_gloria(client, gloria_body(status="canceled"))

        [result] = response.json()["results"]
        assert result["status"] == "processed"
        assert result["event"] == "OrderCancelled"
        delivery = fresh(db_session, Delivery, created["delivery_id"])
        assert delivery.status == DeliveryStatus.CANCELLED
        assert delivery.rider_id is None
        assert delivery.order.status == OrderStatus.CANCELLED
        assert fresh(db_session, Rider, rider.id).current_load == 0
        assert count(db_session, ScheduledTask) == 0

        again = post_gloria(client, gloria_body(status="canceled"))
        assert again.json()["status"] == "duplicate"

    def test_cancellation_before_order_is_stored(self, client, db_session, restaurant):
        response = post_gloria(client, gloria_body(order_id=555, status="canceled"))

        assert response.status_code == 200
        [result] = response.json()["results"]
        assert result["status"] == "processed"
        assert result["delivery_id"] is None
        order = fresh(db_session, Order, result["order_id"])
        assert order.status == OrderStatus.CANCELLED
        assert order.cancelled_at is not None
        assert order.external_id == "555"

    def test_order_arriving_after_its_cancellation_is_duplicate(self, client, db_session, restaurant, rider):
        post_gloria(client, gloria_body(order_id=556, status="canceled"))

        response = post_gloria(client, gloria_body(order_id=556))

        [result] = response.json()["results"]
        assert result["status"] == "duplicate"
        assert result["message"] == "Order already cancelled"
        assert count(db_session, Order) == 1
        assert count(db_session, Delivery) == 0
        assert count(db_session, ScheduledTask) == 0
        assert fresh(db_session, Rider, rider.id).current_load == 0


class TestCourierWebhooks:
    """DoorDash status webhooks."""

    def test_progress_and_terminal_conflict(self, client, db_session, restaurant, make_delivery, rider):
        delivery = make_delivery(DeliveryStatus.DISPATCHED, rider=rider)
        ref = delivery.external_delivery_id

        picked = post_doordash(client, {"event_name": "DASHER_PICKED_UP", "external_delivery_id": ref})
        assert picked.status_code == 200
        assert picked.json()["results"][0]["status"] == "processed"
        assert picked.json()["results"][0]["delivery_status"] == "picked_up"

        repeat = post_doordash(client, {"event_name": "DASHER_PICKED_UP", "external_delivery_id": ref})
        assert repeat.status_code == 200
        assert repeat.json()["results"][0]["status"] == "noop"

        delivered = post_doordash(client, {"event_name": "DELIVERY_DELIVERED", "external_delivery_id": ref})
        assert delivered.json()["results"][0]["delivery_status"] == "delivered"
        assert fresh(db_session, Rider, rider.id).current_load == 0

        late = post_doordash(client, {"event_name": "DASHER_PICKED_UP", "external_delivery_id": ref})
        assert late.status_code == 409
        assert late.json()["current_status"] == "delivered"
        assert fresh(db_session, Delivery, delivery.id).status == DeliveryStatus.DELIVERED

    def test_event_before_request_returns(self, client, db_session, restaurant, make_delivery, rider):
        delivery = make_delivery(DeliveryStatus.ASSIGNED, rider=rider)
        assert delivery.external_delivery_id is None

        response = post_doordash(
            client, {"event_name": "DASHER_PICKED_UP", "external_delivery_id": f"dlv-{delivery.id}"}
        )

        assert response.json()["results"][0]["delivery_status"] == "picked_up"

    def test_courier_cancellation_fails_delivery(self, client, db_session, restaurant, make_delivery, rider):
        delivery = make_delivery(DeliveryStatus.DISPATCHED, rider=rider)

        response = post_doordash(client, {
            "event_name": "DELIVERY_CANCELLED",
            "external_delivery_id": delivery.external_delivery_id,
            "cancellation_reason": "dasher_not_found",
        })

        assert response.status_code == 200
        delivery = fresh(db_session, Delivery, delivery.id)
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.failure_reason == "dasher_not_found"

    def test_unknown_delivery_ignored(self, client, restaurant):
        response = post_doordash(client, {"event_name": "DASHER_PICKED_UP", "external_delivery_id": "dd-999"})

        assert response.status_code == 200
        assert response.json()["results"][0]["status"] == "ignored"
