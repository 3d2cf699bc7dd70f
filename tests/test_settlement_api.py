from decimal import Decimal

import pytest

from marketplace.main import create_app
from marketplace.observability import get_counter_value


@pytest.fixture
def app(session_factory, reward_settings):
    app = create_app(session_factory=session_factory, settings=reward_settings)
    app.testing = True
    return app


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


def _create_order(client, delivery_info, lines, payment_method="cash_on_delivery"):
    return client.post(
        "/api/orders",
        json={
            "buyer_id": 5,
            "items": [{"product_id": product_id, "quantity": quantity} for product_id, quantity in lines],
            "delivery_info": delivery_info,
            "payment_method": payment_method,
        },
    )


def test_health_endpoint(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.get_json() == {
        "status": "UP",
        "components": {"database": {"status": "UP"}, "settlement_tables": {"status": "UP"}},
    }
    assert response.headers["X-Request-ID"] == "req-123"
    assert get_counter_value("http_requests_total", labels={"method": "GET", "endpoint": "health"}) == 1


def test_order_to_payout_flow(client, make_vendor, make_product, delivery_info):
    vendor_id = make_vendor()
    product_id = make_product(vendor_id, price="600.00", stock=4)

    created = _create_order(client, delivery_info, [(product_id, 2)])
    assert created.status_code == 201
    order = created.get_json()
    assert order["total_amount"] == "1260.00"
    assert order["status"] == "pending"

    item_id = order["items"][0]["id"]
    shipped = client.post(f"/api/order-items/{item_id}/ship", json={"tracking_code": "PT-1", "carrier": "Pathao"})
    assert shipped.status_code == 200
    assert shipped.get_json()["status"] == "shipped"

    delivered = client.post(f"/api/orders/{order['id']}/confirm-delivery")
    assert delivered.status_code == 200
    assert delivered.get_json()["payment_status"] == "verified"

    pending = client.get(f"/api/vendors/{vendor_id}/payouts/pending").get_json()
    assert pending["gross"] == "1200.00"
    assert pending["net"] == "1140.00"

    payout = client.post(
        f"/api/vendors/{vendor_id}/payouts",
        json={"amount": pending["net"], "method": "bkash", "reference": "TXN-55"},
    )
    assert payout.status_code == 201
    assert payout.get_json()["status"] == "paid"

    again = client.post(f"/api/vendors/{vendor_id}/payouts", json={"amount": "1", "reference": "TXN-56"})
    assert again.status_code == 409
    assert again.get_json()["code"] == "INVALID_STATE_TRANSITION"

    listed = client.get(f"/api/vendors/{vendor_id}/payouts").get_json()
    assert len(listed["payouts"]) == 1

    notifications = client.get(f"/api/vendors/{vendor_id}/notifications").get_json()
    assert notifications["unread_count"] >= 1


def test_checkout_errors_map_to_status_codes(client, make_vendor, make_product, delivery_info):
    product_id = make_product(make_vendor(), stock=1)

    short = _create_order(client, delivery_info, [(product_id, 3)])
    assert short.status_code == 409
    assert short.get_json()["code"] == "INSUFFICIENT_STOCK"

    invalid = _create_order(client, delivery_info, [(product_id, 1)], payment_method="cheque")
    assert invalid.status_code == 400
    assert invalid.get_json()["code"] == "VALIDATION_ERROR"

    missing = client.post("/api/orders/999/cancel")
    assert missing.status_code == 404

    not_an_object = client.post("/api/orders", json=[1, 2, 3])
    assert not_an_object.status_code == 400


def test_cancel_endpoint_cancels_every_line(client, make_vendor, make_product, delivery_info):
    product_id = make_product(make_vendor(), stock=3)
    order = _create_order(client, delivery_info, [(product_id, 2)]).get_json()

    response = client.post(f"/api/orders/{order['id']}/cancel")

    assert response.status_code == 200
    assert response.get_json()["status"] == "cancelled"
    fetched = client.get(f"/api/orders/{order['id']}").get_json()
    assert {item["status"] for item in fetched["items"]} == {"cancelled"}


def test_review_points_and_tier(client, make_vendor):
    vendor_id = make_vendor(points=470)

    review = client.post(
        f"/api/vendors/{vendor_id}/reviews",
        json={"review_id": 1, "product_name": "Away Jersey", "rating": 5},
    )
    assert review.status_code == 201
    assert review.get_json()["rewarded"] is True

    adjust = client.post(
        f"/api/vendors/{vendor_id}/points",
        json={"delta": 15, "reason": "Community event", "actor_id": 1},
    )
    assert adjust.get_json()["balance"] == 505
    assert adjust.get_json()["tier"] == "silver"

    tier = client.get(f"/api/vendors/{vendor_id}/tier").get_json()
    assert tier["tier"] == "silver"
    assert tier["points"] == 505

    history = client.get(f"/api/vendors/{vendor_id}/rewards?limit=1").get_json()
    assert history["total"] == 2
    assert history["entries"][0]["action_type"] == "manual_addition"

    bad = client.post(f"/api/vendors/{vendor_id}/reviews", json={"review_id": 2, "rating": 9})
    assert bad.status_code == 400


def test_settings_changes_apply_to_next_projection(client, make_vendor, make_product, delivery_info):
    vendor_id = make_vendor()
    order = _create_order(client, delivery_info, [(make_product(vendor_id, price="1000.00"), 1)]).get_json()
    client.post(f"/api/order-items/{order['items'][0]['id']}/ship", json={"tracking_code": "T", "carrier": "RedX"})
    client.post(f"/api/orders/{order['id']}/confirm-delivery")

    update = client.put(
        "/api/settings/commission_rates",
        json={"value": {"bronze": 10, "silver": 3, "gold": 2, "platinum": 1}},
    )
    assert update.status_code == 200
    assert client.get("/api/settings").get_json()["commission_rates"]["bronze"] == 10

    pending = client.get(f"/api/vendors/{vendor_id}/payouts/pending").get_json()
    assert Decimal(pending["net"]) == Decimal("900.00")

    rejected = client.put("/api/settings/commission_rates", json={"value": {"bronze": 500}})
    assert rejected.status_code == 400


def test_batch_and_admin_confirmation(client, make_vendor, make_product, delivery_info):
    vendor_id = make_vendor()
    order = _create_order(client, delivery_info, [(make_product(vendor_id, price="200.00"), 1)]).get_json()
    client.post(f"/api/order-items/{order['items'][0]['id']}/ship", json={"tracking_code": "T", "carrier": "RedX"})
    client.post(f"/api/orders/{order['id']}/confirm-delivery")

    batch = client.post("/api/payouts/batch")
    assert batch.status_code == 201
    [payout] = batch.get_json()["payouts"]
    assert payout["status"] == "pending"
    assert payout["amount"] == "190.00"

    paid = client.post(f"/api/payouts/{payout['id']}/paid", json={"method": "nagad", "reference": "NG-1"})
    assert paid.get_json()["status"] == "paid"

    failed = client.post(f"/api/payouts/{payout['id']}/failed", json={"reason": "late bounce"})
    assert failed.status_code == 409


def test_metrics_endpoint(client):
    client.get("/health")

    snapshot = client.get("/admin/metrics").get_json()

    assert "http_requests_total" in snapshot["counters"]
