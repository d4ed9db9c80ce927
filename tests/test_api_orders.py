"""API tests for order history, order detail and payment status."""

import uuid
from decimal import Decimal

from sqlalchemy import select

from app.models.checkout import Payment


def _checkout(client, auth_headers, product, quantity: int = 1) -> dict:
    resp = client.post(
        "/checkout",
        json={"items": [{"product_id": str(product.id), "quantity": quantity}]},
        headers=auth_headers,
    )
    assert resp.status_code == 201
    return resp.json()


def _payment(db_session, order_id: str) -> Payment:
    return db_session.scalar(select(Payment).where(Payment.order_id == uuid.UUID(order_id)))


def test_list_orders_only_returns_callers_orders(
    client, auth_headers, make_product, checkout_service
):
    first = _checkout(client, auth_headers, make_product(name="Lamp"))
    second = _checkout(client, auth_headers, make_product(name="Rug"), quantity=2)
    checkout_service.create_checkout("user-2", [(make_product(name="Vase").id, 1)])

    resp = client.get("/orders", headers=auth_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 2
    assert body["count"] == 2
    assert {o["id"] for o in body["items"]} == {first["order_id"], second["order_id"]}
    assert all(o["payment_status"] == "pending" for o in body["items"])


def test_list_orders_filters_by_status_and_paginates(client, auth_headers, make_product):
    _checkout(client, auth_headers, make_product(name="Lamp"))
    _checkout(client, auth_headers, make_product(name="Rug"))

    page = client.get("/orders?limit=1", headers=auth_headers).json()
    completed = client.get("/orders?status=completed", headers=auth_headers).json()

    assert page["count"] == 1
    assert page["total"] == 2
    assert completed["total"] == 0
    assert completed["items"] == []


def test_get_order_detail(client, auth_headers, make_product):
    created = _checkout(client, auth_headers, make_product(unit_price="10.00"), quantity=2)

    resp = client.get(f"/orders/{created['order_id']}", headers=auth_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "pending"
    assert body["payment_status"] == "pending"
    assert Decimal(body["total_amount"]) == Decimal("22.00")
    assert Decimal(body["tax_amount"]) == Decimal("2.00")
    assert body["items"][0]["quantity"] == 2


def test_other_users_order_is_not_found(client, make_product, checkout_service, auth_headers):
    foreign = checkout_service.create_checkout("user-2", [(make_product().id, 1)])

    resp = client.get(f"/orders/{foreign.order_id}", headers=auth_headers)

    assert resp.status_code == 404
    assert resp.json()["code"] == "order_not_found"


def test_orders_require_auth(client):
    assert client.get("/orders").status_code == 401


def test_payment_status_pending(client, db_session, auth_headers, make_product):
    created = _checkout(client, auth_headers, make_product(unit_price="10.00"), quantity=2)
    payment = _payment(db_session, created["order_id"])

    resp = client.get(f"/payments/{payment.id}/status", headers=auth_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["is_complete"] is False
    assert body["status"] == "pending"
    assert Decimal(body["amount"]) == Decimal("20.00")
    assert Decimal(body["tax"]) == Decimal("2.00")
    assert body["order_id"] == created["order_id"]


def test_payment_status_after_completion(
    client, db_session, auth_headers, make_product, make_event, sign_event, fake_gateway
):
    created = _checkout(client, auth_headers, make_product(stock=3))
    event = make_event(
        "checkout.session.completed",
        {
            "id": created["session_id"],
            "mode": "payment",
            "payment_status": "paid",
            "metadata": fake_gateway.requests[-1].metadata,
        },
    )
    body, header = sign_event(event)
    client.post("/webhooks/payments", content=body, headers={"Stripe-Signature": header})
    payment = _payment(db_session, created["order_id"])

    resp = client.get(f"/payments/{payment.id}/status", headers=auth_headers)

    assert resp.json()["is_complete"] is True
    assert resp.json()["status"] == "completed"
    assert resp.json()["completed_at"] is not None


def test_other_users_payment_is_not_found(
    client, db_session, make_product, checkout_service, auth_headers
):
    foreign = checkout_service.create_checkout("user-2", [(make_product().id, 1)])
    payment = _payment(db_session, str(foreign.order_id))

    resp = client.get(f"/payments/{payment.id}/status", headers=auth_headers)

    assert resp.status_code == 404
    assert resp.json()["code"] == "payment_not_found"


def test_unknown_payment_is_not_found(client, auth_headers):
    resp = client.get(f"/payments/{uuid.uuid4()}/status", headers=auth_headers)

    assert resp.status_code == 404
