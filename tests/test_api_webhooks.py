"""API tests for the payment webhook endpoint."""

import time

from sqlalchemy import func, select

from app.models.checkout import Order, OrderStatus, WebhookEvent


def _checkout(client, auth_headers, product) -> dict:
    resp = client.post(
        "/checkout",
        json={"items": [{"product_id": str(product.id), "quantity": 1}]},
        headers=auth_headers,
    )
    assert resp.status_code == 201
    return resp.json()


def _completed_event(make_event, fake_gateway, session_id: str, **kwargs) -> dict:
    return make_event(
        "checkout.session.completed",
        {
            "id": session_id,
            "mode": "payment",
            "payment_status": "paid",
            "payment_intent": "pi_123",
            "metadata": fake_gateway.requests[-1].metadata,
        },
        **kwargs,
    )


def _post(client, body: bytes, header: str):
    return client.post(
        "/webhooks/payments",
        content=body,
        headers={"Stripe-Signature": header, "Content-Type": "application/json"},
    )


def test_completed_webhook_completes_order(
    client, db_session, auth_headers, make_product, make_event, sign_event, fake_gateway
):
    product = make_product(stock=3)
    created = _checkout(client, auth_headers, product)
    event = _completed_event(make_event, fake_gateway, created["session_id"])

    resp = _post(client, *sign_event(event))

    assert resp.status_code == 200
    assert resp.json() == {"status": "processed"}
    order = db_session.scalar(select(Order))
    db_session.refresh(order)
    assert order.status == OrderStatus.completed


def test_redelivery_is_acknowledged_as_duplicate(
    client, db_session, auth_headers, make_product, make_event, sign_event, fake_gateway
):
    product = make_product(stock=3)
    created = _checkout(client, auth_headers, product)
    body, header = sign_event(_completed_event(make_event, fake_gateway, created["session_id"]))

    _post(client, body, header)
    resp = _post(client, body, header)

    assert resp.status_code == 200
    assert resp.json() == {"status": "duplicate"}
    assert db_session.scalar(select(func.count()).select_from(WebhookEvent)) == 1


def test_invalid_signature_returns_400(client, db_session, make_event, sign_event):
    body, header = sign_event(make_event("invoice.created", {}), secret="not-the-secret")

    resp = _post(client, body, header)

    assert resp.status_code == 400
    assert resp.json()["status"] == "rejected"
    assert db_session.scalar(select(func.count()).select_from(WebhookEvent)) == 0


def test_missing_signature_header_returns_400(client, make_event, sign_event):
    body, _ = sign_event(make_event("invoice.created", {}))

    resp = client.post("/webhooks/payments", content=body)

    assert resp.status_code == 400


def test_stale_event_returns_200(client, make_event, sign_event):
    event = make_event("invoice.created", {}, created=int(time.time()) - 3600)

    resp = _post(client, *sign_event(event))

    assert resp.status_code == 200
    assert resp.json() == {"status": "stale"}


def test_unknown_session_returns_400_for_redelivery(client, make_event, sign_event):
    event = make_event(
        "checkout.session.completed",
        {"id": "cs_unknown", "mode": "payment", "payment_status": "paid"},
    )

    resp = _post(client, *sign_event(event))

    assert resp.status_code == 400


def test_webhook_unconfigured_returns_503(client, make_event, sign_event):
    from app.api.webhooks import get_webhook_secret
    from app.main import app

    app.dependency_overrides[get_webhook_secret] = lambda: ""
    body, header = sign_event(make_event("invoice.created", {}))

    resp = _post(client, body, header)

    assert resp.status_code == 503
