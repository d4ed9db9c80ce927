"""Unit tests for the hosted checkout gateway wrapper."""

from collections.abc import Callable
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest

from app.exceptions import GatewayError, TransientGatewayError
from app.services import payment_gateway
from app.services.retry import RetryPolicy


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def configured_gateway(sleeps) -> payment_gateway.PaymentGateway:
    return payment_gateway.PaymentGateway(
        "sk_test_abc123",
        api_base="https://api.gateway.test",
        retry_policy=RetryPolicy(3, backoff=lambda attempt: 0.0, sleep=sleeps.append),
    )


@pytest.fixture()
def unconfigured_gateway() -> payment_gateway.PaymentGateway:
    return payment_gateway.PaymentGateway("")


@pytest.fixture()
def session_request() -> payment_gateway.SessionRequest:
    return payment_gateway.SessionRequest(
        mode="payment",
        line_items=[
            payment_gateway.LineItem(name="Widget", quantity=2, unit_amount=Decimal("10.00")),
            payment_gateway.LineItem(name="Tax", quantity=1, unit_amount=Decimal("2.00")),
        ],
        success_url="https://shop.example.com/checkout/success",
        cancel_url="https://shop.example.com/checkout/cancel",
        currency="usd",
        idempotency_key="key-123",
        metadata={"user_id": "user-1", "order_id": "order-1", "signature": "sig"},
        client_reference_id="order-1",
    )


@pytest.fixture()
def response_factory() -> Callable[..., MagicMock]:
    def _build(payload: dict[str, Any], status_code: int = 200) -> MagicMock:
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = payload
        return response

    return _build


@pytest.fixture()
def mocked_http_client() -> tuple[MagicMock, MagicMock]:
    with patch("app.services.payment_gateway.httpx.Client") as mock_client_cls:
        mock_client = MagicMock(name="mock_httpx_client")
        mock_client_cls.return_value.__enter__.return_value = mock_client
        yield mock_client_cls, mock_client


def test_is_configured_returns_true_when_secret_key_present(configured_gateway):
    assert configured_gateway.is_configured() is True


def test_is_configured_returns_false_when_secret_key_missing(unconfigured_gateway):
    assert unconfigured_gateway.is_configured() is False


def test_create_session_when_unconfigured_raises(unconfigured_gateway, session_request):
    with pytest.raises(GatewayError, match="not configured"):
        unconfigured_gateway.create_checkout_session(session_request)


def test_create_session_posts_form_with_idempotency_key(
    configured_gateway, session_request, mocked_http_client, response_factory
):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = response_factory(
        {"id": "cs_test_1", "url": "https://pay.test/cs_test_1"}
    )

    session = configured_gateway.create_checkout_session(session_request)

    assert session == payment_gateway.GatewaySession("cs_test_1", "https://pay.test/cs_test_1")
    method, url = mock_client.request.call_args.args
    kwargs = mock_client.request.call_args.kwargs
    assert method == "POST"
    assert url == "https://api.gateway.test/v1/checkout/sessions"
    assert kwargs["headers"]["Authorization"] == "Bearer sk_test_abc123"
    assert kwargs["headers"]["Idempotency-Key"] == "key-123"
    form = dict(kwargs["data"])
    assert form["mode"] == "payment"
    assert form["line_items[0][price_data][unit_amount]"] == "1000"
    assert form["line_items[0][quantity]"] == "2"
    assert form["line_items[1][price_data][product_data][name]"] == "Tax"
    assert form["line_items[1][price_data][unit_amount]"] == "200"
    assert form["metadata[order_id]"] == "order-1"
    assert form["payment_intent_data[metadata][user_id]"] == "user-1"
    assert form["client_reference_id"] == "order-1"


def test_subscription_mode_uses_price_ids(
    configured_gateway, mocked_http_client, response_factory
):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = response_factory({"id": "cs_sub", "url": "u"})
    request = payment_gateway.SessionRequest(
        mode="subscription",
        line_items=[payment_gateway.LineItem(name="Pro", quantity=1, price_id="price_pro")],
        success_url="s",
        cancel_url="c",
        currency="usd",
        idempotency_key="k",
        metadata={"user_id": "u1", "price_id": "price_pro", "signature": "x"},
    )

    configured_gateway.create_checkout_session(request)

    form = dict(mock_client.request.call_args.kwargs["data"])
    assert form["line_items[0][price]"] == "price_pro"
    assert form["subscription_data[metadata][price_id]"] == "price_pro"
    assert "client_reference_id" not in form


@pytest.mark.parametrize("status_code", [409, 429, 500, 503])
def test_transient_status_is_retried_with_same_key(
    configured_gateway,
    session_request,
    mocked_http_client,
    response_factory,
    sleeps,
    status_code,
):
    _, mock_client = mocked_http_client
    mock_client.request.side_effect = [
        response_factory({"error": {"message": "busy"}}, status_code),
        response_factory({"id": "cs_test_2", "url": "u"}),
    ]

    session = configured_gateway.create_checkout_session(session_request)

    assert session.id == "cs_test_2"
    assert mock_client.request.call_count == 2
    keys = {c.kwargs["headers"]["Idempotency-Key"] for c in mock_client.request.call_args_list}
    assert keys == {"key-123"}
    assert len(sleeps) == 1


def test_client_error_is_not_retried(
    configured_gateway, session_request, mocked_http_client, response_factory, sleeps
):
    _, mock_client = mocked_http_client
    mock_client.request.return_value = response_factory(
        {"error": {"message": "No such price"}}, 400
    )

    with pytest.raises(GatewayError, match="No such price") as exc_info:
        configured_gateway.create_checkout_session(session_request)

    assert not isinstance(exc_info.value, TransientGatewayError)
    assert exc_info.value.status_code == 400
    assert mock_client.request.call_count == 1
    assert sleeps == []


def test_network_errors_exhaust_retries(
    configured_gateway, session_request, mocked_http_client, sleeps
):
    _, mock_client = mocked_http_client
    mock_client.request.side_effect = httpx.ConnectError("connection refused")

    with pytest.raises(TransientGatewayError):
        configured_gateway.create_checkout_session(session_request)

    assert mock_client.request.call_count == 4
    assert len(sleeps) == 3


def test_timeout_is_transient(configured_gateway, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.request.side_effect = [
        httpx.ReadTimeout("slow"),
        MagicMock(status_code=200, json=MagicMock(return_value={"id": "cs_1"})),
    ]

    data = configured_gateway.retrieve_checkout_session("cs_1")

    assert data == {"id": "cs_1"}
    method, url = mock_client.request.call_args.args
    assert method == "GET"
    assert url.endswith("/v1/checkout/sessions/cs_1")


def test_flatten_form_skips_none_and_encodes_nested():
    pairs = payment_gateway.flatten_form(
        {"a": None, "b": {"c": 1, "d": [{"e": "x"}, "y"]}, "f": True}
    )
    assert pairs == [("b[c]", "1"), ("b[d][0][e]", "x"), ("b[d][1]", "y"), ("f", "true")]


def test_to_minor_units_rounds_half_up():
    assert payment_gateway.to_minor_units(Decimal("2.005")) == 201
    assert payment_gateway.to_minor_units(Decimal("22.00")) == 2200
