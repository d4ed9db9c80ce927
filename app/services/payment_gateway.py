"""Hosted checkout session integration with the payment gateway."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from app.config import settings
from app.exceptions import GatewayError, TransientGatewayError
from app.services.retry import RetryPolicy, gateway_retry_policy

logger = logging.getLogger(__name__)

# 409 means a request with the same idempotency key is still in flight.
TRANSIENT_STATUS_CODES = {409, 429}


@dataclass(frozen=True)
class LineItem:
    name: str
    quantity: int
    unit_amount: Decimal | None = None
    price_id: str | None = None


@dataclass(frozen=True)
class SessionRequest:
    """Plain values for one hosted session; safe to use outside a DB transaction."""

    mode: str
    line_items: list[LineItem]
    success_url: str
    cancel_url: str
    currency: str
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)
    client_reference_id: str | None = None


@dataclass(frozen=True)
class GatewaySession:
    id: str
    url: str


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def flatten_form(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Encode nested dicts and lists in the gateway's bracketed form style."""
    pairs: list[tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(flatten_form(value, name))
        elif isinstance(value, list):
            for index, entry in enumerate(value):
                if isinstance(entry, dict):
                    pairs.extend(flatten_form(entry, f"{name}[{index}]"))
                else:
                    pairs.append((f"{name}[{index}]", str(entry)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


class PaymentGateway:
    """Thin wrapper around the gateway's checkout session REST API."""

    def __init__(
        self,
        secret_key: str,
        *,
        api_base: str = "https://api.stripe.com",
        timeout: float = 30,
        retry_policy: RetryPolicy | None = None,
        client_factory: Callable[[], httpx.Client] | None = None,
    ) -> None:
        self._secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or gateway_retry_policy()
        self._client_factory = client_factory or (
            lambda: httpx.Client(timeout=self.timeout)
        )

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: list[tuple[str, str]] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        url = f"{self.api_base}{path}"
        try:
            with self._client_factory() as client:
                resp = client.request(
                    method,
                    url,
                    data=data,
                    params=params,
                    headers=self._headers(idempotency_key),
                )
        except httpx.TimeoutException as exc:
            raise TransientGatewayError(f"Gateway timeout on {path}") from exc
        except httpx.TransportError as exc:
            raise TransientGatewayError(f"Gateway unreachable on {path}: {exc}") from exc

        if resp.status_code >= 400:
            message = _error_message(resp)
            if resp.status_code >= 500 or resp.status_code in TRANSIENT_STATUS_CODES:
                raise TransientGatewayError(message, status_code=resp.status_code)
            logger.error("Gateway rejected %s %s: %s", method, path, message)
            raise GatewayError(message, status_code=resp.status_code)
        result: dict[str, Any] = resp.json()
        return result

    # ── Checkout sessions ────────────────────────────────

    def create_checkout_session(self, request: SessionRequest) -> GatewaySession:
        """Create a hosted checkout session; retried on transient failures.

        The idempotency key is sent on every attempt so a retry after a lost
        response returns the session created the first time.
        """
        if not self.is_configured():
            raise GatewayError("Payment gateway is not configured")
        payload = self._session_payload(request)
        data = self.retry_policy.call(
            self._request,
            "POST",
            "/v1/checkout/sessions",
            data=flatten_form(payload),
            idempotency_key=request.idempotency_key,
        )
        session = GatewaySession(id=data["id"], url=data.get("url") or "")
        logger.info(
            "Created checkout session %s",
            session.id,
            extra={"session_id": session.id},
        )
        return session

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        if not self.is_configured():
            raise GatewayError("Payment gateway is not configured")
        return self.retry_policy.call(
            self._request, "GET", f"/v1/checkout/sessions/{session_id}"
        )

    def _session_payload(self, request: SessionRequest) -> dict[str, Any]:
        line_items: list[dict[str, Any]] = []
        for item in request.line_items:
            if item.price_id:
                line_items.append({"price": item.price_id, "quantity": item.quantity})
                continue
            if item.unit_amount is None:
                raise ValueError(f"Line item {item.name!r} has no price")
            line_items.append(
                {
                    "price_data": {
                        "currency": request.currency,
                        "unit_amount": to_minor_units(item.unit_amount),
                        "product_data": {"name": item.name},
                    },
                    "quantity": item.quantity,
                }
            )
        payload: dict[str, Any] = {
            "mode": request.mode,
            "line_items": line_items,
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "metadata": request.metadata,
            "client_reference_id": request.client_reference_id,
        }
        # Later payment_intent / subscription events carry the same metadata.
        if request.mode == "subscription":
            payload["subscription_data"] = {"metadata": request.metadata}
        else:
            payload["payment_intent_data"] = {"metadata": request.metadata}
        return payload


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"Gateway returned HTTP {resp.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return f"Gateway returned HTTP {resp.status_code}"


def build_payment_gateway(sleep: Callable[[float], None] | None = None) -> PaymentGateway:
    policy = gateway_retry_policy(sleep=sleep) if sleep else gateway_retry_policy()
    return PaymentGateway(
        settings.gateway_secret_key,
        api_base=settings.gateway_api_base,
        timeout=settings.gateway_timeout_seconds,
        retry_policy=policy,
    )
