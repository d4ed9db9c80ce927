"""
Checkout and reconciliation error taxonomy.

ClientError and AuthenticityError are recovered at the HTTP boundary and never
retried. TransientGatewayError is retried by the gateway retry policy and only
surfaced once attempts are exhausted. ConsistencyError marks a genuine
invariant breach and is routed to the operator channel.
"""
from __future__ import annotations

from typing import Any
from uuid import UUID


class CheckoutError(Exception):
    """Base exception for checkout and reconciliation errors"""

    code = "checkout_error"
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> dict[str, Any]:
        """HTTPException detail in the shape register_error_handlers expects."""
        return {"code": self.code, "message": self.message, "details": self.details or None}


class ClientError(CheckoutError):
    """Bad input from the caller; 4xx, never retried"""

    code = "client_error"
    http_status = 400


class PlanNotFoundError(ClientError):
    code = "plan_not_found"
    http_status = 404

    def __init__(self, price_id: str | None):
        super().__init__(
            f"Subscription plan not found for price {price_id}",
            details={"price_id": price_id},
        )
        self.price_id = price_id


class OrderNotFoundError(ClientError):
    code = "order_not_found"
    http_status = 404

    def __init__(self, order_id: UUID | str):
        super().__init__(f"Order {order_id} not found", details={"order_id": str(order_id)})
        self.order_id = order_id


class PaymentNotFoundError(ClientError):
    code = "payment_not_found"
    http_status = 404

    def __init__(self, reference: str | None):
        super().__init__(
            f"Payment not found for {reference}", details={"reference": reference}
        )
        self.reference = reference


class PlanInUseError(ClientError):
    code = "plan_in_use"
    http_status = 409

    def __init__(self, plan_id: UUID):
        super().__init__(
            "Plan is referenced by subscriptions and its price cannot change",
            details={"plan_id": str(plan_id)},
        )


class InvalidRedirectError(ClientError):
    code = "invalid_redirect"

    def __init__(self, redirect_path: str):
        super().__init__(
            "Redirect path must be a relative path",
            details={"redirect_path": redirect_path},
        )


class AuthenticityError(CheckoutError):
    """Bad signature or tampered metadata; logged as a security event"""

    code = "invalid_signature"
    http_status = 400


class GatewayError(CheckoutError):
    """The payment gateway rejected the request; retrying will not help"""

    code = "payment_gateway_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.status_code = status_code
        self.order_id: UUID | None = None


class TransientGatewayError(GatewayError):
    """Network failure, timeout, rate limit or 5xx from the gateway"""

    code = "payment_gateway_unavailable"


class ConsistencyError(CheckoutError):
    """Local state cannot honour a gateway-reported fact (e.g. stock oversold)"""

    code = "consistency_error"

    def __init__(
        self,
        message: str,
        order_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.order_id = order_id
