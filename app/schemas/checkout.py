from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.checkout import OrderStatus, PaymentStatus

# ── Checkout ─────────────────────────────────────────────


class CheckoutItem(BaseModel):
    product_id: UUID
    quantity: int = Field(ge=1, le=1000)


class CheckoutRequest(BaseModel):
    items: list[CheckoutItem] = Field(max_length=100)
    redirect_path: str | None = Field(default=None, max_length=2048)


class CheckoutResponse(BaseModel):
    order_id: UUID
    session_id: str
    session_redirect: str
    total_amount: Decimal


class CheckoutSessionStatusRead(BaseModel):
    session_id: str
    belongs_to_user: bool
    order_id: UUID | None = None
    order_status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    remote_status: str | None = None


# ── Webhooks ─────────────────────────────────────────────


class WebhookAck(BaseModel):
    status: str
