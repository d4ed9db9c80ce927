from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.checkout import OrderStatus, PaymentStatus


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: UUID
    name: str
    quantity: int
    unit_price: Decimal


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: OrderStatus
    total_amount: Decimal
    tax_amount: Decimal
    currency: str
    payment_status: PaymentStatus | None = None
    items: list[OrderItemRead]
    created_at: datetime
    updated_at: datetime


class PaymentStatusRead(BaseModel):
    payment_id: UUID
    order_id: UUID
    is_complete: bool
    status: PaymentStatus
    amount: Decimal
    tax: Decimal
    completed_at: datetime | None = None
