"""Owner-scoped reads of orders and payments for clients polling after checkout."""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app.exceptions import OrderNotFoundError, PaymentNotFoundError
from app.models.checkout import Order, OrderStatus, Payment

logger = logging.getLogger(__name__)


class OrderQueryService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def list_for_user(
        self,
        user_id: str,
        *,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        """List a user's orders, newest first, with items and payment loaded."""
        stmt = (
            select(Order)
            .where(Order.user_id == user_id)
            .options(selectinload(Order.items), selectinload(Order.payment))
        )
        if status is not None:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id).limit(limit).offset(offset)
        return list(self.db.scalars(stmt).all())

    def count_for_user(self, user_id: str, *, status: OrderStatus | None = None) -> int:
        stmt = select(func.count()).select_from(Order).where(Order.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Order.status == status)
        return self.db.scalar(stmt) or 0

    def get_for_user(self, user_id: str, order_id: uuid.UUID) -> Order:
        # Someone else's order is reported as missing
        order = self.db.get(Order, order_id)
        if order is None or order.user_id != user_id:
            if order is not None:
                logger.warning(
                    "Order %s requested by non-owner",
                    order_id,
                    extra={"order_id": str(order_id), "security_event": True},
                )
            raise OrderNotFoundError(order_id)
        return order

    def payment_for_user(self, user_id: str, payment_id: uuid.UUID) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None or payment.user_id != user_id:
            if payment is not None:
                logger.warning(
                    "Payment %s requested by non-owner",
                    payment_id,
                    extra={"payment_id": str(payment_id), "security_event": True},
                )
            raise PaymentNotFoundError(str(payment_id))
        return payment
