"""Order history and payment status routes."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db, require_user_id
from app.models.checkout import OrderStatus, PaymentStatus
from app.schemas.common import ListResponse
from app.schemas.order import OrderRead, PaymentStatusRead
from app.services.orders import OrderQueryService

router = APIRouter(tags=["orders"])


@router.get("/orders", response_model=ListResponse[OrderRead])
def list_my_orders(
    status: OrderStatus | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
) -> ListResponse[OrderRead]:
    svc = OrderQueryService(db)
    orders = svc.list_for_user(user_id, status=status, limit=limit, offset=offset)
    return ListResponse(
        items=[OrderRead.model_validate(o) for o in orders],
        count=len(orders),
        limit=limit,
        offset=offset,
        total=svc.count_for_user(user_id, status=status),
    )


@router.get("/orders/{order_id}", response_model=OrderRead)
def get_my_order(
    order_id: UUID,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
) -> OrderRead:
    return OrderRead.model_validate(OrderQueryService(db).get_for_user(user_id, order_id))


@router.get("/payments/{payment_id}/status", response_model=PaymentStatusRead)
def get_payment_status(
    payment_id: UUID,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
) -> PaymentStatusRead:
    payment = OrderQueryService(db).payment_for_user(user_id, payment_id)
    return PaymentStatusRead(
        payment_id=payment.id,
        order_id=payment.order_id,
        is_complete=payment.status == PaymentStatus.completed,
        status=payment.status,
        amount=payment.amount,
        tax=payment.tax,
        completed_at=payment.completed_at,
    )
