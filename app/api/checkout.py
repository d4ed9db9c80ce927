"""Checkout API routes."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import (
    get_db,
    get_gateway,
    get_metadata_signer,
    get_session_cache,
    require_user_id,
)
from app.config import settings
from app.schemas.checkout import (
    CheckoutRequest,
    CheckoutResponse,
    CheckoutSessionStatusRead,
)
from app.services.checkout import CheckoutOutcome, CheckoutService
from app.services.payment_gateway import PaymentGateway
from app.services.session_cache import SessionCache
from app.services.signatures import MetadataSigner

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/checkout", tags=["checkout"])

_OUTCOME_ERRORS: dict[CheckoutOutcome, tuple[int, str]] = {
    CheckoutOutcome.duplicate_order: (409, "Checkout already in progress for this cart"),
    CheckoutOutcome.product_not_found: (404, "One or more products do not exist"),
    CheckoutOutcome.insufficient_stock: (409, "Insufficient stock for one or more items"),
    CheckoutOutcome.empty_cart: (400, "Cart is empty"),
}


def get_checkout_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    cache: SessionCache = Depends(get_session_cache),
    signer: MetadataSigner = Depends(get_metadata_signer),
) -> CheckoutService:
    return CheckoutService(
        db,
        gateway,
        cache,
        signer=signer,
        tax_rate=settings.tax_rate,
        currency=settings.checkout_currency,
        frontend_base_url=settings.frontend_base_url,
    )


@router.post("", response_model=CheckoutResponse, status_code=201)
def create_checkout(
    payload: CheckoutRequest,
    user_id: str = Depends(require_user_id),
    idempotency_key: str | None = Header(default=None, max_length=255),
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    result = service.create_checkout(
        user_id,
        [(item.product_id, item.quantity) for item in payload.items],
        client_key=idempotency_key,
        redirect_path=payload.redirect_path,
    )
    if not result.ok:
        status_code, message = _OUTCOME_ERRORS[result.outcome]
        raise HTTPException(
            status_code=status_code,
            detail={
                "code": result.outcome.value,
                "message": message,
                "details": result.details or None,
            },
        )
    return CheckoutResponse(
        order_id=result.order_id,
        session_id=result.session.id,
        session_redirect=result.session.url,
        total_amount=result.total_amount,
    )


@router.get("/sessions/{session_id}", response_model=CheckoutSessionStatusRead)
def get_checkout_session(
    session_id: str,
    user_id: str = Depends(require_user_id),
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutSessionStatusRead:
    status = service.validate_checkout_session(user_id, session_id)
    return CheckoutSessionStatusRead(
        session_id=status.session_id,
        belongs_to_user=status.belongs_to_user,
        order_id=status.order_id,
        order_status=status.order_status,
        payment_status=status.payment_status,
        remote_status=status.remote_status,
    )
