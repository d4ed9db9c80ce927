"""Subscription checkout and status routes."""

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_gateway, get_metadata_signer, require_user_id
from app.config import settings
from app.schemas.subscription import (
    SubscriptionCheckoutRequest,
    SubscriptionCheckoutResponse,
    SubscriptionStatusRead,
)
from app.services.payment_gateway import PaymentGateway
from app.services.signatures import MetadataSigner
from app.services.subscriptions import SubscriptionCheckout, SubscriptionService

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("/checkout", response_model=SubscriptionCheckoutResponse, status_code=201)
def create_subscription_checkout(
    payload: SubscriptionCheckoutRequest,
    user_id: str = Depends(require_user_id),
    idempotency_key: str | None = Header(default=None, max_length=255),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    signer: MetadataSigner = Depends(get_metadata_signer),
) -> SubscriptionCheckoutResponse:
    checkout = SubscriptionCheckout(
        db,
        gateway,
        signer=signer,
        currency=settings.checkout_currency,
        frontend_base_url=settings.frontend_base_url,
    )
    session = checkout.create_session(
        user_id, payload.price_id, payload.redirect_path, client_key=idempotency_key
    )
    return SubscriptionCheckoutResponse(session_id=session.id, session_redirect=session.url)


@router.get("/status", response_model=SubscriptionStatusRead)
def get_subscription_status(
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
) -> SubscriptionStatusRead:
    return SubscriptionService(db).get_status(user_id)
