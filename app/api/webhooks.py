"""Payment gateway webhook route."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.responses import JSONResponse

from app.api.deps import get_db, get_metadata_signer
from app.config import settings
from app.services.reconciliation import ReconciliationDispatcher
from app.services.signatures import MetadataSigner
from app.services.webhook_guard import WebhookGuard

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_webhook_secret() -> str:
    return settings.gateway_webhook_secret


@router.post("/payments")
async def payments_webhook(
    request: Request,
    stripe_signature: str = Header(default=""),
    db: Session = Depends(get_db),
    signer: MetadataSigner = Depends(get_metadata_signer),
    webhook_secret: str = Depends(get_webhook_secret),
) -> JSONResponse:
    """Handle gateway webhooks; no auth, the signature header is verified."""
    if not webhook_secret:
        raise HTTPException(status_code=503, detail="Payment webhooks not configured")

    body = await request.body()
    guard = WebhookGuard(
        db,
        ReconciliationDispatcher(db),
        webhook_secret=webhook_secret,
        signer=signer,
        replay_window=settings.webhook_replay_window_seconds,
    )
    result = guard.handle(body, stripe_signature)
    content: dict[str, str] = {"status": result.outcome.value}
    if result.message and result.http_status >= 400:
        content["message"] = result.message
    return JSONResponse(status_code=result.http_status, content=content)
