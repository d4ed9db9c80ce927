from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.subscription import SubscriptionStatus


class SubscriptionCheckoutRequest(BaseModel):
    price_id: str = Field(min_length=1, max_length=255)
    redirect_path: str | None = Field(default=None, max_length=2048)


class SubscriptionCheckoutResponse(BaseModel):
    session_id: str
    session_redirect: str


class SubscriptionStatusRead(BaseModel):
    is_subscribed: bool
    plan_id: UUID | None = None
    price_id: str | None = None
    status: SubscriptionStatus | None = None
    expires_at: datetime | None = None

