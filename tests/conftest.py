import hashlib
import hmac
import json
import os
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from jose import jwt

# Environment must be in place before any app import reads settings
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["GATEWAY_SECRET_KEY"] = "sk_test_123"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "whsec_test_123"
os.environ["GATEWAY_METADATA_SECRET"] = "meta_test_123"
os.environ["CHECKOUT_TAX_RATE"] = "0.10"
os.environ["CHECKOUT_CURRENCY"] = "usd"
os.environ["FRONTEND_BASE_URL"] = "https://shop.example.com"
os.environ["WEBHOOK_REPLAY_WINDOW_SECONDS"] = "300"
os.environ["IDEMPOTENCY_WINDOW_SECONDS"] = "86400"

from app import models  # noqa: E402,F401
from app.db import Base, SessionLocal, engine  # noqa: E402
from app.models.checkout import Product  # noqa: E402
from app.models.subscription import (  # noqa: E402
    RecurringInterval,
    SubscriptionPlan,
)
from app.services.checkout import CheckoutService  # noqa: E402
from app.services.payment_gateway import GatewaySession, SessionRequest  # noqa: E402
from app.services.session_cache import SessionCache  # noqa: E402
from app.services.signatures import MetadataSigner  # noqa: E402

WEBHOOK_SECRET = os.environ["GATEWAY_WEBHOOK_SECRET"]
METADATA_SECRET = os.environ["GATEWAY_METADATA_SECRET"]

Base.metadata.create_all(engine)


@pytest.fixture(scope="session")
def db_engine():
    return engine


@pytest.fixture()
def db_session(db_engine):
    """Session on the shared in-memory connection; tables are emptied afterwards."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with db_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


# ============ Domain Fixtures ============


@pytest.fixture()
def make_product(db_session) -> Callable[..., Product]:
    def _make(name: str = "Widget", unit_price: str = "10.00", stock: int = 10) -> Product:
        product = Product(name=name, unit_price=Decimal(unit_price), stock=stock)
        db_session.add(product)
        db_session.commit()
        db_session.refresh(product)
        return product

    return _make


@pytest.fixture()
def make_plan(db_session) -> Callable[..., SubscriptionPlan]:
    def _make(price_id: str = "price_basic", price: str = "9.99") -> SubscriptionPlan:
        plan = SubscriptionPlan(
            gateway_price_id=price_id,
            name=f"Plan {price_id}",
            price=Decimal(price),
            interval=RecurringInterval.month,
        )
        db_session.add(plan)
        db_session.commit()
        db_session.refresh(plan)
        return plan

    return _make


class FakeGateway:
    """Stands in for PaymentGateway; records every session request."""

    def __init__(self) -> None:
        self.requests: list[SessionRequest] = []
        self.error: Exception | None = None
        self.remote: dict[str, Any] = {"status": "open", "payment_status": "unpaid"}

    def is_configured(self) -> bool:
        return True

    def create_checkout_session(self, request: SessionRequest) -> GatewaySession:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        session_id = f"cs_test_{len(self.requests)}"
        return GatewaySession(id=session_id, url=f"https://pay.example.com/{session_id}")

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return {"id": session_id, **self.remote}


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def signer() -> MetadataSigner:
    return MetadataSigner(METADATA_SECRET)


@pytest.fixture()
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 30, tzinfo=UTC)


@pytest.fixture()
def checkout_service(db_session, fake_gateway, signer, now) -> CheckoutService:
    return CheckoutService(
        db_session,
        fake_gateway,
        SessionCache(None),
        signer=signer,
        tax_rate=Decimal("0.10"),
        currency="usd",
        frontend_base_url="https://shop.example.com",
        clock=lambda: now,
    )


# ============ Webhook Helpers ============


@pytest.fixture()
def sign_event() -> Callable[..., tuple[bytes, str]]:
    """Serialize an event and build a matching signature header."""

    def _sign(
        event: dict[str, Any],
        secret: str = WEBHOOK_SECRET,
        timestamp: int | None = None,
    ) -> tuple[bytes, str]:
        body = json.dumps(event).encode("utf-8")
        ts = int(time.time()) if timestamp is None else timestamp
        digest = hmac.new(
            secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256
        ).hexdigest()
        return body, f"t={ts},v1={digest}"

    return _sign


@pytest.fixture()
def make_event() -> Callable[..., dict[str, Any]]:
    def _make(
        event_type: str,
        obj: dict[str, Any],
        *,
        event_id: str | None = None,
        created: int | None = None,
    ) -> dict[str, Any]:
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
            "type": event_type,
            "created": int(time.time()) if created is None else created,
            "data": {"object": obj},
        }

    return _make


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, fake_gateway):
    """Test client sharing the test session and a fake gateway."""
    from app.api.deps import get_db, get_gateway, get_session_cache
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_session_cache] = lambda: SessionCache(None)

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_access_token(user_id: str) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": user_id,
        "typ": "access",
        "exp": int((now + timedelta(minutes=15)).timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, os.environ["JWT_SECRET"], algorithm="HS256")


@pytest.fixture()
def user_id() -> str:
    return "user-1"


@pytest.fixture()
def auth_headers(user_id) -> dict[str, str]:
    return {"Authorization": f"Bearer {_create_access_token(user_id)}"}
