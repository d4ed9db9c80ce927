"""Request-scoped and process-scoped dependencies for the API routers."""

from functools import lru_cache

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from app.config import settings
from app.db import SessionLocal
from app.services.payment_gateway import PaymentGateway, build_payment_gateway
from app.services.session_cache import SessionCache
from app.services.signatures import MetadataSigner


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Built once per process; tests replace them through dependency_overrides.
@lru_cache(maxsize=1)
def get_gateway() -> PaymentGateway:
    return build_payment_gateway()


@lru_cache(maxsize=1)
def get_session_cache() -> SessionCache:
    return SessionCache.from_url(
        settings.redis_url, settings.checkout_session_cache_ttl_seconds
    )


@lru_cache(maxsize=1)
def get_metadata_signer() -> MetadataSigner:
    return MetadataSigner(settings.gateway_metadata_secret)


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def require_user_id(authorization: str | None = Header(default=None)) -> str:
    """Resolve the caller's user id from a bearer JWT's ``sub`` claim."""
    token = _extract_bearer_token(authorization)
    if not token or not settings.jwt_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="Invalid token")
    return str(subject)
