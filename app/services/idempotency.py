"""Idempotency key derivation for checkout requests."""
from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Iterable
from uuid import UUID

from app.config import settings


def canonical_items(items: Iterable[tuple[UUID | str, int]]) -> list[list]:
    """Merge repeated product ids and sort by product id."""
    merged: dict[str, int] = {}
    for product_id, quantity in items:
        key = str(product_id)
        merged[key] = merged.get(key, 0) + int(quantity)
    return [[product_id, merged[product_id]] for product_id in sorted(merged)]


def time_bucket(now: float, window_seconds: int) -> int:
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    return int(now // window_seconds)


def derive_idempotency_key(
    user_id: str,
    items: Iterable[tuple[UUID | str, int]],
    *,
    plan_id: str | None = None,
    salt: str | None = None,
    now: float | None = None,
    window_seconds: int | None = None,
) -> str:
    """Return a SHA-256 hex key identifying one checkout intent.

    The key depends only on the user, the cart contents (order-insensitive)
    and the plan, plus a salt: the client's own ``Idempotency-Key`` when it
    sent one, otherwise the current time bucket. Identical retries inside the
    same bucket map to the same key.
    """
    if salt is None:
        window = window_seconds or settings.idempotency_window_seconds
        salt = f"bucket:{time_bucket(time.time() if now is None else now, window)}"
    else:
        salt = f"client:{salt}"
    payload = {
        "user_id": str(user_id),
        "items": canonical_items(items),
        "plan_id": plan_id,
        "salt": salt,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
