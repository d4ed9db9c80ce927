"""Redis-backed fast lookup for checkout sessions and idempotency hints.

The cache is advisory: the database stays authoritative, so every redis
failure degrades to a miss.
"""
from __future__ import annotations

import json
import logging
from typing import Any

import redis

logger = logging.getLogger(__name__)

SESSION_PREFIX = "checkout_session:"
IDEMPOTENCY_PREFIX = "checkout_idempotency:"


class SessionCache:
    def __init__(self, client: redis.Redis | None, ttl_seconds: int = 86400) -> None:
        self._client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 86400) -> "SessionCache":
        if not url:
            return cls(None, ttl_seconds)
        try:
            client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=2)
            client.ping()
        except redis.RedisError as exc:
            logger.warning("Redis unavailable, checkout cache disabled: %s", exc)
            return cls(None, ttl_seconds)
        return cls(client, ttl_seconds)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def _set(self, key: str, value: str) -> None:
        if self._client is None:
            return
        try:
            self._client.setex(key, self.ttl_seconds, value)
        except redis.RedisError as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    def _get(self, key: str) -> str | None:
        if self._client is None:
            return None
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None

    def store_session(self, session_id: str, data: dict[str, Any]) -> None:
        self._set(SESSION_PREFIX + session_id, json.dumps(data, default=str))

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        raw = self._get(SESSION_PREFIX + session_id)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def remember_order(self, idempotency_key: str, order_id: str) -> None:
        self._set(IDEMPOTENCY_PREFIX + idempotency_key, order_id)

    def lookup_order(self, idempotency_key: str) -> str | None:
        return self._get(IDEMPOTENCY_PREFIX + idempotency_key)
