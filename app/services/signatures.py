"""HMAC signing for gateway metadata and verification of webhook signatures."""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

from app.exceptions import AuthenticityError

logger = logging.getLogger(__name__)


class MetadataSigner:
    """Signs the metadata fields the gateway echoes back on webhooks.

    A webhook carrying a ``user_id`` without a valid signature has been
    tampered with, even when the webhook envelope itself verified.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def is_configured(self) -> bool:
        return bool(self._secret)

    def _message(self, metadata: dict[str, Any]) -> bytes:
        # Every key but the signature itself, in sorted order
        parts = [
            f"{key}={metadata[key]}"
            for key in sorted(metadata)
            if key != "signature" and metadata[key] not in (None, "")
        ]
        return "&".join(parts).encode("utf-8")

    def sign(self, metadata: dict[str, Any]) -> str:
        if not self._secret:
            raise RuntimeError("Metadata signing secret is not configured")
        return hmac.new(
            self._secret.encode("utf-8"), self._message(metadata), hashlib.sha256
        ).hexdigest()

    def verify(self, metadata: dict[str, Any]) -> bool:
        signature = metadata.get("signature")
        if not signature or not self._secret:
            return False
        return hmac.compare_digest(self.sign(metadata), str(signature))

    def build_metadata(
        self, user_id: str, order_id: str | None = None, **extra: str
    ) -> dict[str, str]:
        metadata: dict[str, str] = {"user_id": str(user_id)}
        if order_id:
            metadata["order_id"] = str(order_id)
        metadata.update({key: str(value) for key, value in extra.items()})
        metadata["signature"] = self.sign(metadata)
        return metadata


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """Split ``t=<unix>,v1=<hex>[,v1=<hex>]`` into its timestamp and signatures."""
    timestamp: int | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise AuthenticityError("Malformed signature timestamp") from exc
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        raise AuthenticityError("Malformed signature header")
    return timestamp, signatures


def compute_webhook_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(secret: str, payload: bytes, header: str) -> int:
    """Verify the signature header over the raw body; return its timestamp.

    Raises AuthenticityError when no ``v1`` signature matches.
    """
    if not secret:
        raise AuthenticityError("Webhook secret is not configured")
    timestamp, signatures = parse_signature_header(header or "")
    expected = compute_webhook_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise AuthenticityError("Webhook signature mismatch")
    return timestamp
