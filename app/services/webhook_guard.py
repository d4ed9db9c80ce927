"""Inbound webhook gate: signature, replay window, dedup, then dispatch.

Nothing touches the database until the envelope signature verifies. The
event record and every side effect of its handler commit together, so a
crash mid-handler leaves the event unrecorded and the gateway's redelivery
reprocesses it.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.exceptions import AuthenticityError, ClientError, ConsistencyError
from app.metrics import CONSISTENCY_ERRORS, WEBHOOK_EVENTS
from app.models.checkout import (
    Order,
    OrderStatus,
    PaymentStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from app.services.checkout import transition_order, transition_payment
from app.services.reconciliation import ReconciliationDispatcher, WebhookOutcome
from app.services.signatures import MetadataSigner, verify_webhook_signature

logger = logging.getLogger(__name__)
operator_logger = logging.getLogger("app.operator")


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    event_id: str | None = None
    event_type: str | None = None
    message: str | None = None

    @property
    def http_status(self) -> int:
        return 400 if self.outcome == WebhookOutcome.rejected else 200


class WebhookGuard:
    def __init__(
        self,
        db: Session,
        dispatcher: ReconciliationDispatcher,
        *,
        webhook_secret: str,
        signer: MetadataSigner,
        replay_window: int = 300,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.dispatcher = dispatcher
        self.webhook_secret = webhook_secret
        self.signer = signer
        self.replay_window = replay_window
        self.clock = clock

    def handle(self, raw_body: bytes, signature_header: str) -> WebhookResult:
        result = self._handle(raw_body, signature_header)
        WEBHOOK_EVENTS.labels(result.outcome.value).inc()
        return result

    def _handle(self, raw_body: bytes, signature_header: str) -> WebhookResult:
        try:
            verify_webhook_signature(self.webhook_secret, raw_body, signature_header)
        except AuthenticityError as exc:
            logger.warning(
                "Webhook rejected: %s", exc.message, extra={"security_event": True}
            )
            return WebhookResult(WebhookOutcome.rejected, message=exc.message)

        event = self._parse(raw_body)
        if event is None:
            return WebhookResult(WebhookOutcome.rejected, message="Malformed event")
        event_id = str(event["id"])
        event_type = str(event["type"])
        log_extra = {"event_id": event_id, "event_type": event_type}

        now = self.clock().timestamp()
        if abs(now - int(event["created"])) > self.replay_window:
            logger.warning("Stale webhook event %s", event_id, extra=log_extra)
            return WebhookResult(WebhookOutcome.stale, event_id, event_type)

        if self._already_recorded(event_id):
            self.db.rollback()
            logger.info("Duplicate webhook event %s", event_id, extra=log_extra)
            return WebhookResult(WebhookOutcome.duplicate, event_id, event_type)

        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") if isinstance(obj, dict) else None
        if metadata and metadata.get("user_id") and not self.signer.verify(metadata):
            self.db.rollback()
            logger.warning(
                "Tampered metadata on event %s",
                event_id,
                extra={**log_extra, "security_event": True},
            )
            return WebhookResult(
                WebhookOutcome.rejected, event_id, event_type, "Invalid metadata signature"
            )

        try:
            outcome = self.dispatcher.dispatch(event)
            self.db.add(
                self._record(
                    event,
                    WebhookEventStatus.processed
                    if outcome == WebhookOutcome.processed
                    else WebhookEventStatus.ignored,
                )
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("Concurrent delivery of event %s", event_id, extra=log_extra)
            return WebhookResult(WebhookOutcome.duplicate, event_id, event_type)
        except ConsistencyError as exc:
            self.db.rollback()
            return self._flag(event, exc)
        except ClientError as exc:
            self.db.rollback()
            logger.warning(
                "Webhook event %s refused: %s", event_id, exc.message, extra=log_extra
            )
            return WebhookResult(WebhookOutcome.rejected, event_id, event_type, exc.message)
        except Exception:
            self.db.rollback()
            logger.exception("Webhook event %s failed", event_id, extra=log_extra)
            raise

        logger.info("Webhook event %s %s", event_id, outcome.value, extra=log_extra)
        return WebhookResult(outcome, event_id, event_type)

    @staticmethod
    def _parse(raw_body: bytes) -> dict[str, Any] | None:
        try:
            event = json.loads(raw_body)
        except ValueError:
            return None
        if not isinstance(event, dict):
            return None
        if not event.get("id") or not event.get("type"):
            return None
        try:
            int(event.get("created"))
        except (TypeError, ValueError, OverflowError):
            return None
        return event

    def _already_recorded(self, event_id: str) -> bool:
        return (
            self.db.scalar(
                select(WebhookEvent.id).where(WebhookEvent.gateway_event_id == event_id)
            )
            is not None
        )

    def _record(
        self,
        event: dict[str, Any],
        status: WebhookEventStatus,
        error_message: str | None = None,
    ) -> WebhookEvent:
        return WebhookEvent(
            gateway_event_id=str(event["id"]),
            event_type=str(event["type"]),
            status=status,
            error_message=error_message,
            raw_payload=event,
            processed_at=self.clock(),
        )

    def _flag(self, event: dict[str, Any], exc: ConsistencyError) -> WebhookResult:
        """Park the order for manual review; the money has already moved."""
        event_id = str(event["id"])
        event_type = str(event["type"])
        extra = {
            "event_id": event_id,
            "event_type": event_type,
            "order_id": str(exc.order_id) if exc.order_id else None,
        }
        operator_logger.error("Consistency failure: %s", exc.message, extra=extra)
        CONSISTENCY_ERRORS.inc()

        order = self.db.get(Order, exc.order_id) if exc.order_id else None
        if order is not None:
            if transition_order(order, OrderStatus.requires_review):
                order.review_reason = exc.message
            payment = order.payment
            if payment is not None and transition_payment(payment, PaymentStatus.completed):
                payment.completed_at = self.clock()
                intent = ((event.get("data") or {}).get("object") or {}).get("payment_intent")
                if isinstance(intent, str):
                    payment.gateway_charge_id = intent
        self.db.add(self._record(event, WebhookEventStatus.failed, exc.message))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return WebhookResult(WebhookOutcome.duplicate, event_id, event_type)
        return WebhookResult(WebhookOutcome.flagged, event_id, event_type, exc.message)
