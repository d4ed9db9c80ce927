"""Apply verified gateway events to local orders, payments and subscriptions."""

import enum
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.exceptions import ConsistencyError, PaymentNotFoundError
from app.models.checkout import OrderStatus, Payment, PaymentStatus
from app.services.catalog import ProductCatalog
from app.services.checkout import transition_order, transition_payment
from app.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)


class WebhookOutcome(str, enum.Enum):
    processed = "processed"
    ignored = "ignored"
    duplicate = "duplicate"
    stale = "stale"
    flagged = "flagged"
    rejected = "rejected"


SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.canceled",
}
SUBSCRIPTION_END_EVENTS = {
    "customer.subscription.deleted",
    "customer.subscription.canceled",
}


class ReconciliationDispatcher:
    """Routes one verified, deduplicated event to its handler.

    Runs inside the caller's transaction and never commits; the webhook
    guard commits the effects together with the event record.
    """

    def __init__(
        self,
        db: Session,
        subscriptions: SubscriptionService | None = None,
        catalog: ProductCatalog | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.subscriptions = subscriptions or SubscriptionService(db)
        self.catalog = catalog or ProductCatalog(db)
        self.clock = clock

    def dispatch(self, event: dict[str, Any]) -> WebhookOutcome:
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        created = datetime.fromtimestamp(int(event["created"]), UTC)

        if event_type == "checkout.session.completed":
            return self._checkout_completed(obj, created)
        if event_type == "checkout.session.expired":
            return self._checkout_expired(obj)
        if event_type == "payment_intent.succeeded":
            return self._payment_intent_succeeded(obj)
        if event_type == "payment_intent.payment_failed":
            return self._payment_intent_failed(obj)
        if event_type in SUBSCRIPTION_EVENTS:
            self.subscriptions.apply_subscription(
                obj, created, deleted=event_type in SUBSCRIPTION_END_EVENTS
            )
            return WebhookOutcome.processed

        logger.info(
            "Unhandled event type %s",
            event_type,
            extra={"event_id": event.get("id"), "event_type": event_type},
        )
        return WebhookOutcome.ignored

    # ── Checkout sessions ────────────────────────────────

    def _checkout_completed(self, session: dict[str, Any], created: datetime) -> WebhookOutcome:
        if session.get("mode") == "subscription":
            self.subscriptions.apply_checkout_session(session, created)
            return WebhookOutcome.processed

        payment = self._payment_for_session(session)
        if session.get("payment_status") == "unpaid":
            logger.info(
                "Session %s completed without payment yet",
                session.get("id"),
                extra={"session_id": session.get("id"), "payment_id": str(payment.id)},
            )
            return WebhookOutcome.ignored
        self._complete_payment(payment, session.get("payment_intent"))
        return WebhookOutcome.processed

    def _checkout_expired(self, session: dict[str, Any]) -> WebhookOutcome:
        payment = self._payment_for_session(session)
        if payment.status != PaymentStatus.pending:
            return WebhookOutcome.processed
        transition_payment(payment, PaymentStatus.canceled)
        transition_order(payment.order, OrderStatus.canceled)
        logger.info(
            "Checkout session expired for order %s",
            payment.order_id,
            extra={"order_id": str(payment.order_id), "session_id": session.get("id")},
        )
        return WebhookOutcome.processed

    def _payment_for_session(self, session: dict[str, Any]) -> Payment:
        session_id = session.get("id")
        payment = None
        if session_id:
            payment = self.db.scalar(
                self._locked(Payment.gateway_session_id == session_id)
            )
        if payment is None:
            payment = self._payment_for_order_ref(
                (session.get("metadata") or {}).get("order_id")
                or session.get("client_reference_id")
            )
        if payment is None:
            raise PaymentNotFoundError(session_id)
        return payment

    # ── Payment intents ──────────────────────────────────

    def _payment_intent_succeeded(self, intent: dict[str, Any]) -> WebhookOutcome:
        payment = self._payment_for_intent(intent)
        if payment is None:
            return WebhookOutcome.ignored
        self._complete_payment(payment, intent.get("id"))
        return WebhookOutcome.processed

    def _payment_intent_failed(self, intent: dict[str, Any]) -> WebhookOutcome:
        payment = self._payment_for_intent(intent)
        if payment is None:
            return WebhookOutcome.ignored
        if transition_payment(payment, PaymentStatus.failed):
            payment.gateway_charge_id = payment.gateway_charge_id or intent.get("id")
            transition_order(payment.order, OrderStatus.failed)
            logger.info(
                "Payment failed for order %s",
                payment.order_id,
                extra={"order_id": str(payment.order_id), "payment_id": str(payment.id)},
            )
        return WebhookOutcome.processed

    def _payment_for_intent(self, intent: dict[str, Any]) -> Payment | None:
        intent_id = intent.get("id")
        payment = None
        if intent_id:
            payment = self.db.scalar(
                self._locked(Payment.gateway_charge_id == intent_id)
            )
        if payment is None:
            payment = self._payment_for_order_ref(
                (intent.get("metadata") or {}).get("order_id")
            )
        if payment is None:
            logger.info("No local payment for intent %s", intent_id)
        return payment

    def _payment_for_order_ref(self, order_ref: str | None) -> Payment | None:
        if not order_ref:
            return None
        try:
            order_id = uuid.UUID(str(order_ref))
        except ValueError:
            return None
        return self.db.scalar(self._locked(Payment.order_id == order_id))

    @staticmethod
    def _locked(criterion):
        # Row lock held until the guard commits; concurrent deliveries for the
        # same payment queue here and then see its committed status.
        return (
            select(Payment)
            .where(criterion)
            .with_for_update()
        )

    # ── Completion ───────────────────────────────────────

    def _complete_payment(self, payment: Payment, charge_id: str | None) -> None:
        """Claim the payment, take stock for every line and complete the order.

        The claim is a conditional update from pending, so of two completion
        events for one payment only the first takes stock; the other finds
        the payment completed and changes nothing.
        """
        values: dict[str, Any] = {
            "status": PaymentStatus.completed,
            "completed_at": self.clock(),
        }
        if charge_id:
            values["gateway_charge_id"] = charge_id
        self.db.flush()
        claimed = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.pending)
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.refresh(payment)
        order = payment.order
        if claimed != 1:
            if payment.status == PaymentStatus.completed:
                logger.info(
                    "Payment %s already completed",
                    payment.id,
                    extra={"payment_id": str(payment.id), "order_id": str(order.id)},
                )
                return
            raise ConsistencyError(
                f"Gateway completed a payment that is {payment.status.value}",
                order_id=order.id,
                details={"payment_status": payment.status.value},
            )

        savepoint = self.db.begin_nested()
        try:
            for item in sorted(order.items, key=lambda i: str(i.product_id)):
                if not self.catalog.decrement_stock_if_available(item.product_id, item.quantity):
                    raise ConsistencyError(
                        f"Insufficient stock for product {item.product_id} "
                        f"on paid order {order.id}",
                        order_id=order.id,
                        details={
                            "product_id": str(item.product_id),
                            "quantity": item.quantity,
                        },
                    )
        except ConsistencyError:
            savepoint.rollback()
            raise
        savepoint.commit()

        transition_order(order, OrderStatus.completed)
        logger.info(
            "Order %s completed",
            order.id,
            extra={"order_id": str(order.id), "payment_id": str(payment.id)},
        )
