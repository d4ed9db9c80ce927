"""Checkout service: order ledger, stock checks, hosted session creation."""

import enum
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from urllib.parse import urlsplit

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.exceptions import (
    GatewayError,
    InvalidRedirectError,
    OrderNotFoundError,
    PaymentNotFoundError,
)
from app.metrics import CHECKOUT_RESULTS
from app.models.checkout import Order, OrderItem, OrderStatus, Payment, PaymentStatus
from app.services.catalog import ProductCatalog
from app.services.idempotency import derive_idempotency_key
from app.services.payment_gateway import (
    GatewaySession,
    LineItem,
    PaymentGateway,
    SessionRequest,
)
from app.services.session_cache import SessionCache
from app.services.signatures import MetadataSigner

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
DEFAULT_SUCCESS_PATH = "/checkout/success"
DEFAULT_CANCEL_PATH = "/checkout/cancel"

# Valid state transitions; terminal states map to an empty set.
ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.pending: {
        OrderStatus.completed,
        OrderStatus.failed,
        OrderStatus.canceled,
        OrderStatus.requires_review,
    },
    OrderStatus.requires_review: {OrderStatus.completed, OrderStatus.canceled},
    OrderStatus.completed: set(),
    OrderStatus.failed: set(),
    OrderStatus.canceled: set(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.pending: {
        PaymentStatus.completed,
        PaymentStatus.failed,
        PaymentStatus.canceled,
    },
    PaymentStatus.completed: set(),
    PaymentStatus.failed: set(),
    PaymentStatus.canceled: set(),
}


def _transition(entity: Any, target: enum.Enum, table: dict, kind: str) -> bool:
    current = entity.status
    if current == target:
        return False
    if target not in table.get(current, set()):
        logger.warning(
            "Ignoring %s transition %s -> %s for %s",
            kind,
            current.value,
            target.value,
            entity.id,
        )
        return False
    entity.status = target
    return True


def transition_order(order: Order, target: OrderStatus) -> bool:
    """Move an order along ORDER_TRANSITIONS; True when the status changed."""
    return _transition(order, target, ORDER_TRANSITIONS, "order")


def transition_payment(payment: Payment, target: PaymentStatus) -> bool:
    return _transition(payment, target, PAYMENT_TRANSITIONS, "payment")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def validate_redirect_path(redirect_path: str) -> str:
    """Accept only same-site relative paths such as ``/orders/42``."""
    parts = urlsplit(redirect_path)
    if (
        not redirect_path.startswith("/")
        or redirect_path.startswith("//")
        or "\\" in redirect_path
        or parts.scheme
        or parts.netloc
    ):
        raise InvalidRedirectError(redirect_path)
    return redirect_path


class CheckoutOutcome(str, enum.Enum):
    ok = "ok"
    duplicate_order = "duplicate_order"
    product_not_found = "product_not_found"
    insufficient_stock = "insufficient_stock"
    empty_cart = "empty_cart"


@dataclass
class CheckoutResult:
    outcome: CheckoutOutcome
    order_id: uuid.UUID | None = None
    total_amount: Decimal | None = None
    session: GatewaySession | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == CheckoutOutcome.ok


@dataclass
class SessionStatus:
    session_id: str
    belongs_to_user: bool
    order_id: uuid.UUID | None = None
    order_status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    remote_status: str | None = None


class CheckoutService:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        cache: SessionCache,
        *,
        signer: MetadataSigner,
        tax_rate: Decimal,
        currency: str,
        frontend_base_url: str,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.cache = cache
        self.signer = signer
        self.tax_rate = tax_rate
        self.currency = currency
        self.frontend_base_url = frontend_base_url.rstrip("/")
        self.clock = clock
        self.catalog = ProductCatalog(db)

    # ── Create ───────────────────────────────────────────

    def create_checkout(
        self,
        user_id: str,
        items: Iterable[tuple[uuid.UUID, int]],
        *,
        client_key: str | None = None,
        redirect_path: str | None = None,
    ) -> CheckoutResult:
        """Reserve an order for the cart and open a hosted payment session.

        Stock is checked here but only decremented when the gateway confirms
        payment. The gateway call happens between two short transactions so
        no database transaction is held open over the network.
        """
        items = list(items)
        if not items:
            return self._result(CheckoutResult(CheckoutOutcome.empty_cart))
        success_path = validate_redirect_path(redirect_path or DEFAULT_SUCCESS_PATH)

        key = derive_idempotency_key(
            user_id, items, salt=client_key, now=self.clock().timestamp()
        )
        existing = self._find_order_by_key(key)
        if existing is not None:
            return self._duplicate(existing)

        quantities: dict[uuid.UUID, int] = {}
        for product_id, quantity in items:
            quantities[product_id] = quantities.get(product_id, 0) + quantity

        products = self.catalog.get_products_by_ids(quantities)
        missing = [str(pid) for pid in quantities if pid not in products]
        if missing:
            return self._result(
                CheckoutResult(
                    CheckoutOutcome.product_not_found, details={"product_ids": missing}
                )
            )
        short = [
            {
                "product_id": str(pid),
                "requested": qty,
                "available": products[pid].stock,
            }
            for pid, qty in quantities.items()
            if products[pid].stock < qty
        ]
        if short:
            return self._result(
                CheckoutResult(CheckoutOutcome.insufficient_stock, details={"items": short})
            )

        subtotal = round_money(
            sum(
                (products[pid].unit_price * qty for pid, qty in quantities.items()),
                Decimal("0"),
            )
        )
        tax = round_money(subtotal * self.tax_rate)
        total = subtotal + tax

        order_id = uuid.uuid4()
        payment_id = uuid.uuid4()
        line_items = [
            LineItem(
                name=products[pid].name,
                quantity=qty,
                unit_amount=products[pid].unit_price,
            )
            for pid, qty in quantities.items()
        ]
        if tax > 0:
            line_items.append(LineItem(name="Tax", quantity=1, unit_amount=tax))

        order = Order(
            id=order_id,
            user_id=user_id,
            status=OrderStatus.pending,
            total_amount=total,
            tax_amount=tax,
            currency=self.currency,
            idempotency_key=key,
        )
        for pid, qty in quantities.items():
            order.items.append(
                OrderItem(
                    product_id=pid,
                    name=products[pid].name,
                    quantity=qty,
                    unit_price=products[pid].unit_price,
                )
            )
        order.payment = Payment(
            id=payment_id,
            user_id=user_id,
            amount=subtotal,
            tax=tax,
            status=PaymentStatus.pending,
        )
        self.db.add(order)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_order_by_key(key)
            if existing is None:
                raise
            logger.info("Concurrent checkout collapsed onto order %s", existing.id)
            return self._duplicate(existing)

        logger.info(
            "Created order %s total %s", order_id, total, extra={"order_id": str(order_id)}
        )

        request = SessionRequest(
            mode="payment",
            line_items=line_items,
            success_url=self._success_url(success_path),
            cancel_url=f"{self.frontend_base_url}{DEFAULT_CANCEL_PATH}",
            currency=self.currency,
            idempotency_key=key,
            metadata=self.signer.build_metadata(user_id, order_id=str(order_id)),
            client_reference_id=str(order_id),
        )
        try:
            session = self.gateway.create_checkout_session(request)
        except GatewayError as exc:
            exc.order_id = order_id
            exc.details = {**exc.details, "order_id": str(order_id)}
            logger.error(
                "Checkout session failed for order %s: %s",
                order_id,
                exc,
                extra={"order_id": str(order_id)},
            )
            CHECKOUT_RESULTS.labels("gateway_error").inc()
            raise

        payment = self.db.get(Payment, payment_id)
        payment.gateway_session_id = session.id
        self.db.commit()

        self.cache.store_session(
            session.id,
            {"order_id": str(order_id), "user_id": user_id, "amount": str(total)},
        )
        self.cache.remember_order(key, str(order_id))
        return self._result(
            CheckoutResult(
                CheckoutOutcome.ok, order_id=order_id, total_amount=total, session=session
            )
        )

    def _success_url(self, path: str) -> str:
        separator = "&" if "?" in path else "?"
        return f"{self.frontend_base_url}{path}{separator}session_id={{CHECKOUT_SESSION_ID}}"

    def _find_order_by_key(self, key: str) -> Order | None:
        hint = self.cache.lookup_order(key)
        if hint:
            try:
                order = self.db.get(Order, uuid.UUID(hint))
            except ValueError:
                order = None
            if order is not None and order.idempotency_key == key:
                return order
        return self.db.scalar(select(Order).where(Order.idempotency_key == key))

    def _duplicate(self, order: Order) -> CheckoutResult:
        session = None
        if order.payment is not None and order.payment.gateway_session_id:
            session = GatewaySession(id=order.payment.gateway_session_id, url="")
        return self._result(
            CheckoutResult(
                CheckoutOutcome.duplicate_order,
                order_id=order.id,
                total_amount=order.total_amount,
                session=session,
                details={"order_id": str(order.id)},
            )
        )

    @staticmethod
    def _result(result: CheckoutResult) -> CheckoutResult:
        CHECKOUT_RESULTS.labels(result.outcome.value).inc()
        return result

    # ── Session validation ───────────────────────────────

    def validate_checkout_session(self, user_id: str, session_id: str) -> SessionStatus:
        """Report what is known about a session without changing anything."""
        cached = self.cache.get_session(session_id)
        payment = self.db.scalar(
            select(Payment).where(Payment.gateway_session_id == session_id)
        )
        if payment is None:
            if cached is None:
                raise PaymentNotFoundError(session_id)
            return SessionStatus(
                session_id=session_id,
                belongs_to_user=cached.get("user_id") == user_id,
            )
        if payment.user_id != user_id:
            logger.warning(
                "Session %s requested by non-owner",
                session_id,
                extra={"session_id": session_id, "security_event": True},
            )
            return SessionStatus(session_id=session_id, belongs_to_user=False)

        status = SessionStatus(
            session_id=session_id,
            belongs_to_user=True,
            order_id=payment.order_id,
            order_status=payment.order.status,
            payment_status=payment.status,
        )
        if payment.status == PaymentStatus.pending:
            try:
                remote = self.gateway.retrieve_checkout_session(session_id)
            except GatewayError as exc:
                logger.warning(
                    "Could not fetch remote status for session %s: %s",
                    session_id,
                    exc,
                    extra={"session_id": session_id},
                )
            else:
                status.remote_status = remote.get("payment_status") or remote.get("status")
        return status

    # ── Review ───────────────────────────────────────────

    def flag_for_review(self, order_id: uuid.UUID, reason: str) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if transition_order(order, OrderStatus.requires_review):
            order.review_reason = reason
            logger.warning(
                "Order %s flagged for review: %s",
                order_id,
                reason,
                extra={"order_id": str(order_id)},
            )
        self.db.commit()
        return order
