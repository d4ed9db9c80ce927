"""Subscription lifecycle driven by gateway events, plus subscription checkout."""

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.exceptions import ClientError, PlanInUseError, PlanNotFoundError
from app.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus
from app.schemas.subscription import SubscriptionStatusRead
from app.services.checkout import DEFAULT_CANCEL_PATH, validate_redirect_path
from app.services.idempotency import derive_idempotency_key
from app.services.payment_gateway import (
    GatewaySession,
    LineItem,
    PaymentGateway,
    SessionRequest,
)
from app.services.signatures import MetadataSigner

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_SUCCESS_PATH = "/subscriptions/success"

PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.active,
    "canceled": SubscriptionStatus.canceled,
    "past_due": SubscriptionStatus.expired,
    "unpaid": SubscriptionStatus.expired,
    "incomplete_expired": SubscriptionStatus.expired,
    "trialing": SubscriptionStatus.trialing,
    "incomplete": SubscriptionStatus.incomplete,
}

_ALL_STATUSES = set(SubscriptionStatus)

VALID_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.incomplete: {
        SubscriptionStatus.trialing,
        SubscriptionStatus.active,
        SubscriptionStatus.canceled,
        SubscriptionStatus.expired,
        SubscriptionStatus.unknown,
    },
    SubscriptionStatus.trialing: {
        SubscriptionStatus.active,
        SubscriptionStatus.canceled,
        SubscriptionStatus.expired,
        SubscriptionStatus.unknown,
    },
    SubscriptionStatus.active: {
        SubscriptionStatus.canceled,
        SubscriptionStatus.expired,
        SubscriptionStatus.unknown,
    },
    SubscriptionStatus.canceled: {SubscriptionStatus.active},
    SubscriptionStatus.expired: {SubscriptionStatus.active, SubscriptionStatus.canceled},
    SubscriptionStatus.unknown: _ALL_STATUSES - {SubscriptionStatus.unknown},
}

LIVE_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.trialing)


def map_provider_status(raw: str | None) -> SubscriptionStatus:
    return PROVIDER_STATUS_MAP.get((raw or "").lower(), SubscriptionStatus.unknown)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _from_unix(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _first_item(obj: dict[str, Any]) -> dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period_end(obj: dict[str, Any]) -> datetime | None:
    end = obj.get("current_period_end") or _first_item(obj).get("current_period_end")
    return _from_unix(end)


def _price_id(obj: dict[str, Any]) -> str | None:
    price = _first_item(obj).get("price")
    if isinstance(price, dict):
        return price.get("id")
    return price


class SubscriptionService:
    def __init__(
        self, db: Session, clock: Callable[[], datetime] = lambda: datetime.now(UTC)
    ) -> None:
        self.db = db
        self.clock = clock

    # ── Plans ────────────────────────────────────────────

    def find_plan(self, price_id: str | None) -> SubscriptionPlan:
        plan = None
        if price_id:
            plan = self.db.scalar(
                select(SubscriptionPlan).where(SubscriptionPlan.gateway_price_id == price_id)
            )
        if plan is None:
            raise PlanNotFoundError(price_id)
        return plan

    def update_plan(
        self,
        plan_id: uuid.UUID,
        *,
        name: str | None = None,
        price: Decimal | None = None,
        gateway_price_id: str | None = None,
    ) -> SubscriptionPlan:
        """Rename freely; price changes only while nothing references the plan."""
        plan = self.db.get(SubscriptionPlan, plan_id)
        if plan is None:
            raise PlanNotFoundError(str(plan_id))
        changes_price = (price is not None and price != plan.price) or (
            gateway_price_id is not None and gateway_price_id != plan.gateway_price_id
        )
        if changes_price:
            referenced = self.db.scalar(
                select(func.count())
                .select_from(Subscription)
                .where(Subscription.plan_id == plan.id)
            )
            if referenced:
                raise PlanInUseError(plan.id)
            if price is not None:
                plan.price = price
            if gateway_price_id is not None:
                plan.gateway_price_id = gateway_price_id
        if name is not None:
            plan.name = name
        self.db.flush()
        return plan

    # ── Event application ────────────────────────────────

    def apply_checkout_session(
        self, session: dict[str, Any], event_created: datetime
    ) -> Subscription:
        """Record the subscription a completed subscription-mode checkout created.

        The session may carry the subscription as an id or as an expanded
        object. The plan comes from the signed metadata or the expanded price;
        an unknown plan fails closed.
        """
        ref = session.get("subscription")
        expanded = ref if isinstance(ref, dict) else None
        gateway_id = expanded.get("id") if expanded else ref
        if not gateway_id:
            raise ClientError(
                "Checkout session has no subscription",
                details={"session_id": session.get("id")},
            )
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        if not user_id:
            raise ClientError(
                "Checkout session has no user", details={"session_id": session.get("id")}
            )
        plan = self.find_plan(
            metadata.get("price_id") or (_price_id(expanded) if expanded else None)
        )

        existing = self._get_by_gateway_id(gateway_id)
        if existing is not None:
            if expanded:
                self._update_from_object(existing, expanded, event_created)
            return existing

        status = SubscriptionStatus.incomplete
        expires_at = None
        if expanded:
            status = map_provider_status(expanded.get("status"))
            expires_at = _period_end(expanded)
        # Without the expanded object the status is a placeholder, so any
        # subscription event may still overwrite it.
        return self._create(
            user_id,
            plan,
            gateway_id,
            status,
            expires_at,
            event_created if expanded else None,
        )

    def apply_subscription(
        self, obj: dict[str, Any], event_created: datetime, *, deleted: bool = False
    ) -> Subscription | None:
        gateway_id = obj.get("id")
        if not gateway_id:
            raise ClientError("Subscription event has no id")
        existing = self._get_by_gateway_id(gateway_id)
        if existing is not None:
            self._update_from_object(existing, obj, event_created, deleted=deleted)
            return existing

        user_id = (obj.get("metadata") or {}).get("user_id")
        if not user_id:
            logger.warning(
                "Skipping subscription %s with no local row and no user metadata",
                gateway_id,
                extra={"subscription_id": gateway_id},
            )
            return None
        plan = self.find_plan(_price_id(obj) or (obj.get("metadata") or {}).get("price_id"))
        status = (
            SubscriptionStatus.canceled if deleted else map_provider_status(obj.get("status"))
        )
        return self._create(
            user_id, plan, gateway_id, status, _period_end(obj), event_created
        )

    def _create(
        self,
        user_id: str,
        plan: SubscriptionPlan,
        gateway_id: str,
        status: SubscriptionStatus,
        expires_at: datetime | None,
        event_created: datetime | None,
    ) -> Subscription:
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            gateway_subscription_id=gateway_id,
            status=status,
            expires_at=expires_at,
            last_event_at=event_created,
        )
        self.db.add(subscription)
        self.db.flush()
        logger.info(
            "Created subscription %s for user %s as %s",
            gateway_id,
            user_id,
            status.value,
            extra={"subscription_id": gateway_id},
        )
        if status in LIVE_STATUSES:
            self._cancel_other_live(subscription)
        return subscription

    def _update_from_object(
        self,
        subscription: Subscription,
        obj: dict[str, Any],
        event_created: datetime,
        *,
        deleted: bool = False,
    ) -> None:
        last = _as_utc(subscription.last_event_at)
        if last is not None and event_created < last:
            logger.info(
                "Ignoring out-of-order event for subscription %s",
                subscription.gateway_subscription_id,
                extra={"subscription_id": subscription.gateway_subscription_id},
            )
            return

        target = (
            SubscriptionStatus.canceled if deleted else map_provider_status(obj.get("status"))
        )
        changed = self.transition(subscription, target)

        expires_at = _period_end(obj)
        if expires_at is not None:
            subscription.expires_at = expires_at
        price_id = _price_id(obj)
        if price_id:
            plan = self.find_plan(price_id)
            if plan.id != subscription.plan_id:
                subscription.plan_id = plan.id
        subscription.last_event_at = event_created
        self.db.flush()
        if changed and subscription.status in LIVE_STATUSES:
            self._cancel_other_live(subscription)

    def transition(self, subscription: Subscription, target: SubscriptionStatus) -> bool:
        current = subscription.status
        if current == target:
            return False
        if target not in VALID_TRANSITIONS.get(current, set()):
            logger.warning(
                "Ignoring subscription transition %s -> %s for %s",
                current.value,
                target.value,
                subscription.gateway_subscription_id,
                extra={"subscription_id": subscription.gateway_subscription_id},
            )
            return False
        subscription.status = target
        logger.info(
            "Subscription %s moved %s -> %s",
            subscription.gateway_subscription_id,
            current.value,
            target.value,
            extra={"subscription_id": subscription.gateway_subscription_id},
        )
        return True

    def _cancel_other_live(self, subscription: Subscription) -> None:
        others = self.db.scalars(
            select(Subscription).where(
                Subscription.user_id == subscription.user_id,
                Subscription.id != subscription.id,
                Subscription.status.in_(LIVE_STATUSES),
            )
        )
        for other in others:
            self.transition(other, SubscriptionStatus.canceled)

    def _get_by_gateway_id(self, gateway_id: str) -> Subscription | None:
        return self.db.scalar(
            select(Subscription).where(Subscription.gateway_subscription_id == gateway_id)
        )

    # ── Queries ──────────────────────────────────────────

    def get_status(self, user_id: str) -> SubscriptionStatusRead:
        subscription = self.db.scalar(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(
                Subscription.status.in_(LIVE_STATUSES).desc(),
                Subscription.updated_at.desc(),
            )
            .limit(1)
        )
        if subscription is None:
            return SubscriptionStatusRead(is_subscribed=False)
        expires_at = _as_utc(subscription.expires_at)
        is_subscribed = subscription.status in LIVE_STATUSES and (
            expires_at is None or expires_at > self.clock()
        )
        return SubscriptionStatusRead(
            is_subscribed=is_subscribed,
            plan_id=subscription.plan_id,
            price_id=subscription.plan.gateway_price_id,
            status=subscription.status,
            expires_at=expires_at,
        )


class SubscriptionCheckout:
    """Opens hosted checkout sessions in subscription mode."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        signer: MetadataSigner,
        currency: str,
        frontend_base_url: str,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.signer = signer
        self.currency = currency
        self.frontend_base_url = frontend_base_url.rstrip("/")
        self.clock = clock

    def create_session(
        self,
        user_id: str,
        price_id: str,
        redirect_path: str | None = None,
        *,
        client_key: str | None = None,
    ) -> GatewaySession:
        success_path = validate_redirect_path(
            redirect_path or DEFAULT_SUBSCRIPTION_SUCCESS_PATH
        )
        plan = SubscriptionService(self.db).find_plan(price_id)
        key = derive_idempotency_key(
            user_id,
            [],
            plan_id=str(plan.id),
            salt=client_key,
            now=self.clock().timestamp(),
        )
        request = SessionRequest(
            mode="subscription",
            line_items=[LineItem(name=plan.name, quantity=1, price_id=plan.gateway_price_id)],
            success_url=(
                f"{self.frontend_base_url}{success_path}"
                f"{'&' if '?' in success_path else '?'}session_id={{CHECKOUT_SESSION_ID}}"
            ),
            cancel_url=f"{self.frontend_base_url}{DEFAULT_CANCEL_PATH}",
            currency=self.currency,
            idempotency_key=key,
            metadata=self.signer.build_metadata(user_id, price_id=plan.gateway_price_id),
            client_reference_id=user_id,
        )
        # Release the read transaction before the network call.
        self.db.rollback()
        session = self.gateway.create_checkout_session(request)
        logger.info(
            "Created subscription checkout %s for user %s",
            session.id,
            user_id,
            extra={"session_id": session.id},
        )
        return session
