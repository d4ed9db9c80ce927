import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base, TimestampMixin


class SubscriptionStatus(str, enum.Enum):
    incomplete = "incomplete"
    trialing = "trialing"
    active = "active"
    canceled = "canceled"
    expired = "expired"
    unknown = "unknown"


class RecurringInterval(str, enum.Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


class SubscriptionPlan(TimestampMixin, Base):
    __tablename__ = "subscription_plans"
    __table_args__ = (
        UniqueConstraint("gateway_price_id", name="uq_subscription_plans_gateway_price_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    gateway_price_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    interval: Mapped[RecurringInterval] = mapped_column(
        Enum(RecurringInterval), default=RecurringInterval.month
    )

    subscriptions = relationship("Subscription", back_populates="plan")


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "gateway_subscription_id", name="uq_subscriptions_gateway_subscription_id"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=False
    )
    gateway_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.incomplete, nullable=False
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # Creation time of the newest gateway event applied; older events are stale.
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    plan = relationship("SubscriptionPlan", back_populates="subscriptions")
