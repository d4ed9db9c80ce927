"""Seed subscription plans from gateway price ids."""

import os
from decimal import Decimal

from dotenv import load_dotenv

from app.db import SessionLocal
from app.exceptions import PlanInUseError
from app.models.subscription import RecurringInterval, SubscriptionPlan
from app.services.subscriptions import SubscriptionService

# (env var holding the gateway price id, name, price, interval)
PLANS = [
    ("GATEWAY_PRICE_MONTHLY", "Monthly", Decimal("9.99"), RecurringInterval.month),
    ("GATEWAY_PRICE_YEARLY", "Yearly", Decimal("99.00"), RecurringInterval.year),
]


def _ensure_plan(
    db, price_id: str, name: str, price: Decimal, interval: RecurringInterval
) -> None:
    plan = (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.gateway_price_id == price_id)
        .first()
    )
    if not plan:
        db.add(
            SubscriptionPlan(
                gateway_price_id=price_id, name=name, price=price, interval=interval
            )
        )
        db.commit()
        print(f"Created plan {name} ({price_id})")
        return
    try:
        SubscriptionService(db).update_plan(plan.id, name=name, price=price)
        db.commit()
    except PlanInUseError:
        db.rollback()
        print(f"Plan {name} ({price_id}) has subscribers; price left at {plan.price}")


def main() -> None:
    load_dotenv()
    db = SessionLocal()
    try:
        for env_var, name, price, interval in PLANS:
            price_id = os.getenv(env_var, "")
            if not price_id:
                print(f"{env_var} not set, skipping {name}")
                continue
            _ensure_plan(db, price_id, name, price, interval)
        print("Subscription plan seed complete.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
