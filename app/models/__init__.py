from app.models.checkout import (  # noqa: F401
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
    WebhookEvent,
    WebhookEventStatus,
)
from app.models.subscription import (  # noqa: F401
    RecurringInterval,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
