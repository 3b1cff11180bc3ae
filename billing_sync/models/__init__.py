from .user import User
from .subscription import Subscription
from .subscription_usage import SubscriptionUsage
from .billing_event import BillingEventLog
from .plan import SubscriptionPlan, PlanPrice
from .plan_migration import PlanMigration
from .email_log import EmailLog

__all__ = [
    "User",
    "Subscription",
    "SubscriptionUsage",
    "BillingEventLog",
    "SubscriptionPlan",
    "PlanPrice",
    "PlanMigration",
    "EmailLog",
]
