from .user import User
from .subscription_plan import SubscriptionPlan
from .user_subscription import UserSubscription
from .payment_transaction import PaymentTransaction
from .billing_event import BillingEvent

__all__ = [
    "User",
    "SubscriptionPlan",
    "UserSubscription",
    "PaymentTransaction",
    "BillingEvent",
]
